#!/usr/bin/env python3
"""
顧客定着分析システムのセットアップスクリプト

このファイルは後方互換性のために提供されています。
パッケージ情報・依存関係は pyproject.toml で管理しています。
"""

from setuptools import setup

if __name__ == "__main__":
    setup()
