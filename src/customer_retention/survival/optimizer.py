"""
Newton-Raphson fit of Cox proportional-hazards coefficients.

Maximizes the L2-penalized Breslow partial log-likelihood

    l(b) = sum_{events i} [ x_i.b - log sum_{j in R(t_i)} exp(x_j.b) ] - (lambda/2) |b|^2

starting from b = 0. Each iteration solves I(b) d = g(b) with a Cholesky
factorization, where g is the gradient and I the information matrix (the
negated Hessian, positive semi-definite before the ridge term).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve

from ..utils.logger import get_logger
from .exceptions import InsufficientDataError, NumericalError
from .predictors import PREDICTOR_NAMES
from .risk_sets import build_risk_sets, risk_set_strata

logger = get_logger(__name__)

# exp() of the linear predictor is evaluated on values clipped to this range
ETA_CLIP = 50.0

Strata = List[Tuple[float, np.ndarray, np.ndarray]]


def relative_risk(X: np.ndarray, beta: np.ndarray) -> np.ndarray:
    """exp(X.b) with the linear predictor clipped to +/- ETA_CLIP."""
    return np.exp(np.clip(X @ beta, -ETA_CLIP, ETA_CLIP))


@dataclass
class OptimizerResult:
    coefficients: Dict[str, float]
    beta: np.ndarray
    iterations: int
    converged: bool
    log_likelihood: float


class PartialLikelihoodOptimizer:
    """Ridge-penalized Newton-Raphson solver for the Cox partial likelihood.

    The fit is fully deterministic: zero initialization, no random restarts,
    and the step-halving safeguard only ever shrinks a step along the same
    Newton direction.
    """

    def __init__(
        self,
        max_iter: int = 100,
        tolerance: float = 1e-6,
        l2_penalty: float = 0.01,
        singular_jitter: float = 0.1,
        max_step_halvings: int = 10,
    ):
        if int(max_iter) < 1:
            raise ValueError("max_iter must be >= 1")
        if not float(tolerance) > 0:
            raise ValueError("tolerance must be positive")
        if float(l2_penalty) < 0 or float(singular_jitter) < 0:
            raise ValueError("l2_penalty and singular_jitter must be non-negative")
        if int(max_step_halvings) < 0:
            raise ValueError("max_step_halvings must be non-negative")
        self.max_iter = int(max_iter)
        self.tolerance = float(tolerance)
        self.l2_penalty = float(l2_penalty)
        self.singular_jitter = float(singular_jitter)
        self.max_step_halvings = int(max_step_halvings)

    def fit(
        self,
        features: np.ndarray,
        times: Sequence[float],
        status: Sequence[int],
        risk_sets: Optional[Mapping[float, FrozenSet[int]]] = None,
        predictor_names: Optional[Sequence[str]] = None,
    ) -> OptimizerResult:
        X = np.asarray(features, dtype=float)
        if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
            raise InsufficientDataError(
                f"cannot fit a Cox model on a feature matrix of shape {X.shape}",
                n_samples=int(X.shape[0]) if X.ndim >= 1 else 0,
            )
        n, p = X.shape
        times_arr = np.asarray(times, dtype=float)
        status_arr = np.asarray(status, dtype=int)
        if times_arr.shape != (n,) or status_arr.shape != (n,):
            raise ValueError("times and status must be 1-d with one entry per feature row")

        names = self._predictor_names(predictor_names, p)

        if risk_sets is None:
            risk_sets = build_risk_sets(times_arr, status_arr == 1)
        strata = risk_set_strata(times_arr, status_arr, risk_sets)
        if not strata:
            raise InsufficientDataError(
                "no events observed; the partial likelihood is undefined",
                n_samples=n,
                n_events=int(status_arr.sum()),
            )

        beta = np.zeros(p, dtype=float)
        loglik = self._log_likelihood(X, beta, strata)
        converged = False
        iteration = 0

        for iteration in range(1, self.max_iter + 1):
            gradient, information = self._derivatives(X, beta, strata)
            gradient -= self.l2_penalty * beta
            information[np.diag_indices_from(information)] += self.l2_penalty

            if not (np.all(np.isfinite(gradient)) and np.all(np.isfinite(information))):
                raise NumericalError("non-finite gradient or information matrix", iteration=iteration)

            step = self._solve(information, gradient, iteration)
            new_beta, new_loglik, improved = self._damped_update(X, beta, step, loglik, strata)

            if not np.all(np.isfinite(new_beta)):
                raise NumericalError("coefficients became non-finite", iteration=iteration)

            change = float(np.max(np.abs(new_beta - beta)))
            beta, loglik = new_beta, new_loglik
            logger.debug(f"newton iteration {iteration}: max|delta|={change:.3e}, loglik={loglik:.6f}")

            if not improved:
                logger.debug(f"newton iteration {iteration}: step halving exhausted without improvement")
            elif change < self.tolerance:
                converged = True
                break

        if not converged:
            logger.warning(
                f"Cox optimizer did not converge within {self.max_iter} iterations "
                f"(tolerance={self.tolerance:g}); returning last iterate"
            )

        return OptimizerResult(
            coefficients={name: float(b) for name, b in zip(names, beta)},
            beta=beta,
            iterations=iteration,
            converged=converged,
            log_likelihood=float(loglik),
        )

    @staticmethod
    def _predictor_names(predictor_names: Optional[Sequence[str]], p: int) -> List[str]:
        if predictor_names is None:
            if p == len(PREDICTOR_NAMES):
                return list(PREDICTOR_NAMES)
            return [f"x{j}" for j in range(p)]
        names = [str(name) for name in predictor_names]
        if len(names) != p:
            raise ValueError(f"expected {p} predictor names, got {len(names)}")
        return names

    def _log_likelihood(self, X: np.ndarray, beta: np.ndarray, strata: Strata) -> float:
        eta = np.clip(X @ beta, -ETA_CLIP, ETA_CLIP)
        risk = np.exp(eta)
        total = 0.0
        for _, at_risk, events in strata:
            total += float(eta[events].sum()) - events.size * float(np.log(risk[at_risk].sum()))
        return total - 0.5 * self.l2_penalty * float(beta @ beta)

    @staticmethod
    def _derivatives(X: np.ndarray, beta: np.ndarray, strata: Strata) -> Tuple[np.ndarray, np.ndarray]:
        """Unpenalized gradient and information matrix at beta."""
        p = X.shape[1]
        risk = relative_risk(X, beta)
        gradient = np.zeros(p, dtype=float)
        information = np.zeros((p, p), dtype=float)

        for _, at_risk, events in strata:
            w = risk[at_risk]
            X_r = X[at_risk]
            S = float(w.sum())
            if not S > 0:
                continue
            Z = w @ X_r
            Q = (X_r * w[:, None]).T @ X_r
            mean = Z / S
            d = events.size
            # every tied event at this time shares the same risk-set terms
            gradient += X[events].sum(axis=0) - d * mean
            information += d * (Q / S - np.outer(mean, mean))

        return gradient, information

    def _solve(self, information: np.ndarray, gradient: np.ndarray, iteration: int) -> np.ndarray:
        try:
            factor = cho_factor(information, lower=True)
        except LinAlgError:
            logger.warning(
                f"information matrix is not positive definite at iteration {iteration}; "
                f"retrying with diagonal jitter {self.singular_jitter:g}"
            )
            jittered = information + self.singular_jitter * np.eye(information.shape[0])
            try:
                factor = cho_factor(jittered, lower=True)
            except LinAlgError as e:
                raise NumericalError(
                    "information matrix is singular even after diagonal regularization",
                    iteration=iteration,
                ) from e

        step = cho_solve(factor, gradient)
        if not np.all(np.isfinite(step)):
            raise NumericalError("Newton step is not finite", iteration=iteration)
        return step

    def _damped_update(
        self,
        X: np.ndarray,
        beta: np.ndarray,
        step: np.ndarray,
        loglik: float,
        strata: Strata,
    ) -> Tuple[np.ndarray, float, bool]:
        """beta + step, halving the step while the penalized log-likelihood decreases.

        The flag is False when every halving was used and the last candidate
        still lowers the log-likelihood; such an update never counts as converged.
        """
        scale = 1.0
        candidate = beta + step
        candidate_loglik = self._log_likelihood(X, candidate, strata)
        halvings = 0
        while not self._improves(candidate_loglik, loglik):
            if halvings == self.max_step_halvings:
                return candidate, candidate_loglik, False
            halvings += 1
            scale *= 0.5
            candidate = beta + scale * step
            candidate_loglik = self._log_likelihood(X, candidate, strata)
        return candidate, candidate_loglik, True

    @staticmethod
    def _improves(candidate_loglik: float, loglik: float) -> bool:
        return bool(np.isfinite(candidate_loglik)) and candidate_loglik >= loglik - 1e-12 * max(1.0, abs(loglik))
