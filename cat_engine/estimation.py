"""
Ability estimation.

Two interchangeable strategies share one contract: given the ordered response
history and a prior, return an ``AbilityEstimate`` (theta, SE).

- ``MaximumLikelihoodEstimator``: Newton-Raphson on the log-likelihood.
- ``ExpectedAPosterioriEstimator``: posterior mean over a quadrature grid
  (Bock & Mislevy, 1982). Always finite, including all-correct and
  all-incorrect response patterns.

Both recompute from the full history on every call.
"""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from scipy.special import expit
from scipy.stats import norm

from .config import CATConfig
from .irt import (
    PROBABILITY_CEILING,
    PROBABILITY_FLOOR,
    confidence_interval,
    information,
    probability,
    standard_error,
)

logger = logging.getLogger(__name__)

# |L''| below this is treated as zero curvature
CURVATURE_EPSILON = 1e-10


class ScoredResponse(Protocol):
    """A graded response carrying the answered item's 3PL parameters."""

    @property
    def difficulty(self) -> float: ...

    @property
    def discrimination(self) -> float: ...

    @property
    def guessing(self) -> float: ...

    @property
    def correct(self) -> bool: ...


@dataclass(frozen=True)
class Prior:
    """Normal prior on ability."""

    mean: float = 0.0
    sd: float = 1.0


@dataclass
class AbilityEstimate:
    """Result of an estimation pass.

    Attributes:
        theta: Estimated ability.
        standard_error: Uncertainty of the estimate. Lower = more precise.
        method: "mle", "eap" or "prior" (no responses yet).
        converged: False when MLE fell back to the previous stable estimate.
        iterations: Newton-Raphson iterations used (0 for EAP).
    """

    theta: float
    standard_error: float
    method: str
    converged: bool = True
    iterations: int = 0

    @property
    def confidence_interval(self) -> tuple[float, float]:
        """95% confidence interval for the ability estimate."""
        return confidence_interval(self.theta, self.standard_error)


class AbilityEstimator(Protocol):
    def estimate(
        self,
        responses: Sequence[ScoredResponse],
        prior: Prior,
        start: float | None = None,
    ) -> AbilityEstimate: ...


class MaximumLikelihoodEstimator:
    """Newton-Raphson maximum likelihood estimation of theta.

    theta <- theta - L'(theta) / L''(theta)

    L' is the 3PL score function (``a * (u - p)`` when c = 0) and L'' is the
    negative test information at theta: the exact second derivative for 2PL
    items and Fisher scoring for items with c > 0, which has the same root.

    Iterates are clamped to the configured ability range, so all-correct or
    all-incorrect histories, whose likelihood has no interior maximum, settle
    on the nearest bound instead of diverging.
    """

    method = "mle"

    def __init__(self, config: CATConfig) -> None:
        self.theta_min = config.theta_min
        self.theta_max = config.theta_max
        self.max_iterations = config.max_iterations
        self.convergence_threshold = config.convergence_threshold
        self.default_se = config.default_standard_error

    def _clamp(self, theta: float) -> float:
        return max(self.theta_min, min(self.theta_max, theta))

    @staticmethod
    def _derivatives(theta: float, responses: Sequence[ScoredResponse]) -> tuple[float, float]:
        first = 0.0
        second = 0.0
        for r in responses:
            a, b, c = r.discrimination, r.difficulty, r.guessing
            p = probability(theta, b, a, c)
            u = 1.0 if r.correct else 0.0
            if c == 0.0:
                first += a * (u - p)
            else:
                first += a * (u - p) * (p - c) / (p * (1.0 - c))
            second -= information(theta, b, a, c)
        return first, second

    def estimate(
        self,
        responses: Sequence[ScoredResponse],
        prior: Prior,
        start: float | None = None,
    ) -> AbilityEstimate:
        """Estimate theta by Fisher scoring from ``start`` (default: prior mean).

        Never raises on numeric trouble: a non-finite step or an exhausted
        iteration budget falls back to ``start``, the last stable estimate.
        """
        if not responses:
            return AbilityEstimate(theta=prior.mean, standard_error=prior.sd, method="prior")

        fallback = self._clamp(start if start is not None else prior.mean)
        theta = fallback
        converged = False
        iterations = 0

        for iterations in range(1, self.max_iterations + 1):
            first, second = self._derivatives(theta, responses)

            if abs(second) < CURVATURE_EPSILON:
                converged = True
                break

            updated = theta - first / second
            if not math.isfinite(updated):
                logger.warning(
                    "MLE produced a non-finite update at iteration %d; "
                    "keeping previous estimate %.3f",
                    iterations,
                    fallback,
                )
                theta = fallback
                break

            updated = self._clamp(updated)
            if abs(updated - theta) < self.convergence_threshold:
                theta = updated
                converged = True
                break
            theta = updated

        if not converged:
            logger.warning(
                "MLE did not converge after %d iterations (%d responses); "
                "falling back to previous estimate %.3f",
                iterations,
                len(responses),
                fallback,
            )
            theta = fallback
        elif theta in (self.theta_min, self.theta_max):
            logger.warning(
                "MLE estimate clamped to ability bound %.1f (response pattern has no "
                "interior maximum)",
                theta,
            )

        se = standard_error(theta, responses, self.default_se)
        logger.debug("MLE theta=%.3f SE=%.3f after %d iterations", theta, se, iterations)
        return AbilityEstimate(
            theta=theta,
            standard_error=se,
            method=self.method,
            converged=converged,
            iterations=iterations,
        )


class ExpectedAPosterioriEstimator:
    """EAP estimation with an evenly spaced quadrature grid.

    theta_hat = sum(theta_k * L(theta_k) * prior(theta_k)) / sum(L(theta_k) * prior(theta_k))
    SE = posterior standard deviation

    The approximation error is bounded by the grid resolution.
    """

    method = "eap"

    def __init__(self, config: CATConfig) -> None:
        self.grid = np.linspace(config.theta_min, config.theta_max, config.quadrature_points)

    def _log_likelihoods(self, responses: Sequence[ScoredResponse]) -> np.ndarray:
        a = np.array([r.discrimination for r in responses], dtype=float)
        b = np.array([r.difficulty for r in responses], dtype=float)
        c = np.array([r.guessing for r in responses], dtype=float)
        u = np.array([1.0 if r.correct else 0.0 for r in responses])

        # (grid points) x (responses)
        p = c + (1.0 - c) * expit(a * (self.grid[:, None] - b))
        p = np.clip(p, PROBABILITY_FLOOR, PROBABILITY_CEILING)
        return (u * np.log(p) + (1.0 - u) * np.log1p(-p)).sum(axis=1)

    def estimate(
        self,
        responses: Sequence[ScoredResponse],
        prior: Prior,
        start: float | None = None,
    ) -> AbilityEstimate:
        """Posterior mean and SD of theta. ``start`` is unused by EAP."""
        if not responses:
            return AbilityEstimate(theta=prior.mean, standard_error=prior.sd, method="prior")

        log_posterior = norm.logpdf(self.grid, prior.mean, prior.sd) + self._log_likelihoods(
            responses
        )

        # Normalize in log space (log-sum-exp) for numerical stability
        weights = np.exp(log_posterior - log_posterior.max())
        total = weights.sum()
        if not np.isfinite(total) or total <= 0:
            logger.warning(
                "EAP posterior collapsed over the quadrature grid; returning the prior"
            )
            return AbilityEstimate(
                theta=prior.mean, standard_error=prior.sd, method=self.method, converged=False
            )
        weights /= total

        theta = float(np.dot(self.grid, weights))
        variance = float(np.dot((self.grid - theta) ** 2, weights))
        se = math.sqrt(max(variance, 0.0))

        logger.debug("EAP theta=%.3f SE=%.3f over %d responses", theta, se, len(responses))
        return AbilityEstimate(theta=theta, standard_error=se, method=self.method)


def build_estimator(config: CATConfig) -> AbilityEstimator:
    """Return the estimation strategy named by ``config.estimator``.

    Raises:
        ValueError: If the estimator name is not recognized.
    """
    if config.estimator == "mle":
        return MaximumLikelihoodEstimator(config)
    if config.estimator == "eap":
        return ExpectedAPosterioriEstimator(config)
    raise ValueError(f"Unknown estimator: {config.estimator}")
