"""
Item Response Theory (IRT) Model

Implements the 3-Parameter Logistic (3PL) model used by the adaptive test
engine: response probability, Fisher information, test information and the
standard error of an ability estimate. Everything here is stateless.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

# Probabilities are kept away from 0 and 1 so likelihoods never degenerate.
PROBABILITY_FLOOR = 0.001
PROBABILITY_CEILING = 0.999

# 95% two-sided normal quantile
Z_95 = 1.96


class ItemStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    RETIRED = "retired"


@dataclass(frozen=True)
class Item:
    """An assessable item with calibrated 3PL parameters.

    Attributes:
        id: Unique item identifier.
        difficulty: Difficulty parameter (b), typically in [-4, +4].
        discrimination: Discrimination parameter (a), must be > 0.
        guessing: Pseudo-guessing parameter (c), in [0, 1).
        subject: Subject tag used for filtering and content balancing.
        skill: Optional skill tag used for filtering.
        grade_min: Lowest grade level the item is suitable for.
        grade_max: Highest grade level the item is suitable for.
        status: Publication status. Only published items are administered.
    """

    id: str
    difficulty: float
    discrimination: float = 1.0
    guessing: float = 0.0
    subject: str | None = None
    skill: str | None = None
    grade_min: int | None = None
    grade_max: int | None = None
    status: ItemStatus = ItemStatus.PUBLISHED

    def __post_init__(self) -> None:
        if not math.isfinite(self.difficulty):
            raise ValueError(f"Item {self.id}: difficulty must be finite, got {self.difficulty}")
        if not self.discrimination > 0:
            raise ValueError(
                f"Item {self.id}: discrimination must be positive, got {self.discrimination}"
            )
        if not 0.0 <= self.guessing < 1.0:
            raise ValueError(f"Item {self.id}: guessing must be in [0, 1), got {self.guessing}")

    @property
    def is_published(self) -> bool:
        return self.status == ItemStatus.PUBLISHED


class ItemParameters(Protocol):
    """Anything carrying 3PL parameters (items and recorded responses)."""

    @property
    def difficulty(self) -> float: ...

    @property
    def discrimination(self) -> float: ...

    @property
    def guessing(self) -> float: ...


def _logistic(x: float) -> float:
    # Split on sign so math.exp never overflows
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def probability(
    theta: float,
    difficulty: float,
    discrimination: float = 1.0,
    guessing: float = 0.0,
) -> float:
    """Probability of a correct response under the 3PL model.

    P(X=1|theta) = c + (1 - c) / (1 + e^(-a(theta - b)))

    Args:
        theta: Examinee ability.
        difficulty: Item difficulty (b).
        discrimination: Item discrimination (a).
        guessing: Item pseudo-guessing (c).

    Returns:
        Probability of a correct response, clamped to [0.001, 0.999].
    """
    p = guessing + (1.0 - guessing) * _logistic(discrimination * (theta - difficulty))
    if math.isnan(p):
        return 0.5
    return max(PROBABILITY_FLOOR, min(PROBABILITY_CEILING, p))


def information(
    theta: float,
    difficulty: float,
    discrimination: float = 1.0,
    guessing: float = 0.0,
) -> float:
    """Fisher information of a single item at ability theta.

    2PL (c = 0):  I(theta) = a^2 * P * Q
    3PL (c > 0):  I(theta) = a^2 * (Q / P) * ((P - c) / (1 - c))^2

    The 3PL form reduces to the 2PL one when c = 0, and peaks slightly above
    b as c grows.

    Returns:
        Non-negative information value.
    """
    p = probability(theta, difficulty, discrimination, guessing)
    q = 1.0 - p
    a2 = discrimination**2

    if guessing == 0.0:
        return a2 * p * q

    lifted = max(p - guessing, 0.0) / (1.0 - guessing)
    return a2 * (q / p) * lifted**2


def item_information(theta: float, item: ItemParameters) -> float:
    return information(theta, item.difficulty, item.discrimination, item.guessing)


def test_information(theta: float, items: Iterable[ItemParameters]) -> float:
    """Sum of item information over a set of items (or answered responses)."""
    return sum(item_information(theta, item) for item in items)


def standard_error(
    theta: float,
    items: Iterable[ItemParameters],
    default_se: float = 1.0,
) -> float:
    """SE(theta) = 1 / sqrt(I_total), or default_se when no information exists yet."""
    total = test_information(theta, items)
    if total <= 0 or not math.isfinite(total):
        return default_se
    return 1.0 / math.sqrt(total)


def confidence_interval(theta: float, se: float, z: float = Z_95) -> tuple[float, float]:
    """Symmetric confidence interval around theta (95% by default)."""
    margin = z * se
    return (theta - margin, theta + margin)
