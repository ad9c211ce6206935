"""
Item selection for adaptive testing.

Selection is split in two:

1. Pure scoring and picking (``rank_by_information``, ``rank_by_owen``,
   ``apply_exposure_control``), unit-testable without any storage.
2. ``ItemSelector``, which fetches candidates from the item repository, reads
   exposure rates from the exposure ledger, picks an item and records its
   exposure.

Exposure control follows the randomesque method (Kingsbury & Zara, 1989):
over-exposed items are filtered out, then one of the top-k remaining items is
chosen uniformly at random instead of always serving the single best item.
"""

import asyncio
import logging
import random
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

from .config import CATConfig, SelectionConstraints
from .errors import NoEligibleItemsError
from .interfaces import ExposureLedger, ItemRepository
from .irt import Item, item_information

logger = logging.getLogger(__name__)

# Subjects absent from the target mix still get a small weight
DEFAULT_SUBJECT_WEIGHT = 0.1


@dataclass
class ItemCandidate:
    """An item with its selection scores at the current ability."""

    item: Item
    information: float
    content_score: float = 0.0
    score: float = 0.0


def matches_constraints(item: Item, constraints: SelectionConstraints) -> bool:
    """Whether a published item passes the subject/skill/grade/difficulty filters."""
    if not item.is_published:
        return False
    if constraints.subjects and item.subject not in constraints.subjects:
        return False
    if constraints.skills and item.skill not in constraints.skills:
        return False
    if constraints.grade_level is not None:
        if item.grade_min is not None and item.grade_min > constraints.grade_level:
            return False
        if item.grade_max is not None and item.grade_max < constraints.grade_level:
            return False
    if constraints.difficulty_range is not None:
        low, high = constraints.difficulty_range
        if not low <= item.difficulty <= high:
            return False
    return True


def rank_by_information(theta: float, items: Iterable[Item]) -> list[ItemCandidate]:
    """Score items by Fisher information at theta, most informative first."""
    ranked = []
    for item in items:
        info = item_information(theta, item)
        ranked.append(ItemCandidate(item=item, information=info, score=info))
    ranked.sort(key=lambda c: c.score, reverse=True)
    return ranked


def content_balance_score(
    item: Item,
    theta: float,
    constraints: SelectionConstraints,
    subject_mix: Mapping[str, float],
    subject_counts: Mapping[str, int],
) -> float:
    """Content score used by Owen's blended strategy.

    The subject part is the subject's target weight plus its current deficit
    against that weight (under-represented subjects score higher). The
    difficulty part is ``max(0, 1 - |b - target|)`` where the target defaults
    to the current ability.
    """
    weight = subject_mix.get(item.subject or "", DEFAULT_SUBJECT_WEIGHT)
    administered = sum(subject_counts.values())
    actual_share = subject_counts.get(item.subject or "", 0) / administered if administered else 0.0
    subject_score = weight + max(0.0, weight - actual_share)

    target = constraints.target_difficulty if constraints.target_difficulty is not None else theta
    difficulty_score = max(0.0, 1.0 - abs(item.difficulty - target))

    return subject_score * difficulty_score


def rank_by_owen(
    theta: float,
    items: Iterable[Item],
    constraints: SelectionConstraints,
    subject_mix: Mapping[str, float],
    subject_counts: Mapping[str, int],
    information_weight: float = 0.7,
    content_weight: float = 0.3,
) -> list[ItemCandidate]:
    """Blend information and content balance, highest combined score first."""
    ranked = []
    for item in items:
        info = item_information(theta, item)
        content = content_balance_score(item, theta, constraints, subject_mix, subject_counts)
        ranked.append(
            ItemCandidate(
                item=item,
                information=info,
                content_score=content,
                score=information_weight * info + content_weight * content,
            )
        )
    ranked.sort(key=lambda c: c.score, reverse=True)
    return ranked


def apply_exposure_control(
    ranked: Sequence[ItemCandidate],
    exposure_rates: Mapping[str, float],
    max_exposure_rate: float,
    top_k: int = 3,
    rng: random.Random | None = None,
) -> ItemCandidate:
    """Drop over-exposed items, then pick uniformly among the top-k survivors.

    An item is over-exposed when its rate is at or above ``max_exposure_rate``.
    If every candidate is over-exposed the filter is waived.

    Raises:
        ValueError: If ``ranked`` is empty or ``top_k`` is not positive.
    """
    if not ranked:
        raise ValueError("Cannot select from an empty candidate list")
    if top_k <= 0:
        raise ValueError(f"top_k must be positive, got {top_k}")

    eligible = [c for c in ranked if exposure_rates.get(c.item.id, 0.0) < max_exposure_rate]
    if not eligible:
        logger.warning(
            "All %d candidates exceed exposure ceiling %.2f; waiving exposure filter",
            len(ranked),
            max_exposure_rate,
        )
        eligible = list(ranked)

    top = eligible[: min(top_k, len(eligible))]
    return (rng or random).choice(top)


class ItemSelector:
    """Picks the next item for a session from the item repository.

    Usage:
        selector = ItemSelector(repository, ledger, CATConfig())
        item = await selector.select(theta, administered_ids, constraints)
    """

    def __init__(
        self,
        repository: ItemRepository,
        ledger: ExposureLedger,
        config: CATConfig,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.config = config
        self.rng = rng or random.Random()

    def rank(
        self,
        theta: float,
        candidates: Sequence[Item],
        constraints: SelectionConstraints,
        subject_counts: Mapping[str, int],
        config: CATConfig | None = None,
    ) -> list[ItemCandidate]:
        """Rank candidates with the configured selection algorithm.

        Raises:
            ValueError: If the selection algorithm is not recognized.
        """
        config = config or self.config
        if config.selection_algorithm == "maximum_information":
            return rank_by_information(theta, candidates)
        if config.selection_algorithm == "owen":
            return rank_by_owen(
                theta,
                candidates,
                constraints,
                config.subject_distribution,
                subject_counts,
                config.information_weight,
                config.content_weight,
            )
        raise ValueError(f"Unknown selection algorithm: {config.selection_algorithm}")

    async def select(
        self,
        theta: float,
        administered_ids: Sequence[str],
        constraints: SelectionConstraints,
        subject_counts: Mapping[str, int] | None = None,
        config: CATConfig | None = None,
    ) -> Item:
        """Select, record exposure for, and return the next item.

        Args:
            theta: Current ability estimate.
            administered_ids: Items already issued in this session (never repeated).
            constraints: Pool filters for this session.
            subject_counts: Administered items per subject, for content balancing.
            config: Per-session configuration; defaults to the selector's own.

        Raises:
            NoEligibleItemsError: If no published, unadministered item matches
                the constraints.
        """
        config = config or self.config
        excluded = set(administered_ids)

        fetched = await self.repository.query_candidates(constraints, list(excluded))
        candidates = [
            item
            for item in fetched
            if item.id not in excluded and matches_constraints(item, constraints)
        ]
        if not candidates:
            raise NoEligibleItemsError(constraints.model_dump(exclude_defaults=True))

        ranked = self.rank(theta, candidates, constraints, subject_counts or {}, config)

        exposure = config.exposure
        if exposure.enabled:
            rates = await asyncio.gather(
                *(self.ledger.get_exposure_rate(c.item.id) for c in ranked)
            )
            chosen = apply_exposure_control(
                ranked,
                {c.item.id: rate for c, rate in zip(ranked, rates)},
                exposure.max_exposure_rate,
                exposure.top_k,
                self.rng,
            )
        else:
            chosen = ranked[0]

        await self.ledger.increment_exposure(chosen.item.id)

        logger.debug(
            "Selected item %s (info=%.4f, score=%.4f) from %d candidates at theta=%.3f",
            chosen.item.id,
            chosen.information,
            chosen.score,
            len(ranked),
            theta,
        )
        return chosen.item
