"""Tests for item selection: ranking, content balancing and exposure control."""

import logging
import random

import pytest

from cat_engine.config import CATConfig, ExposureSettings, SelectionConstraints
from cat_engine.errors import NoEligibleItemsError
from cat_engine.irt import Item, ItemStatus
from cat_engine.selection import (
    ItemCandidate,
    ItemSelector,
    apply_exposure_control,
    content_balance_score,
    matches_constraints,
    rank_by_information,
    rank_by_owen,
)
from cat_engine.stores import InMemoryExposureLedger, InMemoryItemRepository


@pytest.fixture
def pool() -> list[Item]:
    return [
        Item(id="a1", difficulty=-1.5, subject="algebra", grade_min=6, grade_max=8),
        Item(id="a2", difficulty=0.0, subject="algebra", grade_min=6, grade_max=8),
        Item(id="g1", difficulty=0.1, subject="geometry", grade_min=9, grade_max=12),
        Item(id="g2", difficulty=1.5, subject="geometry", grade_min=9, grade_max=12),
        Item(id="c1", difficulty=2.5, subject="calculus", skill="limits"),
        Item(id="d1", difficulty=0.0, discrimination=2.0, status=ItemStatus.DRAFT),
    ]


@pytest.fixture
def ledger() -> InMemoryExposureLedger:
    return InMemoryExposureLedger(clock=lambda: 0.0)


@pytest.fixture
def repository(pool: list[Item]) -> InMemoryItemRepository:
    return InMemoryItemRepository(pool)


def _candidates(*ids: str) -> list[ItemCandidate]:
    return [
        ItemCandidate(item=Item(id=i, difficulty=0.0), information=1 - n / 10, score=1 - n / 10)
        for n, i in enumerate(ids)
    ]


# ---------------------------------------------------------------
# Candidate filtering
# ---------------------------------------------------------------


class TestMatchesConstraints:
    def test_unpublished_items_never_match(self, pool: list[Item]):
        assert not matches_constraints(pool[5], SelectionConstraints())

    def test_subject_filter(self, pool: list[Item]):
        constraints = SelectionConstraints(subjects=("geometry",))
        assert [i.id for i in pool if matches_constraints(i, constraints)] == ["g1", "g2"]

    def test_skill_filter(self, pool: list[Item]):
        constraints = SelectionConstraints(skills=("limits",))
        assert [i.id for i in pool if matches_constraints(i, constraints)] == ["c1"]

    def test_grade_band(self, pool: list[Item]):
        """Items without a grade band are suitable for every grade."""
        constraints = SelectionConstraints(grade_level=7)
        assert [i.id for i in pool if matches_constraints(i, constraints)] == ["a1", "a2", "c1"]

    def test_difficulty_range(self, pool: list[Item]):
        constraints = SelectionConstraints(difficulty_range=(-0.5, 1.5))
        assert [i.id for i in pool if matches_constraints(i, constraints)] == ["a2", "g1", "g2"]

    def test_relaxed_drops_filters(self):
        constraints = SelectionConstraints(
            subjects=("algebra",), grade_level=5, target_difficulty=0.4
        )
        relaxed = constraints.relaxed()
        assert relaxed.is_unconstrained
        assert relaxed.target_difficulty == 0.4


# ---------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------


class TestRanking:
    def test_max_info_prefers_matching_difficulty(self, pool: list[Item]):
        ranked = rank_by_information(0.0, pool[:5])
        assert ranked[0].item.id == "a2"
        assert [c.score for c in ranked] == sorted((c.score for c in ranked), reverse=True)

    def test_ranking_adapts_to_ability(self, pool: list[Item]):
        low = rank_by_information(-2.0, pool[:5])[0]
        high = rank_by_information(2.0, pool[:5])[0]
        assert low.item.id == "a1"
        assert high.item.id in {"g2", "c1"}

    def test_content_score_formula(self):
        item = Item(id="x", difficulty=0.5, subject="algebra")
        mix = {"algebra": 0.4, "geometry": 0.3}
        # no items yet: weight + full deficit, exact difficulty match
        score = content_balance_score(item, 0.5, SelectionConstraints(), mix, {})
        assert abs(score - 0.8) < 1e-12
        # algebra already at 100%: no deficit bonus
        counts = {"algebra": 2}
        score = content_balance_score(item, 0.5, SelectionConstraints(), mix, counts)
        assert abs(score - 0.4) < 1e-12

    def test_content_score_uses_target_difficulty(self):
        item = Item(id="x", difficulty=1.0, subject="geometry")
        constraints = SelectionConstraints(target_difficulty=1.0)
        score = content_balance_score(item, -1.0, constraints, {"geometry": 0.3}, {})
        assert abs(score - 0.6) < 1e-12

    def test_unknown_subject_gets_default_weight(self):
        item = Item(id="x", difficulty=0.0, subject="physics")
        score = content_balance_score(item, 0.0, SelectionConstraints(), {"algebra": 0.4}, {})
        assert abs(score - 0.2) < 1e-12

    def test_owen_prefers_under_represented_subject(self):
        algebra = Item(id="alg", difficulty=0.0, subject="algebra")
        geometry = Item(id="geo", difficulty=0.0, subject="geometry")
        mix = {"algebra": 0.5, "geometry": 0.5}
        ranked = rank_by_owen(
            0.0, [algebra, geometry], SelectionConstraints(), mix, {"algebra": 3}
        )
        assert ranked[0].item.id == "geo"
        assert ranked[0].information == ranked[1].information

    def test_owen_blend_weights(self):
        item = Item(id="x", difficulty=0.0, subject="algebra")
        (candidate,) = rank_by_owen(
            0.0, [item], SelectionConstraints(), {"algebra": 0.4}, {}, 0.7, 0.3
        )
        expected = 0.7 * candidate.information + 0.3 * candidate.content_score
        assert abs(candidate.score - expected) < 1e-12


# ---------------------------------------------------------------
# Exposure control
# ---------------------------------------------------------------


class TestExposureControl:
    def test_over_exposed_items_filtered(self):
        ranked = _candidates("best", "second", "third", "fourth")
        rates = {"best": 0.5, "second": 0.3}
        rng = random.Random(0)
        picks = {apply_exposure_control(ranked, rates, 0.3, 3, rng).item.id for _ in range(200)}
        assert picks == {"third", "fourth"}

    def test_picks_among_top_k(self):
        ranked = _candidates("a", "b", "c", "d", "e")
        rng = random.Random(1)
        picks = {apply_exposure_control(ranked, {}, 0.3, 3, rng).item.id for _ in range(300)}
        assert picks == {"a", "b", "c"}

    def test_filter_waived_when_all_over_exposed(self, caplog: pytest.LogCaptureFixture):
        ranked = _candidates("a", "b")
        with caplog.at_level(logging.WARNING, logger="cat_engine.selection"):
            chosen = apply_exposure_control(
                ranked, {"a": 0.6, "b": 0.4}, 0.3, 3, random.Random(2)
            )
        assert chosen.item.id in {"a", "b"}
        assert "waiving exposure filter" in caplog.text

    def test_empty_candidates_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            apply_exposure_control([], {}, 0.3)

    def test_top_k_must_be_positive(self):
        with pytest.raises(ValueError, match="top_k"):
            apply_exposure_control(_candidates("a"), {}, 0.3, top_k=0)


# ---------------------------------------------------------------
# ItemSelector
# ---------------------------------------------------------------


class TestItemSelector:
    @pytest.mark.asyncio
    async def test_never_repeats_items(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        selector = ItemSelector(repository, ledger, CATConfig(), random.Random(3))
        administered: list[str] = []
        for _ in range(5):
            item = await selector.select(0.0, administered, SelectionConstraints())
            assert item.id not in administered
            administered.append(item.id)
        assert sorted(administered) == ["a1", "a2", "c1", "g1", "g2"]

    @pytest.mark.asyncio
    async def test_exhausted_pool_raises(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        selector = ItemSelector(repository, ledger, CATConfig())
        with pytest.raises(NoEligibleItemsError):
            await selector.select(0.0, ["a1", "a2", "g1", "g2", "c1"], SelectionConstraints())

    @pytest.mark.asyncio
    async def test_constraints_with_no_match_raise(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        selector = ItemSelector(repository, ledger, CATConfig())
        with pytest.raises(NoEligibleItemsError) as exc_info:
            await selector.select(0.0, [], SelectionConstraints(subjects=("chemistry",)))
        assert exc_info.value.filters == {"subjects": ("chemistry",)}

    @pytest.mark.asyncio
    async def test_selection_records_exposure(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        selector = ItemSelector(repository, ledger, CATConfig())
        item = await selector.select(0.0, [], SelectionConstraints())
        assert ledger.total_served == 1
        assert await ledger.get_exposure_rate(item.id) == 1.0

    @pytest.mark.asyncio
    async def test_exposure_disabled_picks_best(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        config = CATConfig(exposure=ExposureSettings(enabled=False))
        selector = ItemSelector(repository, ledger, config, random.Random(4))
        for _ in range(20):
            assert (await selector.select(0.0, [], SelectionConstraints())).id == "a2"

    @pytest.mark.asyncio
    async def test_repository_results_are_refiltered(self, ledger: InMemoryExposureLedger):
        """Items a repository returns despite exclusions or filters are dropped."""

        class LooseRepository:
            def __init__(self, items: list[Item]) -> None:
                self.items = items

            async def query_candidates(self, filters, excluded_ids):
                return list(self.items)

            async def get_item_content(self, item_id):
                return {}

        items = [
            Item(id="used", difficulty=0.0),
            Item(id="draft", difficulty=0.0, status=ItemStatus.DRAFT),
            Item(id="fresh", difficulty=2.0),
        ]
        selector = ItemSelector(LooseRepository(items), ledger, CATConfig())
        assert (await selector.select(0.0, ["used"], SelectionConstraints())).id == "fresh"

    def test_unknown_algorithm_rejected(
        self, repository: InMemoryItemRepository, ledger: InMemoryExposureLedger
    ):
        config = CATConfig.model_construct(selection_algorithm="random")
        selector = ItemSelector(repository, ledger, CATConfig())
        with pytest.raises(ValueError, match="Unknown selection algorithm"):
            selector.rank(0.0, [], SelectionConstraints(), {}, config)

    @pytest.mark.asyncio
    async def test_exposure_ceiling_respected_over_1000_runs(self, ledger: InMemoryExposureLedger):
        """No pick may exceed the ceiling unless every candidate already does."""
        items = [
            Item(id=f"q{i}", difficulty=-1.0 + i * 0.25, discrimination=1.2) for i in range(9)
        ]
        repository = InMemoryItemRepository(items)
        selector = ItemSelector(repository, ledger, CATConfig(), random.Random(42))
        ceiling = CATConfig().exposure.max_exposure_rate

        picks: dict[str, int] = {}
        for _ in range(1000):
            rates = ledger.exposure_rates()
            item = await selector.select(0.0, [], SelectionConstraints())
            all_over = all(rates.get(i.id, 0.0) >= ceiling for i in items)
            assert rates.get(item.id, 0.0) < ceiling or all_over
            picks[item.id] = picks.get(item.id, 0) + 1

        assert ledger.total_served == 1000
        # the single most informative item is not served every time
        assert max(picks.values()) < 1000 * ceiling + 10
