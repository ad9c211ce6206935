"""Tests for stopping-rule precedence."""

import pytest
from pydantic import ValidationError

from cat_engine.config import StoppingRules
from cat_engine.stopping import StopReason, check_stopping_rules


@pytest.fixture
def rules() -> StoppingRules:
    return StoppingRules(
        min_questions=10,
        max_questions=20,
        time_limit_seconds=600,
        target_se=0.3,
        ci_width_threshold=1.0,
    )


class TestStoppingRules:
    def test_minimum_not_met_continues_even_when_precise(self, rules: StoppingRules):
        decision = check_stopping_rules(5, 0.1, 0.0, rules)
        assert not decision.should_stop
        assert decision.reason == StopReason.MINIMUM_QUESTIONS_NOT_MET

    def test_minimum_not_met_beats_time_limit(self, rules: StoppingRules):
        decision = check_stopping_rules(3, 0.9, 10_000, rules)
        assert not decision.should_stop
        assert decision.reason == StopReason.MINIMUM_QUESTIONS_NOT_MET

    def test_maximum_reached_stops(self, rules: StoppingRules):
        decision = check_stopping_rules(20, 0.9, 0.0, rules)
        assert decision.should_stop
        assert decision.reason == StopReason.MAXIMUM_QUESTIONS_REACHED

    def test_maximum_beats_time_and_precision(self, rules: StoppingRules):
        decision = check_stopping_rules(20, 0.1, 10_000, rules)
        assert decision.reason == StopReason.MAXIMUM_QUESTIONS_REACHED

    def test_time_limit_stops(self, rules: StoppingRules):
        decision = check_stopping_rules(12, 0.9, 600, rules)
        assert decision.should_stop
        assert decision.reason == StopReason.TIME_LIMIT_EXCEEDED

    def test_time_limit_beats_precision(self, rules: StoppingRules):
        decision = check_stopping_rules(12, 0.1, 601, rules)
        assert decision.reason == StopReason.TIME_LIMIT_EXCEEDED

    def test_target_precision_stops(self, rules: StoppingRules):
        decision = check_stopping_rules(12, 0.3, 60, rules)
        assert decision.should_stop
        assert decision.reason == StopReason.TARGET_PRECISION_ACHIEVED

    def test_narrow_interval_stops(self):
        """A loose SE target still stops once the 95% CI is narrow enough."""
        rules = StoppingRules(
            min_questions=1, max_questions=50, target_se=0.1, ci_width_threshold=1.2
        )
        decision = check_stopping_rules(5, 0.3, 0.0, rules)
        assert decision.should_stop
        assert decision.reason == StopReason.CONFIDENCE_INTERVAL_NARROW
        assert abs(decision.details["ci_width"] - 2 * 1.96 * 0.3) < 1e-12

    def test_continue_otherwise(self, rules: StoppingRules):
        decision = check_stopping_rules(12, 0.5, 60, rules)
        assert not decision.should_stop
        assert decision.reason == StopReason.CONTINUE_TESTING

    def test_details_reported(self, rules: StoppingRules):
        details = check_stopping_rules(12, 0.5, 60, rules).details
        assert details["se"] == 0.5
        assert details["num_responses"] == 12
        assert details["elapsed_seconds"] == 60

    @pytest.mark.parametrize(
        "num_responses,se,elapsed",
        [(-1, 0.5, 0.0), (5, -0.1, 0.0), (5, 0.5, -1.0)],
    )
    def test_negative_inputs_rejected(
        self, rules: StoppingRules, num_responses: int, se: float, elapsed: float
    ):
        with pytest.raises(ValueError):
            check_stopping_rules(num_responses, se, elapsed, rules)


class TestStoppingRulesConfig:
    def test_defaults(self):
        rules = StoppingRules()
        assert rules.min_questions == 10
        assert rules.max_questions == 30
        assert rules.time_limit_seconds == 1800
        assert rules.target_se == 0.3

    def test_max_below_min_rejected(self):
        with pytest.raises(ValidationError, match="max_questions"):
            StoppingRules(min_questions=10, max_questions=5)
