"""
Stopping rules for adaptive tests.

Rules are evaluated in priority order and the first match wins:
    1. Minimum questions not met -> continue
    2. Maximum questions reached -> stop
    3. Time limit exceeded -> stop
    4. Target precision (SE <= target) -> stop
    5. 95% confidence interval narrow enough -> stop
    6. Otherwise -> continue
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import StoppingRules
from .irt import Z_95

logger = logging.getLogger(__name__)


class StopReason(str, Enum):
    MINIMUM_QUESTIONS_NOT_MET = "minimum_questions_not_met"
    MAXIMUM_QUESTIONS_REACHED = "maximum_questions_reached"
    TIME_LIMIT_EXCEEDED = "time_limit_exceeded"
    TARGET_PRECISION_ACHIEVED = "target_precision_achieved"
    CONFIDENCE_INTERVAL_NARROW = "confidence_interval_narrow"
    CONTINUE_TESTING = "continue_testing"
    # Terminal outcomes decided by the controller rather than the rules above
    ITEM_POOL_EXHAUSTED = "item_pool_exhausted"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class StoppingDecision:
    """Outcome of evaluating the stopping rules.

    Attributes:
        should_stop: Whether the test should terminate now.
        reason: The rule that decided (also set when continuing).
        details: Diagnostics: se, num_responses, elapsed_seconds, ci_width.
    """

    should_stop: bool
    reason: StopReason
    details: dict[str, Any]


def check_stopping_rules(
    num_responses: int,
    standard_error: float,
    elapsed_seconds: float,
    rules: StoppingRules,
) -> StoppingDecision:
    """Evaluate the stopping rules for the current session state.

    Args:
        num_responses: Responses recorded so far.
        standard_error: Current SE of the ability estimate.
        elapsed_seconds: Time since the test started.
        rules: Configured stopping criteria.

    Returns:
        StoppingDecision with the first matching rule.

    Raises:
        ValueError: If any input is negative.
    """
    if num_responses < 0:
        raise ValueError(f"num_responses must be non-negative, got {num_responses}")
    if standard_error < 0:
        raise ValueError(f"standard_error must be non-negative, got {standard_error}")
    if elapsed_seconds < 0:
        raise ValueError(f"elapsed_seconds must be non-negative, got {elapsed_seconds}")

    ci_width = 2 * Z_95 * standard_error
    details: dict[str, Any] = {
        "se": standard_error,
        "num_responses": num_responses,
        "elapsed_seconds": elapsed_seconds,
        "ci_width": ci_width,
    }

    def decide(stop: bool, reason: StopReason) -> StoppingDecision:
        return StoppingDecision(should_stop=stop, reason=reason, details=details)

    if num_responses < rules.min_questions:
        return decide(False, StopReason.MINIMUM_QUESTIONS_NOT_MET)

    if num_responses >= rules.max_questions:
        logger.info("Stopping: maximum questions reached (%d)", num_responses)
        return decide(True, StopReason.MAXIMUM_QUESTIONS_REACHED)

    if elapsed_seconds >= rules.time_limit_seconds:
        logger.info(
            "Stopping: time limit exceeded (%.0fs >= %.0fs)",
            elapsed_seconds,
            rules.time_limit_seconds,
        )
        return decide(True, StopReason.TIME_LIMIT_EXCEEDED)

    if standard_error <= rules.target_se:
        logger.info(
            "Stopping: target precision achieved (SE=%.4f <= %.4f) after %d responses",
            standard_error,
            rules.target_se,
            num_responses,
        )
        return decide(True, StopReason.TARGET_PRECISION_ACHIEVED)

    if ci_width <= rules.ci_width_threshold:
        logger.info(
            "Stopping: confidence interval narrow (width=%.4f <= %.4f)",
            ci_width,
            rules.ci_width_threshold,
        )
        return decide(True, StopReason.CONFIDENCE_INTERVAL_NARROW)

    logger.debug("Continuing: SE=%.4f after %d responses", standard_error, num_responses)
    return decide(False, StopReason.CONTINUE_TESTING)
