"""
Simulated adaptive tests.

Runs the real session controller against a simulated examinee with a known
ability, using in-memory collaborators. Useful for demonstrating convergence
and for checking a configuration before putting it in front of examinees.
"""

import logging
import random
from dataclasses import dataclass, field

from .config import DEFAULT_SUBJECT_DISTRIBUTION, CATConfig
from .controller import FinalResult, TestSessionController
from .irt import Item, probability
from .stores import (
    AnswerKeyEvaluator,
    InMemoryExposureLedger,
    InMemoryItemRepository,
    InMemoryProfileStore,
    InMemorySessionStore,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulationStep:
    step: int
    item_id: str
    difficulty: float
    correct: bool
    theta: float
    standard_error: float


@dataclass
class SimulationResult:
    true_theta: float
    final_theta: float
    standard_error: float
    estimation_error: float
    questions_used: int
    stop_reason: str
    history: list[SimulationStep] = field(default_factory=list)


def generate_item_pool(size: int, rng: random.Random) -> list[Item]:
    """Random calibrated pool spread across the default subjects."""
    subjects = list(DEFAULT_SUBJECT_DISTRIBUTION)
    return [
        Item(
            id=f"sim_{i}",
            difficulty=rng.uniform(-2.5, 2.5),
            discrimination=rng.uniform(0.5, 2.0),
            guessing=rng.uniform(0.0, 0.25),
            subject=subjects[i % len(subjects)],
        )
        for i in range(size)
    ]


async def simulate_test(
    true_theta: float,
    config: CATConfig | None = None,
    pool: list[Item] | None = None,
    pool_size: int = 100,
    seed: int | None = None,
) -> SimulationResult:
    """Administer one adaptive test to a simulated examinee.

    The examinee answers an item correctly with probability P(true_theta)
    under the 3PL model.

    Args:
        true_theta: The examinee's actual ability.
        config: Engine configuration; defaults to ``CATConfig()``.
        pool: Item pool to draw from; a random pool is generated if omitted.
        pool_size: Size of the generated pool.
        seed: Seed for pool generation, selection and simulated answers.
    """
    config = config or CATConfig()
    rng = random.Random(seed)
    if pool is None:
        pool = generate_item_pool(pool_size, rng)
    repository = InMemoryItemRepository(pool)

    controller = TestSessionController(
        repository=repository,
        ledger=InMemoryExposureLedger(config.exposure.window_seconds),
        store=InMemorySessionStore(config.session_ttl_seconds),
        evaluator=AnswerKeyEvaluator(repository),
        profiles=InMemoryProfileStore(),
        config=config,
        rng=rng,
    )

    session = await controller.start_test("simulated-examinee")
    history: list[SimulationStep] = []

    while True:
        step = await controller.get_next_item(session.session_id)
        if isinstance(step, FinalResult):
            result = step
            break

        item = step.item
        correct = rng.random() < probability(
            true_theta, item.difficulty, item.discrimination, item.guessing
        )
        answer = await controller.submit_answer(session.session_id, item.id, correct)
        history.append(
            SimulationStep(
                step=len(history) + 1,
                item_id=item.id,
                difficulty=item.difficulty,
                correct=correct,
                theta=answer.theta,
                standard_error=answer.standard_error,
            )
        )

    logger.info(
        "Simulation: true theta=%.3f, estimate=%.3f (SE=%.3f) after %d items (%s)",
        true_theta,
        result.theta,
        result.standard_error,
        len(history),
        result.reason.value,
    )

    return SimulationResult(
        true_theta=true_theta,
        final_theta=result.theta,
        standard_error=result.standard_error,
        estimation_error=abs(result.theta - true_theta),
        questions_used=len(history),
        stop_reason=result.reason.value,
        history=history,
    )
