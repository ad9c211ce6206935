"""
Test session state.

A ``TestSession`` is the unit of adaptivity: the examinee, the configuration in
force, the ordered items issued so far, the append-only response log and the
current ability estimate. Sessions are plain pydantic models with explicit JSON
serialization so any key-value store can hold them.
"""

from collections import Counter
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .config import CATConfig, SelectionConstraints
from .errors import InvalidSessionStateError
from .estimation import Prior
from .irt import Item


class SessionStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABORTED = "aborted"


_ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.IN_PROGRESS}),
    SessionStatus.IN_PROGRESS: frozenset({SessionStatus.COMPLETED, SessionStatus.ABORTED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.ABORTED: frozenset(),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResponseRecord(BaseModel):
    """One answer to one item, with the ability estimate around it.

    The item's 3PL parameters are copied in so the full history can be
    re-estimated without going back to the item repository.
    """

    model_config = ConfigDict(frozen=True)

    item_id: str
    difficulty: float
    discrimination: float
    guessing: float = 0.0
    subject: str | None = None
    correct: bool
    response_time_seconds: float | None = None
    hints_used: int = 0
    attempts: int = 1
    theta_before: float
    theta_after: float
    se_before: float
    se_after: float
    submitted_at: datetime = Field(default_factory=_utc_now)


class TestSession(BaseModel):
    """Mutable per-examinee session state, owned by the session controller."""

    # keep pytest from collecting this model when imported into test modules
    __test__ = False

    session_id: str
    examinee_id: str
    config: CATConfig = Field(default_factory=CATConfig)
    constraints: SelectionConstraints = Field(default_factory=SelectionConstraints)
    status: SessionStatus = SessionStatus.CREATED

    theta: float
    standard_error: float
    initial_theta: float
    initial_standard_error: float
    # Prior SD for estimation: the profile SE for returning examinees, else config.prior_sd
    prior_sd: float | None = None

    administered_items: list[Item] = Field(default_factory=list)
    responses: list[ResponseRecord] = Field(default_factory=list)

    started_at: float
    ended_at: float | None = None
    end_reason: str | None = None
    constraints_relaxed: bool = False

    @property
    def prior(self) -> Prior:
        sd = self.prior_sd if self.prior_sd is not None else self.config.prior_sd
        return Prior(mean=self.initial_theta, sd=sd)

    @property
    def administered_item_ids(self) -> list[str]:
        return [item.id for item in self.administered_items]

    @property
    def answered_item_ids(self) -> set[str]:
        return {r.item_id for r in self.responses}

    @property
    def pending_item(self) -> Item | None:
        """The issued item still awaiting an answer, if any."""
        if len(self.administered_items) > len(self.responses):
            return self.administered_items[-1]
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.ABORTED)

    @property
    def correct_count(self) -> int:
        return sum(1 for r in self.responses if r.correct)

    def subject_counts(self) -> dict[str, int]:
        """Number of administered items per subject."""
        return dict(Counter(item.subject for item in self.administered_items if item.subject))

    def elapsed_seconds(self, now: float) -> float:
        end = self.ended_at if self.ended_at is not None else now
        return max(0.0, end - self.started_at)

    def transition(self, new_status: SessionStatus) -> None:
        """Move to ``new_status``, enforcing the one-directional lifecycle.

        Raises:
            InvalidSessionStateError: If the transition is not allowed.
        """
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidSessionStateError(self.session_id, self.status.value, new_status.value)
        self.status = new_status

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "TestSession":
        return cls.model_validate_json(raw)
