"""
Collaborator interfaces consumed by the engine.

The engine owns no storage of its own. Item content, exposure counters,
session state, grading and examinee profiles are supplied through these
protocols; ``stores`` and ``redis_store`` provide implementations.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .config import SelectionConstraints
from .irt import Item

if TYPE_CHECKING:
    from .controller import FinalResult
    from .session import TestSession


@runtime_checkable
class ItemRepository(Protocol):
    async def query_candidates(
        self, filters: SelectionConstraints, excluded_ids: Sequence[str]
    ) -> list[Item]:
        """Published items matching ``filters`` whose ids are not in ``excluded_ids``."""
        ...

    async def get_item_content(self, item_id: str) -> dict[str, Any]: ...


@runtime_checkable
class ExposureLedger(Protocol):
    """Per-item usage counters shared by every active session."""

    async def get_exposure_rate(self, item_id: str) -> float:
        """Times served divided by total items served in the current window."""
        ...

    async def increment_exposure(self, item_id: str) -> int:
        """Atomically increment the item's counter and return the new count."""
        ...


@runtime_checkable
class SessionStore(Protocol):
    async def load(self, session_id: str) -> "TestSession | None": ...

    async def save(self, session: "TestSession") -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def count_active(self) -> int:
        """Sessions whose TTL has not run out."""
        ...


@runtime_checkable
class ResponseEvaluator(Protocol):
    async def evaluate(self, item: Item, raw_response: Any) -> bool: ...


@runtime_checkable
class ExamineeProfileStore(Protocol):
    async def get_prior_ability(self, examinee_id: str) -> tuple[float, float] | None:
        """Last known (theta, SE) for the examinee, or None for a new examinee."""
        ...

    async def set_ability(self, examinee_id: str, theta: float, standard_error: float) -> None: ...


@runtime_checkable
class SessionArchive(Protocol):
    """Long-term persistence for finished sessions."""

    async def archive(self, session: "TestSession", result: "FinalResult") -> None: ...
