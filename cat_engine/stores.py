"""
In-memory collaborators.

Single-process implementations of the collaborator protocols, used by the
HTTP server, the simulator and the tests. ``redis_store`` provides shared
implementations of the session store and exposure ledger for multi-process
deployments.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from .config import SelectionConstraints
from .irt import Item
from .selection import matches_constraints
from .session import TestSession

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class InMemoryItemRepository:
    """Calibrated item pool with optional per-item content (stem, options, answer key)."""

    def __init__(self, items: Iterable[Item] = ()) -> None:
        self._items: dict[str, Item] = {}
        self._contents: dict[str, dict[str, Any]] = {}
        for item in items:
            self.add_item(item)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def add_item(self, item: Item, content: dict[str, Any] | None = None) -> None:
        self._items[item.id] = item
        if content is not None:
            self._contents[item.id] = dict(content)

    def clear(self) -> None:
        self._items.clear()
        self._contents.clear()

    async def query_candidates(
        self, filters: SelectionConstraints, excluded_ids: Sequence[str]
    ) -> list[Item]:
        excluded = set(excluded_ids)
        return [
            item
            for item in self._items.values()
            if item.id not in excluded and matches_constraints(item, filters)
        ]

    async def get_item_content(self, item_id: str) -> dict[str, Any]:
        return dict(self._contents.get(item_id, {}))


class InMemoryExposureLedger:
    """Windowed per-item exposure counters.

    Thread-safe. Counters reset when the clock enters a new window
    (default 24h), so exposure rates decay rather than accumulate forever.

    Exposure rate is defined as:
        rate_i = selections_i / total_selections
    """

    def __init__(self, window_seconds: int = 86_400, clock: Clock = time.time) -> None:
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: dict[str, int] = {}
        self._total = 0
        self._window: int | None = None

    def _roll_window(self) -> None:
        # Caller holds the lock
        window = int(self._clock() // self.window_seconds)
        if window != self._window:
            if self._window is not None and self._total:
                logger.info("Exposure window rolled over; resetting %d counters", len(self._counts))
            self._counts.clear()
            self._total = 0
            self._window = window

    async def get_exposure_rate(self, item_id: str) -> float:
        with self._lock:
            self._roll_window()
            if self._total == 0:
                return 0.0
            return self._counts.get(item_id, 0) / self._total

    async def increment_exposure(self, item_id: str) -> int:
        with self._lock:
            self._roll_window()
            count = self._counts.get(item_id, 0) + 1
            self._counts[item_id] = count
            self._total += 1
            return count

    def exposure_rates(self) -> dict[str, float]:
        """Snapshot of exposure rates for every item served in the current window."""
        with self._lock:
            self._roll_window()
            if self._total == 0:
                return {}
            return {item_id: n / self._total for item_id, n in self._counts.items()}

    @property
    def total_served(self) -> int:
        with self._lock:
            self._roll_window()
            return self._total


class InMemorySessionStore:
    """Session store holding serialized sessions with a TTL.

    Sessions are stored as JSON so every load is a fresh copy, the same as a
    remote key-value store would give. Expired entries are evicted lazily.
    """

    def __init__(self, ttl_seconds: int = 3600, clock: Clock = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._entries)

    def evict_expired(self) -> int:
        """Remove entries past their TTL. Returns the number evicted."""
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._entries.items() if expires_at <= now]
        for sid in expired:
            del self._entries[sid]
        if expired:
            logger.info("Evicted %d expired test sessions", len(expired))
        return len(expired)

    async def count_active(self) -> int:
        return len(self)

    async def load(self, session_id: str) -> TestSession | None:
        entry = self._entries.get(session_id)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[session_id]
            return None
        return TestSession.from_json(raw)

    async def save(self, session: TestSession) -> None:
        self._entries[session.session_id] = (session.to_json(), self._clock() + self.ttl_seconds)

    async def delete(self, session_id: str) -> None:
        self._entries.pop(session_id, None)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._abilities: dict[str, tuple[float, float]] = {}

    async def get_prior_ability(self, examinee_id: str) -> tuple[float, float] | None:
        return self._abilities.get(examinee_id)

    async def set_ability(self, examinee_id: str, theta: float, standard_error: float) -> None:
        self._abilities[examinee_id] = (theta, standard_error)

    def clear(self) -> None:
        self._abilities.clear()


class InMemorySessionArchive:
    """Keeps finished sessions and their final results, keyed by session id."""

    def __init__(self) -> None:
        self.records: dict[str, tuple[TestSession, Any]] = {}

    async def archive(self, session: TestSession, result: Any) -> None:
        self.records[session.session_id] = (session, result)


def _answer(raw_response: Any, key: str) -> Any:
    if isinstance(raw_response, dict):
        return raw_response.get(key)
    return raw_response


class AnswerKeyEvaluator:
    """Grades responses against the answer key stored in item content.

    Supported content types:
        - "multiple_choice": ``options`` list of ``{"id", "is_correct"}``;
          response is the option id or ``{"selected_option": id}``.
        - "short_answer": ``correct_answer`` (number or text) and optional
          ``tolerance`` for numbers; response is the answer or ``{"answer": ...}``.
        - "true_false": ``correct_answer`` bool; response is a bool or ``{"answer": bool}``.
        - "pre_graded" (default when content has no type): response is a bool
          or ``{"correct": bool}`` already graded by the caller.
    """

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def evaluate(self, item: Item, raw_response: Any) -> bool:
        content = await self.repository.get_item_content(item.id)
        item_type = content.get("type", "pre_graded")

        if item_type == "multiple_choice":
            return self._multiple_choice(content, raw_response)
        if item_type == "short_answer":
            return self._short_answer(content, raw_response)
        if item_type == "true_false":
            return _answer(raw_response, "answer") is content.get("correct_answer")
        if item_type == "pre_graded":
            return _answer(raw_response, "correct") is True
        raise ValueError(f"Unsupported item type: {item_type}")

    @staticmethod
    def _multiple_choice(content: dict[str, Any], raw_response: Any) -> bool:
        correct = next(
            (opt.get("id") for opt in content.get("options", []) if opt.get("is_correct")),
            None,
        )
        if correct is None:
            raise ValueError("Multiple-choice item has no correct option")
        return _answer(raw_response, "selected_option") == correct

    @staticmethod
    def _short_answer(content: dict[str, Any], raw_response: Any) -> bool:
        expected = content.get("correct_answer")
        answer = _answer(raw_response, "answer")
        if answer is None or expected is None:
            return False

        if isinstance(expected, (int, float)) and not isinstance(expected, bool):
            try:
                value = float(answer)
            except (TypeError, ValueError):
                return False
            return abs(value - expected) <= float(content.get("tolerance", 0))

        return str(answer).strip().lower() == str(expected).strip().lower()
