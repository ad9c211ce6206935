"""Computerized adaptive testing engine built on the 3PL IRT model."""

from .config import CATConfig, ExposureSettings, SelectionConstraints, StoppingRules
from .controller import AnswerResult, FinalResult, NextItem, TestSessionController
from .irt import Item, ItemStatus

__version__ = "1.0.0"

__all__ = [
    "AnswerResult",
    "CATConfig",
    "ExposureSettings",
    "FinalResult",
    "Item",
    "ItemStatus",
    "NextItem",
    "SelectionConstraints",
    "StoppingRules",
    "TestSessionController",
]
