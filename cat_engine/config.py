"""
Engine configuration.

All settings are immutable pydantic models passed into components at
construction. Per-test overrides produce a new validated copy via
``CATConfig.with_overrides``; nothing is mutated at runtime.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_SUBJECT_DISTRIBUTION = {
    "algebra": 0.4,
    "geometry": 0.3,
    "calculus": 0.3,
}


class StoppingRules(BaseModel):
    """Termination criteria, evaluated in the order listed."""

    model_config = ConfigDict(frozen=True)

    min_questions: int = Field(10, ge=1, le=500)
    max_questions: int = Field(30, ge=1, le=500)
    time_limit_seconds: float = Field(1800.0, gt=0, description="Wall-clock budget per test")
    target_se: float = Field(0.3, gt=0, le=5.0, description="Stop once SE(theta) <= target_se")
    ci_width_threshold: float = Field(
        1.0, ge=0, description="Stop once the 95% CI width is at most this value"
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "StoppingRules":
        if self.max_questions < self.min_questions:
            raise ValueError(
                f"max_questions ({self.max_questions}) must be >= "
                f"min_questions ({self.min_questions})"
            )
        return self


class ExposureSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_exposure_rate: float = Field(0.3, gt=0, le=1.0)
    top_k: int = Field(3, ge=1, le=50, description="Randomesque pick among the top-k items")
    window_seconds: int = Field(86_400, ge=1, description="Exposure counters decay per window")


class SelectionConstraints(BaseModel):
    """Content filters applied to the candidate pool for one test."""

    model_config = ConfigDict(frozen=True)

    subjects: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    grade_level: int | None = None
    difficulty_range: tuple[float, float] | None = None
    target_difficulty: float | None = None

    @model_validator(mode="after")
    def _check_range(self) -> "SelectionConstraints":
        if self.difficulty_range is not None:
            low, high = self.difficulty_range
            if low > high:
                raise ValueError(f"difficulty_range lower bound {low} exceeds upper bound {high}")
        return self

    @property
    def is_unconstrained(self) -> bool:
        return (
            not self.subjects
            and not self.skills
            and self.grade_level is None
            and self.difficulty_range is None
        )

    def relaxed(self) -> "SelectionConstraints":
        """Drop every pool filter, keeping only the difficulty target used for scoring."""
        return SelectionConstraints(target_difficulty=self.target_difficulty)


class CATConfig(BaseModel):
    """Adaptive testing engine configuration."""

    model_config = ConfigDict(frozen=True)

    # Ability scale
    default_ability: float = 0.0
    default_standard_error: float = Field(1.0, gt=0)
    theta_min: float = -4.0
    theta_max: float = 4.0

    # Estimation
    estimator: Literal["mle", "eap"] = "eap"
    max_iterations: int = Field(50, ge=1, le=1000)
    convergence_threshold: float = Field(0.001, gt=0)
    quadrature_points: int = Field(61, ge=3, le=1001)
    prior_sd: float = Field(1.0, gt=0)

    # Selection
    selection_algorithm: Literal["maximum_information", "owen"] = "maximum_information"
    information_weight: float = Field(0.7, ge=0)
    content_weight: float = Field(0.3, ge=0)
    subject_distribution: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SUBJECT_DISTRIBUTION)
    )

    stopping: StoppingRules = Field(default_factory=StoppingRules)
    exposure: ExposureSettings = Field(default_factory=ExposureSettings)

    session_ttl_seconds: int = Field(3600, ge=1)

    @model_validator(mode="after")
    def _check_scale(self) -> "CATConfig":
        if self.theta_min >= self.theta_max:
            raise ValueError(
                f"theta_min ({self.theta_min}) must be below theta_max ({self.theta_max})"
            )
        if not self.theta_min <= self.default_ability <= self.theta_max:
            raise ValueError(
                f"default_ability ({self.default_ability}) outside "
                f"[{self.theta_min}, {self.theta_max}]"
            )
        for subject, weight in self.subject_distribution.items():
            if weight < 0:
                raise ValueError(f"subject_distribution weight for '{subject}' is negative")
        return self

    def with_overrides(
        self,
        *,
        stopping: dict[str, Any] | None = None,
        exposure: dict[str, Any] | None = None,
        **fields: Any,
    ) -> "CATConfig":
        """Return a validated copy with the given top-level and nested fields replaced."""
        data = self.model_dump()
        data.update({k: v for k, v in fields.items() if v is not None})
        if stopping:
            data["stopping"].update({k: v for k, v in stopping.items() if v is not None})
        if exposure:
            data["exposure"].update({k: v for k, v in exposure.items() if v is not None})
        return CATConfig.model_validate(data)
