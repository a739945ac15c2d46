"""
Feature flag definitions and decisions.

Definitions arrive as JSON from the local evaluation endpoint and are
validated with pydantic. A definition that fails validation is skipped
(with a warning) so one bad flag never blocks the others.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import FlagDefinitionError


logger = logging.getLogger(__name__)


FlagValue = Union[bool, str]

PROPERTY_OPERATORS = frozenset({
    "exact",
    "is_not",
    "is_set",
    "is_not_set",
    "icontains",
    "not_icontains",
    "regex",
    "not_regex",
    "gt",
    "gte",
    "lt",
    "lte",
    "is_date_before",
    "is_date_after",
    "flag_evaluates_to",
})

# Tolerance for weights like 33.33 + 33.33 + 33.34
_WEIGHT_EPSILON = 1e-6


class PropertyFilter(BaseModel):
    """One property test inside a condition or cohort."""

    model_config = ConfigDict(extra="ignore")

    key: str
    value: Any = None
    operator: str = "exact"
    type: str = "person"  # person | group | cohort | flag
    negation: bool = False
    dependency_chain: list[str] | None = None
    group_type_index: int | None = None

    @field_validator("operator", mode="before")
    @classmethod
    def _default_operator(cls, v: Any) -> Any:
        return "exact" if v is None else v

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, v: str) -> str:
        if v not in PROPERTY_OPERATORS:
            raise ValueError(f"unknown operator {v!r}")
        return v


class PropertyGroup(BaseModel):
    """AND/OR group of filters or nested groups (cohort definitions)."""

    model_config = ConfigDict(extra="ignore")

    type: str = "AND"
    # Required, so a bare filter dict never validates as an empty group
    values: list[Union[PropertyGroup, PropertyFilter]]

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        if v not in ("AND", "OR"):
            raise ValueError(f"unknown group type {v!r}")
        return v


class FlagCondition(BaseModel):
    """A release condition: all filters must match, then the rollout applies."""

    model_config = ConfigDict(extra="ignore")

    properties: list[PropertyFilter] = Field(default_factory=list)
    rollout_percentage: float | None = None
    variant: str | None = None

    @field_validator("properties", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("rollout_percentage")
    @classmethod
    def _percentage_range(cls, v: float | None) -> float | None:
        if v is not None and not 0 <= v <= 100:
            raise ValueError(f"rollout_percentage {v} outside 0..100")
        return v


class MultivariateVariant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    name: str | None = None
    rollout_percentage: float = 0.0

    @field_validator("rollout_percentage")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"variant weight {v} is negative")
        return v


class Multivariate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    variants: list[MultivariateVariant] = Field(default_factory=list)

    @model_validator(mode="after")
    def _weights_bounded(self) -> Multivariate:
        total = sum(v.rollout_percentage for v in self.variants)
        if total > 100 + _WEIGHT_EPSILON:
            raise ValueError(f"variant weights sum to {total}, more than 100")
        return self


class FlagFilters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    groups: list[FlagCondition] = Field(default_factory=list)
    multivariate: Multivariate | None = None
    payloads: dict[str, Any] = Field(default_factory=dict)
    aggregation_group_type_index: int | None = None

    @field_validator("groups", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("payloads", mode="before")
    @classmethod
    def _none_is_empty_dict(cls, v: Any) -> Any:
        return {} if v is None else v


class FlagDefinition(BaseModel):
    """A feature flag as served by the local evaluation endpoint."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    key: str
    active: bool = True
    ensure_experience_continuity: bool = False
    filters: FlagFilters = Field(default_factory=FlagFilters)

    @field_validator("filters", mode="before")
    @classmethod
    def _none_is_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def conditions(self) -> list[FlagCondition]:
        return self.filters.groups

    @property
    def variants(self) -> list[MultivariateVariant]:
        return self.filters.multivariate.variants if self.filters.multivariate else []

    def payload_for(self, value: FlagValue | None) -> Any:
        """Payload attached to ``value`` (``"true"`` for boolean flags)."""
        if value is None or value is False:
            return None
        lookup = "true" if value is True else str(value)
        return parse_payload(self.filters.payloads.get(lookup))

    @classmethod
    def from_raw(cls, raw: Any) -> FlagDefinition:
        """Validate a raw definition, raising FlagDefinitionError."""
        key = raw.get("key") if isinstance(raw, dict) else None
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise FlagDefinitionError(key, _summarize(e)) from e


PropertyGroup.model_rebuild()


def parse_flag_definitions(raw_flags: list[Any]) -> list[FlagDefinition]:
    """Parse definitions, skipping malformed ones with a warning."""
    flags = []
    for raw in raw_flags:
        try:
            flags.append(FlagDefinition.from_raw(raw))
        except FlagDefinitionError as e:
            logger.warning(f"Skipping feature flag: {e}")
    return flags


def parse_cohorts(raw_cohorts: dict[str, Any]) -> dict[str, PropertyGroup]:
    """Parse cohort property groups, skipping malformed ones with a warning."""
    cohorts = {}
    for cohort_id, raw in raw_cohorts.items():
        try:
            cohorts[str(cohort_id)] = PropertyGroup.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Skipping cohort {cohort_id}: {_summarize(e)}")
    return cohorts


def parse_payload(payload: Any) -> Any:
    """Payloads may arrive JSON-encoded; decode them when possible."""
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except ValueError:
            return payload
    return payload


def _summarize(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


class FlagSource(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    DEFAULT = "default"


@dataclass(frozen=True)
class FlagDecision:
    """The outcome of evaluating one flag for one user."""
    key: str
    value: FlagValue | None
    source: FlagSource
    payload: Any = None

    @property
    def enabled(self) -> bool:
        return bool(self.value)


class LocalEvaluationResponse(BaseModel):
    """Body of ``GET /api/feature_flag/local_evaluation``."""

    model_config = ConfigDict(extra="ignore")

    flags: list[Any]
    group_type_mapping: dict[str, str] = Field(default_factory=dict)
    cohorts: dict[str, Any] = Field(default_factory=dict)

    @field_validator("group_type_mapping", "cohorts", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v
