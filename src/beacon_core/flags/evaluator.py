"""
Local feature flag evaluation.

Conditions are checked in order and the first match wins. A condition
matches when every property filter matches and the user's hash bucket is
inside its rollout percentage. Multivariate flags then pick a variant from
a second, independently salted hash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..clock import Clock
from ..errors import InconclusiveMatchError, RequiresServerEvaluation
from .hashing import VARIANT_SALT, bucket, in_rollout
from .matching import match_cohort, match_property
from .models import FlagCondition, FlagDefinition, FlagValue, PropertyFilter, PropertyGroup


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantRange:
    key: str
    value_min: float
    value_max: float


@dataclass(frozen=True)
class LocalEvaluation:
    """Result of evaluating every loaded flag for one user."""
    values: dict[str, FlagValue]
    payloads: dict[str, Any]
    # Keys that could not be decided locally
    inconclusive: tuple[str, ...] = ()

    @property
    def fallback_required(self) -> bool:
        return bool(self.inconclusive)


@dataclass
class FlagEvaluator:
    """
    Evaluates flags against the currently loaded definitions.

    Definitions are swapped in wholesale by ``load()``; evaluation never
    mutates them.
    """
    clock: Clock = field(default_factory=Clock)

    _flags: dict[str, FlagDefinition] = field(default_factory=dict, init=False)
    _group_type_mapping: dict[str, str] = field(default_factory=dict, init=False)
    _cohorts: dict[str, PropertyGroup] = field(default_factory=dict, init=False)
    _loaded: bool = field(default=False, init=False)

    def load(
        self,
        flags: Iterable[FlagDefinition],
        group_type_mapping: dict[str, str] | None = None,
        cohorts: dict[str, PropertyGroup] | None = None,
    ) -> None:
        self._flags = {flag.key: flag for flag in flags}
        self._group_type_mapping = dict(group_type_mapping or {})
        self._cohorts = dict(cohorts or {})
        self._loaded = True

        continuity = [k for k, f in self._flags.items() if f.ensure_experience_continuity]
        if continuity:
            logger.warning(
                f"{len(continuity)} flag(s) use experience continuity and will always "
                f"be evaluated remotely: {', '.join(continuity)}"
            )

    def clear(self) -> None:
        """Drop all definitions (e.g. when the project is over quota)."""
        self._flags = {}
        self._group_type_mapping = {}
        self._cohorts = {}

    @property
    def loaded(self) -> bool:
        """True once definitions have been loaded successfully at least once."""
        return self._loaded

    @property
    def flags(self) -> dict[str, FlagDefinition]:
        return dict(self._flags)

    def get_flag(self, key: str) -> FlagDefinition | None:
        return self._flags.get(key)

    def evaluate(
        self,
        flag: FlagDefinition,
        distinct_id: str,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
        evaluation_cache: dict[str, FlagValue | None] | None = None,
    ) -> FlagValue:
        """
        Decide a flag locally.

        Raises:
            InconclusiveMatchError: The supplied properties aren't enough.
            RequiresServerEvaluation: The flag depends on server-only data.
        """
        if flag.ensure_experience_continuity:
            raise InconclusiveMatchError("Flag has experience continuity enabled")
        if not flag.active:
            return False

        groups = groups or {}
        evaluation_cache = {} if evaluation_cache is None else evaluation_cache
        group_index = flag.filters.aggregation_group_type_index

        if group_index is not None:
            group_name = self._group_type_mapping.get(str(group_index))
            if not group_name:
                logger.warning(f"Unknown group type index {group_index} for flag {flag.key}")
                raise InconclusiveMatchError("Flag has unknown group type index")
            if group_name not in groups:
                logger.debug(f"Can't compute group flag {flag.key} without group {group_name}")
                return False
            properties = (group_properties or {}).get(group_name, {})
            return self.match_flag_properties(flag, groups[group_name], properties, evaluation_cache)

        return self.match_flag_properties(flag, distinct_id, person_properties or {}, evaluation_cache)

    def evaluate_all(
        self,
        distinct_id: str,
        groups: dict[str, str] | None = None,
        person_properties: dict[str, Any] | None = None,
        group_properties: dict[str, dict[str, Any]] | None = None,
    ) -> LocalEvaluation:
        values: dict[str, FlagValue] = {}
        payloads: dict[str, Any] = {}
        inconclusive = []
        evaluation_cache: dict[str, FlagValue | None] = {}

        for key, flag in self._flags.items():
            try:
                value = self.evaluate(
                    flag, distinct_id, groups, person_properties, group_properties, evaluation_cache
                )
            except (InconclusiveMatchError, RequiresServerEvaluation) as e:
                logger.debug(f"{type(e).__name__} when computing flag {key} locally: {e}")
                inconclusive.append(key)
                continue
            values[key] = value
            payload = flag.payload_for(value)
            if payload is not None:
                payloads[key] = payload

        return LocalEvaluation(values=values, payloads=payloads, inconclusive=tuple(inconclusive))

    def match_flag_properties(
        self,
        flag: FlagDefinition,
        distinct_id: str,
        properties: dict[str, Any],
        evaluation_cache: dict[str, FlagValue | None] | None = None,
    ) -> FlagValue:
        evaluation_cache = {} if evaluation_cache is None else evaluation_cache
        inconclusive = False

        for condition in flag.conditions:
            try:
                if not self.is_condition_match(flag, distinct_id, condition, properties, evaluation_cache):
                    continue
            except RequiresServerEvaluation:
                raise
            except InconclusiveMatchError as e:
                logger.debug(f"Condition on {flag.key} inconclusive: {e}")
                inconclusive = True
                continue

            override = condition.variant
            if override and any(v.key == override for v in flag.variants):
                return override
            if not flag.variants:
                return True
            # Weights under 100 leave a gap past the last range, which is off
            return self.get_matching_variant(flag, distinct_id) or False

        if inconclusive:
            raise InconclusiveMatchError(
                "Can't determine if feature flag is enabled or not with given properties"
            )
        return False

    def is_condition_match(
        self,
        flag: FlagDefinition,
        distinct_id: str,
        condition: FlagCondition,
        properties: dict[str, Any],
        evaluation_cache: dict[str, FlagValue | None],
    ) -> bool:
        now = self.clock.utcnow()
        for prop in condition.properties:
            if prop.type == "cohort":
                matches = match_cohort(prop, properties, self._cohorts, now)
            elif prop.type == "flag":
                matches = self._evaluate_dependency(prop, distinct_id, properties, evaluation_cache)
            else:
                matches = match_property(prop, properties, now)
            if not matches:
                return False

        if condition.properties and condition.rollout_percentage is None:
            return True
        return in_rollout(flag.key, distinct_id, condition.rollout_percentage)

    def get_matching_variant(self, flag: FlagDefinition, distinct_id: str) -> str | None:
        value = bucket(flag.key, distinct_id, salt=VARIANT_SALT)
        for variant in self.variant_lookup_table(flag):
            if variant.value_min <= value < variant.value_max:
                return variant.key
        return None

    @staticmethod
    def variant_lookup_table(flag: FlagDefinition) -> list[VariantRange]:
        table = []
        value_min = 0.0
        for variant in flag.variants:
            value_max = value_min + variant.rollout_percentage / 100
            table.append(VariantRange(variant.key, value_min, value_max))
            value_min = value_max
        return table

    def _evaluate_dependency(
        self,
        prop: PropertyFilter,
        distinct_id: str,
        properties: dict[str, Any],
        evaluation_cache: dict[str, FlagValue | None],
    ) -> bool:
        chain = prop.dependency_chain
        if chain is None:
            raise InconclusiveMatchError(f"Flag dependency on {prop.key} has no dependency chain")
        if not chain:
            raise InconclusiveMatchError(f"Circular dependency detected for flag {prop.key}")

        for dep_key in chain:
            if dep_key not in evaluation_cache:
                dep_flag = self._flags.get(dep_key)
                if dep_flag is None:
                    raise InconclusiveMatchError(f"Missing flag dependency {dep_key} for {prop.key}")
                if not dep_flag.active:
                    evaluation_cache[dep_key] = False
                else:
                    try:
                        evaluation_cache[dep_key] = self.match_flag_properties(
                            dep_flag, distinct_id, properties, evaluation_cache
                        )
                    except (InconclusiveMatchError, RequiresServerEvaluation) as e:
                        raise InconclusiveMatchError(
                            f"Error evaluating flag dependency {dep_key} for {prop.key}: {e}"
                        ) from e
            if evaluation_cache.get(dep_key) is None:
                raise InconclusiveMatchError(f"Dependency {dep_key} could not be evaluated")

        return flag_evaluates_to(prop.value, evaluation_cache.get(prop.key))


def flag_evaluates_to(expected: Any, actual: FlagValue | None) -> bool:
    """
    ``True`` matches any enabled value (including variants), ``False``
    only a disabled flag, and a string only that exact variant.
    """
    if isinstance(expected, bool):
        return expected == actual or (expected is True and isinstance(actual, str) and actual != "")
    if isinstance(expected, str):
        return actual == expected
    return False
