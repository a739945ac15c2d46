"""
Property matching for local flag evaluation.

A match either succeeds, fails, or is inconclusive. Inconclusive results
(a property the caller didn't supply, an unparseable date, a static cohort)
raise and let the caller fall back to server-side evaluation.
"""

from __future__ import annotations

import calendar
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from ..errors import InconclusiveMatchError, RequiresServerEvaluation
from .models import PropertyFilter, PropertyGroup


logger = logging.getLogger(__name__)


NULL_VALUES_ALLOWED_OPERATORS = ("is_not",)

_RELATIVE_DATE = re.compile(r"^-?(?P<number>[0-9]+)(?P<interval>[a-z])$")

# Upper bound on relative offsets, keeps date arithmetic in range
_MAX_RELATIVE_NUMBER = 10_000


def match_property(
    prop: PropertyFilter,
    property_values: Mapping[str, Any],
    now: datetime | None = None,
) -> bool:
    """Match a single person or group property filter."""
    key = prop.key
    operator = prop.operator
    value = prop.value

    if key not in property_values:
        raise InconclusiveMatchError(f"Property {key} not found in property values")
    if operator == "is_not_set":
        raise InconclusiveMatchError("Operator is_not_set is not supported")

    override_value = property_values[key]
    if override_value is None and operator not in NULL_VALUES_ALLOWED_OPERATORS:
        logger.debug(f"Property {key} is None, cannot match with operator {operator}")
        return False

    if operator == "exact":
        return _exact(value, override_value)
    if operator == "is_not":
        return not _exact(value, override_value)
    if operator == "is_set":
        return True
    if operator == "icontains":
        return str(value).lower() in str(override_value).lower()
    if operator == "not_icontains":
        return str(value).lower() not in str(override_value).lower()
    if operator in ("regex", "not_regex"):
        pattern = _compile(str(value))
        if pattern is None:
            return False
        found = pattern.search(str(override_value)) is not None
        return found if operator == "regex" else not found
    if operator in ("gt", "gte", "lt", "lte"):
        return _compare_values(value, override_value, operator)
    if operator in ("is_date_before", "is_date_after"):
        if isinstance(value, bool):
            raise InconclusiveMatchError("Date operations cannot be performed on boolean values")
        parsed = relative_date_parse(str(value), now) or _to_datetime(value)
        override_date = _to_datetime(override_value)
        if operator == "is_date_before":
            return override_date < parsed
        return override_date > parsed

    raise InconclusiveMatchError(f"Unknown operator {operator}")


def match_cohort(
    prop: PropertyFilter,
    property_values: Mapping[str, Any],
    cohorts: Mapping[str, PropertyGroup],
    now: datetime | None = None,
) -> bool:
    cohort_id = str(prop.value)
    if cohort_id not in cohorts:
        raise RequiresServerEvaluation(
            f"Cohort {cohort_id} not found locally, likely a static cohort"
        )
    return match_property_group(cohorts[cohort_id], property_values, cohorts, now)


def match_property_group(
    group: PropertyGroup | None,
    property_values: Mapping[str, Any],
    cohorts: Mapping[str, PropertyGroup],
    now: datetime | None = None,
) -> bool:
    """
    Match an AND/OR group of filters or nested groups.

    Empty groups always match. Flag dependencies are not evaluated inside
    cohorts and are skipped. Inconclusive members only make the group
    inconclusive when nothing else decided it.
    """
    if group is None or not group.values:
        return True

    is_and = group.type == "AND"
    inconclusive = False

    for member in group.values:
        try:
            if isinstance(member, PropertyGroup):
                matches = match_property_group(member, property_values, cohorts, now)
                negation = False
            elif member.type == "flag":
                logger.debug(f"Skipping flag dependency on {member.key} inside cohort")
                continue
            elif member.type == "cohort":
                matches = match_cohort(member, property_values, cohorts, now)
                negation = member.negation
            else:
                matches = match_property(member, property_values, now)
                negation = member.negation
        except RequiresServerEvaluation:
            raise
        except InconclusiveMatchError as e:
            logger.debug(f"Could not match {member} locally: {e}")
            inconclusive = True
            continue

        effective = matches != negation
        if is_and and not effective:
            return False
        if not is_and and effective:
            return True

    if inconclusive:
        raise InconclusiveMatchError("Can't match cohort without a given cohort property value")
    return is_and


def relative_date_parse(value: str, now: datetime | None = None) -> datetime | None:
    """
    Parse relative dates like ``-7d``, ``2h``, ``3w``, ``1m``, ``1y``.

    Returns the point in time that far in the past, or None when ``value``
    isn't a relative date.
    """
    match = _RELATIVE_DATE.match(value)
    if not match:
        return None

    number = int(match.group("number"))
    if number >= _MAX_RELATIVE_NUMBER:
        return None

    now = now or datetime.now(timezone.utc)
    interval = match.group("interval")
    if interval == "h":
        return now - timedelta(hours=number)
    if interval == "d":
        return now - timedelta(days=number)
    if interval == "w":
        return now - timedelta(weeks=number)
    if interval == "m":
        return _subtract_months(now, number)
    if interval == "y":
        return _subtract_months(now, number * 12)
    return None


def _subtract_months(dt: datetime, months: int) -> datetime:
    month_index = dt.year * 12 + (dt.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _exact(value: Any, override_value: Any) -> bool:
    if isinstance(value, list):
        return str(override_value).lower() in [str(v).lower() for v in value]
    return str(value).lower() == str(override_value).lower()


def _compile(pattern: str) -> re.Pattern | None:
    try:
        return re.compile(pattern)
    except re.error:
        return None


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}


def _compare_values(value: Any, override_value: Any, operator: str) -> bool:
    compare = _COMPARATORS[operator]
    parsed = _to_number(value)

    if parsed is not None and override_value is not None:
        if isinstance(override_value, str):
            return compare(override_value, str(value))
        try:
            return compare(override_value, parsed)
        except TypeError:
            return compare(str(override_value), str(value))
    return compare(str(override_value), str(value))


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise InconclusiveMatchError(f"The date provided {value} must be a string, number or datetime")
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InconclusiveMatchError(f"{value} is in an invalid date format") from e
    else:
        raise InconclusiveMatchError(f"The date provided {value} must be a string, number or datetime")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
