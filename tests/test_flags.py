"""Tests for flag definitions, hashing, property matching and local evaluation."""

import hashlib
from datetime import datetime, timedelta, timezone

import pytest

from beacon_core.clock import ManualClock
from beacon_core.errors import FlagDefinitionError, InconclusiveMatchError, RequiresServerEvaluation
from beacon_core.flags.evaluator import FlagEvaluator, flag_evaluates_to
from beacon_core.flags.hashing import VARIANT_SALT, bucket, in_rollout
from beacon_core.flags.matching import match_property, match_property_group, relative_date_parse
from beacon_core.flags.models import (
    FlagDefinition,
    PropertyFilter,
    PropertyGroup,
    parse_cohorts,
    parse_flag_definitions,
)


NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def flag(key="flag", groups=None, variants=None, payloads=None, **kwargs):
    filters = {"groups": groups if groups is not None else [{"properties": [], "rollout_percentage": 100}]}
    if variants is not None:
        filters["multivariate"] = {"variants": variants}
    if payloads is not None:
        filters["payloads"] = payloads
    filters.update(kwargs.pop("filters", {}))
    return FlagDefinition.from_raw({"key": key, "active": True, "filters": filters, **kwargs})


def prop(key, value, operator="exact", **kwargs):
    return PropertyFilter(key=key, value=value, operator=operator, **kwargs)


@pytest.fixture
def evaluator():
    return FlagEvaluator(clock=ManualClock(NOW.timestamp() * 1000))


class TestHashing:
    def test_sha1_input(self):
        digest = hashlib.sha1("some-flag.some_distinct_id".encode("utf-8")).hexdigest()
        assert digest == "e4ce124e800a818c63099f95fa085dc2b620e173"

    def test_bucket_upper_bound_is_closed(self, monkeypatch):
        class MaxDigest:
            def __init__(self, data):
                pass

            def hexdigest(self):
                return "f" * 40

        monkeypatch.setattr("beacon_core.flags.hashing.hashlib.sha1", MaxDigest)

        assert bucket("flag", "user") == 1.0
        assert in_rollout("flag", "user", 100) is True
        assert in_rollout("flag", "user", 99.9) is False

    def test_bucket_from_digest(self):
        expected = int("e4ce124e800a818", 16) / float(0xFFFFFFFFFFFFFFF)
        assert bucket("some-flag", "some_distinct_id") == expected

    def test_deterministic_and_in_range(self):
        values = [bucket("flag", f"user-{i}") for i in range(100)]

        assert values == [bucket("flag", f"user-{i}") for i in range(100)]
        assert all(0 <= v <= 1 for v in values)

    def test_salt_changes_bucket(self):
        assert bucket("flag", "user") != bucket("flag", "user", salt=VARIANT_SALT)

    def test_rollout_boundaries(self):
        assert in_rollout("flag", "user", None) is True
        assert in_rollout("flag", "user", 100) is True
        value = bucket("flag", "user")
        assert in_rollout("flag", "user", value * 100 + 1e-9) is True
        assert in_rollout("flag", "user", value * 100 - 1e-9) is False


class TestFlagDefinitions:
    def test_parse(self):
        definition = flag(
            "beta",
            groups=[{"properties": [{"key": "email", "value": "x", "operator": "icontains"}], "rollout_percentage": 50}],
        )

        assert definition.key == "beta"
        assert definition.conditions[0].properties[0].operator == "icontains"
        assert definition.conditions[0].rollout_percentage == 50

    def test_operator_defaults_to_exact(self):
        definition = flag(groups=[{"properties": [{"key": "plan", "value": "pro", "operator": None}]}])

        assert definition.conditions[0].properties[0].operator == "exact"

    def test_weights_over_100_rejected(self):
        with pytest.raises(FlagDefinitionError):
            flag(variants=[
                {"key": "a", "rollout_percentage": 60},
                {"key": "b", "rollout_percentage": 50},
            ])

    def test_weights_rounding_accepted(self):
        definition = flag(variants=[
            {"key": "a", "rollout_percentage": 33.33},
            {"key": "b", "rollout_percentage": 33.33},
            {"key": "c", "rollout_percentage": 33.34},
        ])

        assert len(definition.variants) == 3

    def test_unknown_operator_rejected(self):
        with pytest.raises(FlagDefinitionError):
            flag(groups=[{"properties": [{"key": "plan", "value": "pro", "operator": "matches_vibes"}]}])

    def test_rollout_out_of_range_rejected(self):
        with pytest.raises(FlagDefinitionError):
            flag(groups=[{"properties": [], "rollout_percentage": 150}])

    def test_malformed_flags_skipped(self, caplog):
        flags = parse_flag_definitions([
            {"key": "good", "filters": {"groups": []}},
            {"filters": {}},
            {"key": "bad-weights", "filters": {"multivariate": {"variants": [{"key": "a", "rollout_percentage": 101}]}}},
        ])

        assert [f.key for f in flags] == ["good"]
        assert "Skipping feature flag" in caplog.text

    def test_payload_lookup(self):
        definition = flag(
            variants=[{"key": "blue", "rollout_percentage": 100}],
            payloads={"true": '{"a": 1}', "blue": "plain text"},
        )

        assert definition.payload_for(True) == {"a": 1}
        assert definition.payload_for("blue") == "plain text"
        assert definition.payload_for(False) is None
        assert definition.payload_for("red") is None

    def test_parse_cohorts(self):
        cohorts = parse_cohorts({
            1: {"type": "OR", "values": [{"type": "AND", "values": [{"key": "plan", "value": "pro", "type": "person"}]}]},
            2: {"type": "XOR", "values": []},
        })

        assert list(cohorts) == ["1"]
        assert isinstance(cohorts["1"].values[0], PropertyGroup)


class TestMatchProperty:
    def test_missing_property_inconclusive(self):
        with pytest.raises(InconclusiveMatchError):
            match_property(prop("email", "x"), {})

    def test_is_not_set_inconclusive(self):
        with pytest.raises(InconclusiveMatchError):
            match_property(prop("email", None, "is_not_set"), {"email": "x"})

    def test_exact(self):
        assert match_property(prop("plan", "Pro"), {"plan": "pro"})
        assert match_property(prop("plan", ["free", "PRO"]), {"plan": "pro"})
        assert not match_property(prop("plan", "pro"), {"plan": "free"})
        assert match_property(prop("age", 30), {"age": "30"})

    def test_is_not(self):
        assert match_property(prop("plan", "pro", "is_not"), {"plan": "free"})
        assert not match_property(prop("plan", ["pro", "free"], "is_not"), {"plan": "free"})

    def test_none_value_fails_except_is_not(self):
        assert not match_property(prop("plan", "pro"), {"plan": None})
        assert match_property(prop("plan", "pro", "is_not"), {"plan": None})

    def test_is_set(self):
        assert match_property(prop("plan", "is_set", "is_set"), {"plan": "free"})

    def test_icontains(self):
        assert match_property(prop("email", "EXAMPLE", "icontains"), {"email": "a@example.com"})
        assert not match_property(prop("email", "other", "icontains"), {"email": "a@example.com"})
        assert match_property(prop("email", "other", "not_icontains"), {"email": "a@example.com"})

    def test_regex(self):
        assert match_property(prop("email", r"@example\.com$", "regex"), {"email": "a@example.com"})
        assert not match_property(prop("email", r"@other\.com$", "regex"), {"email": "a@example.com"})
        assert match_property(prop("email", r"@other\.com$", "not_regex"), {"email": "a@example.com"})

    def test_invalid_regex_never_matches(self):
        assert not match_property(prop("email", "(", "regex"), {"email": "("})
        assert not match_property(prop("email", "(", "not_regex"), {"email": "x"})

    def test_numeric_comparisons(self):
        assert match_property(prop("age", 18, "gt"), {"age": 21})
        assert not match_property(prop("age", 18, "gt"), {"age": 18})
        assert match_property(prop("age", "18", "gte"), {"age": 18})
        assert match_property(prop("age", 18, "lt"), {"age": 3})
        assert match_property(prop("age", 18, "lte"), {"age": 18.0})

    def test_string_comparisons(self):
        # String overrides compare as strings: "3" > "18"
        assert match_property(prop("age", 18, "gt"), {"age": "3"})
        assert match_property(prop("version", "beta", "gt"), {"version": "gamma"})

    def test_date_before_after(self):
        assert match_property(prop("signup", "2024-01-01", "is_date_before"), {"signup": "2023-12-31"})
        assert match_property(prop("signup", "2024-01-01", "is_date_after"), {"signup": "2024-01-02T00:00:00Z"})
        assert not match_property(prop("signup", "2024-01-01", "is_date_after"), {"signup": "2023-06-01"})

    def test_relative_dates(self):
        properties = {"signup": (NOW - timedelta(days=3)).isoformat()}

        assert match_property(prop("signup", "-7d", "is_date_after"), properties, now=NOW)
        assert match_property(prop("signup", "1d", "is_date_before"), properties, now=NOW)

    def test_date_with_boolean_inconclusive(self):
        with pytest.raises(InconclusiveMatchError):
            match_property(prop("signup", True, "is_date_before"), {"signup": "2024-01-01"})

    def test_invalid_date_inconclusive(self):
        with pytest.raises(InconclusiveMatchError):
            match_property(prop("signup", "2024-01-01", "is_date_before"), {"signup": "not a date"})


class TestRelativeDateParse:
    @pytest.mark.parametrize("value, expected", [
        ("-1h", NOW - timedelta(hours=1)),
        ("2d", NOW - timedelta(days=2)),
        ("1w", NOW - timedelta(weeks=1)),
        ("1m", datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)),
        ("1y", datetime(2023, 3, 15, 12, 0, tzinfo=timezone.utc)),
    ])
    def test_intervals(self, value, expected):
        assert relative_date_parse(value, NOW) == expected

    def test_month_end_clamped(self):
        end_of_march = datetime(2024, 3, 31, tzinfo=timezone.utc)
        assert relative_date_parse("1m", end_of_march) == datetime(2024, 2, 29, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", ["abc", "1x", "10000d", "1.5d", "d"])
    def test_invalid(self, value):
        assert relative_date_parse(value, NOW) is None


class TestPropertyGroups:
    def test_and_or(self):
        group = PropertyGroup(type="OR", values=[
            prop("plan", "pro"),
            prop("plan", "enterprise"),
        ])

        assert match_property_group(group, {"plan": "enterprise"}, {})
        assert not match_property_group(group, {"plan": "free"}, {})

    def test_negation(self):
        group = PropertyGroup(type="AND", values=[prop("plan", "free", negation=True)])

        assert match_property_group(group, {"plan": "pro"}, {})
        assert not match_property_group(group, {"plan": "free"}, {})

    def test_empty_group_matches(self):
        assert match_property_group(PropertyGroup(type="AND", values=[]), {}, {})

    def test_inconclusive_only_when_undecided(self):
        group = PropertyGroup(type="OR", values=[prop("missing", "x"), prop("plan", "pro")])

        assert match_property_group(group, {"plan": "pro"}, {})
        with pytest.raises(InconclusiveMatchError):
            match_property_group(group, {"plan": "free"}, {})

    def test_missing_cohort_requires_server(self):
        group = PropertyGroup(type="AND", values=[prop("id", 99, type="cohort")])

        with pytest.raises(RequiresServerEvaluation):
            match_property_group(group, {}, {})


# First 20 results of the cross-library consistency fixtures
SIMPLE_FLAG_RESULTS = [
    False, True, True, False, True, False, False, True, False, True,
    False, True, True, False, True, False, False, False, True, True,
]

MULTIVARIATE_RESULTS = [
    "second-variant", "second-variant", "first-variant", False, False,
    "second-variant", "first-variant", False, False, False,
    "first-variant", "third-variant", False, "first-variant", "second-variant",
    "first-variant", False, False, "fourth-variant", "first-variant",
]


class TestFlagEvaluator:
    def test_simple_flag_consistency(self, evaluator):
        definition = flag("simple-flag", groups=[{"properties": [], "rollout_percentage": 45}])

        results = [evaluator.evaluate(definition, f"distinct_id_{i}") for i in range(20)]

        assert results == SIMPLE_FLAG_RESULTS

    def test_multivariate_consistency(self, evaluator):
        definition = flag(
            "multivariate-flag",
            groups=[{"properties": [], "rollout_percentage": 55}],
            variants=[
                {"key": "first-variant", "rollout_percentage": 50},
                {"key": "second-variant", "rollout_percentage": 20},
                {"key": "third-variant", "rollout_percentage": 20},
                {"key": "fourth-variant", "rollout_percentage": 5},
                {"key": "fifth-variant", "rollout_percentage": 5},
            ],
        )

        results = [evaluator.evaluate(definition, f"distinct_id_{i}") for i in range(20)]

        assert results == MULTIVARIATE_RESULTS

    def test_first_matching_condition_wins(self, evaluator):
        definition = flag(
            variants=[{"key": "a", "rollout_percentage": 50}, {"key": "b", "rollout_percentage": 50}],
            groups=[
                {"properties": [{"key": "plan", "value": "pro"}], "variant": "b"},
                {"properties": [], "rollout_percentage": 100, "variant": "a"},
            ],
        )

        assert evaluator.evaluate(definition, "user", person_properties={"plan": "pro"}) == "b"
        assert evaluator.evaluate(definition, "user", person_properties={"plan": "free"}) == "a"

    def test_variant_override_must_exist(self, evaluator):
        definition = flag(
            variants=[{"key": "only", "rollout_percentage": 100}],
            groups=[{"properties": [], "rollout_percentage": 100, "variant": "missing"}],
        )

        assert evaluator.evaluate(definition, "user") == "only"

    def test_past_last_range_is_off(self, evaluator):
        definition = flag(variants=[{"key": "a", "rollout_percentage": 10}])
        outside = next(
            f"user-{i}" for i in range(1000)
            if bucket(definition.key, f"user-{i}", salt=VARIANT_SALT) >= 0.1
        )
        inside = next(
            f"user-{i}" for i in range(1000)
            if bucket(definition.key, f"user-{i}", salt=VARIANT_SALT) < 0.1
        )

        assert evaluator.evaluate(definition, outside) is False
        assert evaluator.evaluate(definition, inside) == "a"

    def test_zero_weight_variants_are_off(self, evaluator):
        definition = flag(variants=[{"key": "a", "rollout_percentage": 0}])

        assert evaluator.evaluate(definition, "user") is False

    def test_variant_lookup_table(self):
        definition = flag(variants=[
            {"key": "a", "rollout_percentage": 25},
            {"key": "b", "rollout_percentage": 75},
        ])

        table = FlagEvaluator.variant_lookup_table(definition)

        assert [(v.key, v.value_min, v.value_max) for v in table] == [("a", 0.0, 0.25), ("b", 0.25, 1.0)]

    def test_no_conditions_is_false(self, evaluator):
        assert evaluator.evaluate(flag(groups=[]), "user") is False

    def test_zero_rollout(self, evaluator):
        definition = flag(groups=[{"properties": [], "rollout_percentage": 0}])

        assert all(evaluator.evaluate(definition, f"user-{i}") is False for i in range(50))

    def test_properties_without_rollout_match(self, evaluator):
        definition = flag(groups=[{"properties": [{"key": "plan", "value": "pro"}]}])

        assert evaluator.evaluate(definition, "user", person_properties={"plan": "pro"}) is True
        assert evaluator.evaluate(definition, "user", person_properties={"plan": "free"}) is False

    def test_missing_property_inconclusive(self, evaluator):
        definition = flag(groups=[{"properties": [{"key": "plan", "value": "pro"}]}])

        with pytest.raises(InconclusiveMatchError):
            evaluator.evaluate(definition, "user", person_properties={})

    def test_inactive_flag_is_false(self, evaluator):
        assert evaluator.evaluate(flag(active=False), "user") is False

    def test_experience_continuity_inconclusive(self, evaluator):
        with pytest.raises(InconclusiveMatchError):
            evaluator.evaluate(flag(ensure_experience_continuity=True), "user")

    def test_group_flag(self, evaluator):
        evaluator.load([], group_type_mapping={"0": "company"})
        definition = flag(
            groups=[{"properties": [{"key": "size", "value": 100, "operator": "gte"}], "rollout_percentage": 100}],
            filters={"aggregation_group_type_index": 0},
        )

        assert evaluator.evaluate(definition, "user") is False
        assert evaluator.evaluate(
            definition,
            "user",
            groups={"company": "acme"},
            group_properties={"company": {"size": 500}},
        ) is True

    def test_unknown_group_type_inconclusive(self, evaluator):
        definition = flag(filters={"aggregation_group_type_index": 3})

        with pytest.raises(InconclusiveMatchError):
            evaluator.evaluate(definition, "user", groups={"company": "acme"})

    def test_cohort_condition(self, evaluator):
        cohorts = parse_cohorts({"7": {"type": "AND", "values": [{"key": "plan", "value": "pro"}]}})
        definition = flag(groups=[{"properties": [{"key": "id", "value": 7, "type": "cohort"}]}])
        evaluator.load([definition], cohorts=cohorts)

        assert evaluator.evaluate(definition, "user", person_properties={"plan": "pro"}) is True
        assert evaluator.evaluate(definition, "user", person_properties={"plan": "free"}) is False

    def test_flag_dependency(self, evaluator):
        parent = flag("parent", groups=[{"properties": [{"key": "plan", "value": "pro"}]}])
        child = flag("child", groups=[{
            "properties": [{
                "key": "parent",
                "value": True,
                "type": "flag",
                "operator": "flag_evaluates_to",
                "dependency_chain": ["parent"],
            }],
        }])
        evaluator.load([parent, child])

        assert evaluator.evaluate(child, "user", person_properties={"plan": "pro"}) is True
        assert evaluator.evaluate(child, "user", person_properties={"plan": "free"}) is False

    def test_missing_dependency_inconclusive(self, evaluator):
        child = flag("child", groups=[{
            "properties": [{"key": "ghost", "value": True, "type": "flag", "dependency_chain": ["ghost"]}],
        }])
        evaluator.load([child])

        with pytest.raises(InconclusiveMatchError):
            evaluator.evaluate(child, "user")

    def test_evaluate_all(self, evaluator):
        evaluator.load([
            flag("on", payloads={"true": "[1, 2]"}),
            flag("needs-plan", groups=[{"properties": [{"key": "plan", "value": "pro"}]}]),
        ])

        result = evaluator.evaluate_all("user", person_properties={})

        assert result.values == {"on": True}
        assert result.payloads == {"on": [1, 2]}
        assert result.inconclusive == ("needs-plan",)
        assert result.fallback_required


class TestFlagEvaluatesTo:
    def test_boolean_expectations(self):
        assert flag_evaluates_to(True, True)
        assert flag_evaluates_to(True, "variant")
        assert not flag_evaluates_to(True, False)
        assert flag_evaluates_to(False, False)
        assert not flag_evaluates_to(False, "variant")

    def test_variant_expectation(self):
        assert flag_evaluates_to("blue", "blue")
        assert not flag_evaluates_to("blue", True)
        assert not flag_evaluates_to(3, True)
