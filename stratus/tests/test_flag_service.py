# StratusFlags/stratus/tests/test_flag_service.py
"""
Unit tests for the FlagClient facade: snapshot reloads, input checks,
forced variations, feature enablement and typed feature variables.
"""


import pytest

from stratus.errors.handlers import (
    BadRequest,
    ProfileStoreUnavailable,
    UnsupportedDatafileVersion,
)
from stratus.repositories.memory_repo import InMemoryUserProfileService
from stratus.services.flag_service import FlagClient, cast_variable_value


CANADA = {"country": "CA"}


@pytest.fixture
def client(datafile):
    return FlagClient(datafile=datafile)


# ---------- Snapshot reloads ----------


def test_reload_publishes_new_snapshot(client, datafile):
    first = client.config
    datafile["revision"] = "43"

    second = client.reload(datafile)

    assert client.config is second
    assert second is not first
    assert second.revision == "43"


def test_invalid_reload_keeps_previous_snapshot(client, datafile):
    current = client.config
    datafile["experiments"][0]["trafficAllocation"] = [
        {"entityId": "111129", "endOfRange": 9000},
        {"entityId": "111128", "endOfRange": 5000},
    ]

    with pytest.raises(BadRequest):
        client.reload(datafile)
    assert client.config is current


def test_unsupported_version_keeps_previous_snapshot(client, datafile):
    current = client.config
    datafile["version"] = "1"

    with pytest.raises(UnsupportedDatafileVersion):
        client.reload(datafile)
    assert client.config is current


def test_no_datafile_means_no_decisions():
    client = FlagClient()

    assert client.config is None
    assert client.get_variation("test_experiment", "user_1") is None
    assert client.is_feature_enabled("boolean_feature", "user_1") is False
    assert client.get_enabled_features("user_1") == []
    assert client.get_feature_variable("boolean_feature", "max_items", "user_1") is None
    assert client.set_forced_variation("test_experiment", "user_1", "control") is False
    assert client.evaluate_flag("boolean_feature", "user_1") == {
        "feature_key": "boolean_feature",
        "enabled": False,
        "source": None,
        "variation_key": None,
        "variables": {},
    }


# ---------- Input checks ----------


@pytest.mark.parametrize(
    "experiment_key, user_id, attributes",
    [
        ("", "user_1", None),
        ("test_experiment", "", None),
        ("test_experiment", 42, None),
        (None, "user_1", None),
        ("test_experiment", "user_1", ["country", "CA"]),
    ],
)
def test_invalid_inputs_give_no_variation(client, experiment_key, user_id, attributes):
    assert client.get_variation(experiment_key, user_id, attributes) is None


def test_invalid_inputs_for_features(client):
    assert client.is_feature_enabled("", "user_9") is False
    assert client.get_enabled_features(None) == []
    assert client.get_feature_variable("boolean_feature", "", "user_9") is None


# ---------- Experiments ----------


def test_get_variation(client, pin_buckets):
    pin_buckets({"111127": 7000})
    assert client.get_variation("test_experiment", "user_9") == "variation"
    assert client.get_variation("test_experiment", "user_1") == "control"
    assert client.get_variation("nope", "user_9") is None


def test_forced_variation_round_trip(client, pin_buckets):
    pin_buckets({"111127": 7000})

    assert client.set_forced_variation("test_experiment", "user_9", "control") is True
    assert client.get_forced_variation("test_experiment", "user_9") == "control"
    assert client.get_variation("test_experiment", "user_9") == "control"

    assert client.set_forced_variation("test_experiment", "user_9", None) is True
    assert client.get_forced_variation("test_experiment", "user_9") is None
    assert client.get_variation("test_experiment", "user_9") == "variation"


def test_forced_variation_rejects_unknown_references(client):
    assert client.set_forced_variation("nope", "user_9", "control") is False
    assert client.set_forced_variation("test_experiment", "user_9", "nope") is False
    assert client.get_forced_variation("test_experiment", "user_9") is None


def test_forced_variation_survives_reload(client, datafile):
    client.set_forced_variation("audience_experiment", "user_9", "only")
    client.reload(datafile)
    assert client.get_variation("audience_experiment", "user_9") == "only"


def test_sticky_bucketing_through_client(datafile, pin_buckets):
    pin_buckets({"111127": 3000})
    profiles = InMemoryUserProfileService()
    client = FlagClient(datafile=datafile, user_profile_service=profiles)

    assert client.get_variation("test_experiment", "user_9") == "control"
    assert profiles.lookup("user_9") == {"111127": "111128"}

    pin_buckets({"111127": 7000})
    assert client.get_variation("test_experiment", "user_9") == "control"

    assert client.clear_user_profile("user_9") is True
    assert client.get_variation("test_experiment", "user_9") == "variation"


def test_clear_user_profile_without_service(client):
    assert client.clear_user_profile("user_9") is False


# ---------- Features ----------


def test_is_feature_enabled(client, pin_buckets):
    pin_buckets({}, default=100)
    assert client.is_feature_enabled("boolean_feature", "user_9", CANADA) is True
    assert client.is_feature_enabled("boolean_feature", "user_9", {"country": "US"}) is False
    assert client.is_feature_enabled("empty_feature", "user_9") is False
    assert client.is_feature_enabled("nope", "user_9") is False


def test_get_enabled_features(client, pin_buckets):
    pin_buckets({}, default=100)
    assert client.get_enabled_features("user_9", CANADA) == [
        "boolean_feature",
        "rollout_feature",
    ]


def test_feature_variable_from_variation_and_default(client):
    assert client.get_feature_variable_integer("boolean_feature", "max_items", "user_9", CANADA) == 42
    assert client.get_feature_variable_string("boolean_feature", "label", "user_9", CANADA) == "default"


def test_feature_variable_defaults_when_not_overridden(client, pin_buckets):
    pin_buckets({}, default=100)
    assert client.get_feature_variable_integer("boolean_feature", "max_items", "user_9") == 10
    assert client.get_feature_variable_double("rollout_feature", "ratio", "user_9", {"age": 12}) == 0.5
    assert client.get_feature_variable_boolean("rollout_feature", "show_banner", "user_9", {"age": 12}) is False


def test_feature_variable_from_rollout_rule(client, pin_buckets):
    pin_buckets({"177780": 1000})
    assert client.get_feature_variable_double("rollout_feature", "ratio", "user_9", {"age": 30}) == 0.9
    assert client.get_feature_variable_boolean("rollout_feature", "show_banner", "user_9", {"age": 30}) is True


def test_feature_variable_type_mismatch(client):
    assert client.get_feature_variable_string("boolean_feature", "max_items", "user_9") is None
    assert client.get_feature_variable("boolean_feature", "max_items", "user_9", None, "integer") == 10


def test_feature_variable_untyped_access(client):
    assert client.get_feature_variable("boolean_feature", "label", "user_9", CANADA) == "default"


def test_unknown_feature_variable(client):
    assert client.get_feature_variable("boolean_feature", "nope", "user_9") is None
    assert client.get_feature_variable("nope", "label", "user_9") is None


def test_evaluate_flag(client):
    result = client.evaluate_flag("boolean_feature", "user_9", CANADA)

    assert result == {
        "feature_key": "boolean_feature",
        "enabled": True,
        "source": "experiment",
        "variation_key": "feature_on",
        "variables": {"max_items": 42, "label": "default"},
    }


def test_evaluate_flag_from_rollout(client, pin_buckets):
    pin_buckets({"177780": 1000})

    result = client.evaluate_flag("rollout_feature", "user_9", {"age": 30})

    assert result["source"] == "rollout"
    assert result["enabled"] is True
    assert result["variables"] == {"ratio": 0.9, "show_banner": True}


# ---------- Casting ----------


@pytest.mark.parametrize(
    "value, variable_type, expected",
    [
        ("true", "boolean", True),
        ("False", "boolean", False),
        ("10", "integer", 10),
        ("1.5", "double", 1.5),
        ("hello", "string", "hello"),
        ("ten", "integer", None),
        ("x", "double", None),
        (None, "string", None),
    ],
)
def test_cast_variable_value(value, variable_type, expected):
    assert cast_variable_value(value, variable_type) == expected


# ---------- Failure paths ----------


def test_reload_with_unparsable_audience_is_bad_request(client, datafile):
    current = client.config
    datafile["audiences"][0]["conditions"] = "not json ["

    with pytest.raises(BadRequest):
        client.reload(datafile)
    assert client.config is current


def test_clear_user_profile_store_failure(datafile):
    class BrokenStore(InMemoryUserProfileService):
        def clear(self, user_id):
            raise RuntimeError("Failed to clear user profile.")

    client = FlagClient(datafile=datafile, user_profile_service=BrokenStore())

    with pytest.raises(ProfileStoreUnavailable):
        client.clear_user_profile("user_9")


@pytest.mark.parametrize("feature_key", [["boolean_feature"], {"key": 1}, "", None])
def test_evaluate_flag_with_invalid_key(client, feature_key):
    assert client.evaluate_flag(feature_key, "user_9") == {
        "feature_key": feature_key,
        "enabled": False,
        "source": None,
        "variation_key": None,
        "variables": {},
    }
