# StratusFlags/stratus/tests/conftest.py
"""Shared fixtures: a datafile exercising experiments, a mutual exclusion
group, string and typed audiences, feature tests and rollouts, plus a
helper that pins bucket values per entity id."""


import copy

import pytest

from stratus.services.config_index import ConfigIndex


CANADIANS = (
    '["and", ["or", ["or", {"name": "country", "type": "custom_attribute", '
    '"value": "CA"}]]]'
)

DATAFILE = {
    "version": "4",
    "revision": "42",
    "projectId": "111001",
    "accountId": "12001",
    "experiments": [
        {
            "id": "111127",
            "key": "test_experiment",
            "status": "Running",
            "layerId": "111182",
            "audienceIds": [],
            "forcedVariations": {"user_1": "control"},
            "variations": [
                {"id": "111128", "key": "control"},
                {"id": "111129", "key": "variation"},
            ],
            "trafficAllocation": [
                {"entityId": "111128", "endOfRange": 5000},
                {"entityId": "111129", "endOfRange": 10000},
            ],
        },
        {
            "id": "111130",
            "key": "audience_experiment",
            "status": "Running",
            "layerId": "111183",
            "audienceIds": ["11154"],
            "variations": [{"id": "111131", "key": "only"}],
            "trafficAllocation": [{"entityId": "111131", "endOfRange": 10000}],
        },
        {
            "id": "111133",
            "key": "paused_experiment",
            "status": "Paused",
            "layerId": "111184",
            "audienceIds": [],
            "forcedVariations": {"user_1": "paused_variation"},
            "variations": [{"id": "111134", "key": "paused_variation"}],
            "trafficAllocation": [{"entityId": "111134", "endOfRange": 10000}],
        },
        {
            "id": "111140",
            "key": "feature_test",
            "status": "Running",
            "layerId": "111185",
            "audienceIds": ["11154"],
            "variations": [
                {
                    "id": "111141",
                    "key": "feature_on",
                    "featureEnabled": True,
                    "variables": [{"id": "v1", "value": "42"}],
                },
                {"id": "111142", "key": "feature_off", "featureEnabled": False},
            ],
            "trafficAllocation": [{"entityId": "111141", "endOfRange": 10000}],
        },
    ],
    "groups": [
        {
            "id": "19228",
            "policy": "random",
            "trafficAllocation": [
                {"entityId": "32222", "endOfRange": 5000},
                {"entityId": "32224", "endOfRange": 10000},
            ],
            "experiments": [
                {
                    "id": "32222",
                    "key": "group_exp_1",
                    "status": "Running",
                    "layerId": "111186",
                    "audienceIds": [],
                    "variations": [{"id": "32223", "key": "group_exp_1_var"}],
                    "trafficAllocation": [
                        {"entityId": "32223", "endOfRange": 10000}
                    ],
                },
                {
                    "id": "32224",
                    "key": "group_exp_2",
                    "status": "Running",
                    "layerId": "111187",
                    "audienceIds": ["11154"],
                    "variations": [{"id": "32225", "key": "group_exp_2_var"}],
                    "trafficAllocation": [
                        {"entityId": "32225", "endOfRange": 10000}
                    ],
                },
            ],
        }
    ],
    "audiences": [
        {"id": "11154", "name": "Canadians", "conditions": CANADIANS},
        {
            "id": "11160",
            "name": "Adults",
            "conditions": '["and", {"name": "age", "type": "custom_attribute", "value": 1}]',
        },
    ],
    "typedAudiences": [
        {
            "id": "11160",
            "name": "Adults",
            "conditions": [
                "and",
                {"name": "age", "type": "custom_attribute", "match": "gt", "value": 17},
            ],
        }
    ],
    "featureFlags": [
        {
            "id": "91111",
            "key": "boolean_feature",
            "experimentIds": ["111140"],
            "rolloutId": "166660",
            "variables": [
                {"id": "v1", "key": "max_items", "type": "integer", "defaultValue": "10"},
                {"id": "v2", "key": "label", "type": "string", "defaultValue": "default"},
            ],
        },
        {
            "id": "91112",
            "key": "rollout_feature",
            "experimentIds": [],
            "rolloutId": "166661",
            "variables": [
                {"id": "v3", "key": "ratio", "type": "double", "defaultValue": "0.5"},
                {"id": "v4", "key": "show_banner", "type": "boolean", "defaultValue": "false"},
            ],
        },
        {
            "id": "91113",
            "key": "empty_feature",
            "experimentIds": [],
            "variables": [],
        },
    ],
    "rollouts": [
        {
            "id": "166660",
            "experiments": [
                {
                    "id": "177770",
                    "key": "177770",
                    "status": "Running",
                    "layerId": "166660",
                    "audienceIds": ["11154"],
                    "variations": [
                        {
                            "id": "177771",
                            "key": "177771",
                            "featureEnabled": True,
                            "variables": [{"id": "v2", "value": "canada"}],
                        }
                    ],
                    "trafficAllocation": [
                        {"entityId": "177771", "endOfRange": 10000}
                    ],
                },
                {
                    "id": "177772",
                    "key": "177772",
                    "status": "Running",
                    "layerId": "166660",
                    "audienceIds": [],
                    "variations": [
                        {"id": "177773", "key": "177773", "featureEnabled": False}
                    ],
                    "trafficAllocation": [
                        {"entityId": "177773", "endOfRange": 10000}
                    ],
                },
            ],
        },
        {
            "id": "166661",
            "experiments": [
                {
                    "id": "177780",
                    "key": "177780",
                    "status": "Running",
                    "layerId": "166661",
                    "audienceIds": ["11160"],
                    "variations": [
                        {
                            "id": "177781",
                            "key": "177781",
                            "featureEnabled": True,
                            "variables": [
                                {"id": "v3", "value": "0.9"},
                                {"id": "v4", "value": "true"},
                            ],
                        }
                    ],
                    "trafficAllocation": [
                        {"entityId": "177781", "endOfRange": 5000}
                    ],
                },
                {
                    "id": "177782",
                    "key": "177782",
                    "status": "Running",
                    "layerId": "166661",
                    "audienceIds": [],
                    "variations": [
                        {"id": "177783", "key": "177783", "featureEnabled": True}
                    ],
                    "trafficAllocation": [
                        {"entityId": "177783", "endOfRange": 10000}
                    ],
                },
            ],
        },
    ],
}


@pytest.fixture
def datafile():
    """A fresh deep copy of the shared datafile."""
    return copy.deepcopy(DATAFILE)


@pytest.fixture
def config(datafile):
    return ConfigIndex(datafile)


@pytest.fixture
def pin_buckets(monkeypatch):
    """Pin bucket values per entity id and record which entities were hashed.

    Usage::

        calls = pin_buckets({"111127": 3000}, default=0)
    """

    def _pin(values, default=0):
        calls = []

        def fake_bucket_value(bucketing_id, entity_id):
            calls.append((bucketing_id, entity_id))
            return values.get(entity_id, default)

        monkeypatch.setattr(
            "stratus.services.bucketer.bucket_value", fake_bucket_value
        )
        return calls

    return _pin
