"""
Tests for credential payload normalization.
"""

from datetime import datetime, timezone

import pytest

from connectors.models import (
    Credential,
    get_connection_id,
    get_connector_id,
    get_created_at,
    matches_connector,
    most_recent,
    sort_by_created,
)


class TestIdentifiers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ({"credentialId": "a", "id": "b", "_id": "c", "connectionId": "d"}, "a"),
            ({"id": "b", "_id": "c", "connectionId": "d"}, "b"),
            ({"_id": "c", "connectionId": "d"}, "c"),
            ({"connectionId": "d"}, "d"),
            ({"credentialId": "", "id": "b"}, "b"),
            ({}, None),
        ],
    )
    def test_connection_id_precedence(self, raw, expected):
        assert get_connection_id(raw) == expected

    def test_connector_id_fallbacks(self):
        assert get_connector_id({"connectorId": "notion"}) == "notion"
        assert get_connector_id({"connector_id": "slack"}) == "slack"
        assert get_connector_id({"integrationId": "hubspot"}) == "hubspot"
        assert get_connector_id({}) == "unknown"

    def test_matches_by_type_when_connector_missing(self):
        assert matches_connector({"type": "notion-oauth2"}, "notion")
        assert matches_connector({"connectorId": "Notion"}, "notion")
        assert not matches_connector({"connectorId": "slack", "type": "oauth2"}, "notion")


class TestCreatedAt:
    def test_iso_with_z(self):
        assert get_created_at({"createdAt": "2024-05-01T10:00:00Z"}) == datetime(
            2024, 5, 1, 10, tzinfo=timezone.utc
        )

    def test_epoch_seconds_and_millis_agree(self):
        seconds = get_created_at({"createdAt": 1714557600})
        millis = get_created_at({"createdAt": 1714557600000})
        assert seconds == millis

    def test_missing_or_garbage_is_epoch(self):
        assert get_created_at({}).timestamp() == 0
        assert get_created_at({"createdAt": "yesterday"}).timestamp() == 0

    @pytest.mark.parametrize("value", [1717200000000000, 1e300, -1e300])
    def test_out_of_range_numbers_are_epoch(self, value):
        assert get_created_at({"createdAt": value}).timestamp() == 0

    def test_out_of_range_timestamp_does_not_break_discovery(self):
        items = [
            {"id": "broken", "connectorId": "notion", "createdAt": 1717200000000000},
            {"id": "good", "connectorId": "notion", "createdAt": "2024-06-01T00:00:00Z"},
        ]
        assert get_connection_id(most_recent(items, "notion")) == "good"
        assert Credential.from_api(items[0]).created_at is None


class TestMostRecent:
    def test_newest_for_connector(self):
        items = [
            {"id": "old", "connectorId": "notion", "createdAt": "2024-01-01T00:00:00Z"},
            {"id": "new", "connectorId": "notion", "createdAt": "2024-06-01T00:00:00Z"},
            {"id": "other", "connectorId": "slack", "createdAt": "2025-01-01T00:00:00Z"},
        ]
        assert get_connection_id(most_recent(items, "notion")) == "new"

    def test_no_match(self):
        assert most_recent([{"id": "x", "connectorId": "slack"}], "notion") is None
        assert most_recent([], "notion") is None

    def test_sort_is_stable_for_ties(self):
        items = [{"id": "first"}, {"id": "second"}, {"id": "third"}]
        assert [i["id"] for i in sort_by_created(items)] == ["first", "second", "third"]


class TestCredential:
    def test_from_api(self):
        c = Credential.from_api(
            {
                "_id": "cred_1",
                "connector": "notion",
                "status": "active",
                "createdAt": "2024-06-01T00:00:00Z",
                "accessToken": "secret-access",
            }
        )
        assert c.connection_id == "cred_1"
        assert c.connector_id == "notion"
        assert c.matches("notion")

    def test_public_dict_has_no_tokens(self):
        c = Credential.from_api({"id": "cred_1", "accessToken": "secret-access"})
        public = c.public_dict()
        assert public["connectionId"] == "cred_1"
        assert public["createdAt"] is None
        assert "secret-access" not in str(public)
