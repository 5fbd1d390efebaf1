"""Tests for roster sources, invite selection and name formatting."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FakeResponse, make_identity
from enrollment_sync.roster import (
    HttpRosterSource,
    JsonFileRosterSource,
    RosterError,
    chunked,
    format_name_for_device,
    select_by_invite,
)
from enrollment_sync.schemas import IdentityKind


class TestSelectByInvite:

    def test_secondary_wins_regardless_of_order(self):
        primary = make_identity(1, invite_id="inv")
        secondary = make_identity(2, kind=IdentityKind.SECONDARY, invite_id="inv")

        assert select_by_invite([primary, secondary]) == [secondary]
        assert select_by_invite([secondary, primary]) == [secondary]

    def test_first_wins_on_equal_priority(self):
        a = make_identity(1, invite_id="inv")
        b = make_identity(2, invite_id="inv")
        assert select_by_invite([a, b]) == [a]

    def test_distinct_invites_kept_in_order(self):
        identities = [make_identity(i) for i in range(4)]
        assert select_by_invite(identities) == identities


class TestFormatName:

    @pytest.mark.parametrize("full_name,expected", [
        ("Maria da Silva Souza", "Maria Souza"),
        ("  Ana   Lima ", "Ana Lima"),
        ("Prince", "Prince Sem Sobrenome"),
        ("", "Usuario Sem Nome"),
        (None, "Usuario Sem Nome"),
    ])
    def test_first_and_last(self, full_name, expected):
        assert format_name_for_device(full_name) == expected

    def test_capped_at_fifty(self):
        assert len(format_name_for_device("A" * 40 + " " + "B" * 40)) == 50


class TestChunked:

    def test_sizes_and_union(self):
        items = list(range(23))
        chunks = list(chunked(items, 10))

        assert [len(c) for c in chunks] == [10, 10, 3]
        assert [x for c in chunks for x in c] == items

    def test_empty_and_invalid(self):
        assert list(chunked([], 10)) == []
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestJsonFileRosterSource:

    def _write(self, tmp_path, payload):
        path = tmp_path / "roster.json"
        path.write_text(json.dumps(payload))
        return path

    def test_reads_list_and_skips_invalid_rows(self, tmp_path):
        path = self._write(tmp_path, [
            {"identity_id": "1", "invite_id": "a", "display_name": "Ana", "photo_url": "https://x/1.jpg"},
            {"identity_id": "", "invite_id": "b"},
        ])
        identities = JsonFileRosterSource(path).fetch()

        assert [i.identity_id for i in identities] == ["1"]

    def test_since_filters_by_updated_at(self, tmp_path):
        now = datetime.now(timezone.utc)
        path = self._write(tmp_path, {"identities": [
            {"identity_id": "old", "invite_id": "a", "updated_at": (now - timedelta(days=2)).isoformat()},
            {"identity_id": "new", "invite_id": "b", "updated_at": now.isoformat()},
            {"identity_id": "unknown", "invite_id": "c"},
        ]})

        identities = JsonFileRosterSource(path).fetch(since=now - timedelta(days=1))
        assert [i.identity_id for i in identities] == ["new"]

    def test_wrong_event_is_rejected(self, tmp_path):
        path = self._write(tmp_path, {"event_id": "evt-1", "identities": []})
        with pytest.raises(RosterError):
            JsonFileRosterSource(path, event_id="evt-2").fetch()

    def test_missing_file(self, tmp_path):
        with pytest.raises(RosterError):
            JsonFileRosterSource(tmp_path / "nope.json").fetch()


class TestHttpRosterSource:

    def test_passes_scope_and_since(self):
        session = MagicMock()
        session.get.return_value = FakeResponse(json_data=[{"identity_id": "1", "invite_id": "a"}])
        since = datetime(2026, 1, 1, tzinfo=timezone.utc)

        identities = HttpRosterSource("https://roster/api", event_id="evt", session=session).fetch(since=since)

        assert identities[0].invite_id == "a"
        params = session.get.call_args.kwargs["params"]
        assert params == {"event_id": "evt", "updated_since": since.isoformat()}

    def test_unreachable_store_raises_roster_error(self):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(RosterError):
            HttpRosterSource("https://roster/api", session=session).fetch()
