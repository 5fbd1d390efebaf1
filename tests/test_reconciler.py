"""Tests for per-device reconciliation against a fake device."""

import pytest

from conftest import FakeDevice, make_candidate
from enrollment_sync.reconciler import DeviceReconciler

DEVICE = "10.0.0.21"


def no_sleep(seconds):
    pass


def reconciler_for(device, client_for, registry, **kwargs):
    return DeviceReconciler(client_for(device, DEVICE), registry, sleep=no_sleep, **kwargs)


class TestScenario:

    def test_twenty_three_identities_five_existing_two_unconfirmed(self, client_for, registry):
        candidates = [make_candidate(i) for i in range(23)]
        device = FakeDevice(
            enrolled=[f"user-{i}" for i in range(5)],
            ghost_ids={"user-20", "user-21"},
        )

        result = reconciler_for(device, client_for, registry).reconcile(candidates)
        stats = result.stats

        assert result.success
        assert len(device.calls_to("recordUpdater.cgi")) == 5
        assert stats.users_deleted == 5
        assert stats.users_verified == 5

        user_calls = device.calls_to("AccessUser.cgi")
        assert [len(c["body"]["UserList"]) for c in user_calls] == [10, 10, 3]
        assert stats.users_registered <= 23

        assert stats.users_confirmed == 21
        assert sorted(result.unconfirmed_ids) == ["user-20", "user-21"]

        face_calls = device.calls_to("AccessFace.cgi")
        assert [len(c["body"]["FaceList"]) for c in face_calls] == [10, 10, 1]
        assert stats.faces_registered == 21
        assert "user-20" not in device.faces

        assert stats.cache_saves == 23
        assert len(registry.load(DEVICE)) == 23
        assert result.has_failures

    def test_phase_order(self, client_for, registry):
        device = FakeDevice(enrolled=["user-0"])
        reconciler_for(device, client_for, registry).reconcile([make_candidate(0), make_candidate(1)])

        assert [c["endpoint"] for c in device.calls] == [
            "recordFinder.cgi",
            "recordUpdater.cgi",
            "AccessUser.cgi",
            "recordFinder.cgi",
            "AccessFace.cgi",
        ]


class TestChunking:

    @pytest.mark.parametrize("size", [1, 9, 10, 11, 25])
    def test_chunk_count_and_union(self, client_for, registry, size):
        candidates = [make_candidate(i) for i in range(size)]
        device = FakeDevice()

        reconciler_for(device, client_for, registry).reconcile(candidates)

        calls = device.calls_to("AccessUser.cgi")
        assert len(calls) == -(-size // 10)
        sent = [u["UserID"] for c in calls for u in c["body"]["UserList"]]
        assert sorted(sent) == sorted(c.identity_id for c in candidates)
        assert len(sent) == len(set(sent))

    def test_smaller_chunk_size(self, client_for, registry):
        device = FakeDevice()
        reconciler_for(device, client_for, registry, chunk_size=4).reconcile(
            [make_candidate(i) for i in range(9)]
        )
        assert [len(c["body"]["UserList"]) for c in device.calls_to("AccessUser.cgi")] == [4, 4, 1]

    def test_rejects_chunk_size_over_device_limit(self, client_for, registry):
        with pytest.raises(ValueError):
            reconciler_for(FakeDevice(), client_for, registry, chunk_size=11)


class TestFailureSemantics:

    def test_second_run_converges_to_same_device_state(self, client_for, registry):
        candidates = [make_candidate(i) for i in range(12)]
        device = FakeDevice()
        reconciler = reconciler_for(device, client_for, registry)

        reconciler.reconcile(candidates)
        first_users = set(device.users)
        first_faces = dict(device.faces)

        second = reconciler.reconcile(candidates)

        assert set(device.users) == first_users
        assert device.faces == first_faces
        assert second.stats.users_deleted == 12
        assert second.stats.users_confirmed == 12
        assert len(registry.load(DEVICE)) == 12

    def test_rejected_identity_chunk_skips_those_faces(self, client_for, registry):
        device = FakeDevice()
        device.reject_users = True

        result = reconciler_for(device, client_for, registry).reconcile(
            [make_candidate(i) for i in range(3)]
        )

        assert result.success
        assert result.stats.identity_chunks_failed == 1
        assert result.stats.users_registered == 0
        assert device.calls_to("AccessFace.cgi") == []
        assert len(result.unconfirmed_ids) == 3
        # Intent is still recorded so the next run retries
        assert len(registry.load(DEVICE)) == 3

    def test_face_chunk_failure_is_counted(self, client_for, registry):
        device = FakeDevice()
        device.reject_faces = True

        result = reconciler_for(device, client_for, registry).reconcile([make_candidate(1)])

        assert result.stats.face_chunks_failed == 1
        assert result.stats.faces_registered == 0
        assert result.has_failures

    def test_delete_failure_does_not_block_creation(self, client_for, registry):
        device = FakeDevice(enrolled=["user-1"])
        device.users["user-1"]["RecNo"] = ""

        result = reconciler_for(device, client_for, registry).reconcile([make_candidate(1)])

        assert result.stats.delete_failures == 1
        assert len(device.calls_to("AccessUser.cgi")) == 1

    def test_unreachable_device_degrades_to_empty_listing(self, client_for, registry):
        device = FakeDevice(offline=True)

        result = reconciler_for(device, client_for, registry).reconcile([make_candidate(1)])

        assert result.success
        assert result.stats.users_verified == 0
        assert result.stats.identity_chunks_failed == 1
        assert result.unconfirmed_ids == ["user-1"]

    def test_duplicate_candidates_sent_once(self, client_for, registry):
        device = FakeDevice()
        reconciler_for(device, client_for, registry).reconcile([make_candidate(1), make_candidate(1)])

        assert len(device.calls_to("AccessUser.cgi")[0]["body"]["UserList"]) == 1

    def test_registry_entry_contents(self, client_for, registry):
        reconciler_for(FakeDevice(), client_for, registry).reconcile([make_candidate(4)])

        entry = registry.get(DEVICE, "invite-4")
        assert entry.identity_id == "user-4"
        assert entry.display_name == "Person Number 4"
        assert entry.email == "person4@example.com"
        assert entry.kind == "PRIMARY"
