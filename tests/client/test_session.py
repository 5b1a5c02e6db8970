import pytest
import threading
from datetime import timedelta, timezone

from app.client.crypto import compute_content_hash
from app.client.errors import (
    ApiError,
    AuthInvalidError,
    AuthLockedError,
    NotSharedError,
    PasswordRequiredError,
    SyncInProgressError,
)
from app.client.models import Diff, LocalProfile
from app.client.session import SyncOutcome, SyncSession, SyncState
from app.client.store import LocalStore
from app.client.workspace import Workspace
from app.models.models import EncryptedDiff, EncryptedStar, Profile

PASSWORD = "correct horse battery staple"


def make_diff(diff_id: str, day: int = 1, content: str = None) -> Diff:
    return Diff(
        id=diff_id,
        content=content or f"# Changes {diff_id}",
        generated_at=f"2024-04-{day:02d}T08:00:00Z",
        title=f"Digest {diff_id}",
    )


@pytest.fixture
def device_a(local_store, api, timer_factory):
    """A device holding one local-only profile with two diffs"""
    local_store.save_profile(LocalProfile(
        id="profile-a",
        name="Ada",
        languages=["python"],
        api_keys={"anthropic": "sk-ant-123"},
        provider_selections={"synthesis": "anthropic"},
    ))
    session = SyncSession(local_store, api, "profile-a", timer_factory=timer_factory)
    session.add_diff(make_diff("d1", day=1))
    session.add_diff(make_diff("d2", day=2))
    return session


@pytest.fixture
def shared(device_a):
    device_a.share(PASSWORD)
    return device_a


def import_on_new_device(api, timer_factory, password=PASSWORD) -> SyncSession:
    return SyncSession.import_profile(LocalStore(), api, "profile-a", password, timer_factory=timer_factory)


def local_hash(session: SyncSession) -> str:
    return compute_content_hash(d.hash_payload() for d in session.store.get_diffs(session.profile_id))


class TestLocalOnly:

    def test_edits_are_not_tracked_before_sharing(self, device_a, timers):
        assert device_a.state == SyncState.LOCAL_ONLY
        assert device_a.has_pending_changes() is False
        assert timers == []

    def test_network_operations_require_sharing(self, device_a):
        with pytest.raises(NotSharedError):
            device_a.download(PASSWORD)

    def test_password_required(self, shared):
        shared.clear_password()

        with pytest.raises(PasswordRequiredError):
            shared.sync()

    def test_check_status_skips_unshared(self, device_a):
        assert device_a.check_status() is None


class TestShare:

    def test_share_uploads_everything(self, shared, db):
        assert shared.state == SyncState.SYNCED
        assert shared.has_pending_changes() is False
        assert shared.last_error is None

        stored = db.query(Profile).filter(Profile.id == "profile-a").first()
        assert stored.password_hash.startswith("v2:")
        assert stored.diffs_hash == local_hash(shared)
        assert {d.id for d in db.query(EncryptedDiff)} == {"d1", "d2"}

    def test_ciphertext_only_on_server(self, shared, db):
        for row in db.query(EncryptedDiff):
            assert "Changes" not in row.encrypted_data
        assert "sk-ant-123" not in db.query(Profile).first().encrypted_api_key

    def test_share_with_remember(self, device_a, local_store):
        device_a.share(PASSWORD, remember=True)

        assert local_store.get_remembered_password("profile-a") == PASSWORD


class TestFullSync:
    """Two devices converging through the server"""

    def test_import_pulls_everything(self, shared, api, timer_factory):
        other = import_on_new_device(api, timer_factory)

        profile = other.profile
        assert profile.name == "Ada"
        assert profile.api_keys == {"anthropic": "sk-ant-123"}
        assert profile.provider_selections == {"synthesis": "anthropic"}
        assert [d.id for d in other.store.get_diffs("profile-a")] == ["d2", "d1"]
        assert other.state == SyncState.SYNCED

    def test_hashes_agree_across_devices(self, shared, api, timer_factory):
        other = import_on_new_device(api, timer_factory)

        assert local_hash(other) == local_hash(shared)
        assert other.profile.diffs_hash == shared.profile.diffs_hash

        report = shared.check_status()
        assert report.exists is True
        assert report.needs_sync is False

    def test_edit_propagates(self, shared, api, timer_factory):
        other = import_on_new_device(api, timer_factory)

        shared.add_diff(make_diff("d3", day=3))
        result = shared.sync()
        assert result.status == SyncOutcome.UPLOADED
        assert result.uploaded == 1

        pulled = other.sync()
        assert pulled.status == SyncOutcome.DOWNLOADED
        assert pulled.downloaded == 1
        assert [d.id for d in other.store.get_diffs("profile-a")] == ["d3", "d2", "d1"]

    def test_edit_during_upload_stays_pending(self, shared, monkeypatch):
        """Test that a diff added while the request is in flight is kept for the next sync"""
        send = shared.api.sync

        def send_then_edit(profile_id, body):
            shared.add_diff(make_diff("d4", day=4))
            return send(profile_id, body)

        shared.add_diff(make_diff("d3", day=3))
        monkeypatch.setattr(shared.api, "sync", send_then_edit)

        assert shared.upload() == 1
        assert shared.pending.modified_diffs == {"d4"}

        monkeypatch.undo()
        assert shared.sync().uploaded == 1
        assert shared.has_pending_changes() is False

    def test_sync_is_idempotent(self, shared):
        first = shared.sync()
        second = shared.sync()

        assert first.uploaded == second.uploaded == 0
        assert second.downloaded == 0

    def test_metadata_and_keys_propagate(self, shared, api, timer_factory, db):
        other = import_on_new_device(api, timer_factory)

        shared.update_profile(topics=["compilers"], custom_focus=None)
        shared.update_api_keys({"anthropic": "sk-ant-456", "serper": "srp"}, {"search": "serper"})
        assert shared.sync().uploaded == 2

        other.sync()
        assert other.profile.topics == ["compilers"]
        assert other.profile.api_keys == {"anthropic": "sk-ant-456", "serper": "srp"}
        assert other.profile.provider_selections == {"search": "serper"}

    def test_pending_metadata_not_overwritten_by_download(self, shared):
        shared.update_profile(name="Ada Local")

        shared.download()

        assert shared.profile.name == "Ada Local"
        assert shared.pending.profile_modified is True


class TestDeletes:

    def test_diff_delete_cascades_to_stars(self, shared, db):
        shared.add_star("d1", 0)
        shared.add_star("d1", 3)
        shared.add_star("d2", 1)
        shared.sync()
        assert db.query(EncryptedStar).count() == 3

        removed = shared.delete_diff("d1")
        assert sorted(removed) == ["d1:0", "d1:3"]
        assert shared.pending.deleted_stars == {"d1:0", "d1:3"}
        assert shared.pending.deleted_diffs == {"d1"}

        shared.sync()

        db.expire_all()
        assert {d.id for d in db.query(EncryptedDiff)} == {"d2"}
        assert {s.id for s in db.query(EncryptedStar)} == {"d2:1"}
        assert [s.id for s in shared.store.get_stars("profile-a")] == ["d2:1"]

    def test_remote_delete_reaches_other_device(self, shared, api, timer_factory):
        other = import_on_new_device(api, timer_factory)

        shared.delete_diff("d2")
        shared.sync()
        other.sync()

        assert [d.id for d in other.store.get_diffs("profile-a")] == ["d1"]

    def test_star_on_unknown_diff(self, shared):
        with pytest.raises(KeyError):
            shared.add_star("nope", 0)


class TestPublicDiffs:

    def test_public_round_trip(self, shared, api, timer_factory):
        shared.set_diff_public("d1", True)
        shared.sync()

        public = api.get_public_diff("d1")
        assert public["content"] == "# Changes d1"
        assert public["title"] == "Digest d1"
        assert public["profile_name"] == "Ada"

        other = import_on_new_device(api, timer_factory)
        by_id = {d.id: d for d in other.store.get_diffs("profile-a")}
        assert by_id["d1"].is_public is True
        assert by_id["d2"].is_public is False
        assert local_hash(other) == local_hash(shared)

    def test_private_again(self, shared, api):
        with pytest.raises(ApiError) as exc_info:
            api.get_public_diff("d1")
        assert exc_info.value.status_code == 404

        shared.set_diff_public("d1", True)
        shared.sync()
        assert api.get_public_diff("d1")["content"] == "# Changes d1"

        shared.set_diff_public("d1", False)
        shared.sync()

        with pytest.raises(ApiError) as exc_info:
            api.get_public_diff("d1")
        assert exc_info.value.status_code == 404


class TestErrors:

    def test_decryption_failure_marks_everything_for_upload(self, shared, db):
        """Test that undecryptable server items trigger a full re-upload"""
        db.add(EncryptedDiff(profile_id="profile-a", id="corrupt", encrypted_data="Z2FyYmFnZQ=="))
        db.query(Profile).filter(Profile.id == "profile-a").first().diffs_hash = "tampered"
        db.commit()

        result = shared.download()

        assert result.decryption_errors == 1
        pending = shared.pending
        assert pending.modified_diffs == {"d1", "d2"}
        assert pending.keys_modified is True

        shared.sync()
        assert shared.has_pending_changes() is False

    def test_wrong_password_clears_cached_password(self, shared, local_store):
        local_store.remember_password("profile-a", PASSWORD)

        with pytest.raises(AuthInvalidError) as exc_info:
            shared.download("wrong password")

        assert exc_info.value.attempts_remaining == 4
        assert shared.password is None
        assert shared.last_error == "Invalid password"
        assert local_store.get_remembered_password("profile-a") is None
        assert shared.state == SyncState.SHARED_PENDING_PASSWORD

    def test_lockout_keeps_cached_password(self, shared):
        for _ in range(5):
            with pytest.raises(AuthInvalidError):
                shared.download("wrong password")

        shared.set_password(PASSWORD)
        with pytest.raises(AuthLockedError) as exc_info:
            shared.download()

        assert exc_info.value.retry_after_seconds > 0
        assert shared.password == PASSWORD
        assert "Too many failed attempts" in shared.last_error

    def test_concurrent_sync_rejected(self, shared):
        shared._lock.acquire()
        try:
            assert shared.state == SyncState.SYNCING
            with pytest.raises(SyncInProgressError):
                shared.sync()
            assert shared.auto_sync() is False
        finally:
            shared._lock.release()


class TestAutoSync:

    def test_debounced(self, shared, timers, db):
        shared.add_diff(make_diff("d3", day=3))
        shared.add_diff(make_diff("d4", day=4))

        assert len(timers) == 2
        assert timers[0].cancelled is True
        assert timers[1].started is True
        assert timers[1].interval == 2.0
        assert timers[1].daemon is True

        assert timers[1].fire() is True
        assert {d.id for d in db.query(EncryptedDiff)} == {"d1", "d2", "d3", "d4"}
        assert shared.has_pending_changes() is False

    def test_without_password_does_nothing(self, shared, timers):
        shared.clear_password()
        shared.add_diff(make_diff("d3", day=3))

        assert timers[-1].fire() is False
        assert shared.has_pending_changes() is True

    def test_failure_never_raises(self, shared, timers, db):
        shared.add_diff(make_diff("d3", day=3))
        db.delete(db.query(Profile).filter(Profile.id == "profile-a").first())
        db.commit()

        assert timers[-1].fire() is False
        assert shared.last_error.startswith("Sync failed")

    def test_close_cancels_timer(self, shared, timers):
        shared.add_diff(make_diff("d3", day=3))

        shared.close()

        assert timers[-1].cancelled is True
        assert shared.password is None

    def test_sync_if_stale(self, shared):
        synced_at = shared.profile.synced_at

        assert shared.sync_if_stale(synced_at + timedelta(minutes=30)) is False
        assert shared.sync_if_stale(synced_at + timedelta(hours=2)) is True

    def test_sync_if_stale_with_aware_time(self, shared):
        synced_at = shared.profile.synced_at.replace(tzinfo=timezone.utc)

        assert shared.sync_if_stale(synced_at + timedelta(minutes=30)) is False
        assert shared.sync_if_stale(synced_at + timedelta(hours=2)) is True

    def test_background_sync_with_file_store(self, api, timer_factory, tmp_path, db):
        """Test that the timer thread and local edits can share one on-disk store"""
        store = LocalStore(tmp_path / "state")
        store.save_profile(LocalProfile(id="profile-a", name="Ada"))
        session = SyncSession(store, api, "profile-a", timer_factory=timer_factory)
        for day in range(1, 11):
            session.add_diff(make_diff(f"d{day}", day=day))
        session.share(PASSWORD)

        results = []

        def background():
            for _ in range(15):
                results.append(session.auto_sync())

        worker = threading.Thread(target=background)
        worker.start()
        for p_index in range(200):
            session.add_star(f"d{p_index % 10 + 1}", p_index)
        worker.join()

        assert results == [True] * 15
        assert session.last_error is None

        session.sync()
        db.expire_all()
        assert db.query(EncryptedStar).count() == 200
        assert list((tmp_path / "state").glob("*.tmp")) == []

        reloaded = LocalStore(tmp_path / "state")
        assert len(reloaded.get_stars("profile-a")) == 200
        assert reloaded.get_pending("profile-a").is_empty()


class TestLifecycle:

    def test_password_change(self, shared, api, timer_factory):
        shared.change_password(PASSWORD, "a brand new passphrase")

        assert shared.password == "a brand new passphrase"
        assert shared.has_pending_changes() is False

        with pytest.raises(AuthInvalidError):
            import_on_new_device(api, timer_factory)
        other = import_on_new_device(api, timer_factory, password="a brand new passphrase")
        assert [d.id for d in other.store.get_diffs("profile-a")] == ["d2", "d1"]
        assert local_hash(other) == local_hash(shared)

    def test_password_change_wrong_old_password(self, shared):
        with pytest.raises(AuthInvalidError):
            shared.change_password("not it", "whatever")

        assert shared.password is None

    def test_server_copy_gone_reverts_to_local_only(self, shared, db):
        db.delete(db.query(Profile).filter(Profile.id == "profile-a").first())
        db.commit()

        report = shared.check_status()

        assert report.exists is False
        assert shared.state == SyncState.LOCAL_ONLY
        assert shared.password is None
        assert [d.id for d in shared.store.get_diffs("profile-a")] == ["d2", "d1"]
        assert shared.profile.diffs_hash is None
        assert shared.profile.keys_hash is None

    def test_delete_remote(self, shared, db):
        shared.delete_remote()

        assert shared.state == SyncState.LOCAL_ONLY
        db.expire_all()
        assert db.query(Profile).count() == 0
        assert db.query(EncryptedDiff).count() == 0

    def test_status_triggers_sync_when_stale(self, shared, api, timer_factory):
        other = import_on_new_device(api, timer_factory)
        shared.add_diff(make_diff("d3", day=3))
        shared.sync()

        report = other.check_status()

        assert report.needs_sync is True
        assert "d3" in {d.id for d in other.store.get_diffs("profile-a")}

    def test_local_cap(self, shared, db):
        for day in range(3, 52):
            shared.add_diff(make_diff(f"n{day}", day=day % 28 + 1, content=f"n{day}"))

        assert len(shared.store.get_diffs("profile-a")) == 50
        shared.sync()
        assert db.query(EncryptedDiff).count() == 50


class TestWorkspace:

    def test_switch_blocked_while_generating(self, local_store, api, timer_factory):
        workspace = Workspace(local_store, api, timer_factory=timer_factory)
        first = workspace.create_profile("First")
        second = workspace.create_profile("Second")
        workspace.generation_cache["partial"] = "..."

        with workspace.generating():
            assert workspace.switch_profile_with_sync(second.id) is False
            assert workspace.active_profile.id == first.id

        assert workspace.switch_profile_with_sync(second.id) is True
        assert workspace.active_profile.id == second.id
        assert workspace.session.profile_id == second.id
        assert workspace.generation_cache == {}

    def test_switch_to_unknown_profile(self, local_store, api):
        workspace = Workspace(local_store, api)
        workspace.create_profile("Only")

        assert workspace.switch_profile_with_sync("missing") is False

    def test_switch_restores_remembered_password(self, shared, api, timer_factory):
        store = shared.store
        store.remember_password("profile-a", PASSWORD)
        workspace = Workspace(store, api, timer_factory=timer_factory)
        other = workspace.create_profile("Other")

        workspace.switch_profile_with_sync(other.id)
        workspace.switch_profile_with_sync("profile-a")

        assert workspace.session.password == PASSWORD
        assert workspace.session.state == SyncState.SYNCED

    def test_import_and_delete(self, shared, api, timer_factory):
        workspace = Workspace(LocalStore(), api, timer_factory=timer_factory)

        session = workspace.import_profile("profile-a", PASSWORD, remember=True)

        assert workspace.active_profile.id == "profile-a"
        assert workspace.store.get_remembered_password("profile-a") == PASSWORD
        assert len(workspace.store.get_diffs("profile-a")) == 2

        workspace.delete_profile_with_sync("profile-a")
        assert workspace.profiles == []
        assert workspace.session is None
        assert workspace.store.get_remembered_password("profile-a") is None
