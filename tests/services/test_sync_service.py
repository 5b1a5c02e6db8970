import json
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy.orm import Session

from app.models.models import EncryptedDiff, EncryptedStar, Profile
from app.schemas.profile import ProfileMetadataUpdate
from app.schemas.sync import EncryptedItem, SyncRequest
from app.services.sync_service import SyncService
from app.utils.time_utils import utcnow


def seed_diffs(db: Session, profile: Profile, count: int, start=None):
    """Insert diffs with strictly increasing creation times"""
    start = start or utcnow() - timedelta(days=1)
    ids = []
    for i in range(count):
        diff_id = f"diff-{i:03d}"
        db.add(EncryptedDiff(
            profile_id=profile.id,
            id=diff_id,
            encrypted_data=f"Y2lwaGVydGV4dC17aX0={i}",
            created_at=start + timedelta(minutes=i),
        ))
        ids.append(diff_id)
    db.commit()
    return ids


def stored_diff_ids(db: Session, profile: Profile):
    return {row.id for row in db.query(EncryptedDiff).filter(EncryptedDiff.profile_id == profile.id)}


class TestApplySyncBatch:
    """Atomic upload batches"""

    def test_upserts_and_hashes(self, db: Session, make_profile, encrypted_item):
        profile, _ = make_profile()
        diff = encrypted_item()
        star = encrypted_item(item_id=f"{diff['id']}:0")

        result = SyncService.apply_sync_batch(db, profile, SyncRequest(
            diffs=[diff],
            stars=[star],
            diffs_hash="dh-1",
            stars_hash="sh-1",
        ))

        assert result.success is True
        assert result.diffs_hash == "dh-1"
        assert result.stars_hash == "sh-1"
        assert result.synced.diffs == 1
        assert result.synced.stars == 1
        assert stored_diff_ids(db, profile) == {diff["id"]}
        assert db.get(EncryptedStar, (profile.id, star["id"])).encrypted_data == star["encrypted_data"]

    def test_upsert_preserves_created_at(self, db: Session, make_profile, encrypted_item):
        profile, _ = make_profile()
        seed_diffs(db, profile, 1)
        original = db.get(EncryptedDiff, (profile.id, "diff-000"))
        created_at = original.created_at

        SyncService.apply_sync_batch(db, profile, SyncRequest(
            diffs=[EncryptedItem(id="diff-000", encrypted_data="bmV3LWNpcGhlcnRleHQ=")],
        ))

        db.expire_all()
        updated = db.get(EncryptedDiff, (profile.id, "diff-000"))
        assert updated.encrypted_data == "bmV3LWNpcGhlcnRleHQ="
        assert updated.created_at == created_at

    def test_deletes(self, db: Session, make_profile, encrypted_item):
        profile, _ = make_profile()
        seed_diffs(db, profile, 3)
        db.add(EncryptedStar(profile_id=profile.id, id="diff-001:2", encrypted_data="c3Rhcg=="))
        db.commit()

        result = SyncService.apply_sync_batch(db, profile, SyncRequest(
            deleted_diff_ids=["diff-001", "does-not-exist"],
            deleted_star_ids=["diff-001:2"],
        ))

        assert stored_diff_ids(db, profile) == {"diff-000", "diff-002"}
        assert db.query(EncryptedStar).count() == 0
        assert result.synced.deleted_diffs == 2
        assert result.synced.deleted_stars == 1

    def test_only_touches_own_profile(self, db: Session, make_profile):
        owner, _ = make_profile()
        other, _ = make_profile()
        seed_diffs(db, other, 2)

        SyncService.apply_sync_batch(db, owner, SyncRequest(deleted_diff_ids=["diff-000"]))

        assert stored_diff_ids(db, other) == {"diff-000", "diff-001"}

    def test_idempotent_upload(self, db: Session, make_profile, encrypted_item):
        """Test that replaying the same batch leaves identical server state"""
        profile, _ = make_profile()
        items = [encrypted_item() for _ in range(3)]
        request = SyncRequest(diffs=items, diffs_hash="dh", stars_hash="sh")

        SyncService.apply_sync_batch(db, profile, request)
        first = {(r.id, r.encrypted_data, r.created_at) for r in db.query(EncryptedDiff)}

        SyncService.apply_sync_batch(db, profile, request)
        db.expire_all()
        second = {(r.id, r.encrypted_data, r.created_at) for r in db.query(EncryptedDiff)}

        assert first == second
        assert len(second) == 3

    def test_duplicate_ids_in_batch(self, db: Session, make_profile):
        profile, _ = make_profile()

        SyncService.apply_sync_batch(db, profile, SyncRequest(diffs=[
            EncryptedItem(id="same", encrypted_data="Zmlyc3Q="),
            EncryptedItem(id="same", encrypted_data="c2Vjb25k"),
        ]))

        assert db.get(EncryptedDiff, (profile.id, "same")).encrypted_data == "c2Vjb25k"

    def test_retention_cap_evicts_oldest(self, db: Session, make_profile, encrypted_item):
        """Test that a 51st diff evicts the oldest-created one"""
        profile, _ = make_profile()
        seed_diffs(db, profile, 50)
        newcomer = encrypted_item()

        SyncService.apply_sync_batch(db, profile, SyncRequest(diffs=[newcomer]))

        remaining = stored_diff_ids(db, profile)
        assert len(remaining) == 50
        assert "diff-000" not in remaining
        assert newcomer["id"] in remaining

    def test_retention_cap_is_per_profile(self, db: Session, make_profile, encrypted_item):
        profile, _ = make_profile()
        other, _ = make_profile()
        seed_diffs(db, other, 50)

        SyncService.apply_sync_batch(db, profile, SyncRequest(diffs=[encrypted_item()]))

        assert len(stored_diff_ids(db, other)) == 50
        assert len(stored_diff_ids(db, profile)) == 1

    def test_partial_metadata_update(self, db: Session, make_profile):
        profile, _ = make_profile(custom_focus="rust async")

        SyncService.apply_sync_batch(db, profile, SyncRequest(
            profile_metadata=ProfileMetadataUpdate(topics=["wasm"], depth="deep"),
        ))

        db.refresh(profile)
        assert profile.topics == ["wasm"]
        assert profile.depth == "deep"
        assert profile.languages == ["python"]
        assert profile.custom_focus == "rust async"

    def test_explicit_null_clears_custom_focus(self, db: Session, make_profile):
        profile, _ = make_profile(custom_focus="rust async")

        SyncService.apply_sync_batch(db, profile, SyncRequest(
            profile_metadata=ProfileMetadataUpdate.model_validate({"custom_focus": None}),
        ))

        db.refresh(profile)
        assert profile.custom_focus is None

    def test_failure_rolls_back_everything(self, db: Session, make_profile, encrypted_item):
        """Test that an error mid-batch leaves no partial writes"""
        profile, _ = make_profile(diffs_hash="before")
        seed_diffs(db, profile, 2)

        with patch.object(SyncService, "prune_diffs", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                SyncService.apply_sync_batch(db, profile, SyncRequest(
                    diffs=[encrypted_item()],
                    deleted_diff_ids=["diff-000"],
                    diffs_hash="after",
                ))

        db.expire_all()
        assert stored_diff_ids(db, profile) == {"diff-000", "diff-001"}
        assert db.get(Profile, profile.id).diffs_hash == "before"

    def test_resets_failed_attempts(self, db: Session, make_profile):
        profile, _ = make_profile(failed_attempts=3)

        SyncService.apply_sync_batch(db, profile, SyncRequest())

        db.refresh(profile)
        assert profile.failed_attempts == 0


class TestFetchContent:
    """Conditional download"""

    def test_returns_everything_without_hashes(self, db: Session, make_profile):
        profile, _ = make_profile(diffs_hash="dh", stars_hash="sh")
        seed_diffs(db, profile, 3)

        content = SyncService.fetch_content(db, profile)

        assert [d.id for d in content.diffs] == ["diff-002", "diff-001", "diff-000"]
        assert content.diffs_skipped is False
        assert content.salt == profile.salt
        assert content.profile_metadata.name == profile.name

    def test_skip_on_match(self, db: Session, make_profile):
        """Test that a matching diffs hash skips diffs but still returns stars"""
        profile, _ = make_profile(diffs_hash="dh", stars_hash="sh")
        seed_diffs(db, profile, 2)
        db.add(EncryptedStar(profile_id=profile.id, id="diff-000:1", encrypted_data="c3Rhcg=="))
        db.commit()

        content = SyncService.fetch_content(db, profile, diffs_hash="dh", stars_hash="stale")

        assert content.diffs_skipped is True
        assert content.diffs == []
        assert content.stars_skipped is False
        assert [s.id for s in content.stars] == ["diff-000:1"]

    def test_keys_skipped(self, db: Session, make_profile):
        profile, _ = make_profile(keys_hash="kh")

        content = SyncService.fetch_content(db, profile, keys_hash="kh")

        assert content.keys_skipped is True
        assert content.encrypted_api_key is None


class TestStatusAndPublic:

    def test_status_compares_hashes(self, make_profile):
        profile, _ = make_profile(diffs_hash="dh", stars_hash="sh")

        assert SyncService.compute_status(profile, "dh", "sh").needs_sync is False
        stale = SyncService.compute_status(profile, "dh", "other")
        assert stale.needs_sync is True
        assert stale.diffs_sync_needed is False
        assert stale.stars_sync_needed is True
        assert SyncService.compute_status(profile).needs_sync is True

    def test_public_diff_lookup(self, db: Session, make_profile):
        profile, _ = make_profile()
        db.add(EncryptedDiff(profile_id=profile.id, id="pub", encrypted_data=json.dumps({"content": "# Hi"})))
        db.add(EncryptedDiff(profile_id=profile.id, id="priv", encrypted_data="eyJjaXBoZXIiOnRydWV9"))
        db.commit()

        row, payload = SyncService.get_public_diff(db, "pub")
        assert payload["content"] == "# Hi"
        assert SyncService.get_public_diff(db, "priv") is None
        assert SyncService.get_public_diff(db, "missing") is None

    def test_public_diff_invalid_json(self, db: Session, make_profile):
        profile, _ = make_profile()
        db.add(EncryptedDiff(profile_id=profile.id, id="broken", encrypted_data="{not json"))
        db.commit()

        with pytest.raises(ValueError):
            SyncService.get_public_diff(db, "broken")
