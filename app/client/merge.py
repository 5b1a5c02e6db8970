"""
Pure transforms between local state and server payloads. No I/O.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from pydantic import ValidationError

from .crypto import compact_json, decrypt_data, encrypt_data
from .errors import DecryptionError
from .models import Diff, LocalProfile, PendingChanges, Star

logger = logging.getLogger(__name__)

PUBLIC_MARKER = "{"


class MergeResult(NamedTuple):
    merged: list
    downloaded: int
    errors: int


def encrypt_diffs(
    diffs: Iterable[Diff],
    modified_ids: Optional[Set[str]],
    password: str,
    salt: str,
) -> List[Dict[str, str]]:
    """
    Encrypt the diffs in ``modified_ids`` (all of them when None).

    Public diffs are sent as plaintext JSON so the public read path can serve
    them without a key.
    """
    result = []
    for diff in diffs:
        if modified_ids is not None and diff.id not in modified_ids:
            continue
        if diff.is_public:
            data = compact_json(diff.wire_payload())
        else:
            data = encrypt_data(diff.wire_payload(), password, salt)
        result.append({"id": diff.id, "encrypted_data": data})
    return result


def encrypt_stars(
    stars: Iterable[Star],
    modified_ids: Optional[Set[str]],
    password: str,
    salt: str,
) -> List[Dict[str, str]]:
    return [
        {"id": star.id, "encrypted_data": encrypt_data(star.wire_payload(), password, salt)}
        for star in stars
        if modified_ids is None or star.id in modified_ids
    ]


def decode_diff(encrypted_data: str, password: str, salt: str) -> Diff:
    if encrypted_data.startswith(PUBLIC_MARKER):
        diff = Diff.model_validate_json(encrypted_data)
        diff.is_public = True
        return diff
    diff = Diff.model_validate(decrypt_data(encrypted_data, password, salt))
    diff.is_public = False
    return diff


def decrypt_and_merge_diffs(
    server_items: List[Dict[str, str]],
    local_diffs: List[Diff],
    pending: PendingChanges,
    password: str,
    salt: str,
) -> MergeResult:
    """
    Fold the server's diffs into the local list.

    Server copies win unless the local one has an unsent edit. Local diffs the
    server no longer holds are dropped unless they are pending locally. An
    item that fails to decrypt is counted and skipped.
    """
    merged: Dict[str, Diff] = {diff.id: diff for diff in local_diffs}
    server_ids: Set[str] = set()
    downloaded = 0
    errors = 0

    for item in server_items:
        try:
            diff = decode_diff(item["encrypted_data"], password, salt)
        except (DecryptionError, ValidationError, ValueError):
            logger.warning("Could not decrypt diff %s", item.get("id"))
            errors += 1
            continue

        server_ids.add(item["id"])
        if item["id"] not in merged:
            if item["id"] not in pending.deleted_diffs:
                merged[item["id"]] = diff
                downloaded += 1
        elif item["id"] not in pending.modified_diffs:
            merged[item["id"]] = diff

    kept = [
        diff for diff in merged.values()
        if diff.id in server_ids or diff.id in pending.deleted_diffs or diff.id in pending.modified_diffs
    ]
    return MergeResult(sort_newest_first(kept), downloaded, errors)


def decrypt_and_merge_stars(
    server_items: List[Dict[str, str]],
    local_stars: List[Star],
    pending: PendingChanges,
    password: str,
    salt: str,
) -> MergeResult:
    merged: Dict[str, Star] = {star.id: star for star in local_stars}
    server_ids: Set[str] = set()
    downloaded = 0
    errors = 0

    for item in server_items:
        try:
            star = Star.model_validate(decrypt_data(item["encrypted_data"], password, salt))
        except (DecryptionError, ValidationError):
            logger.warning("Could not decrypt star %s", item.get("id"))
            errors += 1
            continue

        server_ids.add(item["id"])
        if item["id"] not in merged and item["id"] not in pending.deleted_stars:
            merged[item["id"]] = star
            downloaded += 1

    kept = [
        star for item_id, star in merged.items()
        if item_id in server_ids or item_id in pending.deleted_stars or item_id in pending.modified_stars
    ]
    return MergeResult(kept, downloaded, errors)


def remove_orphan_stars(diffs: List[Diff], stars: List[Star]) -> Tuple[List[Star], List[str]]:
    """Stars are meaningless without their diff; returns (kept, removed ids)."""
    diff_ids = {diff.id for diff in diffs}
    kept = [star for star in stars if star.diff_id in diff_ids]
    removed = [star.id for star in stars if star.diff_id not in diff_ids]
    return kept, removed


def infer_provider_selections(api_keys: Dict[str, str]) -> Dict[str, str]:
    """Older key blobs carried no selections; pick defaults from the keys present."""
    selections: Dict[str, str] = {}
    if api_keys.get("anthropic"):
        selections.update(search="anthropic", curation="anthropic", synthesis="anthropic")
    elif api_keys.get("deepseek"):
        selections.update(curation="deepseek", synthesis="deepseek")
    elif api_keys.get("gemini"):
        selections.update(curation="gemini", synthesis="gemini")
    if api_keys.get("serper"):
        selections["search"] = "serper"
    elif api_keys.get("perplexity"):
        selections["search"] = "perplexity"
    return selections


def encrypt_keys_blob(profile: LocalProfile, password: str, salt: str) -> str:
    blob = {
        "apiKeys": {k: v for k, v in profile.api_keys.items() if v},
        "providerSelections": dict(profile.provider_selections),
    }
    return encrypt_data(blob, password, salt)


def decrypt_keys_blob(encrypted: str, password: str, salt: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """
    Returns (api_keys, provider_selections). Accepts both the current
    ``{apiKeys, providerSelections}`` blob and a bare key mapping.
    """
    decrypted: Any = decrypt_data(encrypted, password, salt)
    if isinstance(decrypted, dict) and "apiKeys" in decrypted:
        return dict(decrypted["apiKeys"] or {}), dict(decrypted.get("providerSelections") or {})
    if isinstance(decrypted, dict):
        return dict(decrypted), infer_provider_selections(decrypted)
    if isinstance(decrypted, str):
        return {"anthropic": decrypted}, infer_provider_selections({"anthropic": decrypted})
    raise DecryptionError("Unrecognised key blob")


def build_profile_metadata(profile: LocalProfile) -> Dict[str, Any]:
    return {
        "name": profile.name,
        "languages": profile.languages,
        "frameworks": profile.frameworks,
        "tools": profile.tools,
        "topics": profile.topics,
        "depth": profile.depth,
        "custom_focus": profile.custom_focus,
    }


def _parse_generated_at(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_newest_first(diffs: List[Diff]) -> List[Diff]:
    return sorted(diffs, key=lambda diff: _parse_generated_at(diff.generated_at), reverse=True)


def enforce_diff_cap(
    diffs: List[Diff],
    stars: List[Star],
    max_diffs: int,
) -> Tuple[List[Diff], List[Star], List[str], List[str]]:
    """
    Keep the ``max_diffs`` newest diffs and the stars that still point at them.

    Returns (kept diffs, kept stars, evicted diff ids, evicted star ids).
    """
    ordered = sort_newest_first(diffs)
    kept, evicted = ordered[:max_diffs], ordered[max_diffs:]
    kept_stars, removed_star_ids = remove_orphan_stars(kept, stars)
    return kept, kept_stars, [diff.id for diff in evicted], removed_star_ids
