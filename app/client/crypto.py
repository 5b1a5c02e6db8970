"""
Client-side encryption.

Every diff, star and the API-key blob is encrypted with AES-256-GCM under a key
derived from the profile password (PBKDF2-HMAC-SHA256, 100k iterations) and the
profile's random salt. Ciphertext travels as base64(iv || ciphertext || tag).

The server only ever receives the *transport hash* of the password, never the
password or the derived key.
"""

from __future__ import annotations

import base64
import hashlib
import json
import secrets
import uuid
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import IV_BYTES, KDF_ITERATIONS, KEY_BYTES, SALT_BYTES
from .errors import DecryptionError


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    return base64.b64decode(data)


def compact_json(data: Any, sort_keys: bool = False) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False, sort_keys=sort_keys)


def generate_salt() -> str:
    return b64encode(secrets.token_bytes(SALT_BYTES))


def generate_id() -> str:
    return str(uuid.uuid4())


@lru_cache(maxsize=32)
def derive_key(password: str, salt: str) -> bytes:
    """PBKDF2 is deliberately slow; derived keys are memoised per (password, salt)."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=b64decode(salt),
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def encrypt_data(data: Any, password: str, salt: str) -> str:
    """Encrypt a JSON-serialisable value. A fresh IV is drawn on every call."""
    iv = secrets.token_bytes(IV_BYTES)
    ciphertext = AESGCM(derive_key(password, salt)).encrypt(iv, compact_json(data).encode("utf-8"), None)
    return b64encode(iv + ciphertext)


def decrypt_data(encrypted: str, password: str, salt: str) -> Any:
    """
    Reverse of encrypt_data.

    Raises:
        DecryptionError: Wrong key, tampered data, or not our ciphertext at all
    """
    try:
        combined = b64decode(encrypted)
        if len(combined) <= IV_BYTES:
            raise DecryptionError("Ciphertext too short")
        plaintext = AESGCM(derive_key(password, salt)).decrypt(combined[:IV_BYTES], combined[IV_BYTES:], None)
        return json.loads(plaintext.decode("utf-8"))
    except DecryptionError:
        raise
    except (InvalidTag, ValueError) as e:
        raise DecryptionError("Failed to decrypt data") from e


def hash_password_for_transport(password: str, salt: Optional[str] = None) -> str:
    """
    Build ``<salt>:<base64 sha256(salt + password)>``.

    Reuse the published salt to reproduce the hash a profile was registered
    with; omit it to start a new one.
    """
    salt = salt or generate_salt()
    digest = hashlib.sha256((salt + password).encode("utf-8")).digest()
    return f"{salt}:{b64encode(digest)}"


def transport_salt_of(transport_hash: str) -> Optional[str]:
    if ":" not in transport_hash:
        return None
    return transport_hash.split(":", 1)[0] or None


def compute_content_hash(items: Iterable[Mapping[str, Any]]) -> str:
    """
    Deterministic digest over a collection, independent of encryption.

    Items are ordered by id and serialised with sorted keys, so two replicas
    holding the same plaintext always agree regardless of IVs.
    """
    ordered = sorted(items, key=lambda item: item["id"])
    combined = "|".join(compact_json(dict(item), sort_keys=True) for item in ordered)
    return b64encode(hashlib.sha256(combined.encode("utf-8")).digest())


def compute_keys_hash(
    api_keys: Optional[Mapping[str, str]] = None,
    provider_selections: Optional[Mapping[str, Optional[str]]] = None,
) -> str:
    payload: Dict[str, Dict[str, str]] = {
        "apiKeys": dict(sorted((k, v) for k, v in (api_keys or {}).items() if v)),
        "providerSelections": dict(sorted(
            (k, v) for k, v in (provider_selections or {}).items() if v is not None
        )),
    }
    return b64encode(hashlib.sha256(compact_json(payload).encode("utf-8")).digest())
