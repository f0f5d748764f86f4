"""
Vault Crypto Core — one-way secret hashing, credential identifiers and serialization.

- Secrets: scrypt(secret, salt, context) → ``scrypt$<context>$<n>:<r>:<p>$<salt>$<digest>``
- Credential ids: SHA-256 over the canonical encoding of subject, tier,
  issue time and a random nonce.

Security Note:
    Never log raw secrets or their hashes.
    Salts are random 128-bit; every stored hash is unique even for equal secrets.
"""
import os
import base64
import hashlib
import logging
import secrets
from datetime import datetime
from typing import Any

import orjson
from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger("civic_vault.vault")

SALT_SIZE = 16  # 128-bit salt
DIGEST_LENGTH = 32
NONCE_SIZE = 8

_HASH_SCHEME = "scrypt"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


# ---------------------------------------------------------------------------
# Secret hashing
# ---------------------------------------------------------------------------

def _kdf(salt: bytes, n: int, r: int, p: int) -> Scrypt:
    return Scrypt(salt=salt, length=DIGEST_LENGTH, n=n, r=r, p=p)


def _material(secret: str, context: str) -> bytes:
    # domain separation: the same string hashed for another method never matches
    return f"{context}\x00{secret}".encode("utf-8")


def hash_secret(
    secret: str, context: str, *, n: int = 2 ** 14, r: int = 8, p: int = 1,
) -> str:
    """Derive a salted one-way hash of an unlock secret.

    Args:
        secret: Raw passphrase or biometric template.
        context: Unlock method name used for domain separation.
        n: scrypt CPU/memory cost (power of two).
        r: scrypt block size.
        p: scrypt parallelization.

    Returns:
        Encoded hash string safe to persist.

    Raises:
        ValueError: If the secret is empty.
    """
    if not secret:
        raise ValueError("Unlock secret cannot be empty")
    salt = os.urandom(SALT_SIZE)
    digest = _kdf(salt, n, r, p).derive(_material(secret, context))
    params = f"{n}:{r}:{p}"
    return "$".join((_HASH_SCHEME, context, params, _b64(salt), _b64(digest)))


def verify_secret(secret: str, encoded: str) -> bool:
    """Check a candidate secret against a stored hash.

    The context and cost parameters recorded in ``encoded`` are reused, so hashes
    stay verifiable after the configured cost changes.

    Args:
        secret: Candidate secret.
        encoded: Value produced by :func:`hash_secret`.

    Returns:
        True on match, False otherwise (including malformed hashes).
    """
    try:
        scheme, context, params, salt, digest = encoded.split("$")
        n, r, p = (int(x) for x in params.split(":"))
        salt_bytes, digest_bytes = _unb64(salt), _unb64(digest)
    except ValueError:
        logger.warning("Malformed secret hash encountered")
        return False
    if scheme != _HASH_SCHEME or not secret:
        return False
    try:
        _kdf(salt_bytes, n, r, p).verify(_material(secret, context), digest_bytes)
    except InvalidKey:
        return False
    return True


def secret_context(encoded: str) -> str:
    """Return the context string embedded in a stored hash."""
    return encoded.split("$")[1]


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def derive_credential_id(subject: str, tier_code: str, issued_at: datetime) -> str:
    """Build a content-addressed credential identifier.

    Format: ``cid:<tier code>:<subject identifier>:<16 hex digest chars>``

    Args:
        subject: DID the credential is issued to.
        tier_code: One-letter tier code.
        issued_at: Issue timestamp.

    Returns:
        Credential identifier string.
    """
    username = subject.rsplit(":", 1)[-1] or "user"
    payload = canonical_bytes({
        "subject": subject,
        "tier": tier_code,
        "issuedAt": issued_at.isoformat(),
        "nonce": secrets.token_hex(NONCE_SIZE),
    })
    digest = hashlib.sha256(payload).hexdigest()
    return f"cid:{tier_code}:{username}:{digest[:16]}"


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def canonical_bytes(value: Any) -> bytes:
    """Serialize a JSON-compatible value with sorted keys.

    Args:
        value: dict/list/scalars, datetimes allowed.

    Returns:
        orjson-encoded bytes, stable across runs.
    """
    return orjson.dumps(value, option=orjson.OPT_SORT_KEYS | orjson.OPT_UTC_Z)


def serialize_document(value: Any) -> bytes:
    """Serialize a value as indented JSON for files meant to be read by people."""
    return orjson.dumps(
        value, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS | orjson.OPT_UTC_Z,
    )


def deserialize_document(data: bytes) -> Any:
    return orjson.loads(data)
