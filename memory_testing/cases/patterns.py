"""
Secret Pattern Decoding
=======================

Turns the ``secret`` entry of a case record into the exact bytes the
scanner searches for.

Supported Forms:
- "00ff..."                      bare string, hex
- {"hex": "0x00 ff ..."}         hex, whitespace and 0x prefix allowed
- {"base64": "..."}              standard base64
- {"utf8": "text"}               UTF-8 encoded text
- {"pbkdf2": {...}}              key derived from a password
- {"argon2id": {...}}            key derived from a password, memory-hard

The derived forms cover master-key cases, where the subject derives a key
from a password and the derived key is the material that must vanish.
"""

from __future__ import annotations

import base64
import binascii
import re
from typing import Any, Final

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


PBKDF2_DEFAULT_ITERATIONS: Final[int] = 600_000
PBKDF2_DEFAULT_LENGTH: Final[int] = 32

ARGON2_DEFAULT_TIME_COST: Final[int] = 3
ARGON2_DEFAULT_MEMORY_KIB: Final[int] = 65536
ARGON2_DEFAULT_PARALLELISM: Final[int] = 4
ARGON2_MIN_SALT_BYTES: Final[int] = 8

_HASHES: Final[dict[str, type[hashes.HashAlgorithm]]] = {
    "sha256": hashes.SHA256,
    "sha512": hashes.SHA512,
    "sha1": hashes.SHA1,
}

_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")


class SecretDecodeError(ValueError):
    """Raised when a secret entry cannot be turned into bytes."""
    pass


def decode_hex(text: str) -> bytes:
    """Decode hex, tolerating whitespace and an optional 0x prefix."""
    cleaned = _WHITESPACE.sub("", text).lower()
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned or len(cleaned) % 2:
        raise SecretDecodeError(f"Invalid hex length: {len(cleaned)}")
    try:
        return bytes.fromhex(cleaned)
    except ValueError as e:
        raise SecretDecodeError("Invalid hex characters") from e


def derive_pbkdf2(spec: dict[str, Any]) -> bytes:
    """
    Derive a key with PBKDF2-HMAC.

    Args:
        spec: ``password`` (str), ``salt`` (str, UTF-8), and optionally
            ``iterations``, ``length`` and ``hash`` (sha256/sha512/sha1)
    """
    password, salt = _password_and_salt("pbkdf2", spec)
    iterations = _positive_int("pbkdf2", spec, "iterations", PBKDF2_DEFAULT_ITERATIONS)
    length = _positive_int("pbkdf2", spec, "length", PBKDF2_DEFAULT_LENGTH)

    hash_name = str(spec.get("hash", "sha256")).lower()
    if hash_name not in _HASHES:
        raise SecretDecodeError(f"Unsupported pbkdf2 hash: {hash_name}")

    kdf = PBKDF2HMAC(
        algorithm=_HASHES[hash_name](),
        length=length,
        salt=salt.encode("utf-8"),
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_argon2id(spec: dict[str, Any]) -> bytes:
    """
    Derive a raw Argon2id key.

    Args:
        spec: ``password`` and ``salt`` (str, UTF-8; salt at least 8
            bytes), and optionally ``iterations``, ``memory_kib``,
            ``parallelism`` and ``length``
    """
    password, salt = _password_and_salt("argon2id", spec)
    salt_bytes = salt.encode("utf-8")
    if len(salt_bytes) < ARGON2_MIN_SALT_BYTES:
        raise SecretDecodeError(f"argon2id salt must be at least {ARGON2_MIN_SALT_BYTES} bytes")

    try:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt_bytes,
            time_cost=_positive_int("argon2id", spec, "iterations", ARGON2_DEFAULT_TIME_COST),
            memory_cost=_positive_int("argon2id", spec, "memory_kib", ARGON2_DEFAULT_MEMORY_KIB),
            parallelism=_positive_int("argon2id", spec, "parallelism", ARGON2_DEFAULT_PARALLELISM),
            hash_len=_positive_int("argon2id", spec, "length", PBKDF2_DEFAULT_LENGTH),
            type=Type.ID,
        )
    except HashingError as e:
        raise SecretDecodeError(f"argon2id parameters rejected: {e}") from e


def _password_and_salt(kdf: str, spec: dict[str, Any]) -> tuple[str, str]:
    password = spec.get("password")
    salt = spec.get("salt")
    if not isinstance(password, str) or not isinstance(salt, str) or not salt:
        raise SecretDecodeError(f"{kdf} needs string 'password' and non-empty 'salt'")
    return password, salt


def _positive_int(kdf: str, spec: dict[str, Any], name: str, default: int) -> int:
    value = spec.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise SecretDecodeError(f"{kdf} {name} must be a positive integer")
    return value


def decode_secret(entry: Any) -> bytes:
    """
    Decode a case's secret entry.

    Raises:
        SecretDecodeError: If the entry is missing, empty, or malformed
    """
    if entry is None:
        raise SecretDecodeError("Missing secret")

    if isinstance(entry, str):
        return decode_hex(entry)

    if not isinstance(entry, dict) or len(entry) != 1:
        raise SecretDecodeError("Secret must be a hex string or an object with exactly one encoding")

    (encoding, value), = entry.items()

    if encoding == "pbkdf2":
        if not isinstance(value, dict):
            raise SecretDecodeError("pbkdf2 secret must be an object")
        return derive_pbkdf2(value)
    if encoding == "argon2id":
        if not isinstance(value, dict):
            raise SecretDecodeError("argon2id secret must be an object")
        return derive_argon2id(value)

    if not isinstance(value, str) or not value:
        raise SecretDecodeError(f"{encoding} secret must be a non-empty string")

    if encoding == "hex":
        return decode_hex(value)
    if encoding == "base64":
        try:
            decoded = base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise SecretDecodeError("Invalid base64") from e
        if not decoded:
            raise SecretDecodeError("Secret decodes to zero bytes")
        return decoded
    if encoding == "utf8":
        return value.encode("utf-8")

    raise SecretDecodeError(f"Unknown secret encoding: {encoding}")
