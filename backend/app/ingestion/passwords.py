"""scrypt password hashing for imported login accounts."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from app.core.config import get_settings

logger = logging.getLogger(__name__)

SCRYPT_R = 8
SCRYPT_P = 1
KEY_LENGTH = 64
SALT_BYTES = 16
# 128 * r * n bytes are needed; leave headroom above OpenSSL's 32 MiB default.
SCRYPT_MAXMEM = 64 * 1024 * 1024


def hash_password(password: str, n: int | None = None) -> str:
    """Return ``scrypt$n$r$p$salt$hash`` with hex-encoded salt and key."""
    n = n or get_settings().password_scrypt_n
    salt = secrets.token_bytes(SALT_BYTES)
    key = hashlib.scrypt(
        password.encode("utf-8"),
        salt=salt,
        n=n,
        r=SCRYPT_R,
        p=SCRYPT_P,
        maxmem=SCRYPT_MAXMEM,
        dklen=KEY_LENGTH,
    )
    return f"scrypt${n}${SCRYPT_R}${SCRYPT_P}${salt.hex()}${key.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, n, r, p, salt_hex, key_hex = encoded.split("$")
    except ValueError:
        return False
    if algorithm != "scrypt":
        return False
    expected = bytes.fromhex(key_hex)
    key = hashlib.scrypt(
        password.encode("utf-8"),
        salt=bytes.fromhex(salt_hex),
        n=int(n),
        r=int(r),
        p=int(p),
        maxmem=SCRYPT_MAXMEM,
        dklen=len(expected),
    )
    return hmac.compare_digest(key, expected)


def hash_passwords(passwords: Sequence[str], workers: int | None = None) -> list[str]:
    """Hash every password in parallel, preserving input order.

    Runs before any transaction is opened so the CPU-bound work never
    holds database locks.
    """
    if not passwords:
        return []
    settings = get_settings()
    workers = workers or settings.password_hash_workers
    n = settings.password_scrypt_n
    logger.debug(f"Hashing {len(passwords)} password(s) with {workers} worker(s)")
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pwhash") as pool:
        return list(pool.map(lambda password: hash_password(password, n), passwords))
