"""HMAC signing of session cookie values.

Signed values look like ``s:<value>.<signature>`` where the signature is the
unpadded base64url HMAC of ``<value>``. Several secrets may be passed to
:func:`unsign`; the first one that verifies wins, so a new secret can be placed
in front of the old one without logging everybody out.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

SIGNED_PREFIX = "s:"
KEY_CACHE_SIZE = 100

_DIGESTS = {
    "sha256": hashlib.sha256,
    "sha384": hashlib.sha384,
    "sha512": hashlib.sha512,
}


class CookieErrorReason(str, Enum):
    INVALID_FORMAT = "invalid_format"
    INVALID_PREFIX = "invalid_prefix"
    VERIFICATION_FAILED = "verification_failed"


@dataclass(frozen=True)
class UnsignResult:
    success: bool
    value: Optional[str] = None
    reason: Optional[CookieErrorReason] = None


class _KeyCache:
    """Bounded LRU of keyed HMAC objects, one per (secret, algorithm)."""

    def __init__(self, max_size: int = KEY_CACHE_SIZE) -> None:
        self.max_size = max_size
        self._entries: OrderedDict[tuple[str, str], "hmac.HMAC"] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, secret: str, algorithm: str) -> "hmac.HMAC":
        cache_key = (secret, algorithm)
        with self._lock:
            keyed = self._entries.get(cache_key)
            if keyed is not None:
                self._entries.move_to_end(cache_key)
                return keyed.copy()
            keyed = hmac.new(secret.encode("utf-8"), digestmod=_digest(algorithm))
            self._entries[cache_key] = keyed
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
            return keyed.copy()

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_key_cache = _KeyCache()


def _digest(algorithm: str):
    try:
        return _DIGESTS[algorithm.lower()]
    except KeyError:
        raise ValueError(f"unsupported signing algorithm: {algorithm}") from None


def signature_length(algorithm: str = "sha256") -> int:
    """Length of the unpadded base64url signature (43 for sha256)."""
    size = _digest(algorithm)().digest_size
    return len(base64.urlsafe_b64encode(b"\0" * size).rstrip(b"="))


def _signature(value: str, secret: str, algorithm: str) -> str:
    mac = _key_cache.get(secret, algorithm)
    mac.update(value.encode("utf-8"))
    return base64.urlsafe_b64encode(mac.digest()).rstrip(b"=").decode("ascii")


def sign(value: str, secret: str, algorithm: str = "sha256") -> str:
    if not value:
        raise ValueError("cannot sign an empty value")
    if not secret:
        raise ValueError("cannot sign with an empty secret")
    return f"{SIGNED_PREFIX}{value}.{_signature(value, secret, algorithm)}"


def unsign(
    cookie_value: str, secrets: Sequence[str], algorithm: str = "sha256"
) -> UnsignResult:
    sig_len = signature_length(algorithm)
    if not cookie_value or len(cookie_value) < sig_len + len(SIGNED_PREFIX) + 1:
        return UnsignResult(False, reason=CookieErrorReason.INVALID_FORMAT)
    if not cookie_value.startswith(SIGNED_PREFIX):
        return UnsignResult(False, reason=CookieErrorReason.INVALID_PREFIX)

    separator = len(cookie_value) - sig_len - 1
    if cookie_value[separator] != ".":
        return UnsignResult(False, reason=CookieErrorReason.INVALID_FORMAT)

    value = cookie_value[len(SIGNED_PREFIX):separator]
    presented = cookie_value[separator + 1:]
    if not value:
        return UnsignResult(False, reason=CookieErrorReason.INVALID_FORMAT)

    for secret in secrets:
        if not secret:
            continue
        expected = _signature(value, secret, algorithm)
        if hmac.compare_digest(expected.encode("ascii"), presented.encode("utf-8", "replace")):
            return UnsignResult(True, value=value)
    return UnsignResult(False, reason=CookieErrorReason.VERIFICATION_FAILED)


def clear_key_cache() -> None:
    _key_cache.clear()


def key_cache_size() -> int:
    return len(_key_cache)
