"""
guardian.auth
~~~~~~~~~~~~~
HTTP Basic-Auth verification against a credential store.

The store maps usernames to SHA-256 hex digests of their passwords and is
built from an inline mapping or from ``username:hash`` text, one per line.
Plaintext passwords are never kept.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import pathlib
from types import MappingProxyType
from typing import IO, Dict, Mapping, Optional, Tuple, Union

from .loading import LoadError, open_source, read_records

_KIND = "credentials"


def hash_password(password: str) -> str:
    """Return the SHA-256 hex digest of *password*."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


# Stand-in digest for unknown usernames.
_NO_SUCH_USER = hash_password("")


class AuthStatus(enum.Enum):
    NOT_ATTEMPTED = "not_attempted"
    NOT_BASIC = "not_basic"
    FAILED = "failed"
    PASSED = "passed"


class CredentialStore:
    """Read-only username -> password-hash mapping.

    Loading builds a complete new mapping and then swaps it in with a single
    assignment, so concurrent readers see either the old or the new contents.
    """

    def __init__(self, entries: Optional[Mapping[str, str]] = None) -> None:
        self._entries: Mapping[str, str] = MappingProxyType(dict(entries or {}))

    # ------------------------------------------------------------------ #
    # constructors
    # ------------------------------------------------------------------ #

    @classmethod
    def from_map(cls, mapping: Mapping[str, str]) -> "CredentialStore":
        store = cls()
        store.load_map(mapping)
        return store

    @classmethod
    def from_reader(cls, reader: IO) -> "CredentialStore":
        store = cls()
        store.load_reader(reader)
        return store

    @classmethod
    def from_path(cls, path: Union[str, pathlib.Path]) -> "CredentialStore":
        store = cls()
        store.load_path(path)
        return store

    # ------------------------------------------------------------------ #
    # loading
    # ------------------------------------------------------------------ #

    def load_map(self, mapping: Mapping[str, str]) -> None:
        fresh = dict(mapping)
        for user, digest in fresh.items():
            if not user or not digest:
                raise LoadError(f"{_KIND}: empty username or hash for {user!r}")
        self._entries = MappingProxyType(fresh)

    def load_reader(self, reader: IO) -> None:
        fresh: Dict[str, str] = {}
        for lineno, ln in read_records(reader, _KIND):
            if ln.count(":") != 1:
                raise LoadError(
                    f"{_KIND}: line {lineno}: expected 'username:hash', got {ln!r}"
                )
            user, digest = (part.strip() for part in ln.split(":"))
            if not user or not digest:
                raise LoadError(
                    f"{_KIND}: line {lineno}: empty username or hash in {ln!r}"
                )
            fresh[user] = digest
        self._entries = MappingProxyType(fresh)

    def load_path(self, path: Union[str, pathlib.Path]) -> None:
        with open_source(path, _KIND) as fh:
            try:
                self.load_reader(fh)
            except LoadError as e:
                raise LoadError(f"{path}: {e}") from e

    # ------------------------------------------------------------------ #
    # lookups
    # ------------------------------------------------------------------ #

    def get(self, username: str) -> Optional[str]:
        return self._entries.get(username)

    def __contains__(self, username: object) -> bool:
        return username in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def basic_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _decode_basic(token: str) -> Tuple[str, str]:
    try:
        decoded = base64.b64decode(token, validate=True).decode("utf-8")
    except ValueError as e:  # binascii.Error, UnicodeDecodeError, non-ASCII input
        raise ValueError("bad base64 credentials") from e
    user, sep, password = decoded.partition(":")
    if not sep:
        raise ValueError("credentials lack ':' separator")
    return user, password


def check_basic(header_val: str, store: CredentialStore) -> Tuple[AuthStatus, str]:
    """Classify an ``Authorization`` header value.

    Returns the status and the supplied username.  The username is only
    meaningful for logging unless the status is ``PASSED``.
    """
    if not header_val:
        return AuthStatus.NOT_ATTEMPTED, ""

    tokens = header_val.split(" ")
    if len(tokens) != 2 or tokens[0] != "Basic":
        return AuthStatus.NOT_BASIC, ""

    try:
        username, password = _decode_basic(tokens[1])
    except ValueError:
        return AuthStatus.FAILED, ""

    stored = store.get(username)
    supplied = hash_password(password).encode("ascii")
    expected = (stored or _NO_SUCH_USER).encode("utf-8")
    if hmac.compare_digest(expected, supplied) and stored is not None:
        return AuthStatus.PASSED, username
    return AuthStatus.FAILED, username
