"""
guardian.acls
~~~~~~~~~~~~~
Tiny rule-engine for per-user allow/deny.

Each user gets a default action plus a set of exact ``"VERB PATH"``
exceptions:

* default ``allow`` - the exceptions are a blacklist;
* default ``deny``  - the exceptions are a whitelist.

authorizations.txt
------------------
# user:default:exception:exception...
foo:allow:GET /_cluster/health
baz:deny:GET /_cluster/health:GET /_cat/indices

Users without an entry are denied everything.
"""

from __future__ import annotations

import enum
import pathlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import IO, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from .loading import LoadError, open_source, read_records

_KIND = "authorizations"


class Action(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"


def canonical_rule(verb: str, path: str) -> str:
    return f"{verb} {path}"


@dataclass(frozen=True)
class RuleSet:
    default: Action = Action.DENY
    exceptions: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def empty(cls) -> "RuleSet":
        return cls()

    @property
    def is_empty(self) -> bool:
        return self.default is Action.DENY and not self.exceptions

    def has_rule(self, verb: str, path: str) -> bool:
        return canonical_rule(verb, path) in self.exceptions

    def allows(self, verb: str, path: str) -> bool:
        if self.default is Action.ALLOW:
            return not self.has_rule(verb, path)
        return self.has_rule(verb, path)


RuleSpec = Union[RuleSet, Tuple[Action, Iterable[str]]]

_EMPTY = RuleSet.empty()


def _as_ruleset(value: RuleSpec) -> RuleSet:
    if isinstance(value, RuleSet):
        return value
    default, exceptions = value
    return RuleSet(Action(default), frozenset(exceptions))


class AuthorizationStore:
    """Read-only username -> RuleSet mapping, swapped wholesale on load."""

    def __init__(self, entries: Optional[Mapping[str, RuleSet]] = None) -> None:
        self._entries: Mapping[str, RuleSet] = MappingProxyType(dict(entries or {}))

    @classmethod
    def from_map(cls, mapping: Mapping[str, RuleSpec]) -> "AuthorizationStore":
        store = cls()
        store.load_map(mapping)
        return store

    @classmethod
    def from_reader(cls, reader: IO) -> "AuthorizationStore":
        store = cls()
        store.load_reader(reader)
        return store

    @classmethod
    def from_path(cls, path: Union[str, pathlib.Path]) -> "AuthorizationStore":
        store = cls()
        store.load_path(path)
        return store

    def load_map(self, mapping: Mapping[str, RuleSpec]) -> None:
        fresh: Dict[str, RuleSet] = {}
        for user, value in mapping.items():
            if not user:
                raise LoadError(f"{_KIND}: empty username")
            try:
                fresh[user] = _as_ruleset(value)
            except (TypeError, ValueError) as e:
                raise LoadError(f"{_KIND}: bad rules for {user!r}: {e}") from e
        self._entries = MappingProxyType(fresh)

    def load_reader(self, reader: IO) -> None:
        fresh: Dict[str, RuleSet] = {}
        for lineno, ln in read_records(reader, _KIND):
            fields = ln.split(":")
            if len(fields) < 2:
                raise LoadError(
                    f"{_KIND}: line {lineno}: expected 'username:allow|deny[:VERB PATH...]', got {ln!r}"
                )
            user, default, *rules = (f.strip() for f in fields)
            if not user:
                raise LoadError(f"{_KIND}: line {lineno}: empty username in {ln!r}")
            try:
                action = Action(default)
            except ValueError:
                raise LoadError(
                    f"{_KIND}: line {lineno}: default rule must be 'allow' or 'deny', got {default!r}"
                ) from None
            fresh[user] = RuleSet(action, frozenset(r for r in rules if r))
        self._entries = MappingProxyType(fresh)

    def load_path(self, path: Union[str, pathlib.Path]) -> None:
        with open_source(path, _KIND) as fh:
            try:
                self.load_reader(fh)
            except LoadError as e:
                raise LoadError(f"{path}: {e}") from e

    def rules_for(self, username: str) -> RuleSet:
        return self._entries.get(username, _EMPTY)

    def __contains__(self, username: object) -> bool:
        return username in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ACLChecker:
    def __init__(self, store: AuthorizationStore) -> None:
        self.store = store

    def permit(self, username: str, method: str, path: str) -> bool:  # noqa: D401
        """Return True if the request is allowed."""
        # No identity means authentication never ran or never passed.
        if not username:
            return False
        rules = self.store.rules_for(username)
        if rules.is_empty:
            return False
        return rules.allows(method, path)
