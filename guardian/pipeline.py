"""
guardian.pipeline
~~~~~~~~~~~~~~~~~
Authentication then authorization, decided before anything is forwarded.

The gatekeeper is pure: it takes the request line and headers and returns a
:class:`Verdict`.  Sending the short-circuit response or forwarding the
request is left to :mod:`guardian.core`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import unquote, urlsplit

from .acls import ACLChecker, AuthorizationStore
from .auth import AuthStatus, CredentialStore, basic_header, check_basic

IDENTITY_HEADER = "X-Authenticated-User"

Headers = List[Tuple[str, str]]


class Stage(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    DENIED = "denied"
    FORWARDED = "forwarded"


@dataclass(frozen=True)
class Verdict:
    stage: Stage
    status: int
    body: bytes = b""
    headers: Headers = field(default_factory=list)
    username: str = ""
    auth_status: Optional[AuthStatus] = None

    @property
    def forwarded(self) -> bool:
        return self.stage is Stage.FORWARDED


def header_value(headers: Headers, name: str) -> str:
    name = name.lower()
    for k, v in headers:
        if k.lower() == name:
            return v
    return ""


def request_path(target: str) -> str:
    """Decoded path component of a request-target, query dropped."""
    if target.startswith("/"):
        return unquote(target.partition("?")[0])
    if target == "*":
        return target
    return unquote(urlsplit(target).path)


def embedded_credentials(target: str) -> str:
    """Build a Basic header from user-info in an absolute-form target."""
    if target.startswith("/"):
        return ""
    parts = urlsplit(target)
    if parts.username is None:
        return ""
    return basic_header(unquote(parts.username), unquote(parts.password or ""))


class Gatekeeper:
    def __init__(
        self,
        credentials: CredentialStore,
        authorizations: AuthorizationStore,
        realm: str,
    ) -> None:
        self.credentials = credentials
        self.acl = ACLChecker(authorizations)
        self.realm = realm

    def swap(
        self,
        credentials: Optional[CredentialStore] = None,
        authorizations: Optional[AuthorizationStore] = None,
    ) -> None:
        """Replace the stores used by subsequent requests."""
        if credentials is not None:
            self.credentials = credentials
        if authorizations is not None:
            self.acl = ACLChecker(authorizations)

    # ------------------------------------------------------------------ #
    # decision
    # ------------------------------------------------------------------ #

    def authenticate(self, target: str, headers: Headers) -> Tuple[AuthStatus, str]:
        header_val = header_value(headers, "authorization")
        if not header_val:
            header_val = embedded_credentials(target)
        return check_basic(header_val, self.credentials)

    def evaluate(self, method: str, target: str, headers: Headers) -> Verdict:
        status, username = self.authenticate(target, headers)

        if status is AuthStatus.NOT_ATTEMPTED:
            return Verdict(
                Stage.UNAUTHENTICATED,
                401,
                b"401 Unauthorized\n",
                [("WWW-Authenticate", f'Basic realm="{self.realm}"')],
                auth_status=status,
            )
        if status is not AuthStatus.PASSED:
            return Verdict(
                Stage.UNAUTHENTICATED,
                403,
                b"403 Forbidden (authentication)\n",
                username=username,
                auth_status=status,
            )

        if not self.acl.permit(username, method, request_path(target)):
            return Verdict(
                Stage.DENIED,
                403,
                b"403 Forbidden (authorization)\n",
                username=username,
                auth_status=status,
            )

        return Verdict(Stage.FORWARDED, 200, username=username, auth_status=status)

    @staticmethod
    def forward_headers(headers: Headers, username: str) -> Headers:
        """Replace any caller-supplied identity header with our own."""
        marker = IDENTITY_HEADER.lower()
        kept = [(k, v) for k, v in headers if k.lower() != marker]
        kept.append((IDENTITY_HEADER, username))
        return kept
