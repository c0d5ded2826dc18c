"""
Shared fixtures for the guardian test suite.

The stores mirror the built-in demo setup:
    - foo / bar  -> allow everything except ``GET /_cluster/health``
    - baz / boo  -> deny everything except ``GET /_cluster/health``
"""

import logging

import pytest

from guardian.acls import Action, AuthorizationStore, RuleSet
from guardian.auth import CredentialStore, hash_password
from guardian.config import Config
from guardian.logger import GuardianLogger
from guardian.pipeline import Gatekeeper


class ListHandler(logging.Handler):
    """Collects raw records for assertions."""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def events(self):
        return [r.msg["event"] for r in self.records if isinstance(r.msg, dict)]


@pytest.fixture
def credentials() -> CredentialStore:
    return CredentialStore.from_map({"foo": hash_password("bar"), "baz": hash_password("boo")})


@pytest.fixture
def authorizations() -> AuthorizationStore:
    return AuthorizationStore.from_map(
        {
            "foo": RuleSet(Action.ALLOW, frozenset({"GET /_cluster/health"})),
            "baz": (Action.DENY, ["GET /_cluster/health"]),
        }
    )


@pytest.fixture
def gatekeeper(credentials, authorizations) -> Gatekeeper:
    return Gatekeeper(credentials, authorizations, realm="Elasticsearch")


@pytest.fixture
def log_capture():
    """A GuardianLogger writing into an in-memory handler."""
    handler = ListHandler()
    logger = GuardianLogger(handler=handler)
    yield logger, handler
    logger.close()


@pytest.fixture
def config() -> Config:
    return Config(
        backend_url="http://127.0.0.1:9",
        listen_host="127.0.0.1",
        listen_port=0,
        realm="Elasticsearch",
        credentials_path="",
        authorizations_path="",
        log_path="stdout",
    )
