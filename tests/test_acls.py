"""
Unit tests for guardian.acls: rule sets, the authorization store and the
ACL checker.
"""

import io

import pytest

from guardian.acls import ACLChecker, Action, AuthorizationStore, RuleSet
from guardian.loading import LoadError


@pytest.fixture
def acl(authorizations) -> ACLChecker:
    return ACLChecker(authorizations)


def test_empty_username_always_denied(acl):
    assert acl.permit("", "GET", "/_cluster/stats") is False
    assert acl.permit("", "GET", "/_cluster/health") is False


def test_blacklist_mode(acl):
    assert acl.permit("foo", "POST", "/_cluster/health") is True
    assert acl.permit("foo", "GET", "/_cluster/stats") is True
    assert acl.permit("foo", "GET", "/_cluster/health") is False


def test_whitelist_mode(acl):
    assert acl.permit("baz", "GET", "/_cluster/health") is True
    assert acl.permit("baz", "GET", "/_cluster/stats") is False
    assert acl.permit("baz", "POST", "/_cluster/health") is False


@pytest.mark.parametrize(
    "verb,path",
    [("GET", "/"), ("DELETE", "/index"), ("GET", "/_cluster/health"), ("HEAD", "")],
)
def test_unconfigured_user_denied_everything(acl, verb, path):
    assert acl.permit("mallory", verb, path) is False


def test_matching_is_exact():
    acl = ACLChecker(AuthorizationStore.from_map({"u": (Action.DENY, ["GET /x"])}))
    assert acl.permit("u", "GET", "/x") is True
    assert acl.permit("u", "get", "/x") is False
    assert acl.permit("u", "GET", "/x/") is False
    assert acl.permit("u", "GET", "/x/y") is False
    assert acl.permit("u", "GET", "/X") is False


def test_ruleset_is_empty():
    assert RuleSet.empty().is_empty
    assert RuleSet(Action.DENY, frozenset()).is_empty
    assert not RuleSet(Action.ALLOW, frozenset()).is_empty
    assert not RuleSet(Action.DENY, frozenset({"GET /x"})).is_empty


def test_allow_with_no_exceptions_allows_everything():
    acl = ACLChecker(AuthorizationStore.from_map({"root": RuleSet(Action.ALLOW)}))
    assert acl.permit("root", "DELETE", "/everything") is True


def test_explicit_empty_deny_ruleset_denies():
    acl = ACLChecker(AuthorizationStore.from_map({"u": RuleSet(Action.DENY)}))
    assert acl.permit("u", "GET", "/") is False


# --------------------------------------------------------------------------- #
# loading
# --------------------------------------------------------------------------- #

RULES = """\
# user:default:exceptions...
foo:allow:GET /_cluster/health
baz:deny:GET /_cluster/health:GET /_cat/indices
root:allow
"""


def test_from_reader():
    store = AuthorizationStore.from_reader(io.StringIO(RULES))
    assert len(store) == 3
    assert store.rules_for("foo") == RuleSet(Action.ALLOW, frozenset({"GET /_cluster/health"}))
    assert store.rules_for("baz").exceptions == {"GET /_cluster/health", "GET /_cat/indices"}
    assert store.rules_for("root") == RuleSet(Action.ALLOW)
    assert store.rules_for("nobody").is_empty


def test_from_reader_bytes():
    store = AuthorizationStore.from_reader(io.BytesIO(RULES.encode("utf-8")))
    acl = ACLChecker(store)
    assert acl.permit("baz", "GET", "/_cat/indices") is True
    assert acl.permit("baz", "GET", "/_cat/nodes") is False


def test_from_reader_ignores_empty_exception_fields():
    store = AuthorizationStore.from_reader(io.StringIO("u:deny::GET /x:\n"))
    assert store.rules_for("u").exceptions == {"GET /x"}


@pytest.mark.parametrize(
    "line,fragment",
    [
        ("foo", "expected"),
        ("foo:maybe:GET /", "'allow' or 'deny'"),
        ("foo:ALLOW", "'allow' or 'deny'"),
        (":allow", "empty username"),
    ],
)
def test_from_reader_rejects_malformed_line(line, fragment):
    with pytest.raises(LoadError) as exc:
        AuthorizationStore.from_reader(io.StringIO(f"ok:allow\n{line}\n"))
    assert "line 2" in str(exc.value)
    assert fragment in str(exc.value)


def test_from_path(tmp_path):
    p = tmp_path / "authorizations.txt"
    p.write_text(RULES, encoding="utf-8")
    acl = ACLChecker(AuthorizationStore.from_path(p))
    assert acl.permit("foo", "GET", "/_cluster/health") is False


def test_from_path_missing_file(tmp_path):
    with pytest.raises(LoadError, match="missing.txt"):
        AuthorizationStore.from_path(tmp_path / "missing.txt")


def test_from_map_rejects_bad_action():
    with pytest.raises(LoadError, match="bad rules"):
        AuthorizationStore.from_map({"u": ("sometimes", ["GET /"])})


def test_failed_load_keeps_previous_rules(authorizations):
    with pytest.raises(LoadError):
        authorizations.load_reader(io.StringIO("foo:perhaps\n"))
    assert ACLChecker(authorizations).permit("foo", "GET", "/_cluster/stats") is True


def test_loading_same_source_twice_is_idempotent():
    a = AuthorizationStore.from_reader(io.StringIO(RULES))
    b = AuthorizationStore.from_reader(io.StringIO(RULES))
    b.load_reader(io.StringIO(RULES))
    probes = [
        (u, v, p)
        for u in ("foo", "baz", "root", "nobody", "")
        for v in ("GET", "POST")
        for p in ("/_cluster/health", "/_cat/indices", "/")
    ]
    for probe in probes:
        assert ACLChecker(a).permit(*probe) == ACLChecker(b).permit(*probe)
