from datetime import timedelta

import pytest

import shares
from auth import ANONYMOUS, Principal
from database import utcnow
from errors import LinkGone, LinkNotFound, NotAllowed, ScopeEscape, TreeShareError
from permissions import Permissions


@pytest.mark.parametrize("raw,expected", [
    ("24h", timedelta(hours=24)),
    ("1h30m", timedelta(hours=1, minutes=30)),
    ("90s", timedelta(seconds=90)),
    ("7d", timedelta(days=7)),
    ("1.5h", timedelta(minutes=90)),
    ("500ms", timedelta(milliseconds=500)),
])
def test_parse_duration(raw, expected):
    assert shares.parse_duration(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "10", "h", "5x", "1h junk", "-1h"])
def test_parse_duration_rejects(raw):
    with pytest.raises(ValueError):
        shares.parse_duration(raw)


@pytest.mark.parametrize("raw", ["10000000d", "99999999999999d", "1" + "0" * 400 + "h", "36500d36500d"])
def test_parse_duration_rejects_out_of_range(raw):
    with pytest.raises(ValueError):
        shares.parse_duration(raw)


def test_parse_duration_upper_bound():
    assert shares.parse_duration("36500d") == shares.MAX_DURATION
    with pytest.raises(ValueError):
        shares.parse_duration("36501d")


def test_create_link_rejects_overlong_expiry(db):
    with pytest.raises(TreeShareError):
        shares.create_link(db, "docs", "browse", shares.MAX_DURATION + timedelta(seconds=1))


def test_resolve_scoped_descends():
    assert shares.resolve_scoped("docs", "images") == "docs/images"
    assert shares.resolve_scoped("docs", "") == "docs"
    assert shares.resolve_scoped("docs", "/") == "docs"
    assert shares.resolve_scoped("docs", "docs/images") == "docs/images"
    assert shares.resolve_scoped("docs", "images/../a.txt") == "docs/a.txt"
    assert shares.resolve_scoped("", "anything/at/all") == "anything/at/all"


@pytest.mark.parametrize("sub", ["../../etc", "..", "docs2", "docs-evil/x", "images/../../x", "docs/../etc"])
def test_resolve_scoped_rejects_escape(sub):
    with pytest.raises(ScopeEscape):
        shares.resolve_scoped("docs", sub)


def test_resolve_scoped_prefixed_child_needs_to_exist(tmp_path):
    (tmp_path / "docs" / "docs-old").mkdir(parents=True)
    (tmp_path / "docs-evil").mkdir()
    root = str(tmp_path)
    assert shares.resolve_scoped("docs", "docs-old", root) == "docs/docs-old"
    # only the link's own subtree counts, not the sibling of the same name
    with pytest.raises(ScopeEscape):
        shares.resolve_scoped("docs", "docs-evil", root)
    with pytest.raises(ScopeEscape):
        shares.resolve_scoped("docs", "docs-old", None)


def test_access_live_link_records_access(db):
    link = shares.create_link(db, "docs", "browse", timedelta(hours=1))
    assert link.last_accessed_at is None
    found = shares.access(db, link.token)
    assert found.path == "docs"
    db.refresh(found)
    assert found.last_accessed_at is not None


def test_unknown_link(db):
    with pytest.raises(LinkNotFound):
        shares.access(db, "nope")


def test_revoked_and_expired_are_indistinguishable(db):
    now = utcnow()
    expired = shares.create_link(db, "a", "browse", timedelta(minutes=1), now=now - timedelta(hours=1))
    revoked = shares.create_link(db, "b", "browse", timedelta(hours=1))
    shares.revoke_link(db, revoked.token, ANONYMOUS, Permissions(admin=True))

    with pytest.raises(LinkGone) as e1:
        shares.access(db, expired.token)
    with pytest.raises(LinkGone) as e2:
        shares.access(db, revoked.token)
    assert e1.value.message == e2.value.message
    assert e1.value.status_code == e2.value.status_code == 410


def test_create_rejects_bad_mode_and_expiry(db):
    with pytest.raises(TreeShareError):
        shares.create_link(db, "", "edit", timedelta(hours=1))
    with pytest.raises(TreeShareError):
        shares.create_link(db, "", "browse", timedelta(0))


def test_tokens_are_unique(db):
    a = shares.create_link(db, "", "browse", timedelta(hours=1))
    b = shares.create_link(db, "", "browse", timedelta(hours=1))
    assert a.token != b.token
    assert len(a.token) == 24


def test_revoke_only_by_owner_or_admin(db, make_user):
    alice = make_user("alice")
    bob = make_user("bob")
    link = shares.create_link(db, "docs", "download", timedelta(hours=1), created_by=alice.id)
    user_perms = Permissions(browse=True, share=True)

    as_bob = Principal(user_id=bob.id, username="bob", role="user", anonymous=False)
    with pytest.raises(NotAllowed):
        shares.revoke_link(db, link.token, as_bob, user_perms)
    with pytest.raises(NotAllowed):
        shares.revoke_link(db, link.token, ANONYMOUS, user_perms)

    as_alice = Principal(user_id=alice.id, username="alice", role="user", anonymous=False)
    assert shares.revoke_link(db, link.token, as_alice, user_perms).revoked

    with pytest.raises(LinkNotFound):
        shares.revoke_link(db, "missing", as_alice, user_perms)


def test_list_and_serialize(db):
    shares.create_link(db, "x", "upload", timedelta(hours=1))
    (link,) = shares.list_links(db)
    data = shares.link_to_dict(link)
    assert data["mode"] == "upload"
    assert data["path"] == "x"
    assert data["revoked"] is False
    assert data["last_accessed"] is None
