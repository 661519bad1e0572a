import pytest

import models
import sessions
from errors import LastAdminProtection, PasswordTooShort, TreeShareError, UserNotFound
from security import verify_password
from users import (
    ROLE_ADMIN, ROLE_USER, admin_count, create_user, delete_user, get_user_by_username,
    set_disabled, set_password, set_role,
)
from conftest import PASSWORD


def test_usernames_are_normalized(db):
    user = create_user(db, "  Alice ", PASSWORD)
    assert user.username == "alice"
    assert get_user_by_username(db, "ALICE").id == user.id


def test_duplicate_and_empty_usernames(db):
    create_user(db, "alice", PASSWORD)
    with pytest.raises(TreeShareError):
        create_user(db, "Alice", PASSWORD)
    with pytest.raises(TreeShareError):
        create_user(db, "   ", PASSWORD)


def test_short_password_rejected(db):
    with pytest.raises(PasswordTooShort):
        create_user(db, "alice", "short")


def test_set_password(db):
    create_user(db, "alice", PASSWORD)
    set_password(db, "alice", "another password")
    assert verify_password(get_user_by_username(db, "alice").password_hash, "another password")
    with pytest.raises(UserNotFound):
        set_password(db, "nobody", "another password")


def test_sole_admin_cannot_be_disabled_deleted_or_demoted(db):
    create_user(db, "root", PASSWORD, ROLE_ADMIN)
    with pytest.raises(LastAdminProtection):
        set_disabled(db, "root", True)
    with pytest.raises(LastAdminProtection):
        delete_user(db, "root")
    with pytest.raises(LastAdminProtection):
        set_role(db, "root", ROLE_USER)
    assert admin_count(db) == 1


def test_either_of_two_admins_can_be_disabled(db):
    create_user(db, "root", PASSWORD, ROLE_ADMIN)
    create_user(db, "ops", PASSWORD, ROLE_ADMIN)
    set_disabled(db, "ops", True)
    assert admin_count(db) == 1
    # ops is no longer active, so root is now the last one
    with pytest.raises(LastAdminProtection):
        set_disabled(db, "root", True)
    set_disabled(db, "ops", False)
    set_disabled(db, "root", True)
    assert admin_count(db) == 1


def test_disabled_admin_can_be_removed(db):
    create_user(db, "root", PASSWORD, ROLE_ADMIN)
    create_user(db, "old", PASSWORD, ROLE_ADMIN)
    set_disabled(db, "old", True)
    delete_user(db, "old")
    assert get_user_by_username(db, "old") is None


def test_delete_user_drops_sessions(db):
    user = create_user(db, "alice", PASSWORD)
    sessions.issue_authenticated(db, None, user.id, remember=False)
    delete_user(db, "alice")
    assert db.query(models.SessionRecord).count() == 0


def test_invalid_role(db):
    create_user(db, "alice", PASSWORD)
    with pytest.raises(TreeShareError):
        set_role(db, "alice", "superuser")
