import pytest

from training_attendance.modules.auth_manager import AuthManager, has_permission, public_user
from training_attendance.modules.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

from conftest import PASSWORD


def test_register_creates_pending_trainee(auth_manager):
    user = auth_manager.register("New.Person@Example.com ", PASSWORD, "New Person")

    assert user["email"] == "new.person@example.com"
    assert user["role"] == "trainee"
    assert user["status"] == "pending"
    assert "password_hash" not in user


def test_duplicate_email_conflicts(auth_manager):
    auth_manager.register("dup@example.com", PASSWORD, "First")

    with pytest.raises(ConflictError):
        auth_manager.register("DUP@example.com", PASSWORD, "Second")


@pytest.mark.parametrize(
    "email, password, full_name",
    [
        ("not-an-email", PASSWORD, "Name"),
        ("a@example.com", "Short1", "Name"),
        ("a@example.com", "alllowercase1", "Name"),
        ("a@example.com", "ALLUPPERCASE1", "Name"),
        ("a@example.com", "NoDigitsHere", "Name"),
        ("a@example.com", PASSWORD, ""),
    ],
)
def test_registration_validation(auth_manager, email, password, full_name):
    with pytest.raises(ValidationError):
        auth_manager.register(email, password, full_name)


def test_authenticate(auth_manager, make_user):
    user = make_user("trainer")

    result = auth_manager.authenticate(user["email"].upper(), PASSWORD, "10.0.0.1")

    assert result["id"] == user["id"]
    assert "manage_sessions" in result["permissions"]
    assert "password_hash" not in result


def test_authenticate_rejects_bad_credentials(auth_manager, make_user):
    user = make_user()

    with pytest.raises(AuthenticationError) as exc_info:
        auth_manager.authenticate(user["email"], "WrongPassword1")
    assert exc_info.value.message == "Invalid email or password."
    assert exc_info.value.status_code == 401

    with pytest.raises(AuthenticationError):
        auth_manager.authenticate("nobody@example.com", PASSWORD)
    with pytest.raises(ValidationError):
        auth_manager.authenticate(user["email"], "")


def test_lockout_after_repeated_failures(auth_manager, make_user):
    user = make_user()
    for _ in range(5):
        with pytest.raises(AuthenticationError):
            auth_manager.authenticate(user["email"], "WrongPassword1")

    with pytest.raises(AuthenticationError) as exc_info:
        auth_manager.authenticate(user["email"], PASSWORD)
    assert exc_info.value.reason == "account_locked"


def test_pending_users_can_authenticate(auth_manager):
    user = auth_manager.register("pending@example.com", PASSWORD, "Pending Person")

    assert auth_manager.authenticate(user["email"], PASSWORD)["status"] == "pending"


def test_rejected_users_cannot_authenticate(auth_manager, make_user):
    admin = make_user("admin")
    user = auth_manager.register("rejected@example.com", PASSWORD, "Rejected Person")
    auth_manager.reject_user(user["id"], admin["id"])

    with pytest.raises(ForbiddenError) as exc_info:
        auth_manager.authenticate(user["email"], PASSWORD)
    assert exc_info.value.reason == "account_rejected"


def test_approval_workflow(auth_manager, make_user):
    admin = make_user("admin")
    user = auth_manager.register("approve@example.com", PASSWORD, "Approve Me")

    approved = auth_manager.approve_user(user["id"], admin["id"])

    assert approved["status"] == "active"
    assert approved["approved_by"] == admin["id"]
    assert approved["approved_at"] is not None
    with pytest.raises(InvalidStateError):
        auth_manager.approve_user(user["id"], admin["id"])
    with pytest.raises(NotFoundError):
        auth_manager.approve_user("missing", admin["id"])

    assert [u["id"] for u in auth_manager.list_users(status="pending")] == []


def test_set_role(auth_manager, make_user):
    user = make_user()

    assert auth_manager.set_role(user["id"], "trainer")["role"] == "trainer"
    with pytest.raises(ValidationError):
        auth_manager.set_role(user["id"], "superuser")
    assert [u["id"] for u in auth_manager.list_users(role="trainer")] == [user["id"]]


def test_bootstrap_admin(auth_manager):
    with pytest.raises(ConfigurationError) as exc_info:
        auth_manager.bootstrap_admin("root@example.com", PASSWORD, "Root", "secret", None)
    assert exc_info.value.message == "Server misconfiguration"

    with pytest.raises(AuthenticationError) as exc_info:
        auth_manager.bootstrap_admin("root@example.com", PASSWORD, "Root", "guess", "secret")
    assert exc_info.value.message == "Unauthorized"

    with pytest.raises(ValidationError) as exc_info:
        auth_manager.bootstrap_admin("", PASSWORD, "Root", "secret", "secret")
    assert exc_info.value.message == "Email and password required"

    admin = auth_manager.bootstrap_admin("root@example.com", PASSWORD, "", "secret", "secret")
    assert admin["role"] == "admin"
    assert admin["status"] == "active"
    assert admin["full_name"] == "System Admin"


def test_custom_password_length(db):
    manager = AuthManager(db, password_min_length=12)

    with pytest.raises(ValidationError) as exc_info:
        manager.register("short@example.com", PASSWORD, "Short Password")
    assert "12" in exc_info.value.message


def test_permission_helpers():
    assert has_permission("admin", "manage_users")
    assert not has_permission("trainee", "manage_users")
    assert not has_permission("guest", "scan_qr_codes")
    assert public_user(None) is None
    assert public_user({"id": "u1", "password_hash": "x"}) == {"id": "u1"}
