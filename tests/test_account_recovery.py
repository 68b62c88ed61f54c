from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from models.account_code import PasswordResetCode
from models.old_password import UserOldPassword
from models.user import User
from services.results import ErrorKind
from utils.clock import utcnow
from utils.security import verify_password

NEW_PASSWORD = "N3wPassw0rd!"


def fixed_codes(*codes):
    values = iter(codes)
    return lambda: next(values)


def test_send_reset_code_emails_and_stores_code(db, recovery, outbox, make_user):
    user = make_user()

    assert recovery.send_password_reset_code(user.email).ok

    kind, email, code = outbox.sent[-1]
    assert (kind, email) == ("password_reset", user.email)
    stored = db.get_session().query(PasswordResetCode).filter_by(user_id=user.id).one()
    assert stored.code == code
    assert stored.used_at is None


def test_send_reset_code_to_unknown_email(recovery, outbox):
    result = recovery.send_password_reset_code("nobody@example.com")

    assert result.error is ErrorKind.VALIDATION_FAILURE
    assert result.details == {"email": ["The provided email is not related to any account."]}
    assert outbox.sent == []


def test_reset_password_changes_hash_and_revokes_all_families(db, recovery, issuer_factory, outbox, make_user):
    user = make_user()
    issuer = issuer_factory(db, multi_device_sessions=True)
    phone = issuer.issue_for_user(user.id).unwrap()
    laptop = issuer.issue_for_user(user.id).unwrap()
    recovery.send_password_reset_code(user.email)

    result = recovery.reset_password(user.email, outbox.last_code("password_reset"), NEW_PASSWORD)

    assert result.ok
    assert result.value == 2
    reloaded = db.get(User, user.id)
    assert verify_password(NEW_PASSWORD, reloaded.password_hash) is True
    for login in (phone, laptop):
        assert issuer.issue_from_refresh(login.access_token, login.refresh_token).error is ErrorKind.INVALID_REFRESH_TOKEN
    assert db.get_session().query(UserOldPassword).filter_by(user_id=user.id).count() == 1


def test_reset_code_works_only_once(recovery, outbox, make_user):
    user = make_user()
    recovery.send_password_reset_code(user.email)
    code = outbox.last_code("password_reset")
    assert recovery.reset_password(user.email, code, NEW_PASSWORD).ok

    result = recovery.reset_password(user.email, code, "An0therPass!")

    assert result.error is ErrorKind.VALIDATION_FAILURE
    assert "code" in result.details


def test_reset_with_wrong_code(recovery, outbox, make_user):
    user = make_user()
    recovery._new_code = fixed_codes("111111")
    recovery.send_password_reset_code(user.email)

    result = recovery.reset_password(user.email, "222222", NEW_PASSWORD)

    assert result.details == {"code": ["The password reset code is invalid."]}


def test_reset_with_expired_code(db, recovery_factory, outbox, make_user):
    user = make_user()
    recovery_factory(clock=lambda: utcnow() - timedelta(minutes=10)).send_password_reset_code(user.email)

    result = recovery_factory().reset_password(user.email, outbox.last_code("password_reset"), NEW_PASSWORD)

    assert result.details == {"code": ["The password reset code has expired."]}
    assert verify_password(NEW_PASSWORD, db.get(User, user.id).password_hash) is False


@pytest.mark.parametrize("reused", ["Passw0rd!", "F1rstReset!"])
def test_reset_refuses_recent_passwords(recovery, outbox, make_user, reused):
    user = make_user()
    recovery.send_password_reset_code(user.email)
    assert recovery.reset_password(user.email, outbox.last_code("password_reset"), "F1rstReset!").ok
    recovery.send_password_reset_code(user.email)

    result = recovery.reset_password(user.email, outbox.last_code("password_reset"), reused)

    assert result.error is ErrorKind.VALIDATION_FAILURE
    assert result.details == {"password": ["The new password must not match a recently used password."]}


def test_password_history_size_limits_the_check(recovery_factory, outbox, make_user):
    recovery = recovery_factory(password_history_size=0)
    user = make_user()
    recovery.send_password_reset_code(user.email)
    assert recovery.reset_password(user.email, outbox.last_code("password_reset"), "F1rstReset!").ok
    recovery.send_password_reset_code(user.email)

    # only the current password is compared
    assert recovery.reset_password(user.email, outbox.last_code("password_reset"), "Passw0rd!").ok


def test_reset_reports_unavailable_when_database_is_down(recovery, make_user, monkeypatch):
    user = make_user()

    def connection_refused(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(recovery, "_find_user", connection_refused)

    result = recovery.reset_password(user.email, "123456", NEW_PASSWORD)

    assert result.error is ErrorKind.UNAVAILABLE
    assert result.message == "Account service temporarily unavailable."


def test_failed_revocation_rolls_back_the_reset(db, recovery, outbox, make_user, monkeypatch):
    user = make_user()
    recovery.send_password_reset_code(user.email)
    code = outbox.last_code("password_reset")

    def revocation_fails(user_id):
        db.get_session().rollback()
        return recovery.store.recover("revoke_all_for_user", OperationalError("UPDATE", {}, Exception("gone")))

    monkeypatch.setattr(recovery.store, "revoke_all_for_user", revocation_fails)

    assert recovery.reset_password(user.email, code, NEW_PASSWORD).error is ErrorKind.UNAVAILABLE
    assert verify_password(NEW_PASSWORD, db.get(User, user.id).password_hash) is False
    stored = db.get_session().query(PasswordResetCode).filter_by(user_id=user.id).one()
    assert stored.used_at is None


def test_verify_email_confirms_once(db, recovery, outbox, make_user):
    user = make_user()
    assert recovery.send_email_verification_code(user.email).ok
    code = outbox.last_code("email_verification")

    assert recovery.verify_email(user.email, code).ok

    assert db.get(User, user.id).email_confirmed is True
    again = recovery.send_email_verification_code(user.email)
    assert again.details == {"email": ["The email is already confirmed."]}


def test_verify_email_with_wrong_code(recovery, make_user):
    user = make_user()
    recovery._new_code = fixed_codes("654321")
    recovery.send_email_verification_code(user.email)

    result = recovery.verify_email(user.email, "123456")

    assert result.details == {"code": ["The verification code is invalid."]}


def test_missing_arguments_are_programmer_errors(recovery):
    with pytest.raises(ValueError):
        recovery.reset_password("jane@example.com", "", NEW_PASSWORD)
