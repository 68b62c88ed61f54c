from __future__ import annotations

import base64
import threading
from datetime import timedelta

import jwt
import pytest
from sqlalchemy.exc import OperationalError

from models.db_storage import DBStorage
from models.user import User
from services.results import ErrorKind
from services.token_issuer import ALGORITHM, JwtSettings, generate_refresh_token_value
from utils.clock import to_epoch, utcnow


def tamper(token: str) -> str:
    header, payload, signature = token.split(".")
    i = len(payload) // 2
    flipped = "A" if payload[i] != "A" else "B"
    return ".".join([header, payload[:i] + flipped + payload[i + 1:], signature])


def expired_login(db, issuer_factory, past_clock, user):
    """Log in two days ago so the access token has already expired."""
    return issuer_factory(db, clock=past_clock).issue_for_user(user.id).unwrap()


def test_refresh_token_value_is_32_random_bytes():
    value = generate_refresh_token_value()

    assert len(base64.b64decode(value)) == 32
    assert value != generate_refresh_token_value()


def test_settings_reject_empty_secret():
    with pytest.raises(ValueError):
        JwtSettings(secret="", issuer="iss")


def test_settings_from_config():
    settings = JwtSettings.from_config(
        {
            "JWT_SECRET": "s" * 32,
            "JWT_ISSUER": "iss",
            "JWT_TOKEN_LIFETIME_SECONDS": "120",
            "JWT_MULTI_DEVICE_SESSIONS": True,
        }
    )

    assert settings.lifetime_seconds == 120
    assert settings.multi_device_sessions is True
    assert settings.reuse_revokes_family is True
    assert settings.key_id is None


def test_issue_for_user_stores_valid_refresh_token(issuer, make_user):
    user = make_user()

    result = issuer.issue_for_user(user.id)

    assert result.ok
    auth = result.value
    assert auth.token_type == "Bearer"
    assert auth.expires_in == 3600
    active = issuer.store.find_active(user.id)
    assert active.token == auth.refresh_token
    assert active.expire_at > utcnow()
    assert issuer.store.is_valid(active) is True


def test_issue_for_unknown_user(issuer):
    result = issuer.issue_for_user("no-such-user")
    assert result.error is ErrorKind.USER_NOT_FOUND


def test_access_token_claims(issuer, settings, make_user):
    user = make_user(roles=["admin", "user"])

    token = issuer.issue_for_user(user.id).value.access_token

    header = jwt.get_unverified_header(token)
    assert header["alg"] == ALGORITHM
    assert header["kid"] == "test-key"
    claims = issuer.validate_access_token(token).unwrap()
    assert claims["nameid"] == claims["sub"] == claims["sid"] == user.id
    assert claims["unique_name"] == user.user_name
    assert claims["email"] == user.email
    assert claims["iss"] == claims["aud"] == settings.issuer
    assert claims["role"] == ["admin", "user"]
    assert claims["exp"] - claims["iat"] == 3600
    assert claims["jti"]


def test_role_claim_omitted_without_roles(issuer, make_user):
    user = make_user(roles=[])
    claims = issuer.validate_access_token(issuer.issue_for_user(user.id).value.access_token).unwrap()
    assert "role" not in claims


def test_login_reuses_active_chain_by_default(issuer, make_user):
    user = make_user()

    first = issuer.issue_for_user(user.id).unwrap()
    second = issuer.issue_for_user(user.id).unwrap()

    assert second.refresh_token == first.refresh_token


def test_login_starts_new_family_in_multi_device_mode(db, issuer_factory, make_user):
    issuer = issuer_factory(db, multi_device_sessions=True)
    user = make_user()

    laptop = issuer.issue_for_user(user.id).unwrap()
    phone = issuer.issue_for_user(user.id).unwrap()

    laptop_row = issuer.store.find_by_value(user.id, laptop.refresh_token)
    phone_row = issuer.store.find_by_value(user.id, phone.refresh_token)
    assert laptop_row.token_family_id != phone_row.token_family_id

    assert issuer.revoke_by_refresh_token(user.id, laptop.refresh_token).ok
    assert issuer.store.is_valid(issuer.store.find_by_value(user.id, phone.refresh_token)) is True


def test_login_rotates_expired_refresh_token(db, issuer, issuer_factory, make_user):
    user = make_user()
    old_store = issuer_factory(db, clock=lambda: utcnow() - timedelta(days=31)).store
    stale = old_store.insert(user.id, "long-expired").unwrap()

    auth = issuer.issue_for_user(user.id).unwrap()

    assert auth.refresh_token != "long-expired"
    fresh = issuer.store.find_by_value(user.id, auth.refresh_token)
    assert fresh.token_family_id == stale.token_family_id
    assert issuer.store.is_valid(fresh) is True


def test_refresh_rotates_and_returns_new_pair(db, issuer, issuer_factory, past_clock, make_user):
    user = make_user()
    login = expired_login(db, issuer_factory, past_clock, user)
    assert issuer.validate_access_token(login.access_token).error is ErrorKind.INVALID_ACCESS_TOKEN

    result = issuer.issue_from_refresh(login.access_token, login.refresh_token)

    assert result.ok
    assert result.value.refresh_token != login.refresh_token
    assert issuer.validate_access_token(result.value.access_token).ok
    old = issuer.store.find_by_value(user.id, login.refresh_token)
    new = issuer.store.find_by_value(user.id, result.value.refresh_token)
    assert old.has_been_used() is True
    assert new.token_family_id == old.token_family_id


def test_expired_access_token_message(db, issuer, issuer_factory, past_clock, make_user):
    login = expired_login(db, issuer_factory, past_clock, make_user())

    result = issuer.validate_access_token(login.access_token)

    assert result.error is ErrorKind.INVALID_ACCESS_TOKEN
    assert result.message == "Access token expired."


def test_refresh_requires_both_values(issuer):
    result = issuer.issue_from_refresh("", "")

    assert result.error is ErrorKind.VALIDATION_FAILURE
    assert set(result.details) == {"access_token", "refresh_token"}


def test_refresh_with_whitespace_refresh_token_is_a_validation_failure(issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()

    result = issuer.issue_from_refresh(login.access_token, "   ")

    assert result.error is ErrorKind.VALIDATION_FAILURE
    assert set(result.details) == {"refresh_token"}


def test_refresh_with_unknown_refresh_token(issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()

    result = issuer.issue_from_refresh(login.access_token, "not-a-real-token")

    assert result.error is ErrorKind.INVALID_REFRESH_TOKEN
    assert result.message == "Invalid refresh token."


def test_refresh_token_of_another_user_is_rejected(issuer, make_user):
    alice = make_user("alice.smith")
    bob = make_user("bob.jones")
    alice_login = issuer.issue_for_user(alice.id).unwrap()
    bob_login = issuer.issue_for_user(bob.id).unwrap()

    result = issuer.issue_from_refresh(alice_login.access_token, bob_login.refresh_token)

    assert result.error is ErrorKind.INVALID_REFRESH_TOKEN


def test_tampered_access_token_is_rejected(issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()

    result = issuer.issue_from_refresh(tamper(login.access_token), login.refresh_token)

    assert result.error is ErrorKind.INVALID_ACCESS_TOKEN
    assert issuer.store.is_valid(issuer.store.find_by_value(user.id, login.refresh_token)) is True


def test_access_token_signed_with_other_secret_is_rejected(db, issuer, issuer_factory, make_user):
    user = make_user()
    foreign = issuer_factory(db, secret="another-secret-that-is-also-long-enough").issue_for_user(user.id).unwrap()

    assert issuer.issue_from_refresh(foreign.access_token, foreign.refresh_token).error is ErrorKind.INVALID_ACCESS_TOKEN


def test_access_token_from_other_issuer_is_rejected(db, issuer, issuer_factory, make_user):
    user = make_user()
    foreign = issuer_factory(db, issuer="someone-else").issue_for_user(user.id).unwrap()

    assert issuer.parse_expired_token(foreign.access_token).error is ErrorKind.INVALID_ACCESS_TOKEN


@pytest.mark.parametrize("algorithm", ["HS512", "none"])
def test_other_algorithms_are_rejected(issuer, settings, make_user, algorithm):
    user = make_user()
    claims = issuer.build_claims(user, utcnow())
    key = settings.secret * 2 if algorithm != "none" else None
    token = jwt.encode(claims, key, algorithm=algorithm)

    assert issuer.parse_expired_token(token).error is ErrorKind.INVALID_ACCESS_TOKEN


def test_not_yet_valid_token_is_rejected(issuer, make_user):
    user = make_user()
    token = issuer.create_access_token(user, utcnow() + timedelta(hours=1))

    assert issuer.parse_expired_token(token).error is ErrorKind.INVALID_ACCESS_TOKEN


def test_clock_skew_is_tolerated(issuer, make_user):
    user = make_user()
    token = issuer.create_access_token(user, utcnow() + timedelta(seconds=10))

    assert issuer.parse_expired_token(token).ok


def test_reused_refresh_token_revokes_family(db, issuer, issuer_factory, past_clock, make_user):
    user = make_user()
    login = expired_login(db, issuer_factory, past_clock, user)
    rotated = issuer.issue_from_refresh(login.access_token, login.refresh_token).unwrap()

    replay = issuer.issue_from_refresh(login.access_token, login.refresh_token)

    assert replay.error is ErrorKind.INVALID_REFRESH_TOKEN
    successor = issuer.store.find_by_value(user.id, rotated.refresh_token)
    assert successor.is_revoked is True
    assert issuer.issue_from_refresh(rotated.access_token, rotated.refresh_token).error is ErrorKind.INVALID_REFRESH_TOKEN


def test_reuse_can_leave_family_alone(db, issuer_factory, past_clock, make_user):
    issuer = issuer_factory(db, reuse_revokes_family=False)
    user = make_user()
    login = expired_login(db, issuer_factory, past_clock, user)
    rotated = issuer.issue_from_refresh(login.access_token, login.refresh_token).unwrap()

    assert issuer.issue_from_refresh(login.access_token, login.refresh_token).error is ErrorKind.INVALID_REFRESH_TOKEN
    assert issuer.store.is_valid(issuer.store.find_by_value(user.id, rotated.refresh_token)) is True


def test_concurrent_refresh_with_same_token_succeeds_once(db, db_url, issuer, issuer_factory, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()

    other = DBStorage(db_url)
    other.reload()
    try:
        rival = issuer_factory(other)
        # both requests have loaded the token before either rotates it
        seen_by_rival = rival.store.find_by_value(user.id, login.refresh_token)
        first = issuer.issue_from_refresh(login.access_token, login.refresh_token)
        second = rival.issue_and_maybe_rotate(other.get(User, user.id), rotate=True, current=seen_by_rival)
    finally:
        other.dispose()

    assert first.ok
    assert first.value.refresh_token != login.refresh_token
    assert second.error is ErrorKind.INVALID_REFRESH_TOKEN


def test_refresh_for_disabled_user_is_rejected(db, issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()
    user.is_disabled = True
    db.save()

    assert issuer.issue_from_refresh(login.access_token, login.refresh_token).error is ErrorKind.INVALID_REFRESH_TOKEN


def test_logout_revokes_family(issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()

    result = issuer.revoke_by_refresh_token(user.id, login.refresh_token)

    assert result.ok
    assert result.value == 1
    assert issuer.issue_from_refresh(login.access_token, login.refresh_token).error is ErrorKind.INVALID_REFRESH_TOKEN


def test_logout_with_unknown_token(issuer, make_user):
    user = make_user()
    assert issuer.revoke_by_refresh_token(user.id, "unknown").error is ErrorKind.INVALID_REFRESH_TOKEN


def test_unexpected_error_during_issue_is_generic(issuer, make_user, monkeypatch):
    user = make_user()

    def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(issuer.store, "insert", explode)

    result = issuer.issue_for_user(user.id)

    assert result.error is ErrorKind.INVALID_REFRESH_TOKEN
    assert result.message == "Invalid refresh token."


def test_epoch_claims_match_clock(issuer, make_user):
    user = make_user()
    now = utcnow().replace(microsecond=0)

    claims = issuer.build_claims(user, now)

    assert claims["iat"] == claims["nbf"] == to_epoch(now)


def connection_refused(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("connection refused"))


def test_refresh_reports_unavailable_when_lookup_fails(issuer, make_user, monkeypatch):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()
    monkeypatch.setattr(issuer.store, "find_by_value", connection_refused)

    result = issuer.issue_from_refresh(login.access_token, login.refresh_token)

    assert result.error is ErrorKind.UNAVAILABLE
    assert result.error.retryable is True


def test_refresh_reports_unavailable_when_user_load_fails(issuer, make_user, monkeypatch):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()
    monkeypatch.setattr(issuer, "_load_user", connection_refused)

    result = issuer.issue_from_refresh(login.access_token, login.refresh_token)

    assert result.error is ErrorKind.UNAVAILABLE
    assert issuer.store.is_valid(issuer.store.find_by_value(user.id, login.refresh_token)) is True


def test_login_reports_unavailable_when_user_load_fails(issuer, make_user, monkeypatch):
    user = make_user()
    monkeypatch.setattr(issuer, "_load_user", connection_refused)

    assert issuer.issue_for_user(user.id).error is ErrorKind.UNAVAILABLE


def test_login_reports_unavailable_when_active_lookup_fails(issuer, make_user, monkeypatch):
    user = make_user()
    monkeypatch.setattr(issuer.store, "find_active", connection_refused)

    result = issuer.issue_for_user(user.id)

    assert result.error is ErrorKind.UNAVAILABLE
    assert result.message == "Token service temporarily unavailable."


def test_logout_reports_unavailable_when_lookup_fails(issuer, make_user, monkeypatch):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()
    monkeypatch.setattr(issuer.store, "find_by_value", connection_refused)

    assert issuer.revoke_by_refresh_token(user.id, login.refresh_token).error is ErrorKind.UNAVAILABLE


def test_refresh_from_two_threads_succeeds_once(db, issuer, make_user):
    user = make_user()
    login = issuer.issue_for_user(user.id).unwrap()
    db.close()

    barrier = threading.Barrier(2)
    results = []

    def refresh():
        barrier.wait()
        try:
            results.append(issuer.issue_from_refresh(login.access_token, login.refresh_token))
        finally:
            db.close()

    threads = [threading.Thread(target=refresh) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert len(results) == 2
    winners = [r for r in results if r.ok]
    assert len(winners) == 1
    assert winners[0].value.refresh_token != login.refresh_token
    loser = next(r for r in results if not r.ok)
    assert loser.error in (ErrorKind.INVALID_REFRESH_TOKEN, ErrorKind.UNAVAILABLE)
    assert issuer.store.find_by_value(user.id, login.refresh_token).has_been_used() is True
