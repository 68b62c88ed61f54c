"""
TokenIssuer: signed access tokens plus the refresh-token side effects that go
with them.

- issue_for_user(user_id)                login
- issue_from_refresh(access, refresh)    refresh; always rotates
- revoke_by_refresh_token(user, refresh) logout; revokes the whole family

The signing key and token lifetimes arrive as an explicit JwtSettings value;
nothing here reads application config or module globals.
"""
from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional

import jwt
from sqlalchemy.exc import SQLAlchemyError

from models.refresh_token import RefreshToken
from models.token_store import RefreshTokenStore
from models.user import User
from services.results import AuthResult, ErrorKind, Result
from utils.clock import to_epoch, utcnow
from utils.security import generate_jti

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REFRESH_TOKEN_BYTES = 32

INVALID_REFRESH_TOKEN_MESSAGE = "Invalid refresh token."
INVALID_ACCESS_TOKEN_MESSAGE = "Invalid access token."


@dataclass(frozen=True)
class JwtSettings:
    secret: str
    issuer: str
    lifetime_seconds: int = 86400
    key_id: Optional[str] = None
    clock_skew_seconds: int = 30
    multi_device_sessions: bool = False
    reuse_revokes_family: bool = True

    def __post_init__(self):
        if not self.secret:
            raise ValueError("JWT secret must not be empty")
        if not self.issuer:
            raise ValueError("JWT issuer must not be empty")
        if int(self.lifetime_seconds) <= 0:
            raise ValueError("access token lifetime must be positive")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "JwtSettings":
        return cls(
            secret=config["JWT_SECRET"],
            issuer=config["JWT_ISSUER"],
            lifetime_seconds=int(config.get("JWT_TOKEN_LIFETIME_SECONDS", 86400)),
            key_id=config.get("JWT_KEY_ID") or None,
            clock_skew_seconds=int(config.get("JWT_CLOCK_SKEW_SECONDS", 30)),
            multi_device_sessions=bool(config.get("JWT_MULTI_DEVICE_SESSIONS", False)),
            reuse_revokes_family=bool(config.get("REFRESH_TOKEN_REUSE_REVOKES_FAMILY", True)),
        )


def generate_refresh_token_value() -> str:
    """Base64 of 32 cryptographically random bytes."""
    return base64.b64encode(secrets.token_bytes(REFRESH_TOKEN_BYTES)).decode("ascii")


class TokenIssuer:
    def __init__(
        self,
        store: RefreshTokenStore,
        settings: JwtSettings,
        user_loader: Callable[[str], Optional[User]],
        clock: Callable = utcnow,
        token_factory: Callable[[], str] = generate_refresh_token_value,
    ):
        if store is None or settings is None or user_loader is None:
            raise ValueError("store, settings and user_loader are required")
        self.store = store
        self.settings = settings
        self._load_user = user_loader
        self._clock = clock
        self._new_token_value = token_factory

    # ---- public operations ----

    def issue_for_user(self, user_id: str) -> Result[AuthResult]:
        if not user_id:
            raise ValueError("user_id is required")
        loaded = self._read("load_user", self._load_user, user_id)
        if not loaded.ok:
            return loaded
        user = loaded.value
        if user is None:
            logger.warning("Token requested for unknown user %s", user_id)
            return Result.failure(ErrorKind.USER_NOT_FOUND, "User not found.")
        return self.issue_and_maybe_rotate(user, rotate=False, new_family=self.settings.multi_device_sessions)

    def issue_from_refresh(self, expired_access_token: str, presented_refresh_token: str) -> Result[AuthResult]:
        if _blank(expired_access_token) or _blank(presented_refresh_token):
            return Result.failure(
                ErrorKind.VALIDATION_FAILURE,
                "Access token and refresh token are required.",
                details={
                    name: ["This field is required."]
                    for name, value in (
                        ("access_token", expired_access_token),
                        ("refresh_token", presented_refresh_token),
                    )
                    if _blank(value)
                },
            )

        parsed = self.parse_expired_token(expired_access_token)
        if not parsed.ok:
            return parsed
        user_id = _subject(parsed.value)
        if not user_id:
            logger.warning("Access token carries no subject claim")
            return Result.failure(ErrorKind.INVALID_ACCESS_TOKEN, INVALID_ACCESS_TOKEN_MESSAGE)

        found = self._read("find_by_value", self.store.find_by_value, user_id, presented_refresh_token)
        if not found.ok:
            return found
        current = found.value
        if current is None:
            logger.warning("Refresh token not found for user %s", user_id)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)

        if current.has_been_used():
            self._contain_reuse(current)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)

        if not self.store.is_valid(current):
            logger.info("Rejected revoked or expired refresh token %s for user %s", current.id, user_id)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)

        loaded = self._read("load_user", self._load_user, user_id)
        if not loaded.ok:
            return loaded
        user = loaded.value
        if user is None:
            return Result.failure(ErrorKind.USER_NOT_FOUND, "User not found.")
        if user.is_disabled:
            logger.warning("Refresh attempted for disabled user %s", user_id)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)

        return self.issue_and_maybe_rotate(user, rotate=True, current=current)

    def issue_and_maybe_rotate(
        self,
        user: User,
        rotate: bool,
        current: Optional[RefreshToken] = None,
        new_family: bool = False,
    ) -> Result[AuthResult]:
        """
        Make sure the user holds a usable refresh token, then sign an access token.

        A new refresh value is generated when there is no current token, when
        it has expired, or when rotation is requested. An existing chain is
        rotated (same family); otherwise a new family is started.
        """
        if user is None:
            raise ValueError("user is required")
        # a rollback expires loaded rows, so failure paths log these copies
        user_id, email = user.id, user.email
        try:
            return self._issue(user, user_id, email, rotate, current, new_family)
        except SQLAlchemyError as exc:
            return self._persistence_failure(user_id, email, self.store.recover("issue", exc, user_id=user_id))
        except Exception:
            logger.exception("Token issuance failed for user %s (%s)", user_id, email)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)

    def _issue(self, user, user_id, email, rotate, current, new_family) -> Result[AuthResult]:
        if current is None and not new_family:
            current = self.store.find_active(user_id)

        now = self._clock()
        should_generate_new = current is None or current.is_expired(now) or rotate

        if not should_generate_new:
            refresh_value = current.token
        elif current is None:
            stored = self.store.insert(user_id, self._new_token_value())
            if not stored.ok:
                return self._persistence_failure(user_id, email, stored)
            refresh_value = stored.value.token
        else:
            stored = self.store.rotate(current, self._new_token_value())
            if not stored.ok:
                if stored.error is ErrorKind.CONCURRENCY_CONFLICT:
                    return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)
                return self._persistence_failure(user_id, email, stored)
            refresh_value = stored.value.token

        access_token = self.create_access_token(user, now)
        logger.debug("Access token generated for user %s", user_id)
        return Result.success(
            AuthResult(
                access_token=access_token,
                refresh_token=refresh_value,
                expires_in=int(self.settings.lifetime_seconds),
            )
        )

    def revoke_by_refresh_token(self, user_id: str, refresh_token: str) -> Result[int]:
        """Logout: revoke every token in the presented token's family."""
        if not user_id or not refresh_token:
            raise ValueError("user_id and refresh_token are required")
        found = self._read("find_by_value", self.store.find_by_value, user_id, refresh_token)
        if not found.ok:
            return found
        current = found.value
        if current is None:
            logger.warning("Logout with unknown refresh token for user %s", user_id)
            return Result.failure(ErrorKind.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)
        return self.store.revoke_family(current.token_family_id)

    # ---- access tokens ----

    def build_claims(self, user: User, now) -> Dict[str, Any]:
        issued_at = to_epoch(now)
        user_id = str(user.id)
        claims: Dict[str, Any] = {
            "nameid": user_id,
            "sub": user_id,
            "sid": user_id,
            "name": user.display_name,
            "given_name": user.display_name,
            "unique_name": user.user_name,
            "email": user.email,
            "jti": generate_jti(),
            "iat": issued_at,
            "nbf": issued_at,
            "exp": to_epoch(now + timedelta(seconds=int(self.settings.lifetime_seconds))),
            "iss": self.settings.issuer,
            "aud": self.settings.issuer,
        }
        roles = [str(r) for r in (user.roles or [])]
        if roles:
            claims["role"] = roles
        return claims

    def create_access_token(self, user: User, now=None) -> str:
        headers = {"kid": self.settings.key_id} if self.settings.key_id else None
        return jwt.encode(
            self.build_claims(user, now or self._clock()),
            self.settings.secret,
            algorithm=ALGORITHM,
            headers=headers,
        )

    def parse_expired_token(self, access_token: str) -> Result[Dict[str, Any]]:
        """Verify signature, algorithm, issuer and audience; ignore expiry."""
        return self._decode(access_token, verify_exp=False)

    def validate_access_token(self, access_token: str) -> Result[Dict[str, Any]]:
        """Full validation, expiry included."""
        return self._decode(access_token, verify_exp=True)

    def _decode(self, access_token: str, verify_exp: bool) -> Result[Dict[str, Any]]:
        if not access_token:
            return Result.failure(ErrorKind.INVALID_ACCESS_TOKEN, INVALID_ACCESS_TOKEN_MESSAGE)
        try:
            header = jwt.get_unverified_header(access_token)
            if str(header.get("alg", "")).upper() != ALGORITHM:
                raise jwt.InvalidAlgorithmError(f"unexpected algorithm {header.get('alg')!r}")
            claims = jwt.decode(
                access_token,
                self.settings.secret,
                algorithms=[ALGORITHM],
                audience=self.settings.issuer,
                issuer=self.settings.issuer,
                leeway=int(self.settings.clock_skew_seconds),
                options={"verify_exp": verify_exp, "require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            return Result.failure(ErrorKind.INVALID_ACCESS_TOKEN, "Access token expired.")
        except jwt.InvalidTokenError as exc:
            logger.warning("Rejected access token: %s", exc.__class__.__name__)
            return Result.failure(ErrorKind.INVALID_ACCESS_TOKEN, INVALID_ACCESS_TOKEN_MESSAGE)
        return Result.success(claims)

    # ---- helpers ----

    def _read(self, operation: str, fn: Callable, *args) -> Result:
        """Run a storage read; a database error comes back as a failed Result."""
        try:
            return Result.success(fn(*args))
        except SQLAlchemyError as exc:
            return self.store.recover(operation, exc)

    def _contain_reuse(self, token: RefreshToken) -> None:
        logger.warning(
            "SECURITY ALERT: refresh token reuse detected for user %s. Token %s (family %s) was already used at %s.",
            token.user_id,
            token.id,
            token.token_family_id,
            token.used_at,
        )
        if not self.settings.reuse_revokes_family:
            return
        family_id = token.token_family_id
        revoked = self.store.revoke_family(family_id)
        if not revoked.ok:
            logger.error("Could not revoke family %s after reuse: %s", family_id, revoked.error.value)

    def _persistence_failure(self, user_id: str, email: str, failed: Result) -> Result[AuthResult]:
        logger.warning("Refresh token persistence failed for user %s (%s): %s", user_id, email, failed.error.value)
        if failed.error is ErrorKind.UNAVAILABLE:
            return Result.failure(ErrorKind.UNAVAILABLE, "Token service temporarily unavailable.")
        return Result.failure(ErrorKind.TOKEN_PERSISTENCE_FAILED, "Could not issue refresh token.")


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def _subject(claims: Mapping[str, Any]) -> Optional[str]:
    value = claims.get("nameid") or claims.get("sub")
    return str(value) if value else None
