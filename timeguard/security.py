from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from passlib.exc import UnknownHashError

from timeguard.errors import ApiError
from timeguard.models import Profile, ProfileRole
from timeguard.settings import get_settings

JWT_ALGORITHM = "HS256"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class AuthSession:
    """Authenticated caller, resolved once per request and passed into services."""

    profile_id: int
    role: ProfileRole
    email: str

    @property
    def is_admin(self) -> bool:
        return self.role == ProfileRole.ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role == ProfileRole.MANAGER


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoginThrottle:
    """Sliding-window counter of failed logins per client address.

    State is process-local; with several workers each one throttles on its own.
    """

    def __init__(
        self,
        *,
        max_failures: int = 10,
        window: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.max_failures = max_failures
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: dict[str, deque[datetime]] = {}

    def _prune(self, key: str, now: datetime) -> int:
        failures = self._failures.get(key)
        if failures is None:
            return 0
        cutoff = now - self.window
        while failures and failures[0] < cutoff:
            failures.popleft()
        if not failures:
            del self._failures[key]
        return len(failures)

    def check(self, key: str) -> None:
        with self._lock:
            blocked = self._prune(key, self._clock()) >= self.max_failures
        if blocked:
            raise ApiError(
                status_code=429,
                code="TOO_MANY_ATTEMPTS",
                message="Too many failed login attempts. Please try again later.",
            )

    def record_failure(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._prune(key, now)
            self._failures.setdefault(key, deque()).append(now)

    def record_success(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()


login_throttle = LoginThrottle()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except (ValueError, TypeError, UnknownHashError):
        return False


def create_access_token(profile: Profile) -> tuple[str, int]:
    """Sign a bearer token for ``profile``; returns the token and its lifetime in seconds."""
    settings = get_settings()
    issued_at = _utcnow()
    lifetime = settings.access_token_minutes * 60
    claims: dict[str, Any] = {
        "sub": str(profile.id),
        "email": profile.email,
        "role": ProfileRole(profile.role).value,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=lifetime)).timestamp()),
        "jti": uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=JWT_ALGORITHM), lifetime


def _invalid_token(message: str) -> ApiError:
    return ApiError(status_code=401, code="INVALID_TOKEN", message=message)


def decode_access_token(token: str) -> AuthSession:
    settings = get_settings()
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[JWT_ALGORITHM],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise _invalid_token("Token is invalid.") from exc

    try:
        return AuthSession(
            profile_id=int(claims["sub"]),
            role=ProfileRole(claims.get("role")),
            email=str(claims.get("email") or ""),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise _invalid_token("Token claims are invalid.") from exc


def require_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthSession:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _invalid_token("Missing bearer token.")

    session = decode_access_token(credentials.credentials)
    request.state.actor = session.role.value
    request.state.actor_id = str(session.profile_id)
    return session


def require_roles(*roles: ProfileRole) -> Callable[..., AuthSession]:
    allowed = frozenset(roles)

    def _dependency(session: AuthSession = Depends(require_session)) -> AuthSession:
        if session.role not in allowed:
            raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
        return session

    return _dependency


require_admin = require_roles(ProfileRole.ADMIN)
require_manager_or_admin = require_roles(ProfileRole.ADMIN, ProfileRole.MANAGER)
