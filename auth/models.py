from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


@dataclass(frozen=True)
class TokenPair:
    access_token: str | None = None
    refresh_token: str | None = None

    def __post_init__(self) -> None:
        if self.access_token == "" or self.refresh_token == "":
            raise ValueError("Tokens must be non-empty strings or None.")

    def is_empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None


class AuthStatus(str, Enum):
    ANONYMOUS_VISITOR = "anonymousVisitor"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ERROR = "error"


def _parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class User:
    id: str
    email: str
    username: str
    is_anonymous_account: bool
    created_at: datetime
    wallet_address: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "User":
        user_id = payload.get("id")
        email = payload.get("email")
        username = payload.get("username")

        if user_id is None or str(user_id) == "":
            raise ValueError("User payload missing id.")
        if not isinstance(email, str):
            raise ValueError("User payload missing email.")
        if not isinstance(username, str):
            raise ValueError("User payload missing username.")

        anonymous = payload.get("isAnonymous", payload.get("anonymous", False))
        return cls(
            id=str(user_id),
            email=email,
            username=username,
            is_anonymous_account=bool(anonymous),
            created_at=_parse_datetime(payload.get("createdAt")),
            wallet_address=payload.get("walletAddress"),
            avatar_url=payload.get("avatarUrl"),
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "isAnonymous": self.is_anonymous_account,
            "createdAt": self.created_at.isoformat(),
            "walletAddress": self.wallet_address,
            "avatarUrl": self.avatar_url,
        }


@dataclass(frozen=True)
class AnonymousCredentials:
    email: str
    password: str


@dataclass(frozen=True)
class AuthState:
    status: AuthStatus = AuthStatus.ANONYMOUS_VISITOR
    user: User | None = None
    error: str | None = None
    is_loading: bool = False
    is_signing_in: bool = False
    is_signing_up: bool = False
    is_signing_in_with_oauth: bool = False
    is_creating_anonymous: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.status is AuthStatus.AUTHENTICATED
