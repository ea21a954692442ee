from __future__ import annotations

from dataclasses import dataclass

from auth.models import AnonymousCredentials, User
from quill.errors import ProtocolError

REGISTER_PATH = "/auth/register"
LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh"
ME_PATH = "/auth/me"
LOGOUT_PATH = "/auth/logout"
ANONYMOUS_PATH = "/auth/anonymous"


def oauth_path(provider: str) -> str:
    provider = provider.strip().lower()
    if not provider or not provider.isalnum():
        raise ValueError(f"Invalid OAuth provider name: {provider!r}")
    return f"/auth/{provider}"


def _require_token(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"Auth response missing {key}.")
    return value


def _optional_token(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"Auth response {key} must be a string.")
    return value


def _optional_expires_in(payload: dict) -> int | None:
    expires_in = payload.get("expiresIn")
    if expires_in is None:
        return None
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        raise ProtocolError("Auth response expiresIn must be a number of seconds.")
    return int(expires_in)


def parse_user(payload) -> User:
    if not isinstance(payload, dict):
        raise ProtocolError("User response must be a JSON object.")
    user_payload = payload.get("user", payload)
    if not isinstance(user_payload, dict):
        raise ProtocolError("User response must contain a user object.")
    try:
        return User.from_payload(user_payload)
    except ValueError as error:
        raise ProtocolError(str(error)) from error


@dataclass
class AuthResponse:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int | None = None
    generated_credentials: AnonymousCredentials | None = None

    @classmethod
    def from_payload(cls, payload) -> "AuthResponse":
        if not isinstance(payload, dict):
            raise ProtocolError("Auth response must be a JSON object.")
        if not isinstance(payload.get("user"), dict):
            raise ProtocolError("Auth response missing user.")

        credentials = None
        raw_credentials = payload.get("credentials")
        if isinstance(raw_credentials, dict):
            email = raw_credentials.get("email")
            password = raw_credentials.get("password")
            if isinstance(email, str) and isinstance(password, str):
                credentials = AnonymousCredentials(email=email, password=password)

        return cls(
            user=parse_user(payload),
            access_token=_require_token(payload, "accessToken"),
            refresh_token=_require_token(payload, "refreshToken"),
            expires_in=_optional_expires_in(payload),
            generated_credentials=credentials,
        )


@dataclass
class RefreshResponse:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    @classmethod
    def from_payload(cls, payload) -> "RefreshResponse":
        if not isinstance(payload, dict):
            raise ProtocolError("Refresh response must be a JSON object.")
        return cls(
            access_token=_require_token(payload, "accessToken"),
            refresh_token=_optional_token(payload, "refreshToken"),
            expires_in=_optional_expires_in(payload),
        )
