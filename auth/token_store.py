from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from auth.models import TokenPair, User
from quill.constants import DEFAULT_TOKEN_STORE_PATH, LOGGER

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

_UNSET = object()


class TokenStorage(ABC):
    @abstractmethod
    def load(self) -> dict:
        raise NotImplementedError

    @abstractmethod
    def save(self, payload: dict) -> None:
        raise NotImplementedError


class MemoryTokenStorage(TokenStorage):
    def __init__(self, payload: dict | None = None) -> None:
        self._payload: dict = dict(payload or {})

    def load(self) -> dict:
        return dict(self._payload)

    def save(self, payload: dict) -> None:
        self._payload = dict(payload)


class FileTokenStorage(TokenStorage):
    """Session payload kept as one JSON document, swapped in whole on save."""

    def __init__(self, path: str | Path = DEFAULT_TOKEN_STORE_PATH) -> None:
        self.path = Path(path)

    def load(self) -> dict:
        try:
            document = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        payload = json.loads(document)
        if not isinstance(payload, dict):
            raise RuntimeError(f"Session file {self.path} does not hold a JSON object.")
        return payload

    def save(self, payload: dict) -> None:
        document = json.dumps(payload, indent=2, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staged = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            delete=False,
        )
        try:
            with staged:
                staged.write(document)
            os.replace(staged.name, self.path)
        except OSError:
            Path(staged.name).unlink(missing_ok=True)
            raise


def _token_or_none(value) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


class TokenStore:
    """Current access/refresh tokens, written through to durable storage.

    The in-memory pair is authoritative: storage failures are logged and
    never surface to callers.
    """

    def __init__(
        self,
        storage: TokenStorage | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._storage = storage or MemoryTokenStorage()
        self._logger = logger or LOGGER
        self._pair = TokenPair()
        self._user_payload: dict | None = None
        self._load()

    def _load(self) -> None:
        try:
            payload = self._storage.load()
        except (OSError, ValueError, RuntimeError) as error:
            self._logger.warning("Could not read persisted session: %s", error)
            return

        self._pair = TokenPair(
            access_token=_token_or_none(payload.get(ACCESS_TOKEN_KEY)),
            refresh_token=_token_or_none(payload.get(REFRESH_TOKEN_KEY)),
        )
        user_payload = payload.get(USER_KEY)
        if isinstance(user_payload, dict):
            self._user_payload = user_payload

    def _persist(self) -> None:
        payload: dict = {}
        if self._pair.access_token is not None:
            payload[ACCESS_TOKEN_KEY] = self._pair.access_token
        if self._pair.refresh_token is not None:
            payload[REFRESH_TOKEN_KEY] = self._pair.refresh_token
        if self._user_payload is not None:
            payload[USER_KEY] = self._user_payload

        try:
            self._storage.save(payload)
        except (OSError, TypeError, ValueError) as error:
            self._logger.warning("Could not persist session: %s", error)

    @property
    def pair(self) -> TokenPair:
        return self._pair

    def get_access(self) -> str | None:
        return self._pair.access_token

    def get_refresh(self) -> str | None:
        return self._pair.refresh_token

    def has_any(self) -> bool:
        return not self._pair.is_empty()

    def set(self, *, access_token=_UNSET, refresh_token=_UNSET, user=_UNSET) -> TokenPair:
        """Replace the given entries; omitted ones are kept, None removes one."""
        self._pair = TokenPair(
            access_token=self._pair.access_token if access_token is _UNSET else access_token,
            refresh_token=self._pair.refresh_token if refresh_token is _UNSET else refresh_token,
        )
        if user is not _UNSET:
            self._user_payload = None if user is None else user.to_payload()
        self._persist()
        return self._pair

    def get_user(self) -> User | None:
        if self._user_payload is None:
            return None
        try:
            return User.from_payload(self._user_payload)
        except ValueError as error:
            self._logger.warning("Ignoring invalid persisted user: %s", error)
            return None

    def clear(self) -> None:
        self._pair = TokenPair()
        self._user_payload = None
        self._persist()
