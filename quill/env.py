from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from .constants import (
    API_PREFIX,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_TOKEN_STORE_PATH,
    LOGGER,
)


@dataclass
class SessionConfig:
    base_url: str
    api_prefix: str = API_PREFIX
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    token_store_path: Path = DEFAULT_TOKEN_STORE_PATH
    connectivity_interval: float = 15.0
    debug: bool = True

    @property
    def api_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_prefix.strip('/')}".rstrip("/")


TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})
ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


def is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY_VALUES


def _env_number(key: str, default, parse, kind: str):
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return parse(raw)
    except ValueError as error:
        raise RuntimeError(f"{key} must be {kind}.") from error


def _get_env_int(key: str, default: int) -> int:
    return _env_number(key, default, int, "an integer value")


def _get_env_float(key: str, default: float) -> float:
    return _env_number(key, default, float, "a number")


def load_env(path: Path = ENV_FILE) -> bool:
    """Load QUILL_* settings from a .env file; returns False when there is none."""
    return load_dotenv(path, override=True)


def validate_env() -> None:
    base_url = os.getenv("QUILL_API_BASE_URL", "").strip()
    if not base_url:
        raise RuntimeError("Missing required environment variable: QUILL_API_BASE_URL")

    try:
        TypeAdapter(AnyHttpUrl).validate_python(base_url)
    except ValidationError as error:
        raise RuntimeError(
            "QUILL_API_BASE_URL must be a valid HTTP(S) URL (for example: "
            "https://api.collectivepoetry.xyz)."
        ) from error

    if _get_env_int("QUILL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS) < 1:
        raise RuntimeError("QUILL_MAX_ATTEMPTS must be at least 1.")
    if _get_env_float("QUILL_API_TIMEOUT", DEFAULT_TIMEOUT_SECONDS) <= 0:
        raise RuntimeError("QUILL_API_TIMEOUT must be positive.")


def config_from_env() -> SessionConfig:
    return SessionConfig(
        base_url=os.getenv("QUILL_API_BASE_URL", "").strip(),
        api_prefix=os.getenv("QUILL_API_PREFIX", API_PREFIX).strip() or API_PREFIX,
        timeout=_get_env_float("QUILL_API_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        max_attempts=_get_env_int("QUILL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
        token_store_path=Path(
            os.getenv("QUILL_TOKEN_STORE_PATH", str(DEFAULT_TOKEN_STORE_PATH))
        ),
        connectivity_interval=_get_env_float("QUILL_CONNECTIVITY_INTERVAL", 15.0),
        debug=is_truthy(os.getenv("QUILL_DEBUG", "1")),
    )


def setup_logging(config: SessionConfig) -> bool:
    if config.debug:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        LOGGER.setLevel(logging.INFO)
    return config.debug
