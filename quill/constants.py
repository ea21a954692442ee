from __future__ import annotations

import logging
from pathlib import Path

MUTATING_METHODS = {
    "post",
    "put",
    "patch",
    "delete",
}

LOGGER = logging.getLogger("quill.session")
APP_VERSION = "0.1.0"
API_PREFIX = "/api/v1"

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_DELAY_SECONDS = 30.0

REFRESH_LEAD_SECONDS = 60.0
REFRESH_MIN_DELAY_SECONDS = 30.0
REFRESH_DEFAULT_INTERVAL_SECONDS = 600.0
REFRESH_RETRY_SECONDS = 30.0

DEFAULT_TOKEN_STORE_PATH = Path(".quill-session.json")
