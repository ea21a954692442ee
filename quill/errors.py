from __future__ import annotations

import httpx

TERMINAL_STATUS_CODES = {400, 401, 403, 404, 409, 422}
UNREACHABLE_MESSAGE = "The service is currently unreachable. Please try again later."


class SessionError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TerminalAuthError(SessionError):
    """The credentials or the request itself are wrong; retrying cannot help."""


class TransientNetworkError(SessionError):
    def __init__(
        self,
        message: str = UNREACHABLE_MESSAGE,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class RefreshExhaustedError(SessionError):
    """The refresh token was rejected; new credentials are required."""

    def __init__(self, message: str = "Your session has expired. Please sign in again.") -> None:
        super().__init__(message, status_code=401)


class RequestCancelledError(SessionError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request {request_id} was cancelled.")
        self.request_id = request_id


class ProtocolError(SessionError):
    pass


def is_terminal_status(status_code: int) -> bool:
    return status_code in TERMINAL_STATUS_CODES


def friendly_error_message(status_code: int) -> str:
    if status_code == 400:
        return "The request was invalid."
    if status_code == 401:
        return "Authentication failed. Please check your credentials."
    if status_code == 403:
        return "You don't have permission to perform this action."
    if status_code == 404:
        return "The requested resource was not found."
    if status_code == 409:
        return "An account with these details already exists."
    if status_code == 429:
        return "Too many requests. Please slow down."
    if status_code >= 500:
        return UNREACHABLE_MESSAGE
    return f"Request failed with status {status_code}."


def _server_message(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    message = payload.get("message")
    if isinstance(message, list):
        message = "; ".join(str(item) for item in message if item)
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


def _retry_after_seconds(header: str | None) -> float | None:
    if header is None:
        return None
    try:
        return max(0.0, float(header))
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> SessionError:
    status_code = response.status_code
    if is_terminal_status(status_code):
        message = _server_message(response) or friendly_error_message(status_code)
        return TerminalAuthError(message, status_code=status_code)

    if status_code == 429 or status_code >= 500:
        return TransientNetworkError(
            friendly_error_message(status_code),
            status_code=status_code,
            retry_after=_retry_after_seconds(response.headers.get("retry-after")),
        )

    return SessionError(
        _server_message(response) or friendly_error_message(status_code),
        status_code=status_code,
    )
