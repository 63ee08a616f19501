"""HTTP client core for the photo albums API."""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

import httpx

from photo_albums.config import CredentialMode
from photo_albums.domain.errors import (
    ApiError,
    AuthExpired,
    AuthFailed,
    NetworkError,
    ServerError,
    ValidationError,
)

logger = logging.getLogger(__name__)

UploadFile = tuple[str, bytes, str]


class ResponseKind(StrEnum):
    """Expected shape of a successful response body."""

    JSON = "json"
    BINARY = "binary"
    EMPTY = "empty"


@dataclass(frozen=True)
class ApiRequest:
    """A request to the remote API, replayable as-is."""

    method: str
    path: str
    json: object | None = None
    files: dict[str, UploadFile] | None = None
    requires_auth: bool = True
    expect: ResponseKind = ResponseKind.JSON

    def describe(self) -> str:
        return f"{self.method} {self.path}"


REFRESH_REQUEST = ApiRequest("GET", "/auth/google/refresh")


class ApiSender(Protocol):
    """Anything that can send an ApiRequest and return its parsed body."""

    async def send(self, request: ApiRequest) -> object:
        """Send request and return the decoded body."""


@dataclass
class SessionCredentials:
    """Client-side view of the session: present or absent, plus a dev token.

    In cookie mode the session rides the HTTP client's cookie jar; in bearer
    mode the raw token is sent in the Authorization header.
    """

    mode: CredentialMode = CredentialMode.COOKIE
    token: str | None = None
    present: bool = True

    def auth_headers(self) -> dict[str, str]:
        if self.mode == CredentialMode.BEARER and self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def establish(self, token: str | None = None) -> None:
        """Mark a session as created, optionally with a raw token."""
        if token is not None:
            self.token = token
        self.present = True

    def end(self) -> None:
        """Mark the session as ended while still able to send a final logout."""
        self.present = False

    def destroy(self) -> None:
        self.token = None
        self.present = False


@dataclass
class HttpxApiClient(ApiSender):
    """Sends requests with httpx and classifies the responses.

    This layer never refreshes a session: an expired-token 401 is raised as
    ``AuthExpired`` for the refresh coordinator to handle.
    """

    base_url: str
    http_client: httpx.AsyncClient
    credentials: SessionCredentials = field(default_factory=SessionCredentials)
    expired_markers: tuple[str, ...] = ("expired token",)
    timeout: float = 15

    @classmethod
    def create(
        cls,
        base_url: str,
        credentials: SessionCredentials,
        expired_markers: tuple[str, ...] = ("expired token",),
        timeout: float = 15,
    ) -> "HttpxApiClient":
        """Create an API client with a managed httpx session."""
        return cls(
            base_url=base_url,
            http_client=httpx.AsyncClient(),
            credentials=credentials,
            expired_markers=expired_markers,
            timeout=timeout,
        )

    async def send(self, request: ApiRequest) -> object:
        """Send request and return its body, or raise a classified error."""
        headers = self.credentials.auth_headers() if request.requires_auth else {}
        try:
            response = await self.http_client.request(
                request.method,
                f"{self.base_url.rstrip('/')}{request.path}",
                json=request.json,
                files=request.files,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TransportError as exc:
            logger.warning("Request %s failed: %s", request.describe(), exc)
            raise NetworkError(str(exc) or type(exc).__name__) from exc
        if response.is_success:
            return _parse_body(response, request.expect)
        error = self._classify(response)
        logger.warning("Request %s failed: %s", request.describe(), error)
        raise error

    async def renew_session(self) -> object:
        """Call the refresh endpoint; a returned token rotates the dev token."""
        body = await self.send(REFRESH_REQUEST)
        if isinstance(body, dict) and isinstance(body.get("token"), str):
            self.credentials.establish(body["token"])
        return body

    def clear_session(self) -> None:
        """Forget every local trace of the session."""
        self.credentials.destroy()
        self.http_client.cookies.clear()

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        await self.http_client.aclose()

    def _classify(self, response: httpx.Response) -> ApiError:
        status = response.status_code
        message = _error_message(response)
        if status == httpx.codes.UNAUTHORIZED:
            lowered = message.lower()
            if any(marker in lowered for marker in self.expired_markers):
                return AuthExpired(status, message)
            return AuthFailed(message)
        if 400 <= status < 500:
            return ValidationError(status, message)
        if status >= 500:
            return ServerError(status, message)
        return ApiError(status, message)


def _parse_body(response: httpx.Response, expect: ResponseKind) -> object:
    if expect == ResponseKind.BINARY:
        return response.content
    if expect == ResponseKind.EMPTY or not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise ApiError(response.status_code, "Invalid JSON response") from exc


def _error_message(response: httpx.Response) -> str:
    """Best-effort decode of an error payload."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for name in ("message", "error"):
            value = payload.get(name)
            if isinstance(value, str) and value:
                return value
    text = response.text.strip()
    return text or f"API error: {response.status_code}"
