"""Error taxonomy for the photo albums API client."""


class PhotoApiError(Exception):
    """Base class for every error raised by the client."""


class NetworkError(PhotoApiError):
    """Transport failure: no HTTP response was received."""


class ApiError(PhotoApiError):
    """Non-2xx HTTP response from the remote API."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


class AuthExpired(ApiError):
    """401 carrying the expired-token marker; recoverable by a refresh."""


class SessionExpired(ApiError):
    """The current session is over and the user must log in again."""

    def __init__(self, message: str = "Session expired, please log in again") -> None:
        super().__init__(401, message)


class AuthFailed(SessionExpired):
    """401 without the expired-token marker: the credentials are invalid."""


class ValidationError(ApiError):
    """4xx other than 401."""


class ServerError(ApiError):
    """5xx response."""
