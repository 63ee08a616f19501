"""Single-flight session renewal."""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from photo_albums.adapters.http_client import (
    ApiRequest,
    ApiSender,
    SessionCredentials,
)
from photo_albums.domain.errors import (
    AuthExpired,
    AuthFailed,
    SessionExpired,
)
from photo_albums.services.events import AuthEvent, AuthEventKind, EventChannel

logger = logging.getLogger(__name__)

Send = Callable[[ApiRequest], Awaitable[object]]
Renew = Callable[[], Awaitable[object]]


class RefreshState(StrEnum):
    """Renewal protocol states."""

    IDLE = "idle"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass
class RefreshCoordinator:
    """Owns the refresh state and the queue of requests waiting on a renewal.

    IDLE -> REFRESHING when a request sees an expired token; REFRESHING -> IDLE
    on renewal success, after which every waiting request is replayed once in
    the order it joined; REFRESHING -> FAILED on renewal failure, which rejects
    every waiting request with ``SessionExpired``. FAILED only returns to IDLE
    through ``reset()`` on a new login or logout.
    """

    renew: Renew
    events: EventChannel
    credentials: SessionCredentials = field(default_factory=SessionCredentials)
    _state: RefreshState = field(default=RefreshState.IDLE, init=False)
    _queue: deque[asyncio.Future[None]] = field(default_factory=deque, init=False)
    _renewal: asyncio.Task | None = field(default=None, init=False)
    _epoch: int = field(default=0, init=False)
    _renewals: int = field(default=0, init=False)

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def guard(self, request: ApiRequest, send: Send) -> object:
        """Send request, recovering once from an expired session."""
        renewals_seen = self._renewals
        try:
            return await send(request)
        except AuthExpired as exc:
            expired = exc
        except AuthFailed as exc:
            self.events.publish(AuthEvent(AuthEventKind.AUTH_ERROR, exc.message))
            raise
        self.events.publish(AuthEvent(AuthEventKind.AUTH_EXPIRED, expired.message))
        if self._renewals == renewals_seen or self._state != RefreshState.IDLE:
            await self._wait_for_renewal(request, expired)
        # Otherwise the session was renewed while this request was in flight.
        return await self._replay(request, send)

    def reset(self) -> None:
        """Return to IDLE, cancelling the running renewal and its waiters.

        A cancelled renewal never applies its result, so a token rotated by a
        refresh racing a logout is never stored.
        """
        self._epoch += 1
        if self._renewal is not None and not self._renewal.done():
            self._renewal.cancel()
        self._reject_waiters("Session was reset")
        self._state = RefreshState.IDLE
        logger.info("Refresh coordinator reset")

    async def _wait_for_renewal(
        self, request: ApiRequest, expired: AuthExpired
    ) -> None:
        if not self.credentials.present:
            raise SessionExpired("No active session to refresh") from expired
        if self._state == RefreshState.FAILED:
            raise SessionExpired() from expired
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(waiter)
        if self._state == RefreshState.IDLE:
            self._state = RefreshState.REFRESHING
            logger.info("Token expired on %s, refreshing session", request.describe())
            self._renewal = asyncio.ensure_future(
                self._run_renewal(self._epoch, self._renewal)
            )
        else:
            logger.info("Queued %s behind the session refresh", request.describe())
        await waiter

    async def _run_renewal(
        self, epoch: int, previous: asyncio.Task | None = None
    ) -> None:
        if previous is not None and not previous.done():
            # Wait for a cancelled renewal to unwind before starting a new one.
            await asyncio.wait({previous})
        try:
            await self.renew()
        except asyncio.CancelledError:
            logger.info("Session refresh cancelled by reset")
            raise
        except Exception as exc:
            logger.warning("Session refresh failed: %s", exc)
            if epoch == self._epoch:
                self._terminate(f"Session refresh failed: {exc}")
            return
        if epoch != self._epoch:
            return
        logger.info("Session refreshed, replaying %d request(s)", len(self._queue))
        self._state = RefreshState.IDLE
        self._renewals += 1
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def _replay(self, request: ApiRequest, send: Send) -> object:
        try:
            return await send(request)
        except AuthExpired as exc:
            logger.warning("%s still expired after refresh", request.describe())
            if self._state != RefreshState.FAILED:
                self._terminate("Session still expired after refresh")
            raise SessionExpired() from exc
        except AuthFailed as exc:
            self.events.publish(AuthEvent(AuthEventKind.AUTH_ERROR, exc.message))
            raise

    def _terminate(self, message: str) -> None:
        self._state = RefreshState.FAILED
        self._reject_waiters(message)
        self.events.publish(AuthEvent(AuthEventKind.SESSION_EXPIRED, message))

    def _reject_waiters(self, message: str) -> None:
        while self._queue:
            waiter = self._queue.popleft()
            if not waiter.done():
                waiter.set_exception(SessionExpired(message))


@dataclass
class GuardedApiClient(ApiSender):
    """Routes every request of an inner sender through the refresh coordinator."""

    inner: ApiSender
    coordinator: RefreshCoordinator

    async def send(self, request: ApiRequest) -> object:
        return await self.coordinator.guard(request, self.inner.send)
