"""Session state machine exposed to the rest of the application."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from photo_albums.adapters.http_client import SessionCredentials
from photo_albums.adapters.photo_api import PhotoApi
from photo_albums.domain import keys
from photo_albums.domain.errors import PhotoApiError, SessionExpired
from photo_albums.domain.models import User
from photo_albums.services.cache import CacheEntry, CacheStore
from photo_albums.services.events import AuthEvent, AuthEventKind, EventChannel
from photo_albums.services.invalidation import Mutation, MutationKind, MutationRunner
from photo_albums.services.refresh import RefreshCoordinator

logger = logging.getLogger(__name__)


class SessionStatus(StrEnum):
    """Authentication status visible to the application."""

    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


@dataclass(frozen=True)
class SessionState:
    """Current status plus the user when authenticated."""

    status: SessionStatus
    user: User | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.status == SessionStatus.AUTHENTICATED


class SessionHolder(Protocol):
    """Owner of the local session credentials."""

    credentials: SessionCredentials

    def clear_session(self) -> None:
        """Forget every local trace of the session."""


SessionListener = Callable[[SessionState], None]


@dataclass
class SessionStateMachine:
    """Derives LOADING / AUTHENTICATED / UNAUTHENTICATED from the cache and events.

    The current-user cache entry is the source of truth while a session is
    live; ``AUTH_ERROR`` and ``SESSION_EXPIRED`` events end it.
    """

    api: PhotoApi
    cache: CacheStore
    mutations: MutationRunner
    coordinator: RefreshCoordinator
    events: EventChannel
    holder: SessionHolder
    _state: SessionState = field(
        default=SessionState(SessionStatus.LOADING), init=False
    )
    _listeners: list[SessionListener] = field(default_factory=list, init=False)
    _unsubscribers: list[Callable[[], None]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self._unsubscribers = [
            self.events.subscribe(AuthEventKind.AUTH_ERROR, self._on_auth_failure),
            self.events.subscribe(AuthEventKind.SESSION_EXPIRED, self._on_auth_failure),
            self.cache.subscribe(
                keys.current_user(), self._on_user_entry, self.api.get_current_user
            ),
        ]

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register listener for state changes and return an unsubscribe handle."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> SessionState:
        """Load the current user and settle on AUTHENTICATED or UNAUTHENTICATED.

        Transport and server errors say nothing about the session: the state
        held before the call is restored and the error re-raised so the
        caller can offer a retry.
        """
        previous = self._state
        self._transition(SessionState(SessionStatus.LOADING))
        try:
            entry = await self.cache.read(
                keys.current_user(), self.api.get_current_user
            )
        except SessionExpired:
            self._sign_out_locally()
            return self._state
        except PhotoApiError:
            self._transition(previous)
            raise
        if isinstance(entry.value, User):
            self._transition(
                SessionState(SessionStatus.AUTHENTICATED, user=entry.value)
            )
        else:
            self._sign_out_locally()
        return self._state

    async def begin_login(self) -> str:
        """Return the OAuth URL to open; call ``complete_login`` afterwards."""
        return await self.api.start_login()

    async def complete_login(self) -> SessionState:
        """Re-arm the session after the OAuth redirect and load the user."""
        self.holder.credentials.establish()
        self.coordinator.reset()
        self.mutations.settle(Mutation(MutationKind.LOGIN))
        return await self.start()

    async def dev_login(self, email: str, name: str) -> SessionState:
        """Log in through the development endpoint with a bearer token."""
        self._transition(SessionState(SessionStatus.LOADING))
        try:
            token = await self.api.dev_login(email, name)
        except PhotoApiError:
            self._sign_out_locally()
            raise
        self.holder.credentials.establish(token)
        self.coordinator.reset()
        self.mutations.settle(Mutation(MutationKind.LOGIN))
        return await self.start()

    async def logout(self) -> SessionState:
        """End the session locally first, then tell the server.

        The user entry is cleared and the refresh coordinator reset before the
        network call, so nothing refreshes a session the user ended. A failed
        logout call still leaves the client logged out.
        """
        self.holder.credentials.end()
        self.coordinator.reset()
        self.cache.remove(keys.current_user())
        self._transition(SessionState(SessionStatus.UNAUTHENTICATED))
        try:
            await self.api.logout()
        except PhotoApiError as exc:
            logger.warning("Logout request failed, logged out locally: %s", exc)
        finally:
            self.holder.clear_session()
            self.cache.clear()
        return self._state

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_user_entry(self, entry: CacheEntry) -> None:
        if isinstance(entry.value, User):
            self._transition(
                SessionState(SessionStatus.AUTHENTICATED, user=entry.value)
            )
        elif self._state.status == SessionStatus.AUTHENTICATED:
            self._transition(SessionState(SessionStatus.UNAUTHENTICATED))

    def _on_auth_failure(self, event: AuthEvent) -> None:
        logger.info("Session ended by %s", event.kind)
        self.holder.clear_session()
        self._sign_out_locally()

    def _sign_out_locally(self) -> None:
        self.cache.remove(keys.current_user())
        self._transition(SessionState(SessionStatus.UNAUTHENTICATED))

    def _transition(self, state: SessionState) -> None:
        if state == self._state:
            return
        logger.info("Session %s -> %s", self._state.status, state.status)
        self._state = state
        for listener in list(self._listeners):
            listener(state)
