"""Dependency container wiring for the client."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta

from photo_albums.adapters.http_client import HttpxApiClient, SessionCredentials
from photo_albums.adapters.photo_api import PhotoApi
from photo_albums.app_logging import configure_logging
from photo_albums.config import Settings, parse_markers
from photo_albums.services.cache import CacheStore
from photo_albums.services.events import EventChannel
from photo_albums.services.invalidation import MutationRunner
from photo_albums.services.library import PhotoLibrary
from photo_albums.services.refresh import GuardedApiClient, RefreshCoordinator
from photo_albums.services.session import SessionStateMachine


@dataclass
class AppContainer:
    """Holds client-wide dependencies."""

    settings: Settings
    events: EventChannel
    http_client: HttpxApiClient
    coordinator: RefreshCoordinator
    api: PhotoApi
    cache: CacheStore
    library: PhotoLibrary
    session: SessionStateMachine
    close_resources: Callable[[], Awaitable[None]]


def build_container(
    settings: Settings | None = None, http_client: HttpxApiClient | None = None
) -> AppContainer:
    """Create the default dependency container."""
    configure_logging()
    resolved_settings = settings or Settings()
    events = EventChannel()
    if http_client is None:
        http_client = HttpxApiClient.create(
            base_url=resolved_settings.api_base_url,
            credentials=SessionCredentials(
                mode=resolved_settings.credential_mode,
                token=resolved_settings.dev_token,
            ),
            expired_markers=parse_markers(resolved_settings.expired_token_markers),
            timeout=resolved_settings.request_timeout_seconds,
        )
    coordinator = RefreshCoordinator(
        renew=http_client.renew_session,
        events=events,
        credentials=http_client.credentials,
    )
    api = PhotoApi(GuardedApiClient(inner=http_client, coordinator=coordinator))
    cache = CacheStore(
        stale_after=timedelta(seconds=resolved_settings.cache_stale_seconds)
    )
    mutations = MutationRunner(cache)
    library = PhotoLibrary(api=api, cache=cache, mutations=mutations)
    session = SessionStateMachine(
        api=api,
        cache=cache,
        mutations=mutations,
        coordinator=coordinator,
        events=events,
        holder=http_client,
    )

    async def close_resources() -> None:
        session.close()
        await cache.settle()
        await http_client.close()

    return AppContainer(
        settings=resolved_settings,
        events=events,
        http_client=http_client,
        coordinator=coordinator,
        api=api,
        cache=cache,
        library=library,
        session=session,
        close_resources=close_resources,
    )
