"""Tests for the single-flight refresh coordinator."""

import asyncio
from dataclasses import dataclass, field

import pytest

from photo_albums.adapters.http_client import ApiRequest, SessionCredentials
from photo_albums.domain.errors import (
    AuthExpired,
    AuthFailed,
    NetworkError,
    SessionExpired,
)
from photo_albums.services.events import AuthEvent, AuthEventKind, EventChannel
from photo_albums.services.refresh import RefreshCoordinator, RefreshState


async def _ticks(count: int) -> None:
    for _ in range(count):
        await asyncio.sleep(0)


@dataclass
class ExpiringBackend:
    """Answers with AuthExpired until renewed; delays are in event-loop ticks."""

    expired: bool = True
    renew_error: Exception | None = None
    renew_clears_expiry: bool = True
    renew_ticks: int = 10
    delays: dict[str, int] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    renewals: int = 0
    active: int = 0
    peak: int = 0

    async def send(self, request: ApiRequest) -> object:
        self.calls.append(request.path)
        expired = self.expired
        await _ticks(self.delays.get(request.path, 1))
        if expired:
            raise AuthExpired(401, "expired token")
        return {"path": request.path}

    async def renew(self) -> object:
        self.renewals += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await _ticks(self.renew_ticks)
        finally:
            self.active -= 1
        if self.renew_error is not None:
            raise self.renew_error
        if self.renew_clears_expiry:
            self.expired = False
        return {"message": "Token refreshed successfully"}


def _coordinator(
    backend: ExpiringBackend, credentials: SessionCredentials | None = None
) -> tuple[RefreshCoordinator, list[AuthEvent]]:
    events = EventChannel()
    seen: list[AuthEvent] = []
    for kind in AuthEventKind:
        events.subscribe(kind, seen.append)
    coordinator = RefreshCoordinator(
        renew=backend.renew,
        events=events,
        credentials=credentials or SessionCredentials(),
    )
    return coordinator, seen


def _kinds(events: list[AuthEvent]) -> list[AuthEventKind]:
    return [event.kind for event in events]


@pytest.mark.parametrize("count", [1, 2, 5, 20])
def test_concurrent_expired_requests_share_one_refresh(count: int) -> None:
    backend = ExpiringBackend()
    coordinator, _ = _coordinator(backend)
    requests = [ApiRequest("GET", f"/albums/a{index}") for index in range(count)]

    async def scenario() -> list[object]:
        return await asyncio.gather(
            *(coordinator.guard(request, backend.send) for request in requests)
        )

    results = asyncio.run(scenario())

    assert backend.renewals == 1
    assert results == [{"path": request.path} for request in requests]
    assert len(backend.calls) == 2 * count
    assert coordinator.state == RefreshState.IDLE
    assert coordinator.queued == 0


def test_queued_requests_replay_in_join_order() -> None:
    backend = ExpiringBackend(delays={"/first": 1, "/second": 3, "/third": 2})
    coordinator, _ = _coordinator(backend)
    paths = ["/second", "/first", "/third"]

    async def scenario() -> None:
        await asyncio.gather(
            *(
                coordinator.guard(ApiRequest("GET", path), backend.send)
                for path in paths
            )
        )

    asyncio.run(scenario())

    assert backend.renewals == 1
    assert backend.calls[:3] == paths
    assert backend.calls[3:] == ["/first", "/third", "/second"]


def test_refresh_failure_rejects_original_and_queued_requests() -> None:
    backend = ExpiringBackend(
        renew_error=AuthFailed("Invalid or expired refresh token")
    )
    coordinator, events = _coordinator(backend)
    requests = [ApiRequest("GET", f"/images/i{index}") for index in range(4)]

    async def scenario() -> list[object]:
        return await asyncio.gather(
            *(
                coordinator.guard(request, backend.send)
                for request in requests
            ),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert backend.renewals == 1
    assert all(isinstance(result, SessionExpired) for result in results)
    assert coordinator.state == RefreshState.FAILED
    assert _kinds(events).count(AuthEventKind.SESSION_EXPIRED) == 1
    assert len(backend.calls) == 4


def test_failed_state_rejects_without_refreshing_until_reset() -> None:
    backend = ExpiringBackend(renew_error=NetworkError("connection reset"))
    coordinator, _ = _coordinator(backend)
    request = ApiRequest("GET", "/me")

    with pytest.raises(SessionExpired):
        asyncio.run(coordinator.guard(request, backend.send))
    with pytest.raises(SessionExpired):
        asyncio.run(coordinator.guard(request, backend.send))

    assert backend.renewals == 1
    assert coordinator.state == RefreshState.FAILED

    coordinator.reset()
    backend.renew_error = None

    result = asyncio.run(coordinator.guard(request, backend.send))

    assert result == {"path": "/me"}
    assert backend.renewals == 2
    assert coordinator.state == RefreshState.IDLE


def test_request_is_retried_at_most_once() -> None:
    backend = ExpiringBackend(renew_clears_expiry=False)
    coordinator, events = _coordinator(backend)

    with pytest.raises(SessionExpired):
        asyncio.run(coordinator.guard(ApiRequest("GET", "/me"), backend.send))

    assert backend.calls == ["/me", "/me"]
    assert backend.renewals == 1
    assert coordinator.state == RefreshState.FAILED
    assert _kinds(events)[-1] == AuthEventKind.SESSION_EXPIRED


def test_non_expired_401_bypasses_refresh() -> None:
    backend = ExpiringBackend()
    coordinator, events = _coordinator(backend)

    async def rejecting_send(request: ApiRequest) -> object:
        raise AuthFailed("Authentication required")

    with pytest.raises(AuthFailed):
        asyncio.run(coordinator.guard(ApiRequest("GET", "/me"), rejecting_send))

    assert backend.renewals == 0
    assert _kinds(events) == [AuthEventKind.AUTH_ERROR]
    assert coordinator.state == RefreshState.IDLE


def test_no_refresh_when_session_was_ended() -> None:
    backend = ExpiringBackend()
    credentials = SessionCredentials()
    credentials.end()
    coordinator, _ = _coordinator(backend, credentials)

    with pytest.raises(SessionExpired):
        asyncio.run(coordinator.guard(ApiRequest("GET", "/me"), backend.send))

    assert backend.renewals == 0


def test_late_expiry_after_completed_refresh_replays_without_new_refresh() -> None:
    backend = ExpiringBackend(renew_ticks=2, delays={"/slow": 30, "/fast": 1})
    coordinator, _ = _coordinator(backend)

    async def scenario() -> list[object]:
        return await asyncio.gather(
            coordinator.guard(ApiRequest("GET", "/slow"), backend.send),
            coordinator.guard(ApiRequest("GET", "/fast"), backend.send),
        )

    results = asyncio.run(scenario())

    assert results == [{"path": "/slow"}, {"path": "/fast"}]
    assert backend.renewals == 1


def test_reset_while_refreshing_rejects_waiters() -> None:
    backend = ExpiringBackend(renew_ticks=20)
    coordinator, _ = _coordinator(backend)

    async def scenario() -> object:
        pending = asyncio.ensure_future(
            coordinator.guard(ApiRequest("GET", "/albums"), backend.send)
        )
        await _ticks(5)
        assert coordinator.state == RefreshState.REFRESHING
        coordinator.reset()
        results = await asyncio.gather(pending, return_exceptions=True)
        await _ticks(30)
        return results[0]

    result = asyncio.run(scenario())

    assert isinstance(result, SessionExpired)
    assert coordinator.state == RefreshState.IDLE


def test_reset_cancels_running_refresh_before_the_next_one() -> None:
    backend = ExpiringBackend(renew_ticks=20)
    coordinator, _ = _coordinator(backend)

    async def scenario() -> tuple[object, object]:
        earlier = asyncio.ensure_future(
            coordinator.guard(ApiRequest("GET", "/albums"), backend.send)
        )
        await _ticks(5)
        coordinator.reset()
        later = await coordinator.guard(ApiRequest("GET", "/images"), backend.send)
        results = await asyncio.gather(earlier, return_exceptions=True)
        return results[0], later

    earlier, later = asyncio.run(scenario())

    assert isinstance(earlier, SessionExpired)
    assert later == {"path": "/images"}
    assert backend.renewals == 2
    assert backend.peak == 1
    assert coordinator.state == RefreshState.IDLE


def test_cancelled_refresh_does_not_rotate_credentials() -> None:
    credentials = SessionCredentials(token="old")
    backend = ExpiringBackend(renew_ticks=20)

    async def rotating_renew() -> object:
        body = await backend.renew()
        credentials.establish("rotated")
        return body

    events = EventChannel()
    coordinator = RefreshCoordinator(
        renew=rotating_renew, events=events, credentials=credentials
    )

    async def scenario() -> object:
        pending = asyncio.ensure_future(
            coordinator.guard(ApiRequest("GET", "/me"), backend.send)
        )
        await _ticks(5)
        credentials.end()
        coordinator.reset()
        results = await asyncio.gather(pending, return_exceptions=True)
        await _ticks(30)
        return results[0]

    result = asyncio.run(scenario())

    assert isinstance(result, SessionExpired)
    assert credentials.token == "old"
    assert credentials.present is False
