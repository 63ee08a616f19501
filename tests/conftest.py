"""Shared test fixtures."""

import json
from dataclasses import dataclass, field

import httpx
import pytest

from photo_albums.adapters.http_client import HttpxApiClient, SessionCredentials
from photo_albums.config import CredentialMode, Settings
from photo_albums.containers import AppContainer, build_container

BASE_URL = "https://photos.test/api"
TIMESTAMP = "2024-05-01T12:00:00Z"
EXPIRED = {"message": "expired token"}


def album_payload(album_id: str, name: str = "Trip") -> dict[str, object]:
    return {
        "id": album_id,
        "user_id": "u1",
        "name": name,
        "description": "",
        "created_at": TIMESTAMP,
        "updated_at": TIMESTAMP,
    }


def image_payload(image_id: str, filename: str = "beach.jpg") -> dict[str, object]:
    return {
        "id": image_id,
        "user_id": "u1",
        "filename": filename,
        "content_type": "image/jpeg",
        "size": 1024,
        "width": 640,
        "height": 480,
        "created_at": TIMESTAMP,
        "updated_at": TIMESTAMP,
    }


@dataclass
class FakePhotoServer:
    """In-memory stand-in for the photo albums API behind httpx.MockTransport.

    ``token_expired`` makes every authenticated call answer with the
    expired-token 401 until a successful refresh; ``refresh_status`` controls
    the refresh endpoint; ``failures`` forces a status for "METHOD /path".
    """

    user: dict[str, object] = field(
        default_factory=lambda: {"id": "u1", "email": "a@b.com", "name": "A"}
    )
    albums: dict[str, dict[str, object]] = field(default_factory=dict)
    images: dict[str, dict[str, object]] = field(default_factory=dict)
    album_images: dict[str, list[str]] = field(default_factory=dict)
    blobs: dict[str, bytes] = field(default_factory=dict)
    token_expired: bool = False
    logged_in: bool = True
    refresh_status: int = 200
    refresh_token: str | None = None
    failures: dict[str, int] = field(default_factory=dict)
    requests: list[str] = field(default_factory=list)
    observers: dict[str, list] = field(default_factory=dict)
    next_id: int = 100

    def count(self, call: str) -> int:
        return self.requests.count(call)

    def on(self, call: str, observer) -> None:  # type: ignore[no-untyped-def]
        """Run observer(request) when call arrives, before answering it."""
        self.observers.setdefault(call, []).append(observer)

    def client(
        self, mode: CredentialMode = CredentialMode.COOKIE, token: str | None = None
    ) -> HttpxApiClient:
        return HttpxApiClient(
            base_url=BASE_URL,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handle)),
            credentials=SessionCredentials(mode=mode, token=token),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        call = f"{request.method} {path}"
        self.requests.append(call)
        for observer in self.observers.get(call, []):
            observer(request)
        if call in self.failures:
            status = self.failures[call]
            return httpx.Response(status, json={"error": "forced failure"})
        if path.startswith("/auth/"):
            return self._auth(call)
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        if not self.logged_in:
            return httpx.Response(401, json={"error": "Authentication required"})
        if self.token_expired:
            return httpx.Response(401, json=EXPIRED)
        return self._resource(request, path)

    def _auth(self, call: str) -> httpx.Response:
        if call == "GET /auth/google/login":
            return httpx.Response(
                200, json={"auth_url": "https://accounts.example.com/o/oauth2"}
            )
        if call == "POST /auth/dev/login":
            self.logged_in = True
            return httpx.Response(200, json={"token": "dev-token"})
        if call == "GET /auth/google/refresh":
            if self.refresh_status != 200:
                return httpx.Response(
                    self.refresh_status,
                    json={"error": "Invalid or expired refresh token"},
                )
            self.token_expired = False
            body = {"message": "Token refreshed successfully"}
            if self.refresh_token is not None:
                body["token"] = self.refresh_token
            return httpx.Response(200, json=body)
        if call == "POST /auth/google/logout":
            self.logged_in = False
            return httpx.Response(200, json={"message": "Successfully logged out"})
        return httpx.Response(404, json={"error": "Not found"})

    def _resource(  # noqa: PLR0911, PLR0912
        self, request: httpx.Request, path: str
    ) -> httpx.Response:
        parts = path.strip("/").split("/")
        method = request.method
        if parts == ["me"]:
            return httpx.Response(200, json=self.user)
        if parts == ["albums"]:
            if method == "POST":
                body = json.loads(request.content.decode())
                album_id = self._new_id("a")
                self.albums[album_id] = album_payload(album_id, body["name"])
                return httpx.Response(201, json=self.albums[album_id])
            return httpx.Response(200, json=list(self.albums.values()))
        if parts[0] == "albums" and parts[1] not in self.albums:
            return httpx.Response(404, json={"error": "Album not found"})
        if parts[0] == "albums" and len(parts) == 2:
            album_id = parts[1]
            if method == "DELETE":
                self.albums.pop(album_id)
                self.album_images.pop(album_id, None)
                return httpx.Response(200, json={"message": "Album deleted"})
            if method == "PUT":
                body = json.loads(request.content.decode())
                self.albums[album_id]["name"] = body["name"]
                return httpx.Response(200, json={"message": "Album updated"})
            return httpx.Response(200, json=self.albums[album_id])
        if parts[0] == "albums" and len(parts) >= 3:
            album_id = parts[1]
            members = self.album_images.setdefault(album_id, [])
            if method == "POST":
                image_id = json.loads(request.content.decode())["image_id"]
                if image_id not in members:
                    members.append(image_id)
                return httpx.Response(200, json={"message": "Image added"})
            if method == "DELETE":
                if parts[3] in members:
                    members.remove(parts[3])
                return httpx.Response(200, json={"message": "Image removed"})
            return httpx.Response(
                200, json=[self.images[image_id] for image_id in members]
            )
        if parts == ["images"]:
            return httpx.Response(200, json=list(self.images.values()))
        if parts == ["images", "upload"]:
            image_id = self._new_id("i")
            self.images[image_id] = image_payload(image_id, "upload.jpg")
            return httpx.Response(201, json=self.images[image_id])
        if parts[0] == "images" and parts[1] not in self.images:
            return httpx.Response(404, json={"error": "Image not found"})
        if parts[0] == "images" and len(parts) == 3:
            blob = self.blobs.get(parts[1], b"jpeg-bytes")
            return httpx.Response(200, content=blob)
        if parts[0] == "images" and method == "DELETE":
            self.images.pop(parts[1])
            for members in self.album_images.values():
                if parts[1] in members:
                    members.remove(parts[1])
            return httpx.Response(200, json={"message": "Image deleted"})
        if parts[0] == "images":
            return httpx.Response(200, json=self.images[parts[1]])
        return httpx.Response(404, json={"error": "Not found"})

    def _new_id(self, prefix: str) -> str:
        self.next_id += 1
        return f"{prefix}{self.next_id}"


@pytest.fixture
def settings() -> Settings:
    return Settings(api_base_url=BASE_URL, cache_stale_seconds=300)


@pytest.fixture
def server() -> FakePhotoServer:
    server = FakePhotoServer()
    server.albums["a1"] = album_payload("a1")
    server.images["i1"] = image_payload("i1")
    server.images["i2"] = image_payload("i2", "forest.jpg")
    server.album_images["a1"] = ["i1"]
    return server


def make_container(
    server: FakePhotoServer,
    settings: Settings,
    mode: CredentialMode = CredentialMode.COOKIE,
    token: str | None = None,
) -> AppContainer:
    """Build a container whose HTTP client talks to the fake server."""
    return build_container(settings, http_client=server.client(mode, token))
