"""Typed wrappers around the remote photo albums endpoints."""

from dataclasses import dataclass

from photo_albums.adapters.http_client import ApiRequest, ApiSender, ResponseKind
from photo_albums.domain.models import (
    Album,
    AlbumImage,
    Image,
    ServerMessage,
    User,
)


@dataclass
class PhotoApi:
    """One method per remote endpoint; responses are parsed into models."""

    client: ApiSender

    async def start_login(self) -> str:
        """Return the OAuth URL the user has to visit to log in."""
        payload = await self.client.send(
            ApiRequest("GET", "/auth/google/login", requires_auth=False)
        )
        auth_url = payload.get("auth_url") if isinstance(payload, dict) else None
        if not isinstance(auth_url, str) or not auth_url:
            raise ValueError("Invalid authentication URL received")
        return auth_url

    async def dev_login(self, email: str, name: str) -> str:
        """Log in through the development endpoint and return the raw token."""
        payload = await self.client.send(
            ApiRequest(
                "POST",
                "/auth/dev/login",
                json={"email": email, "name": name},
                requires_auth=False,
            )
        )
        token = payload.get("token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise ValueError("Development login returned no token")
        return token

    async def logout(self) -> ServerMessage:
        payload = await self.client.send(ApiRequest("POST", "/auth/google/logout"))
        return _message(payload)

    async def get_current_user(self) -> User:
        return User.model_validate(await self.client.send(ApiRequest("GET", "/me")))

    async def list_albums(self) -> list[Album]:
        payload = await self.client.send(ApiRequest("GET", "/albums"))
        return [Album.model_validate(item) for item in payload or []]

    async def create_album(self, name: str, description: str = "") -> Album:
        payload = await self.client.send(
            ApiRequest(
                "POST", "/albums", json={"name": name, "description": description}
            )
        )
        return Album.model_validate(payload)

    async def get_album(self, album_id: str) -> Album:
        payload = await self.client.send(ApiRequest("GET", f"/albums/{album_id}"))
        return Album.model_validate(payload)

    async def update_album(
        self, album_id: str, name: str, description: str = ""
    ) -> ServerMessage:
        payload = await self.client.send(
            ApiRequest(
                "PUT",
                f"/albums/{album_id}",
                json={"name": name, "description": description},
            )
        )
        return _message(payload)

    async def delete_album(self, album_id: str) -> ServerMessage:
        payload = await self.client.send(ApiRequest("DELETE", f"/albums/{album_id}"))
        return _message(payload)

    async def list_album_images(self, album_id: str) -> list[Image]:
        payload = await self.client.send(
            ApiRequest("GET", f"/albums/{album_id}/images")
        )
        return [Image.model_validate(item) for item in payload or []]

    async def add_image_to_album(self, album_id: str, image_id: str) -> ServerMessage:
        link = AlbumImage(album_id=album_id, image_id=image_id)
        payload = await self.client.send(
            ApiRequest(
                "POST",
                f"/albums/{link.album_id}/images",
                json=link.model_dump(include={"image_id"}),
            )
        )
        return _message(payload)

    async def remove_image_from_album(
        self, album_id: str, image_id: str
    ) -> ServerMessage:
        payload = await self.client.send(
            ApiRequest("DELETE", f"/albums/{album_id}/images/{image_id}")
        )
        return _message(payload)

    async def list_images(self) -> list[Image]:
        payload = await self.client.send(ApiRequest("GET", "/images"))
        return [Image.model_validate(item) for item in payload or []]

    async def upload_image(
        self, filename: str, content: bytes, content_type: str
    ) -> Image:
        """Upload an image as multipart form data under the ``file`` field."""
        payload = await self.client.send(
            ApiRequest(
                "POST",
                "/images/upload",
                files={"file": (filename, content, content_type)},
            )
        )
        return Image.model_validate(payload)

    async def get_image(self, image_id: str) -> Image:
        payload = await self.client.send(ApiRequest("GET", f"/images/{image_id}"))
        return Image.model_validate(payload)

    async def delete_image(self, image_id: str) -> ServerMessage:
        payload = await self.client.send(ApiRequest("DELETE", f"/images/{image_id}"))
        return _message(payload)

    async def download_image(self, image_id: str) -> bytes:
        payload = await self.client.send(
            ApiRequest(
                "GET", f"/images/{image_id}/download", expect=ResponseKind.BINARY
            )
        )
        return bytes(payload)

    async def health(self) -> bool:
        payload = await self.client.send(
            ApiRequest("GET", "/health", requires_auth=False)
        )
        return isinstance(payload, dict) and payload.get("status") == "ok"


def _message(payload: object) -> ServerMessage:
    if isinstance(payload, dict):
        return ServerMessage.model_validate(payload)
    return ServerMessage()
