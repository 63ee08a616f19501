"""Cached queries and invalidating mutations over the photo albums API."""

from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from photo_albums.adapters.photo_api import PhotoApi
from photo_albums.domain import keys
from photo_albums.domain.keys import CacheKey
from photo_albums.domain.models import Album, Image, ServerMessage
from photo_albums.services.cache import CacheStore, Fetcher, Subscriber
from photo_albums.services.invalidation import Mutation, MutationKind, MutationRunner


@dataclass
class PhotoLibrary:
    """Entry point for reading and changing albums and images.

    Reads go through the cache store by key; writes go through the mutation
    runner so the cache is patched and invalidated by the rule table only.
    """

    api: PhotoApi
    cache: CacheStore
    mutations: MutationRunner

    def fetcher_for(self, key: CacheKey) -> Fetcher:
        """Return the API call that loads the value stored under key."""
        head = key[:2]
        if key == keys.current_user():
            return self.api.get_current_user
        if key == keys.albums_list():
            return self.api.list_albums
        if key == keys.images_list():
            return self.api.list_images
        if head == ("albums", "detail") and len(key) == 3:
            return partial(self.api.get_album, key[2])
        if head == ("albums", "detail") and key[3:] == ("images",):
            return partial(self.api.list_album_images, key[2])
        if head == ("images", "detail") and len(key) == 3:
            return partial(self.api.get_image, key[2])
        if head == ("images", "blob") and len(key) == 3:
            return partial(self.api.download_image, key[2])
        raise KeyError(f"Unknown cache key {key!r}")

    def watch(self, key: CacheKey, callback: Subscriber) -> Callable[[], None]:
        """Subscribe to key; invalidations of it are refetched in the background."""
        return self.cache.subscribe(key, callback, self.fetcher_for(key))

    async def albums(self) -> list[Album]:
        return await self._query(keys.albums_list())

    async def album(self, album_id: str) -> Album:
        return await self._query(keys.album_detail(album_id))

    async def album_images(self, album_id: str) -> list[Image]:
        return await self._query(keys.album_images(album_id))

    async def images(self) -> list[Image]:
        return await self._query(keys.images_list())

    async def image(self, image_id: str) -> Image:
        return await self._query(keys.image_detail(image_id))

    async def image_content(self, image_id: str) -> bytes:
        return await self._query(keys.image_blob(image_id))

    async def create_album(self, name: str, description: str = "") -> Album:
        return await self.mutations.run(
            Mutation(MutationKind.CREATE_ALBUM),
            partial(self.api.create_album, name, description),
        )

    async def update_album(
        self, album_id: str, name: str, description: str = ""
    ) -> ServerMessage:
        return await self.mutations.run(
            Mutation(MutationKind.UPDATE_ALBUM, album_id=album_id),
            partial(self.api.update_album, album_id, name, description),
        )

    async def delete_album(self, album_id: str) -> ServerMessage:
        return await self.mutations.run(
            Mutation(MutationKind.DELETE_ALBUM, album_id=album_id),
            partial(self.api.delete_album, album_id),
        )

    async def add_image_to_album(self, album_id: str, image_id: str) -> ServerMessage:
        mutation = Mutation(
            MutationKind.ADD_IMAGE_TO_ALBUM,
            album_id=album_id,
            image_id=image_id,
            image=self._known_image(image_id),
        )
        return await self.mutations.run(
            mutation, partial(self.api.add_image_to_album, album_id, image_id)
        )

    async def remove_image_from_album(
        self, album_id: str, image_id: str
    ) -> ServerMessage:
        return await self.mutations.run(
            Mutation(
                MutationKind.REMOVE_IMAGE_FROM_ALBUM,
                album_id=album_id,
                image_id=image_id,
            ),
            partial(self.api.remove_image_from_album, album_id, image_id),
        )

    async def upload_image(
        self, filename: str, content: bytes, content_type: str
    ) -> Image:
        return await self.mutations.run(
            Mutation(MutationKind.UPLOAD_IMAGE),
            partial(self.api.upload_image, filename, content, content_type),
        )

    async def delete_image(self, image_id: str) -> ServerMessage:
        return await self.mutations.run(
            Mutation(MutationKind.DELETE_IMAGE, image_id=image_id),
            partial(self.api.delete_image, image_id),
        )

    async def _query(self, key: CacheKey):  # type: ignore[no-untyped-def]
        entry = await self.cache.read(key, self.fetcher_for(key))
        return entry.value

    def _known_image(self, image_id: str) -> Image | None:
        """Return cached metadata for an image, if any is loaded."""
        detail = self.cache.peek(keys.image_detail(image_id)).value
        if isinstance(detail, Image):
            return detail
        listed = self.cache.peek(keys.images_list()).value
        if isinstance(listed, list):
            for image in listed:
                if isinstance(image, Image) and image.id == image_id:
                    return image
        return None
