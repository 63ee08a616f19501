"""Declarative cache invalidation for mutations."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TypeVar

from photo_albums.domain import keys
from photo_albums.domain.keys import CacheKey
from photo_albums.domain.models import Image
from photo_albums.services.cache import CacheEntry, CacheStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationKind(StrEnum):
    """Every write the client can perform against the server."""

    LOGIN = "login"
    CREATE_ALBUM = "create-album"
    UPDATE_ALBUM = "update-album"
    DELETE_ALBUM = "delete-album"
    ADD_IMAGE_TO_ALBUM = "add-image-to-album"
    REMOVE_IMAGE_FROM_ALBUM = "remove-image-from-album"
    DELETE_IMAGE = "delete-image"
    UPLOAD_IMAGE = "upload-image"


@dataclass(frozen=True)
class Mutation:
    """A dispatched mutation and the identifiers it touches.

    ``image`` carries already known metadata so an optimistic patch can show
    the image before the server confirms.
    """

    kind: MutationKind
    album_id: str | None = None
    image_id: str | None = None
    image: Image | None = None


KeysFor = Callable[[Mutation], list[CacheKey]]


def _no_keys(mutation: Mutation) -> list[CacheKey]:
    return []


@dataclass(frozen=True)
class OptimisticPatch:
    """Patch applied to one cache entry when the mutation is dispatched."""

    target: Callable[[Mutation], CacheKey]
    apply: Callable[[object, Mutation], object]


@dataclass(frozen=True)
class InvalidationRule:
    """Keys a successful mutation makes stale or deletes outright.

    ``invalidates`` names exact keys; ``invalidates_under`` and ``removes``
    name prefixes that cover every key below them.
    """

    invalidates: KeysFor
    invalidates_under: KeysFor = _no_keys
    removes: KeysFor = _no_keys
    optimistic: OptimisticPatch | None = None


def _append_image(value: object, mutation: Mutation) -> object:
    if not isinstance(value, list) or mutation.image is None:
        return value
    if any(image.id == mutation.image_id for image in value):
        return value
    return [*value, mutation.image]


def _drop_image(value: object, mutation: Mutation) -> object:
    if not isinstance(value, list):
        return value
    if all(image.id != mutation.image_id for image in value):
        return value
    return [image for image in value if image.id != mutation.image_id]


MUTATION_RULES: Mapping[MutationKind, InvalidationRule] = MappingProxyType(
    {
        MutationKind.LOGIN: InvalidationRule(
            invalidates=lambda m: [keys.current_user()],
        ),
        MutationKind.CREATE_ALBUM: InvalidationRule(
            invalidates=lambda m: [keys.albums_list()],
        ),
        MutationKind.UPDATE_ALBUM: InvalidationRule(
            invalidates=lambda m: [keys.album_detail(m.album_id), keys.albums_list()],
        ),
        MutationKind.DELETE_ALBUM: InvalidationRule(
            invalidates=lambda m: [keys.albums_list()],
            removes=lambda m: [keys.album_detail(m.album_id)],
        ),
        MutationKind.ADD_IMAGE_TO_ALBUM: InvalidationRule(
            invalidates=lambda m: [keys.album_images(m.album_id)],
            optimistic=OptimisticPatch(
                target=lambda m: keys.album_images(m.album_id), apply=_append_image
            ),
        ),
        MutationKind.REMOVE_IMAGE_FROM_ALBUM: InvalidationRule(
            invalidates=lambda m: [keys.album_images(m.album_id)],
            optimistic=OptimisticPatch(
                target=lambda m: keys.album_images(m.album_id), apply=_drop_image
            ),
        ),
        # Albums prefix: the list plus every album's images, which may hold it.
        MutationKind.DELETE_IMAGE: InvalidationRule(
            invalidates=lambda m: [keys.images_list()],
            invalidates_under=lambda m: [keys.albums_all()],
            removes=lambda m: [
                keys.image_detail(m.image_id),
                keys.image_blob(m.image_id),
            ],
        ),
        MutationKind.UPLOAD_IMAGE: InvalidationRule(
            invalidates=lambda m: [keys.images_list()],
        ),
    }
)


@dataclass
class MutationRunner:
    """Runs mutations with optimistic patches, rollback and invalidation."""

    cache: CacheStore
    rules: Mapping[MutationKind, InvalidationRule] = field(
        default_factory=lambda: MUTATION_RULES
    )

    async def run(self, mutation: Mutation, perform: Callable[[], Awaitable[T]]) -> T:
        """Dispatch a mutation.

        The optimistic patch, if any, is visible immediately. If ``perform``
        fails the patched entry is restored to its pre-mutation snapshot;
        otherwise the rule's keys are removed and invalidated, and the
        resulting refetches overwrite the patch.
        """
        rule = self.rules[mutation.kind]
        applied = self._apply_optimistic(rule, mutation)
        try:
            result = await perform()
        except BaseException:
            self._rollback(mutation, applied)
            raise
        self.settle(mutation)
        return result

    def settle(self, mutation: Mutation) -> list[asyncio.Task]:
        """Apply the rule of a confirmed mutation to the cache."""
        rule = self.rules[mutation.kind]
        for pattern in rule.removes(mutation):
            self.cache.remove(pattern)
        scheduled: list[asyncio.Task] = []
        for key in rule.invalidates(mutation):
            scheduled.extend(self.cache.invalidate(key, exact=True))
        for pattern in rule.invalidates_under(mutation):
            scheduled.extend(self.cache.invalidate(pattern))
        logger.info(
            "Applied %s: %d refetch(es) scheduled", mutation.kind, len(scheduled)
        )
        return scheduled

    def _apply_optimistic(
        self, rule: InvalidationRule, mutation: Mutation
    ) -> tuple[CacheEntry, object] | None:
        if rule.optimistic is None:
            return None
        snapshot = self.cache.peek(rule.optimistic.target(mutation))
        if not snapshot.has_value:
            return None
        patched = rule.optimistic.apply(snapshot.value, mutation)
        if patched is snapshot.value:
            return None
        self.cache.write(snapshot.key, patched)
        return snapshot, patched

    def _rollback(
        self, mutation: Mutation, applied: tuple[CacheEntry, object] | None
    ) -> None:
        if applied is None:
            return
        snapshot, patched = applied
        if self.cache.peek(snapshot.key).value is not patched:
            # Already overwritten by fresher data.
            return
        logger.info("Rolling back optimistic %s on %s", mutation.kind, snapshot.key)
        self.cache.restore(snapshot)
