"""Cache key factories.

Keys are tuples; a key is a prefix pattern for every key that starts with it,
so ``albums_all()`` matches the list, every detail and every album's images.
"""

CacheKey = tuple[str, ...]


def current_user() -> CacheKey:
    return ("auth", "current-user")


def albums_all() -> CacheKey:
    return ("albums",)


def albums_list() -> CacheKey:
    return ("albums", "list")


def album_detail(album_id: str) -> CacheKey:
    return ("albums", "detail", str(album_id))


def album_images(album_id: str) -> CacheKey:
    return (*album_detail(album_id), "images")


def images_list() -> CacheKey:
    return ("images", "list")


def image_detail(image_id: str) -> CacheKey:
    return ("images", "detail", str(image_id))


def image_blob(image_id: str) -> CacheKey:
    return ("images", "blob", str(image_id))


def matches(pattern: CacheKey, key: CacheKey) -> bool:
    """Return True when ``pattern`` is a prefix of ``key``."""
    return key[: len(pattern)] == pattern
