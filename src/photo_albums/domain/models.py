"""Pydantic models for API payloads."""

from datetime import datetime

from pydantic import BaseModel


class User(BaseModel):
    """Currently logged-in user."""

    id: str
    email: str
    name: str
    picture_url: str | None = None


class Album(BaseModel):
    """Named collection of images owned by a user."""

    id: str
    user_id: str
    name: str
    description: str = ""
    created_at: datetime
    updated_at: datetime


class Image(BaseModel):
    """Metadata of an uploaded image."""

    id: str
    user_id: str
    filename: str
    content_type: str
    size: int
    width: int | None = None
    height: int | None = None
    created_at: datetime
    updated_at: datetime


class AlbumImage(BaseModel):
    """Album to image association."""

    album_id: str
    image_id: str


class ServerMessage(BaseModel):
    """Plain acknowledgement payload."""

    message: str = ""
