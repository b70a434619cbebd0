"""
Collaborator interfaces consumed by export and restore.

The surrounding application owns real persistence; archive code only sees
these protocols. The in-memory stores implement them for tests and for
callers that stage a restore before committing it elsewhere.
"""

from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Protocol

from .models import Item, PhotoBlob, Room, Survey


class RecordStore(Protocol):
    async def upsert_survey(self, survey: Survey) -> None: ...

    async def upsert_room(self, room: Room) -> None: ...

    async def upsert_item(self, item: Item) -> None: ...


class PhotoStore(Protocol):
    async def resolve_photo(self, photo_id: str) -> Optional[PhotoBlob]:
        """Return the photo or None when it does not exist."""
        ...

    async def upsert_photo(self, photo: PhotoBlob) -> str:
        """Insert or replace ``photo`` by id; returns the stored id."""
        ...


class MemoryRecordStore:
    """Dict-backed record store with snapshot transactions."""

    def __init__(self):
        self.surveys: Dict[str, Survey] = {}
        self.rooms: Dict[str, Room] = {}
        self.items: Dict[str, Item] = {}

    async def upsert_survey(self, survey: Survey) -> None:
        self.surveys[survey.survey_id] = survey.model_copy(deep=True)

    async def upsert_room(self, room: Room) -> None:
        self.rooms[room.room_id] = room.model_copy(deep=True)

    async def upsert_item(self, item: Item) -> None:
        self.items[item.item_id] = item.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryRecordStore"]:
        saved = (copy.copy(self.surveys), copy.copy(self.rooms), copy.copy(self.items))
        try:
            yield self
        except BaseException:
            self.surveys, self.rooms, self.items = saved
            raise

    def rooms_for(self, survey_id: str) -> List[Room]:
        return [r for r in self.rooms.values() if r.survey_id == survey_id]

    def items_for(self, survey_id: str) -> List[Item]:
        return [i for i in self.items.values() if i.survey_id == survey_id]


class MemoryPhotoStore:
    def __init__(self, photos: Optional[Dict[str, PhotoBlob]] = None):
        self.photos: Dict[str, PhotoBlob] = dict(photos or {})

    async def resolve_photo(self, photo_id: str) -> Optional[PhotoBlob]:
        return self.photos.get(photo_id)

    async def upsert_photo(self, photo: PhotoBlob) -> str:
        self.photos[photo.photo_id] = photo
        return photo.photo_id
