from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .constants import DEFAULT_MAX_CONCURRENCY, DOCUMENT_CODEC_ID, DOCUMENT_ENTRY, PHOTO_CODEC_ID
from .container import ContainerEntry, ContainerReader, ContainerWriter
from .errors import CorruptContainer, PhotoMissing
from .models import Item, PhotoBlob, Room, Survey, SurveyData, build_document, dump_document
from .pathutil import is_photo_entry, photo_entry_name, photo_id_from_entry

logger = logging.getLogger(__name__)

PhotoResolver = Callable[[str], Awaitable[Optional[PhotoBlob]]]


@dataclass
class ArchiveBundle:
    """Decrypted, unpacked archive contents. Lives only for one import call."""

    document: bytes
    photo_entries: Dict[str, ContainerEntry] = field(default_factory=dict)

    @property
    def photos(self) -> Dict[str, bytes]:
        return {name: entry.data for name, entry in self.photo_entries.items()}

    def photo_blobs(self) -> List[PhotoBlob]:
        blobs = []
        for name, entry in self.photo_entries.items():
            blobs.append(
                PhotoBlob(
                    photo_id=entry.photo_id or photo_id_from_entry(name),
                    content=entry.data,
                    filename=entry.filename or posixpath.basename(name),
                    captured_at=entry.captured_at,
                )
            )
        return blobs


class ArchivePacker:
    """Bundles a record document and its referenced photos into one container."""

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self.missing_photo_ids: List[str] = []
        self.packed_photo_ids: List[str] = []

    async def _resolve_all(self, photo_ids: List[str], resolve_photo: PhotoResolver) -> List[Tuple[str, Optional[PhotoBlob]]]:
        sem = asyncio.Semaphore(self.max_concurrency)

        async def _fetch(photo_id: str) -> Tuple[str, Optional[PhotoBlob]]:
            async with sem:
                try:
                    return photo_id, await resolve_photo(photo_id)
                except PhotoMissing:
                    return photo_id, None

        # gather preserves argument order, so container order stays deterministic
        tasks = [asyncio.ensure_future(_fetch(pid)) for pid in photo_ids]
        try:
            return list(await asyncio.gather(*tasks))
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def pack_document(self, document: SurveyData, resolve_photo: PhotoResolver) -> bytes:
        self.missing_photo_ids = []
        self.packed_photo_ids = []
        writer = ContainerWriter()
        writer.add(ContainerEntry(name=DOCUMENT_ENTRY, data=dump_document(document)), codec_id=DOCUMENT_CODEC_ID)

        used_names = {DOCUMENT_ENTRY}
        for photo_id, photo in await self._resolve_all(document.referenced_photo_ids(), resolve_photo):
            if photo is None:
                logger.warning(
                    "Photo %s referenced by survey %s could not be resolved; skipping",
                    photo_id,
                    document.survey.survey_id,
                )
                self.missing_photo_ids.append(photo_id)
                continue
            name = photo_entry_name(photo_id, photo.filename)
            suffix = 1
            while name in used_names:
                name = photo_entry_name(f"{photo_id}-{suffix}", photo.filename)
                suffix += 1
            used_names.add(name)
            writer.add(
                ContainerEntry(
                    name=name,
                    data=photo.content,
                    filename=photo.filename or None,
                    photo_id=photo_id,
                    captured_at=photo.captured_at,
                ),
                codec_id=PHOTO_CODEC_ID,
            )
            self.packed_photo_ids.append(photo_id)
        return writer.finish()

    async def pack(self, survey: Survey, rooms: List[Room], items: List[Item], resolve_photo: PhotoResolver) -> bytes:
        return await self.pack_document(build_document(survey, rooms, items), resolve_photo)


def unpack(data: bytes) -> ArchiveBundle:
    """Split container bytes into the record document and photo entries."""
    reader = ContainerReader(data)
    doc = reader.get(DOCUMENT_ENTRY)
    if doc is None:
        raise CorruptContainer(f"Container has no {DOCUMENT_ENTRY} entry")
    bundle = ArchiveBundle(document=doc.data)
    for name, entry in reader.entries.items():
        if name == DOCUMENT_ENTRY:
            continue
        if not is_photo_entry(name):
            logger.debug("Ignoring unexpected container entry %s", name)
            continue
        bundle.photo_entries[name] = entry
    return bundle
