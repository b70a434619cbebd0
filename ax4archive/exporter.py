from __future__ import annotations

import asyncio
import enum
import logging
import os
import re
import tempfile
from concurrent.futures import Executor
from pathlib import Path
from typing import List, Optional, Union

from .constants import ARCHIVE_EXTENSION, DEFAULT_MAX_CONCURRENCY, MIN_PASSPHRASE_LENGTH
from .encryption import require_passphrase
from .envelope import seal_envelope
from .errors import WeakPassphrase
from .models import Item, Room, Survey, build_document
from .packer import ArchivePacker
from .stores import PhotoStore

logger = logging.getLogger(__name__)

_FILENAME_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


class ExportState(enum.Enum):
    IDLE = "idle"
    PACKING = "packing"
    SEALING = "sealing"
    WRITTEN = "written"
    FAILED = "failed"


def default_archive_filename(survey: Survey) -> str:
    """``<jobId>_<siteName>_encrypted.ax4zip`` with unsafe site characters replaced."""
    return f"{survey.job_id}_{_FILENAME_UNSAFE.sub('_', survey.site_name)}_encrypted{ARCHIVE_EXTENSION}"


def is_archive_filename(name: Union[str, os.PathLike]) -> bool:
    return os.fspath(name).lower().endswith(ARCHIVE_EXTENSION)


def check_passphrase_policy(passphrase: Optional[str], min_length: int = MIN_PASSPHRASE_LENGTH) -> str:
    """Reject absent passphrases first, then ones shorter than ``min_length``."""
    require_passphrase(passphrase)
    if len(passphrase) < min_length:
        raise WeakPassphrase(f"Passphrase must be at least {min_length} characters")
    return passphrase


class ArchiveExporter:
    """Turns a survey record graph plus its photos into encrypted archive bytes.

    Export runs Idle -> Packing -> Sealing -> Written; any exception leaves the
    exporter in Failed and nothing is returned or written.
    """

    def __init__(
        self,
        photo_store: PhotoStore,
        *,
        min_passphrase_length: int = MIN_PASSPHRASE_LENGTH,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        executor: Optional[Executor] = None,
    ):
        self.photo_store = photo_store
        self.min_passphrase_length = min_passphrase_length
        self.max_concurrency = max_concurrency
        self.executor = executor
        self.state = ExportState.IDLE
        self.missing_photo_ids: List[str] = []

    def _enter(self, state: ExportState) -> None:
        logger.debug("export: %s -> %s", self.state.value, state.value)
        self.state = state

    async def _seal(self, survey: Survey, rooms: List[Room], items: List[Item], passphrase: str) -> bytes:
        """Run Packing and Sealing; the caller decides when the result counts as written."""
        self.state = ExportState.IDLE
        self.missing_photo_ids = []
        try:
            check_passphrase_policy(passphrase, self.min_passphrase_length)
            document = build_document(survey, rooms, items)

            self._enter(ExportState.PACKING)
            packer = ArchivePacker(max_concurrency=self.max_concurrency)
            packed = await packer.pack_document(document, self.photo_store.resolve_photo)
            self.missing_photo_ids = list(packer.missing_photo_ids)

            self._enter(ExportState.SEALING)
            loop = asyncio.get_running_loop()
            envelope = await loop.run_in_executor(
                self.executor, seal_envelope, packed, passphrase, survey.survey_id
            )
            data = envelope.to_bytes()
        except BaseException:
            self._enter(ExportState.FAILED)
            raise
        logger.info(
            "Exported survey %s: %d room(s), %d item(s), %d photo(s), %d bytes",
            survey.survey_id,
            len(rooms),
            len(items),
            len(packer.packed_photo_ids),
            len(data),
        )
        return data

    async def export_archive(self, survey: Survey, rooms: List[Room], items: List[Item], passphrase: str) -> bytes:
        data = await self._seal(survey, rooms, items, passphrase)
        self._enter(ExportState.WRITTEN)
        return data

    async def write_archive(
        self,
        path: Union[str, os.PathLike],
        survey: Survey,
        rooms: List[Room],
        items: List[Item],
        passphrase: str,
    ) -> Path:
        """Export and write the archive; ``path`` may be a directory.

        The file appears only once the ciphertext is complete, and the
        exporter reaches Written only after it is in place.
        """
        target = Path(path)
        if target.is_dir():
            target = target / default_archive_filename(survey)
        data = await self._seal(survey, rooms, items, passphrase)
        try:
            _atomic_write(target, data)
        except BaseException:
            self._enter(ExportState.FAILED)
            raise
        self._enter(ExportState.WRITTEN)
        return target


def _atomic_write(target: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".partial", dir=str(target.parent))
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


async def export_archive(
    survey: Survey,
    rooms: List[Room],
    items: List[Item],
    passphrase: str,
    photo_store: PhotoStore,
    **kwargs,
) -> bytes:
    return await ArchiveExporter(photo_store, **kwargs).export_archive(survey, rooms, items, passphrase)


async def write_archive(
    path: Union[str, os.PathLike],
    survey: Survey,
    rooms: List[Room],
    items: List[Item],
    passphrase: str,
    photo_store: PhotoStore,
    **kwargs,
) -> Path:
    return await ArchiveExporter(photo_store, **kwargs).write_archive(path, survey, rooms, items, passphrase)
