from __future__ import annotations

import asyncio
import enum
import logging
import os
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from .encryption import require_passphrase
from .envelope import decrypt_envelope, parse_for_open
from .errors import SchemaValidationFailure
from .models import SurveyData, load_document
from .packer import ArchiveBundle, unpack
from .stores import PhotoStore, RecordStore

logger = logging.getLogger(__name__)


class RestoreState(enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    UNPACKING = "unpacking"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RestoreReport:
    survey_id: str
    rooms: int = 0
    items: int = 0
    photos: int = 0
    missing_photo_ids: List[str] = field(default_factory=list)


class RestoreCoordinator:
    """Decrypts an archive, validates its record graph and upserts it into the stores.

    Nothing is persisted unless opening, unpacking and validation all succeed.
    When the record store offers ``transaction()`` persistence is all-or-nothing
    for records; otherwise a mid-way failure leaves the records written so far.
    Restoring the same archive again converges to the same state.
    """

    def __init__(
        self,
        record_store: RecordStore,
        photo_store: PhotoStore,
        *,
        executor: Optional[Executor] = None,
    ):
        self.record_store = record_store
        self.photo_store = photo_store
        self.executor = executor
        self.state = RestoreState.IDLE
        self.report: Optional[RestoreReport] = None

    def _enter(self, state: RestoreState) -> None:
        logger.debug("restore: %s -> %s", self.state.value, state.value)
        self.state = state

    async def restore(self, envelope_bytes: bytes, passphrase: str) -> str:
        """Restore an archive and return the restored survey id."""
        self.state = RestoreState.IDLE
        self.report = None
        try:
            require_passphrase(passphrase)

            self._enter(RestoreState.OPENING)
            envelope = parse_for_open(envelope_bytes)
            loop = asyncio.get_running_loop()
            packed = await loop.run_in_executor(self.executor, decrypt_envelope, envelope, passphrase)

            self._enter(RestoreState.UNPACKING)
            bundle = unpack(packed)

            self._enter(RestoreState.VALIDATING)
            document = load_document(bundle.document)
            if document.survey.survey_id != envelope.source_survey_id:
                raise SchemaValidationFailure(
                    f"Archive was sealed for survey {envelope.source_survey_id!r} "
                    f"but holds survey {document.survey.survey_id!r}"
                )

            self._enter(RestoreState.PERSISTING)
            report = await self._persist(document, bundle)
        except BaseException:
            self._enter(RestoreState.FAILED)
            raise
        self._enter(RestoreState.DONE)
        self.report = report
        logger.info(
            "Restored survey %s: %d room(s), %d item(s), %d photo(s)",
            report.survey_id,
            report.rooms,
            report.items,
            report.photos,
        )
        return report.survey_id

    async def _persist(self, document: SurveyData, bundle: ArchiveBundle) -> RestoreReport:
        transaction = getattr(self.record_store, "transaction", None)
        if transaction is None:
            return await self._persist_records(document, bundle)
        async with transaction():
            return await self._persist_records(document, bundle)

    async def _persist_records(self, document: SurveyData, bundle: ArchiveBundle) -> RestoreReport:
        report = RestoreReport(survey_id=document.survey.survey_id)
        written = 0
        try:
            await self.record_store.upsert_survey(document.survey)
            written += 1
            for room in document.rooms:
                await self.record_store.upsert_room(room)
                report.rooms += 1
                written += 1

            # Photos go in before items so stores that check references can succeed
            restored_ids = set()
            for photo in bundle.photo_blobs():
                restored_ids.add(await self.photo_store.upsert_photo(photo))
                report.photos += 1

            for item in document.items:
                unresolved = [pid for pid in item.photo_ids if pid not in restored_ids]
                if unresolved:
                    logger.warning(
                        "Item %s references photo(s) not in archive: %s", item.item_id, ", ".join(unresolved)
                    )
                    for pid in unresolved:
                        if pid not in report.missing_photo_ids:
                            report.missing_photo_ids.append(pid)
                await self.record_store.upsert_item(item)
                report.items += 1
                written += 1
        except Exception:
            if not hasattr(self.record_store, "transaction"):
                logger.warning(
                    "Restore of survey %s failed after %d record(s) were written; partial state left in store",
                    document.survey.survey_id,
                    written,
                )
            raise
        report.missing_photo_ids.sort()
        return report


async def import_archive(
    envelope_bytes: bytes,
    passphrase: str,
    record_store: RecordStore,
    photo_store: PhotoStore,
    **kwargs,
) -> str:
    return await RestoreCoordinator(record_store, photo_store, **kwargs).restore(envelope_bytes, passphrase)


async def read_archive(
    path: Union[str, os.PathLike],
    passphrase: str,
    record_store: RecordStore,
    photo_store: PhotoStore,
    **kwargs,
) -> str:
    """Read an archive file from disk and restore it."""
    data = Path(path).read_bytes()
    return await import_archive(data, passphrase, record_store, photo_store, **kwargs)
