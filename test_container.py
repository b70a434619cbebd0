from __future__ import annotations

import asyncio
import io
import os
import struct
import unittest
import zlib
from typing import Dict, List, Optional

from ax4archive import tlv
from ax4archive.constants import (
    CODEC_DEFLATE,
    CODEC_NONE,
    CONTAINER_MAGIC,
    CONTAINER_VERSION,
    DOCUMENT_ENTRY,
    RTYPE_END,
    RTYPE_ENTRY,
)
from ax4archive.container import ContainerEntry, ContainerReader, ContainerWriter, write_record
from ax4archive.errors import CorruptContainer, PhotoMissing
from ax4archive.hashutil import blake2s_16, container_digest
from ax4archive.models import Item, PhotoBlob, Room, Survey, build_document, dump_document, load_document
from ax4archive.packer import ArchivePacker, unpack


def _survey(survey_id: str = "s1") -> Survey:
    return Survey(
        survey_id=survey_id,
        job_id="AX4-1",
        site_name="12 Main St",
        client_name="Acme Pty Ltd",
        survey_type="Pre-Sale",
        document_type="AMPR",
        surveyor="J. Doe",
        date="2024-05-01",
        created_at="2024-05-01T09:00:00.000Z",
        updated_at="2024-05-01T09:00:00.000Z",
    )


def _item(item_id: str, photo_ids: List[str], survey_id: str = "s1") -> Item:
    return Item(
        item_id=item_id,
        survey_id=survey_id,
        reference_number=item_id.upper(),
        building_area="Main Residence",
        external_internal="Internal",
        location1="Ground Floor",
        location2="Kitchen",
        item_use="Splash-back",
        material_type="Fibre cement sheet",
        asbestos_types=["Chrysotile"],
        sample_status="Sample",
        painted=True,
        friable=False,
        condition="Good",
        accessibility="Accessible",
        warning_labels_visible=None,
        risk_level="Low",
        recommendation="Manage in situ",
        photo_ids=photo_ids,
        created_at="2024-05-01T09:30:00.000Z",
    )


def _resolver(photos: Dict[str, PhotoBlob], calls: Optional[List[str]] = None):
    async def resolve(photo_id: str) -> Optional[PhotoBlob]:
        if calls is not None:
            calls.append(photo_id)
        return photos.get(photo_id)

    return resolve


class ContainerTests(unittest.TestCase):
    def _build(self) -> bytes:
        writer = ContainerWriter()
        writer.add(ContainerEntry(name=DOCUMENT_ENTRY, data=b'{"a":1}' * 50), codec_id=CODEC_DEFLATE)
        writer.add(
            ContainerEntry(
                name="photos/p1.jpg",
                data=b"\xff\xd8PHOTO-ONE\xff\xd9",
                filename="IMG_0001.JPG",
                photo_id="p1",
                captured_at="2024-05-01T10:00:00.000Z",
            )
        )
        return writer.finish()

    def test_roundtrip_entries_and_metadata(self):
        reader = ContainerReader(self._build())
        self.assertEqual([DOCUMENT_ENTRY, "photos/p1.jpg"], reader.names())
        self.assertEqual(b'{"a":1}' * 50, reader.get(DOCUMENT_ENTRY).data)
        photo = reader.get("photos/p1.jpg")
        self.assertEqual(b"\xff\xd8PHOTO-ONE\xff\xd9", photo.data)
        self.assertEqual("IMG_0001.JPG", photo.filename)
        self.assertEqual("p1", photo.photo_id)
        self.assertEqual("2024-05-01T10:00:00.000Z", photo.captured_at)

    def test_writer_rejects_duplicate_and_unsafe_names(self):
        writer = ContainerWriter()
        writer.add(ContainerEntry(name="photos/a.jpg", data=b"a"))
        with self.assertRaises(ValueError):
            writer.add(ContainerEntry(name="/photos//a.jpg", data=b"b"))
        with self.assertRaises(ValueError):
            writer.add(ContainerEntry(name="../escape.jpg", data=b"c"))

    def test_payload_corruption_detected(self):
        data = self._build()
        pos = data.find(b"PHOTO-ONE")
        self.assertGreater(pos, 0)
        buf = bytearray(data)
        buf[pos] ^= 0x01
        with self.assertRaises(CorruptContainer):
            ContainerReader(bytes(buf))

    def test_header_corruption_detected(self):
        data = self._build()
        pos = data.find(b"IMG_0001")
        buf = bytearray(data)
        buf[pos] ^= 0x20
        with self.assertRaises(CorruptContainer):
            ContainerReader(bytes(buf))

    def test_missing_end_record_detected(self):
        writer = ContainerWriter()
        writer.add(ContainerEntry(name=DOCUMENT_ENTRY, data=b"{}"))
        with self.assertRaises(CorruptContainer):
            ContainerReader(writer.f.getvalue())

    def test_truncation_and_trailing_data_detected(self):
        data = self._build()
        for bad in (data[:-1], data[: len(data) // 2], data + b"\x00"):
            with self.assertRaises(CorruptContainer):
                ContainerReader(bad)

    def test_oversized_declared_size_rejected(self):
        raw = b'{"survey":{}}'
        tag = blake2s_16(raw)
        f = io.BytesIO()
        f.write(struct.pack("<8sH", CONTAINER_MAGIC, CONTAINER_VERSION))
        header = tlv.dumps_entry_header({"name": DOCUMENT_ENTRY, "size": 2**64, "tag16": tag})
        write_record(f, RTYPE_ENTRY, CODEC_DEFLATE, header, zlib.compress(raw))
        write_record(f, RTYPE_END, CODEC_NONE, tlv.dumps_container_end(1, container_digest([tag])), b"")
        with self.assertRaises(CorruptContainer):
            unpack(f.getvalue())

    def test_not_a_container(self):
        for bad in (b"", b"PK\x03\x04" + os.urandom(64), os.urandom(4)):
            with self.assertRaises(CorruptContainer):
                ContainerReader(bad)


class PackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.photos = {
            "p1": PhotoBlob(photo_id="p1", content=os.urandom(1000), filename="IMG_0001.JPG"),
            "p2": PhotoBlob(photo_id="p2", content=os.urandom(2000), filename="kitchen.png"),
        }

    async def test_pack_collects_unique_photos(self):
        items = [_item("i1", ["p1"]), _item("i2", ["p2", "p1"]), _item("i3", ["p1"])]
        calls: List[str] = []
        packer = ArchivePacker()
        packed = await packer.pack(_survey(), [], items, _resolver(self.photos, calls))
        self.assertEqual(["p1", "p2"], sorted(calls))
        self.assertEqual(["p1", "p2"], packer.packed_photo_ids)

        bundle = unpack(packed)
        self.assertEqual(["photos/p1.jpg", "photos/p2.png"], list(bundle.photos))
        self.assertEqual(list(bundle.photo_entries), list(bundle.photos))
        self.assertEqual(self.photos["p2"].content, bundle.photos["photos/p2.png"])
        blobs = {b.photo_id: b for b in bundle.photo_blobs()}
        self.assertEqual("IMG_0001.JPG", blobs["p1"].filename)
        self.assertEqual(self.photos["p1"].content, blobs["p1"].content)
        self.assertEqual(["i1", "i2", "i3"], [i.item_id for i in load_document(bundle.document).items])

    async def test_missing_photo_is_skipped_with_warning(self):
        packer = ArchivePacker()
        with self.assertLogs("ax4archive.packer", level="WARNING") as logs:
            packed = await packer.pack(_survey(), [], [_item("i1", ["p1", "ghost"])], _resolver(self.photos))
        self.assertIn("ghost", "\n".join(logs.output))
        self.assertEqual(["ghost"], packer.missing_photo_ids)
        self.assertEqual(["photos/p1.jpg"], list(unpack(packed).photos))

    async def test_resolver_raising_photo_missing_is_tolerated(self):
        async def resolve(photo_id: str) -> Optional[PhotoBlob]:
            raise PhotoMissing(photo_id)

        packer = ArchivePacker()
        with self.assertLogs("ax4archive.packer", level="WARNING"):
            packed = await packer.pack(_survey(), [], [_item("i1", ["p1"])], resolve)
        self.assertEqual({}, unpack(packed).photos)

    async def test_other_resolver_errors_abort(self):
        async def resolve(photo_id: str) -> Optional[PhotoBlob]:
            raise OSError("photo database unavailable")

        with self.assertRaises(OSError):
            await ArchivePacker().pack(_survey(), [], [_item("i1", ["p1"])], resolve)

    async def test_failed_lookup_cancels_pending_lookups(self):
        finished: List[str] = []

        async def resolve(photo_id: str) -> Optional[PhotoBlob]:
            if photo_id == "p0":
                raise OSError("photo database unavailable")
            await asyncio.sleep(0.05)
            finished.append(photo_id)
            return self.photos.get(photo_id)

        with self.assertRaises(OSError):
            await ArchivePacker().pack(_survey(), [], [_item("i1", ["p0", "p1", "p2"])], resolve)
        await asyncio.sleep(0.2)
        self.assertEqual([], finished)

    async def test_photo_ids_are_encoded_in_entry_names(self):
        photos = {
            "a/b": PhotoBlob(photo_id="a/b", content=b"one", filename="x.PNG"),
            "a_b": PhotoBlob(photo_id="a_b", content=b"two", filename="y.png"),
        }
        packed = await ArchivePacker().pack(_survey(), [], [_item("i1", ["a/b", "a_b"])], _resolver(photos))
        bundle = unpack(packed)
        self.assertEqual(["photos/a_b.png", "photos/a_b-1.png"], list(bundle.photos))
        self.assertEqual({"a/b": b"one", "a_b": b"two"}, {b.photo_id: b.content for b in bundle.photo_blobs()})

    async def test_document_serialisation_is_canonical(self):
        rooms = [Room(room_id="r1", survey_id="s1", room_name="Kitchen", created_at="2024-05-01")]
        items = [_item("i1", ["p1"])]
        first = unpack(await ArchivePacker().pack(_survey(), rooms, items, _resolver(self.photos)))
        second = unpack(await ArchivePacker().pack(_survey(), rooms, items, _resolver(self.photos)))
        self.assertEqual(first.document, second.document)
        self.assertEqual(build_document(_survey(), rooms, items), load_document(first.document))
        self.assertIn(b'"surveyId":"s1"', first.document)

    def test_document_omits_unset_optional_fields(self):
        raw = dump_document(build_document(_survey(), [], [_item("i1", [])]))
        self.assertNotIn(b'"sampleReference"', raw)
        self.assertNotIn(b'"unit"', raw)
        self.assertNotIn(b'"siteContactName"', raw)
        self.assertIn(b'"warningLabelsVisible":null', raw)
        self.assertIn(b'"painted":true', raw)
        self.assertIn(b'"friable":false', raw)
        self.assertEqual(build_document(_survey(), [], [_item("i1", [])]), load_document(raw))

    async def test_resolution_respects_concurrency_limit(self):
        in_flight = 0
        peak = 0

        async def resolve(photo_id: str) -> Optional[PhotoBlob]:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return PhotoBlob(photo_id=photo_id, content=photo_id.encode(), filename=f"{photo_id}.jpg")

        ids = [f"p{n}" for n in range(10)]
        packer = ArchivePacker(max_concurrency=3)
        packed = await packer.pack(_survey(), [], [_item("i1", ids)], resolve)
        self.assertLessEqual(peak, 3)
        self.assertGreater(peak, 1)
        self.assertEqual([f"photos/{pid}.jpg" for pid in ids], list(unpack(packed).photos))

    def test_unpack_requires_record_document(self):
        writer = ContainerWriter()
        writer.add(ContainerEntry(name="photos/p1.jpg", data=b"jpeg"))
        with self.assertRaises(CorruptContainer):
            unpack(writer.finish())


if __name__ == "__main__":
    unittest.main()
