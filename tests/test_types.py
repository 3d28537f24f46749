"""Tests for the core data types."""

from __future__ import annotations

import unittest

from stronghold_sync import types


def _document(**overrides) -> types.SyncableDocument:
    fields = dict(id="w1", owner_id="owner-1", kind="will", title="Will", content="A")
    fields.update(overrides)
    return types.SyncableDocument(**fields)


class TestSyncableDocument(unittest.TestCase):
    def test_kind_is_coerced_to_enum(self):
        self.assertIs(_document().kind, types.DocumentKind.WILL)

    def test_invalid_kind_rejected(self):
        with self.assertRaises(ValueError):
            _document(kind="memo")

    def test_negative_version_rejected(self):
        with self.assertRaises(ValueError):
            _document(version=-1)

    def test_never_synced_document_is_pending_and_changed(self):
        document = _document()
        self.assertTrue(document.is_pending)
        self.assertTrue(document.has_local_changes())

    def test_synced_document_without_edits_has_no_changes(self):
        document = _document(last_modified=10.0, last_synced_at=10.0, last_synced_content="A")
        self.assertFalse(document.is_pending)
        self.assertFalse(document.has_local_changes())

    def test_content_edit_counts_as_change(self):
        document = _document(content="A2", last_modified=10.0, last_synced_at=10.0, last_synced_content="A")
        self.assertTrue(document.has_local_changes())

    def test_title_edit_after_sync_counts_as_change(self):
        document = _document(title="New", last_modified=11.0, last_synced_at=10.0, last_synced_content="A")
        self.assertTrue(document.has_local_changes())

    def test_local_dict_round_trip_keeps_bookkeeping(self):
        document = _document(
            metadata={"jurisdiction": "SK"},
            version=3,
            last_modified=5.0,
            last_synced_at=4.0,
            last_synced_content="old",
            origin_device_id="device-1",
            deleted_at=6.0,
        )
        self.assertEqual(types.SyncableDocument.from_dict(document.to_dict()), document)

    def test_remote_record_drops_sync_bookkeeping(self):
        document = _document(version=2, last_modified=7.0, last_synced_at=7.0, last_synced_content="A")
        record = document.to_remote_record()
        self.assertEqual(record["updated_at"], 7.0)
        self.assertNotIn("last_synced_at", record)
        restored = types.SyncableDocument.from_remote_record(record)
        self.assertIsNone(restored.last_synced_at)
        self.assertEqual(restored.last_modified, 7.0)
        self.assertEqual(restored.version, 2)

    def test_metadata_is_not_shared_with_remote_record(self):
        document = _document(metadata={"tags": ["a"]})
        record = document.to_remote_record()
        record["metadata"]["tags"].append("b")
        self.assertEqual(document.metadata, {"tags": ["a"]})


class TestDeviceRecord(unittest.TestCase):
    def test_round_trip(self):
        record = types.DeviceRecord(
            device_id="device-1",
            owner_id="owner-1",
            display_name="Laptop",
            device_class="tablet",
            platform="Linux",
            last_seen=3.0,
            registered_at=1.0,
        )
        self.assertIs(record.device_class, types.DeviceClass.TABLET)
        self.assertEqual(types.DeviceRecord.from_dict(record.to_dict()), record)


class TestSyncConflict(unittest.TestCase):
    def test_round_trip(self):
        conflict = types.SyncConflict(
            document_id="w1",
            local=_document(content="A2"),
            remote=_document(content="B", version=4),
            conflict_kind=types.ConflictKind.CONTENT,
            detected_at=12.0,
        )
        self.assertEqual(types.SyncConflict.from_dict(conflict.to_dict()), conflict)


if __name__ == "__main__":
    unittest.main()
