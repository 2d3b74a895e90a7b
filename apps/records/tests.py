from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from apps.records.models import InboundRecord, InboundRecordMeta, InboundStatus
from apps.records.store import ExternalRecord, InboundRecordStore


def make_record(meta, status=InboundStatus.PUBLISHED, age_days=0, **fields):
    record = InboundRecord.objects.create(
        channel="gift-certificate",
        status=status,
        created_at=timezone.now() - timedelta(days=age_days),
        **fields,
    )
    InboundRecordMeta.objects.bulk_create([InboundRecordMeta(record=record, key=key, value=value) for key, value in meta])
    return record


class InboundRecordStoreTests(TestCase):
    def setUp(self):
        self.store = InboundRecordStore()

    def test_get_snapshots_meta_in_insert_order(self):
        record = make_record([("serial_number", "12"), ("note", "first"), ("note", "second")], title="Gift")
        snapshot = self.store.get(record.id)
        self.assertIsInstance(snapshot, ExternalRecord)
        self.assertEqual(snapshot.title, "Gift")
        self.assertEqual(snapshot.meta["note"], ["first", "second"])
        self.assertEqual(snapshot.get_meta("note"), "first")
        self.assertIsNone(snapshot.get_meta("missing"))

    def test_find_by_field_values_prefers_newest_published(self):
        make_record([("serial_number", "00012")], age_days=5, title="old")
        newest = make_record([("_field_serial_number", "PBB-00012")], age_days=1, title="new")
        make_record([("serial_number", "12")], status=InboundStatus.TRASHED, title="trashed")

        found = self.store.find_by_field_values(["serial_number", "_field_serial_number"], ["12", "00012", "PBB-00012"])
        self.assertEqual(found.id, newest.id)

    def test_find_by_field_values_requires_key_and_value_on_same_row(self):
        make_record([("serial_number", "99"), ("other", "12")])
        self.assertIsNone(self.store.find_by_field_values(["serial_number"], ["12"]))

    def test_search_values_scans_serialized_bags(self):
        record = make_record([("_fields", '{"serial_number": "00012", "gift_amount": "$75"}')])
        make_record([("_fields", '{"serial_number": "00077"}')])
        found = self.store.search_values(["12", "00012"], marker="serial_number")
        self.assertEqual(found.id, record.id)
        self.assertIsNone(self.store.search_values([], marker="serial_number"))

    def test_iter_records_skips_unpublished_unless_asked(self):
        make_record([("serial_number", "1")])
        make_record([("serial_number", "2")], status=InboundStatus.SPAM)
        self.assertEqual(len(list(self.store.iter_records())), 1)
        self.assertEqual(len(list(self.store.iter_records(include_unpublished=True))), 2)
