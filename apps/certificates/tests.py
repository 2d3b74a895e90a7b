import threading
from datetime import timedelta
from decimal import Decimal
from importlib import import_module
from io import StringIO
from unittest import mock

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import DataError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.audit.services import record_audit
from apps.certificates.codec import CertificateCodec
from apps.certificates.config import CertificateConfig
from apps.certificates.exceptions import (
    BalancePersistenceError,
    CertificateNotFound,
    InvalidCertificateInput,
    InvalidManualTransaction,
    NoRemainingBalance,
)
from apps.certificates.ledger import list_external_serials, list_ledger, reconcile, transactions_for
from apps.certificates.models import CertificateBalance, ManualTransaction
from apps.certificates.redemption import SESSION_APPLIED_CODE, SESSION_APPLY_AMOUNT, RedemptionSession
from apps.certificates.resolver import ExternalRecordResolver, extract_amount, extract_field, extract_serial
from apps.certificates.services import (
    add_manual_transaction,
    create_balance,
    deduct,
    get_balance,
    list_manual_transactions,
    resolve_or_create,
    set_remaining,
)
from apps.certificates.settlement import (
    META_REDEEM_AMOUNT,
    META_REDEEM_CODE,
    META_REDEEM_DEDUCTED,
    META_SESSION_KEY,
    SettlementOutcome,
    remaining_balance_for_order,
    settle_order,
)
from apps.checkout.cart import Cart, CartLine
from apps.checkout.models import Order, OrderFee, OrderItem, OrderStatus
from apps.checkout.services import change_order_status, create_order_from_cart
from apps.records.models import InboundRecord, InboundRecordMeta, InboundStatus
from apps.records.store import ExternalRecord

User = get_user_model()

TEST_CONFIG = CertificateConfig(
    prefix="PBB-",
    pad=5,
    product_ids=frozenset({4666}),
    variation_ids=frozenset({4668, 4669}),
)


def archive_record(meta, status=InboundStatus.PUBLISHED, **fields):
    record = InboundRecord.objects.create(channel="gift-certificate", status=status, **fields)
    InboundRecordMeta.objects.bulk_create([InboundRecordMeta(record=record, key=key, value=value) for key, value in meta])
    return record


def make_balance(code="PBB-00012", serial=12, original="100.00", remaining=None):
    return CertificateBalance.objects.create(
        cert_code=code,
        serial_raw=serial,
        original_amount=Decimal(original),
        remaining_amount=Decimal(remaining if remaining is not None else original),
    )


def make_order(items=(), meta=None, fees=()):
    order = Order.objects.create(meta=meta or {})
    for position, (name, total) in enumerate(items):
        OrderItem.objects.create(
            order=order,
            position=position,
            product_id=100 + position,
            name=name,
            qty=1,
            subtotal=Decimal(total),
            total=Decimal(total),
        )
    for label, amount in fees:
        OrderFee.objects.create(order=order, label=label, amount=Decimal(amount))
    return order


def snapshot(meta=None, **fields):
    return ExternalRecord(id="rec-1", meta={key: list(values) for key, values in (meta or {}).items()}, **fields)


class CertificateCodecTests(SimpleTestCase):
    def setUp(self):
        self.codec = CertificateCodec(TEST_CONFIG)

    def test_serial_round_trips_through_canonical_code(self):
        for serial in list(range(1, 1500)) + [99999, 100000, 1234567]:
            self.assertEqual(self.codec.to_serial(self.codec.to_code(serial)), serial)

    def test_entered_variants_share_one_canonical_code(self):
        for entered in ("pbb00012", "PBB-00012", " pbb-0012 ", "12", "000012", "PBB 12"):
            self.assertEqual(self.codec.canonicalize(entered), "PBB-00012")
        self.assertEqual(self.codec.canonicalize("55"), "PBB-00055")

    def test_normalize_uppercases_and_strips_whitespace(self):
        self.assertEqual(self.codec.normalize("  pbb 000\t12 "), "PBB00012")

    def test_codes_without_digits_have_no_serial(self):
        self.assertEqual(self.codec.to_serial("PBB-"), 0)
        self.assertEqual(self.codec.to_serial("hello"), 0)
        self.assertEqual(self.codec.canonicalize("hello"), "")

    def test_candidates_cover_every_stored_form(self):
        self.assertEqual(
            self.codec.candidates(12, "pbb00012"),
            ["12", "00012", "PBB-00012", "PBB00012"],
        )
        self.assertEqual(self.codec.candidates(12, "12"), ["12", "00012", "PBB-00012"])
        self.assertEqual(self.codec.candidates(0, "x"), [])

    def test_gift_certificate_products_match_product_or_variation(self):
        grooming = CartLine(product_id=10, name="Grooming", unit_price="50.00")
        certificate = CartLine(product_id=99, variation_id=4669, name="Gift Certificate", unit_price="25.00")
        self.assertFalse(self.codec.cart_has_gift_certificate(Cart(lines=[grooming])))
        self.assertTrue(self.codec.cart_has_gift_certificate(Cart(lines=[grooming, certificate])))
        self.assertTrue(self.codec.is_gift_certificate_product(4666))


class ResolverExtractionTests(SimpleTestCase):
    def test_direct_field_wins_over_text(self):
        record = snapshot({"gift_amount": ["$75"]}, content="Paid $20 today")
        self.assertEqual(extract_amount(record), Decimal("75.00"))

    def test_alternate_field_key(self):
        record = snapshot({"_field_gift_amount": ["1,250.00"]})
        self.assertEqual(extract_amount(record), Decimal("1250.00"))

    def test_nested_bag_with_value_wrapper(self):
        record = snapshot({"_fields": ['{"contact": {"Gift Amount": {"value": "$120.50"}}}']})
        self.assertEqual(extract_amount(record), Decimal("120.50"))

    def test_list_shaped_bag(self):
        record = snapshot({"_flamingo_fields": ['[{"name": "gift-amount", "value": "$30"}]']})
        self.assertEqual(extract_amount(record), Decimal("30.00"))

    def test_message_text(self):
        record = snapshot({"message": ["Please load $ 45.5 for Rex"]})
        self.assertEqual(extract_amount(record), Decimal("45.50"))

    def test_record_text_before_other_meta(self):
        record = snapshot({"comment": ["tip $5"]}, excerpt="Certificate for $60.25")
        self.assertEqual(extract_amount(record), Decimal("60.25"))

    def test_any_meta_text_is_last_resort(self):
        record = snapshot({"comment": ["tip $5"]})
        self.assertEqual(extract_amount(record), Decimal("5.00"))

    def test_nothing_found_is_zero(self):
        self.assertEqual(extract_amount(snapshot({"gift_amount": ["free"]}, content="no money here")), Decimal("0.00"))
        self.assertEqual(extract_amount(None), Decimal("0.00"))

    def test_extract_field_normalizes_key_variants(self):
        record = snapshot(
            {
                "recipientName": ["Rex"],
                "_fields": ['{"Purchaser Name": {"value": "Dana"}, "gift-amount": "$50"}'],
            }
        )
        self.assertEqual(extract_field(record, "recipient_name"), "Rex")
        self.assertEqual(extract_field(record, "Purchaser-Name"), "Dana")
        self.assertEqual(extract_field(record, "giftAmount"), "$50")
        self.assertEqual(extract_field(record, "missing"), "")

    def test_extract_serial_reads_legacy_meta_blob(self):
        record = snapshot({"_meta": ['{"serial_number": "PBB-00042"}'], "serial_number": ["7"]})
        self.assertEqual(extract_serial(record), 42)

    def test_extract_serial_skips_blob_without_serial(self):
        record = snapshot({"_meta": ['{"other": 1}'], "serial_number": ["00007"]})
        self.assertEqual(extract_serial(record), 7)

    def test_extract_serial_from_bag_then_any_key(self):
        self.assertEqual(extract_serial(snapshot({"fields": ['{"Serial Number": "00031"}']})), 31)
        self.assertEqual(extract_serial(snapshot({"Serial Number": ["PBB-00032"]})), 32)
        self.assertEqual(extract_serial(snapshot({"title": ["none"]})), 0)


class BalanceStoreTests(TestCase):
    def test_create_rejects_duplicate_code_without_partial_insert(self):
        create_balance(cert_code="pbb-00012", serial_raw=12, original_amount=Decimal("75"), remaining_amount=Decimal("75"))
        with self.assertRaises(BalancePersistenceError):
            create_balance(cert_code="PBB-00012", serial_raw=12, original_amount=Decimal("10"), remaining_amount=Decimal("10"))
        self.assertEqual(CertificateBalance.objects.count(), 1)
        self.assertEqual(get_balance("pbb-00012").original_amount, Decimal("75.00"))

    def test_set_remaining_clamps_to_bounds(self):
        make_balance(original="50.00", remaining="20.00")
        order = make_order()

        self.assertTrue(set_remaining("PBB-00012", Decimal("-5"), order=order))
        balance = get_balance("PBB-00012")
        self.assertEqual(balance.remaining_amount, Decimal("0.00"))
        self.assertEqual(balance.last_order_id, order.id)

        set_remaining("PBB-00012", Decimal("80"))
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("50.00"))
        self.assertFalse(set_remaining("PBB-99999", Decimal("1")))

    def test_create_rejects_amounts_the_money_column_cannot_hold(self):
        with self.assertRaises(BalancePersistenceError):
            create_balance(
                cert_code="PBB-00012",
                serial_raw=12,
                original_amount=Decimal("100000000.00"),
                remaining_amount=Decimal("100000000.00"),
            )
        self.assertFalse(CertificateBalance.objects.exists())

    def test_create_wraps_database_errors(self):
        with mock.patch.object(CertificateBalance.objects, "create", side_effect=DataError("numeric field overflow")):
            with self.assertRaises(BalancePersistenceError):
                create_balance(cert_code="PBB-00012", serial_raw=12, original_amount=Decimal("75"), remaining_amount=Decimal("75"))

    def test_oversized_deduction_empties_the_balance(self):
        make_balance(original="75.00")
        self.assertTrue(deduct("PBB-00012", Decimal("123456789012")))
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("0.00"))

    def test_deduct_never_goes_below_zero(self):
        balance = make_balance(original="75.00")
        before = balance.updated_at
        seen = []
        for _ in range(4):
            self.assertTrue(deduct("PBB-00012", Decimal("30.00")))
            balance.refresh_from_db()
            seen.append(balance.remaining_amount)
        self.assertEqual(seen, [Decimal("45.00"), Decimal("15.00"), Decimal("0.00"), Decimal("0.00")])
        self.assertGreater(balance.updated_at, before)
        for value in seen:
            self.assertTrue(Decimal("0") <= value <= balance.original_amount)

    def test_deduct_rejects_non_positive_amounts_and_unknown_codes(self):
        make_balance()
        self.assertFalse(deduct("PBB-00012", Decimal("0")))
        self.assertFalse(deduct("PBB-00012", Decimal("-3")))
        self.assertFalse(deduct("PBB-00404", Decimal("3")))
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("100.00"))

    def test_deductions_from_stale_reads_are_not_lost(self):
        balance = make_balance(original="100.00")
        stale = CertificateBalance.objects.get(pk=balance.pk)
        for _ in range(3):
            deduct(stale.cert_code, Decimal("40.00"))
        balance.refresh_from_db()
        # Two deductions fit, the third exhausts the balance: total never exceeds 100.
        self.assertEqual(balance.remaining_amount, Decimal("0.00"))
        self.assertEqual(stale.remaining_amount, Decimal("100.00"))

        other = make_balance(code="PBB-00013", serial=13, original="100.00")
        deduct(other.cert_code, Decimal("30.00"))
        deduct(other.cert_code, Decimal("30.00"))
        other.refresh_from_db()
        self.assertEqual(other.remaining_amount, Decimal("40.00"))


class ResolveOrCreateTests(TestCase):
    def test_first_use_creates_balance_from_archive(self):
        record = archive_record([("serial_number", "12"), ("gift_amount", "$75")])

        resolution = resolve_or_create("pbb00012", config=TEST_CONFIG)

        balance = resolution.balance
        self.assertEqual(balance.cert_code, "PBB-00012")
        self.assertEqual(balance.serial_raw, 12)
        self.assertEqual(balance.original_amount, Decimal("75.00"))
        self.assertEqual(balance.remaining_amount, Decimal("75.00"))
        self.assertEqual(balance.external_record_id, record.id)
        self.assertEqual(resolution.searched, [])

    def test_repeat_resolution_returns_the_same_row(self):
        record = archive_record([("serial_number", "PBB-00012"), ("gift_amount", "$75")])
        first = resolve_or_create("PBB-00012", config=TEST_CONFIG).balance
        InboundRecordMeta.objects.filter(record=record, key="gift_amount").update(value="$500")

        second = resolve_or_create("pbb 00012", config=TEST_CONFIG).balance

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.original_amount, Decimal("75.00"))
        self.assertEqual(CertificateBalance.objects.count(), 1)

    def test_bare_serial_and_prefixed_code_share_a_row(self):
        archive_record([("_field_serial_number", "00055"), ("gift_amount", "$40")])
        by_serial = resolve_or_create("55", config=TEST_CONFIG).balance
        by_code = resolve_or_create("PBB-00055", config=TEST_CONFIG).balance
        self.assertEqual(by_serial.pk, by_code.pk)
        self.assertEqual(by_code.cert_code, "PBB-00055")

    def test_substring_fallback_finds_serialized_bag(self):
        archive_record([("_fields", '{"serial_number": "00021", "gift_amount": "$35"}')])
        balance = resolve_or_create("21", config=TEST_CONFIG).balance
        self.assertEqual(balance.original_amount, Decimal("35.00"))

    def test_missing_record_reports_searched_candidates(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$75")], status=InboundStatus.TRASHED)
        resolution = resolve_or_create("pbb00012", config=TEST_CONFIG)
        self.assertIsNone(resolution.balance)
        self.assertEqual(resolution.searched, ["12", "00012", "PBB-00012", "PBB00012"])
        self.assertFalse(CertificateBalance.objects.exists())

    def test_zero_amount_record_is_not_materialized(self):
        archive_record([("serial_number", "12"), ("gift_amount", "TBD")])
        resolution = resolve_or_create("12", config=TEST_CONFIG)
        self.assertIsNone(resolution.balance)
        self.assertTrue(resolution.searched)
        self.assertFalse(CertificateBalance.objects.exists())

    def test_invalid_codes_resolve_to_nothing(self):
        self.assertEqual(resolve_or_create("", config=TEST_CONFIG), (None, []))
        self.assertEqual(resolve_or_create("PBB-", config=TEST_CONFIG), (None, []))

    def test_out_of_range_face_value_is_not_materialized(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$123456789012")])

        with self.assertLogs("apps.certificates.services", level="WARNING") as logs:
            resolution = resolve_or_create("12", config=TEST_CONFIG)

        self.assertIsNone(resolution.balance)
        self.assertTrue(resolution.searched)
        self.assertIn("Archive gift amount out of range", logs.output[0])
        self.assertFalse(CertificateBalance.objects.exists())
        self.assertEqual(list_ledger(config=TEST_CONFIG)[0].cert_code, "PBB-00012")

    def test_insert_failure_without_a_winner_resolves_to_nothing(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$75")])

        with mock.patch.object(CertificateBalance.objects, "create", side_effect=DataError("numeric field overflow")):
            with self.assertLogs("apps.certificates.services", level="ERROR"):
                resolution = resolve_or_create("12", config=TEST_CONFIG)

        self.assertIsNone(resolution.balance)
        self.assertEqual(resolution.searched, ["12", "00012", "PBB-00012"])

    def test_losing_a_creation_race_returns_the_winner(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$75")])

        class RacingResolver(ExternalRecordResolver):
            def find_record_by_serial(self, serial, entered_code=""):
                record = super().find_record_by_serial(serial, entered_code)
                make_balance(original="75.00", remaining="60.00")
                return record

        resolution = resolve_or_create("12", config=TEST_CONFIG, resolver=RacingResolver(codec=CertificateCodec(TEST_CONFIG)))

        self.assertEqual(resolution.balance.remaining_amount, Decimal("60.00"))
        self.assertEqual(CertificateBalance.objects.count(), 1)


class RedemptionSessionTests(TestCase):
    def setUp(self):
        self.session = {}
        self.redemption = RedemptionSession(self.session, config=TEST_CONFIG)

    def cart(self, total):
        return Cart(lines=[CartLine(product_id=10, name="Grooming", unit_price=total)])

    def test_apply_requires_a_code(self):
        with self.assertRaises(InvalidCertificateInput):
            self.redemption.apply("   ")

    def test_apply_unknown_code_carries_search_diagnostics(self):
        with self.assertRaises(CertificateNotFound) as ctx:
            self.redemption.apply("pbb00077")
        self.assertIn("PBB-00077", ctx.exception.searched)
        self.assertNotIn(SESSION_APPLIED_CODE, self.session)

    def test_apply_spent_certificate_fails(self):
        make_balance(remaining="0.00")
        with self.assertRaises(NoRemainingBalance):
            self.redemption.apply("PBB-00012")

    def test_apply_stores_canonical_code_and_drops_stale_amount(self):
        make_balance()
        self.session[SESSION_APPLY_AMOUNT] = "12.00"
        balance = self.redemption.apply("12")
        self.assertEqual(balance.cert_code, "PBB-00012")
        self.assertEqual(self.session[SESSION_APPLIED_CODE], "PBB-00012")
        self.assertNotIn(SESSION_APPLY_AMOUNT, self.session)

    def test_discount_is_capped_by_balance(self):
        make_balance(remaining="40.00")
        self.redemption.apply("PBB-00012")
        cart = self.cart("55.00")
        self.assertEqual(self.redemption.recompute_discount(cart), Decimal("40.00"))
        self.assertEqual([(fee.label, fee.amount) for fee in cart.fees], [("Gift Certificate (PBB-00012)", Decimal("-40.00"))])
        self.assertEqual(cart.total, Decimal("15.00"))
        self.assertEqual(self.redemption.apply_amount, Decimal("40.00"))

    def test_discount_is_capped_by_cart_total(self):
        make_balance(remaining="100.00")
        self.redemption.apply("PBB-00012")
        cart = Cart(lines=[CartLine(product_id=10, name="Bath", unit_price="45.00")], shipping_total="5.00", tax_total="5.00")
        self.assertEqual(self.redemption.recompute_discount(cart), Decimal("55.00"))
        self.assertEqual(cart.total, Decimal("0.00"))

    def test_spent_balance_silently_drops_discount(self):
        make_balance(remaining="40.00")
        self.redemption.apply("PBB-00012")
        self.redemption.recompute_discount(self.cart("20.00"))
        set_remaining("PBB-00012", Decimal("0"))

        cart = self.cart("20.00")
        self.assertEqual(self.redemption.recompute_discount(cart), Decimal("0.00"))
        self.assertEqual(cart.fees, [])
        self.assertIsNone(self.redemption.apply_amount)

    def test_empty_cart_gets_no_fee(self):
        make_balance()
        self.redemption.apply("PBB-00012")
        cart = Cart()
        self.assertEqual(self.redemption.recompute_discount(cart), Decimal("0.00"))
        self.assertEqual(cart.fees, [])

    def test_cart_recalculation_runs_discount_hook(self):
        make_balance(remaining="40.00")
        self.redemption.apply("PBB-00012")
        cart = self.cart("55.00")
        self.assertEqual(cart.calculate_totals(session=self.session), Decimal("15.00"))
        self.assertEqual(cart.fee_total, Decimal("-40.00"))

    def test_remove_clears_state(self):
        make_balance()
        self.redemption.apply("PBB-00012")
        self.redemption.recompute_discount(self.cart("10.00"))
        self.redemption.remove()
        self.assertIsNone(self.redemption.applied_code)
        self.assertIsNone(self.redemption.apply_amount)
        self.redemption.remove()


class SettlementTests(TestCase):
    def place_order(self, remaining="40.00", total="55.00", session=None):
        make_balance(original="100.00", remaining=remaining)
        session = session if session is not None else {}
        RedemptionSession(session).apply("PBB-00012")
        cart = Cart(lines=[CartLine(product_id=10, name="Grooming", unit_price=total)])
        return create_order_from_cart(cart=cart, session=session)

    def test_order_creation_records_intent(self):
        order = self.place_order()
        order.refresh_from_db()
        self.assertEqual(order.get_meta(META_REDEEM_CODE), "PBB-00012")
        self.assertEqual(order.get_meta(META_REDEEM_AMOUNT), "40.00")
        self.assertIsNone(order.get_meta(META_REDEEM_DEDUCTED))
        self.assertEqual(order.total, Decimal("15.00"))
        self.assertEqual(order.fees.get().amount, Decimal("-40.00"))

    def test_payment_deducts_once(self):
        order = self.place_order()

        change_order_status(order=order, status=OrderStatus.PROCESSING)

        balance = get_balance("PBB-00012")
        order.refresh_from_db()
        self.assertEqual(balance.remaining_amount, Decimal("0.00"))
        self.assertEqual(balance.last_order_id, order.id)
        self.assertTrue(order.get_meta(META_REDEEM_DEDUCTED))
        self.assertIn("Gift certificate: deducted $40.00 from PBB-00012", [note.note for note in order.notes.all()])
        audit = AuditLog.objects.get(action="gift_certificate.deduct")
        self.assertEqual(audit.entity_id, "12")
        self.assertEqual(audit.payload["order_id"], str(order.id))

    def test_repeated_payment_events_deduct_once(self):
        order = self.place_order(remaining="100.00", total="40.00")

        change_order_status(order=order, status=OrderStatus.PROCESSING)
        change_order_status(order=order, status=OrderStatus.COMPLETED)
        self.assertEqual(settle_order(order.pk), SettlementOutcome.DUPLICATE)

        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("60.00"))
        self.assertEqual(AuditLog.objects.filter(action="gift_certificate.deduct").count(), 1)

    def test_unpaid_statuses_do_not_settle(self):
        order = self.place_order()
        change_order_status(order=order, status=OrderStatus.ON_HOLD)
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("40.00"))

    def test_order_without_certificate_has_nothing_to_settle(self):
        order = make_order(items=[("Bath", "20.00")])
        self.assertEqual(settle_order(order.pk), SettlementOutcome.NOTHING_TO_SETTLE)
        order = make_order(meta={META_REDEEM_CODE: "PBB-00012", META_REDEEM_AMOUNT: "0"})
        self.assertEqual(settle_order(order.pk), SettlementOutcome.NOTHING_TO_SETTLE)

    def test_failed_deduction_leaves_note_and_can_be_retried(self):
        order = make_order(meta={META_REDEEM_CODE: "PBB-00012", META_REDEEM_AMOUNT: "25.00"})

        with self.assertLogs("apps.certificates.settlement", level="ERROR"):
            outcome = settle_order(order.pk)

        order.refresh_from_db()
        self.assertEqual(outcome, SettlementOutcome.FAILED)
        self.assertFalse(order.get_meta(META_REDEEM_DEDUCTED, False))
        self.assertIn("deduction FAILED for PBB-00012 amount $25.00", order.notes.get().note)

        make_balance(original="50.00")
        self.assertEqual(settle_order(order.pk), SettlementOutcome.DEDUCTED)
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("25.00"))

    def test_settlement_clears_shopper_session(self):
        engine = import_module(settings.SESSION_ENGINE)
        shopper = engine.SessionStore()
        shopper.save()
        order = self.place_order(session=shopper)
        shopper.save()
        self.assertEqual(order.get_meta(META_SESSION_KEY), shopper.session_key)

        change_order_status(order=order, status=OrderStatus.COMPLETED)

        reloaded = engine.SessionStore(session_key=shopper.session_key)
        self.assertIsNone(reloaded.get(SESSION_APPLIED_CODE))
        self.assertIsNone(reloaded.get(SESSION_APPLY_AMOUNT))

    def test_remaining_balance_for_order(self):
        order = self.place_order(remaining="70.00", total="30.00")
        change_order_status(order=order, status=OrderStatus.PROCESSING)
        order.refresh_from_db()
        self.assertEqual(remaining_balance_for_order(order), Decimal("40.00"))
        self.assertIsNone(remaining_balance_for_order(make_order()))


class ManualTransactionTests(TestCase):
    def setUp(self):
        self.staff = User.objects.create_user(username="front_desk", password="desk12345", role="STAFF")

    def test_manual_transaction_deducts_items_total(self):
        make_balance(remaining="40.00")

        manual = add_manual_transaction(
            "pbb00012",
            [{"name": "Boarding", "price": "15.00"}, {"name": "Bath", "price": Decimal("10.00")}],
            actor=self.staff,
        )

        self.assertEqual(manual.items_total, Decimal("25.00"))
        self.assertEqual([(line.name, line.price) for line in manual.lines.all()], [("Boarding", Decimal("15.00")), ("Bath", Decimal("10.00"))])
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("15.00"))
        self.assertEqual(manual.created_by, self.staff)
        self.assertTrue(AuditLog.objects.filter(action="gift_certificate.manual", entity_id="12").exists())

    def test_invalid_items_are_filtered_out(self):
        make_balance(remaining="40.00")
        manual = add_manual_transaction(
            "PBB-00012",
            [{"name": "  ", "price": "5"}, {"name": "Nails", "price": "0"}, {"name": "Nails", "price": "8.50"}, "junk"],
        )
        self.assertEqual(manual.items_total, Decimal("8.50"))
        self.assertEqual(manual.lines.count(), 1)

    def test_nothing_valid_is_rejected_before_any_write(self):
        make_balance(remaining="40.00")
        with self.assertRaises(InvalidManualTransaction):
            add_manual_transaction("PBB-00012", [{"name": "", "price": "5"}, {"name": "Bath", "price": "-1"}])
        with self.assertRaises(InvalidManualTransaction):
            add_manual_transaction("PBB-00012", [])
        self.assertFalse(ManualTransaction.objects.exists())
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("40.00"))

    def test_unknown_certificate(self):
        with self.assertRaises(CertificateNotFound):
            add_manual_transaction("PBB-00404", [{"name": "Bath", "price": "10"}])

    def test_overdraw_clamps_balance_at_zero(self):
        make_balance(remaining="10.00")
        add_manual_transaction("PBB-00012", [{"name": "Boarding", "price": "30.00"}])
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("0.00"))

    def test_list_is_most_recent_first(self):
        make_balance()
        first = add_manual_transaction("PBB-00012", [{"name": "Bath", "price": "10"}])
        second = add_manual_transaction("PBB-00012", [{"name": "Nails", "price": "5"}])
        ManualTransaction.objects.filter(pk=first.pk).update(created_at=timezone.now() - timedelta(days=1))
        self.assertEqual([manual.pk for manual in list_manual_transactions("12")], [second.pk, first.pk])


class LedgerTests(TestCase):
    def setUp(self):
        self.balance = make_balance(original="100.00")

    def test_transactions_merge_every_source_once(self):
        paid = make_order(items=[("Grooming", "40.00")], meta={META_REDEEM_CODE: "PBB-00012", META_REDEEM_AMOUNT: "40.00"})
        legacy = make_order(items=[("Bath", "20.00")], fees=[("Gift Certificate (PBB-00012)", "-20.00")])
        audited = make_order(items=[("Treat", "5.00")])
        make_order(items=[("Other", "99.00")], fees=[("Gift Certificate (PBB-00013)", "-10.00")])
        for order in (paid, audited):
            record_audit(
                actor=None,
                action="gift_certificate.deduct",
                entity_type="gift_certificate",
                entity_id=12,
                payload={"order_id": str(order.id)},
            )
        add_manual_transaction("PBB-00012", [{"name": "Boarding", "price": "15.00"}, {"name": "Bath", "price": "10.00"}])

        entries = transactions_for("pbb00012")

        self.assertEqual(len(entries), 4)
        self.assertEqual(sorted(entry.kind for entry in entries), ["manual", "order", "order", "order"])
        by_reference = {entry.reference: entry for entry in entries}
        self.assertEqual(by_reference[str(paid.id)].applied_amount, Decimal("40.00"))
        self.assertEqual(by_reference[str(legacy.id)].applied_amount, Decimal("20.00"))
        self.assertEqual(by_reference[str(legacy.id)].items_summary, "Bath × 1 ($20.00)")
        self.assertEqual(by_reference[str(audited.id)].items_total, Decimal("5.00"))

        result = reconcile("PBB-00012", transactions=entries)
        self.assertEqual(result.spent, Decimal("90.00"))
        self.assertEqual(result.computed_remaining, Decimal("10.00"))
        self.assertEqual(result.remaining, Decimal("75.00"))
        self.assertTrue(result.discrepancy)

    def test_consistent_history_has_no_discrepancy(self):
        add_manual_transaction("PBB-00012", [{"name": "Boarding", "price": "30.00"}])
        result = reconcile("12")
        self.assertEqual(result.spent, Decimal("30.00"))
        self.assertEqual(result.computed_remaining, Decimal("70.00"))
        self.assertFalse(result.discrepancy)
        self.assertIsNone(reconcile("PBB-00999"))

    def test_ledger_lists_unredeemed_archive_records(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$100")])
        archive_record([("serial_number", "00031"), ("gift_amount", "$45")])
        archive_record([("gift_amount", "$20")])
        archive_record([("serial_number", "40"), ("gift_amount", "$10")], status=InboundStatus.SPAM)

        rows = list_ledger(config=TEST_CONFIG)

        codes = [row.cert_code for row in rows]
        self.assertEqual(codes[0], "PBB-00012")
        self.assertTrue(rows[0].materialized)
        self.assertEqual(codes.count("PBB-00012"), 1)
        self.assertIn("(missing)", codes)
        self.assertNotIn("PBB-00040", codes)
        unredeemed = next(row for row in rows if row.cert_code == "PBB-00031")
        self.assertFalse(unredeemed.materialized)
        self.assertEqual(unredeemed.remaining_amount, Decimal("45.00"))

    def test_external_serials_include_balance_state(self):
        archive_record([("serial_number", "12"), ("gift_amount", "$100")])
        archive_record([("serial_number", "PBB-00040"), ("gift_amount", "$10")], status=InboundStatus.SPAM)
        archive_record([("gift_amount", "$20")])
        deduct("PBB-00012", Decimal("25.00"))

        rows = {row["cert_code"]: row for row in list_external_serials(config=TEST_CONFIG)}

        self.assertEqual(set(rows), {"PBB-00012", "PBB-00040"})
        self.assertEqual(rows["PBB-00012"]["remaining_amount"], Decimal("75.00"))
        self.assertIsNone(rows["PBB-00040"]["remaining_amount"])
        self.assertEqual(rows["PBB-00040"]["amount"], Decimal("10.00"))

    def test_reconcile_command_reports_discrepancies(self):
        add_manual_transaction("PBB-00012", [{"name": "Boarding", "price": "30.00"}])
        set_remaining("PBB-00012", Decimal("90.00"))
        out = StringIO()
        call_command("reconcile_certificates", stdout=out)
        self.assertIn("PBB-00012: recorded 90.00, history says 70.00", out.getvalue())
        self.assertIn("discrepancies: 1", out.getvalue())

    def test_reconcile_command_retries_failed_settlements(self):
        order = make_order(meta={META_REDEEM_CODE: "PBB-00012", META_REDEEM_AMOUNT: "15.00"})
        Order.objects.filter(pk=order.pk).update(status=OrderStatus.PROCESSING)
        out = StringIO()
        call_command("reconcile_certificates", "--retry-failed", stdout=out)
        self.assertIn("Settlements retried: 1", out.getvalue())
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("85.00"))


class GiftCertificateApiTests(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_gc", password="admin12345", role="ADMIN")
        self.staff = User.objects.create_user(username="staff_gc", password="staff12345", role="STAFF")
        self.record = archive_record(
            [
                ("serial_number", "12"),
                ("gift_amount", "$40"),
                ("_fields", '{"Recipient Name": {"value": "Rex"}}'),
            ]
        )

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def cart_payload(self, price="55.00", **extra):
        line = {"product_id": 10, "name": "Grooming", "qty": 1, "unit_price": price}
        line.update(extra)
        return {"lines": [line]}

    def test_shopper_apply_and_remove(self):
        response = self.client.post("/api/v1/redemption/apply/", {"code": "pbb00012"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["code"], "PBB-00012")

        totals = self.client.post("/api/v1/checkout/totals/", self.cart_payload(), format="json")
        self.assertEqual(totals.status_code, 200)
        self.assertEqual(totals.data["fees"], [{"label": "Gift Certificate (PBB-00012)", "amount": "-40.00"}])
        self.assertEqual(totals.data["total"], "15.00")
        self.assertTrue(totals.data["redeem_available"])

        state = self.client.get("/api/v1/redemption/")
        self.assertEqual(state.data, {"code": "PBB-00012", "apply_amount": "40.00"})

        self.assertEqual(self.client.post("/api/v1/redemption/remove/", {}, format="json").status_code, 200)
        totals = self.client.post("/api/v1/checkout/totals/", self.cart_payload(), format="json")
        self.assertEqual(totals.data["fees"], [])
        self.assertEqual(totals.data["total"], "55.00")

    def test_redeem_not_offered_while_buying_a_certificate(self):
        totals = self.client.post("/api/v1/checkout/totals/", self.cart_payload(product_id=4666), format="json")
        self.assertFalse(totals.data["redeem_available"])

    def test_apply_errors_use_error_envelope(self):
        blank = self.client.post("/api/v1/redemption/apply/", {"code": " "}, format="json")
        self.assertEqual(blank.status_code, 400)
        self.assertEqual(blank.data["code"], "invalid_certificate")

        missing = self.client.post("/api/v1/redemption/apply/", {"code": "PBB-00077"}, format="json")
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.data["code"], "certificate_not_found")
        self.assertNotIn("searched", missing.data["fields"])

        make_balance(code="PBB-00013", serial=13, original="10.00", remaining="0.00")
        spent = self.client.post("/api/v1/redemption/apply/", {"code": "13"}, format="json")
        self.assertEqual(spent.data["code"], "no_remaining_balance")

    def test_search_diagnostics_for_staff_or_when_enabled(self):
        self.auth_as("admin_gc", "admin12345")
        response = self.client.post("/api/v1/redemption/apply/", {"code": "PBB-00077"}, format="json")
        self.assertEqual(response.data["fields"]["searched"], ["77", "00077", "PBB-00077"])

        self.client.credentials()
        with override_settings(GIFT_CERT_EXPOSE_SEARCHED_SERIALS=True):
            response = self.client.post("/api/v1/redemption/apply/", {"code": "78"}, format="json")
        self.assertEqual(response.data["fields"]["searched"], ["78", "00078", "PBB-00078"])

    def test_checkout_to_settlement_flow(self):
        self.client.post("/api/v1/redemption/apply/", {"code": "12"}, format="json")
        created = self.client.post("/api/v1/checkout/orders/", self.cart_payload(), format="json")
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.data["total"], "15.00")
        self.assertEqual(created.data["gift_certificate_code"], "PBB-00012")

        self.auth_as("staff_gc", "staff12345")
        paid = self.client.post(f"/api/v1/checkout/orders/{created.data['id']}/status/", {"status": "PROCESSING"}, format="json")
        self.assertEqual(paid.status_code, 200)
        self.assertTrue(paid.data["gift_certificate_deducted"])
        self.assertEqual(paid.data["gift_certificate_remaining"], "0.00")

        again = self.client.post(f"/api/v1/checkout/orders/{created.data['id']}/status/", {"status": "COMPLETED"}, format="json")
        self.assertEqual(again.status_code, 200)
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("0.00"))

        self.client.credentials()
        self.assertIsNone(self.client.get("/api/v1/redemption/").data["code"])

    def test_order_responses_do_not_expose_shopper_session(self):
        self.client.post("/api/v1/redemption/apply/", {"code": "12"}, format="json")
        created = self.client.post("/api/v1/checkout/orders/", self.cart_payload(), format="json")
        session_key = self.client.session.session_key
        self.assertEqual(Order.objects.get(pk=created.data["id"]).get_meta(META_SESSION_KEY), session_key)

        self.auth_as("staff_gc", "staff12345")
        listed = self.client.get("/api/v1/checkout/orders/")
        detail = self.client.get(f"/api/v1/checkout/orders/{created.data['id']}/")

        for payload in (created.data, listed.data["results"][0], detail.data):
            self.assertNotIn("meta", payload)
            self.assertNotIn(session_key, str(payload))
        self.assertEqual(detail.data["gift_certificate_code"], "PBB-00012")
        self.assertFalse(detail.data["gift_certificate_deducted"])

    def test_staff_endpoints_require_authentication(self):
        self.assertEqual(self.client.get("/api/v1/gift-certificates/").status_code, 401)
        self.assertEqual(self.client.get("/api/v1/checkout/orders/").status_code, 401)

    def test_ledger_and_detail(self):
        resolve_or_create("12")
        self.auth_as("staff_gc", "staff12345")

        ledger = self.client.get("/api/v1/gift-certificates/")
        self.assertEqual(ledger.status_code, 200)
        self.assertEqual(ledger.data["results"][0]["cert_code"], "PBB-00012")

        detail = self.client.get("/api/v1/gift-certificates/12/")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.data["cert_code"], "PBB-00012")
        self.assertEqual(detail.data["remaining_amount"], "40.00")
        self.assertEqual(detail.data["record_fields"]["recipient_name"], "Rex")

        missing = self.client.get("/api/v1/gift-certificates/PBB-00404/")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.data["code"], "certificate_not_found")

        serials = self.client.get("/api/v1/gift-certificates/external-serials/")
        self.assertEqual(serials.status_code, 200)
        self.assertEqual(serials.data[0]["cert_code"], "PBB-00012")

    def test_manual_transaction_endpoint(self):
        resolve_or_create("12")
        self.auth_as("staff_gc", "staff12345")

        invalid = self.client.post(
            "/api/v1/gift-certificates/PBB-00012/manual-transactions/",
            {"items": [{"name": "Bath", "price": "10.00"}, {"name": "Nails", "price": "0"}]},
            format="json",
        )
        self.assertEqual(invalid.status_code, 400)
        self.assertIn("price", invalid.data["fields"]["items"][1])
        self.assertFalse(ManualTransaction.objects.exists())

        created = self.client.post(
            "/api/v1/gift-certificates/PBB-00012/manual-transactions/",
            {"items": [{"name": "Boarding", "price": "15.00"}, {"name": "Bath", "price": "10.00"}]},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.data["items_total"], "25.00")
        self.assertEqual(created.data["remaining_amount"], "15.00")
        self.assertEqual(created.data["created_by_username"], "staff_gc")
        self.assertEqual(created.data["created_by_name"], "staff_gc")

        listed = self.client.get("/api/v1/gift-certificates/PBB-00012/manual-transactions/")
        self.assertEqual(len(listed.data), 1)

        history = self.client.get("/api/v1/gift-certificates/pbb00012/transactions/")
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.data["transactions"][0]["kind"], "manual")
        self.assertEqual(history.data["reconciliation"]["spent"], "25.00")
        self.assertFalse(history.data["reconciliation"]["discrepancy"])

        unknown = self.client.post(
            "/api/v1/gift-certificates/PBB-00404/manual-transactions/",
            {"items": [{"name": "Bath", "price": "10.00"}]},
            format="json",
        )
        self.assertEqual(unknown.status_code, 404)

    def test_persistence_failure_renders_conflict(self):
        resolve_or_create("12")
        self.auth_as("staff_gc", "staff12345")

        with mock.patch("apps.certificates.views.add_manual_transaction", side_effect=BalancePersistenceError()):
            response = self.client.post(
                "/api/v1/gift-certificates/PBB-00012/manual-transactions/",
                {"items": [{"name": "Bath", "price": "10.00"}]},
                format="json",
            )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "persistence_failure")
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("40.00"))


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentSettlementTests(TransactionTestCase):
    workers = 8

    def run_together(self, func):
        barrier = threading.Barrier(self.workers)
        results = []
        errors = []

        def worker():
            try:
                barrier.wait()
                results.append(func())
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        return results

    def test_parallel_deductions_never_overdraw(self):
        make_balance(original="50.00")

        results = self.run_together(lambda: deduct("PBB-00012", Decimal("10.00")))

        self.assertEqual(results, [True] * self.workers)
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("0.00"))

    def test_parallel_deductions_are_not_lost(self):
        make_balance(original="100.00")

        self.run_together(lambda: deduct("PBB-00012", Decimal("5.00")))

        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("60.00"))

    def test_parallel_payment_events_settle_once(self):
        make_balance(original="100.00")
        order = make_order(meta={META_REDEEM_CODE: "PBB-00012", META_REDEEM_AMOUNT: "30.00"})

        outcomes = self.run_together(lambda: settle_order(order.pk))

        self.assertEqual(outcomes.count(SettlementOutcome.DEDUCTED), 1)
        self.assertEqual(outcomes.count(SettlementOutcome.DUPLICATE), self.workers - 1)
        self.assertEqual(get_balance("PBB-00012").remaining_amount, Decimal("70.00"))
        self.assertEqual(AuditLog.objects.filter(action="gift_certificate.deduct").count(), 1)
        order.refresh_from_db()
        self.assertTrue(order.get_meta(META_REDEEM_DEDUCTED))
        self.assertEqual(order.notes.count(), 1)
