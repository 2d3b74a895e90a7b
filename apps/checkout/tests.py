from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.checkout.cart import Cart, CartLine
from apps.checkout.models import Order, OrderStatus
from apps.checkout.services import change_order_status, create_order_from_cart
from apps.checkout.signals import cart_calculate_fees, order_status_changed

User = get_user_model()


class CartTests(TestCase):
    def test_totals_include_shipping_tax_and_fees(self):
        cart = Cart(
            lines=[
                CartLine(product_id=1, name="Bath", qty=2, unit_price="12.50"),
                CartLine(product_id=2, name="Nails", unit_price="10.00"),
            ],
            shipping_total="5.00",
            tax_total="2.75",
        )
        self.assertEqual(cart.contents_total, Decimal("35.00"))
        self.assertEqual(cart.total_before_fees, Decimal("42.75"))

        cart.add_fee("Discount", "-50.00")
        self.assertEqual(cart.total, Decimal("0.00"))

    def test_recalculation_resets_fees_and_notifies_hooks(self):
        seen = []

        def add_handling(sender, cart, session=None, **kwargs):
            seen.append(session)
            cart.add_fee("Handling", "1.50")

        cart_calculate_fees.connect(add_handling, dispatch_uid="test.add_handling")
        try:
            cart = Cart(lines=[CartLine(product_id=1, name="Bath", unit_price="20.00")])
            cart.add_fee("Stale", "-5.00")
            self.assertEqual(cart.calculate_totals(session={"k": "v"}), Decimal("21.50"))
            self.assertEqual([fee.label for fee in cart.fees], ["Handling"])
            self.assertEqual(seen, [{"k": "v"}])
        finally:
            cart_calculate_fees.disconnect(dispatch_uid="test.add_handling")


class OrderServiceTests(TestCase):
    def test_order_copies_cart_lines_and_fees(self):
        cart = Cart(lines=[CartLine(product_id=7, variation_id=3, name="Boarding", qty=2, unit_price="30.00")], tax_total="4.00")
        order = create_order_from_cart(cart=cart)

        self.assertEqual(order.subtotal, Decimal("60.00"))
        self.assertEqual(order.total, Decimal("64.00"))
        item = order.items.get()
        self.assertEqual((item.product_id, item.variation_id, item.qty, item.total), (7, 3, 2, Decimal("60.00")))
        self.assertEqual(order.meta, {})

    def test_status_change_fires_signal_and_audits(self):
        order = Order.objects.create()
        events = []

        def capture(sender, order, old_status, new_status, **kwargs):
            events.append((old_status, new_status))

        order_status_changed.connect(capture, dispatch_uid="test.capture_status")
        try:
            self.assertTrue(change_order_status(order=order, status=OrderStatus.PROCESSING))
            self.assertFalse(change_order_status(order=order, status=OrderStatus.PROCESSING))
        finally:
            order_status_changed.disconnect(dispatch_uid="test.capture_status")

        self.assertEqual(events, [(OrderStatus.PENDING, OrderStatus.PROCESSING)])
        audit = AuditLog.objects.get(action="order.status")
        self.assertEqual(audit.payload, {"from": "PENDING", "to": "PROCESSING"})

    def test_notes_are_append_only_log(self):
        order = Order.objects.create()
        order.add_note("first")
        order.add_note("second")
        self.assertEqual([note.note for note in order.notes.all()], ["first", "second"])


class OrderApiTests(APITestCase):
    def setUp(self):
        self.staff = User.objects.create_user(username="staff_orders", password="staff12345", role="STAFF")

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def test_totals_validate_cart_payload(self):
        response = self.client.post("/api/v1/checkout/totals/", {"lines": []}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("lines", response.data["fields"])

    def test_anonymous_checkout_and_staff_review(self):
        created = self.client.post(
            "/api/v1/checkout/orders/",
            {"lines": [{"product_id": 5, "name": "Bath", "unit_price": "25.00"}], "shipping_total": "5.00"},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.data["total"], "30.00")
        self.assertIsNone(created.data["gift_certificate_code"])
        self.assertIsNone(created.data["gift_certificate_remaining"])
        self.assertFalse(created.data["contains_gift_certificate"])

        self.auth_as("staff_orders", "staff12345")
        listed = self.client.get("/api/v1/checkout/orders/")
        self.assertEqual(listed.status_code, 200)
        self.assertEqual(listed.data["count"], 1)

        changed = self.client.post(f"/api/v1/checkout/orders/{created.data['id']}/status/", {"status": "COMPLETED"}, format="json")
        self.assertEqual(changed.status_code, 200)
        self.assertEqual(changed.data["status"], "COMPLETED")

        invalid = self.client.post(f"/api/v1/checkout/orders/{created.data['id']}/status/", {"status": "SHIPPED"}, format="json")
        self.assertEqual(invalid.status_code, 400)

    def test_orders_buying_a_gift_certificate_are_flagged(self):
        created = self.client.post(
            "/api/v1/checkout/orders/",
            {"lines": [{"product_id": 4666, "variation_id": 4668, "name": "Gift Certificate", "unit_price": "50.00"}]},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        self.assertTrue(created.data["contains_gift_certificate"])
        self.assertFalse(created.data["gift_certificate_deducted"])
