#   Copyright 2026 Merch Fulfillment Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Tests for the payment and fulfillment webhook reconcilers."""

import asyncio
import copy
import os
import shutil
import tempfile
from typing import Any, Dict, List, Optional

from absl.testing import absltest
from merch_fulfillment import db
from merch_fulfillment.enums import OrderStatus
from merch_fulfillment.models import FulfillmentOrderData
from merch_fulfillment.models import NotificationResult
from merch_fulfillment.models import SubmissionResult
from merch_fulfillment.services import printful_client
from merch_fulfillment.services import reconciler
from merch_fulfillment.services.idempotency import IdempotencyLedger
from merch_fulfillment.services.payment_gateway import StripeGateway
from sqlalchemy import select
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

CHECKOUT_SESSION = {
    "id": "cs_test_123",
    "object": "checkout.session",
    "payment_status": "paid",
    "payment_intent": "pi_123",
    "amount_total": 3157,
    "currency": "usd",
    "metadata": {
        "printful_product_id": "301",
        "printful_variant_id": "5130270457",
        "quantity": "1",
    },
    "customer_details": {
        "email": "jane@example.com",
        "name": "Jane Doe",
        "phone": "+15035550100",
    },
    "shipping_details": {
        "name": "Jane Doe",
        "address": {
            "line1": "1 Main St",
            "city": "Portland",
            "state": "OR",
            "postal_code": "97201",
            "country": "US",
        },
    },
    "line_items": {
        "data": [{"description": "Logo Tee x1", "quantity": 1}],
    },
}


def _event(event_type: str, **overrides: Any) -> Dict[str, Any]:
  checkout = copy.deepcopy(CHECKOUT_SESSION)
  checkout.update(overrides)
  return {"id": "evt_1", "type": event_type, "data": {"object": checkout}}


class FakeGateway(StripeGateway):
  """Serves checkout sessions from memory."""

  def __init__(self, sessions: Optional[Dict[str, Dict[str, Any]]] = None):
    super().__init__(None, "whsec_test")
    self.sessions = sessions if sessions is not None else {}

  async def retrieve_session(self, session_id: str):
    return copy.deepcopy(self.sessions.get(session_id))


class FakePrintful:
  """Records submissions and resolves from a fixed variant map."""

  def __init__(self, variants=None, submission=None):
    self.variants = variants if variants is not None else {"5130270457": 12345}
    self.submission = submission or SubmissionResult(
        success=True, fulfillment_order_id="999888777"
    )
    self.resolved: List[str] = []
    self.submitted: List[FulfillmentOrderData] = []

  async def resolve_catalog_variant(self, sync_variant_id: str):
    self.resolved.append(sync_variant_id)
    return self.variants.get(sync_variant_id)

  async def submit_order(self, order_data: FulfillmentOrderData):
    self.submitted.append(order_data)
    return self.submission


class FakeNotifier:
  """Records every notification instead of sending it."""

  def __init__(self):
    self.confirmations: List[str] = []
    self.payment_failures: List[str] = []
    self.alerts: List[Dict[str, Any]] = []

  async def send_order_confirmation(self, order):
    self.confirmations.append(order.customer_email)
    return NotificationResult(sent=True)

  async def send_payment_failure(self, customer_email, session_id):
    del session_id  # Unused.
    self.payment_failures.append(customer_email)
    return NotificationResult(sent=True)

  async def send_admin_alert(self, subject, message, metadata=None):
    self.alerts.append(
        {"subject": subject, "message": message, "metadata": metadata or {}}
    )
    return NotificationResult(sent=True)


class FailingNotifier(FakeNotifier):
  """Raises from every send, as a broken email provider client would."""

  async def send_order_confirmation(self, order):
    await super().send_order_confirmation(order)
    raise RuntimeError("email provider down")

  async def send_admin_alert(self, subject, message, metadata=None):
    await super().send_admin_alert(subject, message, metadata)
    raise RuntimeError("email provider down")


async def _event_types(session: AsyncSession, order_id: str) -> List[str]:
  result = await session.execute(
      select(db.OrderEvent.event_type)
      .where(db.OrderEvent.order_id == order_id)
      .order_by(db.OrderEvent.id)
  )
  return list(result.scalars().all())


class ReconcilerTestBase(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "orders.db")
    self.gateway = FakeGateway({"cs_test_123": CHECKOUT_SESSION})
    self.printful = FakePrintful()
    self.notifier = FakeNotifier()
    self.ledger = IdempotencyLedger()

  def tearDown(self) -> None:
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _run(self, test_fn) -> None:
    async def with_session(session_factory) -> None:
      async with session_factory() as session:
        await test_fn(session)

    self._run_with_factory(with_session)

  def _run_with_factory(self, test_fn) -> None:
    async def runner() -> None:
      engine = create_async_engine(
          f"sqlite+aiosqlite:///{self.db_path}", poolclass=NullPool
      )
      async with engine.begin() as conn:
        await conn.run_sync(db.Base.metadata.create_all)
      session_factory = sessionmaker(
          engine, expire_on_commit=False, class_=AsyncSession
      )
      try:
        await test_fn(session_factory)
      finally:
        await engine.dispose()

    asyncio.run(runner())

  def _payment(self, session: AsyncSession) -> reconciler.PaymentReconciler:
    return reconciler.PaymentReconciler(
        session, self.gateway, self.printful, self.notifier, self.ledger
    )


class PaymentReconcilerTest(ReconcilerTestBase):

  def test_paid_session_is_fulfilled_and_confirmed(self):
    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.id, result.order_id)
      self.assertEqual(order.printful_order_id, "999888777")
      self.assertEqual(order.status, OrderStatus.PROCESSING.value)
      self.assertEqual(order.customer_email, "jane@example.com")
      self.assertEqual(order.total_amount_cents, 3157)
      self.assertEqual(order.items[0].printful_variant_id, "5130270457")
      self.assertEqual(
          await _event_types(session, order.id),
          ["created", "fulfillment_created", "notification_sent"],
      )

    self._run(check)
    self.assertEqual(self.printful.resolved, ["5130270457"])
    self.assertLen(self.printful.submitted, 1)
    submitted = self.printful.submitted[0]
    self.assertEqual(submitted.items[0].variant_id, 12345)
    self.assertIsNone(submitted.items[0].sync_variant_id)
    self.assertEqual(submitted.recipient.name, "Jane Doe")
    self.assertEqual(self.notifier.confirmations, ["jane@example.com"])
    self.assertEmpty(self.notifier.alerts)
    self.assertTrue(self.ledger.has_processed("cs_test_123"))

  def test_redelivery_is_a_duplicate(self):
    async def check(session):
      payment = self._payment(session)
      first = await payment.handle_event(_event("checkout.session.completed"))
      second = await payment.handle_event(_event("checkout.session.completed"))

      self.assertEqual(first.status, reconciler.RESULT_PROCESSED)
      self.assertEqual(second.status, reconciler.RESULT_DUPLICATE)
      self.assertLen(await db.list_orders(session), 1)

    self._run(check)
    self.assertLen(self.printful.submitted, 1)
    self.assertLen(self.notifier.confirmations, 1)

  def test_redelivery_after_restart_is_caught_by_unique_session(self):
    async def check(session):
      await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )
      # A fresh process has an empty ledger.
      self.ledger.clear()
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_DUPLICATE)
      self.assertLen(await db.list_orders(session), 1)

    self._run(check)
    self.assertLen(self.printful.submitted, 1)
    self.assertTrue(self.ledger.has_processed("cs_test_123"))

  def test_unresolved_variant_alerts_once_and_leaves_order_pending(self):
    self.printful.variants = {}

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_FAILED)
      self.assertEqual(result.detail, "variant_resolution_failed")
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.status, OrderStatus.PENDING.value)
      self.assertIsNone(order.printful_order_id)
      self.assertEqual(
          await _event_types(session, order.id), ["created", "failed"]
      )

    self._run(check)
    self.assertEmpty(self.printful.submitted)
    self.assertEmpty(self.notifier.confirmations)
    self.assertLen(self.notifier.alerts, 1)
    alert = self.notifier.alerts[0]
    self.assertEqual(
        alert["subject"], "CRITICAL: Printful Variant Resolution Failed"
    )
    self.assertIn(
        "Payment successful but cannot fulfill order", alert["message"]
    )
    self.assertIn("5130270457", alert["message"])
    self.assertEqual(alert["metadata"]["sync_variant_id"], "5130270457")
    self.assertEqual(alert["metadata"]["customer_email"], "jane@example.com")
    self.assertFalse(self.ledger.has_processed("cs_test_123"))

  def test_submission_failure_alerts_operator(self):
    self.printful.submission = SubmissionResult(
        success=False,
        error="Printful API error: 400: invalid address",
        error_type=printful_client.ERROR_PROVIDER_REJECTED,
    )

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_FAILED)
      self.assertEqual(result.detail, printful_client.ERROR_PROVIDER_REJECTED)
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.status, OrderStatus.PENDING.value)
      self.assertEqual(
          await _event_types(session, order.id), ["created", "failed"]
      )

    self._run(check)
    self.assertLen(self.notifier.alerts, 1)
    self.assertEqual(
        self.notifier.alerts[0]["subject"], "Failed to create Printful order"
    )
    self.assertIn(
        "Printful order creation failed", self.notifier.alerts[0]["message"]
    )
    self.assertEmpty(self.notifier.confirmations)
    self.assertFalse(self.ledger.has_processed("cs_test_123"))

  def test_missing_customer_email_alerts_without_creating_order(self):
    self.gateway.sessions = {}

    async def check(session):
      result = await self._payment(session).handle_event(
          _event(
              "checkout.session.completed",
              customer_details={"name": "No Email"},
          )
      )

      self.assertEqual(result.status, reconciler.RESULT_FAILED)
      self.assertEmpty(await db.list_orders(session))

    self._run(check)
    self.assertEmpty(self.printful.submitted)
    self.assertLen(self.notifier.alerts, 1)
    self.assertEqual(
        self.notifier.alerts[0]["subject"],
        "Database Error: Failed to create order",
    )

  def test_missing_variant_metadata_alerts_and_stays_pending(self):
    self.gateway.sessions = {}

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed", metadata={})
      )

      self.assertEqual(result.detail, "missing_variant")
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.status, OrderStatus.PENDING.value)

    self._run(check)
    self.assertEmpty(self.printful.resolved)
    self.assertLen(self.notifier.alerts, 1)

  def test_retrieval_failure_falls_back_to_event_payload(self):
    self.gateway.sessions = {}

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )
      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)

    self._run(check)
    self.assertLen(self.printful.submitted, 1)

  def test_unpaid_completion_is_deferred(self):
    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed", payment_status="unpaid")
      )

      self.assertEqual(result.status, reconciler.RESULT_DEFERRED)
      self.assertEmpty(await db.list_orders(session))

    self._run(check)
    self.assertEmpty(self.printful.submitted)

  def test_async_payment_succeeded_runs_pipeline(self):
    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.async_payment_succeeded")
      )
      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)

    self._run(check)
    self.assertLen(self.printful.submitted, 1)

  def test_async_payment_failed_notifies_and_marks_order(self):
    self.printful.variants = {}

    async def check(session):
      payment = self._payment(session)
      await payment.handle_event(_event("checkout.session.completed"))
      self.notifier.alerts.clear()

      result = await payment.handle_event(
          _event("checkout.session.async_payment_failed")
      )

      self.assertEqual(result.detail, "payment_failed")
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(result.order_id, order.id)
      self.assertEqual(order.status, OrderStatus.FAILED.value)

    self._run(check)
    self.assertEqual(self.notifier.payment_failures, ["jane@example.com"])
    self.assertLen(self.notifier.alerts, 1)
    self.assertEqual(self.notifier.alerts[0]["subject"], "Async payment failed")
    self.assertIn(
        "Async payment failed for session cs_test_123",
        self.notifier.alerts[0]["message"],
    )

  def test_async_payment_failed_without_order(self):
    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.async_payment_failed")
      )
      self.assertIsNone(result.order_id)
      self.assertEmpty(await db.list_orders(session))

    self._run(check)
    self.assertLen(self.notifier.payment_failures, 1)

  def test_confirmation_failure_does_not_undo_fulfillment(self):
    self.notifier = FailingNotifier()

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.printful_order_id, "999888777")
      self.assertEqual(order.status, OrderStatus.PROCESSING.value)
      self.assertNotIn(
          "notification_sent", await _event_types(session, order.id)
      )

    self._run(check)
    self.assertEqual(self.notifier.confirmations, ["jane@example.com"])
    self.assertTrue(self.ledger.has_processed("cs_test_123"))

  def test_alert_failure_does_not_escape_pipeline(self):
    self.notifier = FailingNotifier()
    self.printful.variants = {}

    async def check(session):
      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_FAILED)
      self.assertEqual(result.detail, "variant_resolution_failed")
      order = await db.find_by_session_id(session, "cs_test_123")
      self.assertEqual(order.status, OrderStatus.PENDING.value)

    self._run(check)
    self.assertLen(self.notifier.alerts, 1)
    self.assertEmpty(self.printful.submitted)

  def test_lost_event_rows_do_not_stop_fulfillment(self):
    async def check(session):
      await session.execute(text("DROP TABLE order_events"))
      await session.commit()

      result = await self._payment(session).handle_event(
          _event("checkout.session.completed")
      )

      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)
      self.assertIsNotNone(result.order_id)
      rows = await session.execute(
          select(db.Order.printful_order_id, db.Order.status)
      )
      self.assertEqual(rows.all(), [("999888777", "processing")])

    self._run(check)
    self.assertLen(self.printful.submitted, 1)
    self.assertEqual(self.notifier.confirmations, ["jane@example.com"])
    self.assertEmpty(self.notifier.alerts)

  def test_concurrent_deliveries_create_one_order(self):
    async def check(session_factory):
      async with session_factory() as first, session_factory() as second:
        results = await asyncio.gather(
            self._payment(first).handle_event(
                _event("checkout.session.completed")
            ),
            self._payment(second).handle_event(
                _event("checkout.session.completed")
            ),
        )

      self.assertCountEqual(
          [r.status for r in results],
          [reconciler.RESULT_PROCESSED, reconciler.RESULT_DUPLICATE],
      )
      async with session_factory() as session:
        self.assertLen(await db.list_orders(session), 1)

    self._run_with_factory(check)
    self.assertLen(self.printful.submitted, 1)
    self.assertLen(self.notifier.confirmations, 1)

  def test_other_event_types_are_ignored(self):
    async def check(session):
      result = await self._payment(session).handle_event(
          {"id": "evt_2", "type": "payment_intent.created", "data": {}}
      )
      self.assertEqual(result.status, reconciler.RESULT_IGNORED)

    self._run(check)


class FulfillmentReconcilerTest(ReconcilerTestBase):

  async def _fulfilled_order(self, session: AsyncSession) -> db.Order:
    await self._payment(session).handle_event(
        _event("checkout.session.completed")
    )
    return await db.find_by_session_id(session, "cs_test_123")

  def _fulfillment(self, session) -> reconciler.FulfillmentReconciler:
    return reconciler.FulfillmentReconciler(session, self.notifier)

  def test_package_shipped_records_tracking_and_replay_is_harmless(self):
    shipped = {
        "order": {"id": 999888777},
        "shipment": {
            "tracking_number": "1Z999",
            "tracking_url": "https://track.example/1Z999",
            "carrier": "UPS",
            "service": "Ground",
        },
    }

    async def check(session):
      order = await self._fulfilled_order(session)
      fulfillment = self._fulfillment(session)
      first = await fulfillment.handle_event(
          "package_shipped", "999888777", shipped
      )
      second = await fulfillment.handle_event(
          "package_shipped", "999888777", shipped
      )

      self.assertEqual(first.status, reconciler.RESULT_PROCESSED)
      self.assertEqual(second.status, reconciler.RESULT_PROCESSED)
      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.SHIPPED.value)
      self.assertEqual(order.order_metadata["tracking_number"], "1Z999")
      self.assertEqual(order.order_metadata["carrier"], "UPS")
      self.assertIn("shipped", await _event_types(session, order.id))

    self._run(check)

  def test_unknown_order_writes_nothing(self):
    async def check(session):
      result = await self._fulfillment(session).handle_event(
          "package_shipped", "424242", {"order": {"id": 424242}}
      )

      self.assertEqual(result.status, reconciler.RESULT_NOT_FOUND)
      rows = await session.execute(select(db.OrderEvent))
      self.assertEmpty(rows.scalars().all())

    self._run(check)

  def test_package_returned_alerts_operator(self):
    async def check(session):
      order = await self._fulfilled_order(session)
      await self._fulfillment(session).handle_event(
          "package_returned",
          "999888777",
          {"order": {"id": 999888777}, "reason": "Undeliverable"},
      )

      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.RETURNED.value)
      self.assertIn("returned", await _event_types(session, order.id))

    self._run(check)
    self.assertEqual(
        [a["subject"] for a in self.notifier.alerts], ["Package returned"]
    )

  def test_order_failed_records_reason_and_alerts(self):
    async def check(session):
      order = await self._fulfilled_order(session)
      await self._fulfillment(session).handle_event(
          "order_failed",
          "999888777",
          {"order": {"id": 999888777}, "reason": "Out of stock"},
      )

      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.FAILED.value)
      self.assertEqual(order.order_metadata["failure_reason"], "Out of stock")

    self._run(check)
    self.assertLen(self.notifier.alerts, 1)
    self.assertIn("Out of stock", self.notifier.alerts[0]["message"])

  def test_order_canceled(self):
    async def check(session):
      order = await self._fulfilled_order(session)
      await self._fulfillment(session).handle_event(
          "order_canceled", "999888777", {"order": {"id": 999888777}}
      )

      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.CANCELLED.value)
      self.assertIn("cancelled", await _event_types(session, order.id))

    self._run(check)

  def test_transition_outside_table_is_recorded_not_applied(self):
    async def check(session):
      order = await self._fulfilled_order(session)
      fulfillment = self._fulfillment(session)
      await fulfillment.handle_event(
          "order_canceled", "999888777", {"order": {"id": 999888777}}
      )
      result = await fulfillment.handle_event(
          "package_shipped", "999888777", {"order": {"id": 999888777}}
      )

      self.assertEqual(result.status, reconciler.RESULT_PROCESSED)
      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.CANCELLED.value)
      events = await session.execute(
          select(db.OrderEvent)
          .where(db.OrderEvent.order_id == order.id)
          .order_by(db.OrderEvent.id)
      )
      last = events.scalars().all()[-1]
      self.assertEqual(last.event_type, "status_changed")
      self.assertEqual(last.outcome, "failed")
      self.assertEqual(last.event_metadata["requested_status"], "shipped")
      self.assertNotIn("shipped", await _event_types(session, order.id))

    self._run(check)

  def test_unknown_event_type_is_ignored(self):
    async def check(session):
      order = await self._fulfilled_order(session)
      result = await self._fulfillment(session).handle_event(
          "stock_updated", "999888777", {"order": {"id": 999888777}}
      )
      self.assertEqual(result.status, reconciler.RESULT_IGNORED)
      order = await db.get_order(session, order.id)
      self.assertEqual(order.status, OrderStatus.PROCESSING.value)

    self._run(check)


if __name__ == "__main__":
  absltest.main()
