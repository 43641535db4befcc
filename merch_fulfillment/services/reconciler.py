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

"""Reconciles payment and fulfillment webhooks onto orders.

This module provides two handlers:
- `PaymentReconciler` turns a paid Stripe Checkout Session into exactly one
  order and at most one Printful submission. The work is split into discrete
  steps (fetch session, record order, resolve variant, submit fulfillment,
  notify) composed by `fulfill_session`; each fatal step stops the pipeline
  and alerts the operator, since the customer has already paid.
- `FulfillmentReconciler` applies Printful order events (shipped, returned,
  failed, canceled) to the matching order through the status transition
  table.

Webhook deliveries are at-least-once and unordered. Duplicates are filtered
by the in-memory ledger first and by the unique session id on `orders` as the
authoritative backstop.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from merch_fulfillment import db
from merch_fulfillment.enums import EventOutcome
from merch_fulfillment.enums import OrderEventType
from merch_fulfillment.enums import OrderStatus
from merch_fulfillment.exceptions import DuplicateOrderError
from merch_fulfillment.exceptions import InvalidRequestError
from merch_fulfillment.exceptions import InvalidStatusTransitionError
from merch_fulfillment.exceptions import ResourceNotFoundError
from merch_fulfillment.models import CreateOrderParams
from merch_fulfillment.models import FulfillmentItem
from merch_fulfillment.models import FulfillmentOrderData
from merch_fulfillment.models import OrderItemParams
from merch_fulfillment.models import ReconcileResult
from merch_fulfillment.models import ShippingAddress
from merch_fulfillment.models import SubmissionResult
from merch_fulfillment.services import payment_gateway
from merch_fulfillment.services.idempotency import IdempotencyLedger
from merch_fulfillment.services.notification_service import NotificationService
from merch_fulfillment.services.payment_gateway import StripeGateway
from merch_fulfillment.services.printful_client import PrintfulClient
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

RESULT_PROCESSED = "processed"
RESULT_DUPLICATE = "duplicate"
RESULT_DEFERRED = "deferred"
RESULT_IGNORED = "ignored"
RESULT_FAILED = "failed"
RESULT_NOT_FOUND = "not_found"

STRIPE_DASHBOARD_URL = "https://dashboard.stripe.com/payments"
PRINTFUL_DASHBOARD_URL = "https://www.printful.com/dashboard/default/orders"


def build_order_params(checkout: Dict[str, Any]) -> CreateOrderParams:
  """Maps a Checkout Session onto the fields stored for an order.

  Raises:
    InvalidRequestError: The session carries no customer email.
  """
  customer = checkout.get("customer_details") or {}
  email = customer.get("email") or checkout.get("customer_email")
  if not email:
    raise InvalidRequestError(
        f"Checkout session {checkout.get('id')} has no customer email"
    )

  metadata = checkout.get("metadata") or {}
  shipping = payment_gateway.get_shipping_details(checkout)
  shipping_address = None
  if shipping and shipping.get("address"):
    address = shipping["address"]
    shipping_address = ShippingAddress(
        name=shipping.get("name") or customer.get("name") or "Customer",
        line1=address.get("line1") or "",
        line2=address.get("line2"),
        city=address.get("city") or "",
        state=address.get("state") or "",
        postal_code=address.get("postal_code") or "",
        country=address.get("country") or "",
    )

  quantity = payment_gateway.get_order_quantity(checkout)
  total_cents = int(checkout.get("amount_total") or 0)
  line_items = (checkout.get("line_items") or {}).get("data") or []
  name = "Merchandise"
  if line_items:
    name = line_items[0].get("description") or name

  payment_intent = checkout.get("payment_intent")
  if isinstance(payment_intent, dict):
    payment_intent = payment_intent.get("id")

  return CreateOrderParams(
      stripe_session_id=checkout["id"],
      stripe_payment_intent_id=payment_intent,
      customer_email=email,
      customer_name=customer.get("name"),
      total_amount_cents=total_cents,
      currency=checkout.get("currency") or "usd",
      shipping_address=shipping_address,
      items=[
          OrderItemParams(
              printful_product_id=str(
                  metadata.get(payment_gateway.METADATA_PRODUCT_ID) or ""
              ),
              printful_variant_id=str(
                  metadata.get(payment_gateway.METADATA_VARIANT_ID) or ""
              ),
              name=name,
              quantity=quantity,
              price_cents=total_cents // quantity if quantity else total_cents,
          )
      ],
      metadata={
          key: value
          for key, value in metadata.items()
          if key != payment_gateway.METADATA_QUANTITY
      },
  )


class PaymentReconciler:
  """Handles Stripe Checkout events."""

  def __init__(
      self,
      session: AsyncSession,
      gateway: StripeGateway,
      printful: PrintfulClient,
      notifier: NotificationService,
      ledger: IdempotencyLedger,
  ):
    self.session = session
    self.gateway = gateway
    self.printful = printful
    self.notifier = notifier
    self.ledger = ledger

  async def handle_event(self, event: Dict[str, Any]) -> ReconcileResult:
    """Dispatches a verified Stripe event."""
    event_type = event.get("type")
    checkout = (event.get("data") or {}).get("object") or {}
    if event_type == "checkout.session.completed":
      return await self.handle_checkout_completed(checkout)
    if event_type == "checkout.session.async_payment_succeeded":
      return await self.fulfill_session(checkout)
    if event_type == "checkout.session.async_payment_failed":
      return await self.handle_async_payment_failed(checkout)
    logger.info("Ignoring Stripe event type %s", event_type)
    return ReconcileResult(status=RESULT_IGNORED, detail=event_type)

  async def handle_checkout_completed(
      self, checkout: Dict[str, Any]
  ) -> ReconcileResult:
    # Delayed payment methods complete the session before the money arrives;
    # async_payment_succeeded runs the pipeline for those.
    if checkout.get("payment_status") == "unpaid":
      logger.info(
          "Session %s completed with payment pending, awaiting async payment",
          checkout.get("id"),
      )
      return ReconcileResult(status=RESULT_DEFERRED, detail="payment_pending")
    return await self.fulfill_session(checkout)

  async def fulfill_session(self, checkout: Dict[str, Any]) -> ReconcileResult:
    """Runs the payment-to-fulfillment pipeline for one paid session."""
    session_id = checkout.get("id")
    if not session_id:
      logger.error("Stripe event has no checkout session id")
      return ReconcileResult(status=RESULT_FAILED, detail="missing_session_id")

    if self.ledger.has_processed(session_id):
      logger.info("Session %s already processed, skipping", session_id)
      return ReconcileResult(status=RESULT_DUPLICATE)

    full_session = await self.fetch_session(checkout)

    try:
      order = await self.record_order(full_session)
    except DuplicateOrderError:
      logger.info("Order already exists for session %s, skipping", session_id)
      self.ledger.mark_processed(session_id)
      return ReconcileResult(status=RESULT_DUPLICATE)
    except (InvalidRequestError, SQLAlchemyError, KeyError, ValueError) as e:
      await self.session.rollback()
      logger.error("Error creating order for session %s: %s", session_id, e)
      await self._alert(
          "Database Error: Failed to create order",
          f"Error creating order for session {session_id}: {e}. The payment"
          " succeeded but no order record exists.",
          {
              "session_id": session_id,
              "customer_email": self._customer_email(full_session),
              "stripe_dashboard": STRIPE_DASHBOARD_URL,
          },
      )
      return ReconcileResult(status=RESULT_FAILED, detail="order_not_created")

    sync_variant_id = (full_session.get("metadata") or {}).get(
        payment_gateway.METADATA_VARIANT_ID
    )
    if not sync_variant_id:
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.FAILED,
          EventOutcome.FAILED,
          "No Printful variant id in checkout session metadata",
          {"session_id": session_id},
      )
      await self._alert(
          "Missing Printful variant ID",
          f"Checkout session {session_id} has no"
          f" {payment_gateway.METADATA_VARIANT_ID} metadata. The order was"
          " recorded but cannot be fulfilled automatically.",
          {
              "session_id": session_id,
              "order_id": order.id,
              "customer_email": order.customer_email,
          },
      )
      return ReconcileResult(
          status=RESULT_FAILED, order_id=order.id, detail="missing_variant"
      )

    catalog_variant_id = await self.printful.resolve_catalog_variant(
        str(sync_variant_id)
    )
    if catalog_variant_id is None:
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.FAILED,
          EventOutcome.FAILED,
          f"Could not resolve Printful sync variant {sync_variant_id}",
          {"sync_variant_id": str(sync_variant_id)},
      )
      await self._alert(
          "CRITICAL: Printful Variant Resolution Failed",
          "Payment successful but cannot fulfill order: sync variant"
          f" {sync_variant_id} could not be resolved to a catalog variant."
          "\n\nManual recovery:\n"
          "1. Check the variant exists in the Printful store.\n"
          "2. Create the order manually in the Printful dashboard.\n"
          "3. Or refund the customer from the Stripe dashboard.",
          {
              "session_id": session_id,
              "order_id": order.id,
              "sync_variant_id": str(sync_variant_id),
              "customer_email": order.customer_email,
              "printful_dashboard": PRINTFUL_DASHBOARD_URL,
              "stripe_dashboard": STRIPE_DASHBOARD_URL,
          },
      )
      return ReconcileResult(
          status=RESULT_FAILED,
          order_id=order.id,
          detail="variant_resolution_failed",
      )

    order_data = self.build_submission(full_session, catalog_variant_id)
    if order_data is None:
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.FAILED,
          EventOutcome.FAILED,
          "Checkout session is missing shipping or customer details",
          {"session_id": session_id},
      )
      await self._alert(
          "Missing shipping details",
          f"Checkout session {session_id} has no shipping or customer"
          " details; the Printful order must be created manually.",
          {
              "session_id": session_id,
              "order_id": order.id,
              "customer_email": order.customer_email,
          },
      )
      return ReconcileResult(
          status=RESULT_FAILED, order_id=order.id, detail="missing_shipping"
      )

    result = await self.submit_fulfillment(order, order_data)
    if not result.success:
      return ReconcileResult(
          status=RESULT_FAILED, order_id=order.id, detail=result.error_type
      )

    self.ledger.mark_processed(session_id)
    if not await self.link_fulfillment(order, result.fulfillment_order_id):
      return ReconcileResult(
          status=RESULT_FAILED, order_id=order.id, detail="link_failed"
      )
    await self.send_confirmation(order)
    return ReconcileResult(status=RESULT_PROCESSED, order_id=order.id)

  async def fetch_session(self, checkout: Dict[str, Any]) -> Dict[str, Any]:
    """Returns the full session, or the webhook copy if retrieval fails."""
    full_session = await self.gateway.retrieve_session(checkout["id"])
    if full_session is None:
      logger.warning(
          "Could not retrieve session %s, using webhook payload",
          checkout["id"],
      )
      return checkout
    return full_session

  async def record_order(self, checkout: Dict[str, Any]) -> db.Order:
    """Persists the order for a session.

    Raises:
      DuplicateOrderError: Another delivery already recorded this session.
      InvalidRequestError: The session has no customer email.
    """
    params = build_order_params(checkout)
    order = await db.create_order(self.session, params)
    logger.info("Created order %s for session %s", order.id, checkout["id"])
    return order

  def build_submission(
      self, checkout: Dict[str, Any], catalog_variant_id: int
  ) -> Optional[FulfillmentOrderData]:
    """Builds the Printful payload, addressed by catalog variant id."""
    order_data = payment_gateway.build_fulfillment_order(checkout)
    if order_data is None:
      return None
    order_data.items = [
        FulfillmentItem(variant_id=catalog_variant_id, quantity=item.quantity)
        for item in order_data.items
    ]
    return order_data

  async def submit_fulfillment(
      self, order: db.Order, order_data: FulfillmentOrderData
  ) -> SubmissionResult:
    """Submits to Printful, recording and alerting on failure."""
    result = await self.printful.submit_order(order_data)
    if result.success:
      return result

    await db.append_event(
        self.session,
        order.id,
        OrderEventType.FAILED,
        EventOutcome.FAILED,
        f"Printful order creation failed: {result.error}",
        {"error": result.error, "error_type": result.error_type},
    )
    await self._alert(
        "Failed to create Printful order",
        f"Printful order creation failed for order {order.id}:"
        f" {result.error}",
        {
            "session_id": order.stripe_session_id,
            "order_id": order.id,
            "customer_email": order.customer_email,
            "error_type": result.error_type,
            "printful_dashboard": PRINTFUL_DASHBOARD_URL,
        },
    )
    return result

  async def link_fulfillment(
      self, order: db.Order, fulfillment_order_id: str
  ) -> bool:
    """Attaches the Printful order id; alerts if the link cannot be saved."""
    try:
      await db.attach_fulfillment_id(
          self.session, order.id, fulfillment_order_id
      )
      return True
    except (
        InvalidStatusTransitionError,
        ResourceNotFoundError,
        SQLAlchemyError,
    ) as e:
      logger.error(
          "Printful order %s created but not linked to order %s: %s",
          fulfillment_order_id,
          order.id,
          e,
      )
      await self._alert(
          "Printful order not linked",
          f"Printful order {fulfillment_order_id} was created but could not"
          f" be attached to order {order.id}: {e}",
          {
              "order_id": order.id,
              "printful_order_id": fulfillment_order_id,
          },
      )
      return False

  async def send_confirmation(self, order: db.Order) -> None:
    try:
      result = await self.notifier.send_order_confirmation(order)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Confirmation email for order %s failed: %s", order.id, e)
      return
    if result.sent:
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.NOTIFICATION_SENT,
          EventOutcome.SUCCESS,
          "Order confirmation sent",
          {"to": order.customer_email},
      )

  async def handle_async_payment_failed(
      self, checkout: Dict[str, Any]
  ) -> ReconcileResult:
    """Notifies customer and operator that a delayed payment failed."""
    session_id = checkout.get("id")
    email = self._customer_email(checkout)
    error = (checkout.get("last_payment_error") or {}).get("message")

    if email:
      try:
        await self.notifier.send_payment_failure(email, session_id)
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("Payment failure email for %s failed: %s", session_id, e)

    metadata = {
        "session_id": session_id,
        "customer_email": email,
        "error": error,
    }
    await self._alert(
        "Async payment failed",
        f"Async payment failed for session {session_id}.",
        metadata,
    )
    order = await db.log_failed_order(
        self.session,
        session_id,
        OrderEventType.FAILED,
        "Async payment failed",
        metadata,
    )
    return ReconcileResult(
        status=RESULT_PROCESSED,
        order_id=order.id if order else None,
        detail="payment_failed",
    )

  @staticmethod
  def _customer_email(checkout: Dict[str, Any]) -> Optional[str]:
    customer = checkout.get("customer_details") or {}
    return customer.get("email") or checkout.get("customer_email")

  async def _alert(
      self, subject: str, message: str, metadata: Dict[str, Any]
  ) -> None:
    try:
      await self.notifier.send_admin_alert(subject, message, metadata)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Admin alert %r failed: %s", subject, e)


class FulfillmentReconciler:
  """Handles Printful order events."""

  def __init__(self, session: AsyncSession, notifier: NotificationService):
    self.session = session
    self.notifier = notifier
    self._handlers: Dict[
        str, Callable[[db.Order, Dict[str, Any]], Awaitable[None]]
    ] = {
        "package_shipped": self._on_package_shipped,
        "package_returned": self._on_package_returned,
        "order_failed": self._on_order_failed,
        "order_canceled": self._on_order_canceled,
    }

  async def handle_event(
      self,
      event_type: str,
      printful_order_id: str,
      data: Dict[str, Any],
  ) -> ReconcileResult:
    """Applies one Printful event to the order it references."""
    order = await db.find_by_fulfillment_id(self.session, printful_order_id)
    if not order:
      logger.warning(
          "No order for Printful order %s (%s)", printful_order_id, event_type
      )
      return ReconcileResult(status=RESULT_NOT_FOUND)

    handler = self._handlers.get(event_type)
    if handler is None:
      logger.info("Ignoring Printful event type %s", event_type)
      return ReconcileResult(
          status=RESULT_IGNORED, order_id=order.id, detail=event_type
      )

    logger.info("Applying %s to order %s", event_type, order.id)
    await handler(order, data)
    return ReconcileResult(status=RESULT_PROCESSED, order_id=order.id)

  async def _transition(
      self,
      order: db.Order,
      new_status: OrderStatus,
      metadata: Optional[Dict[str, Any]] = None,
  ) -> bool:
    """Moves the order, recording rejected transitions instead of raising."""
    try:
      await db.update_status(self.session, order.id, new_status, metadata)
      return True
    except InvalidStatusTransitionError as e:
      logger.warning("Rejected status change: %s", e.message)
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.STATUS_CHANGED,
          EventOutcome.FAILED,
          f"Rejected transition from {e.current} to {e.requested}",
          {"current_status": e.current, "requested_status": e.requested},
      )
      return False

  async def _on_package_shipped(
      self, order: db.Order, data: Dict[str, Any]
  ) -> None:
    shipment = data.get("shipment") or {}
    tracking = {
        key: shipment[key]
        for key in ("tracking_number", "tracking_url", "carrier", "service")
        if shipment.get(key) is not None
    }
    if await self._transition(order, OrderStatus.SHIPPED, tracking):
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.SHIPPED,
          EventOutcome.SUCCESS,
          "Package shipped",
          tracking,
      )

  async def _on_package_returned(
      self, order: db.Order, data: Dict[str, Any]
  ) -> None:
    reason = data.get("reason")
    if not await self._transition(order, OrderStatus.RETURNED):
      return
    await db.append_event(
        self.session,
        order.id,
        OrderEventType.RETURNED,
        EventOutcome.SUCCESS,
        "Package returned",
        {"reason": reason} if reason else {},
    )
    await self._alert(
        "Package returned",
        f"Printful reported order {order.printful_order_id} returned"
        f" (order {order.id}, {order.customer_email}).",
        {
            "order_id": order.id,
            "printful_order_id": order.printful_order_id,
            "reason": reason,
        },
    )

  async def _on_order_failed(
      self, order: db.Order, data: Dict[str, Any]
  ) -> None:
    reason = data.get("reason") or "Unknown reason"
    if not await self._transition(
        order, OrderStatus.FAILED, {"failure_reason": reason}
    ):
      return
    await db.append_event(
        self.session,
        order.id,
        OrderEventType.FAILED,
        EventOutcome.FAILED,
        f"Printful order failed: {reason}",
        {"reason": reason},
    )
    await self._alert(
        "Printful order failed",
        f"Printful order {order.printful_order_id} failed: {reason}",
        {
            "order_id": order.id,
            "printful_order_id": order.printful_order_id,
            "customer_email": order.customer_email,
            "printful_dashboard": PRINTFUL_DASHBOARD_URL,
        },
    )

  async def _on_order_canceled(
      self, order: db.Order, data: Dict[str, Any]
  ) -> None:
    reason = data.get("reason")
    if await self._transition(order, OrderStatus.CANCELLED):
      await db.append_event(
          self.session,
          order.id,
          OrderEventType.CANCELLED,
          EventOutcome.SUCCESS,
          "Printful order canceled",
          {"reason": reason} if reason else {},
      )

  async def _alert(
      self, subject: str, message: str, metadata: Dict[str, Any]
  ) -> None:
    try:
      await self.notifier.send_admin_alert(subject, message, metadata)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Admin alert %r failed: %s", subject, e)
