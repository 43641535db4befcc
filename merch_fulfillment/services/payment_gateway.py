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

"""Stripe integration for hosted checkout.

This module wraps the Stripe SDK for the three things the server needs from
the payment provider:
- Creating a Checkout Session that carries the Printful product and variant
  ids in its metadata.
- Verifying webhook signatures with `stripe.Webhook.construct_event`.
- Retrieving the full session, since webhook payloads omit shipping details.

It also converts a retrieved session into the recipient and item payload that
Printful accepts.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple

from merch_fulfillment.exceptions import PaymentProviderError
from merch_fulfillment.exceptions import ServiceNotConfiguredError
from merch_fulfillment.exceptions import WebhookVerificationError
from merch_fulfillment.models import CheckoutRequest
from merch_fulfillment.models import FulfillmentItem
from merch_fulfillment.models import FulfillmentOrderData
from merch_fulfillment.models import FulfillmentRecipient
import stripe

logger = logging.getLogger(__name__)

# Metadata keys written at checkout and read back by the webhook reconciler.
METADATA_PRODUCT_ID = "printful_product_id"
METADATA_VARIANT_ID = "printful_variant_id"
METADATA_QUANTITY = "quantity"

FALLBACK_SHIPPING_CENTS = 450
FALLBACK_TAX_PERCENT = 7
ALLOWED_SHIPPING_COUNTRIES = ["US", "CA", "GB", "AU"]


def compute_checkout_amounts(
    request: CheckoutRequest,
) -> Tuple[int, int, int]:
  """Returns (shipping_cents, tax_cents, total_cents) for a checkout."""
  subtotal = request.price * request.quantity
  if request.shipping_estimate:
    shipping_cents = round(request.shipping_estimate.shipping * 100)
    tax_cents = round(request.shipping_estimate.tax * 100)
  else:
    shipping_cents = FALLBACK_SHIPPING_CENTS
    # ceil(taxable * 7%), kept in integer cents.
    taxable = subtotal + shipping_cents
    tax_cents = (taxable * FALLBACK_TAX_PERCENT + 99) // 100
  return shipping_cents, tax_cents, subtotal + shipping_cents + tax_cents


def get_shipping_details(session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
  """Finds shipping details on a session across Stripe API versions."""
  shipping = session.get("shipping_details")
  if shipping:
    return shipping
  collected = session.get("collected_information") or {}
  return collected.get("shipping_details") or None


def get_order_quantity(session: Dict[str, Any]) -> int:
  """Reads the purchased quantity from metadata, then from line items."""
  metadata = session.get("metadata") or {}
  try:
    quantity = int(metadata.get(METADATA_QUANTITY) or 0)
  except ValueError:
    quantity = 0
  if quantity > 0:
    return quantity
  line_items = (session.get("line_items") or {}).get("data") or []
  if line_items:
    return int(line_items[0].get("quantity") or 1)
  return 1


def build_fulfillment_order(
    session: Dict[str, Any],
) -> Optional[FulfillmentOrderData]:
  """Builds a Printful order from a completed Checkout Session.

  Args:
    session: The retrieved Checkout Session as a plain dictionary.

  Returns:
    The recipient and item payload, or None if the session has no shipping or
    customer details or no Printful variant id in its metadata. A payment
    without these cannot be fulfilled automatically.
  """
  shipping = get_shipping_details(session)
  customer = session.get("customer_details")
  if not shipping or not customer:
    return None

  variant_id = (session.get("metadata") or {}).get(METADATA_VARIANT_ID)
  if not variant_id:
    return None
  try:
    sync_variant_id = int(variant_id)
  except ValueError:
    logger.error("Non-numeric Printful variant id %r", variant_id)
    return None

  address = shipping.get("address") or {}
  return FulfillmentOrderData(
      recipient=FulfillmentRecipient(
          name=shipping.get("name") or customer.get("name") or "Customer",
          address1=address.get("line1") or "",
          address2=address.get("line2"),
          city=address.get("city") or "",
          state_code=address.get("state") or "",
          country_code=address.get("country") or "US",
          zip=address.get("postal_code") or "",
          phone=customer.get("phone"),
          email=customer.get("email") or "",
      ),
      items=[
          FulfillmentItem(
              sync_variant_id=sync_variant_id,
              quantity=get_order_quantity(session),
          )
      ],
  )


class StripeGateway:
  """Thin wrapper over the Stripe SDK."""

  def __init__(
      self,
      secret_key: Optional[str],
      webhook_secret: Optional[str],
  ):
    self.webhook_secret = webhook_secret
    self._client: Optional[stripe.StripeClient] = None
    if secret_key:
      self._client = stripe.StripeClient(
          secret_key, http_client=stripe.HTTPXClient()
      )
    else:
      logger.warning("Stripe secret key not configured")

  @property
  def configured(self) -> bool:
    return self._client is not None

  def construct_event(
      self, payload: bytes, signature: Optional[str]
  ) -> Dict[str, Any]:
    """Verifies a webhook delivery and returns the event as a dictionary.

    Raises:
      WebhookVerificationError: The secret is not configured, the signature
        header is missing, or verification failed.
    """
    if not self.webhook_secret:
      raise WebhookVerificationError("Webhook secret not configured")
    if not signature:
      raise WebhookVerificationError("Missing stripe-signature header")
    try:
      stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
      event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
      raise WebhookVerificationError(f"Webhook Error: {e}") from e
    except ValueError as e:
      raise WebhookVerificationError("Webhook Error: invalid payload") from e
    if not isinstance(event, dict):
      raise WebhookVerificationError("Webhook Error: invalid payload")
    return event

  async def retrieve_session(self, session_id: str) -> Optional[Dict[str, Any]]:
    """Fetches a Checkout Session with line items and customer expanded."""
    if not self._client:
      return None
    try:
      session = await self._client.v1.checkout.sessions.retrieve_async(
          session_id, params={"expand": ["line_items", "customer"]}
      )
    except stripe.StripeError as e:
      logger.error("Error retrieving checkout session %s: %s", session_id, e)
      return None
    return session.to_dict()

  async def create_checkout_session(
      self,
      request: CheckoutRequest,
      base_url: str,
      success_path: str,
      cancel_path: str,
  ) -> Dict[str, Any]:
    """Creates a hosted Checkout Session for one Printful product.

    Shipping and tax are folded into a single line item so the customer is
    charged exactly the computed total.

    Raises:
      ServiceNotConfiguredError: Stripe has no secret key.
      PaymentProviderError: Stripe rejected the request.
    """
    if not self._client:
      raise ServiceNotConfiguredError("Stripe is not configured")

    shipping_cents, tax_cents, total_cents = compute_checkout_amounts(request)
    logger.info(
        "Checkout for %s x%d: shipping %d, tax %d, total %d cents",
        request.product_name,
        request.quantity,
        shipping_cents,
        tax_cents,
        total_cents,
    )
    metadata = {
        METADATA_PRODUCT_ID: request.product_id,
        METADATA_VARIANT_ID: request.variant_id,
        METADATA_QUANTITY: str(request.quantity),
        "retail_price_cents": str(request.price),
        "shipping_cents": str(shipping_cents),
        "tax_cents": str(tax_cents),
    }
    base_url = base_url.rstrip("/")
    params = {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{
            "price_data": {
                "currency": "usd",
                "product_data": {
                    "name": (
                        f"{request.product_name} x{request.quantity}"
                        " (includes shipping & tax)"
                    ),
                    "description": (
                        f"Shipping: ${shipping_cents / 100:.2f} | Tax:"
                        f" ${tax_cents / 100:.2f}"
                    ),
                    "images": [request.image_url] if request.image_url else [],
                    "metadata": metadata,
                },
                "unit_amount": total_cents,
            },
            "quantity": 1,
        }],
        "metadata": metadata,
        "success_url": (
            f"{base_url}{success_path}?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": f"{base_url}{cancel_path}",
        "shipping_address_collection": {
            "allowed_countries": ALLOWED_SHIPPING_COUNTRIES
        },
        "phone_number_collection": {"enabled": True},
        "billing_address_collection": "required",
    }
    try:
      session = await self._client.v1.checkout.sessions.create_async(
          params=params
      )
    except stripe.StripeError as e:
      logger.error("Error creating Stripe checkout session: %s", e)
      raise PaymentProviderError(
          f"Failed to create checkout session: {e}"
      ) from e
    return {"id": session.id, "url": session.url}
