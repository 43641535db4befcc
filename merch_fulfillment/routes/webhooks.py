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

"""Inbound webhook routes for the payment and fulfillment providers.

Both endpoints read the raw body, since signatures are computed over the exact
bytes received. Once a delivery is verified the endpoint always answers 200:
providers retry on any other status, and failures after that point are
reported to the operator instead.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.responses import PlainTextResponse
from merch_fulfillment import config
from merch_fulfillment import dependencies
from merch_fulfillment.exceptions import WebhookVerificationError
from merch_fulfillment.services import printful_client
from merch_fulfillment.services.payment_gateway import StripeGateway
from merch_fulfillment.services.reconciler import FulfillmentReconciler
from merch_fulfillment.services.reconciler import PaymentReconciler
from merch_fulfillment.services.reconciler import RESULT_DUPLICATE
from merch_fulfillment.services.reconciler import RESULT_NOT_FOUND

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/stripe/webhook", operation_id="stripe_webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    gateway: StripeGateway = Depends(dependencies.get_stripe_gateway),
    reconciler: PaymentReconciler = Depends(
        dependencies.get_payment_reconciler
    ),
):
  """Receives Stripe Checkout events."""
  payload = await request.body()
  try:
    event = gateway.construct_event(payload, stripe_signature)
  except WebhookVerificationError as e:
    logger.warning("Rejected Stripe webhook: %s", e.message)
    return PlainTextResponse(e.message, status_code=e.status_code)

  logger.info("Stripe webhook %s (%s)", event.get("type"), event.get("id"))
  body: Dict[str, Any] = {"received": True}
  try:
    result = await reconciler.handle_event(event)
    if result.status == RESULT_DUPLICATE:
      body["duplicate"] = True
  except Exception as e:  # pylint: disable=broad-exception-caught
    logger.exception("Error processing Stripe event %s: %s", event.get("id"), e)
  return body


@router.post("/api/webhooks/printful", operation_id="printful_webhook")
async def printful_webhook(
    request: Request,
    printful_signature: Optional[str] = Header(
        None, alias="X-Printful-Signature"
    ),
    settings: config.Settings = Depends(dependencies.get_settings),
    reconciler: FulfillmentReconciler = Depends(
        dependencies.get_fulfillment_reconciler
    ),
):
  """Receives Printful order events."""
  payload = await request.body()
  secret = settings.printful_webhook_secret
  if secret:
    if not printful_client.verify_webhook_signature(
        payload, printful_signature, secret
    ):
      logger.warning("Rejected Printful webhook with invalid signature")
      return JSONResponse(
          status_code=401, content={"error": "Invalid signature"}
      )
  else:
    logger.warning("Printful webhook secret not configured, accepting unsigned")

  try:
    event = json.loads(payload)
  except ValueError:
    return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
  if not isinstance(event, dict):
    return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

  event_type = event.get("type")
  data = event.get("data") or {}
  order_ref = data.get("order") if isinstance(data, dict) else None
  printful_order_id = (
      order_ref.get("id") if isinstance(order_ref, dict) else None
  )
  if not printful_order_id:
    logger.warning("Printful webhook %s has no order id", event_type)
    return JSONResponse(status_code=400, content={"error": "Missing order ID"})

  logger.info(
      "Printful webhook %s for order %s", event_type, printful_order_id
  )
  body: Dict[str, Any] = {"received": True}
  try:
    result = await reconciler.handle_event(
        str(event_type), str(printful_order_id), data
    )
    if result.status == RESULT_NOT_FOUND:
      body["warning"] = "Order not found"
  except Exception as e:  # pylint: disable=broad-exception-caught
    logger.exception(
        "Error processing Printful event for order %s: %s",
        printful_order_id,
        e,
    )
  return body
