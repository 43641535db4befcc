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

"""Client for the Printful REST API.

This module covers the three calls the order pipeline makes to Printful:
resolving a store (sync) variant to its catalog variant, submitting a
fulfillment order, and polling an order's status. None of them raise for
provider or network failures; callers get `None` or a `SubmissionResult`
describing what went wrong.
"""

import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from merch_fulfillment.models import FulfillmentOrderData
from merch_fulfillment.models import FulfillmentOrderStatus
from merch_fulfillment.models import SubmissionResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Submission failure categories. The operator response differs: provider
# rejections need a data fix, transport failures need a retry.
ERROR_NOT_CONFIGURED = "not_configured"
ERROR_PROVIDER_REJECTED = "provider_rejected"
ERROR_INVALID_RESPONSE = "invalid_response"
ERROR_TRANSPORT = "transport"


def _to_int(value: Any) -> Optional[int]:
  if value is None or isinstance(value, bool):
    return None
  try:
    return int(value)
  except (TypeError, ValueError):
    return None


def _direct_variant_id(variant: Dict[str, Any]) -> Optional[int]:
  return _to_int(variant.get("variant_id"))


def _product_variant_id(variant: Dict[str, Any]) -> Optional[int]:
  product = variant.get("product")
  if not isinstance(product, dict):
    return None
  return _to_int(product.get("variant_id"))


# Printful is inconsistent about where the catalog id lives; tried in order.
CATALOG_ID_STRATEGIES: List[Callable[[Dict[str, Any]], Optional[int]]] = [
    _direct_variant_id,
    _product_variant_id,
]


def extract_catalog_variant_id(variant: Dict[str, Any]) -> Optional[int]:
  """Returns the first catalog variant id found by the extraction strategies."""
  for strategy in CATALOG_ID_STRATEGIES:
    catalog_id = strategy(variant)
    if catalog_id:
      return catalog_id
  return None


def verify_webhook_signature(
    payload: bytes, signature: Optional[str], secret: str
) -> bool:
  """Checks a hex HMAC-SHA256 of the raw body against the signature header."""
  if not signature:
    return False
  expected = hmac.new(
      secret.encode("utf-8"), payload, digestmod=hashlib.sha256
  ).hexdigest()
  return hmac.compare_digest(expected, signature.strip().lower())


class PrintfulClient:
  """Bearer-token authenticated Printful API client."""

  def __init__(
      self,
      api_key: Optional[str],
      api_base: str = "https://api.printful.com",
      transport: Optional[httpx.AsyncBaseTransport] = None,
      timeout: float = DEFAULT_TIMEOUT,
  ):
    self.api_key = api_key
    self.api_base = api_base.rstrip("/")
    self._transport = transport
    self._timeout = timeout

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=self.api_base,
        headers={
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        },
        timeout=self._timeout,
        transport=self._transport,
    )

  async def resolve_catalog_variant(
      self, sync_variant_id: str
  ) -> Optional[int]:
    """Resolves a sync variant id to the catalog id Printful orders need.

    Args:
      sync_variant_id: The store-specific variant id from checkout metadata.

    Returns:
      The catalog variant id, or None when the variant is unknown, the id is
      missing from the response, or the call failed. Callers treat all of
      these the same way.
    """
    if not self.api_key:
      logger.error("Printful API key not configured, cannot resolve variants")
      return None

    try:
      async with self._client() as client:
        response = await client.get(f"/store/variants/{sync_variant_id}")
    except httpx.HTTPError as e:
      logger.error(
          "Network error resolving sync variant %s: %s", sync_variant_id, e
      )
      return None

    if response.status_code == 404:
      logger.error("Sync variant %s not found in Printful", sync_variant_id)
      return None
    if response.status_code != 200:
      logger.error(
          "Failed to fetch sync variant %s: status %d, body %s",
          sync_variant_id,
          response.status_code,
          response.text[:500],
      )
      return None

    try:
      result = response.json().get("result") or {}
      variant = result.get("sync_variant", result)
    except (ValueError, AttributeError) as e:
      logger.error("Invalid JSON for sync variant %s: %s", sync_variant_id, e)
      return None

    if not isinstance(variant, dict):
      variant = {}
    catalog_id = extract_catalog_variant_id(variant)
    if not catalog_id:
      logger.error("No catalog variant id in sync variant %s", sync_variant_id)
      return None

    logger.info(
        "Resolved sync variant %s to catalog variant %s",
        sync_variant_id,
        catalog_id,
    )
    return catalog_id

  async def submit_order(
      self, order_data: FulfillmentOrderData
  ) -> SubmissionResult:
    """Submits a fulfillment order; never raises."""
    if not self.api_key:
      logger.error("Printful API key not configured, cannot submit order")
      return SubmissionResult(
          success=False,
          error="Printful not configured",
          error_type=ERROR_NOT_CONFIGURED,
      )

    payload = order_data.model_dump(mode="json", exclude_none=True)
    logger.info(
        "Submitting order to Printful for %s", order_data.recipient.email
    )
    try:
      async with self._client() as client:
        response = await client.post("/orders", json=payload)
    except httpx.HTTPError as e:
      logger.error("Network error submitting Printful order: %s", e)
      return SubmissionResult(
          success=False,
          error=str(e) or type(e).__name__,
          error_type=ERROR_TRANSPORT,
      )

    if not response.is_success:
      logger.error(
          "Printful order creation failed: %d %s",
          response.status_code,
          response.text[:1000],
      )
      return SubmissionResult(
          success=False,
          error=(
              f"Printful API error: {response.status_code}:"
              f" {response.text[:1000]}"
          ),
          error_type=ERROR_PROVIDER_REJECTED,
      )

    try:
      order_id = (response.json().get("result") or {}).get("id")
    except (ValueError, AttributeError) as e:
      logger.error("Invalid JSON from Printful order creation: %s", e)
      order_id = None

    if not order_id:
      logger.error("No order ID returned from Printful")
      return SubmissionResult(
          success=False,
          error="No order ID returned",
          error_type=ERROR_INVALID_RESPONSE,
      )

    logger.info("Printful order created successfully: %s", order_id)
    return SubmissionResult(success=True, fulfillment_order_id=str(order_id))

  async def get_order_status(
      self, printful_order_id: str
  ) -> Optional[FulfillmentOrderStatus]:
    """Fetches the current status and first shipment of a Printful order."""
    if not self.api_key:
      return None

    try:
      async with self._client() as client:
        response = await client.get(f"/orders/{printful_order_id}")
      if response.status_code != 200:
        logger.warning(
            "Failed to fetch Printful order %s: status %d",
            printful_order_id,
            response.status_code,
        )
        return None
      order = response.json().get("result") or {}
    except (httpx.HTTPError, ValueError, AttributeError) as e:
      logger.error("Error fetching Printful order %s: %s", printful_order_id, e)
      return None

    shipments = order.get("shipments") or [{}]
    return FulfillmentOrderStatus(
        status=order.get("status", "unknown"),
        tracking_number=shipments[0].get("tracking_number"),
        tracking_url=shipments[0].get("tracking_url"),
        carrier=shipments[0].get("carrier"),
        service=shipments[0].get("service"),
    )
