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

"""Pydantic models exchanged between the server's services.

These cover the parameters for recording an order, the payload submitted to
the fulfillment provider, the structured results returned by each pipeline
step, and the request/response bodies of the checkout endpoint.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pydantic import Field


class ShippingAddress(BaseModel):
  """Shipping address as recorded on the order."""

  name: str
  line1: str
  line2: Optional[str] = None
  city: str
  state: str
  postal_code: str
  country: str


class OrderItemParams(BaseModel):
  printful_product_id: str
  printful_variant_id: str
  name: str
  quantity: int
  price_cents: int
  image_url: Optional[str] = None


class CreateOrderParams(BaseModel):
  """Everything needed to persist an order for a checkout session."""

  stripe_session_id: str
  stripe_payment_intent_id: Optional[str] = None
  customer_email: str
  customer_name: Optional[str] = None
  total_amount_cents: int
  currency: str = "usd"
  shipping_address: Optional[ShippingAddress] = None
  items: List[OrderItemParams] = []
  metadata: Dict[str, Any] = {}


class FulfillmentRecipient(BaseModel):
  name: str
  address1: str
  address2: Optional[str] = None
  city: str
  state_code: str
  country_code: str
  zip: str
  phone: Optional[str] = None
  email: str


class FulfillmentItem(BaseModel):
  sync_variant_id: Optional[int] = None
  variant_id: Optional[int] = None
  quantity: int = 1


class FulfillmentOrderData(BaseModel):
  """Order payload accepted by the Printful `POST /orders` endpoint."""

  recipient: FulfillmentRecipient
  items: List[FulfillmentItem]


class SubmissionResult(BaseModel):
  success: bool
  fulfillment_order_id: Optional[str] = None
  error: Optional[str] = None
  error_type: Optional[str] = None


class FulfillmentOrderStatus(BaseModel):
  status: str
  tracking_number: Optional[str] = None
  tracking_url: Optional[str] = None
  carrier: Optional[str] = None
  service: Optional[str] = None


class NotificationResult(BaseModel):
  sent: bool
  reason: Optional[str] = None


class ReconcileResult(BaseModel):
  """Outcome of reconciling one webhook event.

  `status` is one of: processed, duplicate, deferred, ignored, failed,
  not_found.
  """

  status: str
  order_id: Optional[str] = None
  detail: Optional[str] = None


class ShippingEstimate(BaseModel):
  shipping: float
  tax: float


class CheckoutRequest(BaseModel):
  """Request body for starting a hosted checkout."""

  product_id: str = Field(alias="productId")
  variant_id: str = Field(alias="variantId")
  product_name: str = Field(alias="productName")
  price: int = Field(gt=0, description="Retail price in cents")
  quantity: int = Field(default=1, gt=0)
  image_url: Optional[str] = Field(default=None, alias="imageUrl")
  shipping_estimate: Optional[ShippingEstimate] = Field(
      default=None, alias="shippingEstimate"
  )

  model_config = {"populate_by_name": True}


class CheckoutResponse(BaseModel):
  session_id: str = Field(serialization_alias="sessionId")
  url: Optional[str] = None
