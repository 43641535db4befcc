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

"""Checkout routes for the merch fulfillment server."""

from fastapi import APIRouter
from fastapi import Depends
from merch_fulfillment import config
from merch_fulfillment import dependencies
from merch_fulfillment.models import CheckoutRequest
from merch_fulfillment.models import CheckoutResponse
from merch_fulfillment.services.payment_gateway import StripeGateway

router = APIRouter()


@router.post(
    "/api/checkout",
    response_model=CheckoutResponse,
    operation_id="create_checkout",
)
async def create_checkout(
    request: CheckoutRequest,
    settings: config.Settings = Depends(dependencies.get_settings),
    gateway: StripeGateway = Depends(dependencies.get_stripe_gateway),
) -> CheckoutResponse:
  """Start a hosted Stripe checkout for one product variant."""
  session = await gateway.create_checkout_session(
      request, settings.base_url, settings.success_path, settings.cancel_path
  )
  return CheckoutResponse(session_id=session["id"], url=session["url"])
