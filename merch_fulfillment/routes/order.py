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

"""Order lookup routes for the merch fulfillment server."""

from typing import Any

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from merch_fulfillment import db
from merch_fulfillment import dependencies
from merch_fulfillment.exceptions import ResourceNotFoundError
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter()


@router.get(
    "/api/orders/by-session/{session_id}",
    response_model=dict[str, Any],
    operation_id="get_order_by_session",
)
async def get_order_by_session(
    session_id: str = Path(...),
    session: AsyncSession = Depends(dependencies.get_db),
) -> dict[str, Any]:
  """Get the order created for a Stripe checkout session."""
  order = await db.find_by_session_id(session, session_id)
  if not order:
    raise ResourceNotFoundError(f"No order for session {session_id}")
  return order.to_dict()


@router.get(
    "/api/orders/{id}",
    response_model=dict[str, Any],
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    session: AsyncSession = Depends(dependencies.get_db),
) -> dict[str, Any]:
  """Get an order by ID."""
  order = await db.get_order(session, order_id)
  if not order:
    raise ResourceNotFoundError(f"Order {order_id} not found")
  return order.to_dict()
