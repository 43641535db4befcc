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

"""Database management and order repository for the merch fulfillment server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup for the orders database.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so concurrent
  webhook deliveries do not block each other on reads.
- Declarative Models: `orders`, `order_items` and the append-only
  `order_events` trail. The Stripe session id is unique at the schema level;
  that constraint, not application logic, is what guarantees one order per
  payment.
- Data Access Helpers: asynchronous functions that create orders, move them
  through the status transition table and record every step as an event.
"""

import datetime
from decimal import Decimal
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
import uuid

from merch_fulfillment.enums import can_transition
from merch_fulfillment.enums import EventOutcome
from merch_fulfillment.enums import OrderEventType
from merch_fulfillment.enums import OrderStatus
from merch_fulfillment.exceptions import DuplicateOrderError
from merch_fulfillment.exceptions import InvalidStatusTransitionError
from merch_fulfillment.exceptions import ResourceNotFoundError
from merch_fulfillment.models import CreateOrderParams
from sqlalchemy import Column
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, db_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{db_path}"
    self.engine = create_async_engine(url, echo=False)

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


def _now() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _cents_to_decimal(cents: Optional[int]) -> Decimal:
  return (Decimal(cents or 0) / 100).quantize(Decimal("0.01"))


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  stripe_session_id = Column(String, unique=True, nullable=False)
  stripe_payment_intent_id = Column(String, nullable=True)
  printful_order_id = Column(String, nullable=True, index=True)
  status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
  customer_email = Column(String, nullable=False, index=True)
  customer_name = Column(String, nullable=True)
  total_amount_cents = Column(Integer, nullable=False)
  currency = Column(String, nullable=False, default="usd")
  shipping_address = Column(JSON, nullable=True)
  # "metadata" is reserved on declarative classes.
  order_metadata = Column("metadata", JSON, nullable=True)
  created_at = Column(String)
  updated_at = Column(String)

  items = relationship(
      "OrderItem",
      back_populates="order",
      cascade="all, delete-orphan",
      lazy="selectin",
  )
  events = relationship(
      "OrderEvent",
      back_populates="order",
      cascade="all, delete-orphan",
      lazy="selectin",
      order_by="OrderEvent.id",
  )

  @property
  def total_amount(self) -> Decimal:
    return _cents_to_decimal(self.total_amount_cents)

  def to_dict(self, include_events: bool = True) -> Dict[str, Any]:
    data = {
        "id": self.id,
        "stripe_session_id": self.stripe_session_id,
        "stripe_payment_intent_id": self.stripe_payment_intent_id,
        "printful_order_id": self.printful_order_id,
        "status": self.status,
        "customer_email": self.customer_email,
        "customer_name": self.customer_name,
        "total_amount": str(self.total_amount),
        "currency": self.currency,
        "shipping_address": self.shipping_address,
        "metadata": self.order_metadata or {},
        "created_at": self.created_at,
        "updated_at": self.updated_at,
        "items": [item.to_dict() for item in self.items],
    }
    if include_events:
      data["events"] = [event.to_dict() for event in self.events]
    return data


class OrderItem(Base):
  __tablename__ = "order_items"

  id = Column(String, primary_key=True)
  order_id = Column(
      String, ForeignKey("orders.id", ondelete="CASCADE"), index=True
  )
  printful_product_id = Column(String, nullable=False)
  printful_variant_id = Column(String, nullable=False)
  name = Column(String, nullable=False)
  quantity = Column(Integer, nullable=False)
  price_cents = Column(Integer, nullable=False)  # Unit price in cents
  image_url = Column(String, nullable=True)
  created_at = Column(String)

  order = relationship("Order", back_populates="items")

  @property
  def price(self) -> Decimal:
    return _cents_to_decimal(self.price_cents)

  def to_dict(self) -> Dict[str, Any]:
    return {
        "id": self.id,
        "printful_product_id": self.printful_product_id,
        "printful_variant_id": self.printful_variant_id,
        "name": self.name,
        "quantity": self.quantity,
        "price": str(self.price),
        "image_url": self.image_url,
    }


class OrderEvent(Base):
  __tablename__ = "order_events"

  id = Column(Integer, primary_key=True, autoincrement=True)
  order_id = Column(
      String, ForeignKey("orders.id", ondelete="CASCADE"), index=True
  )
  event_type = Column(String, nullable=False, index=True)
  outcome = Column(String, nullable=False)
  message = Column(String, nullable=True)
  event_metadata = Column("metadata", JSON, nullable=True)
  created_at = Column(String)

  order = relationship("Order", back_populates="events")

  def to_dict(self) -> Dict[str, Any]:
    return {
        "id": self.id,
        "event_type": self.event_type,
        "outcome": self.outcome,
        "message": self.message,
        "metadata": self.event_metadata or {},
        "created_at": self.created_at,
    }


# --- Data Access Helpers ---


async def append_event(
    session: AsyncSession,
    order_id: str,
    event_type: OrderEventType | str,
    outcome: EventOutcome | str,
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
  """Appends an entry to an order's event trail.

  Never raises: a lost audit row must not abort the business change that
  produced it, so failures are only reported to the operational log.

  Args:
    session: The database session to use.
    order_id: The order the event belongs to.
    event_type: One of `OrderEventType` (free-form strings are accepted).
    outcome: `success` or `failed`.
    message: Human readable description.
    metadata: Optional structured context.
  """
  event_type = getattr(event_type, "value", event_type)
  event = OrderEvent(
      order_id=order_id,
      event_type=event_type,
      outcome=EventOutcome(outcome).value,
      message=message,
      event_metadata=metadata or {},
      created_at=_now(),
  )
  # Rolling back only the savepoint keeps the caller's loaded objects from
  # being expired, which async sessions cannot lazily reload.
  try:
    async with session.begin_nested():
      session.add(event)
  except SQLAlchemyError as e:
    logger.error(
        "Failed to record %s event for order %s: %s", event_type, order_id, e
    )
    return
  try:
    await session.commit()
  except SQLAlchemyError as e:
    await session.rollback()
    logger.error(
        "Failed to commit %s event for order %s: %s", event_type, order_id, e
    )


async def create_order(
    session: AsyncSession, params: CreateOrderParams
) -> Order:
  """Persists an order header and its items, then records a `created` event.

  Raises:
    DuplicateOrderError: An order already exists for the Stripe session.
  """
  now = _now()
  order = Order(
      id=str(uuid.uuid4()),
      stripe_session_id=params.stripe_session_id,
      stripe_payment_intent_id=params.stripe_payment_intent_id,
      status=OrderStatus.PENDING.value,
      customer_email=params.customer_email,
      customer_name=params.customer_name,
      total_amount_cents=params.total_amount_cents,
      currency=params.currency,
      shipping_address=(
          params.shipping_address.model_dump()
          if params.shipping_address
          else None
      ),
      order_metadata=dict(params.metadata),
      created_at=now,
      updated_at=now,
      items=[
          OrderItem(
              id=str(uuid.uuid4()),
              printful_product_id=item.printful_product_id,
              printful_variant_id=item.printful_variant_id,
              name=item.name,
              quantity=item.quantity,
              price_cents=item.price_cents,
              image_url=item.image_url,
              created_at=now,
          )
          for item in params.items
      ],
      events=[],
  )
  session.add(order)
  try:
    await session.commit()
  except IntegrityError as e:
    await session.rollback()
    raise DuplicateOrderError(params.stripe_session_id) from e

  await append_event(
      session,
      order.id,
      OrderEventType.CREATED,
      EventOutcome.SUCCESS,
      "Order created successfully",
      {"stripe_session_id": params.stripe_session_id},
  )
  return order


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def _require_order(session: AsyncSession, order_id: str) -> Order:
  order = await get_order(session, order_id)
  if not order:
    raise ResourceNotFoundError(f"Order {order_id} not found")
  return order


async def find_by_session_id(
    session: AsyncSession, stripe_session_id: str
) -> Optional[Order]:
  """Retrieves the order created for a Stripe checkout session."""
  result = await session.execute(
      select(Order).where(Order.stripe_session_id == stripe_session_id)
  )
  return result.scalar_one_or_none()


async def find_by_fulfillment_id(
    session: AsyncSession, printful_order_id: str
) -> Optional[Order]:
  """Retrieves the order linked to a Printful order."""
  result = await session.execute(
      select(Order).where(Order.printful_order_id == str(printful_order_id))
  )
  return result.scalars().first()


async def update_status(
    session: AsyncSession,
    order_id: str,
    new_status: OrderStatus | str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Order:
  """Moves an order to a new status and merges metadata into it.

  Raises:
    ResourceNotFoundError: The order does not exist.
    InvalidStatusTransitionError: The transition table forbids the change.
  """
  new_status = OrderStatus(new_status).value
  order = await _require_order(session, order_id)
  previous_status = order.status
  if not can_transition(previous_status, new_status):
    raise InvalidStatusTransitionError(order_id, previous_status, new_status)

  order.status = new_status
  if metadata:
    # Reassign so the JSON column is flagged dirty.
    order.order_metadata = {**(order.order_metadata or {}), **metadata}
  order.updated_at = _now()
  await session.commit()

  await append_event(
      session,
      order_id,
      OrderEventType.STATUS_CHANGED,
      EventOutcome.SUCCESS,
      f"Order status changed to {new_status}",
      {
          "previous_status": previous_status,
          "new_status": new_status,
          **(metadata or {}),
      },
  )
  return order


async def attach_fulfillment_id(
    session: AsyncSession, order_id: str, printful_order_id: str
) -> Order:
  """Links a submitted Printful order and moves the order to processing."""
  order = await _require_order(session, order_id)
  target = OrderStatus.PROCESSING.value
  if not can_transition(order.status, target):
    raise InvalidStatusTransitionError(order_id, order.status, target)

  order.printful_order_id = str(printful_order_id)
  order.status = target
  order.updated_at = _now()
  await session.commit()

  await append_event(
      session,
      order_id,
      OrderEventType.FULFILLMENT_CREATED,
      EventOutcome.SUCCESS,
      "Printful order created successfully",
      {"printful_order_id": str(printful_order_id)},
  )
  return order


async def log_failed_order(
    session: AsyncSession,
    stripe_session_id: str,
    event_type: OrderEventType | str,
    error_message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[Order]:
  """Records a failure against the order for a session, if one exists."""
  order = await find_by_session_id(session, stripe_session_id)
  if not order:
    logger.warning(
        "Order not found for session %s, failure not recorded: %s",
        stripe_session_id,
        error_message,
    )
    return None

  await append_event(
      session,
      order.id,
      event_type,
      EventOutcome.FAILED,
      error_message,
      metadata,
  )
  try:
    await update_status(
        session, order.id, OrderStatus.FAILED, {"error": error_message}
    )
  except InvalidStatusTransitionError as e:
    logger.warning("Not marking order %s failed: %s", order.id, e.message)
  return order


async def list_orders(session: AsyncSession) -> List[Order]:
  """Retrieves every order, oldest first."""
  result = await session.execute(select(Order).order_by(Order.created_at))
  return list(result.scalars().all())


async def list_orders_awaiting_fulfillment(
    session: AsyncSession,
) -> List[Order]:
  """Retrieves orders submitted to Printful that have not settled yet."""
  result = await session.execute(
      select(Order)
      .where(Order.printful_order_id.is_not(None))
      .where(
          Order.status.in_(
              [OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value]
          )
      )
      .order_by(Order.created_at)
  )
  return list(result.scalars().all())
