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

"""FastAPI dependencies for the merch fulfillment server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Settings resolution from parsed flags.
- Database session management for the orders DB.
- Service instantiation (Stripe, Printful, email) from settings.
- The webhook reconcilers, wired to the process-wide idempotency ledger.
"""

from typing import AsyncGenerator

from fastapi import Depends
from merch_fulfillment import config
from merch_fulfillment import db
from merch_fulfillment.services.idempotency import IdempotencyLedger
from merch_fulfillment.services.idempotency import ledger
from merch_fulfillment.services.notification_service import NotificationService
from merch_fulfillment.services.payment_gateway import StripeGateway
from merch_fulfillment.services.printful_client import PrintfulClient
from merch_fulfillment.services.reconciler import FulfillmentReconciler
from merch_fulfillment.services.reconciler import PaymentReconciler
from sqlalchemy.ext.asyncio import AsyncSession


def get_settings() -> config.Settings:
  """Dependency provider for the server settings."""
  return config.get_settings()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for an orders DB session."""
  async with db.manager.session_factory() as session:
    yield session


def get_ledger() -> IdempotencyLedger:
  """Dependency provider for the process-wide idempotency ledger."""
  return ledger


def get_stripe_gateway(
    settings: config.Settings = Depends(get_settings),
) -> StripeGateway:
  """Dependency provider for StripeGateway."""
  return StripeGateway(
      settings.stripe_secret_key, settings.stripe_webhook_secret
  )


def get_printful_client(
    settings: config.Settings = Depends(get_settings),
) -> PrintfulClient:
  """Dependency provider for PrintfulClient."""
  return PrintfulClient(settings.printful_api_key, settings.printful_api_base)


def get_notification_service(
    settings: config.Settings = Depends(get_settings),
) -> NotificationService:
  """Dependency provider for NotificationService."""
  return NotificationService(settings)


def get_payment_reconciler(
    session: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    printful: PrintfulClient = Depends(get_printful_client),
    notifier: NotificationService = Depends(get_notification_service),
    idempotency_ledger: IdempotencyLedger = Depends(get_ledger),
) -> PaymentReconciler:
  """Dependency provider for PaymentReconciler."""
  return PaymentReconciler(
      session, gateway, printful, notifier, idempotency_ledger
  )


def get_fulfillment_reconciler(
    session: AsyncSession = Depends(get_db),
    notifier: NotificationService = Depends(get_notification_service),
) -> FulfillmentReconciler:
  """Dependency provider for FulfillmentReconciler."""
  return FulfillmentReconciler(session, notifier)
