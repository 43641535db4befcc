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

"""Utility script to reconcile order status by polling Printful.

Webhooks can be lost. This script asks Printful for the current status of every
order that was submitted but has not settled, and feeds any change through the
same handler the Printful webhook uses, so the transition table still applies.

Usage:
  python -m merch_fulfillment.sync_orders --database_path=... [--dry_run]
"""

import asyncio
import logging
import sys
from typing import Any, Dict, Optional
from absl import app as absl_app
from absl import flags
from merch_fulfillment import config
from merch_fulfillment import db
from merch_fulfillment.enums import OrderStatus
from merch_fulfillment.models import FulfillmentOrderStatus
from merch_fulfillment.services.notification_service import NotificationService
from merch_fulfillment.services.printful_client import PrintfulClient
from merch_fulfillment.services.reconciler import FulfillmentReconciler
from sqlalchemy.ext.asyncio import AsyncSession

FLAGS = flags.FLAGS
flags.DEFINE_bool("dry_run", False, "Report changes without applying them")

logger = logging.getLogger(__name__)

# Printful order status -> (webhook event type, resulting order status).
STATUS_EVENTS = {
    "fulfilled": ("package_shipped", OrderStatus.SHIPPED),
    "canceled": ("order_canceled", OrderStatus.CANCELLED),
    "failed": ("order_failed", OrderStatus.FAILED),
}


def event_for_status(
    remote: FulfillmentOrderStatus,
) -> Optional[tuple[str, OrderStatus, Dict[str, Any]]]:
  """Maps a polled Printful status onto the equivalent webhook event."""
  mapping = STATUS_EVENTS.get(remote.status)
  if mapping is None:
    return None
  event_type, new_status = mapping
  data: Dict[str, Any] = {}
  if event_type == "package_shipped":
    data["shipment"] = {
        "tracking_number": remote.tracking_number,
        "tracking_url": remote.tracking_url,
        "carrier": remote.carrier,
        "service": remote.service,
    }
  elif event_type == "order_failed":
    data["reason"] = "Reported failed by status sync"
  return event_type, new_status, data


async def sync_orders(
    session: AsyncSession,
    printful: PrintfulClient,
    notifier: NotificationService,
    dry_run: bool = False,
) -> int:
  """Applies remote status changes; returns how many orders changed."""
  reconciler = FulfillmentReconciler(session, notifier)
  changed = 0
  for order in await db.list_orders_awaiting_fulfillment(session):
    remote = await printful.get_order_status(order.printful_order_id)
    if remote is None:
      print(f"{order.id}: could not fetch Printful order")
      continue
    event = event_for_status(remote)
    if event is None or event[1].value == order.status:
      print(f"{order.id}: {order.status} (Printful: {remote.status})")
      continue

    event_type, new_status, data = event
    print(f"{order.id}: {order.status} -> {new_status.value}")
    changed += 1
    if dry_run:
      continue
    result = await reconciler.handle_event(
        event_type, order.printful_order_id, data
    )
    logger.info("Sync applied %s to %s: %s", event_type, order.id, result)
  return changed


async def run_sync():
  """Polls Printful for every unsettled order."""
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  settings = config.get_settings()
  printful = PrintfulClient(
      settings.printful_api_key, settings.printful_api_base
  )
  notifier = NotificationService(settings)

  await db.manager.init_db(FLAGS.database_path)
  try:
    async with db.manager.session_factory() as session:
      changed = await sync_orders(session, printful, notifier, FLAGS.dry_run)
  finally:
    await db.manager.close()
  print(f"{'Would update' if FLAGS.dry_run else 'Updated'} {changed} orders.")


def main(argv):
  """Main entry point for the order sync script."""
  del argv
  logging.basicConfig(level=logging.INFO)
  asyncio.run(run_sync())


if __name__ == "__main__":
  absl_app.run(main)
