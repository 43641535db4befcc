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

"""Utility script to dump orders and their event trail.

This script reads from the configured orders SQLite database and prints every
order with its items and the full sequence of recorded events. It is the
forensic view for reconstructing what happened to a payment.

Usage:
  python -m merch_fulfillment.dump_orders --database_path=...
"""

import asyncio
import json
import sys
from absl import app as absl_app
from merch_fulfillment import config
from merch_fulfillment import db


async def dump_orders():
  """Queries the database and prints all orders."""
  if not config.FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  await db.manager.init_db(config.FLAGS.database_path)
  try:
    async with db.manager.session_factory() as session:
      orders = await db.list_orders(session)

      if not orders:
        print("No orders found.")
        return

      for order in orders:
        print(f"Order: {order.id} [{order.status}]")
        print(f"  Session: {order.stripe_session_id}")
        print(f"  Printful: {order.printful_order_id or '(not submitted)'}")
        print(f"  Customer: {order.customer_email}")
        print(f"  Total: ${order.total_amount} {order.currency.upper()}")
        for item in order.items:
          print(
              f"  - {item.name} (variant {item.printful_variant_id})"
              f" x{item.quantity} @ ${item.price}"
          )
        for event in order.events:
          print(
              f"  {event.created_at} {event.event_type} [{event.outcome}]"
              f" {event.message or ''}"
          )
          if event.event_metadata:
            print(f"    {json.dumps(event.event_metadata, default=str)}")
        print("-" * 60)
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the order dump script."""
  del argv
  asyncio.run(dump_orders())


if __name__ == "__main__":
  absl_app.run(main)
