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

"""Enumerations for the merch fulfillment server.

This module defines the order lifecycle states, the vocabulary of the order
event trail, and the table of status changes the server will accept.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  PROCESSING = "processing"
  SHIPPED = "shipped"
  COMPLETED = "completed"
  FAILED = "failed"
  RETURNED = "returned"
  CANCELLED = "cancelled"


class OrderEventType(str, enum.Enum):
  CREATED = "created"
  STATUS_CHANGED = "status_changed"
  FULFILLMENT_CREATED = "fulfillment_created"
  SHIPPED = "shipped"
  RETURNED = "returned"
  FAILED = "failed"
  CANCELLED = "cancelled"
  NOTIFICATION_SENT = "notification_sent"


class EventOutcome(str, enum.Enum):
  SUCCESS = "success"
  FAILED = "failed"


# Statuses not listed as a key accept no further transitions.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.RETURNED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.SHIPPED: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.RETURNED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.COMPLETED: frozenset({OrderStatus.RETURNED}),
    OrderStatus.FAILED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.RETURNED: frozenset({
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    }),
}


def can_transition(current: str, new: str) -> bool:
  """Returns True if an order in `current` may move to `new`.

  Re-applying the current status is always permitted so that replayed
  webhooks stay harmless.
  """
  current_status = OrderStatus(current)
  new_status = OrderStatus(new)
  if current_status == new_status:
    return True
  return new_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())
