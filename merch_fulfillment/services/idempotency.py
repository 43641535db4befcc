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

"""In-memory record of checkout sessions that already reached fulfillment.

This is a process-local fast path for webhook retry storms. It is not the
system of record: a restart or a second instance forgets it, and the unique
session id on the `orders` table remains the real guarantee.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


class IdempotencyLedger:
  """Bounded set of processed Stripe session ids."""

  def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
    self.max_entries = max_entries
    # Insertion-ordered; values are unused.
    self._sessions: Dict[str, None] = {}

  def __len__(self) -> int:
    return len(self._sessions)

  def has_processed(self, session_id: str) -> bool:
    return session_id in self._sessions

  def mark_processed(self, session_id: str) -> None:
    """Marks a session processed, evicting the oldest half when full."""
    self._sessions.pop(session_id, None)
    self._sessions[session_id] = None
    if len(self._sessions) > self.max_entries:
      keep = list(self._sessions)[-max(1, self.max_entries // 2) :]
      self._sessions = dict.fromkeys(keep)
      logger.info(
          "Idempotency ledger trimmed to %d most recent sessions", len(keep)
      )

  def clear(self) -> None:
    self._sessions.clear()


# Process-wide ledger shared by all webhook deliveries.
ledger = IdempotencyLedger()
