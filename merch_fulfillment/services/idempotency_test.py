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

"""Tests for the idempotency ledger."""

from absl.testing import absltest
from merch_fulfillment.services.idempotency import IdempotencyLedger


class IdempotencyLedgerTest(absltest.TestCase):

  def test_marks_and_reports_processed_sessions(self):
    ledger = IdempotencyLedger()
    self.assertFalse(ledger.has_processed("cs_test_123"))
    ledger.mark_processed("cs_test_123")
    self.assertTrue(ledger.has_processed("cs_test_123"))
    self.assertFalse(ledger.has_processed("cs_test_456"))

  def test_marking_twice_keeps_one_entry(self):
    ledger = IdempotencyLedger()
    ledger.mark_processed("cs_test_123")
    ledger.mark_processed("cs_test_123")
    self.assertLen(ledger, 1)

  def test_evicts_oldest_half_when_bound_exceeded(self):
    ledger = IdempotencyLedger(max_entries=4)
    for i in range(5):
      ledger.mark_processed(f"cs_{i}")

    self.assertLen(ledger, 2)
    self.assertTrue(ledger.has_processed("cs_4"))
    self.assertTrue(ledger.has_processed("cs_3"))
    self.assertFalse(ledger.has_processed("cs_0"))

  def test_remarking_refreshes_recency(self):
    ledger = IdempotencyLedger(max_entries=4)
    for i in range(4):
      ledger.mark_processed(f"cs_{i}")
    ledger.mark_processed("cs_0")
    ledger.mark_processed("cs_4")

    self.assertTrue(ledger.has_processed("cs_0"))
    self.assertTrue(ledger.has_processed("cs_4"))
    self.assertFalse(ledger.has_processed("cs_1"))

  def test_clear(self):
    ledger = IdempotencyLedger()
    ledger.mark_processed("cs_test_123")
    ledger.clear()
    self.assertEmpty(ledger)


if __name__ == "__main__":
  absltest.main()
