import threading
import unittest

from healthchain.errors import Conflict, UnavailableError, ValidationError
from healthchain.ledger import InMemoryLedger
from healthchain.models import Transaction
from tests.helpers import CID_1, DOCTOR, PATIENT, FakeClock


def register_tx(record_id="record_1", sender=PATIENT, **overrides):
    args = {"record_id": record_id, "record_type": "Lab Results", "content_ref": CID_1}
    args.update(overrides)
    return Transaction(kind="register_record", sender=sender, args=args)


class TestInMemoryLedger(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.ledger = InMemoryLedger(clock=self.clock)

    def test_submit_confirms(self):
        handle = self.ledger.submit(register_tx())
        self.assertTrue(handle.confirmed)
        record = handle.wait()
        self.assertEqual(record.owner, PATIENT)
        self.assertEqual(record.created_at, self.clock.now)
        receipt = self.ledger.receipt(handle.tx_id)
        self.assertEqual(receipt.block, 1)

    def test_same_tx_id_applies_once(self):
        tx = register_tx()
        self.ledger.submit(tx).wait()
        handle = self.ledger.submit(tx)
        self.assertEqual(handle.wait().record_id, "record_1")
        self.assertEqual(len(self.ledger.list_records(PATIENT)), 1)
        self.assertEqual(self.ledger.block, 1)

    def test_failure_is_reraised_on_wait(self):
        self.ledger.submit(register_tx()).wait()
        handle = self.ledger.submit(register_tx())
        self.assertTrue(handle.confirmed)
        with self.assertRaises(Conflict):
            handle.wait()

    def test_unknown_kind(self):
        with self.assertRaises(ValidationError):
            self.ledger.submit(Transaction(kind="drop_table", sender=PATIENT))

    def test_reads_return_copies(self):
        self.ledger.submit(register_tx()).wait()
        record = self.ledger.get_record(PATIENT, "record_1")
        record.metadata["tampered"] = True
        self.assertEqual(self.ledger.get_record(PATIENT, "record_1").metadata, {})

    def test_clock_never_goes_backwards(self):
        self.ledger.submit(register_tx("record_1")).wait()
        self.clock.now -= 100
        record = self.ledger.submit(register_tx("record_2")).wait()
        self.assertEqual(record.created_at, self.clock.now + 100)


class TestPendingConfirmation(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.ledger = InMemoryLedger(clock=self.clock, auto_confirm=False)

    def test_mine(self):
        handle = self.ledger.submit(register_tx())
        self.assertFalse(handle.confirmed)
        self.assertEqual(self.ledger.pending_count(), 1)
        self.assertIsNone(self.ledger.get_record(PATIENT, "record_1"))

        self.assertEqual(self.ledger.mine(), 1)
        self.assertTrue(handle.confirmed)
        self.assertEqual(self.ledger.pending_count(), 0)
        self.assertIsNotNone(self.ledger.get_record(PATIENT, "record_1"))

    def test_duplicate_in_mempool(self):
        tx = register_tx()
        self.ledger.submit(tx)
        self.ledger.submit(tx)
        self.assertEqual(self.ledger.pending_count(), 1)

    def test_wait_times_out(self):
        handle = self.ledger.submit(register_tx())
        with self.assertRaises(UnavailableError):
            handle.wait(timeout=0.01)

    def test_wait_wakes_on_mine(self):
        handle = self.ledger.submit(register_tx())
        results = []
        waiter = threading.Thread(target=lambda: results.append(handle.wait(timeout=5)))
        waiter.start()
        self.ledger.mine()
        waiter.join(timeout=5)
        self.assertEqual(results[0].record_id, "record_1")

    def test_block_applies_in_order(self):
        first = self.ledger.submit(register_tx("record_1"))
        second = self.ledger.submit(register_tx("record_1", sender=DOCTOR))
        self.ledger.mine()
        self.assertEqual(first.wait().owner, PATIENT)
        with self.assertRaises(Conflict):
            second.wait()


if __name__ == "__main__":
    unittest.main()
