import unittest
from unittest import mock

from healthchain.audit import AuditLog, AuditQuery
from healthchain.errors import Forbidden, UnavailableError, ValidationError
from healthchain.grants import AccessGrantEngine
from healthchain.ledger import InMemoryLedger
from healthchain.models import AuditAction, Transaction
from healthchain.registry import RecordRegistry
from healthchain.session import Session
from tests.helpers import CID_1, DOCTOR, DOCTOR_2, PATIENT, PATIENT_2, START, FakeClock


class AuditTestCase(unittest.TestCase):
    """Patient shares one record with DOCTOR at START; entries come from real transitions"""

    def setUp(self):
        self.clock = FakeClock()
        self.ledger = InMemoryLedger(clock=self.clock)
        self.patient_session = Session(PATIENT, self.ledger)
        self.doctor_session = Session(DOCTOR, self.ledger)
        self.record_id = RecordRegistry(self.patient_session).register("Lab Results", CID_1)
        AccessGrantEngine(self.doctor_session).request_access_days(PATIENT, 7)
        AccessGrantEngine(self.patient_session).decide(DOCTOR, True)
        self.log = AuditLog(self.patient_session)

    def read_at(self, offset, session=None):
        self.clock.now = START + offset
        session = session or self.doctor_session
        return session.transact("read_record", patient=PATIENT, record_id=self.record_id)

    def timestamps(self, entries):
        return [e.timestamp - START for e in entries]


class TestAuditLog(AuditTestCase):
    def test_read_is_recorded(self):
        self.read_at(10)
        entries = self.log.query_by_subject(PATIENT, action="ReadRecord").to_list()
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry.actor, DOCTOR)
        self.assertEqual(entry.subject, PATIENT)
        self.assertEqual(entry.target, self.record_id)
        self.assertEqual(entry.timestamp, START + 10)

    def test_ordered_by_time(self):
        for offset in (10, 20, 20, 30):
            self.read_at(offset)
        entries = self.log.query_by_subject(PATIENT).to_list()
        self.assertEqual(self.timestamps(entries), [0, 0, 10, 20, 20, 30])
        seqs = [e.seq for e in entries]
        self.assertEqual(seqs, sorted(seqs))

    def test_range_is_half_open(self):
        for offset in (10, 20, 30, 40):
            self.read_at(offset)
        entries = self.log.query_by_subject(PATIENT, start=START + 20, end=START + 40).to_list()
        self.assertEqual(self.timestamps(entries), [20, 30])

    def test_scoped_to_parties(self):
        self.read_at(10)
        AccessGrantEngine(Session(DOCTOR_2, self.ledger)).request_access_days(PATIENT_2, 1)

        patient_2 = self.log.query_by_subject(PATIENT_2).to_list()
        self.assertEqual([(e.actor, e.action) for e in patient_2], [(DOCTOR_2, AuditAction.REQUEST_ACCESS)])
        self.assertEqual(len(self.log.query_by_subject(PATIENT).to_list()), 3)
        self.assertEqual(len(self.log.query_by_subject(DOCTOR).to_list()), 3)

    def test_both_parties_see_the_same_entries(self):
        self.read_at(10)
        patient_view = self.log.query_by_subject(PATIENT).to_list()
        doctor_view = AuditLog(self.doctor_session).query_by_subject(DOCTOR).to_list()
        self.assertEqual(patient_view, doctor_view)

    def test_action_filter(self):
        self.read_at(10)
        entries = self.log.query_by_subject(PATIENT, action="ReadRecord").to_list()
        self.assertEqual([e.action for e in entries], [AuditAction.READ_RECORD])

        approvals = self.log.query_by_subject(DOCTOR, action=AuditAction.APPROVE).to_list()
        self.assertEqual([(e.actor, e.subject) for e in approvals], [(PATIENT, DOCTOR)])

    def test_unknown_action(self):
        with self.assertRaises(ValidationError):
            self.log.query_by_subject(PATIENT, action="Delete")

    def test_query_is_restartable(self):
        for offset in range(1, 6):
            self.read_at(offset)
        query = self.log.query_by_subject(PATIENT)
        self.assertEqual(query.to_list(), query.to_list())

    def test_iteration_is_bounded_by_snapshot(self):
        for offset in (1, 2):
            self.read_at(offset)
        query = AuditQuery(self.ledger, PATIENT, page_size=1)
        seen = []
        for entry in query:
            seen.append(entry)
            if len(seen) == 1:
                self.read_at(50)
        self.assertEqual(len(seen), 4)
        self.assertEqual(len(query.to_list()), 5)

    def test_paging(self):
        for offset in range(1, 8):
            self.read_at(offset)
        query = AuditQuery(self.ledger, PATIENT, page_size=3)
        self.assertEqual(self.timestamps(query), [0, 0] + list(range(1, 8)))


class TestNoForgedEntries(AuditTestCase):
    def test_stand_alone_append_is_rejected(self):
        outsider = Session(DOCTOR_2, self.ledger)
        for action in AuditAction:
            tx = Transaction(
                kind="append_audit",
                sender=DOCTOR_2,
                args={"subject": PATIENT, "action": action.value, "target": self.record_id},
            )
            with self.assertRaises(ValidationError):
                self.ledger.submit(tx)

        self.assertFalse(AccessGrantEngine(outsider).check_access(PATIENT, DOCTOR_2))
        self.assertEqual(AuditLog(outsider).query_by_subject(DOCTOR_2).to_list(), [])
        actors = [e.actor for e in self.log.query_by_subject(PATIENT)]
        self.assertNotIn(DOCTOR_2, actors)

    def test_ungranted_read_leaves_no_entry(self):
        with self.assertRaises(Forbidden):
            self.read_at(10, session=Session(DOCTOR_2, self.ledger))
        reads = self.log.query_by_subject(PATIENT, action="ReadRecord").to_list()
        self.assertEqual(reads, [])

    def test_log_is_read_only(self):
        self.assertFalse(hasattr(AuditLog, "append"))


class TestAuditAtomicity(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.ledger = InMemoryLedger(clock=self.clock)
        self.patient = AccessGrantEngine(Session(PATIENT, self.ledger))
        self.doctor = AccessGrantEngine(Session(DOCTOR, self.ledger))

    def test_failed_audit_write_rolls_back_transition(self):
        self.doctor.request_access_days(PATIENT, 7)
        with mock.patch("healthchain.grants.record_entry", side_effect=RuntimeError("audit store full")):
            with self.assertRaises(UnavailableError):
                self.patient.decide(DOCTOR, True)
        self.assertFalse(self.doctor.check_access(PATIENT, DOCTOR))
        entries = AuditLog(self.patient.session).query_by_subject(PATIENT).to_list()
        self.assertEqual([e.action for e in entries], [AuditAction.REQUEST_ACCESS])

        # the pending request is still there and can be decided normally
        grant = self.patient.decide(DOCTOR, True)
        self.assertTrue(grant.is_active(self.clock.now))


if __name__ == "__main__":
    unittest.main()
