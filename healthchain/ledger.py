"""
Ledger collaborator contract and the in-memory reference ledger.

A ledger accepts transactions, orders them, and applies each one atomically:
the handler for the transaction kind runs against a copy of the state and the
copy is committed only if the handler (including its audit entry) succeeds.
submit() returns a TransactionHandle; a mutation is durable only once
handle.wait() returns. Reads reflect the latest confirmed state.

InMemoryLedger confirms on submit by default. With auto_confirm=False
transactions wait in a mempool until mine() is called, which is how tests
observe the "pending confirmation" window.
"""

import copy
import logging
import threading
import time
from typing import Dict, List, Optional

from healthchain import grants, registry
from healthchain.errors import HealthChainError, UnavailableError, ValidationError
from healthchain.grants import GrantPolicy
from healthchain.models import (
    AccessGrant,
    AuditEntry,
    RecordDescriptor,
    RecordVersion,
    Receipt,
    Transaction,
    normalize_address,
    pair_key,
)

logger = logging.getLogger(__name__)

TRANSACTION_HANDLERS = {
    "register_record": registry.apply_register,
    "update_record": registry.apply_update,
    "archive_record": registry.apply_archive,
    "request_access": grants.apply_request_access,
    "decide_access": grants.apply_decide,
    "revoke_access": grants.apply_revoke,
    "read_record": grants.apply_read_record,
}


class LedgerState:
    """Everything the ledger holds"""

    def __init__(self, grant_policy=None):
        self.grant_policy = grant_policy or GrantPolicy()
        self.records: Dict[str, Dict[str, RecordDescriptor]] = {}
        self.record_ids = set()
        self.versions: Dict[tuple, List[RecordVersion]] = {}
        self.grants: Dict[tuple, List[AccessGrant]] = {}
        self.audit: List[AuditEntry] = []
        self.audit_by_party: Dict[str, List[int]] = {}
        self.audit_seq = 0

    def next_audit_seq(self):
        self.audit_seq += 1
        return self.audit_seq


class TransactionHandle:
    """Confirmation handle returned by Ledger.submit()"""

    def __init__(self, ledger, tx_id):
        self.ledger = ledger
        self.tx_id = tx_id

    @property
    def confirmed(self):
        return self.ledger.is_confirmed(self.tx_id)

    def wait(self, timeout=None):
        """Block until the transaction is confirmed and return its result"""
        return self.ledger.wait_for(self.tx_id, timeout)

    def __repr__(self):
        return f"TransactionHandle({self.tx_id!r}, confirmed={self.confirmed})"


class Ledger:
    """Interface of the ledger collaborator"""

    def submit(self, tx: Transaction) -> TransactionHandle:
        raise NotImplementedError

    def is_confirmed(self, tx_id) -> bool:
        raise NotImplementedError

    def wait_for(self, tx_id, timeout=None):
        raise NotImplementedError

    def now(self) -> int:
        raise NotImplementedError

    def pending_count(self) -> int:
        return 0

    def get_record(self, owner, record_id) -> Optional[RecordDescriptor]:
        raise NotImplementedError

    def list_records(self, owner) -> List[RecordDescriptor]:
        raise NotImplementedError

    def record_history(self, owner, record_id) -> Optional[List[RecordVersion]]:
        raise NotImplementedError

    def get_grant(self, a, b) -> Optional[AccessGrant]:
        raise NotImplementedError

    def grant_history(self, a, b) -> List[AccessGrant]:
        raise NotImplementedError

    def grants_for(self, principal) -> List[AccessGrant]:
        raise NotImplementedError

    def audit_count(self, subject) -> int:
        raise NotImplementedError

    def audit_page(self, subject, offset, limit) -> List[AuditEntry]:
        raise NotImplementedError


class InMemoryLedger(Ledger):
    """Reference ledger with a total order over transactions"""

    def __init__(self, clock=None, auto_confirm=True, grant_policy=None):
        self.clock = clock or (lambda: int(time.time()))
        self.auto_confirm = auto_confirm
        self.state = LedgerState(grant_policy)
        self.block = 0
        self._last_timestamp = 0
        self._mempool: List[Transaction] = []
        self._receipts: Dict[str, Receipt] = {}
        self._failures: Dict[str, HealthChainError] = {}
        self._cond = threading.Condition()

    def now(self) -> int:
        return max(int(self.clock()), self._last_timestamp)

    def submit(self, tx: Transaction) -> TransactionHandle:
        if tx.kind not in TRANSACTION_HANDLERS:
            raise ValidationError(f"Unknown transaction kind: {tx.kind}")
        with self._cond:
            known = tx.tx_id in self._receipts or tx.tx_id in self._failures
            if not known and all(p.tx_id != tx.tx_id for p in self._mempool):
                self._mempool.append(tx)
                logger.debug(f"Accepted transaction {tx.tx_id} ({tx.kind}) from {tx.sender}")
            else:
                logger.debug(f"Transaction {tx.tx_id} already submitted")
            if self.auto_confirm:
                self._mine_locked()
        return TransactionHandle(self, tx.tx_id)

    def mine(self):
        """Confirm every transaction waiting in the mempool, in order"""
        with self._cond:
            return self._mine_locked()

    def _mine_locked(self):
        if not self._mempool:
            return 0
        self.block += 1
        timestamp = self.now()
        self._last_timestamp = timestamp
        count = len(self._mempool)
        for tx in self._mempool:
            self._apply(tx, timestamp)
        self._mempool = []
        self._cond.notify_all()
        return count

    def _apply(self, tx, timestamp):
        handler = TRANSACTION_HANDLERS[tx.kind]
        working = copy.deepcopy(self.state)
        try:
            result = handler(working, tx, timestamp)
        except HealthChainError as e:
            logger.info(f"Transaction {tx.tx_id} ({tx.kind}) reverted: {e.message}")
            self._failures[tx.tx_id] = e
            return
        except Exception as e:
            logger.error(f"Transaction {tx.tx_id} ({tx.kind}) failed: {e}")
            self._failures[tx.tx_id] = UnavailableError(f"Transaction {tx.kind} could not be committed")
            return
        self.state = working
        self._receipts[tx.tx_id] = Receipt(tx_id=tx.tx_id, block=self.block, timestamp=timestamp, result=result)

    def is_confirmed(self, tx_id) -> bool:
        with self._cond:
            return tx_id in self._receipts or tx_id in self._failures

    def receipt(self, tx_id) -> Optional[Receipt]:
        return self._receipts.get(tx_id)

    def wait_for(self, tx_id, timeout=None):
        with self._cond:
            done = self._cond.wait_for(
                lambda: tx_id in self._receipts or tx_id in self._failures,
                timeout=timeout,
            )
            if not done:
                raise UnavailableError(f"Transaction {tx_id} not confirmed yet, try again")
            if tx_id in self._failures:
                raise self._failures[tx_id]
            return self._receipts[tx_id].result

    def pending_count(self) -> int:
        with self._cond:
            return len(self._mempool)

    # Reads against the latest confirmed state

    def get_record(self, owner, record_id):
        record = self.state.records.get(normalize_address(owner), {}).get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def list_records(self, owner):
        records = self.state.records.get(normalize_address(owner), {})
        return [r.model_copy(deep=True) for r in records.values()]

    def record_history(self, owner, record_id):
        versions = self.state.versions.get((normalize_address(owner), record_id))
        return [v.model_copy() for v in versions] if versions is not None else None

    def get_grant(self, a, b):
        history = self.state.grants.get(pair_key(a, b))
        return history[-1].model_copy() if history else None

    def grant_history(self, a, b):
        return [g.model_copy() for g in self.state.grants.get(pair_key(a, b), [])]

    def grants_for(self, principal):
        key = principal.lower()
        return [
            history[-1].model_copy()
            for pair, history in self.state.grants.items()
            if key in pair and history
        ]

    def audit_count(self, subject):
        return len(self.state.audit_by_party.get(subject.lower(), []))

    def audit_page(self, subject, offset, limit):
        indexes = self.state.audit_by_party.get(subject.lower(), [])
        return [self.state.audit[i] for i in indexes[offset:offset + limit]]
