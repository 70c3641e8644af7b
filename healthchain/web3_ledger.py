"""
Ledger adapter for a deployed HealthChain contract.

The contract implements the same transaction semantics as InMemoryLedger and
reverts with "<error code>: <message>" reasons, which are translated back
into the error taxonomy. Transactions are signed locally with eth_account and
sent raw; TransactionHandle.wait() waits for the receipt. Transport failures
never leak: they surface as UnavailableError.
"""

import json
import logging

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from healthchain.constants import CONFIRMATION_TIMEOUT, CONTRACT_ADDRESS, PRIVATE_KEY, RPC_URL
from healthchain.errors import (
    Forbidden,
    HealthChainError,
    LedgerRejected,
    NotFoundError,
    UnavailableError,
    ValidationError,
    error_from_reason,
)
from healthchain.ledger import Ledger, TransactionHandle
from healthchain.models import (
    AccessGrant,
    AuditAction,
    AuditEntry,
    GrantStatus,
    RecordDescriptor,
    RecordStatus,
    RecordVersion,
    normalize_address,
)

logger = logging.getLogger(__name__)

# On-chain enum orderings
GRANT_STATUSES = [GrantStatus.PENDING, GrantStatus.APPROVED, GrantStatus.REJECTED, GrantStatus.REVOKED, GrantStatus.EXPIRED]
AUDIT_ACTIONS = [AuditAction.REQUEST_ACCESS, AuditAction.APPROVE, AuditAction.REJECT, AuditAction.REVOKE, AuditAction.READ_RECORD]
RECORD_STATUSES = [RecordStatus.ACTIVE, RecordStatus.ARCHIVED]

GAS_LIMIT = 2000000
TRANSPORT_ERRORS = (Web3Exception, requests.RequestException, ValueError)


def _abi_fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
    }


HEALTHCHAIN_ABI = [
    _abi_fn("registerRecord", [("recordId", "string"), ("contentRef", "string"), ("recordType", "string"),
                               ("metadata", "string"), ("integrity", "string")]),
    _abi_fn("updateRecord", [("recordId", "string"), ("contentRef", "string"), ("metadata", "string"),
                             ("integrity", "string")]),
    _abi_fn("archiveRecord", [("recordId", "string")]),
    _abi_fn("requestAccess", [("patient", "address"), ("durationSeconds", "uint256")]),
    _abi_fn("decideAccess", [("provider", "address"), ("approve", "bool")]),
    _abi_fn("revokeAccess", [("provider", "address")]),
    _abi_fn("readRecord", [("patient", "address"), ("recordId", "string")]),
    _abi_fn("getRecordIds", [("owner", "address")], [("", "string[]")], "view"),
    _abi_fn("getRecord", [("owner", "address"), ("recordId", "string")],
            [("contentRef", "string"), ("recordType", "string"), ("metadata", "string"), ("integrity", "string"),
             ("status", "uint8"), ("version", "uint256"), ("createdAt", "uint256"), ("updatedAt", "uint256")], "view"),
    _abi_fn("getRecordVersionCount", [("owner", "address"), ("recordId", "string")], [("", "uint256")], "view"),
    _abi_fn("getRecordVersion", [("owner", "address"), ("recordId", "string"), ("index", "uint256")],
            [("contentRef", "string"), ("integrity", "string"), ("recordedAt", "uint256")], "view"),
    _abi_fn("getGrantCount", [("a", "address"), ("b", "address")], [("", "uint256")], "view"),
    _abi_fn("getGrant", [("a", "address"), ("b", "address"), ("index", "uint256")],
            [("grantId", "bytes32"), ("patient", "address"), ("provider", "address"), ("requestedAt", "uint256"),
             ("durationSeconds", "uint256"), ("status", "uint8"), ("decidedAt", "uint256"),
             ("expiresAt", "uint256"), ("revokedAt", "uint256")], "view"),
    _abi_fn("getCounterparties", [("principal", "address")], [("", "address[]")], "view"),
    _abi_fn("getAuditCount", [("subject", "address")], [("", "uint256")], "view"),
    _abi_fn("getAuditEntry", [("subject", "address"), ("index", "uint256")],
            [("seq", "uint256"), ("actor", "address"), ("subject", "address"), ("action", "uint8"),
             ("target", "string"), ("timestamp", "uint256")], "view"),
]


def _json_text(value):
    return json.dumps(value or {}, sort_keys=True, separators=(',', ':'))


def _optional(value):
    return value or None


class Web3Ledger(Ledger):
    """Ledger backed by the HealthChain contract"""

    def __init__(self, w3, contract_address, private_key, abi=None, confirmation_timeout=CONFIRMATION_TIMEOUT):
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi or HEALTHCHAIN_ABI)
        self.account = Account.from_key(private_key)
        self.confirmation_timeout = confirmation_timeout
        self._submitted = {}
        self._results = {}

    @classmethod
    def connect(cls, rpc_url=RPC_URL, contract_address=CONTRACT_ADDRESS, private_key=PRIVATE_KEY):
        """Connect over HTTP using the configured RPC URL"""
        w3 = Web3(Web3.HTTPProvider(
            rpc_url,
            request_kwargs={
                'timeout': 60,
                'headers': {"Content-Type": "application/json", "User-Agent": "healthchain/0.1"}
            }
        ))
        if not contract_address or not private_key:
            raise ValidationError("CONTRACT_ADDRESS and PRIVATE_KEY must be configured for the web3 ledger")
        return cls(w3, contract_address, private_key)

    # Transactions

    def _function_for(self, tx):
        args = tx.args
        fns = self.contract.functions
        kind = tx.kind
        if kind == "register_record":
            return fns.registerRecord(args["record_id"], args["content_ref"], args["record_type"],
                                      _json_text(args.get("metadata")), args.get("integrity") or "")
        if kind == "update_record":
            if normalize_address(args["owner"]) != tx.sender:
                raise Forbidden("Only the record owner may modify a record")
            return fns.updateRecord(args["record_id"], args["content_ref"],
                                    _json_text(args.get("metadata")), args.get("integrity") or "")
        if kind == "archive_record":
            if normalize_address(args["owner"]) != tx.sender:
                raise Forbidden("Only the record owner may archive a record")
            return fns.archiveRecord(args["record_id"])
        if kind == "request_access":
            return fns.requestAccess(args["patient"], args["duration_seconds"])
        if kind in ("decide_access", "revoke_access"):
            if normalize_address(args.get("patient") or tx.sender) != tx.sender:
                raise Forbidden("Only the patient may decide or revoke access")
        if kind == "decide_access":
            return fns.decideAccess(args["provider"], args["approve"])
        if kind == "revoke_access":
            return fns.revokeAccess(args["provider"])
        if kind == "read_record":
            return fns.readRecord(args["patient"], args["record_id"])
        raise ValidationError(f"Unknown transaction kind: {kind}")

    def submit(self, tx):
        if tx.tx_id in self._submitted:
            return TransactionHandle(self, tx.tx_id)
        if tx.sender != self.account.address:
            raise Forbidden("Session principal does not match the signing account")

        fn = self._function_for(tx)
        try:
            built = fn.build_transaction({
                'from': self.account.address,
                'gas': GAS_LIMIT,
                'nonce': self.w3.eth.get_transaction_count(self.account.address, 'pending'),
            })
            signed = self.account.sign_transaction(built)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = self.w3.eth.send_raw_transaction(raw)
        except ContractLogicError as e:
            raise error_from_reason(e.message)
        except TRANSPORT_ERRORS as e:
            logger.error(f"Error submitting {tx.kind} transaction: {e}")
            raise UnavailableError(f"Ledger unreachable: {e.__class__.__name__}")

        logger.info(f"Transaction sent: {tx_hash.hex()} ({tx.kind})")
        self._submitted[tx.tx_id] = (tx, fn, tx_hash)
        return TransactionHandle(self, tx.tx_id)

    def is_confirmed(self, tx_id):
        if tx_id in self._results:
            return True
        if tx_id not in self._submitted:
            return False
        try:
            self.w3.eth.get_transaction_receipt(self._submitted[tx_id][2])
        except TransactionNotFound:
            return False
        except TRANSPORT_ERRORS:
            return False
        return True

    def wait_for(self, tx_id, timeout=None):
        if tx_id in self._results:
            return self._results[tx_id]
        if tx_id not in self._submitted:
            raise NotFoundError(f"Unknown transaction {tx_id}")
        tx, fn, tx_hash = self._submitted[tx_id]
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout or self.confirmation_timeout)
        except TimeExhausted:
            raise UnavailableError(f"Transaction {tx_hash.hex()} not confirmed yet, try again")
        except TRANSPORT_ERRORS as e:
            raise UnavailableError(f"Ledger unreachable: {e.__class__.__name__}")

        if receipt["status"] == 0:
            raise self._revert_reason(fn, receipt)

        result = self._result_for(tx)
        self._results[tx_id] = result
        return result

    def _revert_reason(self, fn, receipt) -> HealthChainError:
        """Replay a reverted call to recover its reason"""
        try:
            fn.call({'from': self.account.address}, block_identifier=receipt["blockNumber"])
        except ContractLogicError as e:
            return error_from_reason(e.message)
        except TRANSPORT_ERRORS:
            pass
        return LedgerRejected("Transaction reverted")

    def _result_for(self, tx):
        args = tx.args
        if tx.kind in ("register_record", "update_record", "archive_record"):
            return self.get_record(tx.sender, args["record_id"])
        if tx.kind == "read_record":
            return self.get_record(args["patient"], args["record_id"])
        if tx.kind == "request_access":
            return self.get_grant(args["patient"], tx.sender)
        if tx.kind in ("decide_access", "revoke_access"):
            return self.get_grant(tx.sender, args["provider"])
        return None

    def pending_count(self):
        return len([t for t in self._submitted if t not in self._results])

    # Reads

    def _call(self, fn):
        try:
            return fn.call()
        except ContractLogicError as e:
            raise error_from_reason(e.message)
        except TRANSPORT_ERRORS as e:
            logger.error(f"Ledger read failed: {e}")
            raise UnavailableError(f"Ledger unreachable: {e.__class__.__name__}")

    def now(self):
        try:
            return int(self.w3.eth.get_block('latest')['timestamp'])
        except TRANSPORT_ERRORS as e:
            raise UnavailableError(f"Ledger unreachable: {e.__class__.__name__}")

    def get_record(self, owner, record_id):
        owner = normalize_address(owner)
        try:
            row = self._call(self.contract.functions.getRecord(owner, record_id))
        except NotFoundError:
            return None
        content_ref, record_type, metadata, integrity, status, version, created_at, updated_at = row
        return RecordDescriptor(
            record_id=record_id,
            owner=owner,
            content_ref=content_ref,
            record_type=record_type,
            metadata=json.loads(metadata) if metadata else {},
            integrity=_optional(integrity),
            status=RECORD_STATUSES[status],
            version=version,
            created_at=created_at,
            updated_at=updated_at,
        )

    def list_records(self, owner):
        owner = normalize_address(owner)
        ids = self._call(self.contract.functions.getRecordIds(owner))
        records = [self.get_record(owner, record_id) for record_id in ids]
        return [r for r in records if r is not None]

    def record_history(self, owner, record_id):
        owner = normalize_address(owner)
        count = self._call(self.contract.functions.getRecordVersionCount(owner, record_id))
        if count == 0:
            return None
        versions = []
        for index in range(count):
            content_ref, integrity, recorded_at = self._call(
                self.contract.functions.getRecordVersion(owner, record_id, index))
            versions.append(RecordVersion(version=index + 1, content_ref=content_ref,
                                          integrity=_optional(integrity), recorded_at=recorded_at))
        return versions

    def _grant_at(self, a, b, index):
        row = self._call(self.contract.functions.getGrant(a, b, index))
        grant_id, patient, provider, requested_at, duration, status, decided_at, expires_at, revoked_at = row
        return AccessGrant(
            grant_id=grant_id.hex() if isinstance(grant_id, (bytes, bytearray)) else str(grant_id),
            patient=normalize_address(patient),
            provider=normalize_address(provider),
            requested_at=requested_at,
            duration_seconds=duration,
            status=GRANT_STATUSES[status],
            decided_at=_optional(decided_at),
            expires_at=_optional(expires_at),
            revoked_at=_optional(revoked_at),
        )

    def get_grant(self, a, b):
        a, b = normalize_address(a), normalize_address(b)
        count = self._call(self.contract.functions.getGrantCount(a, b))
        return self._grant_at(a, b, count - 1) if count else None

    def grant_history(self, a, b):
        a, b = normalize_address(a), normalize_address(b)
        count = self._call(self.contract.functions.getGrantCount(a, b))
        return [self._grant_at(a, b, i) for i in range(count)]

    def grants_for(self, principal):
        principal = normalize_address(principal)
        others = self._call(self.contract.functions.getCounterparties(principal))
        grants = [self.get_grant(principal, other) for other in others]
        return [g for g in grants if g is not None]

    def audit_count(self, subject):
        return self._call(self.contract.functions.getAuditCount(normalize_address(subject)))

    def audit_page(self, subject, offset, limit):
        subject = normalize_address(subject)
        total = self.audit_count(subject)
        entries = []
        for index in range(offset, min(offset + limit, total)):
            seq, actor, party, action, target, timestamp = self._call(
                self.contract.functions.getAuditEntry(subject, index))
            entries.append(AuditEntry(seq=seq, actor=normalize_address(actor), subject=normalize_address(party),
                                      action=AUDIT_ACTIONS[action], target=_optional(target),
                                      timestamp=timestamp))
        return entries
