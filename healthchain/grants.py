"""
Access grant state machine.

    Pending --approve--> Approved --revoke--> Revoked
       |                    |
       +--reject--> Rejected +--(time)--> Expired

Rejected, Revoked and Expired are terminal. Grants are keyed by the unordered
(patient, provider) pair and at most one Pending or live Approved grant may
exist per pair. Expiry is computed from expires_at on every check; the stored
status is only materialized to Expired on the next write touching the pair.

The apply_* functions run inside the ledger's serialized transactions and are
the authority on every transition. AccessGrantEngine is the client side: it
rejects obviously bad input early, submits, and awaits confirmation.
"""

import logging
import uuid
from typing import List, Optional

from healthchain.audit import record_entry
from healthchain.constants import (
    ACCESS_DURATION_DAYS,
    ACCESS_DURATION_POLICY,
    MAX_ACCESS_DAYS,
    SECONDS_PER_DAY,
)
from healthchain.errors import (
    Conflict,
    Forbidden,
    InvalidDuration,
    NotFoundError,
    SelfGrant,
    ValidationError,
)
from healthchain.models import (
    AccessGrant,
    AuditAction,
    GrantStatus,
    RecordStatus,
    normalize_address,
    pair_key,
)

logger = logging.getLogger(__name__)


class GrantPolicy:
    """Deployment policy for grant durations"""

    def __init__(self, max_days=MAX_ACCESS_DAYS, policy=ACCESS_DURATION_POLICY, options=ACCESS_DURATION_DAYS):
        if policy not in ("bounded", "enumerated"):
            raise ValueError(f"Unknown access duration policy: {policy}")
        self.max_days = max_days
        self.policy = policy
        self.options = list(options)

    @property
    def max_seconds(self):
        return self.max_days * SECONDS_PER_DAY

    def validate(self, duration_seconds):
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
            raise InvalidDuration("Duration must be a whole number of seconds")
        if duration_seconds <= 0:
            raise InvalidDuration("Duration must be positive")
        if duration_seconds > self.max_seconds:
            raise InvalidDuration(f"Duration exceeds the maximum of {self.max_days} days")
        if self.policy == "enumerated" and duration_seconds not in [d * SECONDS_PER_DAY for d in self.options]:
            raise InvalidDuration(f"Duration must be one of {self.options} days")
        return duration_seconds


def days_to_seconds(days):
    if isinstance(days, bool) or not isinstance(days, int):
        raise InvalidDuration("Duration must be a whole number of days")
    return days * SECONDS_PER_DAY


def _latest(state, a, b) -> Optional[AccessGrant]:
    history = state.grants.get(pair_key(a, b))
    return history[-1] if history else None


def _materialize_expiry(grant, timestamp):
    if grant is not None and grant.status == GrantStatus.APPROVED and not grant.is_active(timestamp):
        grant.status = GrantStatus.EXPIRED
        logger.info(f"Grant {grant.grant_id} expired at {grant.expires_at}")


# Ledger transaction handlers

def apply_request_access(state, tx, timestamp):
    provider = tx.sender
    patient = normalize_address(tx.args.get("patient"))
    if patient == provider:
        raise SelfGrant("You cannot request access to your own records")
    duration = state.grant_policy.validate(tx.args.get("duration_seconds"))

    latest = _latest(state, patient, provider)
    _materialize_expiry(latest, timestamp)
    if latest is not None and latest.is_open(timestamp):
        raise Conflict(f"A {latest.status.value} grant already exists for this pair")

    grant = AccessGrant(
        grant_id=uuid.uuid4().hex,
        patient=patient,
        provider=provider,
        requested_at=timestamp,
        duration_seconds=duration,
    )
    state.grants.setdefault(pair_key(patient, provider), []).append(grant)
    record_entry(state, provider, patient, AuditAction.REQUEST_ACCESS, timestamp)
    return grant.model_copy()


def _deciding_patient(tx, action):
    """The patient named by the transaction; only that patient may send it"""
    patient = normalize_address(tx.args.get("patient") or tx.sender)
    if patient != tx.sender:
        raise Forbidden(f"Only the patient may {action}")
    return patient


def apply_decide(state, tx, timestamp):
    patient = _deciding_patient(tx, "decide an access request")
    provider = normalize_address(tx.args.get("provider"))
    approve = tx.args.get("approve")
    if not isinstance(approve, bool):
        raise ValidationError("approve must be a boolean")

    grant = _latest(state, patient, provider)
    if grant is None or grant.status != GrantStatus.PENDING:
        raise NotFoundError("No pending access request for this provider")
    if grant.patient != patient:
        raise Forbidden("Only the patient may decide an access request")

    grant.decided_at = timestamp
    if approve:
        grant.status = GrantStatus.APPROVED
        grant.expires_at = timestamp + grant.duration_seconds
        record_entry(state, patient, provider, AuditAction.APPROVE, timestamp)
    else:
        grant.status = GrantStatus.REJECTED
        record_entry(state, patient, provider, AuditAction.REJECT, timestamp)
    return grant.model_copy()


def apply_revoke(state, tx, timestamp):
    patient = _deciding_patient(tx, "revoke access")
    provider = normalize_address(tx.args.get("provider"))

    grant = _latest(state, patient, provider)
    if grant is None or not grant.is_active(timestamp):
        raise NotFoundError("No approved access grant for this provider")
    if grant.patient != patient:
        raise Forbidden("Only the patient may revoke access")

    grant.status = GrantStatus.REVOKED
    grant.revoked_at = timestamp
    record_entry(state, patient, provider, AuditAction.REVOKE, timestamp)
    return grant.model_copy()


def apply_read_record(state, tx, timestamp):
    """Audited dereference: the grant is re-validated at read time"""
    reader = tx.sender
    patient = normalize_address(tx.args.get("patient"))
    record_id = tx.args.get("record_id")

    if reader != patient:
        grant = _latest(state, patient, reader)
        if grant is None or grant.patient != patient or not grant.is_active(timestamp):
            raise Forbidden("No active access grant for this patient")

    record = state.records.get(patient, {}).get(record_id)
    if record is None or record.status != RecordStatus.ACTIVE:
        raise NotFoundError(f"Record {record_id} not found for {patient}")

    record_entry(state, reader, patient, AuditAction.READ_RECORD, timestamp, target=record_id)
    return record.model_copy(deep=True)


class AccessGrantEngine:
    """Client side of the grant state machine for one session"""

    def __init__(self, session, policy=None):
        self.session = session
        self.policy = policy or GrantPolicy()

    def request_access(self, patient, duration_seconds, wait=True):
        """Ask ``patient`` for read access on behalf of the session principal"""
        patient = normalize_address(patient)
        if patient == self.session.principal:
            raise SelfGrant("You cannot request access to your own records")
        self.policy.validate(duration_seconds)
        result = self.session.transact(
            "request_access",
            wait=wait,
            patient=patient,
            duration_seconds=duration_seconds,
        )
        if wait:
            logger.info(f"Access requested by {self.session.principal} for {patient}")
        return result

    def request_access_days(self, patient, days, wait=True):
        return self.request_access(patient, days_to_seconds(days), wait=wait)

    def decide(self, provider, approve, wait=True, patient=None):
        """Approve or reject the pending request of ``provider``; ``patient`` defaults to the session principal"""
        provider = normalize_address(provider)
        patient = normalize_address(patient or self.session.principal)
        result = self.session.transact(
            "decide_access",
            wait=wait,
            patient=patient,
            provider=provider,
            approve=bool(approve),
        )
        if wait:
            logger.info(f"Access for {provider} {'approved' if approve else 'rejected'} by {self.session.principal}")
        return result

    def revoke(self, provider, wait=True, patient=None):
        provider = normalize_address(provider)
        patient = normalize_address(patient or self.session.principal)
        result = self.session.transact("revoke_access", wait=wait, patient=patient, provider=provider)
        if wait:
            logger.info(f"Access for {provider} revoked by {self.session.principal}")
        return result

    def check_access(self, patient, provider, now=None) -> bool:
        """True iff ``provider`` holds a live Approved grant from ``patient``"""
        patient = normalize_address(patient)
        provider = normalize_address(provider)
        grant = self.session.ledger.get_grant(patient, provider)
        if grant is None or grant.patient != patient:
            return False
        if now is None:
            now = self.session.ledger.now()
        return grant.is_active(now)

    def get_grant(self, patient, provider) -> Optional[AccessGrant]:
        """Most recent grant for the pair, whatever its state"""
        return self.session.ledger.get_grant(normalize_address(patient), normalize_address(provider))

    def grant_history(self, patient, provider) -> List[AccessGrant]:
        return self.session.ledger.grant_history(normalize_address(patient), normalize_address(provider))

    def pending_requests(self, patient=None) -> List[AccessGrant]:
        """Pending requests awaiting a decision by ``patient``"""
        patient = normalize_address(patient or self.session.principal)
        return [
            g for g in self.session.ledger.grants_for(patient)
            if g.patient == patient and g.status == GrantStatus.PENDING
        ]

    def authorized_providers(self, patient=None, now=None) -> List[str]:
        """Providers currently allowed to read ``patient``'s records"""
        patient = normalize_address(patient or self.session.principal)
        if now is None:
            now = self.session.ledger.now()
        return [
            g.provider for g in self.session.ledger.grants_for(patient)
            if g.patient == patient and g.is_active(now)
        ]
