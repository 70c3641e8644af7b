"""
Append-only audit log of access events.

There is no stand-alone append: every entry is written by record_entry()
inside the ledger transaction of the transition it describes (access
requests, decisions, revocations, audited reads), so a transition never
lands without its entry and no entry exists without its transition.

Each entry is indexed under both of its parties, the actor and the subject,
so either principal can page through the events that concern it.
"""

import logging

from healthchain.errors import ValidationError
from healthchain.models import AuditAction, AuditEntry, normalize_address

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


def record_entry(state, actor, subject, action, timestamp, target=None):
    """Append one entry to the ledger state (called from transaction handlers)"""
    entry = AuditEntry(
        seq=state.next_audit_seq(),
        actor=actor,
        subject=subject,
        action=AuditAction(action),
        target=target,
        timestamp=timestamp,
    )
    state.audit.append(entry)
    index = len(state.audit) - 1
    for party in {actor.lower(), subject.lower()}:
        state.audit_by_party.setdefault(party, []).append(index)
    return entry


def parse_action(value):
    try:
        return AuditAction(value)
    except ValueError:
        raise ValidationError(f"Unknown audit action: {value!r}")


class AuditQuery:
    """
    Lazy, restartable view of the audit entries involving one principal.

    Each iteration pages through the ledger from the start and stops at the
    number of entries that existed when the iteration began, so it is finite
    even while new entries are being appended. Entries come in (timestamp, seq)
    order; ``start`` is inclusive and ``end`` exclusive.
    """

    def __init__(self, ledger, subject, start=None, end=None, action=None, page_size=DEFAULT_PAGE_SIZE):
        self.ledger = ledger
        self.subject = normalize_address(subject)
        self.start = start
        self.end = end
        self.action = parse_action(action) if action is not None else None
        self.page_size = page_size

    def __iter__(self):
        total = self.ledger.audit_count(self.subject)
        offset = 0
        while offset < total:
            page = self.ledger.audit_page(self.subject, offset, min(self.page_size, total - offset))
            if not page:
                return
            for entry in page:
                if self.start is not None and entry.timestamp < self.start:
                    continue
                if self.end is not None and entry.timestamp >= self.end:
                    return
                if self.action is not None and entry.action != self.action:
                    continue
                yield entry
            offset += len(page)

    def to_list(self):
        return list(self)


class AuditLog:
    """Read side of the audit log for one session"""

    def __init__(self, session):
        self.session = session

    def query_by_subject(self, subject, start=None, end=None, action=None):
        """Entries where ``subject`` is a party (actor or subject) within [start, end)"""
        return AuditQuery(self.session.ledger, subject, start, end, action)
