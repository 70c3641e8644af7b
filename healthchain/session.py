"""
Explicit per-principal session context.

A Session binds one principal to one ledger. Every mutation goes through
transact(): the transaction is stamped with the principal as sender,
submitted with bounded retry (the same tx_id on every attempt, so a lost
acknowledgement never double-applies), and awaited. While a transaction is
outstanding the session reports state "submitting". Descriptor reads may be
served from a small cache that is dropped whenever this session writes.
"""

import logging

from healthchain.constants import CONFIRMATION_TIMEOUT
from healthchain.models import Transaction, normalize_address
from healthchain.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

IDLE = "idle"
SUBMITTING = "submitting"


class Session:
    def __init__(self, principal, ledger, retry_policy=None, confirmation_timeout=CONFIRMATION_TIMEOUT):
        self.principal = normalize_address(principal)
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy()
        self.confirmation_timeout = confirmation_timeout
        self._cache = {}
        self._outstanding = {}

    @property
    def state(self):
        """'submitting' while any transaction of this session is unconfirmed"""
        self._prune()
        return SUBMITTING if self._outstanding else IDLE

    @property
    def pending_confirmation(self):
        """True when reads may not yet reflect submitted transactions"""
        return self.state == SUBMITTING or self.ledger.pending_count() > 0

    def _prune(self):
        for tx_id, handle in list(self._outstanding.items()):
            if handle.confirmed:
                del self._outstanding[tx_id]

    def transact(self, kind, wait=True, **args):
        """
        Submit a transaction as this session's principal.

        Args:
            kind: Transaction kind understood by the ledger
            wait: Await confirmation and return the result (default), or
                return the TransactionHandle immediately
            **args: Transaction arguments

        Returns:
            The transaction result, or a TransactionHandle when wait=False
        """
        tx = Transaction(kind=kind, sender=self.principal, args=args)
        handle = call_with_retry(lambda: self.ledger.submit(tx), self.retry_policy)
        self._outstanding[tx.tx_id] = handle
        self.invalidate()
        logger.debug(f"Submitted {kind} transaction {tx.tx_id} as {self.principal}")
        if not wait:
            return handle
        return self.await_confirmation(handle)

    def await_confirmation(self, handle, timeout=None):
        """Wait for a handle from transact(wait=False); the result is durable once this returns"""
        try:
            return handle.wait(timeout if timeout is not None else self.confirmation_timeout)
        finally:
            if handle.confirmed:
                self._outstanding.pop(handle.tx_id, None)
            self.invalidate()

    def cached(self, key, loader):
        if key not in self._cache:
            self._cache[key] = loader()
        return self._cache[key]

    def invalidate(self):
        self._cache.clear()
