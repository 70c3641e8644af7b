"""
HealthChain: patient-controlled medical records on an append-only ledger.

Records are encrypted client-side, stored by content address, and anchored
on the ledger together with time-bounded provider access grants and an
immutable audit trail.
"""

__version__ = "0.1.0"
