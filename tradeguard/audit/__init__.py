"""Tamper-evident audit trail.

Every decision, mode transition, override, breaker event and queue
transition is appended to a hash chain that can be re-verified from genesis.
"""

from tradeguard.audit.hash_chain import GENESIS_HASH, AuditLog, hash_record, verify_records

__all__ = [
    'AuditLog',
    'GENESIS_HASH',
    'hash_record',
    'verify_records',
]
