"""Tamper-evident audit trail over a pluggable async storage backend."""

from donation_guard.audit.store import AbstractAuditStore, SqlAlchemyAuditStore
from donation_guard.audit.trail import (
    AuditAction,
    AuditCategory,
    AuditEntry,
    AuditResult,
    AuditSeverity,
    AuditTrail,
)

__all__ = [
    "AbstractAuditStore",
    "AuditAction",
    "AuditCategory",
    "AuditEntry",
    "AuditResult",
    "AuditSeverity",
    "AuditTrail",
    "SqlAlchemyAuditStore",
]
