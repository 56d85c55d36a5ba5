"""Tamper-evident audit trail for security-sensitive operations.

Every record carries a SHA-256 integrity hash computed over all of its
content fields. Verification always recomputes the hash from the stored
fields, so any edit made behind the service's back (including direct SQL)
is detected.

Records are hashed independently; there is no chain linking one record to
the next. A deleted row therefore leaves no trace and ``verify_trail`` cannot
detect deletions. Retention and delete protection belong to the database.

Unlike detection, auditing is never fail-open: a record that cannot be
persisted is logged and the error is raised to the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from donation_guard.audit.sanitize import sanitize_details
from donation_guard.audit.store import AbstractAuditStore
from donation_guard.core.errors import AuditWriteError, ValidationAppError
from donation_guard.core.logging import get_request_id, log_event
from donation_guard.core.scheduling import Clock
from donation_guard.schemas.audit import AuditQuery, IntegrityReport, format_timestamp

logger = logging.getLogger(__name__)

AUDIT_SCOPE = "audit"


class AuditSeverity(str, Enum):
    HIGH = "HIGH"  # auth failures, key operations, abuse flags
    MEDIUM = "MEDIUM"  # wallet operations, configuration changes
    LOW = "LOW"  # successful auth, queries


class AuditResult(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class AuditCategory(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    API_KEY_MANAGEMENT = "API_KEY_MANAGEMENT"
    FINANCIAL_OPERATION = "FINANCIAL_OPERATION"
    WALLET_OPERATION = "WALLET_OPERATION"
    CONFIGURATION = "CONFIGURATION"
    RATE_LIMITING = "RATE_LIMITING"
    ABUSE_DETECTION = "ABUSE_DETECTION"
    DATA_ACCESS = "DATA_ACCESS"


class AuditAction(str, Enum):
    API_KEY_VALIDATED = "API_KEY_VALIDATED"
    API_KEY_VALIDATION_FAILED = "API_KEY_VALIDATION_FAILED"
    LEGACY_KEY_USED = "LEGACY_KEY_USED"

    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ADMIN_ACCESS_GRANTED = "ADMIN_ACCESS_GRANTED"
    ADMIN_ACCESS_DENIED = "ADMIN_ACCESS_DENIED"

    API_KEY_CREATED = "API_KEY_CREATED"
    API_KEY_LISTED = "API_KEY_LISTED"
    API_KEY_DEPRECATED = "API_KEY_DEPRECATED"
    API_KEY_REVOKED = "API_KEY_REVOKED"

    DONATION_CREATED = "DONATION_CREATED"
    DONATION_VERIFIED = "DONATION_VERIFIED"
    DONATION_STATUS_UPDATED = "DONATION_STATUS_UPDATED"
    TRANSACTION_RECORDED = "TRANSACTION_RECORDED"

    WALLET_CREATED = "WALLET_CREATED"
    WALLET_UPDATED = "WALLET_UPDATED"
    WALLET_QUERIED = "WALLET_QUERIED"
    WALLET_TRANSACTIONS_ACCESSED = "WALLET_TRANSACTIONS_ACCESSED"

    CONFIG_LOADED = "CONFIG_LOADED"
    DEBUG_MODE_ENABLED = "DEBUG_MODE_ENABLED"
    NETWORK_CHANGED = "NETWORK_CHANGED"

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ABUSE_DETECTED = "ABUSE_DETECTED"
    IP_FLAGGED = "IP_FLAGGED"
    REPLAY_DETECTED = "REPLAY_DETECTED"


# Order matters: changing it invalidates every stored hash
HASHED_FIELDS: tuple[str, ...] = (
    "timestamp",
    "category",
    "action",
    "severity",
    "result",
    "user_id",
    "request_id",
    "ip_address",
    "resource",
    "reason",
    "details",
)


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def serialize_details(details: Any) -> str:
    """Deterministic JSON for already-sanitized details."""
    return json.dumps(details, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def compute_integrity_hash(fields: Mapping[str, Any]) -> str:
    """SHA-256 over ``HASHED_FIELDS`` encoded as one compact JSON array.

    Each field keeps its own array slot, so a value moved across a column
    boundary changes the digest, and ``null`` stays distinct from ``""``.
    """
    payload = json.dumps(
        [_enum_value(fields.get(name)) for name in HASHED_FIELDS],
        separators=(",", ":"),
        default=str,
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AuditEntry:
    """A persisted audit record.

    ``details_json`` holds the serialized JSON exactly as stored and hashed;
    ``details`` deserializes it.
    """

    id: int | None
    timestamp: str
    category: str
    action: str
    severity: str
    result: str
    user_id: str | None
    request_id: str | None
    ip_address: str | None
    resource: str | None
    reason: str | None
    details_json: str
    integrity_hash: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AuditEntry:
        return cls(
            id=row.get("id"),
            timestamp=row["timestamp"],
            category=row["category"],
            action=row["action"],
            severity=row["severity"],
            result=row["result"],
            user_id=row.get("user_id"),
            request_id=row.get("request_id"),
            ip_address=row.get("ip_address"),
            resource=row.get("resource"),
            reason=row.get("reason"),
            details_json=row.get("details") or "{}",
            integrity_hash=row["integrity_hash"],
        )

    @property
    def details(self) -> Any:
        try:
            return json.loads(self.details_json or "{}")
        except ValueError:
            return {}

    def as_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "category": self.category,
            "action": self.action,
            "severity": self.severity,
            "result": self.result,
            "user_id": self.user_id,
            "request_id": self.request_id,
            "ip_address": self.ip_address,
            "resource": self.resource,
            "reason": self.reason,
            "details": self.details_json,
            "integrity_hash": self.integrity_hash,
        }

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation with details deserialized."""
        data = self.as_row()
        data["details"] = self.details
        return data


class AuditTrail:
    """Append-only, hash-protected record of security-relevant events.

    Args:
        store: Storage backend implementing AbstractAuditStore.
        clock: Time source returning UNIX time in seconds.
    """

    def __init__(self, store: AbstractAuditStore, *, clock: Clock = time.time) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> AbstractAuditStore:
        return self._store

    def _now(self) -> str:
        return format_timestamp(datetime.fromtimestamp(self._clock(), tz=timezone.utc))

    async def log(
        self,
        *,
        category: AuditCategory | str | None,
        action: AuditAction | str | None,
        severity: AuditSeverity | str | None,
        result: AuditResult | str | None,
        user_id: str | None = None,
        request_id: str | None = None,
        ip_address: str | None = None,
        resource: str | None = None,
        reason: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        """Persist one audit record.

        The hash and sanitized details are fully computed before the storage
        call, so concurrent calls never share intermediate state.

        Returns:
            The persisted entry, including its assigned id.

        Raises:
            ValidationAppError: If category, action, severity or result is missing.
            AuditWriteError: If the storage backend fails.
        """
        required = {"category": category, "action": action, "severity": severity, "result": result}
        missing = [name for name, value in required.items() if not _enum_value(value)]
        if missing:
            logger.error(
                "audit.write_failed",
                extra={"reason": "missing_fields", "missing_fields": missing},
            )
            raise ValidationAppError(
                code="audit_entry_invalid",
                message="Missing required audit log fields",
                details={"missing_fields": missing},
            )

        entry = AuditEntry(
            id=None,
            timestamp=self._now(),
            category=str(_enum_value(category)),
            action=str(_enum_value(action)),
            severity=str(_enum_value(severity)),
            result=str(_enum_value(result)),
            user_id=user_id,
            request_id=request_id if request_id is not None else get_request_id(),
            ip_address=ip_address,
            resource=resource,
            reason=reason,
            details_json=serialize_details(sanitize_details(details or {})),
            integrity_hash="",
        )
        entry = replace(entry, integrity_hash=compute_integrity_hash(entry.as_row()))

        try:
            entry_id = await self._store.insert(entry.as_row())
        except Exception as exc:
            logger.error(
                "audit.write_failed",
                extra={
                    "reason": "storage_error",
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "category": entry.category,
                    "action": entry.action,
                },
            )
            raise AuditWriteError(
                code="audit_write_failed",
                message="Failed to persist audit log entry",
                details={"category": entry.category, "action": entry.action},
            ) from exc

        entry = replace(entry, id=entry_id)

        log_event(
            AUDIT_SCOPE,
            f"{entry.action}: {entry.result}",
            {
                "audit_id": entry.id,
                "category": entry.category,
                "action": entry.action,
                "severity": entry.severity,
                "result": entry.result,
                "user_id": entry.user_id,
                "request_id": entry.request_id,
                "ip_address": entry.ip_address,
                "resource": entry.resource,
                "reason": entry.reason,
            },
            level=logging.WARNING if entry.severity == AuditSeverity.HIGH.value else logging.INFO,
        )
        return entry

    @staticmethod
    def verify_integrity(entry: AuditEntry | Mapping[str, Any]) -> bool:
        """Recompute the hash of a stored entry and compare it to the stored one.

        Accepts an AuditEntry or a raw storage row. The stored hash is only
        used as the comparison target, never trusted on its own.
        """
        row = entry.as_row() if isinstance(entry, AuditEntry) else entry
        stored_hash = row.get("integrity_hash")
        if not isinstance(stored_hash, str) or not stored_hash:
            return False
        expected = compute_integrity_hash(row)
        return hmac.compare_digest(expected, stored_hash)

    async def get(self, entry_id: int) -> AuditEntry | None:
        row = await self._store.get(entry_id)
        return AuditEntry.from_row(row) if row is not None else None

    async def query(self, filters: AuditQuery | None = None) -> list[AuditEntry]:
        """List entries matching ``filters``, newest first."""
        filters = filters or AuditQuery()
        try:
            rows = await self._store.select(filters)
        except Exception as exc:
            logger.error(
                "audit.query_failed",
                extra={
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "filters": filters.model_dump(mode="json"),
                },
            )
            raise
        return [AuditEntry.from_row(row) for row in rows]

    async def get_statistics(self, filters: AuditQuery | None = None) -> list[dict[str, Any]]:
        """Counts grouped by (category, action, severity, result)."""
        filters = filters or AuditQuery()
        try:
            rows = await self._store.count_grouped(filters)
        except Exception as exc:
            logger.error(
                "audit.statistics_failed",
                extra={
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                    "filters": filters.model_dump(mode="json"),
                },
            )
            raise
        return [
            {
                "category": row["category"],
                "action": row["action"],
                "severity": row["severity"],
                "result": row["result"],
                "count": int(row["count"]),
            }
            for row in rows
        ]

    async def verify_trail(self, filters: AuditQuery | None = None) -> IntegrityReport:
        """Re-verify every entry matched by ``filters``.

        Tampering is reported, not raised; escalation belongs to the caller.
        """
        entries = await self.query(filters)
        tampered = [entry.id for entry in entries if entry.id is not None and not self.verify_integrity(entry)]
        report = IntegrityReport(checked=len(entries), tampered_ids=tampered)
        if tampered:
            logger.error(
                "audit.integrity_violation",
                extra={"checked": report.checked, "tampered_ids": tampered},
            )
        else:
            logger.info("audit.integrity_verified", extra={"checked": report.checked})
        return report
