"""Chain-of-custody log: append-only, hash-chained audit trail for evidence"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import utcnow
from errors import AuditLogError, EvidenceCoreError
from models import AuditLog
from schemas import Actor

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

ACTIONS = (
    "CAPTURED",
    "HASHED",
    "STORED",
    "VIEWED",
    "SYNCED",
    "EXPORTED",
    "INCLUDED_IN_REPORT",
    "VERIFIED",
    "DELETED",
)


@dataclass(frozen=True)
class CustodyEvent:
    id: str
    sequence_number: int
    action: str
    entity_type: str
    entity_id: str
    timestamp: datetime
    user_id: Optional[str]
    user_name: Optional[str]
    device_id: Optional[str]
    hash_at_time: Optional[str]
    details: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: AuditLog) -> "CustodyEvent":
        return cls(
            id=row.id,
            sequence_number=row.sequence_number,
            action=row.action,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            timestamp=row.created_at,
            user_id=row.user_id,
            user_name=row.user_name,
            device_id=row.device_id,
            hash_at_time=row.hash_at_time,
            details=json.loads(row.details_json or "{}"),
        )


def _entry_hash(sequence_number, action, entity_type, entity_id, hash_at_time, details,
                previous_hash, created_at: datetime) -> str:
    hash_content = json.dumps(
        {
            "sequence_number": sequence_number,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "hash_at_time": hash_at_time,
            "details": details,
            "previous_hash": previous_hash,
            "created_at": created_at.isoformat(),
        },
        sort_keys=True,
    )
    return hashlib.sha256(hash_content.encode()).hexdigest()


def log_event(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: str,
    details: dict,
    hash_at_time: Optional[str] = None,
    device_id: Optional[str] = None,
    actor: Optional[Actor] = None,
) -> AuditLog:
    """Add the next link to the custody chain inside the caller's transaction."""
    if action not in ACTIONS:
        raise ValueError(f"Unknown custody action: {action}")

    last_entry = db.query(AuditLog).order_by(AuditLog.sequence_number.desc()).first()
    if last_entry:
        previous_hash = last_entry.entry_hash
        next_sequence = last_entry.sequence_number + 1
    else:
        previous_hash = GENESIS_HASH
        next_sequence = 1

    now = utcnow()
    details = {**details, "device_id": device_id, "hash_at_time": hash_at_time}
    entry_hash = _entry_hash(
        next_sequence, action, entity_type, entity_id, hash_at_time, details, previous_hash, now
    )

    actor = actor or Actor()
    entry = AuditLog(
        sequence_number=next_sequence,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=actor.user_id,
        user_name=actor.user_name,
        device_id=device_id,
        hash_at_time=hash_at_time,
        details_json=json.dumps(details, sort_keys=True),
        entry_hash=entry_hash,
        previous_hash=previous_hash,
        created_at=now,
    )
    db.add(entry)
    # Visible to later reads in this transaction; the caller commits
    db.flush()
    return entry


def _iter_chain(db: Session, batch_size: int) -> Iterator[AuditLog]:
    """Rows in sequence order, read in bounded pages keyed on sequence_number."""
    after = 0
    while True:
        page = (
            db.query(AuditLog)
            .filter(AuditLog.sequence_number > after)
            .order_by(AuditLog.sequence_number.asc())
            .limit(batch_size)
            .all()
        )
        if not page:
            return
        yield from page
        after = page[-1].sequence_number
        db.expire_all()


def _link_problems(row: AuditLog, expected_sequence: int, expected_previous: str) -> List[dict]:
    found = []
    if row.sequence_number != expected_sequence:
        found.append(("sequence gap", str(expected_sequence), str(row.sequence_number)))
    if row.previous_hash != expected_previous:
        found.append(("previous_hash mismatch", expected_previous, row.previous_hash))
    recomputed = _entry_hash(
        row.sequence_number,
        row.action,
        row.entity_type,
        row.entity_id,
        row.hash_at_time,
        json.loads(row.details_json or "{}"),
        row.previous_hash,
        row.created_at,
    )
    if recomputed != row.entry_hash:
        found.append(("entry_hash mismatch", recomputed, row.entry_hash))
    return [
        {"sequence_number": row.sequence_number, "error": error, "expected": expected, "actual": actual}
        for error, expected, actual in found
    ]


def verify_chain(db: Session, batch_size: int = 1000) -> dict:
    """Recompute every link of the custody chain from the genesis hash."""
    errors: List[dict] = []
    checked = 0
    previous, last_sequence = GENESIS_HASH, 0
    for row in _iter_chain(db, batch_size):
        checked += 1
        errors.extend(_link_problems(row, last_sequence + 1, previous))
        previous, last_sequence = row.entry_hash, row.sequence_number
    if errors:
        logger.error(f"Custody chain verification found {len(errors)} problems in {checked} entries")
    return {"valid": not errors, "entries_checked": checked, "errors": errors}


class ChainOfCustodyLog:
    """Append and read custody events through the local store's transactions.

    There is no update or delete operation. Append failures raise
    AuditLogError and must reach the caller.
    """

    def __init__(self, store, actor: Optional[Actor] = None):
        self.store = store
        self.actor = actor or Actor()

    def append(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        hash_at_time: Optional[str] = None,
        details: Optional[dict] = None,
        actor: Optional[Actor] = None,
    ) -> CustodyEvent:
        try:
            device_id = self.store.device_id()
            with self.store.transaction() as db:
                row = log_event(
                    db,
                    action,
                    entity_type,
                    entity_id,
                    details or {},
                    hash_at_time=hash_at_time,
                    device_id=device_id,
                    actor=actor or self.actor,
                )
                event = CustodyEvent.from_row(row)
        except (SQLAlchemyError, EvidenceCoreError, OSError) as e:
            logger.error(f"Custody append failed: {action} {entity_type}/{entity_id}: {e}")
            raise AuditLogError(f"Failed to append {action} for {entity_type}/{entity_id}: {e}") from e

        logger.info(
            f"Custody {action} {entity_type}/{entity_id}"
            + (f" hash={hash_at_time[:12]}..." if hash_at_time else "")
        )
        return event

    def chain_for(self, entity_type: str, entity_id: str) -> List[CustodyEvent]:
        """All events for one entity, newest first."""
        with self.store.transaction() as db:
            rows = (
                db.query(AuditLog)
                .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
                .order_by(AuditLog.sequence_number.desc())
                .all()
            )
            return [CustodyEvent.from_row(r) for r in rows]

    def count_for(self, entity_type: str, entity_id: str) -> int:
        with self.store.transaction() as db:
            return (
                db.query(AuditLog)
                .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
                .count()
            )

    def verify_chain(self, batch_size: int = 1000) -> dict:
        with self.store.transaction() as db:
            return verify_chain(db, batch_size=batch_size)

    def export_chain(self, report_id: str) -> dict:
        """Custody trail of a report and every evidence item attached to it."""
        evidence = {}
        for entity_type, item in self.store.list_evidence(report_id):
            evidence[f"{entity_type}:{item.id}"] = [
                _event_dict(e) for e in self.chain_for(entity_type, item.id)
            ]
        return {
            "report_id": report_id,
            "exported_at": utcnow().isoformat(),
            "report_events": [_event_dict(e) for e in self.chain_for("report", report_id)],
            "evidence_events": evidence,
        }

    # Lifecycle helpers

    def log_capture(self, entity_type: str, entity_id: str, digest: str, details: dict) -> List[CustodyEvent]:
        """CAPTURED, HASHED, STORED in that order for a freshly stored item."""
        return [
            self.append("CAPTURED", entity_type, entity_id, digest, details),
            self.append("HASHED", entity_type, entity_id, digest, {"algorithm": "SHA-256"}),
            self.append("STORED", entity_type, entity_id, digest,
                        {"original_filename": details.get("original_filename")}),
        ]

    def log_view(self, entity_type: str, entity_id: str, digest: str) -> CustodyEvent:
        return self.append("VIEWED", entity_type, entity_id, digest)

    def log_sync(self, entity_type: str, entity_id: str, digest: Optional[str], server_url: Optional[str]) -> CustodyEvent:
        return self.append("SYNCED", entity_type, entity_id, digest, {"server_url": server_url})

    def log_verification(self, entity_type: str, entity_id: str, expected: str, actual: str,
                         is_valid: bool, context: str = "manual") -> CustodyEvent:
        return self.append(
            "VERIFIED",
            entity_type,
            entity_id,
            actual or None,
            {
                "result": "PASSED" if is_valid else "FAILED",
                "is_valid": is_valid,
                "expected_hash": expected,
                "actual_hash": actual,
                "context": context,
            },
        )

    def log_export(self, entity_type: str, entity_id: str, digest: str, destination: str) -> CustodyEvent:
        return self.append("EXPORTED", entity_type, entity_id, digest, {"destination": destination})

    def log_included_in_report(self, entity_type: str, entity_id: str, digest: str, report_id: str) -> CustodyEvent:
        return self.append("INCLUDED_IN_REPORT", entity_type, entity_id, digest, {"report_id": report_id})

    def log_deletion(self, entity_type: str, entity_id: str, digest: str, reason: Optional[str]) -> CustodyEvent:
        return self.append("DELETED", entity_type, entity_id, digest, {"reason": reason})


def _event_dict(event: CustodyEvent) -> dict:
    return {
        "sequence_number": event.sequence_number,
        "action": event.action,
        "timestamp": event.timestamp.isoformat(),
        "user_id": event.user_id,
        "user_name": event.user_name,
        "device_id": event.device_id,
        "hash_at_time": event.hash_at_time,
        "details": event.details,
    }
