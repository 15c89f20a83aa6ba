"""Hash-Chained Audit Log - Tamper-evident record of every sensitive action

Self-Explanatory: Append-only audit trail where each entry commits to its predecessor.
Why: Regulators and customers must be able to prove who saw what, and any
     edit or deletion of history must be detectable.
How:
1. Entry fields (minus hash + signature) -> canonical JSON -> SHA-256 = eventHash
2. previousHash = eventHash of the current tail (64 zeros for the first entry)
3. eventHash signed with the bank signing key
4. Insert guarded by an in-process lock + UNIQUE(previous_hash): two writers
   can never both extend the same tail
5. Triggers reject UPDATE/DELETE on audit_logs

Verification walks a creation-ordered range: recompute hash, check signature,
check linkage. First failure wins.
"""

import json
import math
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from consentbridge.errors import NotFoundError
from consentbridge.models import ActorType, utcnow
from consentbridge.security.crypto_primitives import sha256_hex
from consentbridge.security.signature_service import SignatureService
from consentbridge.utils.metrics import audit_append_failures_total, audit_logs_written_total

logger = structlog.get_logger()

GENESIS_HASH = "0" * 64
MAX_APPEND_ATTEMPTS = 3

APPEND_ONLY_DDL = {
    "sqlite": [
        """
        CREATE TRIGGER IF NOT EXISTS audit_logs_no_update
        BEFORE UPDATE ON audit_logs
        BEGIN SELECT RAISE(ABORT, 'audit_logs is append-only'); END
        """,
        """
        CREATE TRIGGER IF NOT EXISTS audit_logs_no_delete
        BEFORE DELETE ON audit_logs
        BEGIN SELECT RAISE(ABORT, 'audit_logs is append-only'); END
        """,
    ],
    "postgresql": [
        """
        CREATE OR REPLACE FUNCTION audit_logs_append_only() RETURNS trigger AS $$
        BEGIN RAISE EXCEPTION 'audit_logs is append-only'; END;
        $$ LANGUAGE plpgsql
        """,
        "DROP TRIGGER IF EXISTS audit_logs_no_modify ON audit_logs",
        """
        CREATE TRIGGER audit_logs_no_modify
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION audit_logs_append_only()
        """,
    ],
}


class AuditEntry(BaseModel):
    seq: Optional[int] = None
    log_id: str
    event_type: str
    actor_type: ActorType
    actor_id: str
    consent_id: Optional[str] = None
    customer_id: Optional[str] = None
    partner_id: Optional[str] = None
    action_details: Dict = {}
    metadata: Dict = {}
    event_hash: str
    previous_hash: str
    digital_signature: str
    created_at: datetime

    def hash_material(self) -> Dict:
        """Everything the eventHash commits to"""
        return {
            "logId": self.log_id,
            "eventType": self.event_type,
            "actorType": self.actor_type.value,
            "actorId": self.actor_id,
            "consentId": self.consent_id,
            "customerId": self.customer_id,
            "partnerId": self.partner_id,
            "actionDetails": self.action_details,
            "metadata": self.metadata,
            "previousHash": self.previous_hash,
            "createdAt": self.created_at.isoformat(),
        }

    def to_wire(self) -> Dict:
        return {
            **self.hash_material(),
            "eventHash": self.event_hash,
            "digitalSignature": self.digital_signature,
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_event_hash(material: Dict) -> str:
    canonical = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(canonical)


class AuditChain:
    """Append-only, signed, hash-chained audit log"""

    def __init__(
        self,
        engine: Engine,
        signature_service: SignatureService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.signature_service = signature_service
        self.clock = clock
        self._append_lock = threading.Lock()
        self._init_db()
        logger.info("Audit chain initialized")

    def _init_db(self):
        """Initialize audit table, indexes and append-only triggers"""
        dialect = self.engine.dialect.name
        seq_column = (
            "INTEGER PRIMARY KEY AUTOINCREMENT" if dialect == "sqlite" else "BIGSERIAL PRIMARY KEY"
        )
        with self.engine.connect() as conn:
            conn.execute(text(f"""
                CREATE TABLE IF NOT EXISTS audit_logs (
                    seq {seq_column},
                    log_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    actor_type TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    consent_id TEXT,
                    customer_id TEXT,
                    partner_id TEXT,
                    action_details TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    event_hash TEXT NOT NULL,
                    previous_hash TEXT NOT NULL UNIQUE,
                    digital_signature TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """))

            conn.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_audit_created
                ON audit_logs(created_at DESC)
            """))

            conn.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_audit_actor
                ON audit_logs(actor_type, actor_id)
            """))

            for statement in APPEND_ONLY_DDL.get(dialect, []):
                conn.execute(text(statement))

            conn.commit()
            logger.info("Audit tables initialized", dialect=dialect)

    def append(
        self,
        event_type: str,
        actor_type: ActorType,
        actor_id: str,
        consent_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        partner_id: Optional[str] = None,
        action_details: Optional[Dict] = None,
        metadata: Optional[Dict] = None,
    ) -> AuditEntry:
        """Append one entry to the chain

        Args:
            event_type: e.g. "consent_created", "data_disclosed"
            actor_type: Who acted
            actor_id: Actor identifier
            consent_id/customer_id/partner_id: Optional context ids
            action_details: Event payload (no plaintext PII)
            metadata: Request metadata (ip hash, user agent, ...)

        Returns:
            The persisted AuditEntry

        Raises:
            IntegrityError: tail kept moving after MAX_APPEND_ATTEMPTS
        """
        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            try:
                with self._append_lock:
                    entry = self._append_once(
                        event_type, ActorType(actor_type), actor_id, consent_id,
                        customer_id, partner_id, action_details or {}, metadata or {},
                    )
                break
            except IntegrityError:
                logger.warning("Audit tail moved during append", attempt=attempt)
                if attempt == MAX_APPEND_ATTEMPTS:
                    raise

        logger.info(
            "Audit logged",
            log_id=entry.log_id,
            event_type=event_type,
            actor_type=entry.actor_type.value,
            hash=entry.event_hash[:8],
        )
        audit_logs_written_total.labels(
            event_type=event_type, actor_type=entry.actor_type.value
        ).inc()
        return entry

    def _append_once(
        self,
        event_type: str,
        actor_type: ActorType,
        actor_id: str,
        consent_id: Optional[str],
        customer_id: Optional[str],
        partner_id: Optional[str],
        action_details: Dict,
        metadata: Dict,
    ) -> AuditEntry:
        with self.engine.begin() as conn:
            tail = conn.execute(text("""
                SELECT event_hash FROM audit_logs ORDER BY seq DESC LIMIT 1
            """)).fetchone()
            previous_hash = tail.event_hash if tail else GENESIS_HASH

            draft = AuditEntry(
                log_id=str(uuid4()),
                event_type=event_type,
                actor_type=actor_type,
                actor_id=actor_id,
                consent_id=consent_id,
                customer_id=customer_id,
                partner_id=partner_id,
                action_details=json.loads(json.dumps(action_details, default=str)),
                metadata=json.loads(json.dumps(metadata, default=str)),
                event_hash="",
                previous_hash=previous_hash,
                digital_signature="",
                created_at=self.clock(),
            )
            event_hash = compute_event_hash(draft.hash_material())
            entry = draft.model_copy(update={
                "event_hash": event_hash,
                "digital_signature": self.signature_service.sign(event_hash),
            })

            conn.execute(text("""
                INSERT INTO audit_logs
                (log_id, event_type, actor_type, actor_id, consent_id, customer_id,
                 partner_id, action_details, metadata, event_hash, previous_hash,
                 digital_signature, created_at)
                VALUES (:id, :event_type, :actor_type, :actor_id, :consent, :customer,
                        :partner, :details, :metadata, :hash, :previous,
                        :signature, :created)
            """), {
                "id": entry.log_id,
                "event_type": entry.event_type,
                "actor_type": entry.actor_type.value,
                "actor_id": entry.actor_id,
                "consent": entry.consent_id,
                "customer": entry.customer_id,
                "partner": entry.partner_id,
                "details": json.dumps(entry.action_details),
                "metadata": json.dumps(entry.metadata),
                "hash": entry.event_hash,
                "previous": entry.previous_hash,
                "signature": entry.digital_signature,
                "created": entry.created_at.isoformat(),
            })
        return entry

    def record(self, event_type: str, actor_type: ActorType, actor_id: str, **context) -> Optional[AuditEntry]:
        """Append without ever failing the caller

        Audit persistence failures are logged and counted; the primary
        operation proceeds.
        """
        try:
            return self.append(event_type, actor_type, actor_id, **context)
        except Exception as e:
            audit_append_failures_total.labels(event_type=event_type).inc()
            logger.warning("Audit log write failed", event_type=event_type, error=str(e))
            return None

    @staticmethod
    def _row_to_entry(row) -> AuditEntry:
        data = dict(row._mapping)
        data["action_details"] = json.loads(data["action_details"])
        data["metadata"] = json.loads(data["metadata"])
        return AuditEntry(**data)

    def _seq_of(self, conn, log_id: str) -> int:
        row = conn.execute(text("""
            SELECT seq FROM audit_logs WHERE log_id = :id
        """), {"id": log_id}).fetchone()
        if not row:
            raise NotFoundError(f"Audit log {log_id} not found")
        return row.seq

    def get_entries_between(self, start_log_id: str, end_log_id: str) -> List[AuditEntry]:
        """Entries in creation order between two ids, inclusive"""
        with self.engine.connect() as conn:
            start_seq = self._seq_of(conn, start_log_id)
            end_seq = self._seq_of(conn, end_log_id)
            low, high = min(start_seq, end_seq), max(start_seq, end_seq)
            rows = conn.execute(text("""
                SELECT * FROM audit_logs
                WHERE seq BETWEEN :low AND :high
                ORDER BY seq ASC
            """), {"low": low, "high": high}).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def verify_entries(self, entries: List[AuditEntry]) -> Dict:
        """Verify a creation-ordered run of entries

        Returns:
            {"valid": bool, "message": str}
        """
        for i, entry in enumerate(entries):
            if compute_event_hash(entry.hash_material()) != entry.event_hash:
                return {"valid": False, "message": f"Hash mismatch at log {entry.log_id}"}

            if not self.signature_service.verify(entry.event_hash, entry.digital_signature):
                return {"valid": False, "message": f"Invalid signature at log {entry.log_id}"}

            if i > 0 and entry.previous_hash != entries[i - 1].event_hash:
                return {
                    "valid": False,
                    "message": (
                        f"Chain broken between logs {entries[i - 1].log_id} "
                        f"and {entry.log_id}"
                    ),
                }

        return {"valid": True, "message": f"Chain integrity verified for {len(entries)} logs"}

    def verify_chain_integrity(self, start_log_id: str, end_log_id: str) -> Dict:
        """Verify the inclusive range between two log ids

        Raises:
            NotFoundError: either id is unknown
        """
        result = self.verify_entries(self.get_entries_between(start_log_id, end_log_id))
        if not result["valid"]:
            logger.warning("Audit chain verification failed", message=result["message"])
        return result

    def verify_tail(self, window: int) -> Dict:
        """Verify the newest `window` entries"""
        with self.engine.connect() as conn:
            rows = conn.execute(text("""
                SELECT * FROM audit_logs ORDER BY seq DESC LIMIT :limit
            """), {"limit": window}).fetchall()
        return self.verify_entries([self._row_to_entry(row) for row in reversed(rows)])

    def query(
        self,
        filters: Optional[Dict] = None,
        limit: int = 100,
        page: int = 1,
    ) -> Tuple[List[AuditEntry], Dict]:
        """Paginated read, newest first

        Args:
            filters: any of event_type, actor_type, actor_id, consent_id,
                customer_id, partner_id, start_date, end_date
            limit: Page size
            page: 1-based page number

        Returns:
            (entries, pagination dict)
        """
        filters = filters or {}
        clauses = []
        params: Dict = {}
        for column in ("event_type", "actor_type", "actor_id", "consent_id", "customer_id", "partner_id"):
            value = filters.get(column)
            if value:
                clauses.append(f"{column} = :{column}")
                params[column] = value.value if isinstance(value, ActorType) else value
        if filters.get("start_date"):
            clauses.append("created_at >= :start_date")
            params["start_date"] = _as_utc(filters["start_date"]).isoformat()
        if filters.get("end_date"):
            clauses.append("created_at <= :end_date")
            params["end_date"] = _as_utc(filters["end_date"]).isoformat()
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        limit = max(1, min(limit, 1000))
        page = max(1, page)
        with self.engine.connect() as conn:
            total = conn.execute(
                text(f"SELECT COUNT(*) FROM audit_logs {where}"), params
            ).scalar_one()
            rows = conn.execute(
                text(f"SELECT * FROM audit_logs {where} ORDER BY seq DESC LIMIT :limit OFFSET :offset"),
                {**params, "limit": limit, "offset": (page - 1) * limit},
            ).fetchall()

        pagination = {
            "totalLogs": total,
            "totalPages": math.ceil(total / limit) if total else 0,
            "currentPage": page,
            "limit": limit,
        }
        return [self._row_to_entry(row) for row in rows], pagination

    def integrity_for(self, entries: List[AuditEntry], window: int = 100) -> Dict:
        """Integrity check over a newest-first page of entries

        Adjacent entries on a filtered page are not chain neighbours, so each
        entry is checked against its true predecessor.
        """
        checked = sorted(entries[:window], key=lambda e: e.seq or 0)
        for entry in checked:
            result = self.verify_entries([entry])
            if not result["valid"]:
                return result
            if entry.previous_hash == GENESIS_HASH:
                continue
            with self.engine.connect() as conn:
                predecessor = conn.execute(text("""
                    SELECT event_hash FROM audit_logs WHERE seq < :seq
                    ORDER BY seq DESC LIMIT 1
                """), {"seq": entry.seq}).fetchone()
            if not predecessor or predecessor.event_hash != entry.previous_hash:
                return {"valid": False, "message": f"Chain broken before log {entry.log_id}"}
        return {"valid": True, "message": f"Chain integrity verified for {len(checked)} logs"}
