"""
Support Store.

Relational persistence for threads, messages, verification records,
escalation emails, learning proposals, resolution analyses and the
knowledge base. Backed by sqlite; every write goes through one lock, and the
check-and-set operations below are single conditional statements or guarded
by partial unique indexes, so they stay atomic across processes sharing the
database file.
"""

import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from config.settings import settings
from support_inbox.exceptions import NotFoundError
from support_inbox.models.schemas import (
    AgentInstruction, CustomerSnapshot, EscalationEmail, KnowledgeChunk,
    KnowledgeDocument, LearningProposal, Message, OrderSnapshot,
    ProposalStatus, ResolutionAnalysis, ResponseType, Thread, ThreadEvent,
    VerificationRecord, VerificationStatus, utc_now
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    subject TEXT,
    customer_email TEXT,
    provider_thread_ref TEXT,
    state TEXT NOT NULL,
    last_intent TEXT,
    verification_status TEXT,
    verified_at TEXT,
    human_handling INTEGER NOT NULL DEFAULT 0,
    human_handler TEXT,
    human_handling_started_at TEXT,
    resolved_at TEXT,
    resolution_count INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS ix_threads_provider_ref ON threads(provider_thread_ref);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    direction TEXT NOT NULL,
    role TEXT NOT NULL,
    from_email TEXT,
    body_text TEXT NOT NULL DEFAULT '',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_messages_thread ON messages(thread_id, created_at);

CREATE TABLE IF NOT EXISTS thread_events (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS verification_records (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    email TEXT,
    order_number TEXT,
    customer_id TEXT,
    order_id TEXT,
    status TEXT NOT NULL,
    flags TEXT NOT NULL DEFAULT '[]',
    customer TEXT,
    "order" TEXT,
    message TEXT NOT NULL DEFAULT '',
    error TEXT,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_verified_per_thread
    ON verification_records(thread_id) WHERE status = 'verified';

CREATE TABLE IF NOT EXISTS escalation_emails (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    sent_to TEXT NOT NULL,
    subject TEXT NOT NULL,
    html_body TEXT NOT NULL DEFAULT '',
    reason TEXT NOT NULL DEFAULT '',
    provider_message_id TEXT,
    response_received INTEGER NOT NULL DEFAULT 0,
    response_type TEXT,
    response_content TEXT,
    response_at TEXT,
    sent_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_escalation_thread ON escalation_emails(thread_id, sent_at);

CREATE TABLE IF NOT EXISTS learning_proposals (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    proposed_content TEXT NOT NULL,
    source_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    dialogue_quality REAL,
    similarity_to_existing REAL NOT NULL DEFAULT 0,
    similar_doc_id TEXT,
    auto_approved INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    reviewed_by TEXT,
    reviewed_at TEXT,
    review_notes TEXT,
    published_kb_doc_id TEXT,
    published_instruction_id TEXT,
    created_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_live_proposal
    ON learning_proposals(thread_id, type, title) WHERE status IN ('pending', 'approved');

CREATE TABLE IF NOT EXISTS resolution_analyses (
    thread_id TEXT PRIMARY KEY,
    dialogue_quality REAL NOT NULL,
    dialogue_summary TEXT,
    proposals_generated INTEGER NOT NULL DEFAULT 0,
    proposals_auto_approved INTEGER NOT NULL DEFAULT 0,
    proposals_pending_review INTEGER NOT NULL DEFAULT 0,
    analyzed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS learning_runs (
    thread_id TEXT NOT NULL,
    resolution_count INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (thread_id, resolution_count)
);

CREATE TABLE IF NOT EXISTS kb_docs (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    source TEXT NOT NULL,
    source_id TEXT,
    intent_tags TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'published',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS kb_chunks (
    id TEXT PRIMARY KEY,
    doc_id TEXT NOT NULL REFERENCES kb_docs(id),
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_instructions (
    id TEXT PRIMARY KEY,
    section TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    rationale TEXT,
    category TEXT NOT NULL DEFAULT 'learned',
    priority INTEGER NOT NULL DEFAULT 50,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
"""

# Columns holding JSON documents, per table
JSON_COLUMNS = {
    "messages": {"metadata"},
    "thread_events": {"payload"},
    "verification_records": {"flags", "customer", "order"},
    "kb_docs": {"intent_tags", "metadata"},
}


def new_id() -> str:
    return str(uuid.uuid4())


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, BaseModel):
        return json.dumps(value.model_dump(mode="json"))
    return value


class SupportStore:
    def __init__(self, database_path: Optional[str] = None):
        self.database_path = database_path or settings.DATABASE_PATH
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            with self._lock:
                if self._conn is None:
                    self._conn = self._connect()
        return self._conn

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        conn.commit()
        logger.info("Support store ready at %s", self.database_path)
        return conn

    def initialize(self):
        """Create the schema if needed"""
        return self.conn is not None

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Low level helpers
    # ------------------------------------------------------------------

    def _encode(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        json_cols = JSON_COLUMNS.get(table, set())
        encoded = {}
        for key, value in data.items():
            if key in json_cols and value is not None and not isinstance(value, str):
                if isinstance(value, BaseModel):
                    value = value.model_dump(mode="json")
                encoded[key] = json.dumps(value)
            else:
                encoded[key] = _to_db(value)
        return encoded

    def _decode(self, table: str, row: sqlite3.Row) -> Dict[str, Any]:
        json_cols = JSON_COLUMNS.get(table, set())
        data = dict(row)
        for key in json_cols:
            if data.get(key) is not None:
                data[key] = json.loads(data[key])
        return data

    def _insert(self, table: str, data: Dict[str, Any], or_ignore: bool = False) -> int:
        encoded = self._encode(table, data)
        columns = ", ".join(f'"{c}"' for c in encoded)
        placeholders = ", ".join("?" for _ in encoded)
        verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
        with self._lock:
            cursor = self.conn.execute(
                f"{verb} INTO {table} ({columns}) VALUES ({placeholders})",
                list(encoded.values())
            )
            self.conn.commit()
            return cursor.rowcount

    def _update(self, table: str, key: str, key_value: Any,
                fields: Dict[str, Any],
                where: Optional[Dict[str, Any]] = None,
                where_in: Optional[Tuple[str, Iterable[Any]]] = None) -> int:
        encoded = self._encode(table, fields)
        assignments = ", ".join(f'"{c}" = ?' for c in encoded)
        params = list(encoded.values()) + [key_value]
        clause = f"{key} = ?"
        for column, value in (where or {}).items():
            clause += f' AND "{column}" = ?'
            params.append(_to_db(value))
        if where_in:
            column, values = where_in
            values = [_to_db(v) for v in values]
            clause += f' AND "{column}" IN ({", ".join("?" for _ in values)})'
            params.extend(values)
        with self._lock:
            cursor = self.conn.execute(
                f"UPDATE {table} SET {assignments} WHERE {clause}", params
            )
            self.conn.commit()
            return cursor.rowcount

    def _fetch_one(self, table: str, sql: str, params: Iterable[Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(sql, list(params)).fetchone()
        return self._decode(table, row) if row else None

    def _fetch_all(self, table: str, sql: str, params: Iterable[Any]) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(sql, list(params)).fetchall()
        return [self._decode(table, row) for row in rows]

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(self, thread: Thread) -> Thread:
        self._insert("threads", thread.model_dump(), or_ignore=True)
        return self.get_thread(thread.id)

    def ensure_thread(self, thread_id: str, subject: Optional[str] = None,
                      customer_email: Optional[str] = None,
                      provider_thread_ref: Optional[str] = None) -> Thread:
        existing = self.get_thread(thread_id)
        if existing:
            return existing
        return self.create_thread(Thread(
            id=thread_id,
            subject=subject,
            customer_email=customer_email,
            provider_thread_ref=provider_thread_ref
        ))

    def get_thread(self, thread_id: str) -> Optional[Thread]:
        row = self._fetch_one("threads", "SELECT * FROM threads WHERE id = ?", [thread_id])
        return Thread(**row) if row else None

    def require_thread(self, thread_id: str) -> Thread:
        thread = self.get_thread(thread_id)
        if thread is None:
            raise NotFoundError(f"Thread not found: {thread_id}")
        return thread

    def get_thread_by_provider_ref(self, provider_thread_ref: str) -> Optional[Thread]:
        row = self._fetch_one(
            "threads",
            "SELECT * FROM threads WHERE provider_thread_ref = ? ORDER BY created_at DESC LIMIT 1",
            [provider_thread_ref]
        )
        return Thread(**row) if row else None

    def compare_and_set_thread(self, thread_id: str, expected_version: int,
                               fields: Dict[str, Any]) -> bool:
        """Apply ``fields`` only if the thread is still at ``expected_version``"""
        fields = dict(fields)
        fields["version"] = expected_version + 1
        fields["updated_at"] = utc_now()
        updated = self._update("threads", "id", thread_id, fields,
                               where={"version": expected_version})
        return updated == 1

    def update_thread(self, thread_id: str, **fields) -> None:
        fields["updated_at"] = utc_now()
        self._update("threads", "id", thread_id, fields)

    # ------------------------------------------------------------------
    # Messages and events
    # ------------------------------------------------------------------

    def add_message(self, message: Message) -> Message:
        self._insert("messages", message.model_dump())
        return message

    def list_messages(self, thread_id: str) -> List[Message]:
        rows = self._fetch_all(
            "messages",
            "SELECT * FROM messages WHERE thread_id = ? ORDER BY created_at ASC, rowid ASC",
            [thread_id]
        )
        return [Message(**row) for row in rows]

    def list_drafts(self, thread_id: str) -> List[Message]:
        return [m for m in self.list_messages(thread_id) if m.role.value == "draft"]

    def add_event(self, thread_id: str, event_type: str,
                  payload: Optional[Dict[str, Any]] = None) -> ThreadEvent:
        event = ThreadEvent(id=new_id(), thread_id=thread_id,
                            event_type=event_type, payload=payload or {})
        self._insert("thread_events", event.model_dump(mode="json"))
        return event

    def list_events(self, thread_id: str, event_type: Optional[str] = None) -> List[ThreadEvent]:
        sql = "SELECT * FROM thread_events WHERE thread_id = ?"
        params: List[Any] = [thread_id]
        if event_type:
            sql += " AND event_type = ?"
            params.append(event_type)
        rows = self._fetch_all("thread_events", sql + " ORDER BY created_at ASC, rowid ASC", params)
        return [ThreadEvent(**row) for row in rows]

    # ------------------------------------------------------------------
    # Verification records
    # ------------------------------------------------------------------

    def insert_verification(self, record: VerificationRecord) -> bool:
        """Append a verification record; False if a verified one already exists"""
        data = record.model_dump()
        data["customer"] = record.customer
        data["order"] = record.order
        try:
            self._insert("verification_records", data)
        except sqlite3.IntegrityError:
            logger.info("Thread %s already holds a verified record", record.thread_id)
            return False
        return True

    def _verification_from_row(self, row: Dict[str, Any]) -> VerificationRecord:
        if row.get("customer"):
            row["customer"] = CustomerSnapshot(**row["customer"])
        if row.get("order"):
            row["order"] = OrderSnapshot(**row["order"])
        return VerificationRecord(**row)

    def get_verified_record(self, thread_id: str) -> Optional[VerificationRecord]:
        row = self._fetch_one(
            "verification_records",
            "SELECT * FROM verification_records WHERE thread_id = ? AND status = ?",
            [thread_id, VerificationStatus.VERIFIED.value]
        )
        return self._verification_from_row(row) if row else None

    def get_latest_verification(self, thread_id: str) -> Optional[VerificationRecord]:
        row = self._fetch_one(
            "verification_records",
            "SELECT * FROM verification_records WHERE thread_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            [thread_id]
        )
        return self._verification_from_row(row) if row else None

    def list_verifications(self, thread_id: str) -> List[VerificationRecord]:
        rows = self._fetch_all(
            "verification_records",
            "SELECT * FROM verification_records WHERE thread_id = ? ORDER BY created_at ASC, rowid ASC",
            [thread_id]
        )
        return [self._verification_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Escalation emails
    # ------------------------------------------------------------------

    def reserve_escalation_email(self, email: EscalationEmail,
                                 window_start: datetime) -> bool:
        """Insert ``email`` unless one was sent for the thread since ``window_start``"""
        encoded = self._encode("escalation_emails", email.model_dump())
        columns = ", ".join(f'"{c}"' for c in encoded)
        placeholders = ", ".join("?" for _ in encoded)
        # One statement so the window check and insert share sqlite's write lock
        with self._lock:
            cursor = self.conn.execute(
                f"INSERT INTO escalation_emails ({columns}) SELECT {placeholders} "
                "WHERE NOT EXISTS (SELECT 1 FROM escalation_emails "
                "WHERE thread_id = ? AND sent_at >= ?)",
                list(encoded.values()) + [email.thread_id, window_start.isoformat()]
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def set_escalation_provider_id(self, escalation_email_id: str,
                                   provider_message_id: str) -> None:
        self._update("escalation_emails", "id", escalation_email_id,
                     {"provider_message_id": provider_message_id})

    def delete_escalation_email(self, escalation_email_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM escalation_emails WHERE id = ?", [escalation_email_id])
            self.conn.commit()

    def get_escalation_email(self, escalation_email_id: str) -> Optional[EscalationEmail]:
        row = self._fetch_one("escalation_emails",
                              "SELECT * FROM escalation_emails WHERE id = ?",
                              [escalation_email_id])
        return EscalationEmail(**row) if row else None

    def list_escalation_emails(self, thread_id: str) -> List[EscalationEmail]:
        rows = self._fetch_all(
            "escalation_emails",
            "SELECT * FROM escalation_emails WHERE thread_id = ? ORDER BY sent_at ASC",
            [thread_id]
        )
        return [EscalationEmail(**row) for row in rows]

    def find_outstanding_escalation(self, thread_id: str) -> Optional[EscalationEmail]:
        row = self._fetch_one(
            "escalation_emails",
            "SELECT * FROM escalation_emails WHERE thread_id = ? AND response_received = 0 "
            "ORDER BY sent_at DESC LIMIT 1",
            [thread_id]
        )
        return EscalationEmail(**row) if row else None

    def claim_escalation_response(self, escalation_email_id: str,
                                  response_type: ResponseType,
                                  response_content: str) -> bool:
        """Mark the response received; True only for the first caller"""
        updated = self._update(
            "escalation_emails", "id", escalation_email_id,
            {
                "response_received": True,
                "response_type": response_type,
                "response_content": response_content,
                "response_at": utc_now()
            },
            where={"response_received": False}
        )
        return updated == 1

    # ------------------------------------------------------------------
    # Learning proposals and analyses
    # ------------------------------------------------------------------

    def create_proposal_if_absent(self, proposal: LearningProposal) -> Tuple[LearningProposal, bool]:
        """Insert unless a live proposal with the same thread, type and title exists"""
        with self._lock:
            existing = self._find_live_proposal(proposal.thread_id, proposal.type.value, proposal.title)
            if existing:
                return existing, False
            try:
                self._insert("learning_proposals", proposal.model_dump())
            except sqlite3.IntegrityError:
                return self._find_live_proposal(proposal.thread_id, proposal.type.value,
                                                proposal.title), False
            return proposal, True

    def _find_live_proposal(self, thread_id: str, proposal_type: str,
                            title: str) -> Optional[LearningProposal]:
        row = self._fetch_one(
            "learning_proposals",
            "SELECT * FROM learning_proposals WHERE thread_id = ? AND type = ? AND title = ? "
            "AND status IN ('pending', 'approved') LIMIT 1",
            [thread_id, proposal_type, title]
        )
        return LearningProposal(**row) if row else None

    def get_proposal(self, proposal_id: str) -> Optional[LearningProposal]:
        row = self._fetch_one("learning_proposals",
                              "SELECT * FROM learning_proposals WHERE id = ?", [proposal_id])
        return LearningProposal(**row) if row else None

    def list_proposals(self, thread_id: Optional[str] = None,
                       status: Optional[ProposalStatus] = None) -> List[LearningProposal]:
        sql = "SELECT * FROM learning_proposals WHERE 1 = 1"
        params: List[Any] = []
        if thread_id:
            sql += " AND thread_id = ?"
            params.append(thread_id)
        if status:
            sql += " AND status = ?"
            params.append(status.value)
        rows = self._fetch_all("learning_proposals", sql + " ORDER BY created_at ASC", params)
        return [LearningProposal(**row) for row in rows]

    def transition_proposal(self, proposal_id: str,
                            from_statuses: Iterable[ProposalStatus],
                            to_status: ProposalStatus, **fields) -> bool:
        fields["status"] = to_status
        updated = self._update("learning_proposals", "id", proposal_id, fields,
                               where_in=("status", list(from_statuses)))
        return updated == 1

    def update_proposal(self, proposal_id: str, **fields) -> None:
        self._update("learning_proposals", "id", proposal_id, fields)

    def upsert_resolution_analysis(self, analysis: ResolutionAnalysis) -> ResolutionAnalysis:
        data = self._encode("resolution_analyses", analysis.model_dump())
        columns = ", ".join(data)
        placeholders = ", ".join("?" for _ in data)
        updates = ", ".join(f"{c} = excluded.{c}" for c in data if c != "thread_id")
        with self._lock:
            self.conn.execute(
                f"INSERT INTO resolution_analyses ({columns}) VALUES ({placeholders}) "
                f"ON CONFLICT(thread_id) DO UPDATE SET {updates}",
                list(data.values())
            )
            self.conn.commit()
        return analysis

    def get_resolution_analysis(self, thread_id: str) -> Optional[ResolutionAnalysis]:
        row = self._fetch_one("resolution_analyses",
                              "SELECT * FROM resolution_analyses WHERE thread_id = ?", [thread_id])
        return ResolutionAnalysis(**row) if row else None

    def claim_learning_run(self, thread_id: str, resolution_count: int) -> bool:
        """True only the first time a given resolution event is claimed"""
        inserted = self._insert("learning_runs", {
            "thread_id": thread_id,
            "resolution_count": resolution_count,
            "created_at": utc_now()
        }, or_ignore=True)
        return inserted == 1

    # ------------------------------------------------------------------
    # Knowledge base and instructions
    # ------------------------------------------------------------------

    def insert_kb_doc(self, doc: KnowledgeDocument) -> KnowledgeDocument:
        self._insert("kb_docs", doc.model_dump())
        return doc

    def get_kb_doc(self, doc_id: str) -> Optional[KnowledgeDocument]:
        row = self._fetch_one("kb_docs", "SELECT * FROM kb_docs WHERE id = ?", [doc_id])
        return KnowledgeDocument(**row) if row else None

    def delete_kb_doc(self, doc_id: str) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM kb_chunks WHERE doc_id = ?", [doc_id])
            self.conn.execute("DELETE FROM kb_docs WHERE id = ?", [doc_id])
            self.conn.commit()

    def list_published_doc_titles(self, intent: str, limit: int) -> List[str]:
        rows = self._fetch_all(
            "kb_docs",
            "SELECT * FROM kb_docs WHERE status = 'published' ORDER BY created_at DESC",
            []
        )
        titles = [row["title"] for row in rows if intent in (row.get("intent_tags") or [])]
        return titles[:limit]

    def insert_kb_chunk(self, chunk: KnowledgeChunk) -> KnowledgeChunk:
        self._insert("kb_chunks", chunk.model_dump())
        return chunk

    def list_kb_chunks(self, doc_id: str) -> List[KnowledgeChunk]:
        rows = self._fetch_all("kb_chunks",
                               "SELECT * FROM kb_chunks WHERE doc_id = ? ORDER BY chunk_index",
                               [doc_id])
        return [KnowledgeChunk(**row) for row in rows]

    def insert_instruction(self, instruction: AgentInstruction) -> AgentInstruction:
        self._insert("agent_instructions", instruction.model_dump())
        return instruction

    def list_instructions(self, section: Optional[str] = None) -> List[AgentInstruction]:
        sql = "SELECT * FROM agent_instructions"
        params: List[Any] = []
        if section:
            sql += " WHERE section = ?"
            params.append(section)
        rows = self._fetch_all("agent_instructions", sql + " ORDER BY created_at ASC", params)
        return [AgentInstruction(**row) for row in rows]


# Global store instance
support_store = SupportStore()
