"""
Append-Only, Tamper-Evident Execution Audit Log (Hash-Chained).

Every engine mutation -- execution start, step completion, clinical
decisions and overrides, deviations, outcome measurements, pause / resume /
abandon, completion, and failed side effects -- is recorded as an
append-only audit entry.  Entries are linked through a SHA-256 hash chain:
modifying any entry after the fact breaks ``verify_chain()``.

Queries and exports are scoped by definition and execution.  Exports run the
metadata through ``redact_phi_from_metadata`` first, since observed values
recorded during a protocol can carry identifying data.

The hash chain gives structural tamper evidence for review.  Stronger
guarantees (WORM storage, external anchoring) belong to the storage layer.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    EXECUTION_STARTED = "EXECUTION_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_COMPLETION_REPLAYED = "STEP_COMPLETION_REPLAYED"
    AWAITING_RESOLUTION = "AWAITING_RESOLUTION"
    DECISION_RECORDED = "DECISION_RECORDED"
    DECISION_OVERRIDE = "DECISION_OVERRIDE"
    DEVIATION_RECORDED = "DEVIATION_RECORDED"
    OUTCOME_RECORDED = "OUTCOME_RECORDED"
    EXECUTION_PAUSED = "EXECUTION_PAUSED"
    EXECUTION_RESUMED = "EXECUTION_RESUMED"
    EXECUTION_ABANDONED = "EXECUTION_ABANDONED"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"
    ACTION_FAILED = "ACTION_FAILED"
    ALERT_RAISED = "ALERT_RAISED"
    TRIGGER_FIRED = "TRIGGER_FIRED"
    TRIGGER_TOGGLED = "TRIGGER_TOGGLED"
    NOTE_ADDED = "NOTE_ADDED"
    ORDER_SET_EXECUTED = "ORDER_SET_EXECUTED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Who did what to which execution, and when, linked to the previous
    entry by hash."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    definition_id: str = Field(..., description="Definition the event belongs to.")
    execution_id: str = Field(default="", description="Execution concerned; empty for trigger events.")
    subject_id: str = Field(default="")
    actor_id: str = Field(..., description="Clinician, user or system id.")
    event_type: AuditEventType
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry in the chain.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation used for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "definition_id": self.definition_id,
            "execution_id": self.execution_id,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "firstname", "lastname",
             "patient_name", "patientname", "dob", "date_of_birth", "ssn", "email",
             "phone", "address", "zip_code"}


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with identifying fields replaced.

    Keys that name identifying data are replaced wholesale; string values
    are scrubbed of SSN / phone / email patterns.  Nested mappings and lists
    are walked.
    """
    return {key: _redact_value(key, value) for key, value in metadata.items()}


def _redact_value(key: str, value: Any) -> Any:
    if key.lower() in _PHI_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        for pattern_name, pattern in _PHI_PATTERNS.items():
            value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
        return value
    if isinstance(value, dict):
        return redact_phi_from_metadata(value)
    if isinstance(value, list):
        return [_redact_value("", v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no update or delete.  ``verify_chain()`` walks the log and
    reports the first broken link.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the chain and store it."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken entry, or None.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = "" if i == 0 else self._entries[i - 1].compute_hash()
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        definition_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Filter entries; every argument left as None matches everything.

        Returns copies, in append order.
        """
        results = []
        for entry in self._entries:
            if definition_id is not None and entry.definition_id != definition_id:
                continue
            if execution_id is not None and entry.execution_id != execution_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        definition_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """JSON-serializable export bundle for one definition, PHI-redacted,
        with the chain verification result."""
        entries = self.query(definition_id=definition_id, time_start=time_start, time_end=time_end)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_phi_from_metadata(entry.metadata)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "definition_id": definition_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
