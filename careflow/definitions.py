"""
Definition parsing and lifecycle.

Definitions are authored as plain mappings (YAML, JSON, an admin API) and
validated here into frozen ``Definition`` models.  Their status follows a
guarded lifecycle:

    draft -> pending_approval -> active <-> suspended -> retired

A pending definition can also be sent back to draft, and any non-retired
definition can be retired.  Status changes produce a new frozen copy of the
same version; steps and edges are never edited in place.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

import pydantic

from careflow.audit import AuditEntry, AuditEventType, AuditLog
from careflow.errors import InvalidStateError, NotFoundError, ValidationError
from careflow.models import Definition, DefinitionStatus
from careflow.repository import InMemoryDefinitionRepository

logger = logging.getLogger(__name__)


_VALID_TRANSITIONS: dict[DefinitionStatus, set[DefinitionStatus]] = {
    DefinitionStatus.DRAFT: {DefinitionStatus.PENDING_APPROVAL, DefinitionStatus.RETIRED},
    DefinitionStatus.PENDING_APPROVAL: {
        DefinitionStatus.ACTIVE,
        DefinitionStatus.DRAFT,
        DefinitionStatus.RETIRED,
    },
    DefinitionStatus.ACTIVE: {DefinitionStatus.SUSPENDED, DefinitionStatus.RETIRED},
    DefinitionStatus.SUSPENDED: {DefinitionStatus.ACTIVE, DefinitionStatus.RETIRED},
    DefinitionStatus.RETIRED: set(),  # terminal state
}


def parse_definition(data: Mapping[str, Any]) -> Definition:
    """Validate a raw mapping into a ``Definition``.

    Raises:
        ValidationError: With one detail line per pydantic error, when the
            mapping is malformed or the step graph is inconsistent.
    """
    try:
        return Definition.model_validate(data)
    except pydantic.ValidationError as exc:
        ident = data.get("definition_id", "<unknown>") if isinstance(data, Mapping) else "<unknown>"
        raise ValidationError(
            f"Invalid definition '{ident}'.",
            details=[f"{'.'.join(map(str, e['loc'])) or '<root>'}: {e['msg']}" for e in exc.errors()],
        ) from exc


def can_transition(current: DefinitionStatus, target: DefinitionStatus) -> bool:
    return target in _VALID_TRANSITIONS.get(current, set())


def transition_status(
    repository: InMemoryDefinitionRepository,
    definition_id: str,
    target: DefinitionStatus,
    version: Optional[str] = None,
) -> Definition:
    """Move a registered definition version to a new lifecycle status.

    Args:
        repository: The store holding the definition.
        definition_id: Definition to transition.
        target: The new status.
        version: Specific version; the latest one when omitted.

    Returns:
        The updated (new frozen) definition.

    Raises:
        NotFoundError: If the definition or version is unknown.
        InvalidStateError: If the lifecycle does not allow the transition.
    """
    definition = repository.get_by_id(definition_id, version)
    if definition is None:
        raise NotFoundError(f"Definition '{definition_id}' not found")
    if not can_transition(definition.status, target):
        allowed = sorted(s.value for s in _VALID_TRANSITIONS.get(definition.status, set()))
        raise InvalidStateError(
            f"Cannot transition definition '{definition_id}' from "
            f"{definition.status.value} to {target.value}. Allowed transitions: {allowed}"
        )
    return repository.replace(definition.model_copy(update={"status": target}))


def set_trigger_enabled(
    repository: InMemoryDefinitionRepository,
    definition_id: str,
    trigger_id: str,
    enabled: bool,
    version: Optional[str] = None,
    audit_log: Optional[AuditLog] = None,
    actor_id: str = "SYSTEM",
) -> Definition:
    """Enable or disable one trigger of a registered definition version.

    Like a status change, this replaces the stored version with a new frozen
    copy; the steps are untouched.  The change is audited when ``audit_log``
    is given.

    Raises:
        NotFoundError: If the definition, version or trigger is unknown.
    """
    definition = repository.get_by_id(definition_id, version)
    if definition is None:
        raise NotFoundError(f"Definition '{definition_id}' not found")
    if not any(t.trigger_id == trigger_id for t in definition.triggers):
        raise NotFoundError(f"Trigger '{trigger_id}' not found in definition '{definition_id}'")
    triggers = [
        t.model_copy(update={"enabled": enabled}) if t.trigger_id == trigger_id else t
        for t in definition.triggers
    ]
    logger.info(
        "Trigger %s of %s v%s %s",
        trigger_id, definition_id, definition.version, "enabled" if enabled else "disabled",
    )
    updated = repository.replace(definition.model_copy(update={"triggers": triggers}))
    if audit_log is not None:
        audit_log.append(AuditEntry(
            definition_id=definition_id,
            actor_id=actor_id,
            event_type=AuditEventType.TRIGGER_TOGGLED,
            metadata={"trigger_id": trigger_id, "version": definition.version, "enabled": enabled},
        ))
    return updated
