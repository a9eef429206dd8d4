"""
Trigger Runner -- the event/condition/action rules of workflow definitions.

``fire(event, entity_type, data)`` looks at every enabled trigger of every
active definition.  A trigger runs when its event and entity type match and
all of its conditions hold against ``data``; its actions are then dispatched
in order through the ``ActionDispatcher``.  Triggers run highest priority
first (declaration order among equal priorities).

Each run is returned as a ``TriggerRun`` record: ``completed`` when every
action succeeded, ``failed`` otherwise.  Action failures never raise.  Runs
are also kept in a ``TriggerRunRepository`` so ``history`` can list them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from careflow.actions import ActionDispatcher
from careflow.audit import AuditEntry, AuditEventType, AuditLog
from careflow.conditions import evaluate_all
from careflow.models import DefinitionStatus, Trigger, TriggerEvent, TriggerRun, TriggerRunStatus
from careflow.repository import DefinitionRepository, InMemoryTriggerRunRepository, TriggerRunRepository

logger = logging.getLogger(__name__)


class TriggerRunner:
    def __init__(
        self,
        definitions: DefinitionRepository,
        dispatcher: ActionDispatcher,
        audit_log: Optional[AuditLog] = None,
        runs: Optional[TriggerRunRepository] = None,
    ) -> None:
        self._definitions = definitions
        self._dispatcher = dispatcher
        self._audit_log = audit_log
        self._runs = runs if runs is not None else InMemoryTriggerRunRepository()

    def matching_triggers(
        self,
        event: TriggerEvent | str,
        entity_type: str,
        data: Mapping[str, Any],
    ) -> list[tuple[str, Trigger]]:
        """``(definition_id, trigger)`` pairs that would run, in run order."""
        event = TriggerEvent(event)
        candidates: list[tuple[str, Trigger]] = []
        for definition in self._definitions.list(status=DefinitionStatus.ACTIVE):
            for trigger in definition.triggers:
                if not trigger.enabled:
                    continue
                if trigger.event != event or trigger.entity_type != entity_type:
                    continue
                if evaluate_all(trigger.conditions, data):
                    candidates.append((definition.definition_id, trigger))
        # sorted() is stable, so declaration order breaks priority ties.
        return sorted(candidates, key=lambda pair: pair[1].priority, reverse=True)

    def fire(
        self,
        event: TriggerEvent | str,
        entity_type: str,
        data: Mapping[str, Any],
        actor_id: str = "SYSTEM",
        entity_id: Optional[str] = None,
    ) -> list[TriggerRun]:
        """Run every matching trigger for an entity event.

        Args:
            event: The entity event (``on_create``, ``on_threshold`` ...).
            entity_type: Kind of entity the event is about.
            data: The entity's data, used for conditions and interpolation.
            actor_id: Recorded on the run and in the audit log.
            entity_id: Id of the entity, recorded on the run.

        Returns:
            One ``TriggerRun`` per trigger that ran; empty when none matched.

        Raises:
            ValueError: If ``event`` is not a known trigger event.
        """
        runs: list[TriggerRun] = []
        for definition_id, trigger in self.matching_triggers(event, entity_type, data):
            started_at = datetime.now(timezone.utc)
            results = self._dispatcher.dispatch_all(trigger.actions, data)
            status = (
                TriggerRunStatus.COMPLETED
                if all(r.success for r in results)
                else TriggerRunStatus.FAILED
            )
            run = TriggerRun(
                definition_id=definition_id,
                trigger_id=trigger.trigger_id,
                event=trigger.event,
                entity_type=entity_type,
                entity_id=entity_id,
                triggered_by=actor_id,
                status=status,
                action_results=results,
                started_at=started_at,
            )
            self._runs.add(run)
            runs.append(run)

            if status == TriggerRunStatus.FAILED:
                logger.warning(
                    "Trigger %s of %s failed: %d of %d actions failed",
                    trigger.trigger_id, definition_id, len(run.failed_actions), len(results),
                )
            else:
                logger.info("Trigger %s of %s completed", trigger.trigger_id, definition_id)

            if self._audit_log is not None:
                self._audit_log.append(AuditEntry(
                    definition_id=definition_id,
                    actor_id=actor_id,
                    event_type=AuditEventType.TRIGGER_FIRED,
                    metadata={
                        "trigger_id": trigger.trigger_id,
                        "event": trigger.event.value,
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "run_id": run.run_id,
                        "status": status.value,
                        "failed_actions": [r.action_id for r in run.failed_actions],
                    },
                ))
        return runs

    def history(
        self,
        definition_id: str,
        trigger_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[TriggerRun]:
        """Past runs of a definition's triggers, most recent first."""
        return self._runs.list_by_trigger(definition_id, trigger_id, limit)
