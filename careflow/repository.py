"""
Repository interfaces and in-memory reference implementations.

The engine holds no state of its own: definitions and executions live in
repositories injected at construction.  Production deployments implement
the two protocols over their own store; the in-memory classes here are the
reference behavior and what the tests run against.

**Atomic updates.**  ``ExecutionRepository.update`` is a compare-and-set on
``Execution.revision``.  The engine reads a copy, mutates the copy, and
commits it; if another writer committed in between, ``update`` raises
``ConflictError`` and nothing is written.  A failed validation therefore
never leaves a partially mutated execution behind.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, runtime_checkable

from careflow.errors import ConflictError, NotFoundError, ValidationError
from careflow.models import Definition, DefinitionStatus, Execution, TriggerRun

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class DefinitionRepository(Protocol):
    def get_by_id(self, definition_id: str, version: Optional[str] = None) -> Optional[Definition]:
        ...

    def list(
        self,
        status: Optional[DefinitionStatus] = None,
        category: Optional[str] = None,
        specialty: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Definition]:
        ...


@runtime_checkable
class ExecutionRepository(Protocol):
    def create(self, execution: Execution) -> Execution:
        ...

    def get_by_id(self, execution_id: str) -> Optional[Execution]:
        ...

    def update(self, execution: Execution) -> Execution:
        ...

    def list_by_definition(self, definition_id: str) -> list[Execution]:
        ...

    def list_by_subject(self, subject_id: str) -> list[Execution]:
        ...


@runtime_checkable
class TriggerRunRepository(Protocol):
    def add(self, run: TriggerRun) -> TriggerRun:
        ...

    def list_by_trigger(
        self,
        definition_id: str,
        trigger_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[TriggerRun]:
        ...


# ---------------------------------------------------------------------------
# In-memory definitions
# ---------------------------------------------------------------------------

class InMemoryDefinitionRepository:
    """Versioned in-memory definition store.

    Every registered version is kept so that executions bound to an older
    version keep resolving it.  ``get_by_id`` without a version returns the
    most recently registered one.  Definitions are deep-copied on the way in
    and out, so editing a returned object never reaches the stored version.
    """

    def __init__(self, definitions: Optional[list[Definition]] = None) -> None:
        self._versions: dict[str, dict[str, Definition]] = {}
        self._latest: dict[str, str] = {}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: Definition) -> Definition:
        """Register a new definition version.

        Raises:
            ValidationError: If this id/version pair is already registered.
        """
        versions = self._versions.setdefault(definition.definition_id, {})
        if definition.version in versions:
            raise ValidationError(
                f"Definition '{definition.definition_id}' version "
                f"'{definition.version}' already registered. Register a new version instead."
            )
        versions[definition.version] = definition.model_copy(deep=True)
        self._latest[definition.definition_id] = definition.version
        logger.info(
            "Registered definition %s v%s (%s)",
            definition.definition_id, definition.version, definition.status.value,
        )
        return definition

    def replace(self, definition: Definition) -> Definition:
        """Swap a registered version for a copy with new metadata (status).

        Raises:
            NotFoundError: If the id/version pair is not registered.
        """
        versions = self._versions.get(definition.definition_id, {})
        if definition.version not in versions:
            raise NotFoundError(
                f"Cannot replace: definition '{definition.definition_id}' "
                f"version '{definition.version}' is not registered"
            )
        versions[definition.version] = definition.model_copy(deep=True)
        return definition

    def get_by_id(self, definition_id: str, version: Optional[str] = None) -> Optional[Definition]:
        versions = self._versions.get(definition_id)
        if not versions:
            return None
        stored = versions.get(version or self._latest[definition_id])
        return stored.model_copy(deep=True) if stored is not None else None

    def versions(self, definition_id: str) -> list[str]:
        return list(self._versions.get(definition_id, {}))

    def list(
        self,
        status: Optional[DefinitionStatus] = None,
        category: Optional[str] = None,
        specialty: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Definition]:
        """Latest version of each definition, filtered.

        ``specialty`` and ``search`` are case-insensitive substring filters;
        ``search`` looks at name and description.
        """
        results = [self._versions[d][v] for d, v in self._latest.items()]
        if status is not None:
            results = [d for d in results if d.status == status]
        if category is not None:
            results = [d for d in results if d.category == category]
        if specialty:
            needle = specialty.lower()
            results = [d for d in results if needle in d.specialty.lower()]
        if search:
            q = search.lower()
            results = [d for d in results if q in d.name.lower() or q in d.description.lower()]
        return [d.model_copy(deep=True) for d in results]

    def __len__(self) -> int:
        return len(self._latest)

    def __contains__(self, definition_id: str) -> bool:
        return definition_id in self._latest


# ---------------------------------------------------------------------------
# In-memory executions
# ---------------------------------------------------------------------------

class InMemoryExecutionRepository:
    """Thread-safe in-memory execution store with compare-and-set updates.

    Records are deep-copied on the way in and out; callers never hold a
    reference to the stored object.
    """

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._lock = threading.Lock()
        self._closed = False

    def create(self, execution: Execution) -> Execution:
        with self._lock:
            self._ensure_open()
            if execution.execution_id in self._executions:
                raise ConflictError(f"Execution '{execution.execution_id}' already exists")
            stored = execution.model_copy(deep=True)
            self._executions[stored.execution_id] = stored
            return stored.model_copy(deep=True)

    def get_by_id(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            self._ensure_open()
            stored = self._executions.get(execution_id)
            return stored.model_copy(deep=True) if stored is not None else None

    def update(self, execution: Execution) -> Execution:
        """Commit ``execution`` if its revision matches the stored one.

        Raises:
            NotFoundError: If the execution was never created.
            ConflictError: If another update was committed since the caller read it.
        """
        with self._lock:
            self._ensure_open()
            stored = self._executions.get(execution.execution_id)
            if stored is None:
                raise NotFoundError(f"Execution '{execution.execution_id}' not found")
            if stored.revision != execution.revision:
                raise ConflictError(
                    f"Execution '{execution.execution_id}' was modified concurrently "
                    f"(stored revision {stored.revision}, update based on {execution.revision})"
                )
            committed = execution.model_copy(deep=True)
            committed.revision = stored.revision + 1
            self._executions[committed.execution_id] = committed
            return committed.model_copy(deep=True)

    def list_by_definition(self, definition_id: str) -> list[Execution]:
        with self._lock:
            self._ensure_open()
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.definition_id == definition_id
            ]

    def list_by_subject(self, subject_id: str) -> list[Execution]:
        with self._lock:
            self._ensure_open()
            return [
                e.model_copy(deep=True)
                for e in self._executions.values()
                if e.subject_id == subject_id
            ]

    def close(self) -> None:
        """Drop every record.  The repository cannot be used afterwards."""
        with self._lock:
            self._executions.clear()
            self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Execution repository is closed")

    def __len__(self) -> int:
        return len(self._executions)


# ---------------------------------------------------------------------------
# In-memory trigger runs
# ---------------------------------------------------------------------------

class InMemoryTriggerRunRepository:
    """Append-only history of trigger runs."""

    def __init__(self) -> None:
        self._runs: list[TriggerRun] = []
        self._lock = threading.Lock()

    def add(self, run: TriggerRun) -> TriggerRun:
        with self._lock:
            self._runs.append(run.model_copy(deep=True))
        return run

    def list_by_trigger(
        self,
        definition_id: str,
        trigger_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[TriggerRun]:
        """Runs of a definition's triggers, most recent first.

        Args:
            definition_id: Definition whose triggers ran.
            trigger_id: Narrow to one trigger.
            limit: Maximum number of runs returned.
        """
        if limit < 0:
            raise ValidationError(f"limit must be >= 0, got {limit}")
        with self._lock:
            runs = [
                r for r in self._runs
                if r.definition_id == definition_id
                and (trigger_id is None or r.trigger_id == trigger_id)
            ]
        # Appended in firing order, so newest is last.
        return [r.model_copy(deep=True) for r in runs[::-1][:limit]]

    def __len__(self) -> int:
        return len(self._runs)
