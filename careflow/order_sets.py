"""
Order sets -- predefined bundles of clinical orders.

An order set groups the orders that usually go together for an indication
(labs, medications, imaging ...), optionally tied to a protocol definition.
The clinician picks a subset of its items; ``execute`` turns each selected
item into a concrete order with a fresh id, merging any per-item
modifications into the item's details, and counts the use.

Order sets are frozen templates, like definitions.  Usage counts are kept
by the catalog, not on the template.
"""

from __future__ import annotations

import enum
import logging
import threading
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from careflow.audit import AuditEntry, AuditEventType, AuditLog
from careflow.errors import InvalidStateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class OrderType(str, enum.Enum):
    MEDICATION = "medication"
    LAB = "lab"
    IMAGING = "imaging"
    PROCEDURE = "procedure"
    CONSULT = "consult"
    NURSING = "nursing"


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str = Field(..., min_length=1)
    type: OrderType
    name: str = Field(..., min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    is_default: bool = Field(default=False, description="Pre-selected when the set is opened.")
    alternatives: list[str] = Field(default_factory=list)
    contraindications: list[str] = Field(default_factory=list)
    monitoring: str = ""


class OrderSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_set_id: str = Field(..., min_length=1)
    name: str = ""
    description: str = ""
    definition_id: Optional[str] = Field(default=None, description="Protocol the set belongs to, if any.")
    specialty: str = ""
    indication: str = ""
    orders: list[OrderItem] = Field(default_factory=list)
    is_active: bool = True

    @model_validator(mode="after")
    def unique_item_ids(self) -> "OrderSet":
        seen: set[str] = set()
        for item in self.orders:
            if item.item_id in seen:
                raise ValueError(f"Duplicate item_id in order set '{self.order_set_id}': {item.item_id}")
            seen.add(item.item_id)
        return self

    def get_item(self, item_id: str) -> Optional[OrderItem]:
        return next((o for o in self.orders if o.item_id == item_id), None)

    def default_item_ids(self) -> list[str]:
        return [o.item_id for o in self.orders if o.is_default]


class CreatedOrder(BaseModel):
    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    item_id: str
    type: OrderType
    name: str
    details: dict[str, Any] = Field(default_factory=dict)


class OrderSetExecution(BaseModel):
    """Orders created from one use of an order set."""

    order_set_id: str
    subject_id: str
    ordered_by: str
    encounter_id: Optional[str] = None
    orders_created: list[CreatedOrder] = Field(default_factory=list)
    unknown_items: list[str] = Field(
        default_factory=list,
        description="Selected ids that are not items of the set; nothing was ordered for them.",
    )
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OrderSetCatalog:
    """In-memory catalog of order sets with usage counting.

    Args:
        order_sets: Initial order sets.
        audit_log: Receives one entry per executed order set, when given.
    """

    def __init__(
        self,
        order_sets: Optional[Sequence[OrderSet]] = None,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._order_sets: dict[str, OrderSet] = {}
        self._usage: dict[str, int] = {}
        self._lock = threading.Lock()
        self._audit_log = audit_log
        for order_set in order_sets or []:
            self.add(order_set)

    def add(self, order_set: OrderSet) -> OrderSet:
        """Raises ``ValidationError`` if the id is already registered."""
        with self._lock:
            if order_set.order_set_id in self._order_sets:
                raise ValidationError(f"Order set '{order_set.order_set_id}' already registered")
            self._order_sets[order_set.order_set_id] = order_set.model_copy(deep=True)
            self._usage[order_set.order_set_id] = 0
        return order_set

    def get_by_id(self, order_set_id: str) -> Optional[OrderSet]:
        stored = self._order_sets.get(order_set_id)
        return stored.model_copy(deep=True) if stored is not None else None

    def list(
        self,
        specialty: Optional[str] = None,
        definition_id: Optional[str] = None,
    ) -> list[OrderSet]:
        """Active order sets, optionally filtered.

        ``specialty`` is a case-insensitive substring filter.
        """
        results = [s for s in self._order_sets.values() if s.is_active]
        if specialty:
            needle = specialty.lower()
            results = [s for s in results if needle in s.specialty.lower()]
        if definition_id is not None:
            results = [s for s in results if s.definition_id == definition_id]
        return [s.model_copy(deep=True) for s in results]

    def usage_count(self, order_set_id: str) -> int:
        if order_set_id not in self._usage:
            raise NotFoundError(f"Order set '{order_set_id}' not found")
        return self._usage[order_set_id]

    def execute(
        self,
        order_set_id: str,
        subject_id: str,
        ordered_by: str,
        selected_items: Sequence[str],
        modifications: Optional[Mapping[str, Mapping[str, Any]]] = None,
        encounter_id: Optional[str] = None,
    ) -> OrderSetExecution:
        """Create orders for the selected items of an order set.

        Args:
            order_set_id: The set to order from.
            subject_id: Who the orders are for.
            ordered_by: Ordering clinician.
            selected_items: Item ids to order, in the order given.
            modifications: Per item id, detail overrides merged over the
                item's template details.
            encounter_id: Encounter the orders belong to, if any.

        Raises:
            NotFoundError: Unknown order set.
            InvalidStateError: The order set is inactive.
        """
        order_set = self._order_sets.get(order_set_id)
        if order_set is None:
            raise NotFoundError(f"Order set '{order_set_id}' not found")
        if not order_set.is_active:
            raise InvalidStateError(f"Order set '{order_set_id}' is inactive")

        modifications = modifications or {}
        created: list[CreatedOrder] = []
        unknown: list[str] = []
        for item_id in selected_items:
            item = order_set.get_item(item_id)
            if item is None:
                unknown.append(item_id)
                continue
            created.append(CreatedOrder(
                item_id=item.item_id,
                type=item.type,
                name=item.name,
                details={**item.details, **dict(modifications.get(item_id, {}))},
            ))
        if unknown:
            logger.warning("Order set %s: ignoring unknown items %s", order_set_id, unknown)

        with self._lock:
            self._usage[order_set_id] += 1

        execution = OrderSetExecution(
            order_set_id=order_set_id,
            subject_id=subject_id,
            ordered_by=ordered_by,
            encounter_id=encounter_id,
            orders_created=created,
            unknown_items=unknown,
        )
        if self._audit_log is not None:
            self._audit_log.append(AuditEntry(
                definition_id=order_set.definition_id or "",
                subject_id=subject_id,
                actor_id=ordered_by,
                event_type=AuditEventType.ORDER_SET_EXECUTED,
                metadata={
                    "order_set_id": order_set_id,
                    "items": [o.item_id for o in created],
                    "unknown_items": unknown,
                },
            ))
        logger.info("Order set %s executed: %d orders for %s", order_set_id, len(created), subject_id)
        return execution
