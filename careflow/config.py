"""
Engine configuration and YAML loading.

Two kinds of configuration are loaded from YAML:

* ``EngineSettings`` -- knobs of the engine itself: the marker that counts
  as a deviation acknowledgment in step-completion notes, webhook timeout
  and default HTTP method, and the actor id recorded for system actions.
* Definitions -- protocol / workflow templates under a top-level
  ``definitions`` key, validated through ``parse_definition``.
* Order sets -- optional, under a top-level ``order_sets`` key.

Example YAML structure::

    settings:
      deviation_marker: "deviation"
      webhook_timeout_seconds: 5

    definitions:
      - definition_id: "hta-management"
        version: "3.0"
        status: "active"
        steps:
          - step_id: "S1"
            order: 1
            required: true
            default_next_step_id: "S2"
          ...
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator

from careflow.definitions import parse_definition
from careflow.errors import ValidationError
from careflow.models import Definition
from careflow.order_sets import OrderSet


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Tunable behavior of the execution engine and action dispatcher."""

    deviation_marker: str = Field(
        default="deviation",
        min_length=1,
        description=(
            "Case-insensitive marker that, when present in step-completion "
            "notes, acknowledges missing required actions as a documented "
            "deviation."
        ),
    )
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout applied by the httpx webhook caller.",
    )
    webhook_default_method: str = Field(
        default="POST",
        description="HTTP method used when a call_webhook action does not set one.",
    )
    system_actor_id: str = Field(
        default="SYSTEM",
        min_length=1,
        description="Actor id recorded in the audit log for engine-initiated events.",
    )

    @field_validator("webhook_default_method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        allowed = {"GET", "POST", "PUT", "PATCH", "DELETE"}
        method = v.upper()
        if method not in allowed:
            raise ValueError(f"webhook_default_method must be one of {sorted(allowed)}, got '{v}'")
        return method


DEFAULT_SETTINGS = EngineSettings()


# ---------------------------------------------------------------------------
# YAML loaders
# ---------------------------------------------------------------------------

def _read_yaml(path: str | Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load ``EngineSettings`` from the ``settings`` key of a YAML file.

    A file without a ``settings`` key yields the defaults.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If ``settings`` is not a mapping.
        pydantic.ValidationError: If a setting fails validation.
    """
    raw = _read_yaml(path) or {}
    if not isinstance(raw, dict):
        raise ValueError("YAML file must contain a mapping at the top level.")
    settings = raw.get("settings", {})
    if not isinstance(settings, dict):
        raise ValueError("'settings' must be a mapping.")
    return EngineSettings(**settings)


def load_definitions_from_yaml(path: str | Path) -> list[Definition]:
    """Load and validate every definition listed under ``definitions``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        careflow.errors.ValidationError: If a definition fails validation.
    """
    raw = _read_yaml(path)
    if not isinstance(raw, dict) or "definitions" not in raw:
        raise ValueError(
            "YAML file must contain a top-level 'definitions' key with a list of definitions."
        )

    entries = raw["definitions"]
    if not isinstance(entries, list):
        raise ValueError("'definitions' must be a list of definition objects.")

    definitions: list[Definition] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Definition entry at index {idx} must be a mapping.")
        definitions.append(parse_definition(entry))
    return definitions


def load_order_sets_from_yaml(path: str | Path) -> list[OrderSet]:
    """Load every order set listed under ``order_sets``.

    A file without an ``order_sets`` key yields an empty list.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        careflow.errors.ValidationError: If an order set fails validation.
    """
    raw = _read_yaml(path) or {}
    if not isinstance(raw, dict):
        raise ValueError("YAML file must contain a mapping at the top level.")
    entries = raw.get("order_sets", [])
    if not isinstance(entries, list):
        raise ValueError("'order_sets' must be a list of order set objects.")

    order_sets: list[OrderSet] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValueError(f"Order set entry at index {idx} must be a mapping.")
        try:
            order_sets.append(OrderSet.model_validate(entry))
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid order set '{entry.get('order_set_id', '<unknown>')}'.",
                details=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
            ) from exc
    return order_sets


def configure_logging(level: int | str = logging.INFO) -> None:
    """Attach a basic stderr handler to the ``careflow`` logger hierarchy.

    Library code only creates loggers; applications opt in here or through
    their own logging configuration.
    """
    logger = logging.getLogger("careflow")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(level)
