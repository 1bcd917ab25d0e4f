"""Pydantic schemas for thresholds, settings, alerts and engine responses.

Field names serialize in camelCase (``thresholdValue``, ``productId`` …) so the
persisted JSON documents and the HTTP payloads share one shape.
"""

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ThresholdType(str, enum.Enum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    OVERSTOCKED = "overstocked"


class CamelModel(BaseModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# ── Thresholds & settings ────────────────────────────────────

class ThresholdConditions(CamelModel):
    check_percentage: bool = False
    check_absolute: bool = False
    absolute_value: float | None = None

    model_config = {"frozen": True}


class Threshold(CamelModel):
    """A single alert rule.  Replaced wholesale, never edited in place."""
    id: str
    type: ThresholdType
    name: str
    description: str = ""
    enabled: bool = True
    threshold_value: float
    severity: Severity
    conditions: ThresholdConditions = Field(default_factory=ThresholdConditions)

    model_config = {"frozen": True}


class NotificationPolicy(CamelModel):
    email: bool = False
    in_app: bool = True
    sound: bool = True


class AutoAcknowledgePolicy(CamelModel):
    enabled: bool = False
    after_hours: float = Field(default=24, gt=0)


class AlertSettings(CamelModel):
    id: str
    owner_id: str | None = None
    role: str
    thresholds: list[Threshold]
    notifications: NotificationPolicy = Field(default_factory=NotificationPolicy)
    auto_acknowledge: AutoAcknowledgePolicy = Field(default_factory=AutoAcknowledgePolicy)
    created_at: datetime
    updated_at: datetime


class SettingsUpdate(CamelModel):
    """Partial settings update.  Absent sections are left untouched."""
    thresholds: list[Threshold] | None = None
    notifications: NotificationPolicy | None = None
    auto_acknowledge: AutoAcknowledgePolicy | None = None


# ── Alerts ───────────────────────────────────────────────────

class AutoAlert(CamelModel):
    id: str
    product_id: str
    product_name: str
    product_code: str
    type: ThresholdType
    severity: Severity
    message: str
    current_stock: float
    total_stock: float
    percentage: float
    threshold: float
    threshold_id: str
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    timestamp: datetime
    auto_generated: bool = True

    model_config = {"frozen": True}


class AlertStats(CamelModel):
    total: int
    unacknowledged: int
    critical: int
    high: int
    medium: int
    low: int


# ── Inventory snapshot (consumed) ────────────────────────────

class InventoryItemSnapshot(CamelModel):
    """One item as supplied by the inventory subsystem.

    ``stock`` is kept raw (a number or a ``{"current", "maximum"}`` object);
    it is resolved once by the evaluator's normalization step.
    """
    id: str
    name: str = ""
    code: str | None = None
    stock: Any = None
    min_stock: Any = 0
    max_stock: Any = None

    model_config = {"extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


# ── Actors & engine I/O ──────────────────────────────────────

class Actor(BaseModel):
    id: str
    role: str


class GenerateRequest(CamelModel):
    # Raw items: a malformed entry is skipped by the evaluator rather than
    # rejecting the whole request.
    items: list[dict[str, Any]]
    force: bool = False


class RunSummary(CamelModel):
    run_id: str
    ran_at: datetime
    admitted: bool
    evaluated: int = 0
    skipped: int = 0
    suppressed: int = 0
    total_alerts: int = 0
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)


class CleanupResult(CamelModel):
    evicted: int
