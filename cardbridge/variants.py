# cardbridge/variants.py
"""
Declarative vocabulary shared by every service: enums, pydantic input models
and the tagged value wrapper used once variables enter the engine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class Variant(str, Enum):
    STRING = "STRING"
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    EMAIL = "EMAIL"
    URL = "URL"
    PHONE = "PHONE"
    SSN = "SSN"
    ADDRESS = "ADDRESS"
    SUBJECT = "SUBJECT"
    ARRAY = "ARRAY"


class Security(str, Enum):
    PUBLIC = "PUBLIC"
    CONFIDENTIAL = "CONFIDENTIAL"
    RESTRICTED = "RESTRICTED"


class Source(str, Enum):
    FORM = "form"
    IMPORT = "import"
    API = "api"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class DeliverableStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class EvaluationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {EvaluationStatus.COMPLETED.value, EvaluationStatus.FAILED.value}


# -----------------------
# Durations / clock strings
# -----------------------

_DURATION_RE = re.compile(r"^(\d+)(s|m|h|d)$", re.IGNORECASE)
_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

_DURATION_UNITS = {
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}

# keeps every computed due time well inside the datetime range
MAX_SCHEDULE_MS = int(datetime(8000, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)
MAX_DELAY = timedelta(days=365 * 1000)


def parse_duration(duration: str) -> timedelta:
    """'30s', '15m', '2h', '1d' -> timedelta"""
    match = _DURATION_RE.match(duration or "")
    if not match:
        raise ValueError(f"Invalid duration: {duration}")
    try:
        delta = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    except OverflowError:
        raise ValueError(f"Duration out of range: {duration}")
    if delta > MAX_DELAY:
        raise ValueError(f"Duration out of range: {duration}")
    return delta


def parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid time of day (expected HH:MM): {value}")
    return int(match.group(1)), int(match.group(2))


# -----------------------
# Input models
# -----------------------

class CardInput(BaseModel):
    organization_id: str
    slug: str = Field(min_length=1)
    label: str
    variant: Variant
    security: Security = Security.PUBLIC
    subject_kind: str
    created_by: str


class WriteTo(BaseModel):
    path: str


class CardRef(BaseModel):
    card_id: str
    required: bool = False
    write_to: WriteTo


class ProcedureSubject(BaseModel):
    kind: str
    operation: Operation = Operation.CREATE


class ProcedureInput(BaseModel):
    id: Optional[str] = None
    organization_id: str
    name: str
    description: Optional[str] = None
    source: Source = Source.FORM
    subject: Optional[ProcedureSubject] = None
    card_refs: List[CardRef] = Field(default_factory=list)


class TimeWindow(BaseModel):
    after: Optional[str] = None
    before: Optional[str] = None

    @field_validator("after", "before")
    @classmethod
    def _check_hhmm(cls, value):
        if value is not None:
            parse_hhmm(value)
        return value

    @model_validator(mode="after")
    def _check_window(self):
        if self.before and parse_hhmm(self.before) == (0, 0):
            raise ValueError("time.before cannot be 00:00")
        if self.after and self.before and parse_hhmm(self.before) <= parse_hhmm(self.after):
            raise ValueError(f"time.before ({self.before}) must be later than time.after ({self.after})")
        return self


class DateOffset(BaseModel):
    days_before_event: Optional[float] = None
    hours_before_event: Optional[float] = None
    # variable holding the event timestamp (epoch ms, ISO string or datetime)
    event_field: str = "event_at"

    def offset(self) -> timedelta:
        return timedelta(days=self.days_before_event or 0, hours=self.hours_before_event or 0)


class Schedule(BaseModel):
    at: Optional[int] = None
    delay: Optional[str] = None
    time: Optional[TimeWindow] = None
    day_of_week: Optional[List[int]] = None
    date: Optional[DateOffset] = None

    @field_validator("at")
    @classmethod
    def _check_at(cls, value):
        if value is not None and not 0 <= value <= MAX_SCHEDULE_MS:
            raise ValueError(f"at must be an epoch-ms timestamp between 0 and {MAX_SCHEDULE_MS}")
        return value

    @field_validator("delay")
    @classmethod
    def _check_delay(cls, value):
        if value is not None:
            parse_duration(value)
        return value

    @field_validator("day_of_week")
    @classmethod
    def _check_days(cls, value):
        if value is None:
            return value
        bad = [d for d in value if d < 0 or d > 6]
        if bad:
            raise ValueError(f"day_of_week entries must be 0-6 (Sunday=0), got {bad}")
        return sorted(set(value))


class DeliverableInput(BaseModel):
    id: Optional[str] = None
    organization_id: str
    name: str
    description: Optional[str] = None
    subject_kind: str
    required_card_slugs: List[str] = Field(default_factory=list)
    required_deliverable_ids: List[str] = Field(default_factory=list)
    schedule: Optional[Schedule] = None
    callback_action: Optional[str] = None
    callback_url: Optional[str] = None


class EvaluationResult(BaseModel):
    success: bool
    duration: Optional[float] = None
    error: Optional[str] = None
    logs: Optional[List[str]] = None
    artifacts: Optional[List[str]] = None


class FieldError(BaseModel):
    field: str
    message: str


class SubmissionResult(BaseModel):
    success: bool
    errors: List[FieldError] = Field(default_factory=list)
    validated: List[str] = Field(default_factory=list)


class Attribute(BaseModel):
    """One `{slug, value}` entry of a host document's attribute list."""
    slug: str = Field(min_length=1)
    value: Any


# -----------------------
# Tagged values
# -----------------------

class ValueKind(str, Enum):
    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST = "list"
    STRUCT = "struct"


@dataclass(frozen=True)
class TaggedValue:
    kind: ValueKind
    value: Any

    @classmethod
    def of(cls, value: Any) -> "TaggedValue":
        if isinstance(value, TaggedValue):
            return value
        if value is None:
            return cls(ValueKind.NULL, None)
        # bool first: bool is an int subclass
        if isinstance(value, bool):
            return cls(ValueKind.BOOLEAN, value)
        if isinstance(value, (int, float, Decimal)):
            return cls(ValueKind.NUMBER, value)
        if isinstance(value, str):
            return cls(ValueKind.STRING, value)
        if isinstance(value, (datetime, date)):
            return cls(ValueKind.DATE, value)
        if isinstance(value, Mapping):
            return cls(ValueKind.STRUCT, dict(value))
        if isinstance(value, (list, tuple, set, frozenset)):
            return cls(ValueKind.LIST, list(value))
        return cls(ValueKind.STRING, str(value))

    def is_present(self) -> bool:
        if self.kind == ValueKind.NULL:
            return False
        if self.kind == ValueKind.STRING and self.value == "":
            return False
        return True

    def to_json(self) -> Any:
        if self.kind == ValueKind.DATE:
            return self.value.isoformat()
        if self.kind == ValueKind.NUMBER and isinstance(self.value, Decimal):
            return float(self.value)
        if self.kind == ValueKind.LIST:
            return [TaggedValue.of(v).to_json() for v in self.value]
        if self.kind == ValueKind.STRUCT:
            return {str(k): TaggedValue.of(v).to_json() for k, v in self.value.items()}
        return self.value


def tag_variables(variables: Optional[Mapping[str, Any]]) -> Dict[str, TaggedValue]:
    return {str(k): TaggedValue.of(v) for k, v in (variables or {}).items()}


def variables_to_json(tagged: Mapping[str, TaggedValue]) -> Dict[str, Any]:
    return {k: v.to_json() for k, v in tagged.items()}
