"""
Record types persisted by the escalation scheduler.

Every record is a dataclass with to_doc()/from_doc() so the core never
passes loosely-typed dicts around. Datetimes are timezone-aware UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytz

KEY_SEPARATOR = ":"


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


def as_utc(value: Any) -> Optional[datetime]:
    """Coerce a stored/parsed timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RecipientStatus:
    SENT = "sent"
    RESPONDED = "responded"
    ESCALATED = "escalated"
    NO_RESPONSE = "no_response"

    # Statuses that still count as "waiting for an answer"
    PENDING = (SENT, NO_RESPONSE)


class ScheduleStatus:
    SCHEDULED = "scheduled"
    TRIGGERED = "triggered"
    SKIPPED = "skipped"
    COMPLETED = "completed"

    TERMINAL = (TRIGGERED, SKIPPED, COMPLETED)


class ReminderStatus:
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class Scope:
    """Which batches of a survey a non-responder lookup considers."""

    ALL_BATCHES = "all_batches"
    LATEST_BATCH = "latest_batch"
    BATCH = "batch"

    kind: str
    batch_id: Optional[str] = None

    @classmethod
    def all_batches(cls) -> "Scope":
        return cls(cls.ALL_BATCHES)

    @classmethod
    def latest_batch(cls) -> "Scope":
        return cls(cls.LATEST_BATCH)

    @classmethod
    def batch(cls, batch_id: str) -> "Scope":
        return cls(cls.BATCH, batch_id)

    def describe(self) -> str:
        if self.kind == self.BATCH:
            return f"batch {self.batch_id}"
        return self.kind.replace("_", " ")


# ── Store keys ───────────────────────────────────────────────────────

def batch_key(survey_id: str, batch_id: str) -> str:
    return f"batch:{survey_id}:{batch_id}"


def batch_prefix(survey_id: str) -> str:
    return f"batch:{survey_id}:"


def recipient_key(survey_id: str, batch_id: str, recipient_id: str) -> str:
    return f"recipient:{survey_id}:{batch_id}:{recipient_id}"


def recipient_prefix(survey_id: str, batch_id: Optional[str] = None) -> str:
    if batch_id:
        return f"recipient:{survey_id}:{batch_id}:"
    return f"recipient:{survey_id}:"


def recipient_locator_key(recipient_id: str) -> str:
    return f"recipient_locator:{recipient_id}"


def schedule_prefix(survey_id: Optional[str] = None) -> str:
    return f"schedule:{survey_id}:" if survey_id else "schedule:"


def reminder_prefix(survey_id: Optional[str] = None) -> str:
    return f"reminder:{survey_id}:" if survey_id else "reminder:"


# ── Records ──────────────────────────────────────────────────────────

@dataclass
class Recipient:
    id: str
    email: str
    phone: str
    survey_id: str
    batch_id: str
    sent_at: datetime
    status: str = RecipientStatus.SENT
    responded_at: Optional[datetime] = None
    escalation_ref: Optional[str] = None
    escalated_at: Optional[datetime] = None

    @property
    def dedup_key(self):
        return (self.email, self.phone)

    @property
    def key(self) -> str:
        return recipient_key(self.survey_id, self.batch_id, self.id)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "type": "recipient",
            "id": self.id,
            "email": self.email,
            "phone": self.phone,
            "survey_id": self.survey_id,
            "batch_id": self.batch_id,
            "sent_at": self.sent_at,
            "status": self.status,
            "responded_at": self.responded_at,
            "escalation_ref": self.escalation_ref,
            "escalated_at": self.escalated_at,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Recipient":
        return cls(
            id=doc["id"],
            email=doc["email"],
            phone=doc["phone"],
            survey_id=doc["survey_id"],
            batch_id=doc["batch_id"],
            sent_at=as_utc(doc["sent_at"]),
            status=doc.get("status", RecipientStatus.SENT),
            responded_at=as_utc(doc.get("responded_at")),
            escalation_ref=doc.get("escalation_ref"),
            escalated_at=as_utc(doc.get("escalated_at")),
        )


@dataclass
class Batch:
    survey_id: str
    batch_id: str
    created_at: datetime
    recipient_ids: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return batch_key(self.survey_id, self.batch_id)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "type": "batch",
            "survey_id": self.survey_id,
            "batch_id": self.batch_id,
            "created_at": self.created_at,
            "recipient_ids": list(self.recipient_ids),
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Batch":
        return cls(
            survey_id=doc["survey_id"],
            batch_id=doc["batch_id"],
            created_at=as_utc(doc["created_at"]),
            recipient_ids=list(doc.get("recipient_ids", [])),
        )


@dataclass
class Schedule:
    schedule_id: str
    survey_id: str
    batch_id: Optional[str]
    total_participants: int
    campaign_duration_minutes: int
    response_threshold_percent: int
    escalation_timing_percent: int
    created_at: datetime
    trigger_at: datetime
    status: str = ScheduleStatus.SCHEDULED
    last_checked_at: Optional[datetime] = None
    response_count: Optional[int] = None
    response_rate: Optional[int] = None
    claimed_at: Optional[datetime] = None
    escalation_success_count: Optional[int] = None
    escalation_failed_count: Optional[int] = None

    @property
    def key(self) -> str:
        return f"schedule:{self.schedule_id}"

    @property
    def threshold_count(self) -> int:
        # Integer floor - never compare float percentages at the boundary
        return (self.total_participants * self.response_threshold_percent) // 100

    @property
    def scope(self) -> Scope:
        return Scope.batch(self.batch_id) if self.batch_id else Scope.all_batches()

    def to_doc(self) -> Dict[str, Any]:
        return {
            "type": "schedule",
            "schedule_id": self.schedule_id,
            "survey_id": self.survey_id,
            "batch_id": self.batch_id,
            "total_participants": self.total_participants,
            "campaign_duration_minutes": self.campaign_duration_minutes,
            "response_threshold_percent": self.response_threshold_percent,
            "escalation_timing_percent": self.escalation_timing_percent,
            "created_at": self.created_at,
            "trigger_at": self.trigger_at,
            "status": self.status,
            "last_checked_at": self.last_checked_at,
            "response_count": self.response_count,
            "response_rate": self.response_rate,
            "claimed_at": self.claimed_at,
            "escalation_success_count": self.escalation_success_count,
            "escalation_failed_count": self.escalation_failed_count,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Schedule":
        return cls(
            schedule_id=doc["schedule_id"],
            survey_id=doc["survey_id"],
            batch_id=doc.get("batch_id"),
            total_participants=doc["total_participants"],
            campaign_duration_minutes=doc["campaign_duration_minutes"],
            response_threshold_percent=doc["response_threshold_percent"],
            escalation_timing_percent=doc["escalation_timing_percent"],
            created_at=as_utc(doc["created_at"]),
            trigger_at=as_utc(doc["trigger_at"]),
            status=doc.get("status", ScheduleStatus.SCHEDULED),
            last_checked_at=as_utc(doc.get("last_checked_at")),
            response_count=doc.get("response_count"),
            response_rate=doc.get("response_rate"),
            claimed_at=as_utc(doc.get("claimed_at")),
            escalation_success_count=doc.get("escalation_success_count"),
            escalation_failed_count=doc.get("escalation_failed_count"),
        )


@dataclass
class Reminder:
    reminder_id: str
    survey_id: str
    recipient_refs: List[str]
    campaign_end_time: datetime
    lead_time: timedelta
    trigger_at: datetime
    created_at: datetime
    status: str = ReminderStatus.SCHEDULED
    test_mode: bool = False
    survey_topic: Optional[str] = None
    survey_link: Optional[str] = None
    claimed_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def key(self) -> str:
        return f"reminder:{self.reminder_id}"

    def to_doc(self) -> Dict[str, Any]:
        return {
            "type": "reminder",
            "reminder_id": self.reminder_id,
            "survey_id": self.survey_id,
            "recipient_refs": list(self.recipient_refs),
            "campaign_end_time": self.campaign_end_time,
            "lead_time_seconds": int(self.lead_time.total_seconds()),
            "trigger_at": self.trigger_at,
            "created_at": self.created_at,
            "status": self.status,
            "test_mode": self.test_mode,
            "survey_topic": self.survey_topic,
            "survey_link": self.survey_link,
            "claimed_at": self.claimed_at,
            "sent_at": self.sent_at,
            "error": self.error,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Reminder":
        return cls(
            reminder_id=doc["reminder_id"],
            survey_id=doc["survey_id"],
            recipient_refs=list(doc.get("recipient_refs", [])),
            campaign_end_time=as_utc(doc["campaign_end_time"]),
            lead_time=timedelta(seconds=doc["lead_time_seconds"]),
            trigger_at=as_utc(doc["trigger_at"]),
            created_at=as_utc(doc["created_at"]),
            status=doc.get("status", ReminderStatus.SCHEDULED),
            test_mode=doc.get("test_mode", False),
            survey_topic=doc.get("survey_topic"),
            survey_link=doc.get("survey_link"),
            claimed_at=as_utc(doc.get("claimed_at")),
            sent_at=as_utc(doc.get("sent_at")),
            error=doc.get("error"),
        )
