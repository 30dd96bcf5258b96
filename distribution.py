"""
Distribution API - the entry points the surrounding application calls.

    service = create_service()
    result = service.distribute("survey-1", [{"email": ..., "phone": ...}], CampaignConfig(duration_minutes=2880))
    service.record_response(recipient_id)

distribute() creates the batch first, then the threshold schedule and the
deadline reminder derived from the batch size and campaign timing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional

import config
from database import DurableStore, get_store
from errors import ValidationError
from escalation_dispatcher import EscalationDispatcher, EscalationResult
from models import Reminder, Schedule, Scope, as_utc, utcnow
from poller import BackgroundPoller
from recipient_registry import RecipientRegistry
from reminder_scheduler import ReminderScheduler
from smtp_sender import SmtpSender
from threshold_scheduler import ThresholdScheduler, _validate_percent
from vapi_client import VapiClient

logger = logging.getLogger("escalation.distribution")


@dataclass
class CampaignConfig:
    duration_minutes: int
    campaign_end_time: Optional[datetime] = None
    response_threshold_percent: int = None
    escalation_timing_percent: int = None
    call_escalation_enabled: bool = True
    email_reminder_enabled: bool = True
    test_mode: bool = False
    survey_topic: Optional[str] = None
    survey_link: Optional[str] = None

    def end_time(self, now: datetime) -> datetime:
        if self.campaign_end_time is not None:
            return as_utc(self.campaign_end_time)
        return now + timedelta(minutes=self.duration_minutes)


@dataclass
class DistributionResult:
    survey_id: str
    batch_id: str
    recipient_count: int
    schedule: Optional[Schedule] = None
    reminder: Optional[Reminder] = None


class DistributionService:

    def __init__(self, registry: RecipientRegistry, threshold_scheduler: ThresholdScheduler,
                 reminder_scheduler: ReminderScheduler, dispatcher: EscalationDispatcher,
                 poller: BackgroundPoller = None):
        self.registry = registry
        self.threshold_scheduler = threshold_scheduler
        self.reminder_scheduler = reminder_scheduler
        self.dispatcher = dispatcher
        self.poller = poller

    def distribute(self, survey_id: str, recipients: Iterable, campaign_config: CampaignConfig,
                   now: datetime = None) -> DistributionResult:
        """
        One send action: create the batch, then its schedule and/or reminder.

        Raises:
            ValidationError: bad recipients or campaign settings (nothing is written)
        """
        self._validate(campaign_config)

        now = now or utcnow()
        batch_id = self.registry.create_batch(survey_id, list(recipients or []), now=now)
        batch = self.registry.get_batch(survey_id, batch_id)
        result = DistributionResult(survey_id=survey_id, batch_id=batch_id,
                                    recipient_count=len(batch.recipient_ids))

        if campaign_config.call_escalation_enabled:
            result.schedule = self.threshold_scheduler.schedule_escalation(
                survey_id,
                batch_id,
                total_participants=result.recipient_count,
                campaign_duration_minutes=campaign_config.duration_minutes,
                response_threshold_percent=campaign_config.response_threshold_percent,
                escalation_timing_percent=campaign_config.escalation_timing_percent,
                now=now,
            )

        if campaign_config.email_reminder_enabled:
            emails = [r.email for r in self.registry.get_batch_recipients(survey_id, batch_id)]
            result.reminder = self.reminder_scheduler.schedule_reminder(
                survey_id,
                emails,
                campaign_config.end_time(now),
                test_mode=campaign_config.test_mode,
                survey_topic=campaign_config.survey_topic,
                survey_link=campaign_config.survey_link,
                now=now,
            )

        if campaign_config.test_mode and self.poller is not None:
            for trigger in (result.schedule, result.reminder):
                if trigger is not None:
                    self.poller.arm_fast_path(trigger.trigger_at)

        logger.info(
            f"Distributed survey {survey_id} to {result.recipient_count} recipients (batch {batch_id}) - "
            f"schedule: {'yes' if result.schedule else 'no'}, reminder: {'yes' if result.reminder else 'no'}"
        )
        return result

    @staticmethod
    def _validate(campaign_config: CampaignConfig):
        duration = campaign_config.duration_minutes
        if not isinstance(duration, int) or isinstance(duration, bool) or duration < 0:
            raise ValidationError(f"duration_minutes must be a non-negative integer, got {duration!r}")
        for name in ("response_threshold_percent", "escalation_timing_percent"):
            value = getattr(campaign_config, name)
            if value is not None:
                _validate_percent(name, value)

    def record_response(self, recipient_id: str) -> bool:
        return self.registry.mark_responded(recipient_id)

    def trigger_escalation(self, survey_id: str, batch_id: str = None) -> EscalationResult:
        """Manual escalation outside any schedule."""
        scope = Scope.batch(batch_id) if batch_id else Scope.all_batches()
        logger.info(f"Manual escalation requested for survey {survey_id} [{scope.describe()}]")
        return self.dispatcher.escalate_non_responders(survey_id, scope)

    def response_stats(self, survey_id: str) -> Dict:
        return self.registry.get_response_stats(survey_id)


def create_service(store: DurableStore = None, call_placer=None, message_sender=None,
                   poll_interval_seconds: int = None) -> DistributionService:
    """Wire every component against one store."""
    store = store or get_store()
    registry = RecipientRegistry(store)
    dispatcher = EscalationDispatcher(registry, call_placer or VapiClient())
    threshold_scheduler = ThresholdScheduler(registry, dispatcher, store)
    reminder_scheduler = ReminderScheduler(message_sender or SmtpSender(), store)
    poller = BackgroundPoller(
        threshold_scheduler,
        reminder_scheduler,
        store,
        interval_seconds=poll_interval_seconds or config.POLL_INTERVAL_SECONDS,
    )
    return DistributionService(registry, threshold_scheduler, reminder_scheduler, dispatcher, poller)
