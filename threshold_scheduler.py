"""
Threshold Scheduler - ratio/time based escalation triggers.

A schedule fires at `escalation_timing_percent` of the campaign duration.
When it fires, calls are placed only if the campaign already reached
`response_threshold_percent` responses; under-responded campaigns are
skipped to keep call costs bounded.

Each due schedule is claimed with a compare-and-set (scheduled -> triggered)
before anything else happens, so a schedule is evaluated at most once even
if two passes overlap or the process restarts mid-pass.
"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional

import config
from database import DurableStore, get_store
from errors import NotFoundError, PersistenceError, ValidationError
from escalation_dispatcher import EscalationDispatcher
from models import Schedule, ScheduleStatus, epoch_ms, schedule_prefix, utcnow
from recipient_registry import RecipientRegistry, validate_survey_id

logger = logging.getLogger("escalation.threshold_scheduler")


def _validate_percent(name: str, value: int):
    if not isinstance(value, int) or isinstance(value, bool) or not 0 <= value <= 100:
        raise ValidationError(f"{name} must be an integer between 0 and 100, got {value!r}")


class ThresholdScheduler:

    def __init__(self, registry: RecipientRegistry, dispatcher: EscalationDispatcher,
                 store: DurableStore = None):
        self.registry = registry
        self.dispatcher = dispatcher
        self.store = store or get_store()

    def schedule_escalation(
        self,
        survey_id: str,
        batch_id: Optional[str],
        total_participants: int,
        campaign_duration_minutes: int,
        response_threshold_percent: int = None,
        escalation_timing_percent: int = None,
        now=None,
    ) -> Schedule:
        """
        Persist a schedule that fires at
        now + floor(campaign_duration_minutes * escalation_timing_percent / 100) minutes.
        """
        if response_threshold_percent is None:
            response_threshold_percent = config.DEFAULT_RESPONSE_THRESHOLD_PERCENT
        if escalation_timing_percent is None:
            escalation_timing_percent = config.DEFAULT_ESCALATION_TIMING_PERCENT

        validate_survey_id(survey_id)
        if not isinstance(total_participants, int) or total_participants < 1:
            raise ValidationError(f"total_participants must be a positive integer, got {total_participants!r}")
        if not isinstance(campaign_duration_minutes, int) or campaign_duration_minutes < 0:
            raise ValidationError(
                f"campaign_duration_minutes must be a non-negative integer, got {campaign_duration_minutes!r}"
            )
        _validate_percent("response_threshold_percent", response_threshold_percent)
        _validate_percent("escalation_timing_percent", escalation_timing_percent)

        now = now or utcnow()
        delay_minutes = (campaign_duration_minutes * escalation_timing_percent) // 100
        schedule = Schedule(
            schedule_id=f"{survey_id}:{batch_id or 'all'}:{epoch_ms(now)}:{uuid.uuid4().hex[:6]}",
            survey_id=survey_id,
            batch_id=batch_id,
            total_participants=total_participants,
            campaign_duration_minutes=campaign_duration_minutes,
            response_threshold_percent=response_threshold_percent,
            escalation_timing_percent=escalation_timing_percent,
            created_at=now,
            trigger_at=now + timedelta(minutes=delay_minutes),
        )
        self.store.put(schedule.key, schedule.to_doc())

        logger.info(
            f"Escalation scheduled for survey {schedule.survey_id} at {schedule.trigger_at.isoformat()} - "
            f"will call if >= {schedule.threshold_count} of {total_participants} participants "
            f"({response_threshold_percent}%) responded",
            extra={"schedule_id": schedule.schedule_id, "survey_id": survey_id},
        )
        return schedule

    # ── Queries ──────────────────────────────────────────────────────

    def list_schedules(self, survey_id: str = None) -> List[Schedule]:
        """Newest first."""
        schedules = [Schedule.from_doc(d) for d in self.store.list_by_prefix(schedule_prefix(survey_id))]
        return sorted(schedules, key=lambda s: s.created_at, reverse=True)

    def get_schedule(self, schedule_id: str) -> Schedule:
        doc = self.store.get(f"schedule:{schedule_id}")
        if doc is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        return Schedule.from_doc(doc)

    def cancel_schedule(self, schedule_id: str) -> bool:
        """Delete a schedule that has not fired yet. False if it already fired."""
        schedule = self.get_schedule(schedule_id)
        if schedule.status != ScheduleStatus.SCHEDULED:
            return False
        deleted = self.store.delete(schedule.key)
        if deleted:
            logger.info(f"Schedule {schedule_id} cancelled")
        return deleted

    # ── Evaluation ───────────────────────────────────────────────────

    def evaluate_due_schedules(self, now=None) -> List[Schedule]:
        """
        Evaluate every scheduled schedule whose trigger_at has passed.

        Returns:
            The schedules this pass claimed and processed
        """
        now = now or utcnow()
        due = []
        for doc in self.store.list_by_prefix(schedule_prefix()):
            try:
                schedule = Schedule.from_doc(doc)
                is_due = schedule.status == ScheduleStatus.SCHEDULED and schedule.trigger_at <= now
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.error(f"Skipping undecodable schedule record {doc.get('schedule_id', '?')}: {e!r}")
                continue
            if is_due:
                due.append(schedule)
        due.sort(key=lambda s: s.trigger_at)

        processed = []
        for schedule in due:
            if self._evaluate(schedule, now):
                processed.append(schedule)
        return processed

    def _evaluate(self, schedule: Schedule, now) -> bool:
        claimed = self.store.compare_and_set(
            schedule.key, "status", ScheduleStatus.SCHEDULED,
            {"status": ScheduleStatus.TRIGGERED, "claimed_at": now},
        )
        if not claimed:
            logger.info(f"Schedule {schedule.schedule_id} already claimed - skipping")
            return False
        schedule.status = ScheduleStatus.TRIGGERED
        schedule.claimed_at = now

        label = f"survey {schedule.survey_id}" + (f" (batch {schedule.batch_id})" if schedule.batch_id else "")
        logger.info(f"Processing due escalation schedule for {label}")

        threshold_count = schedule.threshold_count
        try:
            responded_count = self.registry.count_responded(schedule.survey_id, schedule.batch_id)

            # Stats are persisted before any call is placed
            schedule.last_checked_at = now
            schedule.response_count = responded_count
            schedule.response_rate = (responded_count * 100) // schedule.total_participants
            self._save(schedule)
        except PersistenceError:
            # No call placed yet: hand the schedule back to the next pass
            self._release_claim(schedule)
            raise

        logger.info(
            f"{label}: {responded_count}/{schedule.total_participants} responses "
            f"({schedule.response_rate}%), need {threshold_count} "
            f"({schedule.response_threshold_percent}% of {schedule.total_participants})"
        )

        if responded_count >= threshold_count:
            result = self.dispatcher.escalate_non_responders(schedule.survey_id, schedule.scope)
            schedule.escalation_success_count = result.success_count
            schedule.escalation_failed_count = result.failed_count
            schedule.status = ScheduleStatus.COMPLETED if result.success_count > 0 else ScheduleStatus.TRIGGERED
            logger.info(
                f"{label}: threshold met - {result.success_count} calls placed, "
                f"{result.failed_count} failed -> {schedule.status}"
            )
        else:
            schedule.status = ScheduleStatus.SKIPPED
            logger.info(f"{label}: {responded_count} < {threshold_count} - skipping calls to save costs")

        self._save(schedule)
        return True

    def _release_claim(self, schedule: Schedule):
        try:
            released = self.store.compare_and_set(
                schedule.key, "status", ScheduleStatus.TRIGGERED,
                {"status": ScheduleStatus.SCHEDULED, "claimed_at": None},
            )
        except PersistenceError as e:
            logger.error(f"Could not release claim on schedule {schedule.schedule_id}: {e}")
            return
        if released:
            schedule.status = ScheduleStatus.SCHEDULED
            schedule.claimed_at = None
            logger.warning(f"Store failure before dispatch - schedule {schedule.schedule_id} released for retry")

    def _save(self, schedule: Schedule):
        # Only the claimant writes after the claim; the guard drops writes
        # for a schedule that was deleted underneath us.
        doc = schedule.to_doc()
        applied = self.store.compare_and_set(schedule.key, "status", ScheduleStatus.TRIGGERED, doc)
        if not applied:
            logger.warning(f"Schedule {schedule.schedule_id} changed during evaluation - update dropped")
