"""
Deadline Reminder Scheduler - one bulk reminder a fixed lead time before a
campaign ends.

Lead time is 6 hours (2 minutes in test mode). Campaigns shorter than a day
get no reminder outside test mode; they rely on other notification paths.

A due reminder is claimed by moving it scheduled -> failed before the send
and only promoted to `sent` once the channel confirms. A crash between the
two leaves `failed`, never a second send.
"""

import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

import pytz

import config
from database import DurableStore, get_store
from errors import NotFoundError, PersistenceError, ValidationError
from models import Reminder, ReminderStatus, as_utc, epoch_ms, reminder_prefix, utcnow
from recipient_registry import validate_survey_id

logger = logging.getLogger("escalation.reminder_scheduler")


def lead_time_for(test_mode: bool) -> timedelta:
    if test_mode:
        return timedelta(minutes=config.TEST_REMINDER_LEAD_MINUTES)
    return timedelta(hours=config.REMINDER_LEAD_HOURS)


def _describe_lead_time(lead_time: timedelta) -> str:
    minutes = int(lead_time.total_seconds() // 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def build_reminder_message(reminder: Reminder) -> Tuple[str, str]:
    """Subject and plain-text body for a deadline reminder."""
    topic = reminder.survey_topic or "our survey"
    expires_in = _describe_lead_time(reminder.lead_time)

    subject = f"Survey Reminder: \"{topic}\" expires soon!"
    lines = [
        "Friendly Reminder!",
        "",
        f"The survey \"{topic}\" will expire in {expires_in}.",
        "",
        "Don't miss your chance to participate! Your feedback is valuable and "
        "will help us gather important insights.",
    ]
    if reminder.survey_link:
        lines += ["", f"Take the survey now: {reminder.survey_link}"]
    lines += [
        "",
        "Thank you for your time!",
        "",
        "---",
        "This is an automated reminder. The survey will no longer be available after the expiration time.",
    ]
    return subject, "\n".join(lines)


class ReminderScheduler:

    def __init__(self, message_sender, store: DurableStore = None):
        """
        Args:
            message_sender: object with send_bulk_message(recipients, subject, body) -> SendResult
        """
        self.message_sender = message_sender
        self.store = store or get_store()

    def schedule_reminder(
        self,
        survey_id: str,
        recipients: List[str],
        campaign_end_time,
        test_mode: bool = False,
        survey_topic: str = None,
        survey_link: str = None,
        now=None,
    ) -> Optional[Reminder]:
        """
        Returns:
            The persisted Reminder, or None when the campaign is too short or
            the trigger time would already be in the past
        """
        validate_survey_id(survey_id)
        recipients = [r.strip() for r in (recipients or []) if r and r.strip()]
        if not recipients:
            raise ValidationError("A reminder needs at least one recipient")
        if campaign_end_time is None:
            raise ValidationError("campaign_end_time is required")

        now = now or utcnow()
        end = as_utc(campaign_end_time)
        lead_time = lead_time_for(test_mode)

        if not test_mode and (end - now) < timedelta(hours=config.REMINDER_MIN_CAMPAIGN_HOURS):
            logger.info(
                f"No reminder scheduled for survey {survey_id} - campaign ends in under "
                f"{config.REMINDER_MIN_CAMPAIGN_HOURS}h"
            )
            return None

        trigger_at = end - lead_time
        if trigger_at <= now:
            logger.info(f"No reminder scheduled for survey {survey_id} - trigger time {trigger_at.isoformat()} has passed")
            return None

        reminder = Reminder(
            reminder_id=f"{survey_id}:{epoch_ms(now)}:{uuid.uuid4().hex[:6]}",
            survey_id=survey_id,
            recipient_refs=recipients,
            campaign_end_time=end,
            lead_time=lead_time,
            trigger_at=trigger_at,
            created_at=now,
            test_mode=test_mode,
            survey_topic=survey_topic,
            survey_link=survey_link,
        )
        self.store.put(reminder.key, reminder.to_doc())

        local = trigger_at.astimezone(pytz.timezone(config.DISPLAY_TIMEZONE))
        logger.info(
            f"Email reminder scheduled for survey {survey_id} at {local.strftime('%Y-%m-%d %H:%M %Z')} "
            f"({len(recipients)} recipients, test mode {'ON' if test_mode else 'OFF'})",
            extra={"reminder_id": reminder.reminder_id, "survey_id": survey_id},
        )
        return reminder

    # ── Queries ──────────────────────────────────────────────────────

    def list_reminders(self, survey_id: str = None) -> List[Reminder]:
        """Newest first."""
        reminders = [Reminder.from_doc(d) for d in self.store.list_by_prefix(reminder_prefix(survey_id))]
        return sorted(reminders, key=lambda r: r.created_at, reverse=True)

    def get_reminder(self, reminder_id: str) -> Reminder:
        doc = self.store.get(f"reminder:{reminder_id}")
        if doc is None:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return Reminder.from_doc(doc)

    def cancel_reminder(self, reminder_id: str) -> bool:
        reminder = self.get_reminder(reminder_id)
        if reminder.status != ReminderStatus.SCHEDULED:
            return False
        return self.store.delete(reminder.key)

    # ── Evaluation ───────────────────────────────────────────────────

    def evaluate_due_reminders(self, now=None) -> List[Reminder]:
        """Fire every scheduled reminder whose trigger_at has passed. Each fires at most once."""
        now = now or utcnow()
        due = []
        for doc in self.store.list_by_prefix(reminder_prefix()):
            try:
                reminder = Reminder.from_doc(doc)
                is_due = reminder.status == ReminderStatus.SCHEDULED and reminder.trigger_at <= now
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.error(f"Skipping undecodable reminder record {doc.get('reminder_id', '?')}: {e!r}")
                continue
            if is_due:
                due.append(reminder)
        due.sort(key=lambda r: r.trigger_at)

        processed = []
        for reminder in due:
            if self._fire(reminder, now):
                processed.append(reminder)
        return processed

    def _fire(self, reminder: Reminder, now) -> bool:
        claimed = self.store.compare_and_set(
            reminder.key, "status", ReminderStatus.SCHEDULED,
            {"status": ReminderStatus.FAILED, "claimed_at": now, "error": "claimed, send not confirmed"},
        )
        if not claimed:
            logger.info(f"Reminder {reminder.reminder_id} already claimed - skipping")
            return False
        reminder.claimed_at = now

        logger.info(f"Processing due email reminder for survey {reminder.survey_id}")
        subject, body = build_reminder_message(reminder)

        try:
            result = self.message_sender.send_bulk_message(reminder.recipient_refs, subject, body)
            success, error = result.success, result.error
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Reminder {reminder.reminder_id} send raised: {e}", exc_info=True)
            success, error = False, str(e)

        if success:
            reminder.status = ReminderStatus.SENT
            reminder.sent_at = now
            reminder.error = None
            logger.info(f"Email reminder sent to {len(reminder.recipient_refs)} recipients for survey {reminder.survey_id}")
        else:
            reminder.status = ReminderStatus.FAILED
            reminder.error = error or "send failed"
            logger.error(f"Email reminder for survey {reminder.survey_id} failed: {reminder.error}")

        self.store.compare_and_set(reminder.key, "status", ReminderStatus.FAILED, reminder.to_doc())
        return True
