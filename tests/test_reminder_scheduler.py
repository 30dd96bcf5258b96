"""
Unit tests for reminder_scheduler.py

Tests cover:
- Lead time selection and the short-campaign cutoff
- Past trigger times
- Validation
- Sending, failures and at-most-once delivery
- Reminder message content
"""

import unittest
from datetime import datetime, timedelta
import sys
import os

import pytz

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=pytz.UTC)
RECIPIENTS = ["a@example.com", "b@example.com"]


class FakeSender:

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.sent = []
        self.on_send = None

    def send_bulk_message(self, recipients, subject, body):
        from smtp_sender import SendResult

        self.sent.append((list(recipients), subject, body))
        if self.on_send:
            self.on_send()
        if self.error:
            raise self.error
        return self.result or SendResult(success=True, sent=list(recipients))


def build(sender=None):
    from database import MemoryStore
    from reminder_scheduler import ReminderScheduler

    sender = sender or FakeSender()
    return ReminderScheduler(sender, MemoryStore()), sender


class TestScheduleReminder(unittest.TestCase):

    def test_short_campaign_gets_no_reminder(self):
        scheduler, _ = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, T0 + timedelta(hours=12), now=T0)

        self.assertIsNone(reminder)
        self.assertEqual(scheduler.list_reminders(), [])

    def test_long_campaign_fires_six_hours_before_end(self):
        from models import ReminderStatus

        scheduler, _ = build()
        end = T0 + timedelta(hours=48)
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, end, now=T0)

        self.assertEqual(reminder.trigger_at, end - timedelta(hours=6))
        self.assertEqual(reminder.lead_time, timedelta(hours=6))
        self.assertEqual(reminder.status, ReminderStatus.SCHEDULED)
        self.assertEqual(scheduler.get_reminder(reminder.reminder_id).recipient_refs, RECIPIENTS)

    def test_exactly_one_day_is_long_enough(self):
        scheduler, _ = build()
        self.assertIsNotNone(scheduler.schedule_reminder("survey-1", RECIPIENTS, T0 + timedelta(hours=24), now=T0))

    def test_test_mode_uses_two_minute_lead(self):
        scheduler, _ = build()
        end = T0 + timedelta(minutes=10)
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, end, test_mode=True, now=T0)

        self.assertEqual(reminder.trigger_at, end - timedelta(minutes=2))
        self.assertTrue(reminder.test_mode)

    def test_trigger_in_the_past_returns_none(self):
        scheduler, _ = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, T0 + timedelta(minutes=1),
                                               test_mode=True, now=T0)
        self.assertIsNone(reminder)

    def test_trigger_exactly_now_returns_none(self):
        scheduler, _ = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, T0 + timedelta(minutes=2),
                                               test_mode=True, now=T0)
        self.assertIsNone(reminder)

    def test_end_time_may_be_iso_string(self):
        scheduler, _ = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, "2025-03-04T12:00:00Z", now=T0)
        self.assertEqual(reminder.trigger_at, datetime(2025, 3, 4, 6, 0, tzinfo=pytz.UTC))

    def test_validation(self):
        from errors import ValidationError

        scheduler, _ = build()
        with self.assertRaises(ValidationError):
            scheduler.schedule_reminder("survey-1", [], T0 + timedelta(days=2), now=T0)
        with self.assertRaises(ValidationError):
            scheduler.schedule_reminder("survey-1", ["  "], T0 + timedelta(days=2), now=T0)
        with self.assertRaises(ValidationError):
            scheduler.schedule_reminder("survey-1", RECIPIENTS, None, now=T0)


class TestEvaluateDueReminders(unittest.TestCase):

    def setUp(self):
        self.end = T0 + timedelta(hours=48)
        self.due = self.end - timedelta(hours=6)

    def test_not_due_yet(self):
        scheduler, sender = build()
        scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)

        self.assertEqual(scheduler.evaluate_due_reminders(self.due - timedelta(seconds=1)), [])
        self.assertEqual(sender.sent, [])

    def test_due_reminder_is_sent_once(self):
        from models import ReminderStatus

        scheduler, sender = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)

        processed = scheduler.evaluate_due_reminders(self.due)
        self.assertEqual([r.reminder_id for r in processed], [reminder.reminder_id])
        self.assertEqual(scheduler.evaluate_due_reminders(self.due + timedelta(minutes=1)), [])
        self.assertEqual(len(sender.sent), 1)
        self.assertEqual(sender.sent[0][0], RECIPIENTS)

        stored = scheduler.get_reminder(reminder.reminder_id)
        self.assertEqual(stored.status, ReminderStatus.SENT)
        self.assertEqual(stored.sent_at, self.due)
        self.assertIsNone(stored.error)

    def test_send_failure_marks_failed(self):
        from models import ReminderStatus
        from smtp_sender import SendResult

        scheduler, sender = build(FakeSender(result=SendResult(success=False, error="relay denied")))
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)
        scheduler.evaluate_due_reminders(self.due)

        stored = scheduler.get_reminder(reminder.reminder_id)
        self.assertEqual(stored.status, ReminderStatus.FAILED)
        self.assertEqual(stored.error, "relay denied")

        # Failed reminders are not retried
        scheduler.evaluate_due_reminders(self.due + timedelta(hours=1))
        self.assertEqual(len(sender.sent), 1)

    def test_sender_exception_marks_failed(self):
        from models import ReminderStatus

        scheduler, _ = build(FakeSender(error=ConnectionError("smtp down")))
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)
        scheduler.evaluate_due_reminders(self.due)

        stored = scheduler.get_reminder(reminder.reminder_id)
        self.assertEqual(stored.status, ReminderStatus.FAILED)
        self.assertEqual(stored.error, "smtp down")

    def test_claimed_before_sending(self):
        from models import ReminderStatus

        scheduler, sender = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)
        seen = []
        sender.on_send = lambda: seen.append(scheduler.get_reminder(reminder.reminder_id))

        scheduler.evaluate_due_reminders(self.due)

        # A crash at this point would leave `failed`, never a second send
        self.assertEqual(seen[0].status, ReminderStatus.FAILED)
        self.assertEqual(seen[0].claimed_at, self.due)

    def test_lost_claim_is_skipped(self):
        from models import ReminderStatus

        scheduler, sender = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)
        scheduler.store.compare_and_set(reminder.key, "status", ReminderStatus.SCHEDULED,
                                        {"status": ReminderStatus.FAILED})

        self.assertFalse(scheduler._fire(reminder, self.due))
        self.assertEqual(sender.sent, [])

    def test_undecodable_record_does_not_block_the_pass(self):
        from models import ReminderStatus

        scheduler, sender = build()
        scheduler.store.put("reminder:broken", {"type": "reminder", "reminder_id": "broken"})
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)

        with self.assertLogs("escalation.reminder_scheduler", level="ERROR") as logs:
            processed = scheduler.evaluate_due_reminders(self.due)

        self.assertEqual([r.reminder_id for r in processed], [reminder.reminder_id])
        self.assertEqual(scheduler.get_reminder(reminder.reminder_id).status, ReminderStatus.SENT)
        self.assertEqual(len(sender.sent), 1)
        self.assertIn("undecodable reminder record broken", logs.output[0])

    def test_cancel(self):
        scheduler, sender = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, self.end, now=T0)

        self.assertTrue(scheduler.cancel_reminder(reminder.reminder_id))
        self.assertEqual(scheduler.evaluate_due_reminders(self.due), [])
        self.assertEqual(sender.sent, [])


class TestReminderMessage(unittest.TestCase):

    def test_message_names_topic_lead_time_and_link(self):
        from reminder_scheduler import build_reminder_message

        scheduler, _ = build()
        reminder = scheduler.schedule_reminder(
            "survey-1", RECIPIENTS, T0 + timedelta(days=3),
            survey_topic="Customer NPS", survey_link="https://surveys.example.com/s/1", now=T0,
        )
        subject, body = build_reminder_message(reminder)

        self.assertIn("Customer NPS", subject)
        self.assertIn("will expire in 6 hours", body)
        self.assertIn("Take the survey now: https://surveys.example.com/s/1", body)

    def test_test_mode_message(self):
        from reminder_scheduler import build_reminder_message

        scheduler, _ = build()
        reminder = scheduler.schedule_reminder("survey-1", RECIPIENTS, T0 + timedelta(minutes=30),
                                               test_mode=True, now=T0)
        subject, body = build_reminder_message(reminder)

        self.assertIn("our survey", subject)
        self.assertIn("will expire in 2 minutes", body)
        self.assertNotIn("Take the survey now", body)


if __name__ == "__main__":
    unittest.main()
