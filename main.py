#!/usr/bin/env python3
"""
Survey Escalation Scheduler
===========================

Distribute a survey, then let the poller escalate non-responders by phone
and send the deadline reminder.

Usage:
    python main.py distribute <survey_id> recipients.csv --duration 2880
    python main.py poller
    python main.py tick
    python main.py respond <recipient_id>
    python main.py escalate <survey_id> [--batch <batch_id>]
    python main.py stats <survey_id>
    python main.py schedules [survey_id]
    python main.py reminders [survey_id]
"""

import argparse
import asyncio
import csv
import sys
from datetime import datetime

import pytz

import config
from distribution import CampaignConfig, create_service
from errors import EscalationError, ValidationError
from models import as_utc
from utils.logging_utils import get_logger, setup_logging

logger = get_logger("cli")


def _local(value: datetime) -> str:
    if value is None:
        return "-"
    return value.astimezone(pytz.timezone(config.DISPLAY_TIMEZONE)).strftime('%Y-%m-%d %H:%M %Z')


def read_recipients(path: str):
    """Read email/phone pairs from a CSV file with `email` and `phone` columns"""
    with open(path, newline='') as f:
        reader = csv.DictReader(f)
        return [{"email": row.get("email"), "phone": row.get("phone")} for row in reader]


def distribute_survey(args):
    recipients = read_recipients(args.csv)
    try:
        end = as_utc(args.end) if args.end else None
    except ValueError:
        raise ValidationError(f"--end is not an ISO 8601 timestamp: {args.end!r}")

    campaign = CampaignConfig(
        duration_minutes=args.duration,
        campaign_end_time=end,
        response_threshold_percent=args.threshold,
        escalation_timing_percent=args.timing,
        call_escalation_enabled=not args.no_calls,
        email_reminder_enabled=not args.no_reminder,
        test_mode=args.test_mode,
        survey_topic=args.topic,
        survey_link=args.link,
    )

    print(f"\n🚀 Distributing survey {args.survey_id} to {len(recipients)} recipients...\n")
    service = create_service()
    result = service.distribute(args.survey_id, recipients, campaign)

    print(f"✅ Batch created!")
    print(f"   Batch ID: {result.batch_id}")
    print(f"   Recipients: {result.recipient_count}")

    if result.schedule:
        s = result.schedule
        print(f"\n📞 Call escalation at {_local(s.trigger_at)}")
        print(f"   Calls placed if >= {s.threshold_count}/{s.total_participants} responded "
              f"({s.response_threshold_percent}%)")
    else:
        print(f"\n📞 Call escalation: off")

    if result.reminder:
        print(f"\n📧 Reminder email at {_local(result.reminder.trigger_at)}")
    else:
        print(f"\n📧 Reminder email: none (disabled, campaign too short, or deadline too close)")


def record_response(recipient_id: str):
    service = create_service()
    if service.record_response(recipient_id):
        print(f"✅ Recipient {recipient_id} marked as responded")
    else:
        print(f"ℹ️  Recipient {recipient_id} unknown or already responded")


def escalate(survey_id: str, batch_id: str = None):
    service = create_service()
    target = f"batch {batch_id}" if batch_id else "all batches"
    print(f"\n📞 Calling non-responders of survey {survey_id} ({target})...")
    result = service.trigger_escalation(survey_id, batch_id)

    print(f"\n📊 Results:")
    print(f"   Successful: {result.success_count}")
    print(f"   Failed: {result.failed_count}")
    for entry in result.results:
        status = "✅" if entry["status"] == "success" else "❌"
        detail = entry.get("ref") or entry.get("error") or ""
        print(f"   {status} {entry['phone']} ({entry['email']}) {detail}")


def show_stats(survey_id: str):
    service = create_service()
    stats = service.response_stats(survey_id)

    if not stats["total_participants"]:
        print(f"\n📭 No participants for survey {survey_id}")
        return

    print(f"\n📊 Survey {survey_id}")
    print(f"   Participants: {stats['total_participants']}")
    print(f"   Responded: {stats['responded_count']} ({stats['response_rate']}%)")
    print(f"   Not responded: {stats['non_responders_count']}")

    print(f"\n   Batches:")
    for b in stats["batches"]:
        print(f"   • {b['batch_id']} ({_local(b['created_at'])}): "
              f"{b['responded_count']}/{b['total_participants']} ({b['response_rate']}%)")


def list_schedules(survey_id: str = None):
    service = create_service()
    schedules = service.threshold_scheduler.list_schedules(survey_id)

    if not schedules:
        print("\n📭 No escalation schedules.")
        return

    print(f"\n📅 Escalation schedules ({len(schedules)})\n")
    for s in schedules:
        status_emoji = {"scheduled": "⏳", "triggered": "⚠️", "skipped": "⏭️", "completed": "✅"}.get(s.status, "❓")
        print(f"{status_emoji} {s.schedule_id}")
        print(f"   Status: {s.status} | Fires: {_local(s.trigger_at)} | "
              f"Threshold: {s.threshold_count}/{s.total_participants}")
        if s.last_checked_at:
            print(f"   Checked: {_local(s.last_checked_at)} | Responses: {s.response_count} ({s.response_rate}%)")
        print()


def list_reminders(survey_id: str = None):
    service = create_service()
    reminders = service.reminder_scheduler.list_reminders(survey_id)

    if not reminders:
        print("\n📭 No reminders.")
        return

    print(f"\n📧 Reminders ({len(reminders)})\n")
    for r in reminders:
        status_emoji = {"scheduled": "⏳", "sent": "✅", "failed": "❌"}.get(r.status, "❓")
        print(f"{status_emoji} {r.reminder_id}")
        print(f"   Status: {r.status} | Fires: {_local(r.trigger_at)} | Recipients: {len(r.recipient_refs)}")
        if r.error:
            print(f"   Error: {r.error}")
        print()


def run_tick():
    service = create_service()
    summary = service.poller.tick()
    status = "✅" if summary["ok"] else "❌"
    print(f"{status} Tick: {summary['schedules']} schedules, {summary['reminders']} reminders processed")
    if summary["error"]:
        print(f"   Error: {summary['error']}")


async def _run_poller():
    service = create_service()
    service.poller.install_signal_handlers()
    await service.poller.run()


def run_poller():
    """Run the background poller until SIGTERM / SIGINT"""
    print(f"\n⏰ Escalation poller running (every {config.POLL_INTERVAL_SECONDS}s). Ctrl+C to stop.\n")
    asyncio.run(_run_poller())


def main():
    parser = argparse.ArgumentParser(
        description="Survey Escalation Scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py distribute survey-42 recipients.csv --duration 2880 --topic "Customer NPS"
  python main.py distribute survey-42 recipients.csv --duration 10 --test-mode
  python main.py poller

  # Manual operations
  python main.py respond <recipient_id>
  python main.py escalate survey-42 --batch <batch_id>
  python main.py stats survey-42
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Distribute
    dist_parser = subparsers.add_parser("distribute", help="Create a batch and schedule its escalation/reminder")
    dist_parser.add_argument("survey_id", help="Survey ID")
    dist_parser.add_argument("csv", help="CSV file with email,phone columns")
    dist_parser.add_argument("--duration", type=int, required=True, help="Campaign duration in minutes")
    dist_parser.add_argument("--end", help="Campaign end time (ISO 8601), defaults to now + duration")
    dist_parser.add_argument("--threshold", type=int, default=None, help="Response threshold percent")
    dist_parser.add_argument("--timing", type=int, default=None, help="Escalation timing percent of duration")
    dist_parser.add_argument("--test-mode", action="store_true", help="2 minute reminder lead time")
    dist_parser.add_argument("--no-calls", action="store_true", help="Disable call escalation")
    dist_parser.add_argument("--no-reminder", action="store_true", help="Disable the reminder email")
    dist_parser.add_argument("--topic", help="Survey topic used in the reminder")
    dist_parser.add_argument("--link", help="Survey link used in the reminder")

    # Responses
    respond_parser = subparsers.add_parser("respond", help="Mark a recipient as responded")
    respond_parser.add_argument("recipient_id", help="Recipient ID")

    # Manual escalation
    escalate_parser = subparsers.add_parser("escalate", help="Call non-responders now")
    escalate_parser.add_argument("survey_id", help="Survey ID")
    escalate_parser.add_argument("--batch", help="Only this batch")

    # Stats
    stats_parser = subparsers.add_parser("stats", help="Live response statistics")
    stats_parser.add_argument("survey_id", help="Survey ID")

    # Listings
    schedules_parser = subparsers.add_parser("schedules", help="List escalation schedules")
    schedules_parser.add_argument("survey_id", nargs="?", help="Survey ID")
    reminders_parser = subparsers.add_parser("reminders", help="List reminders")
    reminders_parser.add_argument("survey_id", nargs="?", help="Survey ID")

    # Poller
    subparsers.add_parser("poller", help="Run the background poller")
    subparsers.add_parser("tick", help="Run a single evaluation pass")

    args = parser.parse_args()

    setup_logging(config.LOG_LEVEL, config.LOG_FILE, config.LOG_JSON)

    try:
        if args.command == "distribute":
            distribute_survey(args)
        elif args.command == "respond":
            record_response(args.recipient_id)
        elif args.command == "escalate":
            escalate(args.survey_id, args.batch)
        elif args.command == "stats":
            show_stats(args.survey_id)
        elif args.command == "schedules":
            list_schedules(args.survey_id)
        elif args.command == "reminders":
            list_reminders(args.survey_id)
        elif args.command == "tick":
            run_tick()
        elif args.command == "poller":
            run_poller()
        else:
            parser.print_help()
            print("\n💡 Quick start:")
            print('   python main.py distribute survey-1 recipients.csv --duration 2880')
            print('   python main.py poller')
    except EscalationError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
