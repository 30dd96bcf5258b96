"""
Unit tests for recipient_registry.py

Tests cover:
- Batch creation, validation and in-batch deduplication
- Sticky `responded` status and idempotent mark_responded
- mark_escalated transitions
- Non-responder resolution across batches and scopes
- Response counts and live stats
"""

import unittest
from datetime import datetime, timedelta
import sys
import os

import pytz

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=pytz.UTC)


def make_registry():
    from database import MemoryStore
    from recipient_registry import RecipientRegistry

    return RecipientRegistry(MemoryStore())


def pairs(*indexes):
    return [{"email": f"user{i}@example.com", "phone": f"+1555000{i:04d}"} for i in indexes]


class TestValidators(unittest.TestCase):

    def test_email_validation(self):
        from recipient_registry import is_valid_email

        self.assertTrue(is_valid_email("jane.doe@example.co.uk"))
        self.assertFalse(is_valid_email("jane.doe"))
        self.assertFalse(is_valid_email("jane@localhost"))
        self.assertFalse(is_valid_email(""))

    def test_phone_validation(self):
        from recipient_registry import is_valid_phone

        self.assertTrue(is_valid_phone("+15550001111"))
        self.assertTrue(is_valid_phone("(555) 000-1111"))
        self.assertFalse(is_valid_phone("123"))
        self.assertFalse(is_valid_phone("call me maybe"))
        self.assertFalse(is_valid_phone(None))


class TestCreateBatch(unittest.TestCase):

    def test_recipients_start_as_sent(self):
        from models import RecipientStatus

        registry = make_registry()
        batch_id = registry.create_batch("survey-1", pairs(1, 2, 3), now=T0)

        batch = registry.get_batch("survey-1", batch_id)
        self.assertEqual(len(batch.recipient_ids), 3)
        self.assertEqual(batch.created_at, T0)

        for rid in batch.recipient_ids:
            recipient = registry.get_recipient(rid)
            self.assertEqual(recipient.status, RecipientStatus.SENT)
            self.assertEqual(recipient.sent_at, T0)
            self.assertEqual(recipient.batch_id, batch_id)

    def test_recipient_ids_are_unique(self):
        registry = make_registry()
        first = registry.get_batch("survey-1", registry.create_batch("survey-1", pairs(1, 2)))
        second = registry.get_batch("survey-1", registry.create_batch("survey-1", pairs(1, 2)))
        ids = first.recipient_ids + second.recipient_ids
        self.assertEqual(len(ids), len(set(ids)))

    def test_email_is_normalized_to_lower_case(self):
        registry = make_registry()
        batch_id = registry.create_batch("survey-1", [{"email": " Jane@Example.COM ", "phone": "+15550001111"}])
        rid = registry.get_batch("survey-1", batch_id).recipient_ids[0]
        self.assertEqual(registry.get_recipient(rid).email, "jane@example.com")

    def test_accepts_tuples(self):
        registry = make_registry()
        batch_id = registry.create_batch("survey-1", [("a@example.com", "+15550001111")])
        self.assertEqual(len(registry.get_batch("survey-1", batch_id).recipient_ids), 1)

    def test_duplicate_pairs_collapse_first_wins(self):
        registry = make_registry()
        batch_id = registry.create_batch("survey-1", pairs(1, 1, 2))
        self.assertEqual(len(registry.get_batch("survey-1", batch_id).recipient_ids), 2)

    def test_empty_batch_rejected(self):
        from errors import ValidationError

        registry = make_registry()
        with self.assertRaises(ValidationError):
            registry.create_batch("survey-1", [])
        self.assertEqual(registry.store.list_by_prefix(""), [])

    def test_invalid_pair_writes_nothing(self):
        from errors import ValidationError

        registry = make_registry()
        malformed = {
            "bad email": {"email": "not-an-email", "phone": "+15550009999"},
            "int email": {"email": 123, "phone": "+15550009999"},
            "int phone": ("x@example.com", 15550009999),
            "3-tuple": ("x@example.com", "+15550009999", "extra"),
            "None entry": None,
            "bare string": "x@example.com",
        }
        for label, entry in malformed.items():
            with self.subTest(label):
                with self.assertRaises(ValidationError) as ctx:
                    registry.create_batch("survey-1", pairs(1, 2) + [entry])
                self.assertIn("Recipient 2", str(ctx.exception))
                self.assertEqual(registry.store.list_by_prefix(""), [])

    def test_invalid_phone_rejected(self):
        from errors import ValidationError

        registry = make_registry()
        with self.assertRaises(ValidationError):
            registry.create_batch("survey-1", [{"email": "a@example.com", "phone": "12"}])

    def test_survey_id_with_separator_rejected(self):
        from errors import ValidationError

        registry = make_registry()
        with self.assertRaises(ValidationError):
            registry.create_batch("survey:1", pairs(1))
        with self.assertRaises(ValidationError):
            registry.create_batch("  ", pairs(1))

    def test_recipients_without_batch_record_are_invisible(self):
        from models import Recipient

        registry = make_registry()
        registry.create_batch("survey-1", pairs(1), now=T0)

        # A crash before the batch record is written leaves orphans behind
        orphan = Recipient(id="orphan", email="x@example.com", phone="+15550009999",
                           survey_id="survey-1", batch_id="half-written", sent_at=T0)
        registry.store.put(orphan.key, orphan.to_doc())

        emails = [r.email for r in registry.get_participants("survey-1")]
        self.assertEqual(emails, ["user1@example.com"])


class TestLookups(unittest.TestCase):

    def test_unknown_recipient_raises(self):
        from errors import NotFoundError

        with self.assertRaises(NotFoundError):
            make_registry().get_recipient("nope")

    def test_unknown_batch_raises(self):
        from errors import NotFoundError

        with self.assertRaises(NotFoundError):
            make_registry().get_batch("survey-1", "nope")

    def test_latest_batch(self):
        registry = make_registry()
        self.assertIsNone(registry.latest_batch("survey-1"))
        registry.create_batch("survey-1", pairs(1), now=T0)
        later = registry.create_batch("survey-1", pairs(2), now=T0 + timedelta(hours=1))
        self.assertEqual(registry.latest_batch("survey-1").batch_id, later)
        self.assertEqual(len(registry.list_batches("survey-1")), 2)

    def test_surveys_are_isolated(self):
        registry = make_registry()
        registry.create_batch("survey-1", pairs(1, 2))
        registry.create_batch("survey-10", pairs(3))
        self.assertEqual(len(registry.get_participants("survey-1")), 2)
        self.assertEqual(len(registry.get_participants("survey-10")), 1)


class TestMarkResponded(unittest.TestCase):

    def setUp(self):
        self.registry = make_registry()
        batch_id = self.registry.create_batch("survey-1", pairs(1, 2), now=T0)
        self.rid = self.registry.get_batch("survey-1", batch_id).recipient_ids[0]

    def test_is_idempotent(self):
        from models import RecipientStatus

        later = T0 + timedelta(minutes=5)
        self.assertTrue(self.registry.mark_responded(self.rid, now=later))
        self.assertFalse(self.registry.mark_responded(self.rid, now=later + timedelta(minutes=5)))

        recipient = self.registry.get_recipient(self.rid)
        self.assertEqual(recipient.status, RecipientStatus.RESPONDED)
        self.assertEqual(recipient.responded_at, later)

    def test_unknown_recipient_returns_false(self):
        self.assertFalse(self.registry.mark_responded("does-not-exist"))

    def test_overrides_escalated(self):
        from models import RecipientStatus

        self.assertTrue(self.registry.mark_escalated(self.rid, "call-1"))
        self.assertTrue(self.registry.mark_responded(self.rid))
        self.assertEqual(self.registry.get_recipient(self.rid).status, RecipientStatus.RESPONDED)

    def test_responded_is_sticky(self):
        from models import RecipientStatus

        self.registry.mark_responded(self.rid)
        self.assertFalse(self.registry.mark_escalated(self.rid, "call-1"))

        recipient = self.registry.get_recipient(self.rid)
        self.assertEqual(recipient.status, RecipientStatus.RESPONDED)
        self.assertIsNone(recipient.escalation_ref)

    def test_gives_up_after_repeated_conflicts(self):
        from unittest.mock import patch

        with patch.object(self.registry.store, "compare_and_set", return_value=False) as cas:
            self.assertFalse(self.registry.mark_responded(self.rid))
        self.assertEqual(cas.call_count, 3)


class TestMarkEscalated(unittest.TestCase):

    def test_sets_ref_and_timestamp(self):
        from models import RecipientStatus

        registry = make_registry()
        batch_id = registry.create_batch("survey-1", pairs(1))
        rid = registry.get_batch("survey-1", batch_id).recipient_ids[0]

        escalated_at = T0 + timedelta(hours=1)
        self.assertTrue(registry.mark_escalated(rid, "call-123", now=escalated_at))

        recipient = registry.get_recipient(rid)
        self.assertEqual(recipient.status, RecipientStatus.ESCALATED)
        self.assertEqual(recipient.escalation_ref, "call-123")
        self.assertEqual(recipient.escalated_at, escalated_at)

    def test_only_once(self):
        registry = make_registry()
        batch_id = registry.create_batch("survey-1", pairs(1))
        rid = registry.get_batch("survey-1", batch_id).recipient_ids[0]

        self.assertTrue(registry.mark_escalated(rid, "call-1"))
        self.assertFalse(registry.mark_escalated(rid, "call-2"))
        self.assertEqual(registry.get_recipient(rid).escalation_ref, "call-1")

    def test_unknown_recipient_returns_false(self):
        self.assertFalse(make_registry().mark_escalated("nope"))


class TestNonResponders(unittest.TestCase):

    def setUp(self):
        self.registry = make_registry()
        self.first = self.registry.create_batch("survey-1", pairs(1, 2, 3), now=T0)
        self.second = self.registry.create_batch("survey-1", pairs(1, 4), now=T0 + timedelta(hours=1))

    def _ids(self, batch_id):
        return self.registry.get_batch("survey-1", batch_id).recipient_ids

    def test_dedup_keeps_latest_sent_at(self):
        from models import Scope

        non_responders = self.registry.get_non_responders("survey-1", Scope.all_batches())
        self.assertEqual(len(non_responders), 4)

        user1 = [r for r in non_responders if r.email == "user1@example.com"]
        self.assertEqual(len(user1), 1)
        self.assertEqual(user1[0].batch_id, self.second)

    def test_equal_sent_at_prefers_the_later_batch(self):
        from models import Scope

        registry = make_registry()
        older = registry.create_batch("survey-2", pairs(1, 2), now=T0)
        resend = registry.create_batch("survey-2", pairs(1), now=T0)

        self.assertEqual(registry.latest_batch("survey-2").batch_id, resend)
        non_responders = registry.get_non_responders("survey-2", Scope.all_batches())
        by_email = {r.email: r.batch_id for r in non_responders}
        self.assertEqual(by_email, {"user1@example.com": resend, "user2@example.com": older})

    def test_response_in_any_batch_excludes_the_pair(self):
        from models import Scope

        self.registry.mark_responded(self._ids(self.first)[0])

        emails = {r.email for r in self.registry.get_non_responders("survey-1", Scope.all_batches())}
        self.assertNotIn("user1@example.com", emails)
        self.assertEqual(emails, {"user2@example.com", "user3@example.com", "user4@example.com"})

    def test_escalated_recipients_are_not_returned(self):
        from models import Scope

        self.registry.mark_escalated(self._ids(self.first)[1], "call-1")
        emails = {r.email for r in self.registry.get_non_responders("survey-1", Scope.all_batches())}
        self.assertNotIn("user2@example.com", emails)

    def test_no_response_status_counts_as_pending(self):
        from models import RecipientStatus, Scope

        rid = self._ids(self.second)[1]
        key = self.registry.get_recipient(rid).key
        self.registry.store.compare_and_set(key, "status", RecipientStatus.SENT,
                                            {"status": RecipientStatus.NO_RESPONSE})

        emails = {r.email for r in self.registry.get_non_responders("survey-1", Scope.latest_batch())}
        self.assertIn("user4@example.com", emails)

    def test_latest_batch_scope(self):
        from models import Scope

        non_responders = self.registry.get_non_responders("survey-1", Scope.latest_batch())
        self.assertEqual({r.batch_id for r in non_responders}, {self.second})
        self.assertEqual(len(non_responders), 2)

    def test_single_batch_scope(self):
        from models import Scope

        non_responders = self.registry.get_non_responders("survey-1", Scope.batch(self.first))
        self.assertEqual({r.batch_id for r in non_responders}, {self.first})
        self.assertEqual(len(non_responders), 3)

    def test_unknown_batch_scope_is_empty(self):
        from models import Scope

        self.assertEqual(self.registry.get_non_responders("survey-1", Scope.batch("missing")), [])

    def test_default_scope_is_all_batches(self):
        self.assertEqual(len(self.registry.get_non_responders("survey-1")), 4)

    def test_participants_are_a_raw_union(self):
        self.assertEqual(len(self.registry.get_participants("survey-1")), 5)


class TestCountsAndStats(unittest.TestCase):

    def test_count_responded_is_raw(self):
        registry = make_registry()
        first = registry.create_batch("survey-1", pairs(1, 2), now=T0)
        second = registry.create_batch("survey-1", pairs(1), now=T0 + timedelta(hours=1))

        registry.mark_responded(registry.get_batch("survey-1", first).recipient_ids[0])
        registry.mark_responded(registry.get_batch("survey-1", second).recipient_ids[0])

        self.assertEqual(registry.count_responded("survey-1"), 2)
        self.assertEqual(registry.count_responded("survey-1", first), 1)
        self.assertEqual(registry.count_responded("survey-1", "missing"), 0)

    def test_response_stats(self):
        registry = make_registry()
        first = registry.create_batch("survey-1", pairs(1, 2, 3), now=T0)
        registry.create_batch("survey-1", pairs(4), now=T0 + timedelta(hours=1))
        registry.mark_responded(registry.get_batch("survey-1", first).recipient_ids[0])

        stats = registry.get_response_stats("survey-1")
        self.assertEqual(stats["total_participants"], 4)
        self.assertEqual(stats["responded_count"], 1)
        self.assertEqual(stats["response_rate"], 25)
        self.assertEqual(stats["non_responders_count"], 3)

        per_batch = {b["batch_id"]: b for b in stats["batches"]}
        self.assertEqual(per_batch[first]["response_rate"], 33)

    def test_stats_for_unknown_survey(self):
        stats = make_registry().get_response_stats("nobody")
        self.assertEqual(stats["total_participants"], 0)
        self.assertEqual(stats["response_rate"], 0)
        self.assertEqual(stats["batches"], [])


if __name__ == "__main__":
    unittest.main()
