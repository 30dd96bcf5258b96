"""
Recipient Registry - owns batch and recipient records.

A batch is written in two steps: every recipient record first, then the
batch record. Readers only see recipients whose batch record exists, so a
crash half-way through create_batch never exposes a partial batch.

Every status change is a compare-and-set on the recipient's current status.
That is what keeps `responded` sticky: once a recipient has responded no
later write (escalation, retry, a concurrent response) can match the
expected status any more.
"""

import logging
import re
import threading
import time
import uuid
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from database import DurableStore, get_store
from errors import NotFoundError, ValidationError
from models import (
    KEY_SEPARATOR,
    Batch,
    Recipient,
    RecipientStatus,
    Scope,
    batch_key,
    batch_prefix,
    recipient_locator_key,
    recipient_prefix,
    utcnow,
)

logger = logging.getLogger("escalation.registry")

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^\+?[0-9()\-.\s]+$')
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15

# Bounded retries when a status compare-and-set loses a race
_CAS_ATTEMPTS = 3


def is_valid_email(email: str) -> bool:
    """Check if email is a valid format (has @ and domain)"""
    if not email:
        return False
    return bool(EMAIL_PATTERN.match(email))


def is_valid_phone(phone: str) -> bool:
    if not phone or not PHONE_PATTERN.match(phone):
        return False
    digits = sum(ch.isdigit() for ch in phone)
    return MIN_PHONE_DIGITS <= digits <= MAX_PHONE_DIGITS


def validate_survey_id(survey_id: str):
    if not survey_id or not str(survey_id).strip():
        raise ValidationError("survey_id is required")
    if KEY_SEPARATOR in survey_id:
        raise ValidationError(f"survey_id may not contain '{KEY_SEPARATOR}': {survey_id!r}")


def _new_id(length: int) -> str:
    return uuid.uuid4().hex[:length]


_batch_clock_lock = threading.Lock()
_last_batch_ns = 0


def _new_batch_id() -> str:
    """Time-ordered id, so batches created with the same `created_at` still sort in creation order."""
    global _last_batch_ns
    with _batch_clock_lock:
        _last_batch_ns = max(time.time_ns(), _last_batch_ns + 1)
        stamp = _last_batch_ns
    return f"{stamp:016x}{_new_id(4)}"


class RecipientRegistry:
    """Batch / recipient persistence plus non-responder resolution."""

    def __init__(self, store: DurableStore = None):
        self.store = store or get_store()

    # ── Creation ─────────────────────────────────────────────────────

    def _normalize_pairs(self, pairs: Iterable) -> List[Dict[str, str]]:
        normalized = []
        seen = set()
        for index, pair in enumerate(pairs):
            if isinstance(pair, dict):
                email, phone = pair.get("email"), pair.get("phone")
            elif isinstance(pair, (list, tuple)) and len(pair) == 2:
                email, phone = pair
            else:
                raise ValidationError(f"Recipient {index}: expected an email/phone pair, got {pair!r}")

            if not isinstance(email, (str, type(None))):
                raise ValidationError(f"Recipient {index}: email must be a string, got {email!r}")
            if not isinstance(phone, (str, type(None))):
                raise ValidationError(f"Recipient {index}: phone must be a string, got {phone!r}")

            email = (email or "").strip().lower()
            phone = (phone or "").strip()

            if not is_valid_email(email):
                raise ValidationError(f"Recipient {index}: invalid email {email!r}")
            if not is_valid_phone(phone):
                raise ValidationError(f"Recipient {index}: invalid phone {phone!r}")

            if (email, phone) in seen:
                logger.warning(f"Duplicate recipient {email} / {phone} in one batch - keeping first")
                continue
            seen.add((email, phone))
            normalized.append({"email": email, "phone": phone})
        return normalized

    def create_batch(self, survey_id: str, pairs: Iterable, now=None) -> str:
        """
        Create one distribution batch. All input is validated before anything
        is written; each recipient starts as `sent`.

        Returns:
            The new batch id
        """
        validate_survey_id(survey_id)
        normalized = self._normalize_pairs(pairs or [])
        if not normalized:
            raise ValidationError("Cannot create an empty batch")

        now = now or utcnow()
        batch_id = _new_batch_id()
        recipients = [
            Recipient(
                id=_new_id(12),
                email=pair["email"],
                phone=pair["phone"],
                survey_id=survey_id,
                batch_id=batch_id,
                sent_at=now,
            )
            for pair in normalized
        ]

        for recipient in recipients:
            self.store.put(recipient.key, recipient.to_doc())
            self.store.put(recipient_locator_key(recipient.id), {"key": recipient.key})

        # Batch record last - it is the commit marker readers rely on
        batch = Batch(
            survey_id=survey_id,
            batch_id=batch_id,
            created_at=now,
            recipient_ids=[r.id for r in recipients],
        )
        self.store.put(batch.key, batch.to_doc())

        logger.info(
            f"Created batch {batch_id} with {len(recipients)} recipients for survey {survey_id}",
            extra={"survey_id": survey_id, "batch_id": batch_id, "recipients": len(recipients)},
        )
        return batch_id

    # ── Lookups ──────────────────────────────────────────────────────

    def _locate(self, recipient_id: str) -> Optional[str]:
        locator = self.store.get(recipient_locator_key(recipient_id))
        return locator["key"] if locator else None

    def get_recipient(self, recipient_id: str) -> Recipient:
        key = self._locate(recipient_id)
        doc = self.store.get(key) if key else None
        if doc is None:
            raise NotFoundError(f"Recipient {recipient_id} not found")
        return Recipient.from_doc(doc)

    def get_batch(self, survey_id: str, batch_id: str) -> Batch:
        doc = self.store.get(batch_key(survey_id, batch_id))
        if doc is None:
            raise NotFoundError(f"Batch {batch_id} not found for survey {survey_id}")
        return Batch.from_doc(doc)

    def list_batches(self, survey_id: str) -> List[Batch]:
        """Committed batches, oldest first."""
        batches = [Batch.from_doc(d) for d in self.store.list_by_prefix(batch_prefix(survey_id))]
        return sorted(batches, key=lambda b: (b.created_at, b.batch_id))

    def latest_batch(self, survey_id: str) -> Optional[Batch]:
        batches = self.list_batches(survey_id)
        return batches[-1] if batches else None

    def _recipients_for(self, survey_id: str, batches: List[Batch]) -> List[Recipient]:
        """Members of the given committed batches, in batch order."""
        if not batches:
            return []
        if len(batches) == 1:
            prefix = recipient_prefix(survey_id, batches[0].batch_id)
        else:
            prefix = recipient_prefix(survey_id)

        by_batch: Dict[str, List[Recipient]] = {b.batch_id: [] for b in batches}
        for doc in self.store.list_by_prefix(prefix):
            recipient = Recipient.from_doc(doc)
            if recipient.batch_id in by_batch:
                by_batch[recipient.batch_id].append(recipient)

        # Keep the order recipients were submitted in
        ordered = []
        for batch in batches:
            position = {rid: i for i, rid in enumerate(batch.recipient_ids)}
            members = [r for r in by_batch[batch.batch_id] if r.id in position]
            ordered.extend(sorted(members, key=lambda r: position[r.id]))
        return ordered

    def _batches_in_scope(self, survey_id: str, scope: Scope) -> List[Batch]:
        batches = self.list_batches(survey_id)
        if scope.kind == Scope.LATEST_BATCH:
            return batches[-1:]
        if scope.kind == Scope.BATCH:
            selected = [b for b in batches if b.batch_id == scope.batch_id]
            if not selected:
                logger.warning(f"Batch {scope.batch_id} not found for survey {survey_id}")
            return selected
        return batches

    def get_batch_recipients(self, survey_id: str, batch_id: str) -> List[Recipient]:
        return self._recipients_for(survey_id, [self.get_batch(survey_id, batch_id)])

    def get_participants(self, survey_id: str) -> List[Recipient]:
        """Raw union of every committed batch - no deduplication."""
        return self._recipients_for(survey_id, self.list_batches(survey_id))

    def get_non_responders(self, survey_id: str, scope: Scope = None) -> List[Recipient]:
        """
        Deduplicated non-responders keyed by (email, phone).

        Per key, across the batches in scope: any `responded` entry excludes
        the key entirely; otherwise the entry with the latest sent_at wins.
        Only winners still in `sent` / `no_response` are returned.
        """
        scope = scope or Scope.all_batches()
        recipients = self._recipients_for(survey_id, self._batches_in_scope(survey_id, scope))

        responded_keys = {r.dedup_key for r in recipients if r.status == RecipientStatus.RESPONDED}

        resolved: "OrderedDict[tuple, Recipient]" = OrderedDict()
        for recipient in recipients:
            key = recipient.dedup_key
            if key in responded_keys:
                continue
            current = resolved.get(key)
            # Batch order is oldest first, so on equal sent_at the later batch wins
            if current is None or recipient.sent_at >= current.sent_at:
                resolved[key] = recipient

        non_responders = [r for r in resolved.values() if r.status in RecipientStatus.PENDING]
        logger.info(
            f"Found {len(non_responders)} unique non-responders "
            f"(deduplicated from {len(recipients)} total) for survey {survey_id} [{scope.describe()}]"
        )
        return non_responders

    def count_responded(self, survey_id: str, batch_id: str = None) -> int:
        if batch_id:
            batches = self._batches_in_scope(survey_id, Scope.batch(batch_id))
        else:
            batches = self.list_batches(survey_id)
        return sum(
            1 for r in self._recipients_for(survey_id, batches)
            if r.status == RecipientStatus.RESPONDED
        )

    def get_response_stats(self, survey_id: str) -> Dict:
        """Live response statistics for a survey, overall and per batch."""
        batches = self.list_batches(survey_id)
        recipients = self._recipients_for(survey_id, batches)

        def _rate(responded: int, total: int) -> int:
            return (responded * 100) // total if total else 0

        per_batch = []
        for batch in batches:
            members = [r for r in recipients if r.batch_id == batch.batch_id]
            responded = sum(1 for r in members if r.status == RecipientStatus.RESPONDED)
            per_batch.append({
                "batch_id": batch.batch_id,
                "created_at": batch.created_at,
                "total_participants": len(members),
                "responded_count": responded,
                "response_rate": _rate(responded, len(members)),
            })

        total = len(recipients)
        responded = sum(1 for r in recipients if r.status == RecipientStatus.RESPONDED)
        return {
            "survey_id": survey_id,
            "total_participants": total,
            "responded_count": responded,
            "response_rate": _rate(responded, total),
            "non_responders_count": total - responded,
            "batches": per_batch,
        }

    # ── Status transitions ───────────────────────────────────────────

    def mark_responded(self, recipient_id: str, now=None) -> bool:
        """
        Idempotent. False if the recipient is unknown or already responded.
        """
        key = self._locate(recipient_id)
        if key is None:
            logger.warning(f"Recipient {recipient_id} not found")
            return False

        for _ in range(_CAS_ATTEMPTS):
            doc = self.store.get(key)
            if doc is None:
                logger.warning(f"Recipient {recipient_id} not found")
                return False
            current = doc.get("status")
            if current == RecipientStatus.RESPONDED:
                logger.debug(f"Recipient {recipient_id} already responded")
                return False

            updates = {"status": RecipientStatus.RESPONDED, "responded_at": now or utcnow()}
            if self.store.compare_and_set(key, "status", current, updates):
                logger.info(f"Marked recipient {recipient_id} as responded (was {current})")
                return True

        logger.warning(f"Gave up marking {recipient_id} responded after {_CAS_ATTEMPTS} conflicting writes")
        return False

    def mark_escalated(self, recipient_id: str, escalation_ref: str = None, now=None) -> bool:
        """sent / no_response -> escalated. False if unknown or already terminal."""
        key = self._locate(recipient_id)
        if key is None:
            logger.warning(f"Recipient {recipient_id} not found")
            return False

        for _ in range(_CAS_ATTEMPTS):
            doc = self.store.get(key)
            if doc is None:
                return False
            current = doc.get("status")
            if current not in RecipientStatus.PENDING:
                logger.info(f"Recipient {recipient_id} is {current} - not marking escalated")
                return False

            updates = {
                "status": RecipientStatus.ESCALATED,
                "escalation_ref": escalation_ref,
                "escalated_at": now or utcnow(),
            }
            if self.store.compare_and_set(key, "status", current, updates):
                logger.info(f"Marked recipient {recipient_id} as escalated (ref={escalation_ref})")
                return True

        return False
