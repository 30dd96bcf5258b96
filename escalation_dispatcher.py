"""
Escalation Dispatcher - calls non-responders through the voice channel.

Calls are placed one at a time. A failed or crashing call is recorded for
that recipient and the loop moves on; a store failure (PersistenceError)
aborts the whole run because nothing can be recorded without the registry.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from errors import ExternalServiceError, PersistenceError
from models import Scope
from recipient_registry import RecipientRegistry

logger = logging.getLogger("escalation.dispatcher")


@dataclass
class EscalationResult:
    success_count: int = 0
    failed_count: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "results": list(self.results),
        }


class EscalationDispatcher:

    def __init__(self, registry: RecipientRegistry, call_placer):
        """
        Args:
            registry: RecipientRegistry used to resolve and mark recipients
            call_placer: object with place_call(survey_id, phone) -> CallResult
        """
        self.registry = registry
        self.call_placer = call_placer

    def escalate_non_responders(self, survey_id: str, scope: Scope = None) -> EscalationResult:
        scope = scope or Scope.all_batches()
        non_responders = self.registry.get_non_responders(survey_id, scope)
        result = EscalationResult()

        if not non_responders:
            logger.info(f"All participants responded - no calls needed for survey {survey_id} [{scope.describe()}]")
            return result

        for recipient in non_responders:
            entry = {
                "recipient_id": recipient.id,
                "email": recipient.email,
                "phone": recipient.phone,
            }
            logger.info(f"Calling recipient {recipient.id} ({recipient.email} -> {recipient.phone})")

            try:
                call = self.call_placer.place_call(survey_id, recipient.phone)
            except PersistenceError:
                raise
            except ExternalServiceError as e:
                logger.error(f"Call for recipient {recipient.id} failed: {e}")
                result.failed_count += 1
                result.results.append({**entry, "status": "failed", "error": str(e)})
                continue
            except Exception as e:
                logger.error(f"Call for recipient {recipient.id} raised: {e}", exc_info=True)
                result.failed_count += 1
                result.results.append({**entry, "status": "error", "error": str(e)})
                continue

            if call.success:
                marked = self.registry.mark_escalated(recipient.id, call.ref)
                if not marked:
                    logger.info(f"Recipient {recipient.id} responded while being called - left as responded")
                result.success_count += 1
                result.results.append({**entry, "status": "success", "ref": call.ref, "marked": marked})
            else:
                result.failed_count += 1
                result.results.append({**entry, "status": "failed", "error": call.error})

        logger.info(
            f"Escalation for survey {survey_id} [{scope.describe()}]: "
            f"{result.success_count} successful, {result.failed_count} failed",
            extra={"survey_id": survey_id, "success": result.success_count, "failed": result.failed_count},
        )
        return result
