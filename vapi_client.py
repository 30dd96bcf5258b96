import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger("escalation.vapi")


@dataclass
class CallResult:
    success: bool
    ref: Optional[str] = None
    error: Optional[str] = None


class VapiClient:
    """Places outbound survey calls through the Vapi voice API (PlaceCall)."""

    def __init__(self, api_key: str = None, assistant_id: str = None,
                 phone_number_id: str = None, base_url: str = None,
                 timeout: int = None, session: requests.Session = None):
        self.api_key = api_key if api_key is not None else config.VAPI_API_KEY
        self.assistant_id = assistant_id or config.VAPI_ASSISTANT_ID
        self.phone_number_id = phone_number_id or config.VAPI_PHONE_NUMBER_ID
        self.base_url = (base_url or config.VAPI_BASE_URL).rstrip("/")
        self.timeout = timeout or config.VAPI_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, survey_id: str, phone_number: str) -> Dict[str, Any]:
        return {
            "assistantId": self.assistant_id,
            "phoneNumberId": self.phone_number_id,
            "customer": {"number": phone_number},
            # The assistant loads the survey script by id
            "assistantOverrides": {"variableValues": {"surveyId": survey_id}},
            "metadata": {"surveyId": survey_id},
        }

    def place_call(self, survey_id: str, phone_number: str) -> CallResult:
        """
        Start one outbound call.

        Never raises for API or network errors - failures come back as
        CallResult(success=False, error=...) so a caller can record them per
        recipient.
        """
        if not self.api_key:
            return CallResult(success=False, error="VAPI API key not configured")
        if not self.assistant_id or not self.phone_number_id:
            return CallResult(success=False, error="VAPI assistant or phone number not configured")

        try:
            response = self.session.post(
                f"{self.base_url}/call",
                json=self.build_payload(survey_id, phone_number),
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Vapi request failed for {phone_number}: {e}")
            return CallResult(success=False, error=str(e))

        if response.status_code not in (200, 201):
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            if isinstance(message, list):
                message = "; ".join(str(m) for m in message)
            error = message or f"HTTP {response.status_code}"
            logger.error(f"Vapi call to {phone_number} rejected: {error}")
            return CallResult(success=False, error=error)

        try:
            call_id = response.json().get("id")
        except ValueError:
            call_id = None
        logger.info(f"Vapi call started for survey {survey_id} -> {phone_number} (call {call_id})")
        return CallResult(success=True, ref=call_id)
