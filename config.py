import os
from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "survey_escalation")

# "mongo" for production, "memory" for local runs and tests (state is lost on exit)
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").lower()

# Poller
# Every due check compares persisted trigger times against wall-clock now,
# so a restarted process catches up on its first tick.
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "60"))
# Triggers closer than this get an extra one-shot in-memory tick (test-mode campaigns)
FAST_PATH_MAX_SECONDS = int(os.getenv("FAST_PATH_MAX_SECONDS", "600"))

# Threshold escalation defaults
# Calls are placed only when at least THRESHOLD% of participants already
# responded, checked at TIMING% of the campaign duration.
DEFAULT_RESPONSE_THRESHOLD_PERCENT = int(os.getenv("DEFAULT_RESPONSE_THRESHOLD_PERCENT", "70"))
DEFAULT_ESCALATION_TIMING_PERCENT = int(os.getenv("DEFAULT_ESCALATION_TIMING_PERCENT", "70"))

# Deadline reminders
REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "6"))
TEST_REMINDER_LEAD_MINUTES = int(os.getenv("TEST_REMINDER_LEAD_MINUTES", "2"))
# Campaigns shorter than this get no deadline reminder (unless test mode)
REMINDER_MIN_CAMPAIGN_HOURS = int(os.getenv("REMINDER_MIN_CAMPAIGN_HOURS", "24"))

# Vapi (voice escalation channel)
VAPI_API_KEY = os.getenv("VAPI_API_KEY")
VAPI_BASE_URL = os.getenv("VAPI_BASE_URL", "https://api.vapi.ai")
VAPI_ASSISTANT_ID = os.getenv("VAPI_ASSISTANT_ID")
VAPI_PHONE_NUMBER_ID = os.getenv("VAPI_PHONE_NUMBER_ID")
VAPI_TIMEOUT_SECONDS = int(os.getenv("VAPI_TIMEOUT_SECONDS", "30"))

# SMTP (reminder channel)
EMAIL_HOST = os.getenv("EMAIL_HOST", "localhost")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER", "")
EMAIL_PASS = os.getenv("EMAIL_PASS", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", EMAIL_USER)
EMAIL_USE_TLS = os.getenv("EMAIL_USE_TLS", "true").lower() == "true"
EMAIL_TIMEOUT_SECONDS = int(os.getenv("EMAIL_TIMEOUT_SECONDS", "30"))

# Display only - everything is stored and compared in UTC
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "America/New_York")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"
