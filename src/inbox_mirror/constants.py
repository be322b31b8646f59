"""Constants for Inbox Mirror."""

import os
from datetime import timedelta
from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path(os.environ.get("INBOX_MIRROR_HOME", Path.home() / ".inbox-mirror"))
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
TOKEN_DIR = CONFIG_DIR / "tokens"
DB_PATH = CONFIG_DIR / "mirror.db"

# --- Gmail API ---
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
BATCH_SIZE = 50  # messages per BatchHttpRequest
PAGE_SIZE = 500  # ids per list page
HISTORY_PAGE_SIZE = 500  # records per history page
MODIFY_BATCH_SIZE = 1000  # ids per batchModify call
METADATA_HEADERS = [
    "From",
    "Date",
    "Subject",
    "List-Unsubscribe",
    "List-Unsubscribe-Post",
    "Precedence",
]
DEFAULT_QUERY = "-in:sent -in:drafts -in:trash -in:spam"

# --- Retries ---
MAX_ATTEMPTS = 5  # per request, including the first one
BACKOFF_MAX_SECONDS = 32
ITEM_RETRY_ROUNDS = 2  # re-batches for items that failed inside a batch
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
RATE_LIMIT_REASONS = (b"rateLimitExceeded", b"userRateLimitExceeded")

# --- Labels ---
LABEL_SPAM = "SPAM"
LABEL_TRASH = "TRASH"
LABEL_INBOX = "INBOX"
LABEL_UNREAD = "UNREAD"
LABEL_PROMOTIONS = "CATEGORY_PROMOTIONS"
LABEL_UPDATES = "CATEGORY_UPDATES"

# --- Sync ---
STALE_SYNC_AFTER = timedelta(days=30)
VERIFY_WINDOW = 50  # recent ids sampled when the change feed reports nothing
FETCH_WORKERS = 4  # concurrent metadata batch fetches
STORE_BATCH_SIZE = 100  # messages per insert transaction
SYNC_TIME_BUDGET = 300.0  # seconds of wall clock per sync run
FULL_SCAN_CAP = 10_000

# --- Plans: (min sync interval, max messages per full scan) ---
PLAN_LIMITS = {
    "free": (timedelta(hours=24), 100),
    "basic": (timedelta(hours=4), 1_000),
    "pro": (timedelta(hours=1), 5_000),
    "unlimited": (timedelta(0), FULL_SCAN_CAP),
}

# --- Classification ---
NO_SUBJECT = "(No Subject)"
BULK_PRECEDENCE = ("bulk", "list")

# --- Sender patterns (automated/newsletter addresses) ---
AUTOMATED_SENDER_PATTERNS = [
    "noreply@",
    "no-reply@",
    "newsletter@",
    "newsletters@",
    "notifications@",
    "notification@",
    "mailer@",
    "marketing@",
    "news@",
    "updates@",
    "update@",
    "do-not-reply@",
    "donotreply@",
    "digest@",
    "bounce@",
]

# --- Display ---
SENDERS_TABLE_LIMIT = 50
