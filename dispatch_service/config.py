import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DISPATCH_DB") or "sqlite+aiosqlite:///./dispatch.db"
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/0"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ---- Dispatch ----
SEARCH_RADIUS_M = float(os.getenv("DISPATCH_SEARCH_RADIUS_M") or "10000")
MAX_CANDIDATES = int(os.getenv("DISPATCH_MAX_CANDIDATES") or "5")
ALLOW_REQUESTER_CANCEL = (os.getenv("DISPATCH_ALLOW_REQUESTER_CANCEL") or "true").lower() == "true"

# ---- Scheduled re-dispatch of pending bookings ----
REDISPATCH_INTERVAL_SECONDS = float(os.getenv("DISPATCH_REDISPATCH_INTERVAL") or "30")
REDISPATCH_BATCH = int(os.getenv("DISPATCH_REDISPATCH_BATCH") or "50")

# ---- Ledger ----
MINIMUM_RESERVE = Decimal(os.getenv("LEDGER_MINIMUM_RESERVE") or "500")
DEFAULT_CURRENCY = os.getenv("LEDGER_CURRENCY") or "INR"
