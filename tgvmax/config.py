"""Configuration constants for the TGV Max engine"""

from datetime import timedelta
from pathlib import Path

# Remote site
BASE_URL = "https://www.maxjeune-tgvinoui.sncf"
API_BASE_URL = f"{BASE_URL}/api/public"
REFDATA_URL = f"{API_BASE_URL}/refdata"
SEARCH_PAGE_URL = f"{BASE_URL}/recherche"

CLIENT_APP = "MAX_JEUNE"
CLIENT_APP_VERSION = "2.45.1"
DISTRIBUTION_CHANNEL = "OUI"
CUSTOMER_PRODUCT_TYPES = ["TGV_MAX_JEUNE", "FIDEL", "IDTGV_MAX"]
MAX_CARD_PRODUCT_TYPE = "TGV_MAX_JEUNE"

# Anonymous session lifecycle (in seconds)
SESSION_TIMEOUT = 15 * 60  # idle time before the session is re-initialized
MAX_BLOCK_RETRIES = 2  # re-init + retry attempts after a block signal
ROTATE_AFTER_BLOCKS = 1  # switch proxy once this many consecutive blocks are seen

# Response cache TTL tiers (in seconds)
CACHE_TTL_TODAY = 2 * 60
CACHE_TTL_TOMORROW = 5 * 60
CACHE_TTL_WEEK = 15 * 60
CACHE_TTL_DEFAULT = 60 * 60
CACHE_SWEEP_INTERVAL = 10 * 60

# Authenticated sessions
AUTH_MAX_IDLE_AGE = timedelta(hours=24)
AUTH_SWEEP_INTERVAL = 60 * 60
MAX_CODE_ATTEMPTS = 3  # one-time-code submissions before the challenge is abandoned
BOOKINGS_LOOKBACK_DAYS = 90

# Auto-confirmation
AUTO_CONFIRM_CHECK_INTERVAL = 5 * 60
CONFIRM_WINDOW = timedelta(hours=48)
DEADLINE_PASSED = "deadline passed"
DEFAULT_TASK_FILE = Path("./data/auto_confirm_tasks.json")

# Month/range fetching
FETCH_MAX_CONCURRENT = 6
FETCH_BATCH_DELAY = 0.2  # seconds between batches

# Timeouts (in seconds)
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PAGE_TIMEOUT = 60.0

# Proxies
DEFAULT_PROXY_COOLDOWN_MINUTES = 40
