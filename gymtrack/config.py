import os

# Database
DB_FILE = os.environ.get("GYM_DB_FILE", "gymtrack/data/gym_data.db")

# Expiration sweeper
SWEEP_INTERVAL_HOURS = int(os.environ.get("GYM_SWEEP_INTERVAL_HOURS", "1"))

# What to do when a member buys a plan while holding an active/paused one:
# "supersede" cancels the older subscription, "reject" refuses the purchase.
ACTIVE_SUBSCRIPTION_POLICY = os.environ.get("GYM_ACTIVE_SUBSCRIPTION_POLICY", "supersede")

# Purchase retries after a member version conflict
PURCHASE_MAX_RETRIES = int(os.environ.get("GYM_PURCHASE_MAX_RETRIES", "3"))

LOG_LEVEL = os.environ.get("GYM_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

API_HOST = os.environ.get("GYM_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("GYM_API_PORT", "5000"))

# bcrypt work factor for identity passwords
BCRYPT_ROUNDS = int(os.environ.get("GYM_BCRYPT_ROUNDS", "12"))
