"""Single source of truth for shared constants and configuration defaults.

Every magic number, threshold, or default that appears in more than one module
is defined here.  Layout fractions that only the compositor uses stay in
``compositor.py``.
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Query limits
# ---------------------------------------------------------------------------

QUERY_LIMIT_SMALL = 200         # default for paginated list endpoints
QUERY_LIMIT_LARGE = 10_000      # prior-registration scans

# ---------------------------------------------------------------------------
# Registration ids
# ---------------------------------------------------------------------------

REGISTRATION_PREFIX = "NV25"
REGISTRATION_SEQUENCE = "registration_seq"
REGISTRATION_PAD = 5
FALLBACK_SUFFIX_CHARS = 4

# ---------------------------------------------------------------------------
# Queue processing
# ---------------------------------------------------------------------------

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 2.0
BACKOFF_MULTIPLIER = 2.0
JOB_RETENTION = 50
WORKER_POLL_INTERVAL = 2.0
WORKER_CONCURRENCY = 2
JOB_LEASE_SECONDS = 300.0      # running jobs untouched this long are reclaimed

# ---------------------------------------------------------------------------
# AI enhancement
# ---------------------------------------------------------------------------

AI_TIMEOUT_SECONDS = 15.0
AI_MODEL_CHECK_TIMEOUT_SECONDS = 5.0
AI_BREAKER_FAILURES = 3
AI_BREAKER_RECOVERY_SECONDS = 60.0
DEFAULT_AI_MODELS = ("gemini-2.5-flash-image", "gemini-2.0-flash-exp")

# ---------------------------------------------------------------------------
# Storage and signed URLs
# ---------------------------------------------------------------------------

PHOTO_BUCKET = "photos"
CREDENTIAL_BUCKET = "credentials"
SIGNED_URL_TTL_SECONDS = 24 * 60 * 60
DEFAULT_PUBLIC_BASE_URL = "http://localhost:9876"
DEFAULT_TEMPLATE_PATH = "assets/base_template.png"

# ---------------------------------------------------------------------------
# Status polling
# ---------------------------------------------------------------------------

POLL_INTERVAL_SECONDS = 5.0
POLL_MAX_ATTEMPTS = 12
