"""Constants for the rotation module.

This module centralizes configuration values used across the rotation package.
"""

# Time constants (in seconds unless otherwise noted)
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_TOKEN_EXPIRY_SECONDS = 3600  # 1 hour
ONE_HOUR_MILLISECONDS = 60 * 60 * 1000
ONE_MINUTE_MILLISECONDS = 60 * 1000

# Refresh a credential before applying it when it expires within this window
REFRESH_BEFORE_EXPIRY_SECONDS = 60

# Hard bound on refresh-failure retries within one rotate() call
MAX_ROTATION_DEPTH = 5

# Hybrid strategy penalty for the current account on a forced rotation
FORCED_ROTATION_PENALTY = 20

# Minimum requests before the failure rate can trip the soft quota
SOFT_QUOTA_MIN_REQUESTS = 10

# Exponent cap for the backoff wait (initial * 2**4)
MAX_BACKOFF_EXPONENT = 4

# Length of the random suffix in generated account ids
ACCOUNT_ID_SUFFIX_LENGTH = 9
