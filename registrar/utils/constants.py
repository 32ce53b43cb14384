"""
Constants shared by the registration and payment services.
"""

# Season registrations
SEASON_LABELS = ("Spring", "Summer", "Fall", "Winter")
MIN_REGISTRATION_YEAR = 2020
MAX_YEARS_AHEAD = 2  # registrations may open up to two years ahead

# Tournament registrations
LEVELS_OF_COMPETITION = ("Gold", "Silver")
DEFAULT_LEVEL_OF_COMPETITION = "Gold"

# Money (all amounts are integer minor units, e.g. cents)
SUPPORTED_CURRENCIES = ("USD", "CAD")
DEFAULT_CURRENCY = "USD"

# Guardian roles supplied by the auth middleware
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_COACH = "coach"
GUARDIAN_ROLES = (ROLE_USER, ROLE_ADMIN, ROLE_COACH)

# Refund sync pacing (the gateway rate-limits list calls)
DEFAULT_REFUND_SYNC_DELAY_SECONDS = 0.2
DEFAULT_REFUND_SYNC_INTERVAL_SECONDS = 3600
DEFAULT_ORPHAN_CHARGE_GRACE_SECONDS = 900
# Abandoned attempts are looked up again for this long in case the charge surfaces late
DEFAULT_ABANDONED_CHARGE_RECHECK_SECONDS = 86400
DATE_RANGE_FALLBACK_DAYS = 30
