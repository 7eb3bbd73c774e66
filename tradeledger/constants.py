"""
Engine-wide defaults.

Centralizes magic numbers used across modules. Every value here is a
default for a run parameter, not an ambient global: runs receive their
effective values through RunParameters.
"""
from decimal import Decimal

# Reconciliation Comparator
RECONCILE_TOLERANCE_PCT = Decimal("1")
RECONCILE_EPSILON = Decimal("0.00000001")

# Income Matcher
MATCH_WINDOW_MINUTES = 5

# Balance Discrepancy Detector
MIN_DISCREPANCY_ABS = Decimal("0.01")

# Resolution Workflow
AUTO_FIX_THRESHOLD = Decimal("10")

# Reporting
CURRENCY_PRECISION = 2
PRICE_PRECISION = 8
QUANTITY_PRECISION = 8

# A lifecycle whose realized P&L is within this band is a breakeven
BREAKEVEN_EPSILON = Decimal("0.001")

# Lifecycle validator
MIN_HOLD_MINUTES_WARNING = Decimal("1")
MAX_HOLD_MINUTES_WARNING = Decimal(30 * 24 * 60)
PNL_WARNING_PCT = Decimal("1")
PNL_ERROR_PCT = Decimal("10")

# Upstream feed
DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_PAGES = 200

# Persistence
RUN_LOCK_TTL_SECONDS = 900
IDEMPOTENCY_KEY_RETENTION_DAYS = 90
