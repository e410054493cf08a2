"""Package-wide settings for :mod:`st_abundance`.

Values are plain module constants so notebooks can read them directly.  A
handful can be overridden through environment variables, which is handy
when the same notebook runs on a laptop and on a larger analysis machine.
"""

from __future__ import annotations

import os

# ─── TEMPORAL PARAMETERS ─────────────────────────────────────────────────
# The weekly products carry one layer per week of a 52-week reference year.
WEEKS_PER_YEAR = 52
REFERENCE_YEAR = int(os.environ.get("ST_ABUNDANCE_REFERENCE_YEAR", "2022"))

# Band order of the seasonal products.
SEASONS = (
    "breeding",
    "nonbreeding",
    "prebreeding_migration",
    "postbreeding_migration",
)

# ─── ANALYSIS PARAMETERS ─────────────────────────────────────────────────
DEFAULT_TOP_QUANTILE = 0.9


def _default_max_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


MAX_WORKERS = int(os.environ.get("ST_ABUNDANCE_MAX_WORKERS", _default_max_workers()))

# ─── LOGGING ─────────────────────────────────────────────────────────────
# Empty string disables the file handler.
LOG_FILE = os.environ.get("ST_ABUNDANCE_LOG_FILE", "st_abundance.log")
