"""
Configuration Utilities for the withdrawal sequence engine
Named planning assumptions, their defaults, and JSON load/save helpers.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, field, fields
from typing import Dict, Any

logger = logging.getLogger(__name__)


# Standardized terminal age for every projection; profile life expectancy is not used
TARGET_LONGEVITY_AGE = 93

# Social Security earnings test (annual exempt amount, $1 withheld per $2 over)
SS_EARNINGS_TEST_LIMIT = 23_400
SS_EARNINGS_REDUCTION_RATIO = 0.5

RMD_START_AGE = 73

# Withdrawal ordering assumptions
HEALTHCARE_EXPENSE_SHARE = 0.15
TAXABLE_GAINS_SHARE = 0.15
DEFAULT_EFFECTIVE_TAX_RATE = 0.22

# Profile fallbacks
DEFAULT_MONTHLY_EXPENSES = 8_000
DEFAULT_RETIREMENT_AGE = 65
DEFAULT_CLAIM_AGE = 67
DEFAULT_SPOUSE_FRA = 67
DEFAULT_CURRENT_AGE = 35

DEFAULT_BUCKET_PROPORTIONS = {
    'taxable': 0.25,
    'tax_deferred': 0.50,
    'tax_free': 0.20,
    'hsa': 0.05,
}

DEFAULT_ITERATIONS = 1_000
FAILURE_YEAR_THRESHOLD = 50.0


@dataclass
class ProjectionAssumptions:
    """Planning assumptions consumed by the withdrawal sequence projector"""
    target_longevity_age: int = TARGET_LONGEVITY_AGE
    ss_earnings_test_limit: float = SS_EARNINGS_TEST_LIMIT
    ss_earnings_reduction_ratio: float = SS_EARNINGS_REDUCTION_RATIO
    rmd_start_age: int = RMD_START_AGE
    healthcare_expense_share: float = HEALTHCARE_EXPENSE_SHARE
    taxable_gains_share: float = TAXABLE_GAINS_SHARE
    default_effective_tax_rate: float = DEFAULT_EFFECTIVE_TAX_RATE
    default_monthly_expenses: float = DEFAULT_MONTHLY_EXPENSES
    default_retirement_age: int = DEFAULT_RETIREMENT_AGE
    default_claim_age: int = DEFAULT_CLAIM_AGE
    default_spouse_fra: float = DEFAULT_SPOUSE_FRA
    default_current_age: int = DEFAULT_CURRENT_AGE
    default_bucket_proportions: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_BUCKET_PROPORTIONS))
    failure_year_threshold: float = FAILURE_YEAR_THRESHOLD


def get_default_assumptions() -> ProjectionAssumptions:
    """Get a fresh copy of the default planning assumptions"""
    return ProjectionAssumptions()


def assumptions_from_dict(config: Dict[str, Any]) -> ProjectionAssumptions:
    """
    Build assumptions from a plain dictionary.

    Unknown keys are ignored so configuration files written by newer versions
    still load. Bucket proportions are merged over the defaults.

    Args:
        config: Dictionary of assumption values keyed by field name

    Returns:
        ProjectionAssumptions object
    """
    known = {f.name for f in fields(ProjectionAssumptions)}
    unknown = sorted(set(config) - known)
    if unknown:
        logger.debug("Ignoring unknown assumption keys: %s", unknown)

    values = {key: value for key, value in config.items() if key in known}
    if 'default_bucket_proportions' in values:
        proportions = dict(DEFAULT_BUCKET_PROPORTIONS)
        proportions.update(values['default_bucket_proportions'] or {})
        values['default_bucket_proportions'] = proportions

    return ProjectionAssumptions(**values)


def load_assumptions_json(filepath: str) -> ProjectionAssumptions:
    """Load assumptions from a JSON file, falling back to defaults"""
    if not os.path.exists(filepath):
        logger.debug("Assumptions file %s does not exist, using defaults", filepath)
        return get_default_assumptions()

    try:
        with open(filepath, 'r') as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not load assumptions from %s: %s", filepath, e)
        return get_default_assumptions()

    logger.debug("Loaded %d assumption keys from %s", len(config), filepath)
    return assumptions_from_dict(config)


def save_assumptions_json(assumptions: ProjectionAssumptions, filepath: str) -> None:
    """Save assumptions to a JSON file"""
    with open(filepath, 'w') as f:
        json.dump(asdict(assumptions), f, indent=2)
    logger.debug("Saved assumptions to %s", filepath)
