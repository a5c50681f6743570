"""
Tax and distribution utility functions
Required Minimum Distributions and the simplified withdrawal tax estimate.
"""
from typing import Optional

from config_utils import DEFAULT_EFFECTIVE_TAX_RATE, RMD_START_AGE, TAXABLE_GAINS_SHARE


# IRS Uniform Lifetime Table distribution periods (2022 revision)
UNIFORM_LIFETIME_TABLE = {
    72: 27.4, 73: 26.5, 74: 25.5, 75: 24.6, 76: 23.7, 77: 22.9,
    78: 22.0, 79: 21.1, 80: 20.2, 81: 19.4, 82: 18.5, 83: 17.7,
    84: 16.8, 85: 16.0, 86: 15.2, 87: 14.4, 88: 13.7, 89: 12.9,
    90: 12.2, 91: 11.5, 92: 10.8, 93: 10.1, 94: 9.5, 95: 8.9,
    96: 8.4, 97: 7.8, 98: 7.3, 99: 6.8, 100: 6.4,
}

_MAX_TABLE_AGE = max(UNIFORM_LIFETIME_TABLE)
_DEFAULT_DIVISOR = UNIFORM_LIFETIME_TABLE[min(UNIFORM_LIFETIME_TABLE)]


def get_rmd_divisor(age: int) -> float:
    """Distribution period for an age; ages past 100 reuse the age-100 divisor"""
    if age > _MAX_TABLE_AGE:
        return UNIFORM_LIFETIME_TABLE[_MAX_TABLE_AGE]
    return UNIFORM_LIFETIME_TABLE.get(age, _DEFAULT_DIVISOR)


def calculate_rmd(tax_deferred_balance: float, age: int,
                  start_age: int = RMD_START_AGE) -> float:
    """
    Required Minimum Distribution for the year.

    Args:
        tax_deferred_balance: Tax-deferred account balance
        age: Account owner's age this year
        start_age: First age at which distributions are required

    Returns:
        RMD amount, zero before ``start_age`` or with no balance
    """
    if age < start_age or tax_deferred_balance <= 0:
        return 0.0
    return tax_deferred_balance / get_rmd_divisor(age)


def estimate_withdrawal_tax(tax_deferred_withdrawal: float,
                            taxable_withdrawal: float,
                            effective_tax_rate: Optional[float] = None,
                            taxable_gains_share: float = TAXABLE_GAINS_SHARE) -> float:
    """
    Approximate tax due on the year's withdrawals.

    Tax-deferred withdrawals are fully taxable; only the gains share of a
    taxable-account withdrawal is (the rest is cost basis). Roth and HSA
    withdrawals are tax free.
    """
    rate = DEFAULT_EFFECTIVE_TAX_RATE if effective_tax_rate is None else effective_tax_rate
    taxable_income = tax_deferred_withdrawal + taxable_withdrawal * taxable_gains_share
    return taxable_income * rate
