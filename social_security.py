"""
Social Security benefit rules: full retirement age and the earnings test.
"""
from typing import Optional

from config_utils import SS_EARNINGS_TEST_LIMIT, SS_EARNINGS_REDUCTION_RATIO


def full_retirement_age(birth_year: int) -> float:
    """
    Full retirement age (in years) for a birth year.

    65 through 1937, +2 months per year for 1938-1942, 66 for 1943-1954,
    +2 months per year for 1955-1959, 67 from 1960 on.
    """
    if birth_year <= 1937:
        return 65.0
    if birth_year <= 1942:
        return 65.0 + 2 * (birth_year - 1937) / 12
    if birth_year <= 1954:
        return 66.0
    if birth_year <= 1959:
        return 66.0 + 2 * (birth_year - 1954) / 12
    return 67.0


def apply_earnings_test(annual_benefit: float,
                        age: float,
                        fra: float,
                        earnings: float,
                        earnings_limit: float = SS_EARNINGS_TEST_LIMIT,
                        reduction_ratio: float = SS_EARNINGS_REDUCTION_RATIO) -> float:
    """
    Reduce a benefit for earnings above the exempt amount before FRA.

    Args:
        annual_benefit: Unreduced annual benefit
        age: Claimant's age this year
        fra: Claimant's full retirement age
        earnings: Combined working and part-time earnings this year
        earnings_limit: Annual exempt amount
        reduction_ratio: Dollars withheld per dollar of excess earnings

    Returns:
        Annual benefit after the reduction, never negative
    """
    if annual_benefit <= 0 or age >= fra or earnings <= earnings_limit:
        return annual_benefit

    reduction = (earnings - earnings_limit) * reduction_ratio
    return max(0.0, annual_benefit - reduction)


def annual_social_security_benefit(monthly_benefit: Optional[float],
                                   age: Optional[int],
                                   claim_age: int,
                                   fra: float,
                                   earnings: float,
                                   earnings_limit: float = SS_EARNINGS_TEST_LIMIT,
                                   reduction_ratio: float = SS_EARNINGS_REDUCTION_RATIO) -> float:
    """Annual benefit for one person in one year, after the earnings test"""
    # Not eligible yet
    if age is None or age < claim_age:
        return 0.0

    base_benefit = (monthly_benefit or 0.0) * 12
    return apply_earnings_test(base_benefit, age, fra, earnings,
                               earnings_limit=earnings_limit,
                               reduction_ratio=reduction_ratio)
