"""
Household profile model used as read-only input to the withdrawal sequence engine.
Includes asset classification into the four tax-treatment buckets.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from config_utils import DEFAULT_BUCKET_PROPORTIONS, DEFAULT_CURRENT_AGE


@dataclass
class RetirementContributions:
    """Monthly employer-plan contributions (401k/403b)"""
    employee: float = 0.0
    employer: float = 0.0


@dataclass
class AssetHolding:
    """A single account or holding from the household balance sheet"""
    type: str = ""
    value: Optional[float] = None
    owner: Optional[str] = None
    description: Optional[str] = None


@dataclass
class HouseholdProfile:
    """Snapshot of a household's financial facts.

    Monthly figures (benefits, pensions, part-time income, expenses) are stored
    monthly and annualized by the projector. ``None`` means the value was never
    provided; the engine substitutes its documented fallback in that case.
    """
    # Household members
    date_of_birth: Optional[date] = None
    spouse_date_of_birth: Optional[date] = None
    marital_status: Optional[str] = None

    # Working income (annual)
    annual_income: Optional[float] = None
    spouse_annual_income: Optional[float] = None

    # Retirement timing
    desired_retirement_age: Optional[int] = None
    spouse_desired_retirement_age: Optional[int] = None
    user_life_expectancy: Optional[int] = None
    spouse_life_expectancy: Optional[int] = None

    # Social Security (monthly benefit, claim age)
    social_security_benefit: Optional[float] = None
    spouse_social_security_benefit: Optional[float] = None
    social_security_claim_age: Optional[int] = None
    spouse_social_security_claim_age: Optional[int] = None

    # Pensions and part-time work in retirement (monthly)
    pension_benefit: Optional[float] = None
    spouse_pension_benefit: Optional[float] = None
    part_time_income_retirement: Optional[float] = None
    spouse_part_time_income_retirement: Optional[float] = None

    # Spending and tax assumptions
    expected_monthly_expenses_retirement: Optional[float] = None
    effective_tax_rate: Optional[float] = None

    # Return assumptions; negative values are reserved allocation sentinels
    expected_real_return: Optional[float] = None
    spouse_expected_real_return: Optional[float] = None

    # Savings
    retirement_contributions: Optional[RetirementContributions] = None
    spouse_retirement_contributions: Optional[RetirementContributions] = None
    traditional_ira_contribution: Optional[float] = None
    roth_ira_contribution: Optional[float] = None
    spouse_traditional_ira_contribution: Optional[float] = None
    spouse_roth_ira_contribution: Optional[float] = None

    # Insurance
    has_long_term_care_insurance: Optional[bool] = None

    assets: List[AssetHolding] = field(default_factory=list)

    @property
    def has_spouse(self) -> bool:
        return self.spouse_date_of_birth is not None


@dataclass
class AssetBuckets:
    """Dollar totals per tax-treatment bucket"""
    taxable: float = 0.0
    tax_deferred: float = 0.0
    tax_free: float = 0.0
    hsa: float = 0.0

    @property
    def total(self) -> float:
        return self.taxable + self.tax_deferred + self.tax_free + self.hsa


_TAX_DEFERRED_MARKERS = ('401k', '403b', 'ira', 'sep', 'simple', '457', 'annuity')


def classify_asset_type(asset_type: Optional[str]) -> str:
    """
    Map a free-form account type to its tax-treatment bucket.

    HSA is checked first, then Roth, then traditional retirement plans.
    Brokerage, cash equivalents and anything unrecognized are taxable.

    Args:
        asset_type: Account type label, e.g. "Roth IRA" or "brokerage"

    Returns:
        One of 'taxable', 'tax_deferred', 'tax_free', 'hsa'
    """
    kind = (asset_type or '').lower()

    if 'hsa' in kind:
        return 'hsa'
    if 'roth' in kind:
        return 'tax_free'
    if any(marker in kind for marker in _TAX_DEFERRED_MARKERS):
        return 'tax_deferred'
    return 'taxable'


def aggregate_assets_by_type(profile: HouseholdProfile) -> AssetBuckets:
    """Sum the profile's assets into the four tax-treatment buckets"""
    buckets = AssetBuckets()

    for asset in profile.assets or []:
        value = asset.value or 0.0
        bucket = classify_asset_type(asset.type)
        setattr(buckets, bucket, getattr(buckets, bucket) + value)

    return buckets


def calculate_bucket_proportions(buckets: AssetBuckets,
                                 defaults: Optional[Dict[str, float]] = None) -> Dict[str, float]:
    """
    Fraction of the starting portfolio held in each bucket.

    Falls back to ``defaults`` when the household reports no assets at all.
    """
    total = buckets.total
    if total > 0:
        return {
            'taxable': buckets.taxable / total,
            'tax_deferred': buckets.tax_deferred / total,
            'tax_free': buckets.tax_free / total,
            'hsa': buckets.hsa / total,
        }
    return dict(defaults or DEFAULT_BUCKET_PROPORTIONS)


def birth_year_of(date_of_birth: Optional[date], current_year: int,
                  default_age: int = DEFAULT_CURRENT_AGE) -> int:
    """Birth year from a date of birth, assuming ``default_age`` when unknown"""
    if date_of_birth is None:
        return current_year - default_age
    return date_of_birth.year


def age_in_year(birth_year: int, year: int) -> int:
    """Calendar-year age (no birthday adjustment)"""
    return year - birth_year
