"""
What-if overrides for a household profile.

The optimization search layer proposes sparse sets of variables (retirement
age, claim age, allocation strategy, contribution amounts, ...). Each variable
that is present replaces the matching profile field; absent variables leave
the baseline untouched. ``None`` is the only "absent" marker, so legitimate
zero values (a $0 contribution, a 0% return) are applied like any other value.
"""
import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Optional, Union

from household import HouseholdProfile, RetirementContributions

logger = logging.getLogger(__name__)


# Reserved return assumptions understood by the parameter deriver
CURRENT_ALLOCATION_RETURN = -2.0
GLIDE_PATH_RETURN = -1.0

CURRENT_ALLOCATION_LABEL = 'current-allocation'
GLIDE_PATH_LABEL = 'glide-path'


@dataclass(frozen=True)
class CurrentAllocation:
    """Keep the household's current portfolio allocation"""

    @property
    def label(self) -> str:
        return CURRENT_ALLOCATION_LABEL

    @property
    def return_assumption(self) -> float:
        return CURRENT_ALLOCATION_RETURN


@dataclass(frozen=True)
class GlidePath:
    """Use the age-based glide path"""

    @property
    def label(self) -> str:
        return GLIDE_PATH_LABEL

    @property
    def return_assumption(self) -> float:
        return GLIDE_PATH_RETURN


@dataclass(frozen=True)
class FixedReturn:
    """Explicit real return assumption as a decimal fraction (0.06 = 6%)"""
    rate: float

    @property
    def label(self) -> str:
        return f"{self.rate * 100:g}%"

    @property
    def return_assumption(self) -> float:
        return self.rate


AllocationStrategy = Union[CurrentAllocation, GlidePath, FixedReturn]


def parse_allocation_strategy(value: Any) -> Optional[AllocationStrategy]:
    """
    Interpret an allocation override.

    Accepts the two named strategies, a percentage string ("6", "6.5%"), a
    number of percent, or an already-parsed strategy. Returns None for absent,
    blank or unparsable input; such overrides are simply not applied.

    Args:
        value: Raw override value

    Returns:
        AllocationStrategy or None
    """
    if value is None:
        return None
    if isinstance(value, (CurrentAllocation, GlidePath, FixedReturn)):
        return value
    if isinstance(value, bool):
        logger.warning("Ignoring boolean allocation override: %r", value)
        return None
    if isinstance(value, (int, float)):
        return FixedReturn(float(value) / 100)

    text = str(value).strip()
    if text == CURRENT_ALLOCATION_LABEL:
        return CurrentAllocation()
    if text == GLIDE_PATH_LABEL:
        return GlidePath()
    if not text:
        return None

    try:
        percent = float(text.rstrip('%'))
    except ValueError:
        logger.warning("Ignoring unparsable allocation override: %r", value)
        return None
    return FixedReturn(percent / 100)


def allocation_strategy_from_return(expected_return: Optional[float]) -> Optional[AllocationStrategy]:
    """Decode a stored return assumption back into its strategy variant"""
    if expected_return is None:
        return None
    if expected_return == CURRENT_ALLOCATION_RETURN:
        return CurrentAllocation()
    if expected_return == GLIDE_PATH_RETURN:
        return GlidePath()
    return FixedReturn(expected_return)


@dataclass
class OptimizationVariables:
    """Sparse set of what-if overrides. ``None`` means "not specified"."""
    # Retirement and claiming ages
    retirement_age: Optional[int] = None
    spouse_retirement_age: Optional[int] = None
    social_security_age: Optional[int] = None
    spouse_social_security_age: Optional[int] = None

    # Allocation: named strategy, percentage string, or parsed strategy
    asset_allocation: Optional[Union[str, float, AllocationStrategy]] = None
    spouse_asset_allocation: Optional[Union[str, float, AllocationStrategy]] = None

    # Spending (monthly); monthly_retirement_spending is an alias that wins
    monthly_expenses: Optional[float] = None
    monthly_retirement_spending: Optional[float] = None

    # Part-time income in retirement (monthly)
    part_time_income: Optional[float] = None
    spouse_part_time_income: Optional[float] = None

    has_long_term_care_insurance: Optional[bool] = None

    # Employer plan contributions (monthly)
    monthly_employee_401k: Optional[float] = None
    monthly_employer_401k: Optional[float] = None
    spouse_monthly_employee_401k: Optional[float] = None
    spouse_monthly_employer_401k: Optional[float] = None

    # IRA contributions (annual)
    annual_traditional_ira: Optional[float] = None
    annual_roth_ira: Optional[float] = None
    spouse_annual_traditional_ira: Optional[float] = None
    spouse_annual_roth_ira: Optional[float] = None

    # Benefits (monthly)
    social_security_benefit: Optional[float] = None
    spouse_social_security_benefit: Optional[float] = None
    pension_benefit: Optional[float] = None
    spouse_pension_benefit: Optional[float] = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


# (variable, profile field) pairs that copy straight across
_DIRECT_OVERRIDES = (
    ('retirement_age', 'desired_retirement_age'),
    ('spouse_retirement_age', 'spouse_desired_retirement_age'),
    ('social_security_age', 'social_security_claim_age'),
    ('spouse_social_security_age', 'spouse_social_security_claim_age'),
    ('monthly_expenses', 'expected_monthly_expenses_retirement'),
    ('monthly_retirement_spending', 'expected_monthly_expenses_retirement'),
    ('part_time_income', 'part_time_income_retirement'),
    ('spouse_part_time_income', 'spouse_part_time_income_retirement'),
    ('has_long_term_care_insurance', 'has_long_term_care_insurance'),
    ('annual_traditional_ira', 'traditional_ira_contribution'),
    ('annual_roth_ira', 'roth_ira_contribution'),
    ('spouse_annual_traditional_ira', 'spouse_traditional_ira_contribution'),
    ('spouse_annual_roth_ira', 'spouse_roth_ira_contribution'),
    ('social_security_benefit', 'social_security_benefit'),
    ('spouse_social_security_benefit', 'spouse_social_security_benefit'),
    ('pension_benefit', 'pension_benefit'),
    ('spouse_pension_benefit', 'spouse_pension_benefit'),
)

_ALLOCATION_OVERRIDES = (
    ('asset_allocation', 'expected_real_return'),
    ('spouse_asset_allocation', 'spouse_expected_real_return'),
)

# (employee variable, employer variable, profile field)
_CONTRIBUTION_OVERRIDES = (
    ('monthly_employee_401k', 'monthly_employer_401k', 'retirement_contributions'),
    ('spouse_monthly_employee_401k', 'spouse_monthly_employer_401k', 'spouse_retirement_contributions'),
)


def _merge_contributions(current: Optional[RetirementContributions],
                         employee: Optional[float],
                         employer: Optional[float]) -> RetirementContributions:
    base = current or RetirementContributions()
    return RetirementContributions(
        employee=employee if employee is not None else base.employee,
        employer=employer if employer is not None else base.employer,
    )


def apply_optimization_variables(profile: HouseholdProfile,
                                 variables: Optional[OptimizationVariables] = None,
                                 on_change: Optional[Callable[[str], None]] = None) -> HouseholdProfile:
    """
    Apply what-if overrides to a baseline profile.

    The baseline is never mutated. Each change is reported as a
    ``"field: old -> new"`` string to ``on_change`` (and the debug log); the
    reports have no effect on the returned profile.

    Args:
        profile: Baseline household profile
        variables: Overrides to apply; None or an empty set returns the baseline
        on_change: Optional sink for change descriptions

    Returns:
        Profile with overrides applied
    """
    if variables is None or variables.is_empty():
        logger.debug("No optimization variables provided, using baseline profile")
        return profile

    updates = {}
    changes = []

    def current(profile_field: str) -> Any:
        return updates.get(profile_field, getattr(profile, profile_field))

    for variable, profile_field in _DIRECT_OVERRIDES:
        value = getattr(variables, variable)
        if value is None:
            continue
        old = current(profile_field)
        updates[profile_field] = value
        if value != old:
            changes.append(f"{variable}: {old} -> {value}")

    for variable, profile_field in _ALLOCATION_OVERRIDES:
        strategy = parse_allocation_strategy(getattr(variables, variable))
        if strategy is None:
            continue
        old = current(profile_field)
        updates[profile_field] = strategy.return_assumption
        changes.append(f"{variable}: {old} -> {strategy.label} ({strategy.return_assumption})")

    for employee_var, employer_var, profile_field in _CONTRIBUTION_OVERRIDES:
        employee = getattr(variables, employee_var)
        employer = getattr(variables, employer_var)
        if employee is None and employer is None:
            continue
        old = current(profile_field)
        merged = _merge_contributions(old, employee, employer)
        updates[profile_field] = merged
        changes.append(f"{profile_field}: {old} -> {merged}")

    optimized = replace(profile, assets=list(profile.assets), **updates)

    if changes:
        logger.debug("Optimization variables applied: %s", changes)
    else:
        logger.debug("All optimization variables match baseline profile values")

    if on_change is not None:
        for change in changes:
            on_change(change)

    return optimized
