"""
Year-by-year withdrawal sequence built from Monte Carlo percentile bands.

For every projection year the household's income (wages, Social Security,
pensions, part-time work) is netted against retirement spending and the
shortfall is drawn from four tax-treatment buckets in a fixed order:
HSA (healthcare share), taxable, tax-deferred (floored at the RMD), then Roth.

Bucket balances are a presentation approximation: each year the median
portfolio balance is re-split by the household's starting asset mix. Buckets
are not compounded or depleted independently.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, List, Optional, Sequence

from config_utils import DEFAULT_ITERATIONS, ProjectionAssumptions, get_default_assumptions
from household import (
    AssetBuckets, HouseholdProfile, aggregate_assets_by_type, age_in_year,
    birth_year_of, calculate_bucket_proportions,
)
from optimization import OptimizationVariables, apply_optimization_variables
from simulation import (
    MonteCarloResult, ParameterDeriver, SimulationRunner, YearlyPercentileBand,
    calculate_depletion_years, calculate_yearly_percentiles, empty_percentile_band,
    monte_carlo_result_from_dict,
)
from social_security import annual_social_security_benefit, full_retirement_age
from tax_utils import calculate_rmd, estimate_withdrawal_tax

logger = logging.getLogger(__name__)


@dataclass
class PortfolioBalance:
    """Percentile portfolio balances for a projection year"""
    p5: float = 0.0
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p95: float = 0.0
    p10: Optional[float] = None
    p90: Optional[float] = None


@dataclass
class WithdrawalSequenceYear:
    """Projected cash flow and withdrawals for one calendar year"""
    year: int
    age: int
    spouse_age: Optional[int] = None
    monthly_expenses: float = 0.0

    # Working income (pre-retirement)
    working_income: float = 0.0
    spouse_working_income: float = 0.0

    # Income sources
    social_security: float = 0.0
    spouse_social_security: float = 0.0
    pension: float = 0.0
    spouse_pension: float = 0.0
    part_time_income: float = 0.0
    spouse_part_time_income: float = 0.0

    portfolio_balance: PortfolioBalance = field(default_factory=PortfolioBalance)

    # Withdrawals by bucket
    taxable_withdrawal: float = 0.0
    tax_deferred_withdrawal: float = 0.0
    tax_free_withdrawal: float = 0.0
    hsa_withdrawal: float = 0.0

    # Approximate bucket balances
    taxable_balance: float = 0.0
    tax_deferred_balance: float = 0.0
    tax_free_balance: float = 0.0
    hsa_balance: float = 0.0

    total_income: float = 0.0
    total_withdrawals: float = 0.0
    total_balance: float = 0.0
    withdrawal_tax: float = 0.0
    net_income: float = 0.0
    rmd_amount: Optional[float] = None

    # Statistical solvency from the percentile band, not from this ledger
    success_probability: float = 0.0
    failure_year: bool = False
    market_regime: Optional[str] = None
    portfolio_return: Optional[float] = None


@dataclass
class SummaryStatistics:
    """Headline totals for a withdrawal sequence run"""
    probability_of_success: float = 0.0  # 0-1 decimal, from the simulation core
    median_ending_balance: float = 0.0
    percentile10_ending_balance: float = 0.0
    percentile90_ending_balance: float = 0.0
    total_scenarios: int = 0
    successful_scenarios: int = 0
    failed_scenarios: int = 0
    average_years_until_depletion: Optional[float] = None
    taxable_depletion_year: Optional[int] = None
    tax_deferred_depletion_year: Optional[int] = None
    total_lifetime_tax: float = 0.0


@dataclass
class WithdrawalSequenceResult:
    """Ledger, summary and the bands they were built from"""
    projections: List[WithdrawalSequenceYear]
    summary: SummaryStatistics
    percentile_bands: List[YearlyPercentileBand] = field(default_factory=list)


@dataclass
class ProjectionStart:
    """First projected year and the household's ages in it"""
    year: int
    age: int
    spouse_age: Optional[int] = None


@dataclass
class WithdrawalAllocation:
    """One year's withdrawals by bucket"""
    hsa: float = 0.0
    taxable: float = 0.0
    tax_deferred: float = 0.0
    tax_free: float = 0.0
    rmd_amount: float = 0.0

    @property
    def total(self) -> float:
        return self.hsa + self.taxable + self.tax_deferred + self.tax_free


def projection_start(current_year: int,
                     current_age: int,
                     spouse_current_age: Optional[int],
                     retirement_age: int,
                     spouse_retirement_age: int,
                     start_from_current_age: bool = False) -> ProjectionStart:
    """
    Choose where the projection begins.

    Either the current year, or the year the first household member retires
    (never earlier than the current year).
    """
    if start_from_current_age:
        return ProjectionStart(year=current_year, age=current_age, spouse_age=spouse_current_age)

    years_until_retirement = max(0, retirement_age - current_age)
    if spouse_current_age is not None:
        years_until_retirement = min(years_until_retirement,
                                     max(0, spouse_retirement_age - spouse_current_age))

    return ProjectionStart(
        year=current_year + years_until_retirement,
        age=current_age + years_until_retirement,
        spouse_age=spouse_current_age + years_until_retirement if spouse_current_age is not None else None,
    )


def percentile_index_for_age(age: int, current_age: int) -> int:
    """
    Band index for a projection age.

    Bands start at the household's current age, so the index is always years
    since the current age, whichever year the projection itself starts in.
    """
    return age - current_age


def select_percentile_band(bands: Sequence[YearlyPercentileBand],
                           age: int, current_age: int) -> YearlyPercentileBand:
    """Band for an age; past the last band the last one is reused"""
    if not bands:
        return empty_percentile_band()

    index = percentile_index_for_age(age, current_age)
    if 0 <= index < len(bands):
        return bands[index]
    return bands[-1]


def allocate_withdrawals(withdrawal_need: float,
                         annual_expenses: float,
                         balances: AssetBuckets,
                         age: int,
                         assumptions: Optional[ProjectionAssumptions] = None) -> WithdrawalAllocation:
    """
    Draw the year's shortfall from the buckets in priority order.

    1. HSA covers up to the healthcare share of expenses.
    2. Taxable accounts.
    3. Tax-deferred accounts, never less than the RMD once it applies.
    4. Roth (tax-free) accounts last.

    Args:
        withdrawal_need: Expenses not covered by income
        annual_expenses: Total annual expenses (sizes the healthcare share)
        balances: Bucket balances available this year
        age: Primary's age (drives the RMD)
        assumptions: Planning assumptions

    Returns:
        WithdrawalAllocation by bucket
    """
    assumptions = assumptions or get_default_assumptions()
    allocation = WithdrawalAllocation()
    remaining_need = max(0.0, withdrawal_need)

    # 1. HSA for healthcare expenses
    healthcare_expenses = annual_expenses * assumptions.healthcare_expense_share
    if balances.hsa > 0 and healthcare_expenses > 0:
        allocation.hsa = min(healthcare_expenses, balances.hsa, remaining_need)
        remaining_need -= allocation.hsa

    # 2. Taxable accounts
    if remaining_need > 0 and balances.taxable > 0:
        allocation.taxable = min(remaining_need, balances.taxable)
        remaining_need -= allocation.taxable

    # 3. Tax-deferred accounts, floored at the RMD
    allocation.rmd_amount = calculate_rmd(balances.tax_deferred, age,
                                          start_age=assumptions.rmd_start_age)
    if remaining_need > 0 or allocation.rmd_amount > 0:
        draw = max(min(remaining_need, balances.tax_deferred), allocation.rmd_amount)
        allocation.tax_deferred = max(0.0, min(draw, balances.tax_deferred))
        remaining_need = max(0.0, remaining_need - allocation.tax_deferred)

    # 4. Tax-free accounts last
    if remaining_need > 0 and balances.tax_free > 0:
        allocation.tax_free = min(remaining_need, balances.tax_free)

    return allocation


def _round_half_up(value: float) -> float:
    return float(math.floor(value + 0.5))


def _value_or(value: Any, default: Any) -> Any:
    return default if value is None else value


class WithdrawalSequenceProjector:
    """Builds the per-year withdrawal ledger for a household"""

    def __init__(self,
                 profile: HouseholdProfile,
                 percentile_bands: Sequence[YearlyPercentileBand],
                 assumptions: Optional[ProjectionAssumptions] = None,
                 current_year: Optional[int] = None,
                 start_from_current_age: bool = False):
        self.profile = profile
        self.percentile_bands = list(percentile_bands)
        self.assumptions = assumptions or get_default_assumptions()
        self.current_year = current_year if current_year is not None else date.today().year

        a = self.assumptions
        self.birth_year = birth_year_of(profile.date_of_birth, self.current_year, a.default_current_age)
        self.current_age = age_in_year(self.birth_year, self.current_year)

        if profile.has_spouse:
            self.spouse_birth_year = profile.spouse_date_of_birth.year
            self.spouse_current_age = age_in_year(self.spouse_birth_year, self.current_year)
            self.spouse_fra = full_retirement_age(self.spouse_birth_year)
        else:
            self.spouse_birth_year = None
            self.spouse_current_age = None
            self.spouse_fra = a.default_spouse_fra

        self.retirement_age = _value_or(profile.desired_retirement_age, a.default_retirement_age)
        self.spouse_retirement_age = _value_or(profile.spouse_desired_retirement_age, a.default_retirement_age)
        self.claim_age = _value_or(profile.social_security_claim_age, a.default_claim_age)
        self.spouse_claim_age = _value_or(profile.spouse_social_security_claim_age, a.default_claim_age)
        self.fra = full_retirement_age(self.birth_year)

        self.monthly_expenses = _value_or(profile.expected_monthly_expenses_retirement,
                                          a.default_monthly_expenses)
        self.effective_tax_rate = _value_or(profile.effective_tax_rate, a.default_effective_tax_rate)

        # Starting asset mix, fixed for the whole run
        self.bucket_proportions = calculate_bucket_proportions(
            aggregate_assets_by_type(profile), a.default_bucket_proportions)

        self.start = projection_start(
            current_year=self.current_year,
            current_age=self.current_age,
            spouse_current_age=self.spouse_current_age,
            retirement_age=self.retirement_age,
            spouse_retirement_age=self.spouse_retirement_age,
            start_from_current_age=start_from_current_age,
        )

    @property
    def total_years(self) -> int:
        """Number of projection years through the standardized terminal age"""
        return max(0, self.assumptions.target_longevity_age - self.start.age + 1)

    def _is_retired(self, age: int) -> bool:
        return age >= self.retirement_age

    def _is_spouse_retired(self, spouse_age: Optional[int]) -> bool:
        # A household without a spouse counts as "retired" on the spouse side
        if spouse_age is None:
            return True
        return spouse_age >= self.spouse_retirement_age

    def _get_working_income(self, age: int, spouse_age: Optional[int]) -> tuple:
        """Annual wages while still working (held flat)"""
        working = 0.0 if self._is_retired(age) else (self.profile.annual_income or 0.0)
        spouse_working = 0.0
        if not self._is_spouse_retired(spouse_age):
            spouse_working = self.profile.spouse_annual_income or 0.0
        return working, spouse_working

    def _get_part_time_income(self, age: int, spouse_age: Optional[int]) -> tuple:
        """Annualized part-time income once retired"""
        part_time = 0.0
        if self._is_retired(age):
            part_time = (self.profile.part_time_income_retirement or 0.0) * 12
        spouse_part_time = 0.0
        if spouse_age is not None and self._is_spouse_retired(spouse_age):
            spouse_part_time = (self.profile.spouse_part_time_income_retirement or 0.0) * 12
        return part_time, spouse_part_time

    def _get_social_security_income(self, age: int, spouse_age: Optional[int],
                                    earnings: float, spouse_earnings: float) -> tuple:
        """Annual benefits after each person's own earnings test"""
        a = self.assumptions
        social_security = annual_social_security_benefit(
            self.profile.social_security_benefit, age, self.claim_age, self.fra, earnings,
            earnings_limit=a.ss_earnings_test_limit,
            reduction_ratio=a.ss_earnings_reduction_ratio,
        )
        spouse_social_security = annual_social_security_benefit(
            self.profile.spouse_social_security_benefit, spouse_age, self.spouse_claim_age,
            self.spouse_fra, spouse_earnings,
            earnings_limit=a.ss_earnings_test_limit,
            reduction_ratio=a.ss_earnings_reduction_ratio,
        )
        return social_security, spouse_social_security

    def _get_pension_income(self, age: int, spouse_age: Optional[int]) -> tuple:
        """Annualized pensions once retired"""
        pension = (self.profile.pension_benefit or 0.0) * 12 if self._is_retired(age) else 0.0
        spouse_pension = 0.0
        if self._is_spouse_retired(spouse_age):
            spouse_pension = (self.profile.spouse_pension_benefit or 0.0) * 12
        return pension, spouse_pension

    def _get_bucket_balances(self, median_balance: float) -> AssetBuckets:
        """Split the median balance by the starting asset mix"""
        p = self.bucket_proportions
        return AssetBuckets(
            taxable=_round_half_up(median_balance * p['taxable']),
            tax_deferred=_round_half_up(median_balance * p['tax_deferred']),
            tax_free=_round_half_up(median_balance * p['tax_free']),
            hsa=_round_half_up(median_balance * p['hsa']),
        )

    def project_year(self, idx: int) -> WithdrawalSequenceYear:
        """Compute the ledger entry ``idx`` years after the projection start"""
        a = self.assumptions
        age = self.start.age + idx
        spouse_age = self.start.spouse_age + idx if self.start.spouse_age is not None else None
        year = self.current_year + (age - self.current_age)
        band = select_percentile_band(self.percentile_bands, age, self.current_age)

        working_income, spouse_working_income = self._get_working_income(age, spouse_age)
        part_time_income, spouse_part_time_income = self._get_part_time_income(age, spouse_age)
        social_security, spouse_social_security = self._get_social_security_income(
            age, spouse_age,
            earnings=working_income + part_time_income,
            spouse_earnings=spouse_working_income + spouse_part_time_income,
        )
        pension, spouse_pension = self._get_pension_income(age, spouse_age)

        if idx == 0:
            logger.debug(
                "Social Security inputs: benefit=%s spouse_benefit=%s claim_age=%s "
                "spouse_claim_age=%s fra=%.3f spouse_fra=%.3f age=%s spouse_age=%s",
                self.profile.social_security_benefit, self.profile.spouse_social_security_benefit,
                self.claim_age, self.spouse_claim_age, self.fra, self.spouse_fra, age, spouse_age)

        total_income = (working_income + spouse_working_income + social_security +
                        spouse_social_security + pension + spouse_pension +
                        part_time_income + spouse_part_time_income)

        # Base amount; inflation is already reflected in the simulated balances
        annual_expenses = self.monthly_expenses * 12
        withdrawal_need = max(0.0, annual_expenses - total_income)

        median_balance = band.p50
        balances = self._get_bucket_balances(median_balance)
        allocation = allocate_withdrawals(withdrawal_need, annual_expenses, balances, age, a)
        total_withdrawals = allocation.total

        withdrawal_tax = estimate_withdrawal_tax(
            allocation.tax_deferred, allocation.taxable,
            effective_tax_rate=self.effective_tax_rate,
            taxable_gains_share=a.taxable_gains_share,
        )

        return WithdrawalSequenceYear(
            year=year,
            age=age,
            spouse_age=spouse_age,
            monthly_expenses=self.monthly_expenses,
            working_income=working_income,
            spouse_working_income=spouse_working_income,
            social_security=social_security,
            spouse_social_security=spouse_social_security,
            pension=pension,
            spouse_pension=spouse_pension,
            part_time_income=part_time_income,
            spouse_part_time_income=spouse_part_time_income,
            portfolio_balance=PortfolioBalance(
                p5=band.p5, p25=band.p25, p50=band.p50, p75=band.p75, p95=band.p95,
                p10=band.p10, p90=band.p90,
            ),
            taxable_withdrawal=allocation.taxable,
            tax_deferred_withdrawal=allocation.tax_deferred,
            tax_free_withdrawal=allocation.tax_free,
            hsa_withdrawal=allocation.hsa,
            taxable_balance=balances.taxable,
            tax_deferred_balance=balances.tax_deferred,
            tax_free_balance=balances.tax_free,
            hsa_balance=balances.hsa,
            total_income=total_income,
            total_withdrawals=total_withdrawals,
            total_balance=median_balance,
            withdrawal_tax=withdrawal_tax,
            net_income=total_income + total_withdrawals - withdrawal_tax,
            rmd_amount=allocation.rmd_amount if allocation.rmd_amount > 0 else None,
            success_probability=band.success_probability,
            failure_year=bool(band.success_probability < a.failure_year_threshold),
            market_regime=band.market_regime,
            portfolio_return=band.portfolio_return,
        )

    def run_projection(self) -> List[WithdrawalSequenceYear]:
        """Run the projection from the start age through the terminal age"""
        logger.debug("Projecting %d years from age %d (%d), current age %d",
                     self.total_years, self.start.age, self.start.year, self.current_age)
        return [self.project_year(idx) for idx in range(self.total_years)]


def calculate_summary_stats(monte_carlo_result: MonteCarloResult,
                            projections: Sequence[WithdrawalSequenceYear]) -> SummaryStatistics:
    """
    Roll the ledger and the simulation core's summary into headline figures.

    Overall success and ending-balance percentiles come straight from the
    simulation core; only depletion years and lifetime tax are derived from
    the ledger.
    """
    taxable_depletion_year = next((p.year for p in projections if p.taxable_balance <= 0), None)
    tax_deferred_depletion_year = next((p.year for p in projections if p.tax_deferred_balance <= 0), None)
    total_lifetime_tax = sum(p.withdrawal_tax for p in projections)

    summary = monte_carlo_result.summary
    total_scenarios = summary.total_runs
    if total_scenarios is None:
        total_scenarios = len(monte_carlo_result.iterations)

    average_years_until_depletion = None
    if monte_carlo_result.iterations:
        years_depleted = calculate_depletion_years(monte_carlo_result.iterations)
        depleted = years_depleted[years_depleted >= 0]
        if depleted.size:
            average_years_until_depletion = float(depleted.mean())

    return SummaryStatistics(
        probability_of_success=monte_carlo_result.success_probability,
        median_ending_balance=summary.median_final_value,
        percentile10_ending_balance=summary.percentile10,
        percentile90_ending_balance=summary.percentile90,
        total_scenarios=total_scenarios,
        successful_scenarios=summary.successful_runs,
        failed_scenarios=total_scenarios - summary.successful_runs,
        average_years_until_depletion=average_years_until_depletion,
        taxable_depletion_year=taxable_depletion_year,
        tax_deferred_depletion_year=tax_deferred_depletion_year,
        total_lifetime_tax=total_lifetime_tax,
    )


def transform_monte_carlo_results(monte_carlo_result: MonteCarloResult,
                                  profile: HouseholdProfile,
                                  start_from_current_age: bool = False,
                                  current_year: Optional[int] = None,
                                  assumptions: Optional[ProjectionAssumptions] = None) -> WithdrawalSequenceResult:
    """Turn a completed simulation into the withdrawal ledger and summary"""
    bands = calculate_yearly_percentiles(monte_carlo_result.iterations)
    projector = WithdrawalSequenceProjector(
        profile, bands,
        assumptions=assumptions,
        current_year=current_year,
        start_from_current_age=start_from_current_age,
    )
    projections = projector.run_projection()
    summary = calculate_summary_stats(monte_carlo_result, projections)
    return WithdrawalSequenceResult(projections=projections, summary=summary, percentile_bands=bands)


def calculate_monte_carlo_withdrawal_sequence(
        profile: HouseholdProfile,
        optimization_variables: Optional[OptimizationVariables] = None,
        *,
        derive_params: ParameterDeriver,
        run_simulation: SimulationRunner,
        iterations: int = DEFAULT_ITERATIONS,
        start_from_current_age: bool = False,
        current_year: Optional[int] = None,
        assumptions: Optional[ProjectionAssumptions] = None,
        on_change: Optional[Callable[[str], None]] = None) -> WithdrawalSequenceResult:
    """
    Run the full pipeline for one household and one override set.

    Overrides are merged first, the merged profile is converted to simulation
    parameters by ``derive_params`` and simulated by ``run_simulation``.
    Errors raised by either collaborator propagate to the caller.

    Args:
        profile: Baseline household profile
        optimization_variables: Optional what-if overrides
        derive_params: Profile -> simulation parameters
        run_simulation: (parameters, iterations) -> MonteCarloResult or raw dict
        iterations: Number of trajectories to simulate
        start_from_current_age: Project from today instead of from first retirement
        current_year: Calendar year treated as "now" (defaults to today)
        assumptions: Planning assumptions
        on_change: Optional sink for override change descriptions

    Returns:
        WithdrawalSequenceResult
    """
    profile_to_use = apply_optimization_variables(profile, optimization_variables, on_change=on_change)

    params = derive_params(profile_to_use)
    logger.debug("Derived simulation parameters: %r", params)

    raw_result = run_simulation(params, iterations)
    if isinstance(raw_result, MonteCarloResult):
        monte_carlo_result = raw_result
    else:
        monte_carlo_result = monte_carlo_result_from_dict(raw_result)

    result = transform_monte_carlo_results(
        monte_carlo_result, profile_to_use,
        start_from_current_age=start_from_current_age,
        current_year=current_year,
        assumptions=assumptions,
    )

    logger.info("Withdrawal sequence: %d iterations, %d projection years, success %.1f%%",
                len(monte_carlo_result.iterations), len(result.projections),
                monte_carlo_result.success_probability * 100)
    return result
