"""
Monte Carlo result model and percentile band aggregation.

The simulation core itself (return sampling, regimes, glide paths) lives
outside this package; these types describe what it hands back, and the
aggregation turns its trajectories into per-year percentile bands.
"""
import logging
import math
import numpy as np
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from household import HouseholdProfile

logger = logging.getLogger(__name__)


PERCENTILES = (5, 10, 25, 50, 75, 90, 95)


@dataclass
class YearlyData:
    """One simulated year of a trajectory. Only portfolio_value is required."""
    portfolio_value: float = 0.0
    year: Optional[int] = None
    age: Optional[int] = None
    spouse_age: Optional[int] = None
    contribution: Optional[float] = None
    withdrawal: Optional[float] = None
    guaranteed_income: Optional[float] = None
    expenses: Optional[float] = None
    taxes_paid: Optional[float] = None
    return_rate: Optional[float] = None


@dataclass
class SimulationIteration:
    """A single randomized trajectory; lengths may differ between iterations"""
    yearly_data: List[YearlyData] = field(default_factory=list)
    iteration: Optional[int] = None
    success: Optional[bool] = None
    final_portfolio_value: Optional[float] = None

    @property
    def portfolio_values(self) -> List[float]:
        return [year.portfolio_value for year in self.yearly_data]


@dataclass
class SimulationSummary:
    """Summary block computed by the simulation core"""
    median_final_value: float = 0.0
    percentile10: float = 0.0
    percentile90: float = 0.0
    total_runs: Optional[int] = None
    successful_runs: int = 0


@dataclass
class MonteCarloResult:
    """Results returned by the simulation core"""
    success_probability: float = 0.0  # 0-1 decimal
    iterations: List[SimulationIteration] = field(default_factory=list)
    summary: SimulationSummary = field(default_factory=SimulationSummary)


@dataclass
class YearlyPercentileBand:
    """Portfolio balance distribution for one projection-year index"""
    p5: float = 0.0
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p95: float = 0.0
    # Legacy aliases still read by older dashboards
    p10: float = 0.0
    p90: float = 0.0
    success_probability: float = 0.0  # 0-100
    sample_size: int = 0
    market_regime: Optional[str] = None
    portfolio_return: Optional[float] = None


# Collaborator signatures. The deriver maps a profile to whatever parameter
# object the simulation core accepts; the runner executes N iterations and may
# return either a MonteCarloResult or its raw dictionary form.
ParameterDeriver = Callable[[HouseholdProfile], Any]
SimulationRunner = Callable[[Any, int], Union[MonteCarloResult, Dict[str, Any]]]


def empty_percentile_band() -> YearlyPercentileBand:
    """Degenerate band for a year no iteration reaches"""
    return YearlyPercentileBand()


def calculate_percentile(values: Sequence[float], percentile: float) -> float:
    """
    Linearly interpolated percentile of a sample.

    The rank is (percentile / 100) * (n - 1); the two bracketing order
    statistics are blended by the fractional part. An empty sample yields 0.

    Args:
        values: Sample values (any order)
        percentile: Target percentile in [0, 100]

    Returns:
        Interpolated percentile value
    """
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=float), percentile))


def portfolio_value_of(value: Any) -> float:
    """Missing or non-finite balances count as an empty portfolio"""
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


def build_portfolio_matrix(iterations: Sequence[SimulationIteration]) -> np.ndarray:
    """
    Stack trajectories into an (iterations x years) matrix.

    Years past the end of a shorter trajectory are NaN so they drop out of
    every per-year statistic.
    """
    max_years = max((len(it.yearly_data) for it in iterations), default=0)
    matrix = np.full((len(iterations), max_years), np.nan)

    for row, iteration in enumerate(iterations):
        values = [portfolio_value_of(year.portfolio_value) for year in iteration.yearly_data]
        matrix[row, :len(values)] = values

    return matrix


def calculate_year_band(values: np.ndarray) -> YearlyPercentileBand:
    """Percentile band for the balances of every iteration reaching one year"""
    if values.size == 0:
        return empty_percentile_band()

    by_percentile = {p: calculate_percentile(values, p) for p in PERCENTILES}
    return YearlyPercentileBand(
        p5=by_percentile[5],
        p25=by_percentile[25],
        p50=by_percentile[50],
        p75=by_percentile[75],
        p95=by_percentile[95],
        p10=by_percentile[10],
        p90=by_percentile[90],
        success_probability=float(100.0 * np.count_nonzero(values > 0) / values.size),
        sample_size=int(values.size),
    )


def calculate_yearly_percentiles(iterations: Sequence[SimulationIteration]) -> List[YearlyPercentileBand]:
    """
    Calculate portfolio percentile bands for every projection-year index.

    Each year index is independent: it uses the balances of every iteration
    that reaches that year. Success is the share of those balances above zero,
    as a percentage.

    Args:
        iterations: All simulated trajectories

    Returns:
        One band per year index, up to the longest trajectory
    """
    if not iterations:
        logger.warning("No simulation iterations found in Monte Carlo result")
        return []

    matrix = build_portfolio_matrix(iterations)
    max_years = matrix.shape[1]
    if max_years == 0:
        logger.warning("No yearly data found in simulation iterations")
        return []

    bands = []
    for year_idx in range(max_years):
        column = matrix[:, year_idx]
        bands.append(calculate_year_band(column[~np.isnan(column)]))

    logger.debug("Calculated yearly percentiles for %d years from %d iterations",
                 max_years, len(iterations))
    logger.debug("Year 0 success: %.1f%%, final year success: %.1f%%",
                 bands[0].success_probability, bands[-1].success_probability)

    return bands


def calculate_depletion_years(iterations: Sequence[SimulationIteration]) -> np.ndarray:
    """First year index at which each trajectory's balance is <= 0 (-1 if never)"""
    matrix = build_portfolio_matrix(iterations)
    years_depleted = np.full(len(iterations), -1)

    for row in range(matrix.shape[0]):
        depleted = np.flatnonzero(matrix[row] <= 0)
        if depleted.size:
            years_depleted[row] = depleted[0]

    return years_depleted


# camelCase keys of a raw per-year record
_YEARLY_DATA_KEYS = {
    'year': 'year',
    'age': 'age',
    'spouseAge': 'spouse_age',
    'contribution': 'contribution',
    'withdrawal': 'withdrawal',
    'guaranteedIncome': 'guaranteed_income',
    'expenses': 'expenses',
    'taxesPaid': 'taxes_paid',
    'returnRate': 'return_rate',
}


def _yearly_data_from_dict(year_dict: Dict[str, Any]) -> YearlyData:
    values = {name: year_dict[key] for key, name in _YEARLY_DATA_KEYS.items() if key in year_dict}
    return YearlyData(portfolio_value=portfolio_value_of(year_dict.get('portfolioValue')), **values)


def monte_carlo_result_from_dict(result_dict: Dict[str, Any]) -> MonteCarloResult:
    """
    Parse raw simulation-core output.

    Trajectories are read from ``results`` (or ``iterations``). A portfolio
    value that is not numeric raises ``ValueError``/``TypeError``.

    Args:
        result_dict: Raw result with ``successProbability``, ``results`` and ``summary``

    Returns:
        MonteCarloResult object
    """
    raw_iterations = result_dict.get('results')
    if raw_iterations is None:
        raw_iterations = result_dict.get('iterations') or []

    iterations = []
    for idx, raw in enumerate(raw_iterations):
        iterations.append(SimulationIteration(
            yearly_data=[_yearly_data_from_dict(year) for year in raw.get('yearlyData') or []],
            iteration=raw.get('iteration', idx),
            success=raw.get('success'),
            final_portfolio_value=raw.get('finalPortfolioValue'),
        ))

    raw_summary = result_dict.get('summary') or {}
    summary = SimulationSummary(
        median_final_value=float(raw_summary.get('medianFinalValue') or 0.0),
        percentile10=float(raw_summary.get('percentile10') or 0.0),
        percentile90=float(raw_summary.get('percentile90') or 0.0),
        total_runs=raw_summary.get('totalRuns'),
        successful_runs=int(raw_summary.get('successfulRuns') or 0),
    )

    return MonteCarloResult(
        success_probability=float(result_dict.get('successProbability') or 0.0),
        iterations=iterations,
        summary=summary,
    )
