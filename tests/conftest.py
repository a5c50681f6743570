"""
Shared fixtures for the withdrawal sequence tests.
"""
from datetime import date

import pytest

from household import AssetHolding, HouseholdProfile
from simulation import MonteCarloResult, SimulationIteration, SimulationSummary, YearlyData


def _iteration(values, idx=0):
    return SimulationIteration(
        yearly_data=[YearlyData(portfolio_value=v) for v in values],
        iteration=idx,
        success=bool(values) and values[-1] > 0,
        final_portfolio_value=values[-1] if values else None,
    )


@pytest.fixture
def make_result():
    """Factory: list of portfolio paths -> MonteCarloResult"""
    def _make(paths, success_probability=0.8, summary=None):
        iterations = [_iteration(list(path), idx) for idx, path in enumerate(paths)]
        if summary is None:
            summary = SimulationSummary(
                median_final_value=500_000,
                percentile10=50_000,
                percentile90=1_500_000,
                total_runs=len(iterations),
                successful_runs=sum(1 for it in iterations if it.success),
            )
        return MonteCarloResult(
            success_probability=success_probability,
            iterations=iterations,
            summary=summary,
        )
    return _make


@pytest.fixture
def sample_profile():
    """Married couple, primary age 60 and spouse age 58 in 2025"""
    return HouseholdProfile(
        date_of_birth=date(1965, 3, 15),
        spouse_date_of_birth=date(1967, 8, 1),
        marital_status='married',
        annual_income=120_000,
        spouse_annual_income=60_000,
        desired_retirement_age=65,
        spouse_desired_retirement_age=65,
        social_security_benefit=2_500,
        spouse_social_security_benefit=1_500,
        social_security_claim_age=67,
        spouse_social_security_claim_age=67,
        pension_benefit=1_000,
        spouse_pension_benefit=0,
        expected_monthly_expenses_retirement=9_000,
        effective_tax_rate=0.20,
        expected_real_return=0.05,
        assets=[
            AssetHolding(type='taxable-brokerage', value=300_000, owner='user'),
            AssetHolding(type='401k', value=500_000, owner='user'),
            AssetHolding(type='roth-ira', value=150_000, owner='spouse'),
            AssetHolding(type='hsa', value=50_000, owner='user'),
        ],
    )


@pytest.fixture
def single_profile():
    """Single retiree, age 73 in 2025, only tax-deferred savings"""
    return HouseholdProfile(
        date_of_birth=date(1952, 1, 1),
        desired_retirement_age=65,
        social_security_benefit=2_000,
        social_security_claim_age=67,
        expected_monthly_expenses_retirement=5_000,
        assets=[AssetHolding(type='Traditional IRA', value=1_000_000)],
    )


@pytest.fixture
def fake_runner(make_result):
    """Deterministic stand-in for the simulation core, records its calls"""
    calls = []

    def _run(params, iterations):
        calls.append((params, iterations))
        paths = [[1_000_000 - 10_000 * year * (idx + 1) for year in range(40)]
                 for idx in range(5)]
        return make_result(paths, success_probability=0.9)

    _run.calls = calls
    return _run
