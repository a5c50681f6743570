"""
Unit tests for the withdrawal sequence projector, summary and pipeline.
"""
import json
import pytest
from datetime import date
from household import AssetBuckets, HouseholdProfile
from io_utils import create_withdrawal_sequence_download_json
from optimization import OptimizationVariables
from simulation import SimulationSummary, calculate_yearly_percentiles
from tax_utils import calculate_rmd
from withdrawal_sequence import (
    WithdrawalSequenceProjector, allocate_withdrawals, calculate_monte_carlo_withdrawal_sequence,
    calculate_summary_stats, percentile_index_for_age, projection_start, select_percentile_band,
    transform_monte_carlo_results,
)

YEAR = 2025


def _bands(make_result, paths):
    return calculate_yearly_percentiles(make_result(paths).iterations)


class TestHorizon:
    """Test projection start and band indexing"""

    def test_earliest_retirement_start(self):
        """Test start at the first household member to retire"""
        start = projection_start(YEAR, current_age=60, spouse_current_age=58,
                                 retirement_age=65, spouse_retirement_age=62)
        # Spouse retires in 4 years, primary in 5
        assert (start.year, start.age, start.spouse_age) == (2029, 64, 62)

    def test_already_retired_starts_now(self):
        """Test a retired household starts in the current year"""
        start = projection_start(YEAR, current_age=70, spouse_current_age=None,
                                 retirement_age=65, spouse_retirement_age=65)
        assert (start.year, start.age, start.spouse_age) == (YEAR, 70, None)

    def test_current_age_start(self):
        """Test current-age mode ignores retirement ages"""
        start = projection_start(YEAR, current_age=60, spouse_current_age=58,
                                 retirement_age=65, spouse_retirement_age=65,
                                 start_from_current_age=True)
        assert (start.year, start.age, start.spouse_age) == (YEAR, 60, 58)

    def test_index_is_years_since_current_age(self):
        """Test the band index ignores the chosen start"""
        assert percentile_index_for_age(60, current_age=60) == 0
        assert percentile_index_for_age(65, current_age=60) == 5

    def test_band_lookup_both_modes(self, sample_profile, make_result):
        """Test each projection year reads the band for years since current age"""
        bands = _bands(make_result, [[1_000_000 + 1_000 * y for y in range(40)]])

        from_retirement = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()
        from_today = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR,
                                                 start_from_current_age=True).run_projection()

        assert from_retirement[0].age == 65
        assert from_retirement[0].total_balance == 1_005_000
        assert from_today[0].age == 60
        assert from_today[0].total_balance == 1_000_000
        # Same age, same band, whichever mode
        assert from_today[5].total_balance == from_retirement[0].total_balance
        assert from_today[5].year == from_retirement[0].year == 2030

    def test_band_fallbacks(self, make_result):
        """Test last band past the end, zero band with none at all"""
        bands = _bands(make_result, [[100, 200, 300]])
        assert select_percentile_band(bands, age=90, current_age=60).p50 == 300
        assert select_percentile_band([], age=60, current_age=60).p50 == 0

    def test_terminal_age(self, sample_profile, make_result):
        """Test projections run through age 93 inclusive"""
        bands = _bands(make_result, [[1_000_000] * 40])
        projections = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()

        assert len(projections) == 93 - 65 + 1
        assert projections[-1].age == 93
        assert projections[-1].spouse_age == 91

    def test_empty_horizon(self, make_result):
        """Test a household past the terminal age gets no projections"""
        profile = HouseholdProfile(date_of_birth=date(1925, 1, 1))
        projector = WithdrawalSequenceProjector(profile, [], current_year=YEAR, start_from_current_age=True)
        assert projector.run_projection() == []


class TestProjectedYear:
    """Test one year of the cash-flow ledger"""

    def test_first_retirement_year(self, sample_profile, make_result):
        """Test incomes, withdrawals and tax in the first projected year"""
        bands = _bands(make_result, [[1_000_000] * 40])
        year = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()[0]

        assert (year.year, year.age, year.spouse_age) == (2030, 65, 63)
        assert year.working_income == 0
        assert year.spouse_working_income == 60_000
        assert year.social_security == 0 and year.spouse_social_security == 0
        assert year.pension == 12_000
        assert year.total_income == 72_000
        assert year.monthly_expenses == 9_000

        # Starting mix is 30/50/15/5
        assert year.taxable_balance == 300_000
        assert year.tax_deferred_balance == 500_000
        assert year.tax_free_balance == 150_000
        assert year.hsa_balance == 50_000

        # Need of 36,000: HSA covers 15% of 108,000, taxable the rest
        assert year.hsa_withdrawal == pytest.approx(16_200)
        assert year.taxable_withdrawal == pytest.approx(19_800)
        assert year.tax_deferred_withdrawal == 0
        assert year.tax_free_withdrawal == 0
        assert year.rmd_amount is None
        assert year.withdrawal_tax == pytest.approx(19_800 * 0.15 * 0.20)
        assert year.net_income == pytest.approx(72_000 + 36_000 - 19_800 * 0.15 * 0.20)

    def test_rmd_year(self, sample_profile, make_result):
        """Test the RMD floors the tax-deferred draw at 73"""
        bands = _bands(make_result, [[1_000_000] * 40])
        projections = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()
        year = next(p for p in projections if p.age == 73)

        assert year.social_security == 30_000
        assert year.spouse_social_security == 18_000
        assert year.rmd_amount == pytest.approx(500_000 / 26.5)
        assert year.tax_deferred_withdrawal == pytest.approx(500_000 / 26.5)
        assert year.taxable_withdrawal == pytest.approx(31_800)

    def test_working_years_before_retirement(self, sample_profile, make_result):
        """Test wages and no withdrawals while both are working"""
        bands = _bands(make_result, [[1_000_000] * 40])
        year = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR,
                                           start_from_current_age=True).run_projection()[0]

        assert year.working_income == 120_000
        assert year.spouse_working_income == 60_000
        assert year.pension == 0
        assert year.total_withdrawals == 0
        assert year.withdrawal_tax == 0

    def test_earnings_test_in_ledger(self, make_result):
        """Test an early claimant's benefit is reduced by part-time earnings"""
        profile = HouseholdProfile(
            date_of_birth=date(1961, 1, 1),
            desired_retirement_age=62,
            social_security_benefit=3_000,
            social_security_claim_age=62,
            part_time_income_retirement=5_000,
        )
        bands = _bands(make_result, [[1_000_000] * 40])
        year = WithdrawalSequenceProjector(profile, bands, current_year=2023).run_projection()[0]

        assert year.age == 62
        assert year.part_time_income == 60_000
        assert year.social_security == pytest.approx(36_000 - (60_000 - 23_400) / 2)

    def test_single_household(self, single_profile, make_result):
        """Test a household without a spouse"""
        bands = _bands(make_result, [[1_000_000] * 40])
        projections = WithdrawalSequenceProjector(single_profile, bands, current_year=YEAR).run_projection()
        year = projections[0]

        assert year.age == 73
        assert year.spouse_age is None
        assert year.spouse_social_security == 0
        assert year.spouse_working_income == 0
        assert year.tax_deferred_balance == 1_000_000
        # RMD exceeds the 36,000 need
        assert year.tax_deferred_withdrawal == pytest.approx(1_000_000 / 26.5)
        assert len(projections) == 93 - 73 + 1

    def test_no_assets_uses_default_mix(self, make_result):
        """Test default 25/50/20/5 split without any assets"""
        profile = HouseholdProfile(date_of_birth=date(1960, 1, 1))
        bands = _bands(make_result, [[1_000_000] * 40])
        year = WithdrawalSequenceProjector(profile, bands, current_year=YEAR).run_projection()[0]

        assert year.taxable_balance == 250_000
        assert year.tax_deferred_balance == 500_000
        assert year.tax_free_balance == 200_000
        assert year.hsa_balance == 50_000
        assert year.monthly_expenses == 8_000

    def test_balances_rounded(self, make_result):
        """Test bucket balances are whole dollars"""
        profile = HouseholdProfile(date_of_birth=date(1960, 1, 1))
        bands = _bands(make_result, [[1_001] * 40])
        year = WithdrawalSequenceProjector(profile, bands, current_year=YEAR).run_projection()[0]

        # 250.25, 500.5, 200.2, 50.05
        assert year.taxable_balance == 250
        assert year.tax_deferred_balance == 501
        assert year.tax_free_balance == 200
        assert year.hsa_balance == 50

    def test_success_from_band(self, sample_profile, make_result):
        """Test success and failure flag come from the band"""
        paths = [[100] * 40, [-1] * 40, [-1] * 40]
        bands = _bands(make_result, paths)
        year = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()[0]

        assert year.success_probability == pytest.approx(100 / 3)
        assert year.failure_year is True
        assert year.market_regime is None

    def test_success_fields_are_builtin_types(self, sample_profile, make_result):
        """Test band-derived fields are plain floats and bools"""
        bands = _bands(make_result, [[100] * 40, [-1] * 40, [-1] * 40])
        year = WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR).run_projection()[0]

        assert type(year.success_probability) is float
        assert type(year.failure_year) is bool
        assert type(year.total_balance) is float
        assert type(year.portfolio_balance.p95) is float

    def test_no_bands(self, sample_profile):
        """Test an empty simulation yields zero balances, not an error"""
        projections = WithdrawalSequenceProjector(sample_profile, [], current_year=YEAR).run_projection()

        assert len(projections) == 29
        assert all(p.total_balance == 0 and p.total_withdrawals == 0 for p in projections)
        assert all(p.failure_year for p in projections)


class TestWithdrawalProperties:
    """Test properties that hold for every projected year"""

    @pytest.fixture
    def projections(self, sample_profile, make_result):
        paths = [[max(0, 1_500_000 - 60_000 * y * (idx % 4)) for y in range(40)] for idx in range(20)]
        bands = _bands(make_result, paths)
        return WithdrawalSequenceProjector(sample_profile, bands, current_year=YEAR,
                                           start_from_current_age=True).run_projection()

    def test_withdrawals_sum_exactly(self, projections):
        """Test the four bucket draws sum to the total"""
        for p in projections:
            assert (p.hsa_withdrawal + p.taxable_withdrawal +
                    p.tax_deferred_withdrawal + p.tax_free_withdrawal) == p.total_withdrawals

    def test_rmd_floor(self, projections):
        """Test tax-deferred draw covers the RMD from 73 on"""
        for p in projections:
            if p.age >= 73 and p.tax_deferred_balance > 0:
                rmd = calculate_rmd(p.tax_deferred_balance, p.age)
                assert p.tax_deferred_withdrawal >= min(rmd, p.tax_deferred_balance)

    def test_draws_within_balances(self, projections):
        """Test no bucket is overdrawn"""
        for p in projections:
            assert p.hsa_withdrawal <= p.hsa_balance
            assert p.taxable_withdrawal <= p.taxable_balance
            assert p.tax_deferred_withdrawal <= p.tax_deferred_balance
            assert p.tax_free_withdrawal <= p.tax_free_balance

    def test_roth_last(self):
        """Test Roth covers what the other buckets cannot"""
        balances = AssetBuckets(taxable=10_000, tax_deferred=20_000, tax_free=100_000, hsa=0)
        allocation = allocate_withdrawals(50_000, 80_000, balances, age=60)

        assert allocation.taxable == 10_000
        assert allocation.tax_deferred == 20_000
        assert allocation.tax_free == 20_000
        assert allocation.total == 50_000

    def test_hsa_capped_by_healthcare_share(self):
        """Test HSA covers at most 15% of expenses"""
        balances = AssetBuckets(taxable=100_000, hsa=100_000)
        allocation = allocate_withdrawals(50_000, 100_000, balances, age=60)

        assert allocation.hsa == pytest.approx(15_000)
        assert allocation.taxable == pytest.approx(35_000)


class TestSummaryStatistics:
    """Test summary roll-up"""

    def test_passthrough(self, sample_profile, make_result):
        """Test success and ending balances come from the simulation summary"""
        result = make_result([[1_000_000] * 40], success_probability=0.42, summary=SimulationSummary(
            median_final_value=123, percentile10=4, percentile90=567, total_runs=1000, successful_runs=420))
        sequence = transform_monte_carlo_results(result, sample_profile, current_year=YEAR)
        summary = sequence.summary

        assert summary.probability_of_success == 0.42
        assert summary.median_ending_balance == 123
        assert summary.percentile10_ending_balance == 4
        assert summary.percentile90_ending_balance == 567
        assert summary.total_scenarios == 1000
        assert summary.successful_scenarios == 420
        assert summary.failed_scenarios == 580

    def test_total_runs_defaults_to_iterations(self, make_result):
        """Test missing total runs counts the iterations"""
        result = make_result([[1], [2], [3]], summary=SimulationSummary(successful_runs=2))
        summary = calculate_summary_stats(result, [])
        assert summary.total_scenarios == 3
        assert summary.failed_scenarios == 1

    def test_lifetime_tax_and_depletion(self, sample_profile, make_result):
        """Test lifetime tax sums the ledger and depletion finds the first empty year"""
        result = make_result([[1_000_000] * 10 + [0] * 30])
        sequence = transform_monte_carlo_results(result, sample_profile, current_year=YEAR,
                                                 start_from_current_age=True)
        summary = sequence.summary

        assert summary.total_lifetime_tax == pytest.approx(sum(p.withdrawal_tax for p in sequence.projections))
        assert summary.taxable_depletion_year == 2035
        assert summary.tax_deferred_depletion_year == 2035
        assert summary.average_years_until_depletion == 10

    def test_no_depletion(self, sample_profile, make_result):
        """Test depletion fields stay unset for a healthy plan"""
        sequence = transform_monte_carlo_results(make_result([[1_000_000] * 40]), sample_profile,
                                                 current_year=YEAR)
        assert sequence.summary.taxable_depletion_year is None
        assert sequence.summary.tax_deferred_depletion_year is None
        assert sequence.summary.average_years_until_depletion is None

    def test_average_depletion(self, make_result):
        """Test mean first-depleted index over depleted iterations only"""
        result = make_result([[100, 0, 0], [100, 100, -5], [100, 100, 100]])
        assert calculate_summary_stats(result, []).average_years_until_depletion == pytest.approx(1.5)


class TestPipeline:
    """Test the end-to-end pipeline with injected collaborators"""

    def test_runs_with_overrides(self, sample_profile, fake_runner):
        """Test overrides reach the deriver and shape the horizon"""
        derived = []

        def derive(profile):
            derived.append(profile)
            return {'retirement_age': profile.desired_retirement_age}

        result = calculate_monte_carlo_withdrawal_sequence(
            sample_profile, OptimizationVariables(retirement_age=62, spouse_retirement_age=64),
            derive_params=derive, run_simulation=fake_runner, current_year=YEAR,
        )

        assert derived[0].desired_retirement_age == 62
        assert fake_runner.calls == [({'retirement_age': 62}, 1000)]
        assert result.projections[0].age == 62
        assert result.summary.probability_of_success == 0.9
        assert sample_profile.desired_retirement_age == 65

    def test_accepts_raw_result(self, sample_profile):
        """Test a raw dictionary result is parsed"""
        def run(params, iterations):
            return {
                'successProbability': 0.75,
                'results': [{'yearlyData': [{'portfolioValue': 800_000}] * 40}],
                'summary': {'medianFinalValue': 800_000, 'percentile10': 700_000,
                            'percentile90': 900_000, 'totalRuns': 1, 'successfulRuns': 1},
            }

        result = calculate_monte_carlo_withdrawal_sequence(
            sample_profile, derive_params=lambda p: None, run_simulation=run,
            iterations=10, current_year=YEAR, start_from_current_age=True,
        )

        assert len(result.projections) == 93 - 60 + 1
        assert result.projections[0].total_balance == 800_000
        assert result.summary.probability_of_success == 0.75
        assert result.summary.failed_scenarios == 0

    def test_change_sink(self, sample_profile, fake_runner):
        """Test override changes are reported to the caller"""
        changes = []
        calculate_monte_carlo_withdrawal_sequence(
            sample_profile, OptimizationVariables(monthly_expenses=7_000),
            derive_params=lambda p: None, run_simulation=fake_runner,
            current_year=YEAR, on_change=changes.append,
        )
        assert changes == ["monthly_expenses: 9000 -> 7000"]

    def test_collaborator_errors_propagate(self, sample_profile):
        """Test simulation errors are not swallowed"""
        def run(params, iterations):
            raise RuntimeError("simulation failed")

        with pytest.raises(RuntimeError, match="simulation failed"):
            calculate_monte_carlo_withdrawal_sequence(
                sample_profile, derive_params=lambda p: None, run_simulation=run)

    def test_output_is_json_serializable(self, sample_profile, fake_runner):
        """Test the full pipeline result survives the JSON download"""
        result = calculate_monte_carlo_withdrawal_sequence(
            sample_profile, derive_params=lambda p: None, run_simulation=fake_runner,
            current_year=YEAR, start_from_current_age=True,
        )
        parsed = json.loads(create_withdrawal_sequence_download_json(result))

        assert len(parsed['projections']) == 93 - 60 + 1
        first = parsed['projections'][0]
        assert first['failureYear'] is False
        assert first['successProbability'] == 100
        assert parsed['monteCarloSummary']['probabilityOfSuccess'] == 0.9
