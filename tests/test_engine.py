import math

import pytest

from core import (
    BucketTriple,
    Rule,
    SimulationParameters,
    TrialState,
    advance_month,
    initial_buckets,
    run_trial,
)

ZERO_VOL = {
    1: {"volatility": 0.0},
    2: {"volatility": 0.0},
    3: {"volatility": 0.0},
}


class _ConstantSampler:
    """Returns the same standard-normal draw every time."""

    def __init__(self, z=0.0):
        self.z = z

    def sample(self):
        return self.z


def _make_params(**overrides):
    defaults = dict(
        total_funds=30_000_000,
        monthly_expense=10_000,
        years=30,
        inflation_rate=7.0,
    )
    defaults.update(overrides)
    return SimulationParameters(**defaults)


def _state(b1, b2, b3, expense=10_000):
    return TrialState(buckets=BucketTriple(b1, b2, b3), monthly_expense=expense)


def _rules(record):
    return [e.rule for e in record.events]


def test_withdrawal_cascade_bankruptcy():
    record = advance_month(_state(5_000, 0, 0), 1, _make_params(), _ConstantSampler())

    assert record.is_failed
    assert record.withdrawal_b1 == 5_000
    assert record.withdrawal_b2 == 0
    assert record.withdrawal_b3 == 0
    assert record.total_funds == 0
    assert _rules(record) == [
        Rule.B1_LOW,
        Rule.B2_LOW,
        Rule.B1_EMPTY,
        Rule.B2_EMPTY,
        Rule.BANKRUPTCY,
    ]


def test_withdrawal_spills_into_b2():
    state = _state(4_000, 3_000, 10_000_000)
    record = advance_month(state, 1, _make_params(bucket_overrides=ZERO_VOL), _ConstantSampler())

    assert not record.is_failed
    # b1 got all of b2 (3_000), b2 then pulled a year of expense from b3
    assert record.pull_to_b1 == pytest.approx(3_000)
    assert record.pull_to_b2 == pytest.approx(120_000)
    assert record.withdrawal_b1 == pytest.approx(7_000)
    assert record.withdrawal_b2 == pytest.approx(3_000)
    assert record.withdrawal_b3 == 0
    assert Rule.B1_EMPTY in _rules(record)
    assert Rule.B2_EMPTY not in _rules(record)


def test_replenishment_pulls_one_year_not_three():
    state = _state(0, 100_000_000, 100_000_000)
    record = advance_month(state, 1, _make_params(bucket_overrides=ZERO_VOL), _ConstantSampler())

    # Below 3 years of expense triggers the pull; the pull itself is 12 months
    assert record.pull_to_b1 == 120_000
    assert record.pull_to_b2 == 0
    assert record.withdrawal_b1 == 10_000
    assert [e.rule for e in record.events] == [Rule.B1_LOW]


def test_replenishment_pull_is_capped_by_source():
    state = _state(100, 50_000, 1_000_000)
    record = advance_month(state, 1, _make_params(bucket_overrides=ZERO_VOL), _ConstantSampler())

    assert record.pull_to_b1 == pytest.approx(50_000)
    assert record.pull_to_b2 == pytest.approx(120_000)
    assert record.skim_to_b1 == pytest.approx(50_000)
    assert record.skim_to_b2 == pytest.approx(120_000)
    assert record.withdrawal_b1 == pytest.approx(10_000)


def test_no_pull_when_buckets_are_full():
    state = _state(10_000_000, 10_000_000, 10_000_000)
    record = advance_month(state, 1, _make_params(bucket_overrides=ZERO_VOL), _ConstantSampler())

    assert record.pull_to_b1 == 0
    assert record.pull_to_b2 == 0
    assert record.events == ()


def test_zero_volatility_return_is_the_mean():
    params = _make_params(bucket_overrides=ZERO_VOL)
    state = _state(10_000_000, 10_000_000, 10_000_000)
    record = advance_month(state, 1, params, _ConstantSampler(z=1.5))

    b1_start = 10_000_000 - 10_000
    assert record.return_b1 == pytest.approx(b1_start * 0.055 / 12)
    assert record.return_b2 == pytest.approx(10_000_000 * 0.09 / 12)
    assert record.return_b3 == pytest.approx(10_000_000 * 0.13 / 12)
    assert record.bucket1 == pytest.approx(b1_start * (1 + 0.055 / 12))
    assert record.push_to_b1 == 0
    assert record.push_to_b2 == 0
    assert record.skim_discarded_b1 == 0


def test_one_sigma_return_is_not_skimmed():
    state = _state(10_000_000, 10_000_000, 10_000_000)
    record = advance_month(state, 1, _make_params(), _ConstantSampler(z=1.0))

    assert record.push_to_b2 == 0
    assert record.push_to_b1 == 0
    assert record.skim_discarded_b1 == 0
    assert record.return_b3 > 0


def test_two_sigma_return_is_skimmed_downward():
    params = _make_params()
    state = _state(10_000_000, 10_000_000, 10_000_000)
    record = advance_month(state, 1, params, _ConstantSampler(z=2.0))

    vol1 = 0.01 / math.sqrt(12)
    vol2 = 0.05 / math.sqrt(12)
    vol3 = 0.14 / math.sqrt(12)

    assert record.push_to_b2 == pytest.approx(10_000_000 * vol3)
    b2_start = 10_000_000 + record.push_to_b2
    assert record.push_to_b1 == pytest.approx(b2_start * vol2)
    b1_start = 10_000_000 - 10_000 + record.push_to_b1
    assert record.skim_discarded_b1 == pytest.approx(b1_start * vol1)

    expected_b3 = 10_000_000 * (1 + 0.13 / 12 + 2 * vol3) - record.push_to_b2
    assert record.bucket3 == pytest.approx(expected_b3)
    assert record.total_funds == pytest.approx(
        record.bucket1 + record.bucket2 + record.bucket3
    )


def test_retained_b1_skim_stays_in_b1():
    params = _make_params(retain_b1_skim=True)
    state = _state(10_000_000, 10_000_000, 10_000_000)
    record = advance_month(state, 1, params, _ConstantSampler(z=2.0))

    vol1 = 0.01 / math.sqrt(12)
    b1_start = 10_000_000 - 10_000 + record.push_to_b1
    assert record.skim_discarded_b1 == 0
    assert record.bucket1 == pytest.approx(b1_start * (1 + 0.055 / 12 + 2 * vol1))


def test_year_end_tax_is_deducted():
    params = _make_params(tax_enabled=True, bucket_overrides=ZERO_VOL)
    state = _state(10_000_000, 10_000_000, 10_000_000)
    state.year_withdrawals = [900_000.0, 0.0, 0.0]

    record = advance_month(state, 12, params, _ConstantSampler())

    # 9.1L of ordinary income: 20k + 21k, plus cess
    assert record.tax_paid == pytest.approx(42_640.0)
    assert Rule.TAX in _rules(record)
    b1_after = 10_000_000 - 10_000 - 42_640
    assert record.bucket1 == pytest.approx(b1_after * (1 + 0.055 / 12))
    assert state.year_withdrawals == [0.0, 0.0, 0.0]


def test_tax_not_charged_mid_year():
    params = _make_params(tax_enabled=True)
    state = _state(10_000_000, 10_000_000, 10_000_000)
    state.year_withdrawals = [900_000.0, 0.0, 0.0]

    record = advance_month(state, 6, params, _ConstantSampler())

    assert record.tax_paid == 0
    assert state.year_withdrawals[0] == pytest.approx(910_000.0)


def test_tax_bankruptcy():
    params = _make_params(tax_enabled=True)
    state = _state(20_000, 0, 0)
    state.year_withdrawals = [2_000_000.0, 0.0, 0.0]

    record = advance_month(state, 12, params, _ConstantSampler())

    assert record.is_failed
    assert state.failed
    assert record.tax_paid > 10_000
    assert record.total_funds == 0
    assert _rules(record)[-1] is Rule.BANKRUPTCY_TAX


def test_annual_rebalancing_restores_allocation():
    params = _make_params(
        annual_rebalancing=True,
        bucket_allocations=(0.5, 0.3, 0.2),
        bucket_overrides=ZERO_VOL,
    )
    state = _state(10_000_000, 10_000_000, 10_000_000)

    record = advance_month(state, 12, params, _ConstantSampler())

    total = 30_000_000 - 10_000
    assert Rule.REBALANCED in _rules(record)
    assert record.bucket1 == pytest.approx(total * 0.5 * (1 + 0.055 / 12))
    assert record.bucket2 == pytest.approx(total * 0.3 * (1 + 0.09 / 12))
    assert record.bucket3 == pytest.approx(total * 0.2 * (1 + 0.13 / 12))


def test_no_rebalancing_before_year_end():
    params = _make_params(annual_rebalancing=True, bucket_overrides=ZERO_VOL)
    record = advance_month(_state(10_000_000, 10_000_000, 10_000_000), 11, params, _ConstantSampler())
    assert Rule.REBALANCED not in _rules(record)


def test_dynamic_reset_at_year_end():
    params = _make_params(strategy_type="dynamic-aggressive", bucket_overrides=ZERO_VOL)
    state = _state(10_000_000, 10_000_000, 10_000_000)

    record = advance_month(state, 12, params, _ConstantSampler())

    assert Rule.DYNAMIC_RESET in _rules(record)
    assert record.bucket1 == pytest.approx(480_000 * (1 + 0.055 / 12))
    assert record.bucket2 == pytest.approx(720_000 * (1 + 0.09 / 12))


@pytest.mark.parametrize(
    "total, expected",
    [
        (3_000_000, (480_000, 720_000, 1_800_000)),
        (1_000_000, (480_000, 520_000, 0)),
        (400_000, (400_000, 0, 0)),
    ],
)
def test_dynamic_initial_split(total, expected):
    params = _make_params(total_funds=total, strategy_type="dynamic-aggressive")
    buckets = initial_buckets(params)
    assert (buckets.b1, buckets.b2, buckets.b3) == pytest.approx(expected)


def test_initial_split_uses_normalized_allocation():
    params = _make_params(total_funds=1_000_000, bucket_allocations=(2, 1, 1))
    buckets = initial_buckets(params)
    assert (buckets.b1, buckets.b2, buckets.b3) == pytest.approx((500_000, 250_000, 250_000))


def test_near_zero_total_halts_trial():
    state = _state(10_000.005, 0, 0)
    record = advance_month(state, 1, _make_params(bucket_overrides=ZERO_VOL), _ConstantSampler())

    assert record.is_failed
    assert state.failed
    assert _rules(record)[-1] is Rule.BANKRUPTCY_ZERO_FUNDS


def test_expense_inflates_each_year():
    params = _make_params(years=2, bucket_overrides=ZERO_VOL)
    result = run_trial(params, _ConstantSampler())

    assert result.is_success
    assert result.months_lasted == 24
    assert result.history[11].expense == pytest.approx(10_000)
    assert result.history[12].expense == pytest.approx(10_700)
    assert result.final_amount == result.history[-1].total_funds


def test_failed_trial_stops_early():
    params = _make_params(total_funds=600_000, bucket_overrides=ZERO_VOL)
    result = run_trial(params, _ConstantSampler(), trial_index=3)

    assert not result.is_success
    assert result.trial_index == 3
    assert result.final_amount == 0
    assert result.months_lasted < params.months
    assert result.history[-1].is_failed
    assert not any(r.is_failed for r in result.history[:-1])
