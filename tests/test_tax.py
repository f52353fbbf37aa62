import pytest

from core import annual_tax, capital_gains_tax, progressive_tax


@pytest.mark.parametrize(
    "income, expected",
    [
        (0, 0.0),
        (250_000, 0.0),
        (300_000, 0.0),
        (500_000, 0.0),
        # Rebate covers everything up to 7L
        (700_000, 0.0),
        (700_001, 20_800.104),
        (700_100, 20_810.4),
        (800_000, 31_200.0),
        (900_000, 41_600.0),
        (1_000_000, 52_000.0),
        (1_200_000, 83_200.0),
        (1_500_000, 145_600.0),
        (2_000_000, 301_600.0),
    ],
)
def test_progressive_tax(income, expected):
    assert progressive_tax(income) == pytest.approx(expected)


def test_progressive_tax_negative_income():
    assert progressive_tax(-50_000) == 0.0


@pytest.mark.parametrize(
    "gain, exemption, expected",
    [
        (225_000, 125_000, 12_500.0),
        (100_000, 125_000, 0.0),
        (125_000, 125_000, 0.0),
        (300_000, 250_000, 6_250.0),
    ],
)
def test_capital_gains_tax(gain, exemption, expected):
    assert capital_gains_tax(gain, exemption) == pytest.approx(expected)


def test_annual_tax_single():
    slab_tax, gains_tax = annual_tax(1_600_000, 225_000)
    assert slab_tax == pytest.approx(176_800.0)
    assert gains_tax == pytest.approx(12_500.0)


def test_annual_tax_joint_splits_income_and_doubles_exemption():
    slab_tax, gains_tax = annual_tax(1_600_000, 300_000, is_joint=True)
    # Two assessees at 8L each
    assert slab_tax == pytest.approx(2 * 31_200.0)
    assert gains_tax == pytest.approx(6_250.0)


def test_annual_tax_joint_below_rebate_is_free():
    assert annual_tax(1_400_000, 0, is_joint=True) == (0.0, 0.0)
