import pytest

from obtrader.config import MARKETS
from obtrader.errors import InsufficientMargin, InvalidStopDistance
from obtrader.sizing import PositionSizer, floor_to_increment, round_price

BTC = MARKETS["BTCUSDT"]


def test_size_risks_fixed_share_of_balance():
    result = PositionSizer(BTC).size(10000.0, 1.0, 2, 61000.0, 60000.0)
    assert result.risk_amount == pytest.approx(100.0)
    assert result.size == pytest.approx(0.1)
    assert result.too_small is False
    assert result.required_margin == pytest.approx(0.1 * 61000 / 2)


def test_size_is_independent_of_leverage():
    sizer = PositionSizer(BTC)
    low = sizer.size(10000.0, 1.0, 2, 61000.0, 60000.0)
    high = sizer.size(10000.0, 1.0, 10, 61000.0, 60000.0)
    assert low.size == high.size


def test_loss_at_stop_stays_within_one_increment_of_budget():
    result = PositionSizer(BTC).size(12345.0, 1.3, 3, 43210.0, 42777.7)
    loss = result.size * result.risk_distance
    assert loss <= result.risk_amount + 1e-9
    assert result.risk_amount - loss < BTC.size_increment * result.risk_distance


def test_equal_stop_and_entry_is_rejected():
    with pytest.raises(InvalidStopDistance):
        PositionSizer(BTC).size(10000.0, 1.0, 2, 60000.0, 60000.0)


def test_below_minimum_size_is_flagged_not_raised():
    result = PositionSizer(BTC).size(50.0, 1.0, 2, 61000.0, 60000.0)
    assert result.too_small is True


def test_margin_above_available_balance_raises():
    # tight stop forces a large size: 100 / 10 = 10 BTC, margin 305000
    with pytest.raises(InsufficientMargin):
        PositionSizer(BTC).size(10000.0, 1.0, 2, 61000.0, 60990.0)


def test_addition_risk_scales_down_strictly():
    sizer = PositionSizer(BTC)
    risks = [sizer.risk_amount(10000.0, 1.0, n, 0.5) for n in range(4)]
    assert risks == [100.0, 50.0, 25.0, 12.5]
    assert all(a > b for a, b in zip(risks, risks[1:]))


def test_floor_to_increment_absorbs_float_noise():
    assert floor_to_increment(0.1 / 0.0001 * 0.0001, 0.0001) == 0.1
    assert floor_to_increment(0.12349, 0.001) == 0.123


def test_prices_round_to_market_precision():
    assert round_price(61876.04, MARKETS["BTCUSDT"].price_precision) == 61876.0
    assert round_price(3012.345, MARKETS["ETHUSDT"].price_precision) == pytest.approx(3012.35, abs=0.01)
