import math

import pytest

from conftest import make_candles
from perpbot.services.strategies import Candle, Indicators

WILDER_CLOSES = [
    44.34, 44.09, 44.15, 43.61, 44.33, 44.83, 45.10, 45.42, 45.84, 46.08,
    45.89, 46.03, 45.61, 46.28, 46.28, 46.00, 46.03, 46.41, 46.22, 45.64,
]

# same worked example, led by 44 and run out to 30 closes
WORKED_EXAMPLE_30 = [
    44, 44.34, 44.09, 43.61, 44.33, 44.83, 45.10, 45.42, 45.84, 46.08,
    45.89, 46.03, 45.61, 46.28, 46.28, 46.00, 46.03, 46.41, 46.22, 45.64,
    46.21, 46.25, 45.71, 46.45, 45.78, 46.22, 46.13, 45.70, 46.04, 46.05,
]


class TestMovingAverages:
    def test_sma_window(self):
        out = Indicators.sma([1, 2, 3, 4, 5], 3)
        assert out == [None, None, 2.0, 3.0, 4.0]

    def test_sma_propagates_missing_values(self):
        out = Indicators.sma([1, None, 3, 4, 5], 2)
        assert out == [None, None, None, 3.5, 4.5]

    def test_ema_seed_is_sma(self):
        out = Indicators.ema([1, 2, 3, 4, 5, 6], 3)
        assert out[:2] == [None, None]
        assert out[2] == pytest.approx(2.0)
        # multiplier 2/(3+1) = 0.5
        assert out[3] == pytest.approx(3.0)
        assert out[5] == pytest.approx(5.0)

    def test_ema_short_input(self):
        assert Indicators.ema([1, 2], 5) == [None, None]


class TestRsi:
    def test_first_value_matches_reference(self):
        out = Indicators.rsi(WILDER_CLOSES, 14)
        assert all(v is None for v in out[:14])
        assert out[14] == pytest.approx(70.4641350211, abs=1e-6)

    def test_trailing_window_values(self):
        out = Indicators.rsi(WILDER_CLOSES, 14)
        assert out[17] == pytest.approx(80.5676855895, abs=1e-6)
        assert out[19] == pytest.approx(59.8062953995, abs=1e-6)

    def test_thirty_value_series_last_index(self):
        out = Indicators.rsi(WORKED_EXAMPLE_30, 14)
        assert len(out) == 30
        assert out[13] is None
        # gains 2.55 vs losses 2.50 over the last 14 changes
        assert out[-1] == pytest.approx(100 - 100 / (1 + 2.55 / 2.50), abs=1e-6)
        assert out[-1] == pytest.approx(50.4950495050, abs=1e-6)

    def test_no_losses_is_100(self):
        out = Indicators.rsi(list(range(1, 20)), 14)
        assert out[-1] == 100.0

    def test_insufficient_data(self):
        assert Indicators.rsi([1, 2, 3], 14) == [None, None, None]


class TestMacd:
    def test_constant_spread_on_linear_series(self):
        closes = [float(i + 1) for i in range(12)]
        result = Indicators.macd(closes, fast=3, slow=5, signal=2)
        assert result.macd[3] is None
        assert result.macd[4] == pytest.approx(1.0)
        # signal realigned to the first valid MACD value
        assert result.signal[4] is None
        assert result.signal[5] == pytest.approx(1.0)
        assert result.histogram[11] == pytest.approx(0.0)

    def test_lengths_match_input(self):
        result = Indicators.macd([100.0] * 40)
        assert len(result.macd) == len(result.signal) == len(result.histogram) == 40


class TestBollinger:
    def test_population_std(self):
        bands = Indicators.bollinger_bands([1, 2, 3, 4, 5], period=5, std_dev=2)
        assert bands.middle[4] == pytest.approx(3.0)
        assert bands.upper[4] == pytest.approx(3 + 2 * math.sqrt(2))
        assert bands.lower[4] == pytest.approx(3 - 2 * math.sqrt(2))
        assert bands.upper[3] is None


class TestAtr:
    def test_true_range_and_average(self):
        candles = [
            Candle(0, 9, 10, 8, 9),
            Candle(1, 9, 11, 9, 10),
            Candle(2, 10, 13, 10, 12),
        ]
        atr = Indicators.atr(candles, 2)
        assert atr[0] is None and atr[1] is None
        assert atr[2] == pytest.approx(2.5)

    def test_gap_uses_previous_close(self):
        candles = [Candle(0, 10, 10, 10, 10), Candle(1, 15, 16, 15, 15)]
        assert Indicators.true_range(candles)[1] == pytest.approx(6.0)

    def test_insufficient_candles_is_empty(self):
        assert Indicators.atr(make_candles([1.0] * 14), 14) == []


def test_last_helper():
    assert Indicators.last([1, 2, 3]) == 3
    assert Indicators.last([1, 2, 3], 2) == 1
    assert Indicators.last([1], 3) is None
