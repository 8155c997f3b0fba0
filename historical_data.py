"""
historical_data.py -- 2005-2009 US housing reference series.

Quarterly median price / growth, fed funds rate and headline events, used by
the /api/historical-data endpoint so students can line their simulated
market up against what actually happened.
"""

from __future__ import annotations

# (year, quarter, median_price, price_growth_pct)
PRICE_SERIES: tuple[tuple[int, int, int, float], ...] = (
    (2005, 1, 220000, 8.5),
    (2005, 2, 235000, 12.1),
    (2005, 3, 248000, 14.8),
    (2005, 4, 262000, 16.2),
    (2006, 1, 275000, 17.1),
    (2006, 2, 285000, 15.8),
    (2006, 3, 292000, 12.4),
    (2006, 4, 295000, 8.9),
    (2007, 1, 294000, 4.2),
    (2007, 2, 289000, -1.2),
    (2007, 3, 278000, -6.8),
    (2007, 4, 262000, -12.4),
    (2008, 1, 245000, -18.2),
    (2008, 2, 225000, -22.8),
    (2008, 3, 208000, -25.6),
    (2008, 4, 195000, -26.2),
    (2009, 1, 185000, -24.5),
    (2009, 2, 178000, -20.9),
    (2009, 3, 175000, -15.9),
    (2009, 4, 176000, -9.7),
)

# (year, quarter, fed_funds_rate_pct)
FED_RATE_SERIES: tuple[tuple[int, int, float], ...] = (
    (2005, 1, 2.25),
    (2005, 2, 2.75),
    (2005, 3, 3.25),
    (2005, 4, 3.75),
    (2006, 1, 4.25),
    (2006, 2, 4.75),
    (2006, 3, 5.00),
    (2006, 4, 5.25),
    (2007, 1, 5.25),
    (2007, 2, 5.25),
    (2007, 3, 5.00),
    (2007, 4, 4.50),
    (2008, 1, 3.00),
    (2008, 2, 2.00),
    (2008, 3, 1.50),
    (2008, 4, 0.25),
    (2009, 1, 0.25),
    (2009, 2, 0.25),
    (2009, 3, 0.25),
    (2009, 4, 0.25),
)

# (year, quarter, headline)
EVENT_SERIES: tuple[tuple[int, int, str], ...] = (
    (2005, 1, "Fed begins rate tightening cycle"),
    (2006, 2, "Housing prices peak in many markets"),
    (2007, 2, "Subprime mortgage crisis begins"),
    (2007, 3, "Northern Rock bank run"),
    (2008, 1, "Bear Stearns hedge funds collapse"),
    (2008, 3, "Lehman Brothers bankruptcy"),
    (2008, 4, "TARP bailout program enacted"),
    (2009, 1, "Fed implements quantitative easing"),
)

FIRST_YEAR = 2005
LAST_YEAR = 2010


def quarter_index(year: int, quarter: int) -> int:
    """Quarters since 2005 Q1 -- the simulator's time_step scale."""
    return (year - FIRST_YEAR) * 4 + (quarter - 1)


def historical_dataset(start_year: int = FIRST_YEAR, end_year: int = LAST_YEAR) -> dict:
    """
    Wire form of the reference series, limited to [start_year, end_year].
    """
    lo, hi = min(start_year, end_year), max(start_year, end_year)

    def _in_range(year: int) -> bool:
        return lo <= year <= hi

    return {
        "priceData": [
            {
                "year": y,
                "quarter": q,
                "timeStep": quarter_index(y, q),
                "medianPrice": price,
                "priceGrowth": growth,
            }
            for y, q, price, growth in PRICE_SERIES if _in_range(y)
        ],
        "fedRateData": [
            {"year": y, "quarter": q, "timeStep": quarter_index(y, q), "rate": rate}
            for y, q, rate in FED_RATE_SERIES if _in_range(y)
        ],
        "events": [
            {"year": y, "quarter": q, "timeStep": quarter_index(y, q), "event": text}
            for y, q, text in EVENT_SERIES if _in_range(y)
        ],
    }
