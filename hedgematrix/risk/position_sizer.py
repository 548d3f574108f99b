"""Position sizing — pure math, no I/O.

Calculates the number of units to trade for one hedge leg based on
account equity, risk fraction, leg capital weight and stop distance.
"""

import math


def calculate_units(
    equity: float,
    risk_fraction: float,
    leg_weight: float,
    stop_distance: float,
) -> int:
    """Calculate position size in whole units.

    Formula::

        risk_amount = equity × risk_fraction × leg_weight
        units       = max(1, floor(risk_amount / stop_distance))

    Args:
        equity: Current account (or variant) equity, e.g. 1_000.0.
        risk_fraction: Fraction of equity at risk, e.g. 0.01 for 1 %.
        leg_weight: Capital weight of the leg, e.g. 0.5.
        stop_distance: Stop distance in price units, e.g. 0.0030.

    Returns:
        Position size in units (always at least 1).

    Raises:
        ValueError: If any input is non-positive.
    """
    if equity <= 0:
        raise ValueError(f"equity must be positive, got {equity}")
    if risk_fraction <= 0:
        raise ValueError(f"risk_fraction must be positive, got {risk_fraction}")
    if leg_weight <= 0:
        raise ValueError(f"leg_weight must be positive, got {leg_weight}")
    if stop_distance <= 0:
        raise ValueError(f"stop_distance must be positive, got {stop_distance}")

    risk_amount = equity * risk_fraction * leg_weight
    return max(1, math.floor(risk_amount / stop_distance))
