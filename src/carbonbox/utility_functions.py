"""carbonbox: A carbon cycle box model integration engine.

Copyright (C), 2020 Ulrich G. Wortmann

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

from __future__ import annotations

import typing as tp

import numpy as np
import numpy.typing as npt
from numba import njit
from scipy.stats import lognorm

from .carbon_value import CarbonValue
from .initialize_unit_registry import U_PGC

if tp.TYPE_CHECKING:
    from .time_series import TimeSeries

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]

BIOME_SPLIT_CHAR = "."


@njit(fastmath=True)
def co2_fertilization(ca: float, c0: float, beta: float) -> float:
    """CO2 fertilization factor of NPP

    :param ca: atmospheric CO2 concentration
    :param c0: preindustrial CO2 concentration
    :param beta: fertilization strength

    return 1 + beta * ln(ca/c0)
    """
    return 1.0 + beta * np.log(ca / c0)


@njit(fastmath=True)
def q10_factor(q10: float, temperature: float) -> float:
    """Temperature multiplier of a respiration rate.

    The rate increases by a factor of q10 for every 10 degrees of
    warming relative to the preindustrial state.
    """
    return q10 ** (temperature / 10.0)


@njit(fastmath=True)
def share(values: NDArrayFloat) -> NDArrayFloat:
    """Normalize values so that they sum to one.

    If all values are zero the share is split evenly, so that empty
    biomes still receive their part of a flux.
    """
    total = values.sum()
    if total > 0.0:
        return values / total
    return np.ones(values.size) / values.size


def apportion(old: NDArrayFloat, total: float, weights: NDArrayFloat) -> NDArrayFloat:
    """Spread the change of a pool total over its biomes.

    Each biome receives its weight times the change. A biome that would
    end up negative is emptied instead, and the missing carbon is taken
    from the other biomes in proportion to their size. The result always
    sums to total (or zero if total is negative).
    """
    new = old + (total - old.sum()) * weights
    negative = new < 0.0
    if not negative.any():
        return new
    new[negative] = 0.0
    remaining = new.sum()
    if remaining <= 0.0 or total <= 0.0:
        return np.zeros_like(new)
    return new * (total / remaining)


@njit(fastmath=True)
def window_mean(values: NDArrayFloat, n: int) -> float:
    """Mean over a window of n entries, missing entries count as zero"""
    return values.sum() / n


def frozen_fraction_table(
    mu: float,
    sigma: float,
    t_max: float = 20.0,
    n: int = 2001,
) -> tuple[NDArrayFloat, NDArrayFloat]:
    """Tabulate the fraction of permafrost that stays frozen.

    The thaw temperature of permafrost carbon is assumed to follow a
    lognormal distribution, so that the frozen fraction at temperature T
    is 1 - CDF(T). Below 0 degrees everything is frozen.

    Parameters
    ----------
    mu : float
        Mean of the underlying normal distribution
    sigma : float
        Standard deviation of the underlying normal distribution
    t_max : float, default=20.0
        Upper end of the table in degrees
    n : int, default=2001
        Number of table entries

    Returns
    -------
    tuple
        (temperatures, frozen fractions), both numpy arrays
    """
    temps = np.linspace(0.0, t_max, n)
    frozen = 1.0 - lognorm.cdf(temps, s=sigma, scale=np.exp(mu))
    frozen[0] = 1.0
    return temps, frozen


@njit(fastmath=True)
def frozen_fraction(temperature: float, temps: NDArrayFloat, frozen: NDArrayFloat) -> float:
    """Look up the frozen fraction in a table from frozen_fraction_table"""
    if temperature <= 0.0:
        return 1.0
    return np.interp(temperature, temps, frozen)


def split_biome_name(var_name: str, default_biome: str) -> tuple[str, str]:
    """Split "biome.variable" into its parts.

    Names without a biome prefix belong to default_biome.

    >>> split_biome_name("boreal.veg_c", "global")
    ('boreal', 'veg_c')
    """
    if BIOME_SPLIT_CHAR in var_name:
        biome, var = var_name.split(BIOME_SPLIT_CHAR, 1)
        return biome, var
    return default_biome, var_name


def sum_carbon_values(pools: dict[str, CarbonValue], units=U_PGC) -> CarbonValue:
    """Add all values of a biome dictionary.

    Returns a zero value with the given units if pools is empty.
    """
    values = list(pools.values())
    if not values:
        return CarbonValue(0.0, units)
    return sum(values[1:], values[0].copy())


def series_value(ts: TimeSeries, t: float, default: float = 0.0) -> float:
    """Return the value of an input series at t, or default if it is empty."""
    if ts.size == 0:
        return default
    v = ts.get(t)
    return v.value() if isinstance(v, CarbonValue) else float(v)


def plot_geometry(noo: int) -> tuple[list[int], list[int]]:
    """Define plot geometry based on number of objects to plot.

    Returns
    -------
    tuple
        ([width, height] in inches, [rows, columns])
    """
    if noo < 2:
        geometry = [1, 1]
        size = [5, 3]
    elif noo < 3:
        geometry = [2, 1]
        size = [5, 6]
    elif noo < 5:
        geometry = [2, 2]
        size = [10, 6]
    elif noo < 7:
        geometry = [3, 2]
        size = [10, 9]
    elif noo < 9:
        geometry = [4, 2]
        size = [10, 12]
    else:
        raise ValueError("plot geometry for more than 8 variables is not defined")

    return size, geometry
