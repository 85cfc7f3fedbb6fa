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

import bisect
import typing as tp

import numpy as np
import numpy.typing as npt

from .carbon_value import CarbonValue

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]


class TimeSeriesError(Exception):
    """Raised when a date is missing from a time series."""

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class TimeSeries:
    """A dated series of floats or CarbonValues.

    Dates are floats (years) kept in sorted order. Emissions inputs,
    user constraints and the recorded model state all use this class.

    Parameters
    ----------
    name : str
        Used in error messages
    allow_interp : bool, default=False
        If True, ``get`` interpolates linearly between the two nearest
        dates. Dates outside the data range are always an error.

    Examples
    --------
    >>> ts = TimeSeries("ffi_emissions", allow_interp=True)
    >>> ts.set(2000, 7.0)
    >>> ts.set(2010, 9.0)
    >>> ts.get(2005)
    8.0
    """

    def __init__(self, name: str = "?", allow_interp: bool = False) -> None:
        self.name = name
        self.allow_interp = allow_interp
        self._dates: list[float] = []
        self._values: list[tp.Any] = []

    def set(self, date: float, value: tp.Any) -> None:
        """Store value at date, replacing any previous entry."""
        date = float(date)
        i = bisect.bisect_left(self._dates, date)
        if i < len(self._dates) and self._dates[i] == date:
            self._values[i] = value
        else:
            self._dates.insert(i, date)
            self._values.insert(i, value)

    def exists(self, date: float) -> bool:
        """Return True if there is an entry for exactly this date."""
        i = bisect.bisect_left(self._dates, float(date))
        return i < len(self._dates) and self._dates[i] == float(date)

    def in_range(self, date: float) -> bool:
        """Return True if date lies between the first and last date."""
        return bool(self._dates) and self._dates[0] <= date <= self._dates[-1]

    def get(self, date: float) -> tp.Any:
        """Return the value at date.

        Raises
        ------
        TimeSeriesError
            If the series is empty, the date lies outside the data range,
            or the date is missing and interpolation is not allowed
        """
        date = float(date)
        if not self._dates:
            raise TimeSeriesError(f"{self.name}: no data")

        i = bisect.bisect_left(self._dates, date)
        if i < len(self._dates) and self._dates[i] == date:
            return self._values[i]

        if not self.allow_interp:
            raise TimeSeriesError(f"{self.name}: no value for date {date}")
        if not self.in_range(date):
            raise TimeSeriesError(
                f"{self.name}: date {date} outside "
                f"[{self._dates[0]}, {self._dates[-1]}]"
            )

        return self._interpolate(date)

    def _interpolate(self, date: float) -> tp.Any:
        first = self._values[0]
        if isinstance(first, CarbonValue):
            mags = np.array([v.value() for v in self._values])
            return CarbonValue(np.interp(date, self._dates, mags), first.units)
        return float(np.interp(date, self._dates, np.asarray(self._values, dtype=float)))

    def truncate(self, date: float) -> None:
        """Drop all entries after date."""
        i = bisect.bisect_right(self._dates, float(date))
        del self._dates[i:]
        del self._values[i:]

    @property
    def size(self) -> int:
        return len(self._dates)

    def __len__(self) -> int:
        return len(self._dates)

    def __contains__(self, date: float) -> bool:
        return self.exists(date)

    @property
    def first_date(self) -> float:
        if not self._dates:
            raise TimeSeriesError(f"{self.name}: no data")
        return self._dates[0]

    @property
    def last_date(self) -> float:
        if not self._dates:
            raise TimeSeriesError(f"{self.name}: no data")
        return self._dates[-1]

    def dates(self) -> NDArrayFloat:
        return np.array(self._dates)

    def values(self) -> list:
        return list(self._values)

    def magnitudes(self) -> NDArrayFloat:
        """Return the values as floats, CarbonValues in their own units."""
        return np.array(
            [v.value() if isinstance(v, CarbonValue) else float(v) for v in self._values]
        )

    def __repr__(self) -> str:
        if not self._dates:
            return f"TimeSeries('{self.name}', empty)"
        return (
            f"TimeSeries('{self.name}', {len(self)} entries, "
            f"{self._dates[0]} - {self._dates[-1]})"
        )
