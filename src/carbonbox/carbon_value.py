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

The CarbonValue class is used for every pool and flux quantity. It is a
non-negative number with a pint unit, and it can optionally record where
the carbon it represents came from (its provenance map).
"""

from __future__ import annotations

import functools
import math
import numbers
import typing as tp

from pint import DimensionalityError

from .initialize_unit_registry import Q_, U_PGC, ureg

# fractions of a provenance map must sum to 1 within this tolerance
SOURCE_EPSILON = 1e-6
UNTRACKED = "untracked"


class CarbonValueError(Exception):
    """Base class for precondition violations of a CarbonValue."""

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class NegativeValueError(CarbonValueError):
    """Raised when a carbon value would become negative."""


class UnitMismatchError(CarbonValueError):
    """Raised when two values with different units are combined."""


class TrackingMismatchError(CarbonValueError):
    """Raised when a tracked and an untracked value are combined."""


class TrackingDisabledError(CarbonValueError):
    """Raised when provenance is requested from an untracked value."""


def _as_unit(units) -> tp.Any:
    """Convert a unit string or pint Unit into a pint Unit."""
    if isinstance(units, str):
        return ureg.Unit(units)
    return units


def _check_sources(sources: dict[str, float], name: str) -> None:
    """Raise CarbonValueError unless sources is a valid provenance map."""
    if not sources:
        raise CarbonValueError(f"{name}: provenance map cannot be empty")
    for src, frac in sources.items():
        if frac < 0.0 or frac > 1.0:
            raise CarbonValueError(
                f"{name}: fraction of '{src}' must be in [0, 1], got {frac}"
            )
    total = math.fsum(sources.values())
    if abs(total - 1.0) > SOURCE_EPSILON:
        raise CarbonValueError(f"{name}: source fractions sum to {total}, not 1")


@functools.total_ordering
class CarbonValue:
    """A non-negative, unit-tagged amount of carbon.

    Parameters
    ----------
    value : float, default=0.0
        Magnitude in ``units``. Must not be negative.
    units : str or pint.Unit, default=PgC
        Unit tag. Values with different unit tags cannot be combined.
    tracking : bool, default=False
        Whether this value carries a provenance map.
    name : str, default="?"
        Source label. A freshly created value is attributed 100% to it.

    Raises
    ------
    NegativeValueError
        If value is negative

    Examples
    --------
    >>> src1 = CarbonValue(10, "PgC", tracking=True, name="src1")
    >>> dest = CarbonValue(0, "PgC", tracking=True, name="dest")
    >>> flux = src1 * 0.4
    >>> dest = dest + flux
    >>> src1 = src1 - flux
    >>> dest.get_fraction("src1")
    1.0
    >>> src1.value()
    6.0
    """

    def __init__(
        self,
        value: float = 0.0,
        units=U_PGC,
        tracking: bool = False,
        name: str = "?",
    ) -> None:
        self.set(value, units, tracking, name)

    @classmethod
    def from_sources(
        cls,
        value: float,
        units,
        sources: dict[str, float],
        name: str = "?",
    ) -> CarbonValue:
        """Create a tracked value from an explicit provenance map.

        Raises
        ------
        CarbonValueError
            If a fraction lies outside [0, 1] or the fractions do not sum to 1
        """
        _check_sources(sources, name)
        cv = cls(value, units, tracking=True, name=name)
        cv._sources = dict(sources)
        return cv

    @classmethod
    def zero(cls, units=U_PGC, tracking: bool = False, name: str = "?") -> CarbonValue:
        return cls(0.0, units, tracking, name)

    def _new(self, value: float, sources: dict[str, float]) -> CarbonValue:
        """Return a value with our unit, tracking flag and name."""
        cv = CarbonValue(value, self._units, self._tracking, self._name)
        cv._sources = dict(sources)
        return cv

    def set(self, value: float, units=U_PGC, tracking: bool = False, name: str = "?") -> None:
        """Reinitialize this value.

        Any existing provenance map is discarded and the value is
        attributed entirely to ``name``.
        """
        value = float(value)
        if value < 0.0 or math.isnan(value):
            raise NegativeValueError(f"{name}: carbon value cannot be {value}")

        self._value = value
        self._units = _as_unit(units)
        self._tracking = bool(tracking)
        self._name = name
        self._sources: dict[str, float] = {name: 1.0}

    def copy(self) -> CarbonValue:
        return self._new(self._value, self._sources)

    @property
    def units(self):
        return self._units

    @property
    def name(self) -> str:
        return self._name

    @property
    def tracking(self) -> bool:
        return self._tracking

    def value(self, units=None) -> float:
        """Return the magnitude, optionally converted to ``units``.

        Raises
        ------
        UnitMismatchError
            If ``units`` is not compatible with the unit tag
        """
        if units is None:
            return self._value
        units = _as_unit(units)
        if units == self._units:
            return self._value
        try:
            return Q_(self._value, self._units).to(units).magnitude
        except DimensionalityError as err:
            raise UnitMismatchError(
                f"{self._name}: cannot express {self._units} as {units}"
            ) from err

    def to_quantity(self):
        """Return the magnitude and unit as a pint Quantity."""
        return Q_(self._value, self._units)

    # ---------------------------------------------------------------
    # provenance
    def start_tracking(self) -> None:
        """Switch tracking on; all current carbon is attributed to our name."""
        self._tracking = True
        self._sources = {self._name: 1.0}

    def get_sources(self) -> list[str]:
        """Return the source labels of the provenance map.

        Raises
        ------
        TrackingDisabledError
            If tracking is off
        """
        if not self._tracking:
            raise TrackingDisabledError(
                f"{self._name}: get_sources() called with tracking disabled"
            )
        return sorted(self._sources)

    def get_fraction(self, source: str) -> float:
        """Return the fraction of this value attributed to ``source``.

        Unknown sources return 0.0.

        Raises
        ------
        TrackingDisabledError
            If tracking is off
        """
        if not self._tracking:
            raise TrackingDisabledError(
                f"{self._name}: get_fraction() called with tracking disabled"
            )
        return self._sources.get(source, 0.0)

    def get_tracking_map(self) -> dict[str, float]:
        return dict(self._sources)

    def flux_from_value(self, value: float, units=None, name: str | None = None) -> CarbonValue:
        """Create a flux of ``value`` that carries our provenance map.

        Used when carbon leaves this pool: the flux has the composition of
        the pool it is drawn from.
        """
        units = self._units if units is None else units
        cv = CarbonValue(value, units, self._tracking, self._name if name is None else name)
        cv._sources = dict(self._sources)
        return cv

    def flux_from_carbon_value(self, cv: CarbonValue, name: str | None = None) -> CarbonValue:
        """Like flux_from_value, taking magnitude and units from ``cv``."""
        return self.flux_from_value(cv.value(), cv.units, name)

    def adjust_to_solved_value(self, target, allow_untracked: bool = True) -> CarbonValue:
        """Return a copy of this value with its magnitude set to ``target``.

        If the target is larger than the current value, tracking is on and
        ``allow_untracked`` is set, the excess is attributed to a synthetic
        "untracked" source. Otherwise the fractions are left unchanged.

        Parameters
        ----------
        target : float or CarbonValue
            The new magnitude in our units
        allow_untracked : bool, default=True

        Raises
        ------
        NegativeValueError
            If target is negative
        """
        if isinstance(target, CarbonValue):
            self._check_units(target)
            target = target.value()
        target = float(target)
        if target < 0.0:
            raise NegativeValueError(
                f"{self._name}: cannot adjust to negative value {target}"
            )

        if not (self._tracking and allow_untracked and target > self._value):
            return self._new(target, self._sources)

        sources = {k: v * self._value / target for k, v in self._sources.items()}
        excess = (target - self._value) / target
        sources[UNTRACKED] = sources.get(UNTRACKED, 0.0) + excess
        return self._new(target, sources)

    # ---------------------------------------------------------------
    # arithmetic
    def _check_units(self, other: CarbonValue) -> None:
        if other._units != self._units:
            raise UnitMismatchError(
                f"cannot combine {self._name} [{self._units}] "
                f"with {other._name} [{other._units}]"
            )

    def _check_compatible(self, other: CarbonValue) -> None:
        self._check_units(other)
        if other._tracking != self._tracking:
            raise TrackingMismatchError(
                f"cannot combine {self._name} (tracking={self._tracking}) "
                f"with {other._name} (tracking={other._tracking})"
            )

    def _magnitude_of(self, other) -> float:
        """Return the magnitude of a pint Quantity with our unit."""
        if other.units != self._units:
            raise UnitMismatchError(
                f"cannot combine {self._name} [{self._units}] with {other.units}"
            )
        return float(other.magnitude)

    def __add__(self, other):
        if isinstance(other, CarbonValue):
            self._check_compatible(other)
            total = self._value + other._value
            if not self._tracking:
                return self._new(total, self._sources)
            if total == 0.0:
                labels = set(self._sources) | set(other._sources)
                return self._new(0.0, {k: 1.0 / len(labels) for k in labels})
            sources = {}
            for k in set(self._sources) | set(other._sources):
                sources[k] = (
                    self._value * self._sources.get(k, 0.0)
                    + other._value * other._sources.get(k, 0.0)
                ) / total
            return self._new(total, sources)
        if isinstance(other, Q_):
            return self._new(self._value + self._magnitude_of(other), self._sources)
        return NotImplemented

    def __radd__(self, other):
        # lets sum() start from 0
        if isinstance(other, numbers.Real) and other == 0:
            return self.copy()
        return self.__add__(other)

    def __sub__(self, other):
        if isinstance(other, CarbonValue):
            self._check_compatible(other)
            return self._new(self._value - other._value, self._sources)
        if isinstance(other, Q_):
            return self._new(self._value - self._magnitude_of(other), self._sources)
        return NotImplemented

    def __mul__(self, other):
        if isinstance(other, numbers.Real):
            return self._new(self._value * other, self._sources)
        return NotImplemented

    __rmul__ = __mul__

    def __truediv__(self, other):
        if isinstance(other, CarbonValue):
            self._check_units(other)
            return self._value / other._value
        if isinstance(other, numbers.Real):
            return self._new(self._value / other, self._sources)
        return NotImplemented

    def __eq__(self, other) -> bool:
        if isinstance(other, CarbonValue):
            self._check_units(other)
            return self._value == other._value
        return NotImplemented

    def __lt__(self, other) -> bool:
        if isinstance(other, CarbonValue):
            self._check_units(other)
            return self._value < other._value
        return NotImplemented

    __hash__ = None

    def __float__(self) -> float:
        return self._value

    def __repr__(self) -> str:
        m = f"CarbonValue({self._value}, '{self._units}'"
        if self._tracking:
            m = f"{m}, tracking=True, name='{self._name}'"
        return f"{m})"

    def __str__(self) -> str:
        m = f"{self._value:.6g} {self._units}"
        if self._tracking:
            srcs = ", ".join(f"{k}: {v:.3f}" for k, v in sorted(self._sources.items()))
            m = f"{m} [{srcs}]"
        return m
