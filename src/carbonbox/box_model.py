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

Every pool-owning model implements the BoxModel interface. The solver
only ever sees the flat state vector defined here; the models translate
between that vector and their own typed pools.
"""

from __future__ import annotations

import abc
import typing as tp

import numpy as np
import numpy.typing as npt

from .carbonbox_base import carbonboxBase

if tp.TYPE_CHECKING:
    from .carbon_value import CarbonValue

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]

# flat vector layout shared by all models
ATMOS = 0
VEG = 1
DET = 2
SOIL = 3
PERMAFROST = 4
THAWEDP = 5
OCEAN = 6
EARTH = 7
NCPOOL = 8

POOL_NAMES = (
    "atmos_c",
    "veg_c",
    "detritus_c",
    "soil_c",
    "permafrost_c",
    "thawed_permafrost_c",
    "ocean_c",
    "earth_c",
)

# status codes of compute_derivatives
ODE_SUCCESS = 0
CARBON_CYCLE_RETRY = 1
CHEMISTRY_FAILURE = 2

# atmospheric CO2 conversion
PPMVCO2_TO_PGC = 2.13


class BoxModelError(Exception):
    """Raised when a model is used in a way the interface does not allow."""

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


class MassConservationError(Exception):
    """Raised when the total carbon of the coupled system changes.

    This indicates a logic error, not a numerical one, and is never
    retried.
    """

    def __init__(self, message):
        message = f"\n\n{message}\n"
        super().__init__(message)


@tp.runtime_checkable
class DeepOceanSink(tp.Protocol):
    """Receiver of constraint residuals.

    This is the only channel between models besides the state vector.
    """

    def dump_to_deep_ocean(self, amount: float | CarbonValue) -> None: ...


class BoxModel(carbonboxBase, abc.ABC):
    """Interface of a model that can be integrated by CarbonCycleSolver.

    Derived classes own a subset of the flat vector entries (listed in
    ``pool_indices``) and implement the four operations used by the
    solver:

    - ``export_state(t, c)`` write the owned pools into ``c``
    - ``import_state(t, c)`` take over the solved values from ``c``
    - ``compute_derivatives(t, c, dcdt)`` add d(pool)/dt into ``dcdt``
    - ``recompute_slow_parameters(t, c)`` refresh slowly varying factors

    ``compute_derivatives`` must not change the model state. Numerical
    trouble is reported through its return value, never with an
    exception.
    """

    pool_indices: tuple[int, ...] = ()

    def __aux_inits__(self) -> None:
        """Set up the bookkeeping shared by all models."""
        self.in_spinup: bool = False
        self.ode_start_date: float = np.nan
        self.prepared: bool = False

    @staticmethod
    def check_vector(c: NDArrayFloat, name: str = "state vector") -> None:
        """Raise BoxModelError unless c has room for all pools."""
        if len(c) < NCPOOL:
            raise BoxModelError(f"{name} has {len(c)} entries, need {NCPOOL}")

    def year_fraction(self, t: float) -> float:
        """Return the time elapsed since the last export_state.

        Raises
        ------
        BoxModelError
            If t lies before the anchor or more than one year after it
        """
        yf = t - self.ode_start_date
        if not 0.0 <= yf <= 1.0:
            raise BoxModelError(
                f"{self.name}: year fraction {yf} out of bounds "
                f"(anchor {self.ode_start_date}, t = {t})"
            )
        return yf

    @abc.abstractmethod
    def export_state(self, t: float, c: NDArrayFloat) -> None:
        """Write our pools into c and remember t as integration start."""

    @abc.abstractmethod
    def import_state(self, t: float, c: NDArrayFloat) -> None:
        """Reconcile our pools with the solved vector c at time t."""

    @abc.abstractmethod
    def compute_derivatives(self, t: float, c: NDArrayFloat, dcdt: NDArrayFloat) -> int:
        """Add our contributions to dcdt and return a status code."""

    @abc.abstractmethod
    def recompute_slow_parameters(self, t: float, c: NDArrayFloat) -> None:
        """Refresh the factors that stay fixed during a half step."""

    def prepare_to_run(self) -> None:
        """Check inputs before the first step."""
        self.prepared = True

    def set_spinup(self, flag: bool) -> None:
        self.in_spinup = flag

    def record_state(self, t: float) -> None:
        """Store the current state under date t."""

    def reset(self, t: float) -> None:
        """Return to the state recorded at date t."""
        self.ode_start_date = t

    def get_data(self, var_name: str, date: float | None = None) -> tp.Any:
        raise BoxModelError(f"{self.name} does not provide '{var_name}'")
