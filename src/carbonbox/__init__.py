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


from .initialize_unit_registry import (
    Q_ as Q_,
    U_DEGC as U_DEGC,
    U_PGC as U_PGC,
    U_PGC_YR as U_PGC_YR,
    U_PPMV_CO2 as U_PPMV_CO2,
    ureg as ureg,
)
from .version import get_version as get_version
from .carbon_value import (
    CarbonValue as CarbonValue,
    CarbonValueError as CarbonValueError,
    NegativeValueError as NegativeValueError,
    TrackingDisabledError as TrackingDisabledError,
    TrackingMismatchError as TrackingMismatchError,
    UnitMismatchError as UnitMismatchError,
)
from .time_series import TimeSeries as TimeSeries, TimeSeriesError as TimeSeriesError
from .carbonbox_base import (
    InputError as InputError,
    KeywordError as KeywordError,
    MissingKeywordError as MissingKeywordError,
)
from .box_model import (
    ATMOS as ATMOS,
    CARBON_CYCLE_RETRY as CARBON_CYCLE_RETRY,
    CHEMISTRY_FAILURE as CHEMISTRY_FAILURE,
    DET as DET,
    EARTH as EARTH,
    NCPOOL as NCPOOL,
    OCEAN as OCEAN,
    ODE_SUCCESS as ODE_SUCCESS,
    PERMAFROST as PERMAFROST,
    PPMVCO2_TO_PGC as PPMVCO2_TO_PGC,
    SOIL as SOIL,
    THAWEDP as THAWEDP,
    VEG as VEG,
    BoxModel as BoxModel,
    BoxModelError as BoxModelError,
    DeepOceanSink as DeepOceanSink,
    MassConservationError as MassConservationError,
)
from .land import LandModelError as LandModelError, TerrestrialBoxModel as TerrestrialBoxModel
from .ocean import OceanBoxModel as OceanBoxModel
from .solver import (
    CarbonCycleSolver as CarbonCycleSolver,
    SolverError as SolverError,
    SolverState as SolverState,
)
from .post_processing import (
    plot_pools as plot_pools,
    state_to_dataframe as state_to_dataframe,
)
