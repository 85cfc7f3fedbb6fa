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

The terrestrial box model owns the atmosphere, the fossil ("earth") pool
and, for every biome, vegetation, detritus, soil, permafrost and thawed
permafrost carbon.
"""

from __future__ import annotations

import logging
import math
import typing as tp
import warnings

import numpy as np
import numpy.typing as npt
from pint import DimensionalityError

from .box_model import (
    ATMOS,
    CARBON_CYCLE_RETRY,
    DET,
    EARTH,
    NCPOOL,
    ODE_SUCCESS,
    PERMAFROST,
    PPMVCO2_TO_PGC,
    SOIL,
    THAWEDP,
    VEG,
    BoxModel,
    BoxModelError,
    DeepOceanSink,
    MassConservationError,
)
from .carbon_value import CarbonValue
from .carbonbox_base import InputError
from .initialize_unit_registry import (
    Q_,
    U_DEGC,
    U_PGC,
    U_PGC_YR,
    U_PPMV_CO2,
    U_UNITLESS,
)
from .time_series import TimeSeries
from .utility_functions import (
    BIOME_SPLIT_CHAR,
    apportion,
    co2_fertilization,
    frozen_fraction,
    frozen_fraction_table,
    q10_factor,
    series_value,
    share,
    split_biome_name,
    sum_carbon_values,
    window_mean,
)

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]

DEFAULT_BIOME = "global"
MB_EPSILON = 0.001  # PgC
Q10_TEMPN = 200  # years in the soil temperature window
Q10_TEMPLAG = 0

# variable name: (default, units)
BIOME_POOLS: dict[str, tuple[float, tp.Any]] = {
    "veg_c": (550.0, U_PGC),
    "detritus_c": (55.0, U_PGC),
    "soil_c": (1782.0, U_PGC),
    "permafrost_c": (865.0, U_PGC),
    "thawed_permafrost_c": (0.0, U_PGC),
}
POOL_INDEX = {
    "veg_c": VEG,
    "detritus_c": DET,
    "soil_c": SOIL,
    "permafrost_c": PERMAFROST,
    "thawed_permafrost_c": THAWEDP,
}
BIOME_PARAMS: dict[str, tuple[float, tp.Any]] = {
    "npp_flux0": (56.2, U_PGC_YR),
    "beta": (0.53, U_UNITLESS),
    "q10_rh": (2.2, U_UNITLESS),
    "warmingfactor": (1.0, U_UNITLESS),
    "f_nppv": (0.35, U_UNITLESS),
    "f_nppd": (0.60, U_UNITLESS),
    "f_litterd": (0.98, U_UNITLESS),
    "permafrost_mu": (1.67, U_UNITLESS),
    "permafrost_sigma": (0.986, U_UNITLESS),
    "fpf_static": (0.74, U_UNITLESS),
}
GLOBAL_POOLS: dict[str, tuple[float, tp.Any]] = {
    "atmos_c": (277.15 * PPMVCO2_TO_PGC, U_PGC),
    "earth_c": (5500.0, U_PGC),
}
GLOBAL_PARAMS: dict[str, tuple[float, tp.Any]] = {
    "C0": (277.15, U_PPMV_CO2),
    "f_lucv": (0.1, U_UNITLESS),
    "f_lucd": (0.01, U_UNITLESS),
}
INPUT_SERIES: dict[str, tp.Any] = {
    "ffi_emissions": U_PGC_YR,
    "daccs_uptake": U_PGC_YR,
    "luc_emissions": U_PGC_YR,
    "luc_uptake": U_PGC_YR,
    "land_tas": U_DEGC,
    "CO2_constrain": U_PPMV_CO2,
    "NBP_constrain": U_PGC_YR,
}
BIOME_FLUXES = ("npp", "rh", "nbp")
SLOW_PARAMS = ("co2fert", "tempfertd", "tempferts")

# these must be supplied for every named biome
REQUIRED_POOLS = ("veg_c", "detritus_c", "soil_c")


class LandModelError(BoxModelError):
    """Raised for missing biome data, unknown variables and date rule violations."""


def _pool_label(biome: str, var: str) -> str:
    """Source label of a pool, used in provenance maps."""
    if biome == DEFAULT_BIOME:
        return var
    return f"{biome}{BIOME_SPLIT_CHAR}{var}"


def _nonnegative(x: float, tolerance: float = 1e-9) -> float:
    """Round tiny negative results of floating point sums to zero."""
    if -tolerance < x < 0.0:
        return 0.0
    return x


def _nearest_year(t: float) -> int:
    """Round t to the nearest year, halves round up."""
    return math.floor(t + 0.5)


class TerrestrialBoxModel(BoxModel):
    """Reference terrestrial carbon cycle model.

    Pools are partitioned across biomes. The solver only sees the sum of
    each pool over all biomes, and ``import_state`` apportions the solved
    change of a pool to the biomes by their share of NPP + RH.

    Parameters
    ----------
    name : str, default="land"
    C0 : str or Quantity, default="277.15 ppmv"
        Preindustrial CO2. Also sets the initial atmospheric pool.
    tracking_date : int or float, optional
        Start carbon provenance tracking once this date is reached
    deep_ocean : DeepOceanSink, optional
        Receiver of constraint residuals, see ``connect_deep_ocean``

    Examples
    --------
    >>> land = TerrestrialBoxModel(name="land")
    >>> land.set_data("boreal.veg_c", "100 PgC")
    >>> land.set_data("ffi_emissions", 9.5, date=2010)
    """

    pool_indices = (ATMOS, VEG, DET, SOIL, PERMAFROST, THAWEDP, EARTH)

    def __init__(self, **kwargs) -> None:
        self.defaults: dict[str, list[tp.Any, tuple]] = {
            "name": ["land", (str,)],
            "C0": ["277.15 ppmv", (str, Q_)],
            "tracking_date": ["None", (str, int, float)],
            "deep_ocean": ["None", (str, object)],
        }
        self.lrk: list = []
        self.__initialize_keyword_variables__(kwargs)
        self.__register_name__()
        self.__aux_inits__()

        self.biome_list: list[str] = [DEFAULT_BIOME]
        self._user_biomes: set[str] = set()
        self.pools: dict[str, dict[str, CarbonValue]] = {
            var: {DEFAULT_BIOME: CarbonValue(v, u, name=var)}
            for var, (v, u) in BIOME_POOLS.items()
        }
        self.params: dict[str, dict[str, float]] = {
            var: {DEFAULT_BIOME: v} for var, (v, _) in BIOME_PARAMS.items()
        }
        self.atmos_c = CarbonValue(GLOBAL_POOLS["atmos_c"][0], U_PGC, name="atmos_c")
        self.earth_c = CarbonValue(GLOBAL_POOLS["earth_c"][0], U_PGC, name="earth_c")
        self.c0: float = GLOBAL_PARAMS["C0"][0]
        self.f_lucv: float = GLOBAL_PARAMS["f_lucv"][0]
        self.f_lucd: float = GLOBAL_PARAMS["f_lucd"][0]
        self.inputs: dict[str, TimeSeries] = {
            k: TimeSeries(k, allow_interp=(k != "NBP_constrain")) for k in INPUT_SERIES
        }
        self.history: dict[str, TimeSeries] = {}

        self.Ca: float = self.c0
        self.residual: float = 0.0
        self.nbp_adjustment: float = 0.0
        self.masstot: float = 0.0
        self.cum_luc_va: float = 0.0
        self.end_of_spinup_vegc: float = 0.0
        self.npp_luc_adjust: float = 1.0
        self.tracking: bool = False
        self._anchor_fluxes: dict[str, tp.Any] | None = None
        self.deep_ocean_sink: DeepOceanSink | None = None

        self.__set_value__("C0", DEFAULT_BIOME, self.ensure_q(self.C0))
        if self.deep_ocean != "None":
            self.connect_deep_ocean(self.deep_ocean)
        self.__build_parameter_arrays__()
        self.__init_slow_parameters__()

    # ---------------------------------------------------------------
    # configuration
    def connect_deep_ocean(self, sink: DeepOceanSink) -> None:
        """Set the receiver of concentration and NBP constraint residuals."""
        if not isinstance(sink, DeepOceanSink):
            raise InputError(f"{sink} does not provide dump_to_deep_ocean()")
        self.deep_ocean_sink = sink

    def set_data(self, var_name: str, value: tp.Any, date: float | None = None) -> None:
        """Set a pool, parameter or input series value.

        Biome specific variables may be prefixed with a biome name,
        e.g., "boreal.veg_c". The first named biome replaces the default
        biome, unless the default biome was given data explicitly.

        Parameters
        ----------
        var_name : str
            Variable name, optionally prefixed with "<biome>."
        value : float, str, Quantity, or CarbonValue
            Floats are taken to be in model units (PgC, PgC/yr, ppmv,
            degrees C). Strings are parsed by pint.
        date : float, optional
            Required for input series, forbidden for parameters, optional
            for pools.

        Raises
        ------
        LandModelError
            If the variable is unknown or the date rule is violated
        """
        has_prefix = BIOME_SPLIT_CHAR in var_name
        biome, var = split_biome_name(var_name, DEFAULT_BIOME)

        if var in BIOME_POOLS or var in BIOME_PARAMS:
            if var in BIOME_PARAMS and date is not None:
                raise LandModelError(f"{var_name} is a parameter and takes no date")
            if biome not in self.biome_list:
                self.__add_biome_from_data__(biome)
            if biome == DEFAULT_BIOME:
                self._user_biomes.add(DEFAULT_BIOME)

        elif var in GLOBAL_POOLS or var in GLOBAL_PARAMS or var in INPUT_SERIES:
            if has_prefix:
                raise LandModelError(f"{var} is global and cannot have a biome prefix")
            if var in GLOBAL_PARAMS and date is not None:
                raise LandModelError(f"{var_name} is a parameter and takes no date")
            if var in INPUT_SERIES and date is None:
                raise LandModelError(f"{var_name} is a time series and needs a date")
        else:
            raise LandModelError(f"{self.name}: unknown variable '{var_name}'")

        self.__set_value__(var, biome, value, date)
        logging.debug(f"{self.name}: set {var_name} = {value} (date={date})")

        if self.prepared and (var in BIOME_PARAMS or var in GLOBAL_PARAMS):
            self.__build_parameter_arrays__()

    def __units_of__(self, var: str):
        for table in (BIOME_POOLS, BIOME_PARAMS, GLOBAL_POOLS, GLOBAL_PARAMS):
            if var in table:
                return table[var][1]
        return INPUT_SERIES[var]

    def __to_float__(self, var: str, value: tp.Any) -> float:
        """Convert value into the model units of var."""
        units = self.__units_of__(var)
        if isinstance(value, CarbonValue):
            return value.value(units)
        if isinstance(value, str):
            value = self.ensure_q(value)
        if isinstance(value, Q_):
            try:
                return float(value.to(units).magnitude)
            except DimensionalityError as err:
                raise LandModelError(f"{var}: cannot convert {value} to {units}") from err
        if isinstance(value, int | float):
            return float(value)
        raise LandModelError(f"{var}: unsupported value type {type(value).__name__}")

    def __set_value__(self, var: str, biome: str, value: tp.Any, date: float | None = None) -> None:
        v = self.__to_float__(var, value)
        if var in BIOME_POOLS:
            cv = CarbonValue(v, U_PGC, self.tracking, _pool_label(biome, var))
            self.pools[var][biome] = cv
            if date is not None:
                self.__record__(f"{biome}.{var}", date, cv.copy())
        elif var in BIOME_PARAMS:
            self.params[var][biome] = v
        elif var == "C0":
            self.c0 = v
            self.Ca = v
            self.atmos_c = CarbonValue(v * PPMVCO2_TO_PGC, U_PGC, self.tracking, "atmos_c")
        elif var in GLOBAL_PARAMS:
            setattr(self, var, v)
        elif var in GLOBAL_POOLS:
            cv = CarbonValue(v, U_PGC, self.tracking, var)
            setattr(self, var, cv)
            if date is not None:
                self.__record__(var, date, cv.copy())
        else:
            self.inputs[var].set(date, v)

    # ---------------------------------------------------------------
    # biomes
    def __add_biome_from_data__(self, biome: str) -> None:
        """Register a biome that first appears in set_data.

        Only the parameters are copied; pools must be supplied by the
        caller before the run starts.
        """
        if biome != DEFAULT_BIOME and DEFAULT_BIOME in self.biome_list:
            if DEFAULT_BIOME not in self._user_biomes:
                logging.info(f"{self.name}: removing default biome in favor of {biome}")
                self.__copy_params__(DEFAULT_BIOME, biome)
                self.delete_biome(DEFAULT_BIOME)
                self.biome_list.append(biome)
                return
        self.__copy_params__(self.biome_list[-1] if self.biome_list else None, biome)
        self.biome_list.append(biome)

    def __copy_params__(self, src: str | None, dst: str) -> None:
        for var, (default, _) in BIOME_PARAMS.items():
            self.params[var][dst] = default if src is None else self.params[var][src]

    def create_biome(self, biome: str) -> None:
        """Add a new biome with empty pools.

        Parameters are copied from the most recently added biome.

        Raises
        ------
        LandModelError
            If the biome already exists
        """
        if biome in self.biome_list:
            raise LandModelError(f"{self.name}: biome '{biome}' already exists")
        self.__copy_params__(self.biome_list[-1] if self.biome_list else None, biome)
        for var in BIOME_POOLS:
            self.pools[var][biome] = CarbonValue(0.0, U_PGC, self.tracking, _pool_label(biome, var))
        self.biome_list.append(biome)
        self._user_biomes.add(biome)
        logging.info(f"{self.name}: created biome {biome}")
        if self.prepared:
            self.__build_parameter_arrays__()
            self.__init_slow_parameters__()

    def delete_biome(self, biome: str) -> None:
        """Remove a biome with all its pools and parameters.

        Raises
        ------
        LandModelError
            If the biome does not exist
        """
        if biome not in self.biome_list:
            raise LandModelError(f"{self.name}: biome '{biome}' does not exist")
        for table in (self.pools, self.params):
            for var in table:
                table[var].pop(biome, None)
        self.biome_list.remove(biome)
        self._user_biomes.discard(biome)
        logging.info(f"{self.name}: deleted biome {biome}")
        if self.prepared:
            self.__build_parameter_arrays__()
            self.__init_slow_parameters__()

    def rename_biome(self, old: str, new: str) -> None:
        """Rename a biome, keeping its position in the biome list.

        Raises
        ------
        LandModelError
            If old does not exist or new already exists
        """
        if old not in self.biome_list:
            raise LandModelError(f"{self.name}: biome '{old}' does not exist")
        if new in self.biome_list:
            raise LandModelError(f"{self.name}: biome '{new}' already exists")
        for table in (self.pools, self.params):
            for var in table:
                if old in table[var]:
                    table[var] = {
                        (new if k == old else k): v for k, v in table[var].items()
                    }
        self.biome_list[self.biome_list.index(old)] = new
        if old in self._user_biomes:
            self._user_biomes.discard(old)
            self._user_biomes.add(new)
        for key in [k for k in self.history if k.startswith(f"{old}.")]:
            self.history[f"{new}.{key.split('.', 1)[1]}"] = self.history.pop(key)
        logging.info(f"{self.name}: renamed biome {old} to {new}")

    # ---------------------------------------------------------------
    # run preparation
    def prepare_to_run(self) -> None:
        """Check biome data and parameters and set up lookup tables.

        Raises
        ------
        LandModelError
            If default and named biomes are mixed, a biome lacks data, or
            a parameter is outside its valid range
        """
        if DEFAULT_BIOME in self.biome_list and len(self.biome_list) > 1:
            raise LandModelError(
                f"{self.name}: cannot mix the default biome '{DEFAULT_BIOME}' "
                f"with named biomes {self.biome_list}"
            )
        if not self.biome_list:
            raise LandModelError(f"{self.name}: no biomes defined")

        for biome in self.biome_list:
            for var in BIOME_POOLS:
                if biome not in self.pools[var]:
                    if var in REQUIRED_POOLS:
                        raise LandModelError(f"{self.name}: no {var} for biome '{biome}'")
                    self.pools[var][biome] = CarbonValue(
                        0.0, U_PGC, self.tracking, _pool_label(biome, var)
                    )
            for var in BIOME_PARAMS:
                if biome not in self.params[var]:
                    raise LandModelError(f"{self.name}: no {var} for biome '{biome}'")

        self.__sanity_checks__()

        if self.inputs["CO2_constrain"].size:
            warnings.warn(
                f"{self.name}: atmospheric CO2 will be constrained to user-supplied values",
                stacklevel=2,
            )
        if self.inputs["NBP_constrain"].size:
            warnings.warn(
                f"{self.name}: NBP will be constrained to user-supplied values",
                stacklevel=2,
            )

        self.__build_parameter_arrays__()
        self.__init_slow_parameters__()
        self.end_of_spinup_vegc = sum_carbon_values(self.pools["veg_c"]).value()
        self.masstot = 0.0
        self.Ca = self.atmos_c.value() / PPMVCO2_TO_PGC
        self.prepared = True
        self.log_pools(np.nan)

    def __sanity_checks__(self) -> None:
        for biome in self.biome_list:
            p = {var: self.params[var][biome] for var in BIOME_PARAMS}
            if p["f_nppv"] < 0 or p["f_nppd"] < 0 or p["f_nppv"] + p["f_nppd"] > 1:
                raise LandModelError(f"{biome}: f_nppv + f_nppd must lie in [0, 1]")
            if not 0 <= p["f_litterd"] <= 1:
                raise LandModelError(f"{biome}: f_litterd must lie in [0, 1]")
            if p["beta"] < 0:
                raise LandModelError(f"{biome}: beta cannot be negative")
            if p["q10_rh"] <= 0:
                raise LandModelError(f"{biome}: q10_rh must be positive")
            if p["permafrost_sigma"] <= 0:
                raise LandModelError(f"{biome}: permafrost_sigma must be positive")
            if not 0 <= p["fpf_static"] <= 1:
                raise LandModelError(f"{biome}: fpf_static must lie in [0, 1]")
        if self.f_lucv < 0 or self.f_lucd < 0 or self.f_lucv + self.f_lucd > 1:
            raise LandModelError(f"{self.name}: f_lucv + f_lucd must lie in [0, 1]")
        if self.c0 <= 0:
            raise LandModelError(f"{self.name}: C0 must be positive")

    def __build_parameter_arrays__(self) -> None:
        """Copy the per-biome parameters into numpy arrays in biome order."""
        self.p: dict[str, NDArrayFloat] = {
            var: np.array([self.params[var][b] for b in self.biome_list])
            for var in BIOME_PARAMS
        }
        self.frozen_tables = [
            frozen_fraction_table(self.params["permafrost_mu"][b], self.params["permafrost_sigma"][b])
            for b in self.biome_list
        ]

    def __init_slow_parameters__(self) -> None:
        nb = len(self.biome_list)
        self.co2fert = np.ones(nb)
        self.tempfertd = np.ones(nb)
        self.tempferts = np.ones(nb)
        self.last_tempferts = np.zeros(nb)
        self.ffrozen = np.ones(nb)
        self.npp_luc_adjust = 1.0
        self.permafrost0 = self.__pool_array__("permafrost_c")

    def set_spinup(self, flag: bool) -> None:
        if self.in_spinup and not flag:
            self.end_of_spinup_vegc = sum_carbon_values(self.pools["veg_c"]).value()
            self.permafrost0 = self.__pool_array__("permafrost_c")
            logging.info(
                f"{self.name}: spinup finished, vegetation C = {self.end_of_spinup_vegc:.3f} PgC"
            )
        super().set_spinup(flag)

    def start_tracking(self) -> None:
        """Attribute all carbon to the pool it currently sits in."""
        for var in BIOME_POOLS:
            for cv in self.pools[var].values():
                cv.start_tracking()
        self.atmos_c.start_tracking()
        self.earth_c.start_tracking()
        self.tracking = True
        logging.info(f"{self.name}: carbon tracking started")

    # ---------------------------------------------------------------
    # helpers
    def __pool_array__(self, var: str) -> NDArrayFloat:
        return np.array([self.pools[var][b].value() for b in self.biome_list])

    def __current_vector__(self) -> NDArrayFloat:
        c = np.zeros(NCPOOL)
        self.__write_vector__(c)
        return c

    def __write_vector__(self, c: NDArrayFloat) -> None:
        c[ATMOS] = self.atmos_c.value()
        c[EARTH] = self.earth_c.value()
        for var, i in POOL_INDEX.items():
            c[i] = sum_carbon_values(self.pools[var]).value()

    def __input__(self, var: str, t: float) -> float:
        """Value of an input series at t; zero in spinup or if not given."""
        if self.in_spinup:
            return 0.0
        return series_value(self.inputs[var], t)

    def __land_tas__(self, t: float) -> float:
        ts = self.inputs["land_tas"]
        if ts.size == 0 or not ts.in_range(t):
            return 0.0
        return series_value(ts, t)

    def __record__(self, key: str, t: float, value: tp.Any) -> None:
        if key not in self.history:
            self.history[key] = TimeSeries(f"{self.name}.{key}")
        self.history[key].set(t, value)

    def log_pools(self, t: float) -> None:
        """Write the current pools to the log at DEBUG level."""
        logging.debug(
            f"{self.name}: t={t}, atmos={self.atmos_c}, earth={self.earth_c}, Ca={self.Ca:.3f}"
        )
        for biome in self.biome_list:
            pools = ", ".join(f"{var}={self.pools[var][biome].value():.4f}" for var in BIOME_POOLS)
            logging.debug(f"{self.name}: {biome}: {pools}")

    # ---------------------------------------------------------------
    # fluxes
    def compute_fluxes(self, t: float, c: NDArrayFloat) -> dict[str, tp.Any]:
        """Compute all fluxes (PgC/yr) for the candidate vector c.

        Biome pools are estimated from the pool totals in c and each
        biome's share of the typed pools. Biome fluxes are numpy arrays in
        biome order; global fluxes are floats. The model state is not
        changed.
        """
        veg = c[VEG] * share(self.__pool_array__("veg_c"))
        det = c[DET] * share(self.__pool_array__("detritus_c"))
        soil = c[SOIL] * share(self.__pool_array__("soil_c"))
        thawed = c[THAWEDP] * share(self.__pool_array__("thawed_permafrost_c"))
        p = self.p

        npp = p["npp_flux0"] * self.co2fert * self.npp_luc_adjust
        rh_det = 0.25 * det * self.tempfertd
        rh_soil = 0.02 * soil * self.tempferts
        rh_thawed = 0.02 * thawed * (1.0 - p["fpf_static"]) * self.tempferts
        litter = 0.035 * veg

        luc_em = self.__input__("luc_emissions", t)
        luc_up = self.__input__("luc_uptake", t)
        land_share = share(veg + det + soil)
        luc_em_b = luc_em * land_share
        luc_up_b = luc_up * land_share
        rh = rh_det + rh_soil + rh_thawed
        thaw, refreeze_thawed, refreeze_soil = self.permafrost_fluxes(c)

        return {
            "npp": npp,
            "npp_v": npp * p["f_nppv"],
            "npp_d": npp * p["f_nppd"],
            "npp_s": npp * (1.0 - p["f_nppv"] - p["f_nppd"]),
            "rh_det": rh_det,
            "rh_soil": rh_soil,
            "rh_thawed": rh_thawed,
            "rh": rh,
            "litter_d": litter * p["f_litterd"],
            "litter_s": litter * (1.0 - p["f_litterd"]),
            "det_soil": 0.6 * det,
            "luc_em": luc_em_b,
            "luc_up": luc_up_b,
            "thaw": thaw,
            "refreeze_thawed": refreeze_thawed,
            "refreeze_soil": refreeze_soil,
            "nbp": npp - rh - luc_em_b + luc_up_b,
            "ffi": self.__input__("ffi_emissions", t),
            "daccs": self.__input__("daccs_uptake", t),
        }

    def reported_fluxes(self, t: float) -> dict[str, tp.Any]:
        """Fluxes of the current state, with an active NBP constraint applied.

        If the NBP constraint has a value for the rounded date, NPP and RH
        are each shifted by half the difference between the target and the
        computed NBP, and their component fluxes are rescaled.
        """
        fl = self.compute_fluxes(t, self.__current_vector__())
        ts = self.inputs["NBP_constrain"]
        if self.in_spinup or not ts.exists(_nearest_year(t)):
            return fl

        diff = ts.get(_nearest_year(t)) - fl["nbp"].sum()
        npp_total = fl["npp"].sum()
        rh_total = fl["rh"].sum()
        npp_ratio = (npp_total + diff / 2) / npp_total if npp_total > 0 else 1.0
        rh_ratio = (rh_total - diff / 2) / rh_total if rh_total > 0 else 1.0
        for k in ("npp", "npp_v", "npp_d", "npp_s"):
            fl[k] = fl[k] * npp_ratio
        for k in ("rh_det", "rh_soil", "rh_thawed", "rh"):
            fl[k] = fl[k] * rh_ratio
        fl["nbp"] = fl["npp"] - fl["rh"] - fl["luc_em"] + fl["luc_up"]
        return fl

    # ---------------------------------------------------------------
    # BoxModel interface
    def export_state(self, t: float, c: NDArrayFloat) -> None:
        self.check_vector(c)
        self.__write_vector__(c)
        self.ode_start_date = t
        self._anchor_fluxes = self.compute_fluxes(t, c)

    def compute_derivatives(self, t: float, c: NDArrayFloat, dcdt: NDArrayFloat) -> int:
        if not np.all(np.isfinite(c[list(self.pool_indices)])):
            return CARBON_CYCLE_RETRY

        fl = self.compute_fluxes(t, c)
        npp = fl["npp"].sum()
        rh = fl["rh"].sum()
        luc_em = fl["luc_em"].sum()
        luc_up = fl["luc_up"].sum()
        luc_net = luc_em - luc_up
        refreeze = fl["refreeze_thawed"] + fl["refreeze_soil"]

        dcdt[ATMOS] += fl["ffi"] - fl["daccs"] + luc_net - npp + rh
        dcdt[VEG] += (fl["npp_v"].sum() - fl["litter_d"].sum() - fl["litter_s"].sum()
                      - luc_net * self.f_lucv)
        dcdt[DET] += (fl["npp_d"].sum() + fl["litter_d"].sum() - fl["det_soil"].sum()
                      - fl["rh_det"].sum() - luc_net * self.f_lucd)
        dcdt[SOIL] += (fl["npp_s"].sum() + fl["litter_s"].sum() + fl["det_soil"].sum()
                       - fl["rh_soil"].sum() - fl["refreeze_soil"].sum()
                       - luc_net * (1.0 - self.f_lucv - self.f_lucd))
        dcdt[PERMAFROST] += refreeze.sum() - fl["thaw"].sum()
        dcdt[THAWEDP] += (fl["thaw"].sum() - fl["refreeze_thawed"].sum()
                          - fl["rh_thawed"].sum())
        dcdt[EARTH] += fl["daccs"] - fl["ffi"]
        return ODE_SUCCESS

    def recompute_slow_parameters(self, t: float, c: NDArrayFloat) -> None:
        """Update fertilization, respiration and permafrost factors.

        In spinup all factors are held at their neutral values and no
        permafrost thaws.
        """
        self.Ca = c[ATMOS] / PPMVCO2_TO_PGC
        nb = len(self.biome_list)
        if self.in_spinup:
            self.co2fert = np.ones(nb)
            self.tempfertd = np.ones(nb)
            self.tempferts = np.ones(nb)
            self.ffrozen = np.ones(nb)
            self.npp_luc_adjust = 1.0
            return

        p = self.p
        wf = p["warmingfactor"]
        tas = self.__land_tas__(t)
        tas_rm = self.__soil_temperature__(t)
        for i in range(nb):
            self.co2fert[i] = co2_fertilization(self.Ca, self.c0, p["beta"][i])
            self.tempfertd[i] = q10_factor(p["q10_rh"][i], tas * wf[i])
            self.ffrozen[i] = frozen_fraction(tas * wf[i], *self.frozen_tables[i])

        # soil warms slowly, and its respiration factor never declines
        tempferts = np.array([q10_factor(p["q10_rh"][i], tas_rm * wf[i]) for i in range(nb)])
        self.tempferts = np.maximum(tempferts, self.last_tempferts)
        self.last_tempferts = self.tempferts.copy()

        _, _, refreeze_soil = self.permafrost_fluxes(c)
        if refreeze_soil.sum() > 0:
            logging.debug(
                f"{self.name}: t={t}, refreezing {refreeze_soil.sum():.4f} PgC/yr from soil"
            )

        if self.end_of_spinup_vegc > 0:
            self.npp_luc_adjust = (
                self.end_of_spinup_vegc - self.cum_luc_va
            ) / self.end_of_spinup_vegc
        logging.debug(
            f"{self.name}: t={t}, Ca={self.Ca:.3f}, co2fert={self.co2fert}, "
            f"tempfertd={self.tempfertd}, tempferts={self.tempferts}, ffrozen={self.ffrozen}"
        )

    def permafrost_fluxes(
        self, c: NDArrayFloat
    ) -> tuple[NDArrayFloat, NDArrayFloat, NDArrayFloat]:
        """Thaw and refreeze rates (PgC/yr) for the candidate vector c.

        Permafrost relaxes towards permafrost0 * ffrozen. Refreezing
        carbon is taken from the thawed pool first and from soil for the
        remainder. Nothing thaws in spinup.

        Returns
        -------
        tuple
            (thaw, refreeze from thawed permafrost, refreeze from soil),
            one array entry per biome
        """
        nb = len(self.biome_list)
        if self.in_spinup:
            return np.zeros(nb), np.zeros(nb), np.zeros(nb)

        pf = c[PERMAFROST] * share(self.__pool_array__("permafrost_c"))
        thawed = c[THAWEDP] * share(self.__pool_array__("thawed_permafrost_c"))
        rate = pf - self.permafrost0 * self.ffrozen
        thaw = np.maximum(rate, 0.0)
        refreeze = np.maximum(-rate, 0.0)
        refreeze_thawed = np.minimum(refreeze, np.maximum(thawed, 0.0))
        return thaw, refreeze_thawed, refreeze - refreeze_thawed

    def __soil_temperature__(self, t: float) -> float:
        """Mean land temperature over the Q10_TEMPN years before t."""
        rec = self.history.get("land_tas")
        if rec is None:
            return 0.0
        end = math.floor(t) - Q10_TEMPLAG
        vals = [rec.get(i) for i in range(end - Q10_TEMPN, end) if rec.exists(i)]
        return window_mean(np.array(vals, dtype=float), Q10_TEMPN)

    def import_state(self, t: float, c: NDArrayFloat) -> None:
        """Take over the solved pools and apply checks and constraints.

        The steps are: apportion the pool changes to the biomes, move the
        NBP constraint shortfall between land and deep ocean, check mass
        conservation of the whole state vector, and pin the atmosphere to
        a concentration constraint (in spinup always to C0). Residuals of
        both constraints are sent to the deep ocean.

        Raises
        ------
        MassConservationError
            If the total carbon of c differs from the last step
        """
        self.check_vector(c)
        yf = self.year_fraction(t)
        fl = self._anchor_fluxes
        if fl is None:
            raise BoxModelError(f"{self.name}: import_state() called before export_state()")
        logging.debug(f"{self.name}: stashing at t={t}, solver pools: {c}")
        self.log_pools(t)

        wt = share(fl["npp"] + fl["rh"])
        targets = {}
        for var, i in POOL_INDEX.items():
            old = self.__pool_array__(var)
            weights = wt if var in REQUIRED_POOLS else share(old)
            targets[var] = apportion(old, c[i], weights)

        if self.tracking:
            self.__track_fluxes__(fl, yf)

        for var, new in targets.items():
            for biome, v in zip(self.biome_list, new):
                self.pools[var][biome] = self.pools[var][biome].adjust_to_solved_value(
                    _nonnegative(v), allow_untracked=False
                )
        self.atmos_c = self.atmos_c.adjust_to_solved_value(c[ATMOS])
        self.earth_c = self.earth_c.adjust_to_solved_value(c[EARTH])
        self.log_pools(t)

        self.__apply_nbp_constraint__(t, yf, fl)
        self.__check_mass__(t, c)
        self.__apply_co2_constraint__(t)

        if not self.in_spinup:
            luc_net = fl["luc_em"].sum() - fl["luc_up"].sum()
            self.cum_luc_va += luc_net * self.f_lucv * yf
            if (
                not self.tracking
                and self.tracking_date != "None"
                and t >= self.tracking_date
            ):
                self.start_tracking()

        self.ode_start_date = t
        if not self.in_spinup:
            self.record_state(t)

    def __track_fluxes__(self, fl: dict[str, tp.Any], yf: float) -> None:
        """Move the carbon of one step between pools to update provenance.

        Magnitudes are fixed afterwards by adjust_to_solved_value; this
        only decides where the carbon in each pool came from.
        """
        for i, b in enumerate(self.biome_list):
            veg, det, soil = ("veg_c", b), ("detritus_c", b), ("soil_c", b)
            pf, thawed = ("permafrost_c", b), ("thawed_permafrost_c", b)
            atm = ("atmos_c", None)
            luc_net = fl["luc_em"][i] - fl["luc_up"][i]
            luc_split = ((veg, self.f_lucv), (det, self.f_lucd),
                         (soil, 1.0 - self.f_lucv - self.f_lucd))

            self.__transfer__(atm, veg, fl["npp_v"][i] * yf)
            self.__transfer__(atm, det, fl["npp_d"][i] * yf)
            self.__transfer__(atm, soil, fl["npp_s"][i] * yf)
            self.__transfer__(veg, det, fl["litter_d"][i] * yf)
            self.__transfer__(veg, soil, fl["litter_s"][i] * yf)
            self.__transfer__(det, soil, fl["det_soil"][i] * yf)
            self.__transfer__(det, atm, fl["rh_det"][i] * yf)
            self.__transfer__(soil, atm, fl["rh_soil"][i] * yf)
            self.__transfer__(thawed, atm, fl["rh_thawed"][i] * yf)
            for pool, f in luc_split:
                if luc_net > 0:
                    self.__transfer__(pool, atm, luc_net * f * yf)
                else:
                    self.__transfer__(atm, pool, -luc_net * f * yf)
            self.__transfer__(pf, thawed, fl["thaw"][i] * yf)
            self.__transfer__(thawed, pf, fl["refreeze_thawed"][i] * yf)
            self.__transfer__(soil, pf, fl["refreeze_soil"][i] * yf)

        self.__transfer__(("earth_c", None), ("atmos_c", None), fl["ffi"] * yf)
        self.__transfer__(("atmos_c", None), ("earth_c", None), fl["daccs"] * yf)

    def __get_pool__(self, key: tuple[str, str | None]) -> CarbonValue:
        var, biome = key
        return getattr(self, var) if biome is None else self.pools[var][biome]

    def __set_pool__(self, key: tuple[str, str | None], cv: CarbonValue) -> None:
        var, biome = key
        if biome is None:
            setattr(self, var, cv)
        else:
            self.pools[var][biome] = cv

    def __transfer__(self, src, dst, amount: float) -> None:
        """Move amount PgC from src to dst, carrying the source composition."""
        if amount <= 0.0:
            return
        source = self.__get_pool__(src)
        flux = source.flux_from_value(min(amount, source.value()))
        self.__set_pool__(src, source - flux)
        self.__set_pool__(dst, self.__get_pool__(dst) + flux)

    def __send_to_deep_ocean__(self, amount: float) -> None:
        if self.deep_ocean_sink is None:
            raise BoxModelError(
                f"{self.name}: no deep ocean connected to receive {amount:.6f} PgC"
            )
        self.deep_ocean_sink.dump_to_deep_ocean(amount)

    def __apply_nbp_constraint__(self, t: float, yf: float, fl: dict[str, tp.Any]) -> None:
        """Move the NBP shortfall of this step from the deep ocean to land.

        The shortfall is spread over vegetation, detritus and soil by
        their post-solve size, or evenly if they are all empty. The
        atmosphere is left alone.
        """
        self.nbp_adjustment = 0.0
        ts = self.inputs["NBP_constrain"]
        if self.in_spinup or not ts.exists(_nearest_year(t)):
            return

        diff = ts.get(_nearest_year(t)) - fl["nbp"].sum()
        self.nbp_adjustment = diff
        pool_diff = diff * yf
        logging.info(f"{self.name}: t={t}, NBP constraint shortfall {diff:.6f} PgC/yr")
        if pool_diff == 0.0:
            return

        sizes = np.concatenate([self.__pool_array__(var) for var in REQUIRED_POOLS])
        new = sizes + pool_diff * share(sizes)
        nb = len(self.biome_list)
        for k, var in enumerate(REQUIRED_POOLS):
            for biome, v in zip(self.biome_list, new[k * nb:(k + 1) * nb]):
                self.pools[var][biome] = self.pools[var][biome].adjust_to_solved_value(
                    _nonnegative(v)
                )
        self.__send_to_deep_ocean__(-pool_diff)

    def __check_mass__(self, t: float, c: NDArrayFloat) -> None:
        total = float(np.sum(c[:NCPOOL]))
        diff = abs(total - self.masstot)
        logging.debug(f"{self.name}: masstot={self.masstot}, sum={total}, diff={diff}")
        if self.masstot > 0 and diff > MB_EPSILON:
            logging.error(
                f"{self.name}: mass not conserved at t={t}: "
                f"last sum = {self.masstot}, sum = {total}, diff = {diff}"
            )
            raise MassConservationError(
                f"{self.name}: mass not conserved at t={t} (diff = {diff:.3e} PgC)"
            )
        self.masstot = total

    def __apply_co2_constraint__(self, t: float) -> None:
        """Pin the atmosphere to the CO2 target and dump the residual."""
        self.residual = 0.0
        ts = self.inputs["CO2_constrain"]
        if self.in_spinup:
            target = self.c0
        elif ts.in_range(t):
            target = series_value(ts, t)
        else:
            self.Ca = self.atmos_c.value() / PPMVCO2_TO_PGC
            return

        target_c = target * PPMVCO2_TO_PGC
        residual = self.atmos_c.value() - target_c
        if residual != 0.0:
            logging.info(
                f"{self.name}: t={t}, constraining atmospheric CO2 to {target} ppmv, "
                f"residual {residual:.6f} PgC"
            )
            self.__send_to_deep_ocean__(residual)
            self.atmos_c = self.atmos_c.adjust_to_solved_value(target_c)
        self.residual = residual
        self.Ca = self.atmos_c.value() / PPMVCO2_TO_PGC

    # ---------------------------------------------------------------
    # state history
    def record_state(self, t: float) -> None:
        """Store pools, fluxes and factors under date t."""
        fl = self.reported_fluxes(t)
        self.__record__("atmos_c", t, self.atmos_c.copy())
        self.__record__("earth_c", t, self.earth_c.copy())
        self.__record__("Ca", t, self.Ca)
        self.__record__("atmos_c_residual", t, self.residual)
        self.__record__("cum_luc_va", t, self.cum_luc_va)
        ts = self.inputs["land_tas"]
        if ts.size == 0 or ts.in_range(t):
            self.__record__("land_tas", t, self.__land_tas__(t))
        for i, b in enumerate(self.biome_list):
            for var in BIOME_POOLS:
                self.__record__(f"{b}.{var}", t, self.pools[var][b].copy())
            for var in BIOME_FLUXES:
                self.__record__(f"{b}.{var}", t, float(fl[var][i]))
            for var in SLOW_PARAMS:
                self.__record__(f"{b}.{var}", t, float(getattr(self, var)[i]))
            self.__record__(f"{b}.last_tempferts", t, float(self.last_tempferts[i]))

    def reset(self, t: float) -> None:
        """Restore the state recorded at date t and drop later records.

        Raises
        ------
        LandModelError
            If no state was recorded at t
        """
        if "atmos_c" not in self.history or not self.history["atmos_c"].exists(t):
            raise LandModelError(f"{self.name}: no state recorded for {t}")

        self.atmos_c = self.history["atmos_c"].get(t).copy()
        self.earth_c = self.history["earth_c"].get(t).copy()
        self.Ca = self.history["Ca"].get(t)
        self.residual = self.history["atmos_c_residual"].get(t)
        self.cum_luc_va = self.history["cum_luc_va"].get(t)
        for i, b in enumerate(self.biome_list):
            for var in BIOME_POOLS:
                self.pools[var][b] = self.history[f"{b}.{var}"].get(t).copy()
            self.last_tempferts[i] = self.history[f"{b}.last_tempferts"].get(t)
        for ts in self.history.values():
            ts.truncate(t)

        self.masstot = 0.0
        self.ode_start_date = t
        self._anchor_fluxes = None
        logging.info(f"{self.name}: reset to {t}")

    # ---------------------------------------------------------------
    # output
    def __biome_of__(self, biome: str | None, var: str) -> str:
        if biome is None:
            if len(self.biome_list) == 1:
                return self.biome_list[0]
            raise LandModelError(f"{self.name}: {var} needs a biome prefix")
        if biome not in self.biome_list:
            raise LandModelError(f"{self.name}: unknown biome '{biome}'")
        return biome

    def __history_value__(self, key: str, date: float) -> tp.Any:
        if key not in self.history or not self.history[key].exists(date):
            raise LandModelError(f"{self.name}: no {key} recorded for {date}")
        return self.history[key].get(date)

    def get_data(self, var_name: str, date: float | None = None) -> tp.Any:
        """Return a pool, flux, parameter or input value.

        Pools are returned as CarbonValue, everything else as a pint
        Quantity. Without a biome prefix, biome pools and fluxes are
        summed over all biomes.

        Parameters
        ----------
        var_name : str
            Variable name, optionally prefixed with "<biome>."
        date : float, optional
            Required for input series, forbidden for parameters. For pools
            and fluxes, None returns the current value and a date returns
            the value recorded at that date.

        Raises
        ------
        LandModelError
            If the variable or biome is unknown, the date rule is
            violated, or nothing was recorded at date
        """
        has_prefix = BIOME_SPLIT_CHAR in var_name
        biome, var = split_biome_name(var_name, None)
        if biome is not None and biome not in self.biome_list:
            raise LandModelError(f"{self.name}: unknown biome '{biome}'")

        if var in BIOME_PARAMS:
            if date is not None:
                raise LandModelError(f"{var_name} is a parameter and takes no date")
            b = self.__biome_of__(biome, var)
            return Q_(self.params[var][b], BIOME_PARAMS[var][1])

        if has_prefix and var not in BIOME_POOLS and var not in BIOME_FLUXES + SLOW_PARAMS:
            raise LandModelError(f"{var} is global and cannot have a biome prefix")

        if var in GLOBAL_PARAMS:
            if date is not None:
                raise LandModelError(f"{var_name} is a parameter and takes no date")
            value = self.c0 if var == "C0" else getattr(self, var)
            return Q_(value, GLOBAL_PARAMS[var][1])

        if var in INPUT_SERIES:
            if date is None:
                raise LandModelError(f"{var_name} is a time series and needs a date")
            return Q_(series_value(self.inputs[var], date), INPUT_SERIES[var])

        biomes = self.biome_list if biome is None else [biome]

        if var in BIOME_POOLS:
            if date is None:
                values = [self.pools[var][b] for b in biomes]
            else:
                values = [self.__history_value__(f"{b}.{var}", date) for b in biomes]
            return sum_carbon_values(dict(zip(biomes, values)))

        if var in GLOBAL_POOLS:
            if date is None:
                return getattr(self, var).copy()
            return self.__history_value__(var, date).copy()

        if var in BIOME_FLUXES:
            if date is None:
                fl = self.reported_fluxes(self.ode_start_date)
                idx = [self.biome_list.index(b) for b in biomes]
                return Q_(float(fl[var][idx].sum()), U_PGC_YR)
            return Q_(sum(self.__history_value__(f"{b}.{var}", date) for b in biomes), U_PGC_YR)

        if var in SLOW_PARAMS:
            b = self.__biome_of__(biome, var)
            if date is None:
                return Q_(float(getattr(self, var)[self.biome_list.index(b)]), U_UNITLESS)
            return Q_(self.__history_value__(f"{b}.{var}", date), U_UNITLESS)

        if var == "Ca":
            value = self.Ca if date is None else self.__history_value__("Ca", date)
            return Q_(value, U_PPMV_CO2)

        if var == "atmos_c_residual":
            if date is None:
                value = self.residual
            else:
                value = self.__history_value__("atmos_c_residual", date)
            return Q_(value, U_PGC)

        raise LandModelError(f"{self.name}: unknown variable '{var_name}'")
