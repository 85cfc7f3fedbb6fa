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

import logging
import typing as tp

import numpy as np
import numpy.typing as npt

from .box_model import (
    ATMOS,
    CHEMISTRY_FAILURE,
    OCEAN,
    ODE_SUCCESS,
    PPMVCO2_TO_PGC,
    BoxModel,
    BoxModelError,
)
from .carbon_value import CarbonValue
from .initialize_unit_registry import Q_, U_PGC, U_PGC_YR, U_PPMV_CO2
from .time_series import TimeSeries

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]


class OceanBoxModel(BoxModel):
    """A two layer ocean that exchanges CO2 with the atmosphere.

    The solver sees a single ``OCEAN`` entry (surface + deep). The air-sea
    flux depends on the difference between atmospheric CO2 and the CO2
    partial pressure of the surface layer, which rises with the surface
    carbon inventory according to the Revelle buffer factor:

    pCO2 = C0 * (surface / surface0) ** revelle

    Surface and deep layers mix once per step in ``import_state``. The
    deep layer also receives the constraint residuals of other models
    through ``dump_to_deep_ocean``.

    Parameters
    ----------
    name : str
    surface_c : str or Quantity, default="900 PgC"
    deep_c : str or Quantity, default="37100 PgC"
    C0 : str or Quantity, default="277.15 ppmv"
        Atmospheric CO2 in equilibrium with the initial surface layer
    k_ao : float, default=0.03
        Gas exchange coefficient in PgC/yr per ppmv
    revelle : float, default=10.0
    k_mix : float, default=0.02
        Fraction of the surface/deep disequilibrium mixed per year

    Examples
    --------
    >>> ocean = OceanBoxModel(name="ocean", surface_c="900 PgC")
    """

    pool_indices = (OCEAN,)

    def __init__(self, **kwargs) -> None:
        self.defaults: dict[str, list[tp.Any, tuple]] = {
            "name": ["ocean", (str,)],
            "surface_c": ["900 PgC", (str, Q_)],
            "deep_c": ["37100 PgC", (str, Q_)],
            "C0": ["277.15 ppmv", (str, Q_)],
            "k_ao": [0.03, (int, float)],
            "revelle": [10.0, (int, float)],
            "k_mix": [0.02, (int, float)],
        }
        self.lrk: list = []
        self.__initialize_keyword_variables__(kwargs)
        self.__register_name__()
        self.__aux_inits__()

        self.surface = CarbonValue(
            self.ensure_q(self.surface_c).to(U_PGC).magnitude, U_PGC, name="ocean_surface"
        )
        self.deep = CarbonValue(
            self.ensure_q(self.deep_c).to(U_PGC).magnitude, U_PGC, name="ocean_deep"
        )
        self.c0_ppmv: float = self.ensure_q(self.C0).to(U_PPMV_CO2).magnitude
        if self.surface.value() <= 0:
            raise BoxModelError(f"{self.name}: surface carbon must be positive")

        self.surface0: float = self.surface.value()
        self.deep0: float = self.deep.value()
        self.atm_ocean_flux: float = 0.0
        self._anchor_surface: float = self.surface.value()
        self._anchor_deep: float = self.deep.value()
        self._dump_since_anchor: float = 0.0
        self.history: dict[str, TimeSeries] = {
            k: TimeSeries(f"{self.name}.{k}") for k in ("surface_c", "deep_c", "atm_ocean_flux")
        }

    def total(self) -> float:
        return self.surface.value() + self.deep.value()

    def pco2_surface(self, surface: float) -> float:
        """CO2 partial pressure (ppmv) of a surface layer holding surface PgC"""
        return self.c0_ppmv * (surface / self.surface0) ** self.revelle

    def export_state(self, t: float, c: NDArrayFloat) -> None:
        self.check_vector(c)
        c[OCEAN] = self.total()
        self.ode_start_date = t
        self._anchor_surface = self.surface.value()
        self._anchor_deep = self.deep.value()
        self._dump_since_anchor = 0.0

    def compute_derivatives(self, t: float, c: NDArrayFloat, dcdt: NDArrayFloat) -> int:
        # the deep layer is not touched by the solver, so whatever is
        # above the anchor deep value belongs to the surface
        surface = c[OCEAN] - self._anchor_deep
        if not np.isfinite(surface) or surface <= 0.0:
            return CHEMISTRY_FAILURE

        ca = c[ATMOS] / PPMVCO2_TO_PGC
        flux = self.k_ao * (ca - self.pco2_surface(surface))
        dcdt[OCEAN] += flux
        dcdt[ATMOS] -= flux
        return ODE_SUCCESS

    def recompute_slow_parameters(self, t: float, c: NDArrayFloat) -> None:
        surface = c[OCEAN] - self._anchor_deep
        ca = c[ATMOS] / PPMVCO2_TO_PGC
        if surface > 0.0:
            self.atm_ocean_flux = self.k_ao * (ca - self.pco2_surface(surface))
        logging.debug(f"{self.name}: t={t}, atm_ocean_flux={self.atm_ocean_flux:.4f}")

    def import_state(self, t: float, c: NDArrayFloat) -> None:
        """Take over the solved ocean carbon and mix the two layers.

        Mixing uses the layer sizes at the start of the step, and dumps
        were already applied to the deep layer, so the result does not
        depend on whether dumps arrive before or after this call.
        """
        yf = self.year_fraction(t)
        uptake = c[OCEAN] - (self._anchor_surface + self._anchor_deep)

        mixing = (
            self.k_mix
            * (self._anchor_surface - self._anchor_deep * self.surface0 / self.deep0)
            * yf
        )
        new_surface = self._anchor_surface + uptake - mixing
        new_deep = self.deep.value() + mixing
        logging.debug(
            f"{self.name}: t={t}, uptake={uptake:.4f}, mixing={mixing:.4f}, "
            f"dumped={self._dump_since_anchor:.4f}"
        )

        self.surface = self.surface.adjust_to_solved_value(new_surface)
        self.deep = self.deep.adjust_to_solved_value(new_deep)
        if yf > 0:
            self.atm_ocean_flux = uptake / yf

        self.ode_start_date = t
        self._anchor_surface = self.surface.value()
        self._anchor_deep = self.deep.value()
        self._dump_since_anchor = 0.0
        if not self.in_spinup:
            self.record_state(t)

    def dump_to_deep_ocean(self, amount: float | CarbonValue) -> None:
        """Add amount PgC to the deep layer, or remove it if negative.

        Dumped carbon is attributed to the untracked source.
        """
        if isinstance(amount, CarbonValue):
            amount = amount.value(U_PGC)
        logging.info(f"{self.name}: {amount:.6f} PgC dumped to deep ocean")
        self.deep = self.deep.adjust_to_solved_value(self.deep.value() + amount)
        self._dump_since_anchor += amount

    def start_tracking(self) -> None:
        self.surface.start_tracking()
        self.deep.start_tracking()

    def record_state(self, t: float) -> None:
        self.history["surface_c"].set(t, self.surface.copy())
        self.history["deep_c"].set(t, self.deep.copy())
        self.history["atm_ocean_flux"].set(t, self.atm_ocean_flux)

    def reset(self, t: float) -> None:
        """Restore the layers recorded at date t and drop later records."""
        if not self.history["surface_c"].exists(t):
            raise BoxModelError(f"{self.name}: no state recorded for {t}")
        self.surface = self.history["surface_c"].get(t).copy()
        self.deep = self.history["deep_c"].get(t).copy()
        self.atm_ocean_flux = self.history["atm_ocean_flux"].get(t)
        for ts in self.history.values():
            ts.truncate(t)
        self.ode_start_date = t
        logging.info(f"{self.name}: reset to {t}")

    def get_data(self, var_name: str, date: float | None = None) -> tp.Any:
        """Return ocean_c, surface_c, deep_c (PgC) or atm_ocean_flux (PgC/yr).

        Raises
        ------
        BoxModelError
            If the variable is unknown or nothing was recorded at date
        """
        if var_name == "ocean_c":
            if date is None:
                return CarbonValue(self.total(), U_PGC)
            return self.get_data("surface_c", date) + self.get_data("deep_c", date)

        if var_name not in self.history:
            raise BoxModelError(f"{self.name}: unknown variable '{var_name}'")

        if date is not None:
            if not self.history[var_name].exists(date):
                raise BoxModelError(f"{self.name}: no {var_name} recorded for {date}")
            v = self.history[var_name].get(date)
        else:
            v = {
                "surface_c": self.surface,
                "deep_c": self.deep,
                "atm_ocean_flux": self.atm_ocean_flux,
            }[var_name]

        if var_name == "atm_ocean_flux":
            return Q_(v, U_PGC_YR)
        return v.copy()
