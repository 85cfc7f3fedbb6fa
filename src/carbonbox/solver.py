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

import enum
import logging
import typing as tp

import numpy as np
import numpy.typing as npt
from scipy.integrate import RK45

from .box_model import NCPOOL, ODE_SUCCESS, BoxModel, BoxModelError
from .carbonbox_base import InputError, carbonboxBase
from .initialize_unit_registry import Q_, U_PGC

# declare numpy types
NDArrayFloat = npt.NDArray[np.float64]


class SolverError(Exception):
    """Custom Error Class for unrecoverable integration failures."""

    def __init__(self, message):
        """Initialize Error Instance with formatted message."""
        message = f"\n\n{message}\n"
        super().__init__(message)


class SolverState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"


class CarbonCycleSolver(carbonboxBase):
    """Advance a set of coupled box models in time.

    The solver only handles the flat state vector. Each step of (at most)
    one year is split in two halves. The first half is integrated with
    the slowly varying model parameters frozen at their start-of-step
    values, the models then recompute these parameters at the midpoint,
    and the second half is integrated with the refreshed values. Each half
    uses a fresh adaptive Runge-Kutta stepper that ends exactly on the
    half-step boundary.

    If a model reports a nonzero status from ``compute_derivatives``, or
    the stepper fails, the whole step is retried from its start. After
    ``max_retries`` retries a SolverError is raised.

    Parameters
    ----------
    name : str, default="solver"
    models : list
        BoxModel instances. Their pool_indices must not overlap.
    eps_abs : float, default=1e-6
        Absolute error tolerance of the stepper
    eps_rel : float, default=1e-6
        Relative error tolerance of the stepper
    dt : float, default=0.3
        Initial step size hint in years
    eps_spinup : str or Quantity, default="0.001 PgC"
        Spinup is converged once no pool changes by more than this
    max_retries : int, default=8
    logfile : str, default="None"
        If set, the root logger writes DEBUG output to this file

    Examples
    --------
    >>> solver = CarbonCycleSolver(models=[land, ocean])
    >>> solver.prepare(1750)
    >>> step = 1
    >>> while not solver.run_spinup(step):
    ...     step += 1
    >>> solver.advance_to(2000)
    """

    def __init__(self, **kwargs) -> None:
        self.defaults: dict[str, list[tp.Any, tuple]] = {
            "name": ["solver", (str,)],
            "models": [[], (list,)],
            "eps_abs": [1e-6, (int, float)],
            "eps_rel": [1e-6, (int, float)],
            "dt": [0.3, (int, float)],
            "eps_spinup": ["0.001 PgC", (str, Q_)],
            "max_retries": [8, (int,)],
            "logfile": ["None", (str,)],
        }
        self.lrk: list = ["models"]
        self.__initialize_keyword_variables__(kwargs)
        self.__register_name__()

        if not self.models:
            raise InputError(f"{self.name}: no models to integrate")
        owned: set[int] = set()
        for m in self.models:
            if not isinstance(m, BoxModel):
                raise InputError(f"{m} is not a BoxModel")
            if owned & set(m.pool_indices):
                raise InputError(f"{m.name} owns pools that another model owns")
            owned |= set(m.pool_indices)

        self.eps_spinup_pgc: float = self.ensure_q(self.eps_spinup).to(U_PGC).magnitude
        self.state: SolverState = SolverState.UNINITIALIZED
        self.t: float = np.nan
        self.start_date: float = np.nan
        self.retries: int = 0  # total over the whole run
        self.in_spinup: bool = False
        self._c: NDArrayFloat = np.zeros(NCPOOL)

        if self.logfile != "None":
            self._setup_logging()

    def _setup_logging(self) -> None:
        """Route the root logger to self.logfile."""
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
        logging.basicConfig(
            filename=self.logfile,
            filemode="w",
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(message)s",
        )

    @property
    def c(self) -> NDArrayFloat:
        """Copy of the current state vector"""
        return self._c.copy()

    def cpool(self, i: int) -> float:
        return float(self._c[i])

    def _export(self, t: float) -> NDArrayFloat:
        c = np.zeros(NCPOOL)
        for m in self.models:
            m.export_state(t, c)
        return c

    def _recompute_slow_parameters(self, t: float, c: NDArrayFloat) -> None:
        for m in self.models:
            m.recompute_slow_parameters(t, c)

    def prepare(self, start_date: float) -> None:
        """Check all models and pull the initial state.

        The slow parameters are computed once so that the first half step
        has valid values.
        """
        for m in self.models:
            m.prepare_to_run()
        self.start_date = float(start_date)
        self.t = self.start_date
        self._c = self._export(self.t)
        self._recompute_slow_parameters(self.t, self._c)
        for m in self.models:
            m.record_state(self.t)
        self.state = SolverState.PREPARED
        logging.info(f"{self.name}: prepared at t={self.t}, c={self._c}")

    def _integrate(
        self, t0: float, t1: float, y0: NDArrayFloat
    ) -> tuple[bool, NDArrayFloat, str]:
        """Integrate from t0 to t1 with a fresh RK45 stepper.

        Returns
        -------
        tuple
            (success, state at t1, reason for failure)
        """
        if t1 <= t0:
            return True, y0.copy(), ""

        failures: list[str] = []

        def rhs(t: float, y: NDArrayFloat) -> NDArrayFloat:
            dcdt = np.zeros_like(y)
            for m in self.models:
                status = m.compute_derivatives(t, y, dcdt)
                if status != ODE_SUCCESS:
                    failures.append(f"{m.name} returned status {status} at t={t}")
                    return np.zeros_like(y)
            return dcdt

        stepper = RK45(
            rhs,
            t0,
            y0.copy(),
            t1,
            first_step=min(self.dt, t1 - t0),
            rtol=self.eps_rel,
            atol=self.eps_abs,
        )
        if failures:
            return False, y0, failures[0]

        while stepper.status == "running":
            message = stepper.step()
            if failures:
                return False, y0, failures[0]
            if stepper.status == "failed":
                return False, y0, f"stepper failed at t={stepper.t}: {message}"
            if not np.all(np.isfinite(stepper.y)):
                return False, y0, f"non-finite state at t={stepper.t}"

        return True, stepper.y.copy(), ""

    def _step(self, t0: float, t1: float) -> None:
        """Advance from t0 to t1 (at most one year) with retries."""
        self.state = SolverState.STEPPING
        tmid = t0 + (t1 - t0) / 2.0
        reason = ""
        c_start = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                self.retries += 1
                logging.info(
                    f"{self.name}: carbon model requests retry #{attempt} "
                    f"at t={t0} ({reason})"
                )
                # start again from the start-of-step parameters
                self._recompute_slow_parameters(t0, c_start)

            c0 = self._export(t0)
            if c_start is None:
                c_start = c0.copy()

            ok, c_mid, reason = self._integrate(t0, tmid, c0)
            if ok:
                self._recompute_slow_parameters(tmid, c_mid)
                ok, c_end, reason = self._integrate(tmid, t1, c_mid)
            if ok:
                break
        else:
            self.state = SolverState.FAILED
            logging.error(
                f"{self.name}: giving up after {self.max_retries} retries, "
                f"t={t0}, midpoint={tmid}: {reason}"
            )
            raise SolverError(
                f"{self.name}.advance_to: integration failed at t={t0} "
                f"(midpoint {tmid}) after {self.max_retries} retries\n{reason}"
            )

        logging.debug(f"{self.name}: t={t1}, c={c_end}")
        try:
            for m in self.models:
                m.import_state(t1, c_end)
        except Exception:
            self.state = SolverState.FAILED
            raise

        self.t = t1
        self._c = c_end.copy()

    def advance_to(self, t_new: float) -> SolverState:
        """Integrate until t_new in steps of at most one year.

        Raises
        ------
        SolverError
            If the solver was not prepared, has failed before, t_new lies
            in the past, or a step fails after all retries
        """
        if self.state == SolverState.UNINITIALIZED:
            raise SolverError(f"{self.name}: call prepare() before advance_to()")
        if self.state == SolverState.FAILED:
            raise SolverError(f"{self.name}: solver has failed, call reset() first")
        if t_new < self.t:
            raise SolverError(f"{self.name}: cannot advance from {self.t} back to {t_new}")

        while self.t < t_new:
            self._step(self.t, min(self.t + 1.0, t_new))

        self.state = SolverState.COMPLETED
        return self.state

    def run_spinup(self, step: int) -> bool:
        """Run spinup step number ``step`` (counting from 1).

        In spinup the models disable their constraints and hold
        fertilization, respiration and thaw factors at neutral values.
        Spinup is converged when no pool changes by more than eps_spinup
        over one step. On convergence the models leave spinup and the
        clock returns to the start date.

        Returns
        -------
        bool
            True if converged
        """
        if self.state in (SolverState.UNINITIALIZED, SolverState.FAILED):
            raise SolverError(f"{self.name}: solver not ready for spinup ({self.state.value})")

        t0 = float(step - 1)
        if not self.in_spinup:
            self.in_spinup = True
            for m in self.models:
                m.set_spinup(True)
            self._recompute_slow_parameters(t0, self._export(t0))
            logging.info(f"{self.name}: starting spinup")

        c_old = self._export(t0)
        self._step(t0, t0 + 1.0)
        c_new = self._export(self.t)
        diff = float(np.max(np.abs(c_new - c_old)))
        logging.debug(f"{self.name}: spinup step {step}, max pool change {diff:.6f} PgC")

        if diff >= self.eps_spinup_pgc:
            self.state = SolverState.PREPARED
            return False

        for m in self.models:
            m.set_spinup(False)
        self.in_spinup = False
        self.t = self.start_date
        self._c = self._export(self.t)
        self._recompute_slow_parameters(self.t, self._c)
        for m in self.models:
            m.record_state(self.t)
        self.state = SolverState.PREPARED
        logging.info(f"{self.name}: spinup converged after {step} steps")
        return True

    def get_data(self, var_name: str, date: float | None = None) -> tp.Any:
        """Return var_name from the first model that provides it.

        Raises
        ------
        SolverError
            If no model knows var_name
        """
        errors = []
        for m in self.models:
            try:
                return m.get_data(var_name, date)
            except BoxModelError as err:
                errors.append(str(err).strip())
        raise SolverError(f"{self.name}: no model provides '{var_name}'\n" + "\n".join(errors))

    def reset(self, date: float) -> None:
        """Return all models to the state recorded at date."""
        for m in self.models:
            m.reset(date)
        self.t = float(date)
        self._c = self._export(self.t)
        self._recompute_slow_parameters(self.t, self._c)
        self.state = SolverState.PREPARED
        logging.info(f"{self.name}: reset to t={self.t}")
