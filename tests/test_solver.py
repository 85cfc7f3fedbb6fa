import logging

import pytest

from carbonbox import ATMOS, CARBON_CYCLE_RETRY, EARTH, ODE_SUCCESS, BoxModel


class TransferModel(BoxModel):
    """Moves carbon from the atmosphere to the earth pool.

    With ``target`` set, the atmosphere relaxes towards that value
    instead. The first ``failures`` derivative calls ask for a retry.
    """

    pool_indices = (ATMOS, EARTH)

    def __init__(self, **kwargs):
        self.defaults = {
            "name": ["transfer", (str,)],
            "rate": [1.0, (int, float)],
            "target": [-1.0, (int, float)],
            "failures": [0, (int,)],
        }
        self.lrk = []
        self.__initialize_keyword_variables__(kwargs)
        self.__register_name__()
        self.__aux_inits__()
        self.atmos = 100.0
        self.earth = 50.0
        self.calls = 0
        self.slow_dates = []

    def export_state(self, t, c):
        c[ATMOS] = self.atmos
        c[EARTH] = self.earth
        self.ode_start_date = t

    def import_state(self, t, c):
        self.year_fraction(t)
        self.atmos = c[ATMOS]
        self.earth = c[EARTH]

    def compute_derivatives(self, t, c, dcdt):
        self.calls += 1
        if self.calls <= self.failures:
            return CARBON_CYCLE_RETRY
        if self.target < 0:
            flux = self.rate
        else:
            flux = self.rate * (c[ATMOS] - self.target)
        dcdt[ATMOS] -= flux
        dcdt[EARTH] += flux
        return ODE_SUCCESS

    def recompute_slow_parameters(self, t, c):
        self.slow_dates.append(t)


def test_constant_transfer():
    from carbonbox import CarbonCycleSolver, SolverState

    model = TransferModel()
    solver = CarbonCycleSolver(models=[model])
    solver.prepare(2000)
    assert solver.state == SolverState.PREPARED

    assert solver.advance_to(2002) == SolverState.COMPLETED
    assert solver.t == 2002
    assert solver.cpool(ATMOS) == pytest.approx(98.0)
    assert solver.cpool(EARTH) == pytest.approx(52.0)
    assert model.atmos == pytest.approx(98.0)
    assert 2000.5 in model.slow_dates, "slow parameters are refreshed at the midpoint"
    assert 2001.5 in model.slow_dates


def test_partial_year_step():
    from carbonbox import CarbonCycleSolver

    model = TransferModel()
    solver = CarbonCycleSolver(models=[model])
    solver.prepare(0)
    solver.advance_to(1.5)

    assert solver.t == 1.5
    assert solver.cpool(ATMOS) == pytest.approx(98.5)
    assert 1.25 in model.slow_dates


def test_retries_are_logged(caplog):
    from carbonbox import CarbonCycleSolver

    caplog.set_level(logging.INFO)
    model = TransferModel(failures=3)
    solver = CarbonCycleSolver(models=[model])
    solver.prepare(2000)
    solver.advance_to(2001)

    retries = [r for r in caplog.records if "requests retry" in r.getMessage()]
    assert len(retries) == 3
    assert all(r.levelno == logging.INFO for r in retries)
    assert solver.retries == 3
    assert solver.cpool(ATMOS) == pytest.approx(99.0)


def test_gives_up_after_max_retries(caplog):
    from carbonbox import CarbonCycleSolver, SolverError, SolverState

    caplog.set_level(logging.INFO)
    model = TransferModel(failures=100)
    solver = CarbonCycleSolver(models=[model])
    solver.prepare(2000)

    with pytest.raises(SolverError) as err:
        solver.advance_to(2001)

    assert "2000.0" in str(err.value)
    assert "2000.5" in str(err.value), "the error should name the step midpoint"
    assert solver.state == SolverState.FAILED
    retries = [r for r in caplog.records if "requests retry" in r.getMessage()]
    assert len(retries) == 8
    assert model.atmos == 100.0, "a failed step must not change the model"

    with pytest.raises(SolverError):
        solver.advance_to(2001)


def test_state_machine():
    from carbonbox import CarbonCycleSolver, SolverError

    solver = CarbonCycleSolver(models=[TransferModel()])
    with pytest.raises(SolverError):
        solver.advance_to(2001)
    with pytest.raises(SolverError):
        solver.run_spinup(1)

    solver.prepare(2000)
    solver.advance_to(2001)
    with pytest.raises(SolverError):
        solver.advance_to(2000)


def test_model_checks():
    from carbonbox import CarbonCycleSolver, InputError, KeywordError, MissingKeywordError

    with pytest.raises(MissingKeywordError):
        CarbonCycleSolver()
    with pytest.raises(InputError):
        CarbonCycleSolver(models=[])
    with pytest.raises(InputError):
        CarbonCycleSolver(models=["land"])
    with pytest.raises(InputError):
        CarbonCycleSolver(models=[TransferModel(), TransferModel(name="other")])
    with pytest.raises(InputError):
        CarbonCycleSolver(models=[TransferModel()], dt=-0.1)
    with pytest.raises(KeywordError):
        CarbonCycleSolver(models=[TransferModel()], timestep=1)


def test_spinup_converges():
    from carbonbox import CarbonCycleSolver, SolverState

    model = TransferModel(rate=1.0, target=90.0)
    solver = CarbonCycleSolver(models=[model], eps_spinup="0.001 PgC")
    solver.prepare(1750)

    converged = False
    step = 0
    while not converged and step < 100:
        step += 1
        converged = solver.run_spinup(step)

    assert converged
    assert step > 1
    assert model.atmos == pytest.approx(90.0, abs=0.01)
    assert not model.in_spinup
    assert not solver.in_spinup
    assert solver.t == 1750
    assert solver.state == SolverState.PREPARED


def test_land_and_ocean_conserve_mass():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    for year, ffi, luc in ((2000, 8.0, 1.0), (2010, 10.0, 1.5)):
        land.set_data("ffi_emissions", ffi, date=year)
        land.set_data("luc_emissions", luc, date=year)
        land.set_data("land_tas", 1.0, date=year)

    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)
    total0 = solver.c.sum()
    solver.advance_to(2005)

    assert solver.c.sum() == pytest.approx(total0, abs=1e-6)
    assert solver.get_data("Ca").magnitude > 277.15
    assert solver.get_data("deep_c").value() > 0.0


def test_land_spinup_pins_co2():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(1750)

    assert not solver.run_spinup(1)
    assert land.in_spinup
    assert land.get_data("Ca").magnitude == pytest.approx(277.15)
    assert land.get_data("global.co2fert").magnitude == 1.0


def test_logfile(tmp_path):
    from carbonbox import CarbonCycleSolver

    fn = tmp_path / "solver.log"
    solver = CarbonCycleSolver(models=[TransferModel()], logfile=str(fn))
    try:
        solver.prepare(2000)
        solver.advance_to(2001)
        for handler in logging.root.handlers:
            handler.flush()
        assert "prepared at t=2000.0" in fn.read_text()
    finally:
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
            handler.close()
        logging.root.setLevel(logging.WARNING)
