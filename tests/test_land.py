import pytest


class RecordingSink:
    """Collects everything sent to the deep ocean."""

    def __init__(self):
        self.amounts = []

    def dump_to_deep_ocean(self, amount):
        self.amounts.append(float(amount))


def boreal_land():
    from carbonbox import TerrestrialBoxModel

    land = TerrestrialBoxModel(name="land")
    land.set_data("boreal.veg_c", "100 PgC")
    land.set_data("boreal.detritus_c", "10 PgC")
    land.set_data("boreal.soil_c", "300 PgC")
    return land


def land_carbon(land):
    """Total carbon held by the land model, including the atmosphere."""
    pools = [
        "atmos_c",
        "earth_c",
        "veg_c",
        "detritus_c",
        "soil_c",
        "permafrost_c",
        "thawed_permafrost_c",
    ]
    return sum(land.get_data(p).value() for p in pools)


def test_named_biome_replaces_default():
    land = boreal_land()

    assert land.biome_list == ["boreal"]
    assert land.get_data("boreal.veg_c").value() == 100.0
    assert land.get_data("veg_c").value() == 100.0
    assert land.get_data("boreal.beta").magnitude == pytest.approx(0.53)
    land.prepare_to_run()
    assert land.get_data("permafrost_c").value() == 0.0


def test_mixing_default_and_named_biomes():
    from carbonbox import LandModelError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.set_data("veg_c", 500.0)
    land.set_data("boreal.veg_c", 100.0)

    assert land.biome_list == ["global", "boreal"]
    with pytest.raises(LandModelError):
        land.prepare_to_run()


def test_missing_biome_data():
    from carbonbox import LandModelError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.set_data("tropical.veg_c", 100.0)
    with pytest.raises(LandModelError):
        land.prepare_to_run()


def test_biome_management():
    from carbonbox import LandModelError

    land = boreal_land()
    land.set_data("boreal.beta", 0.3)
    land.create_biome("tropical")

    assert land.biome_list == ["boreal", "tropical"]
    assert land.get_data("tropical.beta").magnitude == pytest.approx(0.3)
    assert land.get_data("tropical.veg_c").value() == 0.0
    with pytest.raises(LandModelError):
        land.create_biome("boreal")

    land.rename_biome("tropical", "temperate")
    assert land.biome_list == ["boreal", "temperate"]
    with pytest.raises(LandModelError):
        land.get_data("tropical.veg_c")

    land.delete_biome("temperate")
    assert land.biome_list == ["boreal"]
    with pytest.raises(LandModelError):
        land.delete_biome("temperate")


def test_set_data_date_rules():
    from carbonbox import LandModelError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    with pytest.raises(LandModelError):
        land.set_data("beta", 0.5, date=2000)
    with pytest.raises(LandModelError):
        land.set_data("f_lucv", 0.2, date=2000)
    with pytest.raises(LandModelError):
        land.set_data("ffi_emissions", 9.0)
    with pytest.raises(LandModelError):
        land.set_data("boreal.ffi_emissions", 9.0, date=2000)
    with pytest.raises(LandModelError):
        land.set_data("no_such_variable", 1.0)

    land.set_data("ffi_emissions", "9.5 PgC/year", date=2010)
    land.set_data("veg_c", "6e17 gram", date=1750)
    assert land.get_data("ffi_emissions", 2010).magnitude == pytest.approx(9.5)
    assert land.get_data("veg_c").value() == pytest.approx(600.0)
    assert land.get_data("veg_c", 1750).value() == pytest.approx(600.0)


def test_get_data_date_rules():
    from carbonbox import LandModelError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    with pytest.raises(LandModelError):
        land.get_data("beta", 2000)
    with pytest.raises(LandModelError):
        land.get_data("ffi_emissions")
    with pytest.raises(LandModelError):
        land.get_data("soil_c", 2000)
    with pytest.raises(LandModelError):
        land.get_data("boreal.soil_c")
    with pytest.raises(LandModelError):
        land.get_data("not_a_variable")


def test_c0_sets_atmosphere():
    from carbonbox import PPMVCO2_TO_PGC, TerrestrialBoxModel

    land = TerrestrialBoxModel(C0="280 ppmv")
    assert land.get_data("C0").magnitude == pytest.approx(280.0)
    assert land.get_data("atmos_c").value() == pytest.approx(280.0 * PPMVCO2_TO_PGC)


def test_sanity_checks():
    from carbonbox import LandModelError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.set_data("f_nppv", 0.7)
    land.set_data("f_nppd", 0.5)
    with pytest.raises(LandModelError):
        land.prepare_to_run()


def test_derivatives_do_not_change_state():
    import numpy as np

    from carbonbox import NCPOOL, CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    land.set_data("ffi_emissions", 10.0, date=2000)
    land.set_data("ffi_emissions", 10.0, date=2010)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)

    c = solver.c
    c_before = c.copy()
    veg_before = land.get_data("veg_c").value()
    d1 = np.zeros(NCPOOL)
    d2 = np.zeros(NCPOOL)
    land.compute_derivatives(2000.25, c, d1)
    land.compute_derivatives(2000.25, c, d2)

    assert np.array_equal(d1, d2), "derivatives must not depend on earlier calls"
    assert np.array_equal(c, c_before)
    assert land.get_data("veg_c").value() == veg_before
    assert d1.sum() == pytest.approx(0.0, abs=1e-10), "land fluxes must conserve carbon"


def test_nbp_constraint_equal_to_computed_value():
    from carbonbox import CarbonCycleSolver, TerrestrialBoxModel

    sink = RecordingSink()
    land = TerrestrialBoxModel(deep_ocean=sink)
    solver = CarbonCycleSolver(models=[land])
    solver.prepare(2000)

    nbp = land.get_data("nbp").magnitude
    land.set_data("NBP_constrain", nbp, date=2001)
    solver.advance_to(2001)

    assert land.nbp_adjustment == 0.0
    assert sink.amounts == [], "nothing should reach the deep ocean"


def test_nbp_constraint_moves_shortfall_to_deep_ocean():
    from carbonbox import CarbonCycleSolver, TerrestrialBoxModel

    sink = RecordingSink()
    land = TerrestrialBoxModel()
    land.connect_deep_ocean(sink)
    solver = CarbonCycleSolver(models=[land])
    solver.prepare(2000)

    target = land.get_data("nbp").magnitude + 1.0
    land.set_data("NBP_constrain", target, date=2001)
    solver.advance_to(2001)

    assert land.nbp_adjustment == pytest.approx(1.0)
    assert len(sink.amounts) == 1
    assert sink.amounts[0] == pytest.approx(-1.0)
    assert land.get_data("nbp", 2001).magnitude == pytest.approx(target)


def test_co2_constraint_dumps_residual_once():
    from carbonbox import PPMVCO2_TO_PGC, CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    class CountingOcean(OceanBoxModel):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            self.dumps = []

        def dump_to_deep_ocean(self, amount):
            self.dumps.append(float(amount))
            super().dump_to_deep_ocean(amount)

    land = TerrestrialBoxModel()
    ocean = CountingOcean()
    land.connect_deep_ocean(ocean)
    for year in (2000, 2005):
        land.set_data("ffi_emissions", 10.0, date=year)
        land.set_data("CO2_constrain", 300.0, date=year)

    solver = CarbonCycleSolver(models=[land, ocean])
    with pytest.warns(UserWarning):
        solver.prepare(2000)
    total0 = land_carbon(land) + ocean.get_data("ocean_c").value()

    solver.advance_to(2001)
    assert len(ocean.dumps) == 1, "one residual per step"
    assert ocean.dumps[0] == pytest.approx(land.get_data("atmos_c_residual").magnitude)
    assert land.get_data("Ca").magnitude == pytest.approx(300.0)
    assert land.get_data("atmos_c").value() == pytest.approx(300.0 * PPMVCO2_TO_PGC)

    # the mass check of the next step sees the dumped carbon
    solver.advance_to(2002)
    assert len(ocean.dumps) == 2
    total = land_carbon(land) + ocean.get_data("ocean_c").value()
    assert total == pytest.approx(total0, abs=1e-6)


def test_mass_check_detects_lost_carbon():
    import numpy as np

    from carbonbox import ATMOS, MassConservationError, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.prepare_to_run()
    c = np.zeros(8)
    land.export_state(0.0, c)
    land.import_state(1.0, c)

    land.export_state(1.0, c)
    c[ATMOS] -= 1.0
    with pytest.raises(MassConservationError):
        land.import_state(2.0, c)


def test_recorded_history_and_reset():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    land.set_data("ffi_emissions", 10.0, date=2000)
    land.set_data("ffi_emissions", 10.0, date=2010)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)
    solver.advance_to(2003)

    atmos_2001 = land.get_data("atmos_c", 2001).value()
    assert atmos_2001 > land.get_data("atmos_c", 2000).value()
    assert land.get_data("global.co2fert", 2002).magnitude > 1.0
    assert land.get_data("npp", 2002).magnitude > 0.0

    solver.reset(2001)
    assert land.get_data("atmos_c").value() == pytest.approx(atmos_2001)
    assert not land.history["atmos_c"].exists(2002)

    solver.advance_to(2002)
    assert land.history["atmos_c"].exists(2002)


def test_tracking_starts_at_tracking_date():
    import math

    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel(tracking_date=2001)
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    land.set_data("ffi_emissions", 10.0, date=2000)
    land.set_data("ffi_emissions", 10.0, date=2010)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)

    solver.advance_to(2001)
    assert land.tracking

    solver.advance_to(2003)
    atmos = land.get_data("atmos_c")
    assert atmos.get_fraction("earth_c") > 0.0, "fossil carbon should reach the atmosphere"
    assert math.fsum(atmos.get_tracking_map().values()) == pytest.approx(1.0)
    veg = land.get_data("veg_c")
    assert veg.get_fraction("atmos_c") > 0.0, "NPP should move atmospheric carbon to vegetation"


def test_apportion_keeps_biome_pools_nonnegative():
    import numpy as np

    from carbonbox.utility_functions import apportion

    old = np.array([1.0, 1000.0])
    new = apportion(old, 990.0, np.array([0.9, 0.1]))
    assert new[0] == 0.0
    assert new[1] == pytest.approx(990.0)

    new = apportion(old, 1010.0, np.array([0.9, 0.1]))
    assert new == pytest.approx([9.1, 1000.9])
    assert apportion(old, -1.0, np.array([0.5, 0.5])).sum() == 0.0


def test_two_biomes_with_uneven_activity():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel
    from carbonbox.land import BIOME_POOLS

    land = TerrestrialBoxModel()
    for biome, veg, npp in (("a", 1.0, 50.0), ("b", 1000.0, 1.0)):
        land.set_data(f"{biome}.veg_c", veg)
        land.set_data(f"{biome}.detritus_c", 1.0)
        land.set_data(f"{biome}.soil_c", 1.0)
        land.set_data(f"{biome}.npp_flux0", npp)
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)
    total0 = land_carbon(land) + ocean.get_data("ocean_c").value()

    for year in (2001, 2002, 2003):
        solver.advance_to(year)
        for biome in ("a", "b"):
            for var in BIOME_POOLS:
                assert land.get_data(f"{biome}.{var}").value() >= 0.0, f"{biome}.{var}"

    total = land_carbon(land) + ocean.get_data("ocean_c").value()
    assert total == pytest.approx(total0, abs=1e-6)
    assert land.get_data("veg_c").value() == pytest.approx(solver.c[1])


def test_nbp_constraint_with_empty_land_pools():
    from carbonbox import CarbonCycleSolver, TerrestrialBoxModel

    sink = RecordingSink()
    land = TerrestrialBoxModel(deep_ocean=sink)
    for var in ("veg_c", "detritus_c", "soil_c"):
        land.set_data(var, 0.0)
    land.set_data("npp_flux0", 0.0)
    solver = CarbonCycleSolver(models=[land])
    solver.prepare(2000)
    land.set_data("NBP_constrain", 1.0, date=2001)
    solver.advance_to(2001)

    assert land.nbp_adjustment == pytest.approx(1.0)
    assert sink.amounts == [pytest.approx(-1.0)]
    for var in ("veg_c", "detritus_c", "soil_c"):
        assert land.get_data(var).value() == pytest.approx(1.0 / 3.0)


def test_nbp_constraint_date_rounds_half_years_up():
    from carbonbox import CarbonCycleSolver, TerrestrialBoxModel

    sink = RecordingSink()
    land = TerrestrialBoxModel(deep_ocean=sink)
    solver = CarbonCycleSolver(models=[land])
    solver.prepare(2000)

    target = land.get_data("nbp").magnitude + 1.0
    land.set_data("NBP_constrain", target, date=2001)
    solver.advance_to(2000.5)

    assert land.nbp_adjustment == pytest.approx(1.0), "2000.5 should use the 2001 target"
    assert sink.amounts == [pytest.approx(-0.5)]


def test_refreeze_draws_from_thawed_pool_first():
    import numpy as np

    from carbonbox import TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.prepare_to_run()
    land.set_data("permafrost_c", 800.0)
    land.set_data("thawed_permafrost_c", 50.0)
    c = np.zeros(8)
    land.export_state(2000.0, c)
    land.recompute_slow_parameters(2000.0, c)

    thaw, from_thawed, from_soil = land.permafrost_fluxes(c)
    assert land.ffrozen[0] == 1.0
    assert thaw[0] == 0.0
    assert from_thawed[0] == pytest.approx(50.0)
    assert from_soil[0] == pytest.approx(15.0)

    land.set_data("thawed_permafrost_c", 100.0)
    land.export_state(2000.0, c)
    thaw, from_thawed, from_soil = land.permafrost_fluxes(c)
    assert from_thawed[0] == pytest.approx(65.0)
    assert from_soil[0] == 0.0

    land.set_spinup(True)
    assert all(f.sum() == 0.0 for f in land.permafrost_fluxes(c)), "no thaw in spinup"


def test_frozen_fraction_follows_land_temperature():
    import numpy as np

    from carbonbox import TerrestrialBoxModel

    land = TerrestrialBoxModel()
    land.set_data("land_tas", 0.0, date=2000)
    land.set_data("land_tas", 4.0, date=2010)
    land.prepare_to_run()
    c = np.zeros(8)
    land.export_state(2000.0, c)

    land.recompute_slow_parameters(2000.0, c)
    assert land.ffrozen[0] == 1.0
    land.recompute_slow_parameters(2005.0, c)
    warm = land.ffrozen[0]
    land.recompute_slow_parameters(2010.0, c)
    warmer = land.ffrozen[0]
    assert 0.0 < warmer < warm < 1.0

    thaw, from_thawed, from_soil = land.permafrost_fluxes(c)
    assert thaw[0] == pytest.approx(865.0 * (1.0 - warmer))
    assert from_thawed[0] == 0.0 and from_soil[0] == 0.0


def test_permafrost_thaws_and_refreezes():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    land = TerrestrialBoxModel()
    ocean = OceanBoxModel()
    land.connect_deep_ocean(ocean)
    for year, tas in ((2000, 0.0), (2001, 4.0), (2010, 4.0), (2011, 0.0), (2030, 0.0)):
        land.set_data("land_tas", tas, date=year)
    solver = CarbonCycleSolver(models=[land, ocean])
    solver.prepare(2000)
    total0 = land_carbon(land) + ocean.get_data("ocean_c").value()

    solver.advance_to(2010)
    assert land.ffrozen[0] < 1.0
    assert land.get_data("permafrost_c").value() < 865.0
    thawed = land.get_data("thawed_permafrost_c").value()
    assert thawed > 0.0, "warming should thaw permafrost"

    solver.advance_to(2030)
    assert land.ffrozen[0] == 1.0
    assert land.get_data("permafrost_c").value() == pytest.approx(865.0, abs=0.5)
    assert 0.0 <= land.get_data("thawed_permafrost_c").value() < 1.0

    total = land_carbon(land) + ocean.get_data("ocean_c").value()
    assert total == pytest.approx(total0, abs=1e-6)


def test_luc_uptake_and_daccs():
    from carbonbox import CarbonCycleSolver, OceanBoxModel, TerrestrialBoxModel

    def run(luc_uptake, daccs):
        land = TerrestrialBoxModel()
        ocean = OceanBoxModel()
        land.connect_deep_ocean(ocean)
        for year in (2000, 2010):
            land.set_data("luc_uptake", luc_uptake, date=year)
            land.set_data("daccs_uptake", daccs, date=year)
        solver = CarbonCycleSolver(models=[land, ocean])
        solver.prepare(2000)
        total0 = land_carbon(land) + ocean.get_data("ocean_c").value()
        solver.advance_to(2002)
        total = land_carbon(land) + ocean.get_data("ocean_c").value()
        assert total == pytest.approx(total0, abs=1e-6)
        return land

    base = run(0.0, 0.0)
    land = run(2.0, 1.0)

    earth0 = land.get_data("earth_c", 2000).value()
    assert land.get_data("earth_c").value() - earth0 == pytest.approx(2.0)
    assert base.get_data("earth_c").value() == pytest.approx(earth0)

    def land_pools(m):
        return sum(m.get_data(v).value() for v in ("veg_c", "detritus_c", "soil_c"))

    assert land_pools(land) > land_pools(base), "LUC uptake should add carbon to land"
    assert land.get_data("atmos_c").value() < base.get_data("atmos_c").value()
    assert land.get_data("luc_uptake", 2001).magnitude == pytest.approx(2.0)
