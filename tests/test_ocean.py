import pytest


def anchored_ocean():
    import numpy as np

    from carbonbox import NCPOOL, OceanBoxModel

    ocean = OceanBoxModel(surface_c="900 PgC", deep_c="37100 PgC", k_mix=0.05)
    c = np.zeros(NCPOOL)
    ocean.export_state(0.0, c)
    return ocean, c


def test_dump_order_does_not_matter():
    from carbonbox import OCEAN

    o1, c = anchored_ocean()
    o2, _ = anchored_ocean()
    c_new = c.copy()
    c_new[OCEAN] += 5.0

    o1.dump_to_deep_ocean(3.0)
    o1.import_state(1.0, c_new)

    o2.import_state(1.0, c_new)
    o2.dump_to_deep_ocean(3.0)

    assert o1.surface.value() == pytest.approx(o2.surface.value())
    assert o1.deep.value() == pytest.approx(o2.deep.value())
    assert o1.total() == pytest.approx(900.0 + 37100.0 + 5.0 + 3.0)


def test_dump_accepts_carbon_values():
    from carbonbox import CarbonValue

    ocean, _ = anchored_ocean()
    ocean.dump_to_deep_ocean(CarbonValue(2.0, "PgC"))
    ocean.dump_to_deep_ocean(-1.0)
    assert ocean.deep.value() == pytest.approx(37101.0)


def test_air_sea_flux_direction():
    import numpy as np

    from carbonbox import ATMOS, NCPOOL, OCEAN, ODE_SUCCESS, PPMVCO2_TO_PGC

    ocean, c = anchored_ocean()
    c[ATMOS] = 2 * 277.15 * PPMVCO2_TO_PGC
    dcdt = np.zeros(NCPOOL)

    assert ocean.compute_derivatives(0.5, c, dcdt) == ODE_SUCCESS
    assert dcdt[OCEAN] > 0.0, "high atmospheric CO2 should drive carbon into the ocean"
    assert dcdt[ATMOS] == -dcdt[OCEAN]


def test_chemistry_failure():
    import numpy as np

    from carbonbox import CHEMISTRY_FAILURE, NCPOOL, OCEAN

    ocean, c = anchored_ocean()
    dcdt = np.zeros(NCPOOL)

    c_bad = c.copy()
    c_bad[OCEAN] = ocean.deep.value() - 1.0
    assert ocean.compute_derivatives(0.5, c_bad, dcdt) == CHEMISTRY_FAILURE

    c_bad[OCEAN] = np.nan
    assert ocean.compute_derivatives(0.5, c_bad, dcdt) == CHEMISTRY_FAILURE
    assert not dcdt.any(), "a failed call must not write derivatives"


def test_history_and_reset():
    from carbonbox import OCEAN, BoxModelError

    ocean, c = anchored_ocean()
    ocean.record_state(0.0)
    c_new = c.copy()
    c_new[OCEAN] += 2.0
    ocean.import_state(1.0, c_new)

    assert ocean.get_data("ocean_c", 1.0).value() == pytest.approx(38002.0)
    assert ocean.get_data("atm_ocean_flux").magnitude == pytest.approx(2.0)

    ocean.reset(0.0)
    assert ocean.get_data("ocean_c").value() == pytest.approx(38000.0)
    with pytest.raises(BoxModelError):
        ocean.get_data("surface_c", 1.0)
    with pytest.raises(BoxModelError):
        ocean.get_data("alkalinity")
    with pytest.raises(BoxModelError):
        ocean.reset(5.0)
