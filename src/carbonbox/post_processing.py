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

import typing as tp

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pandas import DataFrame

from .box_model import POOL_NAMES, BoxModelError
from .carbon_value import CarbonValue
from .utility_functions import BIOME_SPLIT_CHAR, plot_geometry

if tp.TYPE_CHECKING:
    from .box_model import BoxModel


def recorded_dates(model: BoxModel) -> np.ndarray:
    """Return the dates at which the model recorded its state.

    Raises
    ------
    BoxModelError
        If the model has no state history
    """
    history = getattr(model, "history", None)
    if not history:
        raise BoxModelError(f"{model.name} has no recorded state")
    key = next((k for k in POOL_NAMES if k in history), next(iter(history)))
    if history[key].size == 0:
        raise BoxModelError(f"{model.name} has no recorded state")
    return history[key].dates()


def _magnitude(v: tp.Any) -> tuple[float, str]:
    if isinstance(v, CarbonValue):
        return v.value(), f"{v.units:~P}"
    return float(v.magnitude), f"{v.units:~P}"


def state_to_dataframe(
    model: BoxModel,
    variables: list[str],
    biome: str | None = None,
) -> pd.DataFrame:
    """Collect recorded model output into a DataFrame.

    Parameters
    ----------
    model : BoxModel
        Any model that records its state and provides get_data
    variables : list
        Variable names as understood by ``model.get_data``
    biome : str, optional
        Prefix every variable name with this biome

    Returns
    -------
    pd.DataFrame
        One column per variable, indexed by date. The units of each
        column are stored in ``df.attrs["units"]``.

    Examples
    --------
    >>> df = state_to_dataframe(land, ["atmos_c", "veg_c", "nbp"])
    >>> df.to_csv("land.csv")
    """
    dates = recorded_dates(model)
    df: pd.DataFrame = DataFrame(index=pd.Index(dates, name="date"))
    units: dict[str, str] = {}

    for var in variables:
        name = var if biome is None else f"{biome}{BIOME_SPLIT_CHAR}{var}"
        column = []
        for d in dates:
            value, unit = _magnitude(model.get_data(name, float(d)))
            column.append(value)
        df[name] = column
        units[name] = unit

    df.attrs["units"] = units
    return df


def plot_pools(
    model: BoxModel,
    variables: list[str],
    biome: str | None = None,
    **kwargs,
) -> tuple:
    """Plot recorded model variables against time, one panel each.

    Parameters
    ----------
    model : BoxModel
    variables : list
        Up to 8 variable names
    biome : str, optional
        See ``state_to_dataframe``
    **kwargs : dict
        fn : str, default="{model_name}.pdf"
            Filename to save the plot.
        title : str, default=None
            Figure title.
        no_show : bool, default=False
            If True, don't display or save the figure.

    Returns
    -------
    tuple
        (fig, axes)
    """
    filename = kwargs.get("fn", f"{model.name}.pdf")
    title = kwargs.get("title", "None")
    no_show = kwargs.get("no_show", False)

    df = state_to_dataframe(model, variables, biome)
    size, geometry = plot_geometry(len(df.columns))
    fig, ax = plt.subplots(*geometry)
    axs = np.atleast_1d(ax).flatten()
    fig.set_size_inches(size)

    for i, name in enumerate(df.columns):
        axs[i].plot(df.index, df[name])
        axs[i].set_title(name)
        axs[i].set_xlabel("Year")
        axs[i].set_ylabel(f"{name} [{df.attrs['units'][name]}]")
        axs[i].spines["top"].set_visible(False)
        axs[i].spines["right"].set_visible(False)
    for a in axs[len(df.columns):]:
        a.set_axis_off()

    fig.suptitle(title if title != "None" else model.name)
    fig.tight_layout()
    if not no_show:
        plt.show()
        fig.savefig(filename)
    return fig, axs
