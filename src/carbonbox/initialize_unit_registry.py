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

The unit registry lives in its own module so that every other module
can import it without pulling in the full package.
"""

from __future__ import annotations

from pint import UnitRegistry

ureg = UnitRegistry(on_redefinition="ignore")
Q_ = ureg.Quantity

# carbon mass, not CO2 mass
ureg.define("PgC = 1e15 * gram")
ureg.define("ppmv = 1e-6")

U_PGC = ureg.Unit("PgC")
U_PGC_YR = ureg.Unit("PgC / year")
U_PPMV_CO2 = ureg.Unit("ppmv")
U_DEGC = ureg.Unit("delta_degC")
U_UNITLESS = ureg.Unit("dimensionless")
U_YR = ureg.Unit("year")
