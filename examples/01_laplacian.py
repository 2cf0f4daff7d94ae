"""Five-point Laplacian on a Cartesian grid, run on both backends."""

import numpy as np

from fieldop import Field, field_operator
from fieldop.meshes import IDim, Ioff, JDim, Joff, cartesian_offset_provider


@field_operator
def laplacian(inp: Field[[IDim, JDim], np.float64]) -> Field[[IDim, JDim], np.float64]:
    return -4.0 * inp + inp(Ioff[1]) + inp(Ioff[-1]) + inp(Joff[1]) + inp(Joff[-1])


grid = np.ones((8, 8))
inp = Field((IDim, JDim), grid)

for backend in ("embedded", "compiled"):
    out = Field((IDim, JDim), grid.copy())
    laplacian(inp, out=out, offset_provider=cartesian_offset_provider(), backend=backend)
    print(f"[{backend}] interior max |lap| = {np.abs(out.data[1:-1, 1:-1]).max():g}")
    print(laplacian.explain())
