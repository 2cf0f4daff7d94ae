"""Edge-to-cell reductions on the 12-edge / 6-cell test mesh."""

import numpy as np

from fieldop import Field, field_operator, max_over, neighbor_sum
from fieldop.meshes import (
    E2C,
    NUM_CELLS,
    NUM_EDGES,
    Cell,
    E2CDim,
    Edge,
    simple_offset_provider,
)


@field_operator
def edge_sum(a: Field[[Cell], np.float64]) -> Field[[Edge], np.float64]:
    return neighbor_sum(a(E2C), axis=E2CDim)


@field_operator
def edge_summary(a: Field[[Cell], np.float64]) -> tuple[Field[[Edge], np.float64], Field[[Edge], np.float64]]:
    return edge_sum(a), max_over(a(E2C), axis=E2CDim)


cells = Field((Cell,), np.arange(1.0, NUM_CELLS + 1.0))
summed = Field((Edge,), np.zeros(NUM_EDGES))
largest = Field((Edge,), np.zeros(NUM_EDGES))

edge_summary(
    cells,
    out=(summed, largest),
    offset_provider=simple_offset_provider(),
    backend="compiled",
)
print("sum over E2C:", summed.data)
print("max over E2C:", largest.data)
print(edge_summary.explain())
