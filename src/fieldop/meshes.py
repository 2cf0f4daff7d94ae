"""Ready-made dimensions, offsets and a small test mesh.

The unstructured mesh is 12 edges over 6 cells; tables are 1-based with ``-1``
marking a missing neighbor.
"""

from __future__ import annotations

from typing import Dict, Union

import numpy as np

from .core.dims import LOCAL, VERTICAL, Connectivity, Dimension, FieldOffset

# Unstructured ---------------------------------------------------------------

Cell = Dimension("Cell")
Edge = Dimension("Edge")
Vertex = Dimension("Vertex")
K = Dimension("K", VERTICAL)

V2VDim = Dimension("V2VDim", LOCAL)
V2EDim = Dimension("V2EDim", LOCAL)
E2VDim = Dimension("E2VDim", LOCAL)
E2CDim = Dimension("E2CDim", LOCAL)
C2EDim = Dimension("C2EDim", LOCAL)

V2V = FieldOffset("V2V", source=Vertex, target=(Vertex, V2VDim))
E2V = FieldOffset("E2V", source=Vertex, target=(Edge, E2VDim))
V2E = FieldOffset("V2E", source=Edge, target=(Vertex, V2EDim))
E2C = FieldOffset("E2C", source=Cell, target=(Edge, E2CDim))
C2E = FieldOffset("C2E", source=Edge, target=(Cell, C2EDim))
Koff = FieldOffset("Koff", source=K, target=K)

# Cartesian ------------------------------------------------------------------

IDim = Dimension("IDim")
JDim = Dimension("JDim")

Ioff = FieldOffset("Ioff", source=IDim, target=IDim)
Joff = FieldOffset("Joff", source=JDim, target=JDim)

EDGE_TO_CELL = np.array(
    [
        [1, -1],
        [3, -1],
        [3, -1],
        [4, -1],
        [5, -1],
        [6, -1],
        [1, 6],
        [1, 2],
        [2, 3],
        [2, 4],
        [4, 5],
        [5, 6],
    ],
    dtype=np.int64,
)

CELL_TO_EDGE = np.array(
    [
        [1, 7, 8],
        [8, 9, 10],
        [2, 3, 9],
        [4, 10, 11],
        [5, 11, 12],
        [6, 7, 12],
    ],
    dtype=np.int64,
)

NUM_CELLS = CELL_TO_EDGE.shape[0]
NUM_EDGES = EDGE_TO_CELL.shape[0]


def simple_offset_provider() -> Dict[str, Connectivity]:
    return {
        "E2C": Connectivity(EDGE_TO_CELL, Cell, Edge, 2),
        "C2E": Connectivity(CELL_TO_EDGE, Edge, Cell, 3),
    }


def cartesian_offset_provider() -> Dict[str, Dimension]:
    return {"Ioff": IDim, "Joff": JDim}


def vertical_offset_provider() -> Dict[str, Union[Connectivity, Dimension]]:
    return {"Koff": K}


__all__ = [
    "Cell",
    "Edge",
    "Vertex",
    "K",
    "V2VDim",
    "V2EDim",
    "E2VDim",
    "E2CDim",
    "C2EDim",
    "V2V",
    "E2V",
    "V2E",
    "E2C",
    "C2E",
    "Koff",
    "IDim",
    "JDim",
    "Ioff",
    "Joff",
    "EDGE_TO_CELL",
    "CELL_TO_EDGE",
    "NUM_CELLS",
    "NUM_EDGES",
    "simple_offset_provider",
    "cartesian_offset_provider",
    "vertical_offset_provider",
]
