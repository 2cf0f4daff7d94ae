try:
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as _load_version
except ImportError:  # pragma: no cover
    from importlib_metadata import (  # type: ignore
        PackageNotFoundError,
    )
    from importlib_metadata import (
        version as _load_version,
    )

from .core.builtins import (
    astype,
    broadcast,
    max_over,
    min_over,
    neighbor_sum,
    where,
)
from .core.cache import CacheManager
from .core.dims import (
    HORIZONTAL,
    LOCAL,
    VERTICAL,
    Connectivity,
    Dimension,
    DimensionKind,
    FieldOffset,
)
from .core.exceptions import (
    AnnotationError,
    BackendError,
    CacheError,
    CapabilityError,
    ContractError,
    DimensionMismatch,
    DTypeError,
    FieldOpError,
    ShapeError,
    TranslationError,
)
from .core.execution import BackendKind, ExecutionConfig
from .core.field import Field
from .core.offset_provider import OffsetProvider
from .core.operator import FieldOperator, field_operator

try:
    __version__ = _load_version("fieldop")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "Field",
    "Dimension",
    "DimensionKind",
    "HORIZONTAL",
    "VERTICAL",
    "LOCAL",
    "FieldOffset",
    "Connectivity",
    "OffsetProvider",
    "FieldOperator",
    "field_operator",
    "ExecutionConfig",
    "BackendKind",
    "CacheManager",
    "neighbor_sum",
    "max_over",
    "min_over",
    "where",
    "broadcast",
    "astype",
    "FieldOpError",
    "ShapeError",
    "DimensionMismatch",
    "DTypeError",
    "ContractError",
    "TranslationError",
    "AnnotationError",
    "CapabilityError",
    "BackendError",
    "CacheError",
    "__version__",
]
