from __future__ import annotations

from typing import Optional


class FieldOpError(Exception):
    """Base class for fieldop-specific exceptions."""


class ShapeError(FieldOpError, ValueError):
    pass


class DimensionMismatch(FieldOpError, ValueError):
    pass


class DTypeError(FieldOpError, TypeError):
    pass


class ContractError(FieldOpError, RuntimeError):
    pass


class TranslationError(FieldOpError, ValueError):
    def __init__(
        self,
        message: str,
        *,
        filename: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
        line_text: Optional[str] = None,
    ):
        detail = _format_location(filename, line, column, line_text)
        super().__init__(f"{message}{detail}")
        self.filename = filename
        self.line = line
        self.column = column
        self.line_text = line_text


class AnnotationError(TranslationError):
    pass


class CapabilityError(TranslationError):
    pass


class BackendError(FieldOpError, RuntimeError):
    pass


class CacheError(FieldOpError, RuntimeError):
    pass


def _format_location(
    filename: Optional[str],
    line: Optional[int],
    column: Optional[int],
    line_text: Optional[str],
) -> str:
    if line is None and column is None:
        return ""
    location = []
    if filename:
        location.append(filename)
    if line is not None:
        location.append(f"line {line}")
    if column is not None:
        location.append(f"col {column}")
    location_str = f" ({', '.join(location)})"
    if line_text is None or column is None or column < 1:
        return location_str
    caret = " " * (column - 1) + "^"
    return f"{location_str}\n  {line_text}\n  {caret}"
