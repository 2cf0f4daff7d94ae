"""Core runtime modules for fieldop."""

__all__ = [
    "ast_lowering",
    "builtins",
    "cache",
    "dims",
    "exceptions",
    "execution",
    "field",
    "ir",
    "ir_evaluator",
    "offset_provider",
    "operator",
    "preprocessing",
    "type_checker",
]
