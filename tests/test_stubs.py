from __future__ import annotations

import ast
from pathlib import Path

import pytest

from fieldop.core import builtins as fieldop_builtins

STUBS_DIR = Path(__file__).resolve().parent.parent / "stubs"


def _relative_imports(path: Path):
    tree = ast.parse(path.read_text(encoding="utf-8"))
    for node in ast.walk(tree):
        if isinstance(node, ast.ImportFrom) and node.level:
            yield node


def _resolve(path: Path, node: ast.ImportFrom) -> Path:
    base = path.parent
    for _ in range(node.level - 1):
        base = base.parent
    parts = (node.module or "").split(".") if node.module else []
    return base.joinpath(*parts)


@pytest.mark.parametrize("stub", sorted(STUBS_DIR.rglob("*.pyi")), ids=lambda p: str(p.relative_to(STUBS_DIR)))
def test_stub_relative_imports_resolve(stub: Path):
    for node in _relative_imports(stub):
        target = _resolve(stub, node)
        assert target.with_suffix(".pyi").exists() or (target / "__init__.pyi").exists(), (
            f"{stub.relative_to(STUBS_DIR)} imports '{'.' * node.level}{node.module or ''}' with no stub"
        )


def test_math_builtins_are_module_attributes():
    for name in fieldop_builtins.MATH_FUNCTIONS:
        assert name in fieldop_builtins.__all__
        assert getattr(fieldop_builtins, name) is fieldop_builtins.BUILTINS[name]
    assert fieldop_builtins.sin.__name__ == "sin"


def test_builtins_stub_lists_math_functions():
    stub = (STUBS_DIR / "fieldop" / "core" / "builtins.pyi").read_text(encoding="utf-8")
    for name in fieldop_builtins.MATH_FUNCTIONS:
        assert f"\n{name}: Callable" in stub
