from __future__ import annotations

import runpy
from pathlib import Path

import pytest

EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


@pytest.mark.parametrize("example_path", sorted(EXAMPLES_DIR.glob("*.py")), ids=lambda p: p.name)
def test_examples_run(example_path: Path, capsys) -> None:
    runpy.run_path(str(example_path), run_name="__main__")
    assert "[outer]" in capsys.readouterr().out
