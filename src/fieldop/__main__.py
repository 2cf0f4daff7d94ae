from __future__ import annotations

import argparse
import importlib.util
import json
import sys
from pathlib import Path
from typing import Any, Optional

from .core.exceptions import TranslationError
from .core.ir import format_ir, json_ready
from .core.operator import FieldOperator


def _load_operator(target: str) -> FieldOperator:
    path_str, sep, name = target.rpartition(":")
    if not sep or not path_str or not name:
        raise SystemExit(f"Expected PATH.py:NAME, got '{target}'")
    path = Path(path_str)
    if not path.exists():
        raise SystemExit(f"Operator file not found: {path}")
    spec = importlib.util.spec_from_file_location(f"_fieldop_cli_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise SystemExit(f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = module
    spec.loader.exec_module(module)
    obj: Any = getattr(module, name, None)
    if obj is None:
        raise SystemExit(f"'{name}' is not defined in {path}")
    if not isinstance(obj, FieldOperator):
        raise SystemExit(f"'{name}' in {path} is a {type(obj).__name__}, not a field operator")
    return obj


def _explain(target: str, as_json: bool) -> None:
    op = _load_operator(target)
    try:
        definition = op.definition
    except TranslationError as exc:
        raise SystemExit(str(exc)) from exc
    if as_json:
        print(json.dumps(json_ready(definition), indent=2))
    else:
        print(format_ir(definition))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="fieldop command line utilities")
    subparsers = parser.add_subparsers(dest="cmd")

    explain_parser = subparsers.add_parser("explain", help="Print the typed IR of a field operator")
    explain_parser.add_argument("target", help="Operator as PATH.py:NAME")
    explain_parser.add_argument(
        "--json",
        action="store_true",
        help="Emit the IR as JSON instead of the text listing",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "explain":
        _explain(args.target, as_json=args.json)
        return

    parser.print_help()


if __name__ == "__main__":  # pragma: no cover
    main(sys.argv[1:])
