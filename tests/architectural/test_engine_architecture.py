"""Architectural tests for the dual-mode engine.

Static inspection of the package source, no engine code is executed:
- Only the mode resolver and the element resolver branch on a concrete
  mode; providers and the context manager stay mode-agnostic.
- Engine logic reports through logging and return values, never `print`.
- Every module declares its public surface in `__all__`.
- Provider mutations of live data go through the safety guard.
- Value types are pydantic models; stdlib dataclasses are not used.
"""

from __future__ import annotations

import ast
import os
from pathlib import Path
from typing import Iterator, List, Tuple

import pytest

PACKAGE_DIR = Path(__file__).resolve().parents[2] / "dualmode"
MODE_BRANCHING_ALLOWED = {
    os.path.join("logic", "mode_resolver.py"),
    os.path.join("logic", "element_resolver.py"),
}


def _modules() -> Iterator[Tuple[str, ast.Module]]:
    assert PACKAGE_DIR.is_dir(), f"package directory missing: {PACKAGE_DIR}"
    for path in sorted(PACKAGE_DIR.rglob("*.py")):
        rel = str(path.relative_to(PACKAGE_DIR))
        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
        except SyntaxError as exc:
            pytest.fail(f"cannot parse {rel}: {exc}")
        yield rel, tree


def _is_mode_member(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Attribute)
        and isinstance(node.value, ast.Name)
        and node.value.id == "TestMode"
        and node.attr in {"ISOLATED", "PRODUCTION"}
    )


def _mode_comparisons(tree: ast.Module) -> List[int]:
    lines: List[int] = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Compare):
            continue
        operands = [node.left, *node.comparators]
        for operand in operands:
            candidates = operand.elts if isinstance(operand, (ast.Tuple, ast.List, ast.Set)) else [operand]
            if any(_is_mode_member(c) for c in candidates):
                lines.append(node.lineno)
                break
    return lines


def test_only_resolvers_branch_on_concrete_mode():
    offenders = []
    for rel, tree in _modules():
        if rel in MODE_BRANCHING_ALLOWED:
            continue
        offenders.extend(f"{rel}:{line}" for line in _mode_comparisons(tree))
    assert not offenders, f"mode branching outside the resolvers: {offenders}"


def test_engine_logic_never_prints():
    offenders = []
    for rel, tree in _modules():
        if not rel.startswith("logic") and not rel.startswith("db") and not rel.startswith("models"):
            continue
        for node in ast.walk(tree):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id == "print":
                offenders.append(f"{rel}:{node.lineno}")
    assert not offenders, f"print() in engine logic: {offenders}"


def test_every_module_declares_all():
    missing = []
    for rel, tree in _modules():
        if rel.endswith("__init__.py") and rel != os.path.join("routes", "__init__.py"):
            continue
        names = {
            target.id
            for node in tree.body
            if isinstance(node, ast.Assign)
            for target in node.targets
            if isinstance(target, ast.Name)
        }
        if "__all__" not in names:
            missing.append(rel)
    assert not missing, f"modules without __all__: {missing}"


def test_production_provider_mutations_go_through_the_guard():
    tree = dict(_modules())[os.path.join("logic", "production_provider.py")]
    cls = next(n for n in tree.body if isinstance(n, ast.ClassDef) and n.name == "ProductionDataProvider")
    for method in ("create_record", "update_record", "delete_record", "_delete_created"):
        fn = next(n for n in cls.body if isinstance(n, ast.FunctionDef) and n.name == method)
        guard_calls = [
            node for node in ast.walk(fn)
            if isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and isinstance(node.func.value, ast.Attribute)
            and node.func.value.attr == "guard"
        ]
        assert guard_calls, f"ProductionDataProvider.{method} does not call the safety guard"


def test_value_types_are_pydantic_models_not_dataclasses():
    offenders = []
    for rel, tree in _modules():
        for node in ast.walk(tree):
            if isinstance(node, ast.ImportFrom) and node.module == "dataclasses":
                offenders.append(f"{rel}:{node.lineno}")
            elif isinstance(node, ast.Import) and any(alias.name == "dataclasses" for alias in node.names):
                offenders.append(f"{rel}:{node.lineno}")
    assert not offenders, f"dataclasses used instead of pydantic models: {offenders}"
