import ast
from pathlib import Path

import pytest

import keylightd

PACKAGE_ROOT = Path(keylightd.__file__).parent
MODULES = sorted(PACKAGE_ROOT.rglob("*.py"))


@pytest.mark.parametrize("path", MODULES, ids=lambda p: str(p.relative_to(PACKAGE_ROOT)))
def test_no_stray_module_level_strings(path):
    tree = ast.parse(path.read_text())
    # A leading string is the module docstring; any later bare string is dead text
    stray = [
        node.lineno for node in tree.body[1:]
        if isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Constant)
        and isinstance(node.value.value, str)
    ]
    assert stray == [], f"{path.name} has bare string literals at lines {stray}"
