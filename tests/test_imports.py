"""Every module of the package imports cleanly."""

import importlib
import pkgutil

import pytest

import pgp_export
from pgp_export.stages import Stage

MODULES = sorted(
    info.name for info in pkgutil.walk_packages(pgp_export.__path__, prefix="pgp_export.")
)


@pytest.mark.parametrize("module", MODULES)
def test_module_imports(module):
    assert importlib.import_module(module).__name__ == module


def test_walk_finds_core_modules():
    for module in ("pgp_export.stages", "pgp_export.fingerprint", "pgp_export.pipeline", "pgp_export.main"):
        assert module in MODULES


def test_stage_does_not_shadow_builtin_list():
    assert callable(Stage.list_files)
    assert not hasattr(Stage, "list")
