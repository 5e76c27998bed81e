"""Every package module compiles cleanly on a current interpreter."""

import warnings
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent
PACKAGES = [
    "activities", "api", "connectors", "core", "pipeline", "reconciliation", "scripts", "workers", "workflows",
]
SOURCES = sorted(p for package in PACKAGES for p in (ROOT / package).rglob("*.py"))


@pytest.mark.parametrize("path", SOURCES, ids=lambda p: str(p.relative_to(ROOT)))
def test_compiles_without_warnings(path):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(encoding="utf-8"), str(path), "exec")


def test_sources_found():
    assert ROOT / "pipeline" / "__init__.py" in SOURCES
