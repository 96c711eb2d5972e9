"""Tests for the package-level re-exports."""

from __future__ import annotations

import importlib

import pytest


@pytest.mark.parametrize(
    "package",
    ["winfloor.core", "winfloor.parsers", "winfloor.analyzers", "winfloor.output"],
)
def test_all_names_resolve(package: str) -> None:
    module = importlib.import_module(package)
    assert module.__all__
    for name in module.__all__:
        assert getattr(module, name) is not None


def test_reexports_are_the_defining_objects() -> None:
    from winfloor.analyzers import ApiMap
    from winfloor.analyzers.api_map import ApiMap as defined
    from winfloor.core import MalformedPEError
    from winfloor.core.exceptions import MalformedPEError as defined_error

    assert ApiMap is defined
    assert MalformedPEError is defined_error
