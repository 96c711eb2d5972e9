"""Shared pytest fixtures for winfloor tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from shared.config import FloorConfig
from shared.logger import FloorLogger
from winfloor.analyzers.api_map import ApiMap
from winfloor.core.engine import FloorEngine

from tests.synthetic import MetadataBuilder, build_pe

SAMPLE_ENTRIES: list[tuple[str, str, int, str]] = [
    ("kernel32.dll", "GetTickCount64", 6000, "windows6.0.6000"),
    ("kernel32", "CreateFile2", 9200, "windows8.0"),
    ("kernel32.dll", "WaitOnAddress", 9200, "windows8.0"),
    ("user32.dll", "GetDpiForWindow", 14393, "windows10.0.14393"),
    ("user32.dll", "MessageBoxW", 0, ""),
    ("dxcore.dll", "DXCoreCreateAdapterFactory", 19041, "windows10.0.19041"),
]


def sample_metadata() -> MetadataBuilder:
    """Metadata mirroring :data:`SAMPLE_ENTRIES`, declared in every supported way."""
    return (
        MetadataBuilder()
        .add_pinvoke("kernel32.dll", "GetTickCount64", platforms=["windows6.0.6000"])
        .add_pinvoke("KERNEL32", "CreateFile2", platforms=["windows8.0"])
        .add_pinvoke("kernel32.dll", "WaitOnAddress", platforms=["windows8.0"])
        .add_pinvoke(
            "user32.dll", "GetDpiForWindow",
            platforms=["windows10.0.14393"], declaration="attribute",
        )
        .add_pinvoke(
            "user32.dll", "MessageBox", entry_point="MessageBoxW",
            declaration="attribute",
        )
        .add_pinvoke(
            "dxcore.dll", "DXCoreCreateAdapterFactory",
            platforms=["windows10.0.19041"], platform_ctor="methoddef",
        )
        .add_managed("ManagedHelper", platforms=["windows10.0.22000"])
    )


@pytest.fixture
def quiet_logger() -> FloorLogger:
    return FloorLogger("test", console_output=False)


@pytest.fixture
def api_map() -> ApiMap:
    return ApiMap.from_entries(SAMPLE_ENTRIES)


@pytest.fixture
def config() -> FloorConfig:
    return FloorConfig()


@pytest.fixture
def engine(api_map: ApiMap, config: FloorConfig, quiet_logger: FloorLogger) -> FloorEngine:
    return FloorEngine(api_map, config, quiet_logger)


@pytest.fixture
def metadata_file(tmp_path: Path) -> Path:
    path = tmp_path / "Sample.winmd"
    path.write_bytes(sample_metadata().build())
    return path


@pytest.fixture
def write_pe(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a synthetic PE to *tmp_path* and returning its path."""
    counter = iter(range(1000))

    def _write(*args, name: str | None = None, **kwargs) -> Path:
        path = tmp_path / (name or f"image{next(counter)}.dll")
        path.write_bytes(build_pe(*args, **kwargs).data)
        return path

    return _write
