"""
Pytest configuration for the MVFS tools test suite.

    python -m pytest                # everything
    python -m pytest -m cli         # command-line entry points only

Unit tests live in the root-level test_*.py modules as unittest classes;
the CLI tests under tests/ use the fixtures defined here.
"""

from __future__ import annotations

import pytest

from mvfsutil import format_image

# Fixed timestamp so images built in tests are byte-for-byte reproducible
FIXED_NOW = 1_700_000_000


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "cli: tests that drive the command-line entry points")


@pytest.fixture
def image_path(tmp_path):
    """A freshly formatted 180 KiB / 128 inode image."""
    path = tmp_path / "disk.img"
    format_image(path, 180, 128, now=FIXED_NOW)
    return path


@pytest.fixture
def make_host_file(tmp_path):
    """Factory: write a host file of *size* bytes and return its path."""
    def _make(name: str, size: int = 0, data: bytes | None = None):
        path = tmp_path / name
        if data is None:
            data = bytes(i & 0xFF for i in range(size))
        path.write_bytes(data)
        return path
    return _make
