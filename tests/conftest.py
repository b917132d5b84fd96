"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    """An existing model artifact; the fake session factory never parses it."""
    path = tmp_path / "model.onnx"
    path.write_bytes(b"onnx")
    return path
