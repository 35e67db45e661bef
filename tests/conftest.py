"""Pytest configuration for compatscan."""
import pytest

from compatscan.base.config import set_config


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    # Never touch ~/.compatscan from tests.
    monkeypatch.setenv("COMPATSCAN_DATA_DIR", str(tmp_path / "data"))
    set_config(None)
    yield
    set_config(None)
