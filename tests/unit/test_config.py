import logging

import pytest

from compatscan.base.cancellation import CancellationToken
from compatscan.base.config import (
    CompatScanConfig,
    get_config,
    parse_max_concurrent,
    resolve_max_concurrent,
    set_config,
)
from compatscan.errors import CancellationSignal, ErrorCode, SchedulerConfigurationError


@pytest.mark.parametrize("raw", [None, "", "abc", "0", "-3", 0, True])
def test_parse_max_concurrent_rejects_invalid(raw):
    with pytest.raises(SchedulerConfigurationError) as exc:
        parse_max_concurrent(raw)
    assert exc.value.code == ErrorCode.CONFIG_INVALID_CONCURRENCY


def test_resolve_max_concurrent_corrects_to_default_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        assert resolve_max_concurrent("lots") == 2
    assert "max_concurrent" in caplog.text
    assert resolve_max_concurrent(None) == 2
    assert resolve_max_concurrent("4") == 4
    assert resolve_max_concurrent(3) == 3


def test_from_env_reads_compatscan_variables(monkeypatch, tmp_path):
    monkeypatch.setenv("COMPATSCAN_MAX_CONCURRENT_JOBS", "5")
    monkeypatch.setenv("COMPATSCAN_SCAN_TIMEOUT_MS", "1500")
    monkeypatch.setenv("COMPATSCAN_EXTENSIONS", "js, css")
    monkeypatch.setenv("COMPATSCAN_SKIP_LFS", "true")
    monkeypatch.setenv("COMPATSCAN_USER_EXCLUDE_PATHS", "fixtures;generated")
    monkeypatch.setenv("COMPATSCAN_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("COMPATSCAN_PERSISTENCE", "false")

    cfg = CompatScanConfig.from_env()
    assert cfg.scheduler.max_concurrent == 5
    assert cfg.scheduler.scan_timeout_ms == 1500
    assert cfg.scan.extensions == (".js", ".css")
    assert cfg.scan.skip_lfs is True
    assert cfg.scan.user_exclude_paths == ("fixtures", "generated")
    assert cfg.storage.persistence_enabled is False
    assert cfg.storage.db_path.parent == tmp_path


def test_invalid_concurrency_env_falls_back(monkeypatch):
    monkeypatch.setenv("COMPATSCAN_MAX_CONCURRENT_JOBS", "zero")
    assert CompatScanConfig.from_env().scheduler.max_concurrent == 2


def test_get_config_is_cached_until_reset(monkeypatch):
    first = get_config()
    assert get_config() is first
    set_config(None)
    assert get_config() is not first


def test_cancellation_token_first_reason_wins():
    token = CancellationToken()
    assert not token.requested
    token.raise_if_requested()

    assert token.cancel("timeout") is True
    assert token.cancel("user") is False
    assert token.reason == "timeout"

    with pytest.raises(CancellationSignal) as exc:
        token.raise_if_requested()
    assert exc.value.reason == "timeout"
