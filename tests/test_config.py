from datetime import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from bridge_gateway.config import (
    BackoffPolicy,
    GatewayConfig,
    ProcessSpec,
    Settings,
    load_gateway_config,
    parse_memory_size,
)
from bridge_gateway.cron import cron_next_run, validate_cron

SAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "config" / "gateway.yaml"


def test_sample_config_loads():
    config = load_gateway_config(SAMPLE_CONFIG)

    gemini = config.get_backend("gemini")
    assert gemini.transport == "cli"
    assert gemini.port == 3101
    assert gemini.default_model == "gemini-2.5-flash"

    qwen = config.get_backend("qwen")
    assert qwen.transport == "http"
    assert qwen.port == 3102
    assert qwen.default_model == "qwen3-coder:7b"

    names = [spec.name for spec in config.processes]
    assert names == ["mcp-gemini-bridge", "mcp-qwen-bridge", "mcp-health-monitor"]
    assert config.processes[0].max_memory == 500 * 1024 * 1024


def test_monitored_services_cover_bridges_and_extras():
    config = load_gateway_config(SAMPLE_CONFIG)
    services = {service.name: service.url for service in config.monitored_services()}
    assert services["mcp-gemini-bridge"] == "http://127.0.0.1:3101/health"
    assert services["mcp-qwen-bridge"] == "http://127.0.0.1:3102/health"
    assert services["mcp-mem0-server"] == "http://localhost:3100/health"


def test_unknown_backend():
    with pytest.raises(KeyError):
        GatewayConfig().get_backend("claude")


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_gateway_config(tmp_path / "nope.yaml")


def test_duplicate_process_names_rejected():
    with pytest.raises(ValidationError, match="Duplicate process names: a"):
        GatewayConfig(
            processes=[
                {"name": "a", "command": ["true"]},
                {"name": "a", "command": ["false"]},
            ]
        )


def test_process_needs_a_command():
    with pytest.raises(ValidationError):
        ProcessSpec(name="empty", command=[])


def test_config_is_immutable():
    config = load_gateway_config(SAMPLE_CONFIG)
    with pytest.raises(ValidationError):
        config.get_backend("gemini").port = 9999


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("500M", 500 * 1024**2),
        ("1G", 1024**3),
        ("1.5g", int(1.5 * 1024**3)),
        ("64KB", 64 * 1024),
        ("2048", 2048),
        (4096, 4096),
        (None, None),
    ],
)
def test_parse_memory_size(raw, expected):
    assert parse_memory_size(raw) == expected


def test_parse_memory_size_rejects_garbage():
    with pytest.raises(ValueError):
        parse_memory_size("lots")


def test_backoff_doubles_up_to_cap():
    policy = BackoffPolicy(initial_delay_seconds=1, max_delay_seconds=10)
    assert [policy.delay_for(n) for n in range(1, 7)] == [1, 2, 4, 8, 10, 10]


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("BRIDGE_CONFIG_PATH", "/etc/bridge/gateway.yaml")
    monkeypatch.setenv("BRIDGE_LOG_LEVEL", "DEBUG")
    settings = Settings()
    assert settings.config_path == "/etc/bridge/gateway.yaml"
    assert settings.log_level == "DEBUG"
    assert settings.host == "127.0.0.1"


# --- cron ---


@pytest.mark.parametrize(
    "expr, after, expected",
    [
        ("*/5 * * * *", datetime(2026, 3, 1, 10, 2, 30), datetime(2026, 3, 1, 10, 5)),
        ("*/5 * * * *", datetime(2026, 3, 1, 10, 5, 0), datetime(2026, 3, 1, 10, 10)),
        ("0 3 * * *", datetime(2026, 3, 1, 3, 0, 0), datetime(2026, 3, 2, 3, 0)),
        ("30 9 * * 1-5", datetime(2026, 3, 6, 10, 0), datetime(2026, 3, 9, 9, 30)),
        ("0 0 * * 7", datetime(2026, 3, 2, 0, 0), datetime(2026, 3, 8, 0, 0)),
        ("15,45 * * * *", datetime(2026, 3, 1, 10, 20), datetime(2026, 3, 1, 10, 45)),
        ("0 0 1 1 *", datetime(2026, 3, 1), datetime(2027, 1, 1)),
    ],
)
def test_cron_next_run(expr, after, expected):
    assert cron_next_run(expr, after) == expected


@pytest.mark.parametrize("expr", ["", "* * * *", "61 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *", "a b c d e"])
def test_validate_cron_rejects(expr):
    with pytest.raises(ValueError):
        validate_cron(expr)
