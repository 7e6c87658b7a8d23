import pytest

from bridge_gateway.cli import STATE_FILE_NAME, build_parser, main
from bridge_gateway.state_store import SupervisionStateStore


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "gateway.yaml"
    path.write_text(
        f"""
backends:
  gemini:
    service: mcp-gemini-bridge
    transport: cli
    port: 3101
    default_model: gemini-2.5-flash
supervisor:
  log_dir: {tmp_path / "logs"}
processes:
  - name: mcp-gemini-bridge
    command: [bridge-gateway, serve, gemini]
""",
        encoding="utf-8",
    )
    return path


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
    args = build_parser().parse_args(["--config", "x.yaml", "serve", "gemini"])
    assert args.command == "serve"
    assert args.backend == "gemini"


def test_status_without_state(config_file, capsys):
    main(["--config", str(config_file), "status"])
    assert "No supervisor state recorded yet." in capsys.readouterr().out


def test_status_prints_process_table(config_file, tmp_path, capsys):
    SupervisionStateStore(tmp_path / "logs" / STATE_FILE_NAME).write(
        {
            "mcp-gemini-bridge": {
                "name": "mcp-gemini-bridge",
                "status": "running",
                "pid": 4242,
                "restart_count": 2,
                "scheduled_restart_count": 1,
                "last_restart_at": None,
                "last_exit_code": 1,
            }
        }
    )
    main(["--config", str(config_file), "status"])
    out = capsys.readouterr().out
    row = next(line for line in out.splitlines() if line.startswith("mcp-gemini-bridge"))
    assert row.split() == ["mcp-gemini-bridge", "running", "4242", "2", "1", "1"]


def test_missing_config_exits_with_code_2(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", str(tmp_path / "missing.yaml"), "status"])
    assert exc_info.value.code == 2
    assert "Gateway config not found" in capsys.readouterr().err


def test_serve_unknown_backend_exits_with_code_2(config_file, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--config", str(config_file), "serve", "claude"])
    assert exc_info.value.code == 2
    assert "Backend not found in config: claude" in capsys.readouterr().err
