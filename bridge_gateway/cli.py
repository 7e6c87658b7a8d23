import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import uvicorn
import yaml

from .adapter_base import build_adapter
from .bridge_server import create_bridge_app
from .config import GatewayConfig, Settings, load_gateway_config
from .health_monitor import HealthMonitor
from .log_sink import LineSink
from .state_store import SupervisionStateStore
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "supervisor-state.json"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _state_store(config: GatewayConfig) -> SupervisionStateStore:
    return SupervisionStateStore(Path(config.supervisor.log_dir).expanduser() / STATE_FILE_NAME)


async def _run_until_signalled(runner) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    await runner(stop_event)


def serve(config: GatewayConfig, settings: Settings, backend_name: str) -> None:
    descriptor = config.get_backend(backend_name)
    app = create_bridge_app(build_adapter(descriptor))
    logger.info("Starting %s on http://%s:%d", descriptor.service, settings.host, descriptor.port)
    uvicorn.run(app, host=settings.host, port=descriptor.port, log_level=settings.log_level.lower())


def monitor(config: GatewayConfig) -> None:
    sink = LineSink(Path(config.monitor.log_file).expanduser())
    health_monitor = HealthMonitor(config.monitored_services(), config.monitor, sink=sink)
    logger.info("Health log: %s", sink.path)
    asyncio.run(_run_until_signalled(health_monitor.run))


def supervise(config: GatewayConfig) -> None:
    if not config.processes:
        raise SystemExit("No processes declared in config")
    supervisor = ProcessSupervisor(
        config.processes,
        config.supervisor,
        base_env=dict(os.environ),
        state_store=_state_store(config),
    )
    asyncio.run(_run_until_signalled(supervisor.run))


def print_status(config: GatewayConfig) -> None:
    snapshot = _state_store(config).read()
    processes = snapshot["processes"]
    if not processes:
        print("No supervisor state recorded yet.")
        return
    print(f"Updated: {snapshot['updated_at']}")
    print(f"{'NAME':<28} {'STATUS':<11} {'PID':>7} {'RESTARTS':>8} {'SCHEDULED':>9}  LAST EXIT")
    for name, entry in processes.items():
        pid = entry.get("pid") or "-"
        exit_code = entry.get("last_exit_code")
        print(
            f"{name:<28} {entry.get('status', '?'):<11} {pid!s:>7} "
            f"{entry.get('restart_count', 0):>8} {entry.get('scheduled_restart_count', 0):>9}  "
            f"{'-' if exit_code is None else exit_code}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bridge-gateway", description="Local AI backend bridge gateway")
    parser.add_argument("--config", help="Path to gateway YAML (default: $BRIDGE_CONFIG_PATH)")
    parser.add_argument("--log-level", help="Log level (default: $BRIDGE_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="Run the bridge server for one backend")
    serve_parser.add_argument("backend", help="Backend name from the config 'backends' map")
    sub.add_parser("monitor", help="Run the periodic health monitor")
    sub.add_parser("supervise", help="Run the process supervisor in the foreground")
    sub.add_parser("status", help="Print the last recorded supervisor state")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = Settings()
    _configure_logging(args.log_level or settings.log_level)

    try:
        config = load_gateway_config(args.config or settings.config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    if args.command == "serve":
        try:
            serve(config, settings, args.backend)
        except KeyError as e:
            print(f"Error: {e.args[0]}", file=sys.stderr)
            raise SystemExit(2) from e
    elif args.command == "monitor":
        monitor(config)
    elif args.command == "supervise":
        supervise(config)
    elif args.command == "status":
        print_status(config)


if __name__ == "__main__":
    main()
