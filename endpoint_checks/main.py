from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

import httpx
import structlog

from endpoint_checks.config import (
    MonitorConfig,
    build_channels,
    build_services,
    debounce_policy,
    default_config_path,
    history_retention,
    load_config,
)
from endpoint_checks.engine import Monitor
from endpoint_checks.errors import ConfigurationError
from endpoint_checks.notify.ci import CIFailureChannel
from endpoint_checks.notify.dispatcher import Dispatcher
from endpoint_checks.probe import Prober
from endpoint_checks.report import write_report_data
from endpoint_checks.status import StatusBoard
from endpoint_checks.store import load_history, save_history


logger = structlog.get_logger(__name__)

DEFAULT_STATE_PATH = "data/history.json"
DEFAULT_REPORT_PATH = "data/report.json"


def configure_logging(level: str) -> None:
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_loop(
    config: MonitorConfig,
    *,
    once: bool,
    state_path: Path,
    report_path: Path | None,
) -> int:
    services = build_services(config)
    keys = [ep.key for svc in services for ep in svc.endpoints]

    history = load_history(
        state_path,
        max_entries=config.history_max_entries,
        retention=history_retention(config),
    )
    history.retain_only(keys)
    board = StatusBoard(debounce_policy(config))
    board.rehydrate(history.items())

    limits = httpx.Limits(max_connections=max(config.concurrency * 2, 10))
    async with httpx.AsyncClient(limits=limits) as client:
        channels = build_channels(config, client=client)
        ci_channels = [ch for ch in channels if isinstance(ch, CIFailureChannel)]
        prober = Prober(
            client,
            backoff_base=config.backoff_base_seconds,
            backoff_cap=config.backoff_cap_seconds,
        )
        monitor = Monitor(
            services,
            prober,
            board=board,
            history=history,
            dispatcher=Dispatcher(channels),
            concurrency=config.concurrency,
            cycle_deadline_seconds=config.cycle_deadline_seconds,
        )
        logger.info(
            "Monitor started",
            services=len(services),
            endpoints=len(keys),
            channels=[ch.name for ch in channels],
            once=once,
        )

        while True:
            report = await monitor.run_cycle()
            save_history(state_path, history, now=report.finished_at)
            if report_path is not None:
                write_report_data(report_path, report, history, display_num=config.display_num)

            if once:
                if any(ch.fired for ch in ci_channels):
                    logger.warning("Alerts raised during CI run", alerts=len(report.alerts))
                    return 1
                return 0
            await asyncio.sleep(config.interval_seconds)


def main() -> int:
    parser = argparse.ArgumentParser(description="Endpoint uptime monitor")
    parser.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to YAML config (default: $PONGHUB_CONFIG or config.yaml)",
    )
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    parser.add_argument("--state", default=DEFAULT_STATE_PATH, help="History state file")
    parser.add_argument("--report", default=DEFAULT_REPORT_PATH, help="Report data file ('' to disable)")
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        config = load_config(Path(args.config))
        return asyncio.run(
            run_loop(
                config,
                once=bool(args.once),
                state_path=Path(args.state),
                report_path=Path(args.report) if args.report else None,
            )
        )
    except ConfigurationError as exc:
        logger.error("Invalid configuration", error=str(exc))
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
