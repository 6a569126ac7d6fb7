"""
Harvester entry point.

Owns the outer loop: connect (with bounded retries), then alternate between
ticking the session, a short delay, and draining gateway events. Ctrl-C and
SIGTERM only set a flag; the session exports and exits on its next tick.
"""

import argparse
import signal
import sys
from typing import List, Optional

from .config import Config, RateLimitPolicy, load_config_from_env
from .gateway.base import Gateway
from .logger import LogEvent, get_logger, log_system_event, reconfigure
from .session import ExitCode, SessionStateMachine
from .strategy import Strategy
from .utils.clock import Clock, SystemClock

logger = get_logger(__name__)


class HarvestRunner:
    """Drives a :class:`SessionStateMachine` until it reaches a terminal state."""

    def __init__(
        self,
        config: Config,
        gateway: Optional[Gateway] = None,
        clock: Optional[Clock] = None,
        strategy: Optional[Strategy] = None,
    ):
        if gateway is None:
            from .gateway.ib import IBGateway

            gateway = IBGateway()

        self.config = config
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.session = SessionStateMachine(config, gateway, self.clock, strategy=strategy)

    def install_signal_handlers(self) -> None:
        def handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down after this tick")
            self.session.request_interrupt()

        signal.signal(signal.SIGINT, handler)
        signal.signal(signal.SIGTERM, handler)

    def connect(self) -> Optional[ExitCode]:
        """
        Connect with up to ``max_connect_attempts`` tries.

        Returns an exit code if the session ended while disconnected, None once
        connected.
        """
        settings = self.config.session
        for attempt in range(1, settings.max_connect_attempts + 1):
            if self.session.interrupted:
                self.session.export()
                self.session.terminate(ExitCode.INTERRUPTED)
                return ExitCode.INTERRUPTED

            if self.session.connect():
                return None

            logger.warning(
                f"Connection attempt {attempt}/{settings.max_connect_attempts} failed"
            )
            if attempt < settings.max_connect_attempts:
                self.clock.sleep(settings.reconnect_backoff)

        log_system_event(
            logger,
            LogEvent.CONNECTION_FAILED,
            "Giving up on the gateway",
            attempts=settings.max_connect_attempts,
        )
        self.session.export()
        self.session.terminate(ExitCode.CONNECTION_FAILURE)
        return ExitCode.CONNECTION_FAILURE

    def run(self) -> ExitCode:
        settings = self.config.session
        while True:
            if self.session.needs_connection:
                code = self.connect()
                if code is not None:
                    return code

            code = self.session.tick()
            if code is not None:
                return code

            self.clock.sleep(settings.main_loop_delay)
            if self.gateway.is_connected():
                self.gateway.wait_for_events(settings.event_wait_timeout)
            self.session.process_events(self.gateway.drain_events())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Harvest historical bars and live quotes from an IB gateway"
    )
    parser.add_argument(
        "--symbols",
        type=str,
        default="",
        help="Comma-separated instruments (SYMBOL[:KIND[:EXPIRY[:STRIKE:RIGHT]]][@EXCHANGE])",
    )
    parser.add_argument("--host", type=str, default=None, help="Gateway host")
    parser.add_argument("--port", type=int, default=None, help="Gateway port")
    parser.add_argument("--client-id", type=int, default=None, help="API client id")
    parser.add_argument("--export-dir", type=str, default=None, help="CSV output directory")
    parser.add_argument(
        "--exit-after-harvest",
        action="store_true",
        help="Export and exit once every historical request has resolved",
    )
    parser.add_argument(
        "--ceiling", type=int, default=None, help="Max outstanding requests before a phase advances"
    )
    parser.add_argument(
        "--rate-limit-policy",
        choices=[p.value for p in RateLimitPolicy],
        default=None,
        help="What to do with requests rejected for pacing",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    gateway = {}
    if args.host is not None:
        gateway["host"] = args.host
    if args.port is not None:
        gateway["port"] = args.port
    if args.client_id is not None:
        gateway["client_id"] = args.client_id

    harvest = {}
    if args.ceiling is not None:
        harvest["ceiling"] = args.ceiling
    if args.rate_limit_policy is not None:
        harvest["rate_limit_policy"] = args.rate_limit_policy

    data = config.model_dump()
    data["gateway"].update(gateway)
    data["harvest"].update(harvest)
    if args.export_dir is not None:
        data["export"]["directory"] = args.export_dir
    if args.exit_after_harvest:
        data["session"]["exit_after_harvest"] = True
    if args.log_level is not None:
        data["monitoring"]["log_level"] = args.log_level
    if args.symbols:
        data["symbols"] = [s.strip() for s in args.symbols.split(",") if s.strip()]
    return Config.model_validate(data)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point with CLI argument parsing."""
    args = build_parser().parse_args(argv)
    config = apply_overrides(load_config_from_env(), args)
    reconfigure(
        level=config.monitoring.log_level,
        log_format=config.monitoring.log_format,
        log_file=config.monitoring.log_file,
    )

    runner = HarvestRunner(config)
    runner.install_signal_handlers()
    code = runner.run()
    sys.exit(int(code))


if __name__ == "__main__":
    main()
