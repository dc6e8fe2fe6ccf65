"""
main.py

Main entry point for the onboard video payload controller. Loads the JSON
configuration, sets up logging, wires the process supervisor, link monitor,
controller, status server and the optional radio
uplink together and runs them on one asyncio loop.
SIGINT/SIGTERM request an orderly shutdown; no camera or encoder process
outlives the controller.

Usage:
    arowss run --config config.json
    arowss status
    arowss stop
    arowss restart
"""

import argparse
import asyncio
import json
import logging
import signal
import sys

from config import load_config
from logging_setup import setup_logging

from .commands import StreamCommands, tier_title
from .communication import StatusServer, query_status
from .controller import BackoffPolicy, StreamController
from .errors import ConfigError
from .link_monitor import LinkProbe, LinkQualityMonitor
from .supervisor import ProcessSupervisor
from .uplink import UplinkReceiver

logger = logging.getLogger(__name__)


def build_controller(config) -> StreamController:
    """Assemble supervisor, link monitor and controller from Settings."""
    sup = config.supervisor
    supervisor = ProcessSupervisor(
        StreamCommands(config.tools, tier_title(config.pipeline)),
        startup_timeout=sup.startup_timeout,
        startup_settle=sup.startup_settle,
        stop_timeout=sup.stop_timeout,
        tail_lines=sup.stderr_tail_lines,
    )

    link = config.link
    monitor = LinkQualityMonitor(
        LinkProbe(
            link.probe_host,
            interface=link.interface,
            count=link.ping_count,
            timeout=link.ping_timeout,
        ),
        interval=link.sample_interval,
        sample_timeout=link.sample_timeout,
    )

    ctl = config.controller
    return StreamController(
        lambda: config.pipeline,
        supervisor,
        monitor,
        tick_interval=ctl.tick_interval,
        hysteresis_margin=ctl.hysteresis_margin,
        hold_samples=ctl.hold_samples,
        backoff=BackoffPolicy(
            initial=ctl.backoff_initial,
            factor=ctl.backoff_factor,
            maximum=ctl.backoff_max,
            max_attempts=ctl.max_start_attempts,
        ),
        stable_after=ctl.stable_after,
        shutdown_timeout=ctl.shutdown_timeout,
    )


async def async_main(config) -> int:
    """Run the controller until shutdown. Returns the process exit status."""
    controller = build_controller(config)
    status = StatusServer(controller, config.host, config.port, config.trusted_clients)

    loop = asyncio.get_running_loop()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, controller.request_shutdown, f"signal {sig.name}")

    try:
        await status.start_server()
    except OSError as e:
        # Streaming matters more than the operator port.
        logger.error(f"Status server unavailable on {config.host}:{config.port}: {e}")

    uplink = None
    if config.uplink.enabled:
        uplink = UplinkReceiver(controller, config.uplink.port, config.uplink.baudrate)
        try:
            await uplink.start()
        except OSError as e:
            logger.error(f"Uplink unavailable on {config.uplink.port}: {e}")
            uplink = None

    try:
        state = await controller.run()
    finally:
        await status.close()
        if uplink is not None:
            await uplink.stop()
        for sig in signals:
            loop.remove_signal_handler(sig)

    if state.fatal:
        logger.critical(f"Controller stopped after a fatal error: {state.last_error}")
        return 1
    logger.info("Controller stopped cleanly.")
    return 0


def _query(config, args) -> int:
    host = args.host or ("127.0.0.1" if config.host in ("", "0.0.0.0") else config.host)
    port = args.port or config.port
    try:
        reply = asyncio.run(query_status(host, port, args.action))
    except (OSError, asyncio.TimeoutError, json.JSONDecodeError) as e:
        logger.error(f"Controller not reachable at {host}:{port}: {e}")
        return 1
    print(json.dumps(reply, indent=2))
    return 1 if "error" in reply else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="arowss", description="Onboard adaptive video downlink controller"
    )
    parser.add_argument("--config", default="config.json", help="Path to JSON configuration")
    parser.add_argument("--log-level", default=None, help="Console log level (INFO, DEBUG, ...)")
    sub = parser.add_subparsers(dest="action")
    sub.add_parser("run", help="Start the controller (default)")
    for name, text in (
        ("status", "Show controller state"),
        ("stop", "Ask a running controller to stop"),
        ("restart", "Restart the running pipeline"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("--host", default=None, help="Controller address (default: from config)")
        p.add_argument("--port", type=int, default=None, help="Status port (default: from config)")
    args = parser.parse_args(argv)
    args.action = args.action or "run"

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging(to_file=False)
        logger.critical(f"Configuration error: {e}")
        return 2

    if args.action != "run":
        setup_logging(to_file=False, console_level=args.log_level)
        return _query(config, args)

    setup_logging(logfile=config.log_file_path, console_level=args.log_level)
    logger.info("AROWSS (Automatic Remote Onboard Wireless Streaming System) initialized.")
    try:
        return asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
