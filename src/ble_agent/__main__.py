"""CLI entry point for the enrollment/authentication agent."""

import argparse
import asyncio
import logging
import sys
from typing import Callable, Optional

from .bleak_adapter import BleakAdapter, scan_protocol_devices
from .engine import AgentConfig, SessionEngine, SessionOutcome
from .timeout import DEFAULT_SCAN_TIMEOUT

logger = logging.getLogger(__name__)

# Seconds to wait for the radio to report powered on
POWER_WAIT_TIMEOUT = 5.0

# Overall limit for one CLI session (seconds)
DEFAULT_SESSION_TIMEOUT = 60.0


async def wait_until(predicate: Callable[[], bool], timeout: float, interval: float = 0.1) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True


def build_config(args: argparse.Namespace, flow: Optional[str]) -> AgentConfig:
    return AgentConfig(
        scan_timeout=args.timeout,
        auto_enroll=flow is None,
        teardown_on_transport_error=not args.keep_busy_on_error,
    )


async def run_session(args: argparse.Namespace, flow: Optional[str] = None) -> int:
    """
    Run one session against the local radio.

    Args:
        args: Parsed command line
        flow: "enroll" or "auth" to trigger explicitly, None to rely on
            auto-enrollment at power on

    Returns:
        Exit code (0 when the session completed)
    """
    try:
        config = build_config(args, flow)
    except ValueError as e:
        logger.error(str(e))
        return 1

    adapter = BleakAdapter()
    engine = SessionEngine(adapter, config)
    dispatcher = asyncio.create_task(engine.run())

    try:
        await adapter.probe_power()
        if not await wait_until(lambda: engine.powered_on, POWER_WAIT_TIMEOUT):
            print("Bluetooth is not powered on")
            return 1

        if flow == "enroll":
            engine.enroll()
        elif flow == "auth":
            engine.auth()

        if not await wait_until(lambda: not engine.busy, args.session_timeout):
            logger.error(f"Session still busy after {args.session_timeout}s, resetting")
            engine.reset()
    finally:
        engine.stop()
        await dispatcher
        await adapter.close()

    outcome = engine.last_outcome
    print()
    if outcome is SessionOutcome.COMPLETED:
        for stage, response in engine.state.rounds:
            print(f"  {stage.label}: {response}")
        print("✓ Session completed")
        return 0
    else:
        print(f"✗ Session ended: {outcome.name if outcome else 'not started'}")
        return 1


async def cmd_run(args: argparse.Namespace) -> int:
    """Wait for power on and let auto-enrollment run the whole flow."""
    return await run_session(args)


async def cmd_enroll(args: argparse.Namespace) -> int:
    """Run the enrollment flow (three rounds, then authentication)."""
    return await run_session(args, flow="enroll")


async def cmd_auth(args: argparse.Namespace) -> int:
    """Run the authentication flow only."""
    return await run_session(args, flow="auth")


async def cmd_scan(args: argparse.Namespace) -> int:
    """List nearby devices advertising a protocol service."""
    devices = await scan_protocol_devices(timeout=args.timeout)
    print(f"\nFound {len(devices)} device(s)")
    return 0


def add_session_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=DEFAULT_SCAN_TIMEOUT,
        help=f"Scan timeout in seconds (default: {DEFAULT_SCAN_TIMEOUT})",
    )
    parser.add_argument(
        "--session-timeout",
        type=float,
        default=DEFAULT_SESSION_TIMEOUT,
        help=f"Give up on the whole session after this many seconds (default: {DEFAULT_SESSION_TIMEOUT})",
    )
    parser.add_argument(
        "--keep-busy-on-error",
        action="store_true",
        help="Leave the session stalled after a write/read error instead of disconnecting",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="BLE Agent - Enroll with and authenticate against a peripheral"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Enroll automatically once Bluetooth is powered on")
    add_session_arguments(run_parser)

    enroll_parser = subparsers.add_parser("enroll", help="Run the enrollment flow")
    add_session_arguments(enroll_parser)

    auth_parser = subparsers.add_parser("auth", help="Run the authentication flow")
    add_session_arguments(auth_parser)

    scan_parser = subparsers.add_parser("scan", help="Scan for protocol devices")
    scan_parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=10.0,
        help="Scan timeout in seconds (default: 10)",
    )

    return parser


COMMANDS = {
    "run": cmd_run,
    "enroll": cmd_enroll,
    "auth": cmd_auth,
    "scan": cmd_scan,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 0

    try:
        return asyncio.run(command(args))
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
