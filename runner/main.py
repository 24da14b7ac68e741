"""
Device test runner

Command line front end for the step sequencer:
1. Loads a test script (JSON list of steps)
2. Opens a serial line or connects to a TCP target
3. Runs the script once, or in a loop until interrupted
4. Logs every step, result and transport event
"""
import argparse
import asyncio
import signal
import sys
from typing import List, Optional

import structlog

from devprobe.engine.script_store import ScriptStore, load_script_file
from devprobe.engine.serial_transport import SerialTransport, list_serial_ports
from devprobe.engine.socket_transport import SocketTransport
from devprobe.engine.step_sequencer import StepSequencer, TransportStepIO
from devprobe.engine.transport import Transport
from devprobe.exceptions import ScriptFormatError
from devprobe.logging import setup_logging
from devprobe.models import TestStep

logger = structlog.get_logger()


class EventLogger:
    """
    Sequencer observer and transport listener that logs every event.

    Keeps the per-step statuses of the latest pass for the summary line.
    """

    def __init__(self, steps: List[TestStep]):
        self.steps = steps
        self.statuses: List[Optional[str]] = [None] * len(steps)
        self.results: List[bool] = []
        self.stopped = 0

    # SequencerObserver

    def on_reset(self) -> None:
        self.statuses = [None] * len(self.steps)

    def on_step(self, index: int, status: str) -> None:
        self.statuses[index] = status
        step = self.steps[index]
        log = logger.info if status == "pass" else logger.warning
        log("step_update", index=index, name=step.name, type=step.type, status=status)

    def on_info(self, text: str) -> None:
        logger.info("device_message", info=text)

    def on_result(self, success: bool) -> None:
        self.results.append(success)
        logger.info(
            "run_result",
            result=success,
            passes=len(self.results),
            failures=self.results.count(False),
        )

    def on_stop(self) -> None:
        self.stopped += 1
        logger.info("run_stopped")

    # TransportListener

    def on_connected(self) -> None:
        logger.info("link_up")

    def on_disconnected(self) -> None:
        logger.info("link_down")

    def on_error(self, message: str) -> None:
        logger.error("link_error", message=message)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scripted device functional tester")
    parser.add_argument(
        "--script",
        help="Path to the test script (JSON list of steps)",
    )
    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List available serial ports and exit",
    )

    link = parser.add_mutually_exclusive_group()
    link.add_argument("--serial", metavar="PORT", help="Serial port to open")
    link.add_argument("--host", help="TCP target IP address (or localhost)")

    parser.add_argument("--port", type=int, help="TCP target port")
    parser.add_argument("--baud", type=int, default=9600, help="Serial baud rate")
    parser.add_argument("--data-bits", type=int, default=8, help="Serial data bits")
    parser.add_argument(
        "--parity",
        choices=["none", "odd", "even"],
        default="none",
        help="Serial parity",
    )
    parser.add_argument(
        "--stop-bits",
        choices=["1", "1.5", "2"],
        default="1",
        help="Serial stop bits",
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Repeat the script until interrupted",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=1.0,
        help="Seconds between passes in loop mode",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for the TCP link before running",
    )
    parser.add_argument(
        "--plain-logs",
        action="store_true",
        help="Human readable log lines instead of JSON",
    )
    return parser


def open_transport(args: argparse.Namespace, events: EventLogger) -> Optional[Transport]:
    """Open the link selected on the command line, or None on failure."""
    if args.serial:
        transport = SerialTransport(listener=events)
        if not transport.open(
            args.serial,
            args.baud,
            data_bits=args.data_bits,
            parity=args.parity,
            stop_bits=args.stop_bits,
        ):
            return None
        return transport

    if args.port is None:
        logger.error("tcp_port_missing")
        return None

    transport = SocketTransport(listener=events)
    if not transport.connect(args.host, args.port):
        return None
    if not transport.wait_until_connected(args.connect_timeout):
        logger.error(
            "tcp_connect_timeout",
            host=args.host,
            port=args.port,
            timeout_sec=args.connect_timeout,
        )
        transport.close()
        return None
    return transport


async def run(args: argparse.Namespace) -> int:
    if args.list_ports:
        for name in list_serial_ports():
            print(name)
        return 0

    if not args.script or not (args.serial or args.host):
        logger.error("missing_arguments", hint="--script and one of --serial/--host are required")
        return 2

    store = ScriptStore()
    try:
        store.add_step(load_script_file(args.script))
    except ScriptFormatError as e:
        logger.error("script_load_failed", error=e.message, **e.details)
        return 2

    steps = store.get_all_steps()
    events = EventLogger(steps)

    transport = await asyncio.to_thread(open_transport, args, events)
    if transport is None:
        return 1

    sequencer = StepSequencer(TransportStepIO(transport), events)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, sequencer.stop)
    except (NotImplementedError, RuntimeError):
        # Signal handlers are unavailable on Windows event loops
        pass

    try:
        result = await sequencer.run_task_async(
            once=not args.loop,
            interval_seconds=args.interval,
            steps=steps,
        )
    except KeyboardInterrupt:
        sequencer.stop()
        result = None
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await asyncio.to_thread(transport.close)

    logger.info("runner_summary", **sequencer.get_stats())
    if args.loop:
        return 0 if events.results and all(events.results) else 1
    return 0 if result else 1


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging("runner", json_logs=not args.plain_logs)
    return await run(args)


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
