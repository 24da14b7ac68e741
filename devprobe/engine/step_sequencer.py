"""
Step Sequencer - runs a test script against a device.

Executes send / receive / delay / clear steps strictly in order through an
injected StepIO, validates receive results, and reports progress through a
SequencerObserver:

- on_reset() at the start of every pass
- on_step(index, "pass" | "fail") after every executed step
- on_info(text) after every receive step, with the raw received text
- on_result(success) after every completed pass
- on_stop() exactly once when a run ends

A run is either a single pass or a loop of passes separated by a fixed
interval until stop() is called. Every wait (receive polling, delay steps,
the inter-pass interval) goes through one cancellable sleep, so stop()
unblocks all of them.
"""
from __future__ import annotations

import asyncio
import re
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import structlog

from devprobe.config import settings
from devprobe.engine.transport import Transport
from devprobe.exceptions import HexFormatError, ScriptError, StepExecutionError
from devprobe.models import StepStatus, StepType, TestStep, Validation, ValidationType

logger = structlog.get_logger()

_HEX_DIGITS = re.compile(r"^[0-9A-Fa-f]+$")


# ----------------------------------------------------------------------
# Collaborator interfaces
# ----------------------------------------------------------------------


class StepIO(Protocol):
    """Device I/O the sequencer needs."""

    def send(self, data: bytes) -> bool:
        ...

    def read(self, is_hex: bool) -> str:
        ...

    def clear(self) -> None:
        ...


class SequencerObserver(Protocol):
    """Receives progress notifications from the sequencer."""

    def on_step(self, index: int, status: str) -> None:
        ...

    def on_result(self, success: bool) -> None:
        ...

    def on_stop(self) -> None:
        ...

    def on_reset(self) -> None:
        ...

    def on_info(self, text: str) -> None:
        ...


class NullStepIO:
    """Stand-in used when no device I/O is wired: sends fail, reads are empty."""

    def send(self, data: bytes) -> bool:
        return False

    def read(self, is_hex: bool) -> str:
        return ""

    def clear(self) -> None:
        pass


class NullObserver:
    """Observer that ignores every notification."""

    def on_step(self, index: int, status: str) -> None:
        pass

    def on_result(self, success: bool) -> None:
        pass

    def on_stop(self) -> None:
        pass

    def on_reset(self) -> None:
        pass

    def on_info(self, text: str) -> None:
        pass


class CallbackObserver:
    """Adapts plain callables to the SequencerObserver interface; unset ones are no-ops."""

    def __init__(
        self,
        on_step: Optional[Callable[[int, str], Any]] = None,
        on_result: Optional[Callable[[bool], Any]] = None,
        on_stop: Optional[Callable[[], Any]] = None,
        on_reset: Optional[Callable[[], Any]] = None,
        on_info: Optional[Callable[[str], Any]] = None,
    ):
        self._on_step = on_step
        self._on_result = on_result
        self._on_stop = on_stop
        self._on_reset = on_reset
        self._on_info = on_info

    def on_step(self, index: int, status: str) -> None:
        if self._on_step:
            self._on_step(index, status)

    def on_result(self, success: bool) -> None:
        if self._on_result:
            self._on_result(success)

    def on_stop(self) -> None:
        if self._on_stop:
            self._on_stop()

    def on_reset(self) -> None:
        if self._on_reset:
            self._on_reset()

    def on_info(self, text: str) -> None:
        if self._on_info:
            self._on_info(text)


class TransportStepIO:
    """StepIO backed by a serial or socket transport."""

    def __init__(self, transport: Transport):
        self.transport = transport

    def send(self, data: bytes) -> bool:
        return self.transport.send(data)

    def read(self, is_hex: bool) -> str:
        return self.transport.poll(is_hex)

    def clear(self) -> None:
        self.transport.clear()


# ----------------------------------------------------------------------
# Content conversion and validation
# ----------------------------------------------------------------------


def hex_to_bytes(hex_string: str) -> bytes:
    """
    Decode space-separated hex pairs ("AA BB 0d").

    Raises:
        HexFormatError: odd number of digits or a non-hex character
    """
    cleaned = "".join(hex_string.split())
    if len(cleaned) % 2 != 0:
        raise HexFormatError(
            "Hex string must have an even number of digits",
            details={"content": hex_string, "digits": len(cleaned)},
        )
    if not _HEX_DIGITS.match(cleaned):
        raise HexFormatError(
            "Hex string contains characters outside 0-9, A-F",
            details={"content": hex_string},
        )
    return bytes.fromhex(cleaned)


def convert_to_bytes(content: Optional[str], is_hex: bool = False) -> bytes:
    """Turn step content into a payload: hex pairs when ``is_hex``, ASCII otherwise."""
    if content is None or not content.strip():
        return b""
    if is_hex:
        return hex_to_bytes(content)
    return content.encode("ascii", errors="replace")


def validate_received(received: str, validation: Optional[Validation]) -> bool:
    """
    Apply a receive step's validation rule.

    No rule always passes; a rule type this version does not know always fails.
    """
    if validation is None:
        return True

    kind = (validation.type or "").lower()
    if kind == ValidationType.EXISTS.value:
        return bool(received)
    if kind == ValidationType.EQUALS.value:
        return received == validation.value
    if kind == ValidationType.CONTAINS.value:
        return validation.value in received
    return False


# ----------------------------------------------------------------------
# Sequencer
# ----------------------------------------------------------------------


class StepSequencer:
    """
    Runs scripts step by step against injected device I/O.

    Example usage:
        sequencer = StepSequencer(TransportStepIO(transport), observer)
        await sequencer.run_task_async(once=False, interval_seconds=5, steps=steps)

        # from anywhere, including another thread:
        sequencer.stop()
    """

    def __init__(
        self,
        io: Optional[StepIO] = None,
        observer: Optional[SequencerObserver] = None,
        poll_attempts: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ):
        self.io: StepIO = io or NullStepIO()
        self.observer: SequencerObserver = observer or NullObserver()
        self.poll_attempts = (
            settings.receive_poll_attempts if poll_attempts is None else poll_attempts
        )
        self.poll_interval_ms = (
            settings.receive_poll_interval_ms if poll_interval_ms is None else poll_interval_ms
        )

        self._running = False
        self._stop_notified = True
        self._stop_lock = threading.Lock()
        self._cancel_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        # Statistics
        self.pass_count = 0
        self.passed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def run_task_async(
        self,
        once: bool,
        interval_seconds: float,
        steps: Optional[Sequence[TestStep]],
    ) -> Optional[bool]:
        """
        Run the script once or in a loop until stop().

        The steps are copied at start, so changes to the caller's list do not
        affect this run.

        Returns:
            Result of the last completed pass, None if no pass completed
        """
        self._loop = asyncio.get_running_loop()
        self._cancel_event = asyncio.Event()
        with self._stop_lock:
            self._running = True
            self._stop_notified = False

        script: List[TestStep] = [step.model_copy(deep=True) for step in steps or []]
        last_result: Optional[bool] = None

        logger.info(
            "sequencer_started",
            once=once,
            interval_seconds=interval_seconds,
            step_count=len(script),
        )

        try:
            if once:
                last_result = await self.run_once_async(script)
                self._report_result(last_result)
            else:
                while self._running and not self.cancelled:
                    last_result = await self.run_once_async(script)
                    self._report_result(last_result)

                    if not self._running:
                        break

                    await self._sleep(interval_seconds * 1000)
        finally:
            with self._stop_lock:
                self._running = False
                notify = not self._stop_notified
                self._stop_notified = True
            if notify:
                self._notify("stop", self.observer.on_stop)
            logger.info(
                "sequencer_finished",
                passes=self.pass_count,
                passed=self.passed,
                failed=self.failed,
            )

        return last_result

    def stop(self) -> None:
        """
        Stop the current run.

        Safe from any thread and idempotent: only the first call after a
        run_task_async() start has any effect.
        """
        with self._stop_lock:
            if not self._running:
                return
            self._running = False
            self._stop_notified = True

        self._cancel()
        logger.info("sequencer_stop_requested")
        self._notify("stop", self.observer.on_stop)

    def _cancel(self) -> None:
        event = self._cancel_event
        if event is None:
            return

        loop = self._loop
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if loop is not None and current is not loop and loop.is_running():
            loop.call_soon_threadsafe(event.set)
        else:
            event.set()

    async def run_once_async(self, steps: Optional[Sequence[TestStep]]) -> bool:
        """
        Execute every step once, in order.

        A failing step does not stop the pass; the pass succeeds only if every
        step passed. Once the run is cancelled every wait returns at once, so
        the remaining steps still run but without delays or receive polling.
        """
        if not steps:
            logger.warning("sequence_empty")
            return False

        self._notify("reset", self.observer.on_reset)
        success = True

        for index, step in enumerate(steps):
            try:
                step_ok = await self._execute_step(index, step)
            except StepExecutionError as e:
                logger.warning("step_rejected", **e.details)
                step_ok = False
            except ScriptError as e:
                logger.warning(
                    "step_content_invalid",
                    step_index=index,
                    step_type=step.type,
                    error=e.message,
                    **e.details,
                )
                step_ok = False
            except Exception as e:
                logger.error(
                    "step_execution_failed",
                    step_index=index,
                    step_type=step.type,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                step_ok = False

            status = StepStatus.PASS if step_ok else StepStatus.FAIL
            self._notify("step", self.observer.on_step, index, status.value)
            if not step_ok:
                success = False

        if self.cancelled:
            logger.info("sequence_cancelled", total=len(steps), success=success)
        self.pass_count += 1
        return success

    async def _execute_step(self, index: int, step: TestStep) -> bool:
        kind = step.step_type

        if kind is StepType.SEND:
            payload = convert_to_bytes(step.content, step.is_hex)
            sent = await asyncio.to_thread(self.io.send, payload)
            logger.debug("step_send", step_index=index, size=len(payload), sent=bool(sent))
            return bool(sent)

        if kind is StepType.RECEIVE:
            received = await self._poll_receive(step.is_hex)
            ok = validate_received(received, step.validation)
            logger.debug("step_receive", step_index=index, received=received, valid=ok)
            self._notify("info", self.observer.on_info, received)
            return ok

        if kind is StepType.DELAY:
            await self._sleep(step.delay_ms)
            return True

        if kind is StepType.CLEAR:
            self.io.clear()
            return True

        raise StepExecutionError(f"Unknown step type: {step.type}", index, step.type)

    async def _poll_receive(self, is_hex: bool) -> str:
        received = ""
        for attempt in range(self.poll_attempts):
            received = self.io.read(is_hex) or ""
            if received:
                break
            if attempt + 1 < self.poll_attempts:
                if not await self._sleep(self.poll_interval_ms):
                    break
        return received

    async def _sleep(self, delay_ms: float) -> bool:
        """
        Cancellable sleep shared by every wait in the sequencer.

        Returns:
            False if the run was cancelled before or during the wait
        """
        if self._cancel_event is None:
            self._cancel_event = asyncio.Event()
        event = self._cancel_event

        if delay_ms <= 0 or event.is_set():
            await asyncio.sleep(0)
            return not event.is_set()

        try:
            await asyncio.wait_for(event.wait(), timeout=delay_ms / 1000)
            return False
        except asyncio.TimeoutError:
            return True

    def _report_result(self, success: bool) -> None:
        if success:
            self.passed += 1
        else:
            self.failed += 1
        logger.info("pass_completed", success=success, passes=self.pass_count)
        self._notify("result", self.observer.on_result, success)

    def _notify(self, event: str, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.warning("observer_callback_failed", notification=event, error=str(e))

    def reset_counters(self) -> None:
        self.pass_count = 0
        self.passed = 0
        self.failed = 0

    def get_stats(self) -> Dict[str, Any]:
        """Get run statistics."""
        return {
            "running": self._running,
            "passes": self.pass_count,
            "passed": self.passed,
            "failed": self.failed,
        }
