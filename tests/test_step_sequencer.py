"""
Tests for StepSequencer - scripted step execution.

Tests cover:
- Content conversion (ASCII / hex) and hex format errors
- Validation rules
- Step execution: send, receive polling, delay, clear, unknown types
- Pass result aggregation and notifications
- Single-shot and loop runs, stop() semantics
- Cancellation of in-flight waits
"""
import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from devprobe.engine.step_sequencer import (
    CallbackObserver,
    NullObserver,
    NullStepIO,
    StepSequencer,
    TransportStepIO,
    convert_to_bytes,
    hex_to_bytes,
    validate_received,
)
from devprobe.exceptions import HexFormatError
from devprobe.models import TestStep, Validation


class RecordingObserver:
    """Observer that records every notification in order."""

    def __init__(self):
        self.events = []

    def on_step(self, index, status):
        self.events.append(("step", index, status))

    def on_result(self, success):
        self.events.append(("result", success))

    def on_stop(self):
        self.events.append(("stop",))

    def on_reset(self):
        self.events.append(("reset",))

    def on_info(self, text):
        self.events.append(("info", text))

    def of(self, kind):
        return [event for event in self.events if event[0] == kind]


class ScriptedIO:
    """StepIO with canned read results and recorded sends."""

    def __init__(self, reads=None, send_result=True):
        self.reads = list(reads or [])
        self.read_calls = 0
        self.sent = []
        self.send_result = send_result
        self.clears = 0

    def send(self, data):
        self.sent.append(data)
        return self.send_result

    def read(self, is_hex):
        self.read_calls += 1
        if self.reads:
            return self.reads.pop(0)
        return ""

    def clear(self):
        self.clears += 1


def step(**kwargs):
    return TestStep.model_validate(kwargs)


@pytest.fixture
def observer():
    return RecordingObserver()


class TestContentConversion:
    def test_ascii_content(self):
        assert convert_to_bytes("AT\r\n") == b"AT\r\n"

    def test_non_ascii_is_replaced(self):
        assert convert_to_bytes("é") == b"?"

    def test_hex_content(self):
        assert convert_to_bytes("AA bb 0C", is_hex=True) == b"\xAA\xBB\x0C"

    def test_hex_without_spaces(self):
        assert hex_to_bytes("0102ff") == b"\x01\x02\xff"

    def test_blank_content_is_empty(self):
        assert convert_to_bytes("   ", is_hex=True) == b""
        assert convert_to_bytes(None) == b""

    @pytest.mark.parametrize("content", ["A", "AA B", "AAA BBB C"])
    def test_odd_length_hex_raises(self, content):
        with pytest.raises(HexFormatError, match="even number"):
            hex_to_bytes(content)

    @pytest.mark.parametrize("content", ["GG", "AA ZZ", "0x01"])
    def test_non_hex_characters_raise(self, content):
        with pytest.raises(HexFormatError, match="outside"):
            hex_to_bytes(content)


class TestValidation:
    def test_no_rule_passes(self):
        assert validate_received("", None) is True

    def test_exists(self):
        assert validate_received("x", Validation(type="exists")) is True
        assert validate_received("", Validation(type="exists")) is False

    def test_equals(self):
        rule = Validation(type="equals", value="OK")
        assert validate_received("OK", rule) is True
        assert validate_received("OK ", rule) is False

    def test_contains(self):
        rule = Validation(type="contains", value="OK")
        assert validate_received("RESPONSE OK", rule) is True
        assert validate_received("ERROR", rule) is False

    def test_rule_type_is_case_insensitive(self):
        assert validate_received("abc", Validation(type="CONTAINS", value="b")) is True

    def test_unknown_rule_fails(self):
        assert validate_received("anything", Validation(type="regex", value=".*")) is False


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_empty_script_fails_without_notifications(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)

        assert await sequencer.run_once_async([]) is False
        assert await sequencer.run_once_async(None) is False
        assert observer.events == []

    @pytest.mark.asyncio
    async def test_end_to_end_example(self, observer):
        io = ScriptedIO(reads=["RESPONSE OK"])
        sequencer = StepSequencer(io, observer)
        steps = [
            step(type="send", content="AA BB", isHex=True),
            step(type="delay", time=50),
            step(type="receive", validation={"type": "contains", "value": "OK"}),
        ]

        assert await sequencer.run_once_async(steps) is True
        assert io.sent == [b"\xAA\xBB"]
        assert observer.events == [
            ("reset",),
            ("step", 0, "pass"),
            ("step", 1, "pass"),
            ("info", "RESPONSE OK"),
            ("step", 2, "pass"),
        ]

    @pytest.mark.asyncio
    async def test_malformed_hex_fails_step_and_continues(self, observer):
        io = ScriptedIO()
        sequencer = StepSequencer(io, observer)
        steps = [
            step(type="send", content="ABC", isHex=True),
            step(type="send", content="ZZ", isHex=True),
            step(type="send", content="PING"),
        ]

        assert await sequencer.run_once_async(steps) is False
        assert observer.of("step") == [
            ("step", 0, "fail"),
            ("step", 1, "fail"),
            ("step", 2, "pass"),
        ]
        assert io.sent == [b"PING"]

    @pytest.mark.asyncio
    async def test_send_result_decides_step(self, observer):
        sequencer = StepSequencer(ScriptedIO(send_result=False), observer)

        assert await sequencer.run_once_async([step(type="send", content="X")]) is False
        assert observer.of("step") == [("step", 0, "fail")]

    @pytest.mark.asyncio
    async def test_receive_polls_exactly_configured_attempts(self, observer):
        io = ScriptedIO()
        sequencer = StepSequencer(io, observer)
        steps = [step(type="receive", validation={"type": "exists"})]

        started = time.monotonic()
        assert await sequencer.run_once_async(steps) is False
        elapsed = time.monotonic() - started

        assert io.read_calls == 30
        assert 0.2 <= elapsed < 2.0
        assert observer.of("info") == [("info", "")]
        assert observer.of("step") == [("step", 0, "fail")]

    @pytest.mark.asyncio
    async def test_receive_stops_on_first_data(self, observer):
        io = ScriptedIO(reads=["", "", "OK"])
        sequencer = StepSequencer(io, observer, poll_interval_ms=1)

        await sequencer.run_once_async([step(type="receive")])

        assert io.read_calls == 3
        assert observer.of("info") == [("info", "OK")]
        assert observer.of("step") == [("step", 0, "pass")]

    @pytest.mark.asyncio
    async def test_receive_passes_hex_flag(self):
        io = MagicMock()
        io.read.return_value = "0A 0B"
        sequencer = StepSequencer(io)

        await sequencer.run_once_async([step(type="receive", isHex=True)])
        io.read.assert_called_once_with(True)

    @pytest.mark.asyncio
    async def test_clear_and_unknown_steps(self, observer):
        io = ScriptedIO()
        sequencer = StepSequencer(io, observer)
        steps = [step(type="clear"), step(type="jump"), step(type="CLEAR")]

        assert await sequencer.run_once_async(steps) is False
        assert io.clears == 2
        assert observer.of("step") == [
            ("step", 0, "pass"),
            ("step", 1, "fail"),
            ("step", 2, "pass"),
        ]

    @pytest.mark.asyncio
    async def test_io_exception_becomes_step_failure(self, observer):
        io = MagicMock()
        io.send.side_effect = RuntimeError("port vanished")
        sequencer = StepSequencer(io, observer)

        steps = [step(type="send", content="X"), step(type="delay", time=0)]
        assert await sequencer.run_once_async(steps) is False
        assert observer.of("step") == [("step", 0, "fail"), ("step", 1, "pass")]

    @pytest.mark.asyncio
    async def test_observer_exception_does_not_abort_run(self):
        observer = MagicMock()
        observer.on_step.side_effect = RuntimeError("ui gone")
        sequencer = StepSequencer(ScriptedIO(), observer)

        assert await sequencer.run_once_async([step(type="clear"), step(type="clear")]) is True
        assert observer.on_step.call_count == 2

    @pytest.mark.asyncio
    async def test_raising_callbacks_never_escape_a_run(self):
        def boom(*args):
            raise RuntimeError("ui gone")

        observer = CallbackObserver(
            on_step=boom, on_result=boom, on_stop=boom, on_reset=boom, on_info=boom
        )
        io = ScriptedIO(reads=["OK"])
        sequencer = StepSequencer(io, observer)
        steps = [step(type="send", content="X"), step(type="receive"), step(type="clear")]

        assert await sequencer.run_task_async(True, 0, steps) is True
        assert io.sent == [b"X"]
        assert io.clears == 1
        assert sequencer.running is False


class TestDefaults:
    def test_explicit_zero_overrides_settings(self):
        sequencer = StepSequencer(poll_attempts=0, poll_interval_ms=0)
        assert sequencer.poll_attempts == 0
        assert sequencer.poll_interval_ms == 0

    @pytest.mark.asyncio
    async def test_defaults_are_permissive(self):
        sequencer = StepSequencer(poll_attempts=1)
        steps = [
            step(type="send", content="X"),
            step(type="receive"),
            step(type="clear"),
        ]

        assert await sequencer.run_once_async(steps) is False
        assert isinstance(sequencer.io, NullStepIO)
        assert isinstance(sequencer.observer, NullObserver)

    def test_callback_observer_ignores_missing_callbacks(self):
        seen = []
        observer = CallbackObserver(on_result=seen.append)
        observer.on_step(0, "pass")
        observer.on_stop()
        observer.on_result(True)
        assert seen == [True]

    def test_transport_step_io_delegates(self):
        transport = MagicMock()
        transport.send.return_value = True
        transport.poll.return_value = "AA"
        io = TransportStepIO(transport)

        assert io.send(b"\x01") is True
        assert io.read(True) == "AA"
        io.clear()

        transport.send.assert_called_once_with(b"\x01")
        transport.poll.assert_called_once_with(True)
        transport.clear.assert_called_once()


class TestRunTask:
    @pytest.mark.asyncio
    async def test_once_reports_single_result_and_stop(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)

        result = await sequencer.run_task_async(True, 1, [step(type="clear")])

        assert result is True
        assert observer.of("result") == [("result", True)]
        assert observer.of("stop") == [("stop",)]
        assert sequencer.running is False

    @pytest.mark.asyncio
    async def test_once_with_empty_script(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)

        assert await sequencer.run_task_async(True, 0, []) is False
        assert observer.events == [("result", False), ("stop",)]

    @pytest.mark.asyncio
    async def test_loop_runs_until_stop(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)

        def stop_after_three(success):
            if len(observer.of("result")) >= 3:
                sequencer.stop()

        observer.on_result = lambda success: (
            observer.events.append(("result", success)),
            stop_after_three(success),
        )

        await asyncio.wait_for(
            sequencer.run_task_async(False, 0, [step(type="clear")]),
            timeout=5,
        )

        assert len(observer.of("result")) == 3
        assert observer.of("stop") == [("stop",)]
        assert sequencer.get_stats()["passes"] == 3

    @pytest.mark.asyncio
    async def test_stop_interrupts_interval(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)
        task = asyncio.create_task(sequencer.run_task_async(False, 60, [step(type="clear")]))

        await asyncio.sleep(0.05)
        started = time.monotonic()
        sequencer.stop()
        await asyncio.wait_for(task, timeout=2)

        assert time.monotonic() - started < 1.0
        assert observer.of("result") == [("result", True)]
        assert observer.of("stop") == [("stop",)]

    @pytest.mark.asyncio
    async def test_stop_interrupts_delay_step(self, observer):
        io = ScriptedIO()
        sequencer = StepSequencer(io, observer)
        steps = [
            step(type="delay", time=60000),
            step(type="send", content="LATE"),
            step(type="receive"),
            step(type="delay", time=60000),
        ]
        task = asyncio.create_task(sequencer.run_task_async(True, 0, steps))

        await asyncio.sleep(0.05)
        started = time.monotonic()
        sequencer.stop()
        assert await asyncio.wait_for(task, timeout=2) is True

        # Remaining steps still run, with waits and polling cut short
        assert time.monotonic() - started < 1.0
        assert observer.of("step") == [
            ("step", 0, "pass"),
            ("step", 1, "pass"),
            ("step", 2, "pass"),
            ("step", 3, "pass"),
        ]
        assert observer.of("result") == [("result", True)]
        assert io.sent == [b"LATE"]
        assert io.read_calls == 1

    @pytest.mark.asyncio
    async def test_stop_does_not_hide_real_failures(self, observer):
        io = ScriptedIO(send_result=False)
        sequencer = StepSequencer(io, observer)
        steps = [step(type="delay", time=60000), step(type="send", content="LATE")]
        task = asyncio.create_task(sequencer.run_task_async(True, 0, steps))

        await asyncio.sleep(0.05)
        sequencer.stop()

        assert await asyncio.wait_for(task, timeout=2) is False
        assert observer.of("step") == [("step", 0, "pass"), ("step", 1, "fail")]

    @pytest.mark.asyncio
    async def test_double_stop_fires_once(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)
        task = asyncio.create_task(sequencer.run_task_async(False, 60, [step(type="clear")]))
        await asyncio.sleep(0.05)

        callers = [threading.Thread(target=sequencer.stop) for _ in range(2)]
        for caller in callers:
            caller.start()
        for caller in callers:
            caller.join()
        sequencer.stop()

        await asyncio.wait_for(task, timeout=2)
        assert observer.of("stop") == [("stop",)]

    @pytest.mark.asyncio
    async def test_stop_without_run_is_noop(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)
        sequencer.stop()
        assert observer.events == []

    @pytest.mark.asyncio
    async def test_stop_fires_even_when_pass_raises(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)

        async def boom(steps):
            raise RuntimeError("unexpected")

        sequencer.run_once_async = boom
        with pytest.raises(RuntimeError):
            await sequencer.run_task_async(True, 0, [step(type="clear")])

        assert observer.of("stop") == [("stop",)]
        assert sequencer.running is False

    @pytest.mark.asyncio
    async def test_run_uses_copy_of_steps(self, observer):
        io = ScriptedIO()
        sequencer = StepSequencer(io, observer)
        steps = [step(type="send", content="A")]
        task = asyncio.create_task(
            sequencer.run_task_async(False, 0.05, steps)
        )
        await asyncio.sleep(0.01)
        steps[0].content = "B"
        steps.append(step(type="send", content="C"))

        await asyncio.sleep(0.2)
        sequencer.stop()
        await asyncio.wait_for(task, timeout=2)

        assert set(io.sent) == {b"A"}

    @pytest.mark.asyncio
    async def test_new_run_after_stop(self, observer):
        sequencer = StepSequencer(ScriptedIO(), observer)
        task = asyncio.create_task(sequencer.run_task_async(False, 60, [step(type="clear")]))
        await asyncio.sleep(0.05)
        sequencer.stop()
        await task

        assert await sequencer.run_task_async(True, 0, [step(type="clear")]) is True
        assert observer.of("stop") == [("stop",), ("stop",)]
