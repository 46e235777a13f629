"""Tests for auxiliary process supervision and subprocess termination.

These spawn real Python subprocesses.
"""

import asyncio
import os
import signal
import sys

import pytest

from warden.catalog import AuxiliaryConfig
from warden.errors import ProcessStartError
from warden.lifecycle.auxiliary import AuxiliaryProcess
from warden.lifecycle.process import terminate_process

READY_THEN_SLEEP = """
import sys, time
print("booting", flush=True)
print("Server listening on 1234", flush=True)
for i in range(100):
    print(f"log line {i}", flush=True)
time.sleep(60)
"""

IGNORES_SIGTERM = """
import signal, sys, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
time.sleep(60)
"""


def python_helper(script: str, **kwargs) -> AuxiliaryConfig:
    return AuxiliaryConfig(command=sys.executable, args=["-c", script], **kwargs)


@pytest.fixture
async def helpers():
    started = []
    yield started
    for helper in started:
        await helper.stop()


class TestAuxiliaryStartup:
    async def test_ready_line_completes_startup(self, helpers):
        # Arrange
        helper = AuxiliaryProcess("bridge", python_helper(READY_THEN_SLEEP))
        helpers.append(helper)

        # Act
        await helper.start(dict(os.environ))

        # Assert
        assert helper.is_running
        assert helper.pid is not None

    async def test_custom_ready_pattern(self, helpers):
        # Arrange
        script = "import time; print('bridge up: port=9', flush=True); time.sleep(60)"
        helper = AuxiliaryProcess(
            "bridge", python_helper(script, ready_patterns=[r"port=\d+"])
        )
        helpers.append(helper)

        # Act
        await helper.start(dict(os.environ))

        # Assert
        assert helper.is_running

    async def test_config_env_reaches_process(self, helpers):
        # Arrange
        script = (
            "import os, time\n"
            "print('ready' if os.environ['BRIDGE_MODE'] == 'http' else 'wrong', flush=True)\n"
            "time.sleep(60)\n"
        )
        helper = AuxiliaryProcess(
            "bridge",
            python_helper(script, env={"BRIDGE_MODE": "http"}, startup_timeout=5),
        )
        helpers.append(helper)

        # Act
        await helper.start(dict(os.environ))

        # Assert
        assert helper.is_running

    async def test_no_ready_line_times_out(self, helpers):
        # Arrange
        script = "import time; print('still warming up', flush=True); time.sleep(60)"
        helper = AuxiliaryProcess(
            "bridge", python_helper(script, startup_timeout=0.5), grace_period=0.5
        )
        helpers.append(helper)

        # Act & Assert
        with pytest.raises(ProcessStartError, match="did not become ready"):
            await helper.start(dict(os.environ))
        assert not helper.is_running

    async def test_early_exit_fails_startup(self, helpers):
        # Arrange
        script = "import sys; print('fatal: no config', flush=True); sys.exit(3)"
        helper = AuxiliaryProcess("bridge", python_helper(script))
        helpers.append(helper)

        # Act & Assert
        with pytest.raises(ProcessStartError, match="exited with code 3"):
            await helper.start(dict(os.environ))

    async def test_spawn_failure(self):
        # Arrange
        helper = AuxiliaryProcess(
            "bridge", AuxiliaryConfig(command="nonexistent-command-that-will-fail")
        )

        # Act & Assert
        with pytest.raises(ProcessStartError, match="Failed to spawn"):
            await helper.start(dict(os.environ))

    async def test_stop_is_idempotent(self):
        # Arrange
        helper = AuxiliaryProcess("bridge", python_helper(READY_THEN_SLEEP))
        await helper.start(dict(os.environ))

        # Act
        await helper.stop()
        await helper.stop()

        # Assert
        assert not helper.is_running
        assert helper.pid is None


class TestTerminateProcess:
    async def test_escalates_to_sigkill(self):
        # Arrange
        process = await asyncio.create_subprocess_exec(
            sys.executable, "-c", IGNORES_SIGTERM, stdout=asyncio.subprocess.PIPE
        )
        await process.stdout.readline()

        # Act
        await terminate_process(process, "stubborn", grace_period=0.2)

        # Assert
        assert process.returncode == -signal.SIGKILL

    async def test_closing_stdin_lets_process_exit_cleanly(self):
        # Arrange
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            "import sys\nfor line in sys.stdin: pass\n",
            stdin=asyncio.subprocess.PIPE,
        )

        # Act
        await terminate_process(process, "reader", grace_period=5, close_stdin=True)

        # Assert
        assert process.returncode == 0

    async def test_already_exited_process_is_ignored(self):
        # Arrange
        process = await asyncio.create_subprocess_exec(sys.executable, "-c", "pass")
        await process.wait()

        # Act & Assert
        await terminate_process(process, "done", grace_period=0.1)
        assert process.returncode == 0
