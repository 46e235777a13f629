"""Supervision of auxiliary helper processes (e.g. HTTP bridges).

An auxiliary process is spawned before the server's primary adapter connects.
It counts as ready once a line of its output matches one of the ready
patterns; output after that point is drained and logged.
"""

import asyncio
import logging
import re
from collections.abc import Mapping

from warden.catalog import AuxiliaryConfig
from warden.errors import ProcessStartError
from warden.lifecycle.process import STREAM_LIMIT, terminate_process

logger = logging.getLogger(__name__)

DEFAULT_READY_PATTERNS = ("listening on", "server running", "server started", "ready")


class AuxiliaryProcess:
    """One running auxiliary process and its output drain."""

    def __init__(
        self,
        name: str,
        config: AuxiliaryConfig,
        startup_timeout: float = 10.0,
        grace_period: float = 3.0,
    ):
        self.name = name
        self._config = config
        self._startup_timeout = (
            config.startup_timeout if config.startup_timeout is not None else startup_timeout
        )
        self._grace_period = grace_period

        patterns = config.ready_patterns or DEFAULT_READY_PATTERNS
        self._ready_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in patterns]

        self._process: asyncio.subprocess.Process | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self, env: Mapping[str, str], cwd: str | None = None) -> None:
        """Spawn the process and wait for a ready line.

        Raises:
            ProcessStartError: On spawn failure, early exit, or startup timeout
        """
        command = [self._config.command, *self._config.args]
        logger.info(f"Starting auxiliary process for '{self.name}': {command}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**env, **self._config.env},
                cwd=cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessStartError(
                f"Failed to spawn auxiliary process for '{self.name}': {e}"
            ) from e

        try:
            await asyncio.wait_for(self._wait_ready(), timeout=self._startup_timeout)
        except asyncio.TimeoutError:
            await self.stop()
            raise ProcessStartError(
                f"Auxiliary process for '{self.name}' did not become ready "
                f"within {self._startup_timeout:.0f} seconds"
            ) from None
        except ProcessStartError:
            await self.stop()
            raise

        self._drain_task = asyncio.create_task(
            self._drain_output(self._process.stdout), name=f"auxiliary_drain_{self.name}"
        )
        logger.info(f"Auxiliary process for '{self.name}' is ready (PID: {self.pid})")

    async def _wait_ready(self) -> None:
        stdout = self._process.stdout
        while True:
            line_bytes = await self._readline(stdout)
            if not line_bytes:
                returncode = await self._process.wait()
                raise ProcessStartError(
                    f"Auxiliary process for '{self.name}' exited with code "
                    f"{returncode} before becoming ready"
                )

            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            logger.debug(f"[{self.name}] {line}")
            if self._is_ready_line(line):
                return

    def _is_ready_line(self, line: str) -> bool:
        return any(pattern.search(line) for pattern in self._ready_patterns)

    async def _drain_output(self, stdout: asyncio.StreamReader) -> None:
        while True:
            line_bytes = await self._readline(stdout)
            if not line_bytes:
                break
            logger.debug(
                f"[{self.name}] {line_bytes.decode('utf-8', errors='replace').rstrip()}"
            )
        logger.debug(f"Auxiliary process for '{self.name}' closed its output")

    async def _readline(self, stdout: asyncio.StreamReader) -> bytes:
        while True:
            try:
                return await stdout.readline()
            except ValueError as e:
                logger.warning(f"Skipping oversized output line from '{self.name}': {e}")

    async def stop(self) -> None:
        """Terminate the process. Safe to call more than once."""
        process, self._process = self._process, None
        drain_task, self._drain_task = self._drain_task, None

        if process is not None:
            await terminate_process(process, f"{self.name} auxiliary", self._grace_period)

        if drain_task is not None:
            drain_task.cancel()
            try:
                await drain_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Output drain for '{self.name}' ended with error: {e}")
