"""Subprocess helpers shared by auxiliary processes and stdio adapters."""

import asyncio
import logging

logger = logging.getLogger(__name__)

KILL_WAIT = 2.0
# Capability listings from large servers easily exceed asyncio's 64 KiB default
STREAM_LIMIT = 16 * 1024 * 1024


async def terminate_process(
    process: asyncio.subprocess.Process,
    name: str,
    grace_period: float,
    close_stdin: bool = False,
) -> None:
    """Stop a subprocess, escalating from a graceful exit to SIGKILL.

    1. Optionally close stdin and wait ``grace_period`` for a clean exit
    2. Send SIGTERM and wait ``grace_period``
    3. Send SIGKILL

    Never raises; failures are logged.
    """
    if process.returncode is not None:
        return

    logger.debug(f"Starting graceful shutdown for '{name}' (PID: {process.pid})")

    try:
        if close_stdin and process.stdin and not process.stdin.is_closing():
            process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=grace_period)
                logger.debug(f"'{name}' exited after stdin was closed")
                return
            except asyncio.TimeoutError:
                logger.debug(f"'{name}' didn't exit after stdin closed, sending SIGTERM")

        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug(f"'{name}' already dead, skipping SIGTERM")
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=grace_period)
            logger.debug(f"'{name}' exited after SIGTERM")
            return
        except asyncio.TimeoutError:
            logger.debug(f"'{name}' didn't exit after SIGTERM, sending SIGKILL")

        try:
            process.kill()
        except ProcessLookupError:
            logger.debug(f"'{name}' already dead, skipping SIGKILL")
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT)
            logger.debug(f"'{name}' killed")
        except asyncio.TimeoutError:
            logger.error(f"'{name}' didn't die after SIGKILL")

    except Exception as e:
        logger.error(f"Error during shutdown of '{name}': {e}")
