"""Lifecycle of one unit's child process: spawn, stream, wait, classify.

Children start in their own session/process group so a terminal Ctrl-C
reaches only this tool, which then tears each group down explicitly
(SIGTERM, grace period, SIGKILL).
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from runner.config import UnitSpec

from .multiplexer import OutputMultiplexer
from .types import (
    CANCELLED_EXIT_CODE,
    SHELL_SPAWN_FAILURE_CODES,
    SPAWN_FAILURE_EXIT_CODE,
    OutputChunk,
    Outcome,
    Stream,
    UnitResult,
)

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

READ_SIZE = 64 * 1024
DEFAULT_TERM_TIMEOUT = 5.0  # seconds between SIGTERM and SIGKILL
DEFAULT_KILL_TIMEOUT = 2.0  # seconds to wait for pipes to close after SIGKILL


@dataclass
class ProcessHandle:
    spec: UnitSpec
    started: float
    process: asyncio.subprocess.Process | None = None
    pumps: list[asyncio.Task[None]] = field(default_factory=list)
    error: str | None = None

    @property
    def spawned(self) -> bool:
        return self.process is not None


class ProcessSupervisor:
    def __init__(
        self,
        mux: OutputMultiplexer,
        *,
        root: str | Path | None = None,
        cancel_event: asyncio.Event | None = None,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ):
        self.mux = mux
        self.root = Path(root) if root is not None else Path.cwd()
        self.cancel_event = cancel_event
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout

    async def start(self, spec: UnitSpec) -> ProcessHandle:
        """Spawn the unit. Spawn errors are kept on the handle, never raised."""
        handle = ProcessHandle(spec, time.monotonic())
        cwd = spec.working_dir or self.root
        kwargs = self._build_subprocess_kwargs(spec)

        try:
            if isinstance(spec.command, str):
                process = await asyncio.create_subprocess_shell(
                    spec.command, cwd=cwd, **kwargs
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *spec.command, cwd=cwd, **kwargs
                )
        except (OSError, ValueError) as exc:
            # ValueError: NUL bytes in argv, env or cwd.
            handle.error = str(exc)
            logger.info("Could not start %s: %s", spec.name, exc)
            return handle

        handle.process = process
        if process.stdout is None or process.stderr is None:
            raise AssertionError("Unreachable")
        handle.pumps = [
            asyncio.create_task(self._pump(spec.name, Stream.STDOUT, process.stdout)),
            asyncio.create_task(self._pump(spec.name, Stream.STDERR, process.stderr)),
        ]
        logger.debug("Started %s pid=%s cwd=%s", spec.name, process.pid, cwd)
        return handle

    async def wait(self, handle: ProcessHandle) -> UnitResult:
        """Wait for the unit to reach a terminal state.

        All output of the unit has been published when this returns.
        """
        process = handle.process
        if process is None:
            return self._result(
                handle, Outcome.SPAWN_FAILED, SPAWN_FAILURE_EXIT_CODE, handle.error
            )

        try:
            cancelled = await self._wait_or_cancel(handle, process)
        except BaseException:
            # Cancelled, or the multiplexer went away: never leave the group running.
            await asyncio.shield(self._abort(handle))
            raise

        if cancelled:
            returncode = process.returncode
            code = returncode if returncode is not None else CANCELLED_EXIT_CODE
            return self._result(handle, Outcome.CANCELLED, code, "cancelled")
        return self._classify(handle, await process.wait())

    def _build_subprocess_kwargs(self, spec: UnitSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "env": {**os.environ, **spec.env},
        }
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    async def _pump(self, name: str, stream: Stream, reader: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        while True:
            block = await reader.read(READ_SIZE)
            if not block:
                break
            pending += decoder.decode(block)
            *lines, pending = pending.split("\n")
            for line in lines:
                await self.mux.publish(OutputChunk(name, stream, line + "\n"))
            # A line longer than one read block goes out in pieces.
            if len(pending) >= READ_SIZE:
                await self.mux.publish(OutputChunk(name, stream, pending))
                pending = ""

        pending += decoder.decode(b"", final=True)
        if pending:
            await self.mux.publish(OutputChunk(name, stream, pending))

    async def _finish(
        self, handle: ProcessHandle, process: asyncio.subprocess.Process
    ) -> None:
        await asyncio.gather(*handle.pumps)
        await process.wait()

    async def _wait_or_cancel(
        self, handle: ProcessHandle, process: asyncio.subprocess.Process
    ) -> bool:
        finished = asyncio.ensure_future(self._finish(handle, process))
        if self.cancel_event is None:
            await finished
            return False

        cancel_requested = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {finished, cancel_requested}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            finished.cancel()
            raise
        finally:
            cancel_requested.cancel()

        if finished in done:
            finished.result()
            return False

        logger.info("Cancelling %s", handle.spec.name)
        await self._terminate(process)
        try:
            await asyncio.wait_for(finished, timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            # Something outside the process group still holds the pipes open.
            logger.warning("Output of %s did not close after termination", handle.spec.name)
            await self._cancel_pumps(handle)
        return True

    async def _abort(self, handle: ProcessHandle) -> None:
        if handle.process is not None:
            await self._terminate(handle.process)
        await self._cancel_pumps(handle)

    async def _cancel_pumps(self, handle: ProcessHandle) -> None:
        for pump in handle.pumps:
            pump.cancel()
        await asyncio.gather(*handle.pumps, return_exceptions=True)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL it if it outlives the grace period."""
        pid = process.pid
        if IS_WINDOWS and process.returncode is not None:
            return

        self._send_terminate(process)
        if process.returncode is not None:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
            logger.debug("pid=%s exited after SIGTERM returncode=%s", pid, process.returncode)
            return
        except asyncio.TimeoutError:
            pass

        logger.debug("Force killing pid=%s", pid)
        self._send_kill(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning("pid=%s did not exit after SIGKILL", pid)

    # With start_new_session the child leads its own group, so pgid == pid
    # even after the leader itself has been reaped.
    def _send_terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            if IS_WINDOWS:
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(process.pid, signal.SIGTERM)
                logger.debug("Sent SIGTERM to process group pgid=%s", process.pid)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.debug("Group signal failed for pid=%s, terminating pid: %s", process.pid, exc)
            with contextlib.suppress(ProcessLookupError):
                process.terminate()

    def _send_kill(self, process: asyncio.subprocess.Process) -> None:
        try:
            if IS_WINDOWS:
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
                logger.debug("Sent SIGKILL to process group pgid=%s", process.pid)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.debug("Group kill failed for pid=%s, killing pid: %s", process.pid, exc)
            with contextlib.suppress(ProcessLookupError):
                process.kill()

    def _classify(self, handle: ProcessHandle, returncode: int) -> UnitResult:
        if returncode == 0:
            return self._result(handle, Outcome.SUCCEEDED, 0)

        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = f"signal {-returncode}"
            return self._result(handle, Outcome.SIGNALLED, returncode, f"terminated by {name}")

        if handle.spec.uses_shell and not IS_WINDOWS and returncode in SHELL_SPAWN_FAILURE_CODES:
            reason = "command not found" if returncode == 127 else "command not executable"
            return self._result(handle, Outcome.SPAWN_FAILED, returncode, reason)

        return self._result(handle, Outcome.FAILED, returncode)

    def _result(
        self,
        handle: ProcessHandle,
        outcome: Outcome,
        exit_code: int,
        error: str | None = None,
    ) -> UnitResult:
        duration = time.monotonic() - handle.started
        return UnitResult(handle.spec.name, outcome, exit_code, duration, error)
