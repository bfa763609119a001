from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable, Sequence
from pathlib import Path

from runner.config import UnitSpec

from .multiplexer import OutputMultiplexer
from .supervisor import DEFAULT_TERM_TIMEOUT, ProcessSupervisor
from .types import CANCELLED_EXIT_CODE, Outcome, RunOutcome, UnitResult

logger = logging.getLogger(__name__)


class Executor:
    """Runs every unit at once and joins them into one `RunOutcome`.

    Units are independent: nothing is ordered, skipped or retried because of
    another unit's result. `max_parallel` optionally caps how many children
    exist at the same time; by default there is no cap.
    """

    def __init__(
        self,
        units: Sequence[UnitSpec],
        *,
        kind: str = "task",
        root: str | Path | None = None,
        mux: OutputMultiplexer | None = None,
        max_parallel: int | None = None,
        handle_signals: bool = True,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
    ):
        if max_parallel is not None and max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {max_parallel}")

        self.units = list(units)
        self.kind = kind
        self.root = Path(root) if root is not None else Path.cwd()
        self.mux = mux if mux is not None else OutputMultiplexer()
        self.max_parallel = max_parallel
        self.handle_signals = handle_signals
        self.term_timeout = term_timeout
        self._cancel_event = asyncio.Event()

    def execute(self) -> RunOutcome:
        return asyncio.run(self.execute_async())

    def cancel(self) -> None:
        """Ask every outstanding unit to terminate."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    async def execute_async(self) -> RunOutcome:
        results: list[UnitResult] = []
        if not self.mux.width:
            self.mux.width = max((len(unit.name) for unit in self.units), default=0)

        async with self.mux:
            if not self.units:
                await self.mux.announce(f"No {self.kind}s to run")
                return RunOutcome(())

            await self.mux.announce(f"Running all {self.kind}s\n")
            supervisor = ProcessSupervisor(
                self.mux,
                root=self.root,
                cancel_event=self._cancel_event,
                term_timeout=self.term_timeout,
            )
            limiter = (
                asyncio.Semaphore(self.max_parallel) if self.max_parallel is not None else None
            )
            restore_signals = self._install_signal_handlers()

            tasks = [
                asyncio.create_task(
                    self._run_unit(supervisor, unit, limiter), name=f"unit:{unit.name}"
                )
                for unit in self.units
            ]
            try:
                for completed in asyncio.as_completed(tasks):
                    results.append(await completed)
            finally:
                # Only non-empty when the join itself was interrupted.
                pending = [task for task in tasks if not task.done()]
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                restore_signals()

        outcome = RunOutcome(tuple(results))
        logger.info(
            "%d %s(s) finished, %d failed", len(outcome), self.kind, len(outcome.failed)
        )
        return outcome

    async def _run_unit(
        self,
        supervisor: ProcessSupervisor,
        unit: UnitSpec,
        limiter: asyncio.Semaphore | None,
    ) -> UnitResult:
        if limiter is None:
            return await self._supervise(supervisor, unit)
        async with limiter:
            return await self._supervise(supervisor, unit)

    async def _supervise(self, supervisor: ProcessSupervisor, unit: UnitSpec) -> UnitResult:
        if self._cancel_event.is_set():
            result = UnitResult(
                unit.name, Outcome.CANCELLED, CANCELLED_EXIT_CODE, 0.0, "cancelled before start"
            )
        else:
            await self.mux.announce(f'Running {self.kind}: "{unit.name}"')
            handle = await supervisor.start(unit)
            result = await supervisor.wait(handle)

        await self.mux.announce(self._describe(result))
        return result

    def _describe(self, result: UnitResult) -> str:
        label = f'{self.kind.capitalize()} "{result.name}"'
        match result.outcome:
            case Outcome.SUCCEEDED:
                return f"{label} succeeded"
            case Outcome.FAILED:
                return f"{label} failed with exit code {result.exit_code}"
            case Outcome.SPAWN_FAILED:
                return f"{label} could not be started: {result.error}"
            case Outcome.SIGNALLED:
                return f"{label} failed: {result.error}"
            case Outcome.CANCELLED:
                return f"{label} cancelled"
            case _:
                raise AssertionError("Unreachable")

    def _on_signal(self, sig: signal.Signals) -> None:
        if not self._cancel_event.is_set():
            logger.warning("Received %s, exiting...", sig.name)
        self.cancel()

    def _install_signal_handlers(self) -> Callable[[], None]:
        if not self.handle_signals:
            return lambda: None

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                # Windows loops and non-main threads: Ctrl-C arrives as KeyboardInterrupt.
                logger.debug("Cannot route %s to cancellation: %s", sig.name, exc)
                continue
            installed.append(sig)

        def restore() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)

        return restore
