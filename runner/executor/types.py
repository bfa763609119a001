from dataclasses import dataclass
from enum import Enum

# Sentinels for units that never produced a process exit status.
SPAWN_FAILURE_EXIT_CODE = 127
CANCELLED_EXIT_CODE = 130

# Statuses a POSIX shell uses for "not executable" and "command not found".
SHELL_SPAWN_FAILURE_CODES = frozenset({126, 127})


class Outcome(Enum):
    SUCCEEDED = "ok"
    FAILED = "fail"
    SPAWN_FAILED = "spawn-fail"
    SIGNALLED = "signal"
    CANCELLED = "cancel"


class Stream(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class OutputChunk:
    unit: str
    stream: Stream
    text: str


@dataclass(frozen=True)
class UnitResult:
    """Terminal state of one unit.

    `exit_code` is the process exit status. A unit killed by a signal records
    `-signum`; spawn failures and cancelled units that never ran record the
    module-level sentinels.
    """

    name: str
    outcome: Outcome
    exit_code: int
    duration_s: float
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


@dataclass(frozen=True)
class RunOutcome:
    results: tuple[UnitResult, ...]

    def __len__(self):
        return len(self.results)

    @property
    def all_succeeded(self) -> bool:
        return all(result.succeeded for result in self.results)

    @property
    def failed(self) -> list[str]:
        return [result.name for result in self.results if not result.succeeded]

    @property
    def cancelled(self) -> bool:
        return any(result.outcome is Outcome.CANCELLED for result in self.results)
