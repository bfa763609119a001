from .executor import Executor
from .multiplexer import OutputMultiplexer
from .supervisor import ProcessHandle, ProcessSupervisor
from .types import (
    CANCELLED_EXIT_CODE,
    SPAWN_FAILURE_EXIT_CODE,
    Outcome,
    OutputChunk,
    RunOutcome,
    Stream,
    UnitResult,
)

__all__ = [
    "Executor",
    "OutputMultiplexer",
    "ProcessHandle",
    "ProcessSupervisor",
    "Outcome",
    "OutputChunk",
    "RunOutcome",
    "Stream",
    "UnitResult",
    "CANCELLED_EXIT_CODE",
    "SPAWN_FAILURE_EXIT_CODE",
]
