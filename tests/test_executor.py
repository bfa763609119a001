# tests/test_executor.py
from __future__ import annotations

import asyncio
import io
import os
import signal
import sys
import time
from pathlib import Path

import pytest

from runner.config.types import UnitSpec
from runner.executor import (
    CANCELLED_EXIT_CODE,
    SPAWN_FAILURE_EXIT_CODE,
    Executor,
    Outcome,
    OutputMultiplexer,
    RunOutcome,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell/signals")


class AsciiSink(io.StringIO):
    """A text sink whose encoding cannot represent non-ASCII output."""

    def write(self, s: str) -> int:
        s.encode("ascii")
        return super().write(s)


def _py(code: str) -> tuple[str, ...]:
    """Run `code` with the current interpreter, no shell involved."""
    return (sys.executable, "-c", code)


def _unit(name: str, code: str, **kwargs) -> UnitSpec:
    return UnitSpec(name=name, command=_py(code), **kwargs)


def _execute(units: list[UnitSpec], **kwargs) -> tuple[RunOutcome, str, str]:
    out, err = io.StringIO(), io.StringIO()
    ex = Executor(units, mux=OutputMultiplexer(out, err), handle_signals=False, **kwargs)
    outcome = ex.execute()
    return outcome, out.getvalue(), err.getvalue()


def _lines_of(output: str, name: str) -> list[str]:
    lines = []
    for line in output.splitlines():
        label, sep, text = line.partition(" | ")
        if sep and label.rstrip() == name:
            lines.append(text)
    return lines


# -------------------------
# Aggregation
# -------------------------


def test_empty_unit_set_is_vacuous_success() -> None:
    outcome, out, _ = _execute([])

    assert outcome.results == ()
    assert outcome.all_succeeded
    assert not outcome.cancelled
    assert "No tasks to run" in out


def test_all_zero_exits_succeed() -> None:
    outcome, _, _ = _execute([_unit(n, "raise SystemExit(0)") for n in ("a", "b", "c")])

    assert len(outcome.results) == 3
    assert outcome.all_succeeded
    assert outcome.failed == []
    assert all(r.exit_code == 0 for r in outcome.results)


def test_mixed_outcomes_are_all_reported() -> None:
    """A exits 0 at once, B exits 1 after a delay, C sleeps past B then exits 0."""
    units = [
        _unit("a", "raise SystemExit(0)"),
        _unit("b", "import time; time.sleep(0.5); raise SystemExit(1)"),
        _unit("c", "import time; time.sleep(1.5); raise SystemExit(0)"),
    ]

    outcome, _, _ = _execute(units)

    assert [r.name for r in outcome.results] == ["a", "b", "c"]
    assert not outcome.all_succeeded
    assert outcome.failed == ["b"]
    by_name = {r.name: r for r in outcome.results}
    assert by_name["a"].outcome is Outcome.SUCCEEDED
    assert by_name["b"].outcome is Outcome.FAILED
    assert by_name["b"].exit_code == 1
    assert by_name["c"].outcome is Outcome.SUCCEEDED


def test_results_are_in_completion_order_not_launch_order() -> None:
    units = [
        _unit("slow", "import time; time.sleep(1.0)"),
        _unit("fast", "pass"),
    ]

    outcome, _, _ = _execute(units)

    assert [r.name for r in outcome.results] == ["fast", "slow"]


def test_units_run_concurrently(tmp_path: Path) -> None:
    # Each unit announces itself and waits until all three have started.
    # Serial execution would make the first unit time out and exit 3.
    code = (
        "import sys, time\n"
        "from pathlib import Path\n"
        f"d = Path(r'{tmp_path}')\n"
        "(d / sys.argv[1]).touch()\n"
        "deadline = time.monotonic() + 20\n"
        "while len(list(d.glob('*.started'))) < 3:\n"
        "    time.sleep(0.05)\n"
        "    if time.monotonic() > deadline: raise SystemExit(3)\n"
    )
    units = [
        UnitSpec(name, (sys.executable, "-c", code, f"{name}.started"))
        for name in ("a", "b", "c")
    ]

    outcome, _, _ = _execute(units)

    assert outcome.all_succeeded, outcome.results


def test_no_retries(tmp_path: Path) -> None:
    log = tmp_path / "log.txt"
    outcome, _, _ = _execute(
        [_unit("flaky", f"open(r'{log}','a').write('x\\n'); raise SystemExit(2)")]
    )

    assert outcome.failed == ["flaky"]
    assert log.read_text(encoding="utf-8").splitlines() == ["x"]


def test_duplicate_names_both_run(tmp_path: Path) -> None:
    log = tmp_path / "log.txt"
    unit = _unit("dup", f"open(r'{log}','a').write('ran\\n')")

    outcome, _, _ = _execute([unit, unit])

    assert [r.name for r in outcome.results] == ["dup", "dup"]
    assert log.read_text(encoding="utf-8").splitlines() == ["ran", "ran"]


# -------------------------
# Failure isolation
# -------------------------


def test_failing_unit_does_not_cut_off_siblings() -> None:
    units = [
        _unit("bad", "raise SystemExit(9)"),
        _unit(
            "good",
            "import time\nfor i in range(3):\n    time.sleep(0.2); print('tick', i, flush=True)",
        ),
    ]

    outcome, out, _ = _execute(units)

    assert outcome.failed == ["bad"]
    assert _lines_of(out, "good") == ["tick 0", "tick 1", "tick 2"]


def test_missing_executable_is_spawn_failure() -> None:
    units = [
        UnitSpec("ghost", ("definitely-not-a-real-program-4f1c",)),
        _unit("ok", "print('still here')"),
    ]

    outcome, out, _ = _execute(units)

    by_name = {r.name: r for r in outcome.results}
    assert len(outcome.results) == 2
    assert by_name["ghost"].outcome is Outcome.SPAWN_FAILED
    assert by_name["ghost"].exit_code == SPAWN_FAILURE_EXIT_CODE
    assert by_name["ghost"].error
    assert by_name["ok"].succeeded
    assert not outcome.all_succeeded
    assert _lines_of(out, "ok") == ["still here"]
    assert 'Task "ghost" could not be started' in out


@posix_only
def test_shell_command_not_found_is_spawn_failure() -> None:
    outcome, _, _ = _execute([UnitSpec("ghost", "definitely-not-a-real-program-4f1c")])

    (result,) = outcome.results
    assert result.outcome is Outcome.SPAWN_FAILED
    assert result.exit_code == 127
    assert result.error == "command not found"


def test_missing_working_dir_is_spawn_failure(tmp_path: Path) -> None:
    outcome, _, _ = _execute(
        [_unit("nowhere", "pass", working_dir=tmp_path / "does-not-exist")]
    )

    (result,) = outcome.results
    assert result.outcome is Outcome.SPAWN_FAILED


@pytest.mark.parametrize(
    "bad",
    [
        UnitSpec("bad", (sys.executable, "-c", "print(1)\x00")),
        UnitSpec("bad", "echo a\x00b"),
        UnitSpec("bad", (sys.executable, "-c", "pass"), env={"KEY": "v\x00"}),
    ],
)
def test_nul_byte_is_spawn_failure_not_crash(bad: UnitSpec) -> None:
    good = _unit("good", "import time; time.sleep(0.5); print('done')")
    outcome, out, _ = _execute([bad, good])

    by_name = {r.name: r for r in outcome.results}
    assert len(outcome.results) == 2
    assert by_name["bad"].outcome is Outcome.SPAWN_FAILED
    assert by_name["bad"].exit_code == SPAWN_FAILURE_EXIT_CODE
    assert by_name["good"].succeeded
    assert _lines_of(out, "good") == ["done"]


@posix_only
def test_signal_termination_is_distinguished() -> None:
    outcome, out, _ = _execute(
        [_unit("killed", "import os, signal; os.kill(os.getpid(), signal.SIGKILL)")]
    )

    (result,) = outcome.results
    assert result.outcome is Outcome.SIGNALLED
    assert result.exit_code == -signal.SIGKILL
    assert result.error == "terminated by SIGKILL"
    assert not outcome.all_succeeded


# -------------------------
# Environment and working directory
# -------------------------


def test_env_is_applied() -> None:
    outcome, _, _ = _execute(
        [
            _unit(
                "envtask",
                "import os; raise SystemExit(0 if os.environ.get('RUNNER_TEST')=='ok' else 2)",
                env={"RUNNER_TEST": "ok"},
            )
        ]
    )

    assert outcome.all_succeeded


def test_working_dir_is_respected(tmp_path: Path) -> None:
    wd = tmp_path / "wd"
    wd.mkdir()
    code = "from pathlib import Path; Path('written.txt').write_text('ok', encoding='utf-8')"

    outcome, _, _ = _execute([_unit("w", code, working_dir=wd)])

    assert outcome.all_succeeded
    assert (wd / "written.txt").read_text(encoding="utf-8") == "ok"


def test_root_is_default_working_dir(tmp_path: Path) -> None:
    code = "from pathlib import Path; Path('here.txt').write_text('ok', encoding='utf-8')"

    outcome, _, _ = _execute([_unit("w", code)], root=tmp_path)

    assert outcome.all_succeeded
    assert (tmp_path / "here.txt").exists()


# -------------------------
# Output
# -------------------------


def test_output_is_attributed_and_ordered_per_unit() -> None:
    code = "import sys\nfor i in range(200):\n    print(sys.argv[1], i, flush=True)"
    units = [UnitSpec(n, (sys.executable, "-c", code, n)) for n in ("left", "right")]

    outcome, out, _ = _execute(units)

    assert outcome.all_succeeded
    for name in ("left", "right"):
        assert _lines_of(out, name) == [f"{name} {i}" for i in range(200)]


def test_stderr_goes_to_stderr_sink() -> None:
    outcome, out, err = _execute(
        [_unit("noisy", "import sys; print('out'); print('err', file=sys.stderr)")]
    )

    assert outcome.all_succeeded
    assert _lines_of(out, "noisy") == ["out"]
    assert _lines_of(err, "noisy") == ["err"]


def test_sink_that_cannot_encode_output_does_not_hang() -> None:
    out = AsciiSink()
    code = "import sys; sys.stdout.buffer.write(b'caf\\xc3\\xa9\\n' * 3000)"
    ex = Executor(
        [_unit("cafe", code), _unit("plain", "print('ok')")],
        mux=OutputMultiplexer(out, io.StringIO(), maxsize=16),
        handle_signals=False,
    )

    outcome = asyncio.run(asyncio.wait_for(ex.execute_async(), timeout=30))

    assert outcome.all_succeeded
    assert _lines_of(out.getvalue(), "cafe") == ["caf?"] * 3000
    assert _lines_of(out.getvalue(), "plain") == ["ok"]


def test_lifecycle_notices() -> None:
    _, out, _ = _execute(
        [_unit("ok", "pass"), _unit("bad", "raise SystemExit(4)")], kind="build"
    )

    assert "Running all builds" in out
    assert 'Running build: "ok"' in out
    assert 'Build "ok" succeeded' in out
    assert 'Build "bad" failed with exit code 4' in out


# -------------------------
# Concurrency cap
# -------------------------


def test_max_parallel_limits_overlap(tmp_path: Path) -> None:
    lock = tmp_path / "lock"
    code = (
        "import os, time; "
        f"fd = os.open(r'{lock}', os.O_CREAT | os.O_EXCL); "
        "time.sleep(0.3); os.close(fd); "
        f"os.remove(r'{lock}')"
    )

    outcome, _, _ = _execute([_unit(n, code) for n in ("a", "b", "c")], max_parallel=1)

    assert outcome.all_succeeded, outcome.results


def test_max_parallel_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Executor([], max_parallel=0)


# -------------------------
# Cancellation
# -------------------------


def test_cancel_terminates_outstanding_units() -> None:
    out = io.StringIO()
    units = [
        _unit("quick", "pass"),
        _unit("slow1", "import time; time.sleep(60)"),
        _unit("slow2", "import time; time.sleep(60)"),
    ]
    ex = Executor(
        units, mux=OutputMultiplexer(out, io.StringIO()), handle_signals=False, term_timeout=2.0
    )

    async def scenario() -> RunOutcome:
        asyncio.get_running_loop().call_later(1.5, ex.cancel)
        return await ex.execute_async()

    start = time.monotonic()
    outcome = asyncio.run(scenario())
    elapsed = time.monotonic() - start

    by_name = {r.name: r for r in outcome.results}
    assert len(outcome.results) == 3
    assert by_name["quick"].succeeded
    assert by_name["slow1"].outcome is Outcome.CANCELLED
    assert by_name["slow2"].outcome is Outcome.CANCELLED
    assert outcome.cancelled
    assert not outcome.all_succeeded
    assert elapsed < 30
    assert 'Task "slow1" cancelled' in out.getvalue()


def test_cancel_marks_queued_units_without_spawning(tmp_path: Path) -> None:
    log = tmp_path / "log.txt"
    code = f"import time; open(r'{log}','a').write('x\\n'); time.sleep(60)"
    ex = Executor(
        [_unit(n, code) for n in ("a", "b", "c")],
        mux=OutputMultiplexer(io.StringIO(), io.StringIO()),
        max_parallel=1,
        handle_signals=False,
    )

    async def scenario() -> RunOutcome:
        asyncio.get_running_loop().call_later(1.5, ex.cancel)
        return await ex.execute_async()

    outcome = asyncio.run(scenario())

    assert len(outcome.results) == 3
    assert all(r.outcome is Outcome.CANCELLED for r in outcome.results)
    assert log.read_text(encoding="utf-8").splitlines() == ["x"]
    never_started = [r for r in outcome.results if r.error == "cancelled before start"]
    assert len(never_started) == 2
    assert all(r.exit_code == CANCELLED_EXIT_CODE for r in never_started)


@posix_only
def test_sigint_cancels_run() -> None:
    ex = Executor(
        [_unit("sleepy", "import time; time.sleep(60)")],
        mux=OutputMultiplexer(io.StringIO(), io.StringIO()),
        handle_signals=True,
    )

    async def scenario() -> RunOutcome:
        asyncio.get_running_loop().call_later(1.5, os.kill, os.getpid(), signal.SIGINT)
        return await ex.execute_async()

    outcome = asyncio.run(scenario())

    assert ex.cancel_requested
    assert outcome.cancelled
    assert outcome.results[0].outcome is Outcome.CANCELLED
