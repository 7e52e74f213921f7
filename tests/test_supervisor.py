# tests/test_supervisor.py
import io
import os
import signal
import sys
import time
from pathlib import Path

import pytest
from rich.console import Console

from abel import supervisor
from abel.errors import EnvironmentFailure
from abel.supervisor import (ActivityState, CommandResult, CommandRunner, DiagnosticsBuffer, PosixProcessScope,
                             WindowsProcessScope, extract_dependency_name, format_elapsed, install_signal_handlers,
                             parse_build_progress, parse_configure_progress, parse_install_progress)

SETTINGS = {"diagnostics_lines": 50, "context_lines": 2, "fallback_lines": 3, "spinner_interval": 0.01}

# -----------------------
# Parsers
# -----------------------
@pytest.mark.parametrize("line,expected", [
    ("-- Populating fmt", "fetch dependency fmt"),
    ("[1/9] Performing download step (git clone) for 'sdl3-populate'", "fetch dependency sdl3"),
    ("-- Configuring done (2.1s)", "finalize configure"),
    ("-- Generating done (0.1s)", "generate build graph"),
    ("-- The CXX compiler identification is GNU 14.2.0", None),
])
def test_configure_progress(line, expected):
    assert parse_configure_progress(line) == expected


@pytest.mark.parametrize("line,expected", [
    ("[3/40] Building CXX object _deps/fmt-build/CMakeFiles/fmt.dir/src/format.cc.o", "build dependency fmt"),
    ("[12/40] Building CXX object CMakeFiles/app.dir/main.cpp.o", "compile project sources"),
    ("[40/40] Linking CXX executable app", "link project"),
    ("ninja: no work to do.", "no rebuild needed"),
    ("random chatter", None),
])
def test_build_progress(line, expected):
    assert parse_build_progress(line) == expected


def test_install_progress():
    assert parse_install_progress("-- Installing: /tmp/p/lib/libmath.a") == "install project artifacts"
    assert parse_install_progress("-- Up-to-date: /tmp/p/lib/libmath.a") == "artifacts already installed"
    assert parse_install_progress("-- Install configuration: \"Debug\"") is None


def test_extract_dependency_name():
    assert extract_dependency_name("C:\\b\\_deps\\imgui-src\\imgui.cpp") == "imgui"
    assert extract_dependency_name("for 'glm-subbuild'") == "glm"
    assert extract_dependency_name("   ") is None
    assert extract_dependency_name("nothing here") is None


def test_activity_state_ignores_duplicates():
    state = ActivityState()
    assert state.try_set("compile project sources")
    assert not state.try_set("compile project sources")
    assert not state.try_set(None)
    assert state.get() == "compile project sources"

# -----------------------
# Diagnostics
# -----------------------
def test_summary_keeps_relevant_lines_with_context():
    buf = DiagnosticsBuffer(context_lines=1)
    for line in ["noise 1", "main.cpp:3:1: error: boom", "  3 | int x", "noise 2", "noise 3", "FAILED: app"]:
        buf.add(line)
    assert buf.summary() == ["main.cpp:3:1: error: boom", "  3 | int x", "FAILED: app"]


def test_summary_falls_back_to_tail():
    buf = DiagnosticsBuffer(fallback_lines=2)
    for i in range(5):
        buf.add(f"line {i}")
    buf.add("   ")
    assert buf.summary() == ["line 3", "line 4"]


def test_buffer_is_bounded():
    buf = DiagnosticsBuffer(max_lines=3)
    for i in range(10):
        buf.add(str(i))
    assert buf.lines() == ["7", "8", "9"]


@pytest.mark.parametrize("line,compile_error", [
    ("src/main.cpp:12:5: error: use of undeclared identifier 'x'", True),
    ("main.cpp(12): error C2065: 'x': undeclared identifier", True),
    ("fatal error: fmt/core.h: No such file or directory", True),
    ("CMake Error at CMakeLists.txt:4 (find_package):", False),
    ("ninja: build stopped: subcommand failed.", False),
])
def test_compile_error_classification(line, compile_error):
    buf = DiagnosticsBuffer()
    buf.add(line)
    assert buf.is_compile_error() is compile_error


def test_format_elapsed():
    assert format_elapsed(0.25) == "250ms"
    assert format_elapsed(3.456) == "3.46s"
    assert format_elapsed(125) == "2m 05s"


def test_command_result_failure():
    assert CommandResult("configure app", 0).failure() is None
    failure = CommandResult("configure app", 1, diagnostics=["CMake Error"]).failure()
    assert failure.retryable
    assert failure.diagnostics == ["CMake Error"]
    assert not CommandResult("build app", 1).failure().retryable
    assert not CommandResult("install app", 1, compile_error=True).failure().retryable

# -----------------------
# Runner
# -----------------------
def _runner(verbose=False):
    console = Console(file=io.StringIO(), width=200, color_system=None)
    scope = PosixProcessScope(0.1) if os.name != "nt" else None
    return CommandRunner(scope=scope, console=console, verbose=verbose, interactive=False, settings=SETTINGS), console


def test_run_success_prints_progress_lines(tmp_path):
    runner, console = _runner()
    code = "print('-- Configuring done'); print('-- Generating done')"
    result = runner.run([sys.executable, "-c", code], tmp_path, "configure app", parse_configure_progress)
    assert result.ok
    assert result.diagnostics == []
    out = console.file.getvalue()
    assert "  configure app...\n" in out
    assert "    > finalize configure\n" in out
    assert "    > generate build graph\n" in out
    assert len(runner.scope) == 0


def test_run_failure_collects_diagnostics(tmp_path):
    runner, _ = _runner()
    code = "import sys; print('a.cpp:1:1: error: nope'); sys.exit(3)"
    result = runner.run([sys.executable, "-c", code], tmp_path, "build app")
    assert result.returncode == 3
    assert result.compile_error
    assert result.diagnostics == ["a.cpp:1:1: error: nope"]


def test_verbose_streams_raw_output(tmp_path):
    runner, console = _runner(verbose=True)
    runner.run([sys.executable, "-c", "print('raw tool line')"], tmp_path, "build app", parse_build_progress)
    out = console.file.getvalue()
    assert "raw tool line" in out
    assert "build app..." not in out


def test_missing_executable(tmp_path):
    runner, _ = _runner()
    with pytest.raises(EnvironmentFailure):
        runner.run(["abel-no-such-tool-xyz"], tmp_path, "configure app")


def test_timeout_terminates_process(tmp_path):
    runner, _ = _runner()
    with pytest.raises(EnvironmentFailure) as exc:
        runner.run([sys.executable, "-c", "import time; time.sleep(30)"], tmp_path, "build app", timeout=0.3)
    assert "timed out" in str(exc.value)
    assert len(runner.scope) == 0


def _terminal_runner():
    console = Console(file=io.StringIO(), width=200, color_system=None, force_terminal=True)
    scope = PosixProcessScope(0.1) if os.name != "nt" else None
    return CommandRunner(scope=scope, console=console, interactive=True, settings=SETTINGS), console


def test_interactive_run_ends_with_status_line(tmp_path):
    runner, console = _terminal_runner()
    code = "import time; print('-- Generating done'); time.sleep(0.2)"
    result = runner.run([sys.executable, "-c", code], tmp_path, "configure app", parse_configure_progress)
    assert result.ok
    out = console.file.getvalue()
    assert "  [ok] configure app (" in out
    assert "configure app...\n" not in out
    assert "    > generate build graph" not in out
    assert len(runner.scope) == 0


def test_interactive_failure_status_line(tmp_path):
    runner, console = _terminal_runner()
    result = runner.run([sys.executable, "-c", "import sys; sys.exit(2)"], tmp_path, "build app")
    assert result.returncode == 2
    assert "  [fail] build app (" in console.file.getvalue()

# -----------------------
# Lifetime scope
# -----------------------
def _alive(pid):
    # orphans may linger as zombies when nothing reaps them; those count as dead
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state not in ("Z", "X")
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.mark.skipif(os.name == "nt", reason="POSIX process groups")
def test_posix_scope_kills_descendants(tmp_path):
    pid_file = tmp_path / "grandchild.pid"
    code = (
        "import subprocess, sys, time\n"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        f"open({str(pid_file)!r}, 'w').write(str(p.pid))\n"
        "time.sleep(60)\n"
    )
    runner, _ = _runner()
    proc = runner._spawn([sys.executable, "-c", code], tmp_path)
    deadline = time.monotonic() + 10
    while not (pid_file.exists() and pid_file.read_text()) and time.monotonic() < deadline:
        time.sleep(0.05)
    grandchild = int(pid_file.read_text())
    assert len(runner.scope) == 1

    runner.scope.close()
    assert proc.wait(timeout=5) is not None
    deadline = time.monotonic() + 5
    while _alive(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _alive(grandchild)
    assert len(runner.scope) == 0


@pytest.mark.skipif(os.name == "nt", reason="POSIX signals")
def test_interrupt_closes_scope_and_reraises(tmp_path):
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    runner, _ = _runner()
    try:
        install_signal_handlers(runner.scope)
        proc = runner._spawn([sys.executable, "-c", "import time; time.sleep(60)"], tmp_path)
        assert len(runner.scope) == 1
        with pytest.raises(KeyboardInterrupt):
            os.kill(os.getpid(), signal.SIGINT)
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                time.sleep(0.05)
        assert proc.wait(timeout=5) is not None
        assert len(runner.scope) == 0
        assert signal.getsignal(signal.SIGINT) is saved[signal.SIGINT]
    finally:
        for sig, handler in saved.items():
            signal.signal(sig, handler)


class _ExitedProcess:
    pid = 4242

    def poll(self):
        return 0


def test_windows_scope_walks_tree_only_on_close(monkeypatch):
    calls = []
    monkeypatch.setattr(supervisor.subprocess, "run", lambda cmd, **kwargs: calls.append(cmd))
    scope = WindowsProcessScope(0.0)
    scope.attach(_ExitedProcess())
    assert calls == []
    scope.close()
    assert calls == [["taskkill", "/T", "/F", "/PID", "4242"]]
    assert len(scope) == 0
