# abel/supervisor.py
"""
supervisor.py - supervised execution of external tools (cmake, ninja, git, built programs)

Features:
- Process lifetime scope: every child is registered at spawn; closing the scope terminates each
  registered child and its descendants (POSIX: session + killpg, Windows: process group + taskkill)
- Teardown on interpreter exit (atexit) and on SIGINT/SIGTERM before the interrupt propagates
- Progress parsers: pure functions mapping one output line to a short status (or None)
- Bounded diagnostics buffer with a prioritised failure summary and compile-error classification
- Presentation: rich spinner with elapsed time on a terminal, plain start/detail lines when
  redirected, raw streaming in verbose mode
"""

from __future__ import annotations

import os
import re
import sys
import time
import atexit
import signal
import threading
import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn

from abel.config import get_config
from abel.errors import EnvironmentFailure, ToolFailure
from abel.logging import get_logger

logger = get_logger("supervisor")

ProgressParser = Callable[[str], Optional[str]]

# -----------------------
# Lifetime scopes
# -----------------------
class ProcessScope:
    """Registry of live children. close() terminates whatever is still registered."""

    def __init__(self, grace_period: float = 0.25):
        self.grace_period = grace_period
        self._procs: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()
        self._closed = False

    def popen_kwargs(self) -> Dict[str, Any]:
        return {}

    def attach(self, proc: subprocess.Popen):
        with self._lock:
            self._procs[proc.pid] = proc

    def detach(self, proc: subprocess.Popen):
        with self._lock:
            self._procs.pop(proc.pid, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def terminate(self, proc: subprocess.Popen):
        """Terminate one child tree: graceful signal, grace window, then forceful kill."""
        self._graceful(proc)
        deadline = time.monotonic() + self.grace_period
        while proc.poll() is None and time.monotonic() < deadline:
            time.sleep(0.02)
        self._forceful(proc)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("process %s did not exit after kill", proc.pid)
        self.detach(proc)

    def terminate_all(self):
        with self._lock:
            procs = list(self._procs.values())
        if not procs:
            return
        logger.debug("terminating %d supervised process(es)", len(procs))
        for proc in procs:
            self._graceful(proc)
        deadline = time.monotonic() + self.grace_period
        while time.monotonic() < deadline and any(p.poll() is None for p in procs):
            time.sleep(0.02)
        for proc in procs:
            self._forceful(proc)
            self.detach(proc)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.terminate_all()

    def __enter__(self) -> "ProcessScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _graceful(self, proc: subprocess.Popen):
        raise NotImplementedError

    def _forceful(self, proc: subprocess.Popen):
        raise NotImplementedError


class PosixProcessScope(ProcessScope):
    """Each child leads its own session, so killpg reaches every descendant."""

    def popen_kwargs(self) -> Dict[str, Any]:
        return {"start_new_session": True}

    def _signal_group(self, proc: subprocess.Popen, sig: int):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            # group already gone
            pass
        except PermissionError as e:
            logger.warning("cannot signal process group %s: %s", proc.pid, e)

    def _graceful(self, proc: subprocess.Popen):
        self._signal_group(proc, signal.SIGTERM)

    def _forceful(self, proc: subprocess.Popen):
        self._signal_group(proc, signal.SIGKILL)


class WindowsProcessScope(ProcessScope):
    """Children get a new process group; taskkill /T walks the descendant tree.

    Descendants are only reached when close() or terminate() runs. No Job object with
    KILL_ON_JOB_CLOSE backs this scope, so a hard crash of abel itself leaves them running.
    """

    def popen_kwargs(self) -> Dict[str, Any]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    def _graceful(self, proc: subprocess.Popen):
        if proc.poll() is not None:
            return
        try:
            proc.send_signal(signal.CTRL_BREAK_EVENT)
        except OSError as e:
            logger.debug("CTRL_BREAK to %s failed: %s", proc.pid, e)

    def _forceful(self, proc: subprocess.Popen):
        subprocess.run(["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                       stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)


def create_process_scope(grace_period: Optional[float] = None) -> ProcessScope:
    if grace_period is None:
        grace_period = float(get_config().get("supervisor.grace_period", 0.25))
    scope: ProcessScope
    if os.name == "nt":
        scope = WindowsProcessScope(grace_period)
    else:
        scope = PosixProcessScope(grace_period)
    atexit.register(scope.close)
    return scope


def install_signal_handlers(scope: ProcessScope):
    """Close the scope on SIGINT/SIGTERM, then let the signal do what it would have done."""
    if threading.current_thread() is not threading.main_thread():
        return
    signals = [signal.SIGINT, signal.SIGTERM]
    if hasattr(signal, "SIGBREAK"):
        signals.append(signal.SIGBREAK)

    def handler(signum, frame):
        scope.close()
        signal.signal(signum, previous.get(signum) or signal.SIG_DFL)
        if signum == signal.SIGINT:
            raise KeyboardInterrupt
        os.kill(os.getpid(), signum)

    previous: Dict[int, Any] = {}
    for sig in signals:
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, handler)

# -----------------------
# Progress parsers
# -----------------------
_DEP_SUFFIXES = ("-populate-prefix", "-populate", "-subbuild", "-build", "-src", "-stamp")
_DEP_STOP = set("/\\ )(:")

def _normalize_dependency_name(token: str) -> Optional[str]:
    name = (token or "").strip()
    for suffix in _DEP_SUFFIXES:
        if name.lower().endswith(suffix):
            name = name[: -len(suffix)]
            break
    return name or None

def extract_dependency_name(line: str) -> Optional[str]:
    """Dependency named in a FetchContent line: "... for 'fmt-populate'" or ".../_deps/fmt-src/..."."""
    if not line or not line.strip():
        return None
    lower = line.lower()
    i = lower.find("for '")
    if i >= 0:
        start = i + len("for '")
        end = line.find("'", start)
        if end > start:
            name = _normalize_dependency_name(line[start:end])
            if name:
                return name
    i = lower.find("_deps/")
    if i < 0:
        i = lower.find("_deps\\")
    if i < 0:
        return None
    start = end = i + len("_deps/")
    while end < len(line) and line[end] not in _DEP_STOP:
        end += 1
    if end <= start:
        return None
    return _normalize_dependency_name(line[start:end])

def parse_configure_progress(line: str) -> Optional[str]:
    lower = line.lower()
    i = lower.find("populating ")
    if i >= 0:
        name = line[i + len("populating "):].strip()
        if name:
            return f"fetch dependency {name}"
    dep = extract_dependency_name(line)
    if dep:
        return f"fetch dependency {dep}"
    if "configuring done" in lower:
        return "finalize configure"
    if "generating done" in lower:
        return "generate build graph"
    return None

def parse_build_progress(line: str) -> Optional[str]:
    dep = extract_dependency_name(line)
    if dep:
        return f"build dependency {dep}"
    lower = line.lower()
    if any(m in lower for m in ("building cxx object", "building c object", "building cxx module")):
        return "compile project sources"
    if any(m in lower for m in ("linking cxx executable", "linking cxx static library", "linking cxx shared library")):
        return "link project"
    if "no work to do" in lower:
        return "no rebuild needed"
    return None

def parse_install_progress(line: str) -> Optional[str]:
    lower = line.lower()
    if "installing:" in lower:
        return "install project artifacts"
    if "up-to-date:" in lower:
        return "artifacts already installed"
    return None

# -----------------------
# Shared state
# -----------------------
class ActivityState:
    """Latest status string; consecutive duplicates are ignored."""

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[str] = None

    def try_set(self, detail: Optional[str]) -> bool:
        if not detail or not detail.strip():
            return False
        with self._lock:
            if detail == self._current:
                return False
            self._current = detail
            return True

    def get(self) -> Optional[str]:
        with self._lock:
            return self._current


_RELEVANT = re.compile(r"\berror\b|\bwarning\b|\bFAILED\b|CMake Error", re.IGNORECASE)
_COMPILE_ERROR = re.compile(
    r"^\S.*?:\d+(?::\d+)?:\s*(?:fatal\s+)?error\b"   # gcc / clang  file:line[:col]: error
    r"|\berror\s+C\d{4}\b"                            # msvc         error C2065
    r"|\bfatal error:",
    re.IGNORECASE,
)

class DiagnosticsBuffer:
    def __init__(self, max_lines: int = 300, context_lines: int = 3, fallback_lines: int = 12):
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()
        self.context_lines = context_lines
        self.fallback_lines = fallback_lines

    def add(self, line: str):
        if not line or not line.strip():
            return
        with self._lock:
            self._lines.append(line.rstrip("\r\n"))

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def summary(self) -> List[str]:
        """Relevant lines plus a few following lines each, deduplicated; else the tail."""
        lines = self.lines()
        picked: List[str] = []
        taken = set()
        for i, line in enumerate(lines):
            if not _RELEVANT.search(line):
                continue
            for j in range(i, min(len(lines), i + 1 + self.context_lines)):
                if j not in taken:
                    taken.add(j)
                    picked.append(lines[j])
        if picked:
            return picked
        return lines[-self.fallback_lines:]

    def is_compile_error(self) -> bool:
        return any(_COMPILE_ERROR.search(line) for line in self.lines())

# -----------------------
# Formatting
# -----------------------
def format_elapsed(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {int(seconds - minutes * 60):02d}s"

# -----------------------
# Runner
# -----------------------
@dataclass
class CommandResult:
    label: str
    returncode: Optional[int]
    elapsed: float = 0.0
    diagnostics: List[str] = field(default_factory=list)
    compile_error: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def failure(self) -> Optional[ToolFailure]:
        if self.ok:
            return None
        return ToolFailure(self.label, self.returncode, self.diagnostics, self.compile_error)


class CommandRunner:
    """
    Runs one command at a time under a ProcessScope.

    run() never raises for a non-zero exit: the CommandResult carries the exit code, the
    diagnostics slice and the compile-error classification. Missing executables and timeouts
    raise EnvironmentFailure.
    """

    def __init__(self, scope: Optional[ProcessScope] = None, console: Optional[Console] = None,
                 verbose: bool = False, interactive: Optional[bool] = None,
                 settings: Optional[Dict[str, Any]] = None):
        self.scope = scope if scope is not None else create_process_scope()
        self.console = console or Console()
        self.verbose = verbose
        self.interactive = self.console.is_terminal if interactive is None else interactive
        self.settings = settings if settings is not None else get_config().section("supervisor")

    def _buffer(self) -> DiagnosticsBuffer:
        s = self.settings
        return DiagnosticsBuffer(int(s.get("diagnostics_lines", 300)), int(s.get("context_lines", 3)),
                                 int(s.get("fallback_lines", 12)))

    def _spawn(self, cmd: List[str], cwd: Path, **kwargs) -> subprocess.Popen:
        logger.debug("spawn: %s (cwd=%s)", " ".join(cmd), cwd)
        try:
            proc = subprocess.Popen([str(c) for c in cmd], cwd=str(cwd), **self.scope.popen_kwargs(), **kwargs)
        except FileNotFoundError as e:
            raise EnvironmentFailure(f"Cannot start '{cmd[0]}': executable not found.") from e
        except OSError as e:
            raise EnvironmentFailure(f"Cannot start '{cmd[0]}': {e}") from e
        self.scope.attach(proc)
        return proc

    def _line(self, text: str):
        self.console.print(text, markup=False, highlight=False)

    def run(self, cmd: List[str], cwd: Path, label: str, parser: Optional[ProgressParser] = None,
            timeout: Optional[float] = None) -> CommandResult:
        activity = ActivityState()
        diagnostics = self._buffer()
        emit_details = not self.interactive and not self.verbose
        if emit_details:
            self._line(f"  {label}...")

        proc = self._spawn(cmd, cwd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                           stdin=subprocess.DEVNULL, text=True, encoding="utf-8", errors="replace", bufsize=1)

        def pump():
            assert proc.stdout is not None
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                diagnostics.add(line)
                if self.verbose:
                    self.console.out(line, highlight=False)
                    continue
                if parser is None or not line.strip():
                    continue
                detail = parser(line)
                if activity.try_set(detail) and emit_details:
                    self._line(f"    > {detail}")

        reader = threading.Thread(target=pump, name=f"abel-{label}", daemon=True)
        reader.start()
        start = time.monotonic()
        try:
            if self.interactive and not self.verbose:
                self._spin(label, activity, proc, start, timeout)
            else:
                self._wait(proc, start, timeout, label)
        except BaseException:
            self.scope.terminate(proc)
            reader.join(timeout=1)
            if self.interactive and not self.verbose:
                self._line(f"  [fail] {label} ({format_elapsed(time.monotonic() - start)})")
            raise
        reader.join()
        self.scope.detach(proc)
        elapsed = time.monotonic() - start
        if self.interactive and not self.verbose:
            state = "ok" if proc.returncode == 0 else "fail"
            self._line(f"  [{state}] {label} ({format_elapsed(elapsed)})")

        result = CommandResult(label, proc.returncode, elapsed)
        if not result.ok:
            result.diagnostics = diagnostics.summary()
            result.compile_error = diagnostics.is_compile_error()
            logger.info("%s exited with %s", label, proc.returncode)
        return result

    def _check_timeout(self, start: float, timeout: Optional[float], label: str):
        if timeout and time.monotonic() - start > timeout:
            raise EnvironmentFailure(f"{label} timed out after {format_elapsed(timeout)}.")

    def _wait(self, proc: subprocess.Popen, start: float, timeout: Optional[float], label: str):
        while proc.poll() is None:
            self._check_timeout(start, timeout, label)
            time.sleep(0.05)

    def _spin(self, label: str, activity: ActivityState, proc: subprocess.Popen, start: float,
              timeout: Optional[float]):
        interval = float(self.settings.get("spinner_interval", 0.12))
        with Progress(TextColumn("  "), SpinnerColumn(spinner_name="line"),
                      TextColumn("{task.description}"), TextColumn("{task.fields[elapsed]}"),
                      console=self.console, transient=True) as progress:
            task = progress.add_task(escape(label), total=None, elapsed="")
            while proc.poll() is None:
                self._check_timeout(start, timeout, label)
                detail = activity.get()
                text = f"{label} | {detail}" if detail else label
                progress.update(task, description=escape(text),
                                elapsed=format_elapsed(time.monotonic() - start))
                time.sleep(interval)

    def run_attached(self, cmd: List[str], cwd: Path) -> int:
        """Run a program with inherited stdin/stdout/stderr and return its exit code."""
        sys.stdout.flush()
        proc = self._spawn(cmd, cwd)
        try:
            return proc.wait()
        except BaseException:
            self.scope.terminate(proc)
            raise
        finally:
            self.scope.detach(proc)
