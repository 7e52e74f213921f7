# tests/conftest.py
import io
import json
import os
from pathlib import Path

import pytest
from rich.console import Console

from abel.registry import builtin_registry
from abel.supervisor import CommandResult


def _write(directory: Path, name: str, **fields) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    data = {"name": name}
    data.update(fields)
    (directory / "project.json").write_text(json.dumps(data), encoding="utf-8")
    for bucket in (fields.get("sources") or {}).values():
        for rel in bucket:
            src = directory / rel
            src.parent.mkdir(parents=True, exist_ok=True)
            src.write_text("// source\n", encoding="utf-8")
    return directory


@pytest.fixture
def write_project():
    """write_project(dir, name, **fields) writes project.json (and empty source files)."""
    return _write


class FakeRunner:
    """
    Stands in for CommandRunner. Records every command; a configure writes a CMake cache,
    a build of an executable drops the binary where cmake would.
    """

    def __init__(self):
        self.calls = []
        self.attached = []
        self.failures = {}   # label prefix -> [compile_error, ...] consumed per call
        self.exit_code = 0

    def fail(self, label_prefix, times=1, compile_error=False):
        self.failures.setdefault(label_prefix, []).extend([compile_error] * times)

    def labels(self):
        return [label for label, _, _ in self.calls]

    def run(self, cmd, cwd, label, parser=None, timeout=None):
        self.calls.append((label, list(cmd), Path(cwd)))
        for prefix, pending in self.failures.items():
            if label.startswith(prefix) and pending:
                compile_error = pending.pop(0)
                diag = ["src/a.cpp:3:5: error: expected ';'"] if compile_error else ["CMake Error: boom"]
                return CommandResult(label, 1, 0.01, diag, compile_error)
        if label.startswith("configure"):
            out = Path(cwd) / cmd[cmd.index("-B") + 1]
            out.mkdir(parents=True, exist_ok=True)
            cfg = next(c.split("=", 1)[1] for c in cmd if c.startswith("-DCMAKE_BUILD_TYPE="))
            (out / "CMakeCache.txt").write_text(f"CMAKE_BUILD_TYPE:STRING={cfg}\n", encoding="utf-8")
        elif label.startswith("build"):
            project = json.loads((Path(cwd) / "project.json").read_text(encoding="utf-8"))
            if project.get("output_type") == "exe":
                out = Path(cwd) / cmd[cmd.index("--build") + 1]
                out.mkdir(parents=True, exist_ok=True)
                exe = project["name"] + (".exe" if os.name == "nt" else "")
                (out / exe).write_text("", encoding="utf-8")
        return CommandResult(label, 0, 0.01)

    def run_attached(self, cmd, cwd):
        self.attached.append((list(cmd), Path(cwd)))
        return self.exit_code


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=200, color_system=None)


@pytest.fixture
def registry():
    return builtin_registry()


@pytest.fixture
def output(console):
    return lambda: console.file.getvalue()
