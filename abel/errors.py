# abel/errors.py
"""
Error taxonomy shared by every abel module.

ConfigurationError   project/registry/CLI mistakes; never retried, exit code 2
ToolFailure          an external process exited non-zero; exit code 1
EnvironmentFailure   filesystem access problems, timeouts; exit code 1
"""

from __future__ import annotations

from typing import List, Optional


class ExitCode:
    SUCCESS = 0
    RUNTIME_ERROR = 1
    USAGE_ERROR = 2


class AbelError(Exception):
    exit_code = ExitCode.RUNTIME_ERROR


class ConfigurationError(AbelError):
    exit_code = ExitCode.USAGE_ERROR


class DependencySpecError(ConfigurationError):
    def __init__(self, spec: str, reason: str):
        super().__init__(f"Invalid dependency '{spec}': {reason}")
        self.spec = spec
        self.reason = reason


class CircularDependencyError(ConfigurationError):
    def __init__(self, name: str, path: str):
        super().__init__(f"Circular dependency detected while building '{name}' in '{path}'.")
        self.name = name
        self.path = path


class VariantConflictError(ConfigurationError):
    def __init__(self, package: str, first: Optional[str], second: Optional[str]):
        super().__init__(
            f"Package '{package}' was requested with multiple variants: "
            f"'{first or '<none>'}' and '{second or '<none>'}'."
        )
        self.package = package
        self.variants = (first, second)


class ToolFailure(AbelError):
    """A supervised command failed. Carries what the retry policy needs to decide."""

    def __init__(self, label: str, returncode: Optional[int], diagnostics: Optional[List[str]] = None,
                 compile_error: bool = False):
        super().__init__(f"{label} failed (exit code {returncode})")
        self.label = label
        self.returncode = returncode
        self.diagnostics = list(diagnostics or [])
        self.compile_error = compile_error

    @property
    def retryable(self) -> bool:
        # heuristic: a clean rebuild cannot fix a compiler error, and "build" activities
        # are assumed to be compile work even when no error line was recognised
        return not self.compile_error and not self.label.startswith("build")


class EnvironmentFailure(AbelError):
    pass
