# abel/depspec.py
"""
Dependency declaration parser.

Grammar, checked in this order:
  name@repository[#ref]   git dependency (repository contains '://' or starts with 'git@')
  name[/variant]          registry or local dependency

Pure functions: nothing here touches the registry or the filesystem.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from abel.errors import DependencySpecError


@dataclass(frozen=True)
class DependencySpec:
    package: str
    variant: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.package}/{self.variant}" if self.variant else self.package


@dataclass(frozen=True)
class ProjectDependency:
    name: str
    variant: Optional[str] = None
    git_repository: Optional[str] = None
    git_ref: Optional[str] = None

    @property
    def is_git(self) -> bool:
        return self.git_repository is not None

    def __str__(self) -> str:
        if self.is_git:
            ref = f"#{self.git_ref}" if self.git_ref else ""
            return f"{self.name}@{self.git_repository}{ref}"
        return f"{self.name}/{self.variant}" if self.variant else self.name


def parse_dependency(text: str) -> DependencySpec:
    """Parse 'name' or 'name/variant'."""
    spec = (text or "").strip()
    if not spec:
        raise DependencySpecError(text or "", "package name is empty.")
    slash = spec.find("/")
    if slash < 0:
        return DependencySpec(spec)
    package = spec[:slash].strip()
    variant = spec[slash + 1:].strip()
    if not package:
        raise DependencySpecError(spec, "package name is empty.")
    if not variant:
        raise DependencySpecError(spec, "variant name is empty.")
    return DependencySpec(package, variant)


def _looks_like_git(remainder: str) -> bool:
    return "://" in remainder or remainder.lower().startswith("git@")


def parse_project_dependency(text: str) -> ProjectDependency:
    """Parse any declaration found in a project descriptor's dependency list."""
    spec = (text or "").strip()
    at = spec.find("@")
    if at > 0 and _looks_like_git(spec[at + 1:].strip()):
        return _parse_git(spec, at)
    if at == 0 and _looks_like_git(spec[1:].strip()):
        raise DependencySpecError(spec, "git dependency name is empty.")
    parsed = parse_dependency(spec)
    return ProjectDependency(parsed.package, parsed.variant)


def _parse_git(spec: str, at: int) -> ProjectDependency:
    name = spec[:at].strip()
    if not name:
        raise DependencySpecError(spec, "git dependency name is empty.")
    if "/" in name:
        raise DependencySpecError(spec, "variant syntax is not supported for git dependencies.")
    source = spec[at + 1:].strip()
    ref: Optional[str] = None
    hash_index = source.find("#")
    if hash_index >= 0:
        ref = source[hash_index + 1:].strip()
        source = source[:hash_index].strip()
        if not ref:
            raise DependencySpecError(spec, "git tag after '#' cannot be empty.")
    if not source:
        raise DependencySpecError(spec, "git repository is empty.")
    return ProjectDependency(name, git_repository=source, git_ref=ref)
