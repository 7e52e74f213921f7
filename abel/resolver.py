# abel/resolver.py
"""
resolver.py - dependency resolution for abel projects

Features:
- Local project index: scan a project tree for project.json files (skipping build/ and .abel/)
- Local resolution of sibling projects named in a project's dependency list
- Git-hosted dependencies: shallow recursive clone into a per-tree cache, optional ref checkout,
  cached per run; a repeated request must name the same repository and ref
- Merge of local and git references into one dependency set (a name maps to one path)
- Registry planning: dependency-before-dependent order of registry packages with one variant per package
- Export of a project graph to Graphviz DOT
"""

from __future__ import annotations

import os
import re
import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from abel.depspec import parse_dependency, parse_project_dependency
from abel.errors import ConfigurationError, EnvironmentFailure, ToolFailure, VariantConflictError
from abel.logging import get_logger
from abel.project import PROJECT_FILE, ProjectConfig, load_project
from abel.registry import PackageEntry, PackageRegistry, effective

logger = get_logger("resolver")

IGNORED_SEGMENTS = ("build", ".abel")

# -----------------------
# References
# -----------------------
@dataclass(frozen=True)
class LocalProjectReference:
    directory: Path
    config: ProjectConfig
    # tree the reference was discovered in; git clones are their own tree
    origin_root: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.config.name


@dataclass(frozen=True)
class GitDependencyReference:
    repository: str
    ref: Optional[str]
    project: LocalProjectReference


@dataclass
class ResolvedBuildPlan:
    order: List[str] = field(default_factory=list)
    variants: Dict[str, Optional[str]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.order)

# -----------------------
# Utilities
# -----------------------
def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(str(Path(a).resolve())) == os.path.normcase(str(Path(b).resolve()))

def safe_name(name: str) -> str:
    """Filesystem-safe directory name for a dependency."""
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", name.strip())
    return cleaned or "dependency"

def format_plan(order: List[str], limit: int = 6) -> str:
    if len(order) <= limit:
        return "[" + ", ".join(order) + "]"
    return "[" + ", ".join(order[:limit]) + f", +{len(order) - limit} more]"

# -----------------------
# Local index
# -----------------------
def _ignored(root: Path, directory: Path) -> bool:
    try:
        parts = directory.relative_to(root).parts
    except ValueError:
        parts = directory.parts
    return any(p.lower() in IGNORED_SEGMENTS for p in parts)

def build_local_index(root: Path) -> Dict[str, LocalProjectReference]:
    """Every project under root keyed by declared name. Two projects sharing a name is an error."""
    root = Path(root).resolve()
    index: Dict[str, LocalProjectReference] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d.lower() not in IGNORED_SEGMENTS and d != ".git")
        directory = Path(dirpath)
        if PROJECT_FILE not in filenames or _ignored(root, directory):
            continue
        try:
            text = (directory / PROJECT_FILE).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"{directory / PROJECT_FILE}: cannot read project descriptor ({e}).") from e
        if not text.strip():
            logger.warning("skipping empty %s in %s", PROJECT_FILE, directory)
            continue
        config = load_project(directory)
        existing = index.get(config.name)
        if existing is not None and not _same_path(existing.directory, directory):
            raise ConfigurationError(
                f"Found more than one nested project named '{config.name}' under '{root}'. "
                f"Ambiguous paths: '{existing.directory}' and '{directory}'."
            )
        index[config.name] = LocalProjectReference(directory, config, origin_root=root)
    logger.debug("local index for %s: %s", root, sorted(index))
    return index

# -----------------------
# Registry planning
# -----------------------
def plan_registry_dependencies(dependencies: Iterable[str], registry: PackageRegistry,
                               assigned: Optional[Dict[str, Optional[str]]] = None) -> ResolvedBuildPlan:
    """
    Walk registry packages named in `dependencies` (git and unknown names are skipped) and their
    transitive registry dependencies, dependencies first. Each package is visited once; asking for
    it again under a different variant is a VariantConflictError. `assigned` seeds variants chosen
    elsewhere in the same build graph.
    """
    plan = ResolvedBuildPlan()
    seeded: Dict[str, Optional[str]] = dict(assigned or {})

    def visit(entry: PackageEntry, variant: Optional[str]):
        key = entry.name.lower()
        if key in plan.variants:
            _check_variant(entry.name, plan.variants[key], variant)
            return
        if key in seeded:
            _check_variant(entry.name, seeded[key], variant)
        view = effective(entry, variant)
        plan.variants[key] = variant
        for text in view.dependencies:
            spec = parse_dependency(text)
            child = registry.find(spec.package)
            if child is None:
                raise ConfigurationError(
                    f"Registry package '{entry.name}' depends on '{text}', but it is not registered."
                )
            visit(child, spec.variant)
        plan.order.append(entry.name)

    for text in dependencies:
        dep = parse_project_dependency(text)
        if dep.is_git:
            continue
        entry = registry.find(dep.name)
        if entry is None:
            continue
        visit(entry, dep.variant)
    return plan

def _check_variant(package: str, existing: Optional[str], requested: Optional[str]):
    if (existing or "").lower() != (requested or "").lower():
        raise VariantConflictError(package, existing, requested)

# -----------------------
# Git dependency cache
# -----------------------
class GitDependencyCache:
    """
    Per-run cache of git dependencies keyed by name. Clones live in cache_root/<safe-name>,
    with a sidecar <safe-name>.source.json recording what was checked out.
    """

    def __init__(self, cache_root: Path, runner: Any, git: str = "git", shallow: bool = True):
        self.cache_root = Path(cache_root)
        self.runner = runner
        self.git = git
        self.shallow = shallow
        self._entries: Dict[str, GitDependencyReference] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def resolve(self, name: str, repository: str, ref: Optional[str]) -> GitDependencyReference:
        cached = self._entries.get(name)
        if cached is not None:
            if cached.repository != repository or cached.ref != ref:
                raise ConfigurationError(
                    f"Git dependency '{name}' was requested from different sources: "
                    f"'{_describe(cached.repository, cached.ref)}' and '{_describe(repository, ref)}'."
                )
            return cached

        clone_dir = self.cache_root / safe_name(name)
        self._ensure_checkout(name, repository, ref, clone_dir)
        config = load_project(clone_dir)
        if config.name != name:
            raise ConfigurationError(
                f"Git dependency '{name}' from '{repository}' declares project name '{config.name}'."
            )
        reference = GitDependencyReference(
            repository, ref, LocalProjectReference(clone_dir.resolve(), config, origin_root=clone_dir.resolve())
        )
        self._entries[name] = reference
        return reference

    def _ensure_checkout(self, name: str, repository: str, ref: Optional[str], clone_dir: Path):
        marker = clone_dir.with_name(clone_dir.name + ".source.json")
        recorded = _read_marker(marker) if clone_dir.exists() else {}
        if clone_dir.exists() and (recorded.get("repository"), recorded.get("ref")) != (repository, ref):
            logger.info("git cache for %s holds %s, recloning for %s", name,
                        _describe(recorded.get("repository") or "?", recorded.get("ref")), _describe(repository, ref))
            try:
                shutil.rmtree(clone_dir)
            except OSError as e:
                raise EnvironmentFailure(f"Cannot clear git cache '{clone_dir}': {e}") from e
        if not clone_dir.exists():
            self.cache_root.mkdir(parents=True, exist_ok=True)
            cmd = [self.git, "clone", "--recurse-submodules"]
            if self.shallow:
                cmd += ["--depth", "1", "--shallow-submodules"]
            cmd += [repository, str(clone_dir)]
            self._git(cmd, self.cache_root, f"fetch {name}")
        if ref:
            fetch = [self.git, "-C", str(clone_dir), "fetch", "origin", ref]
            if self.shallow:
                fetch[4:4] = ["--depth", "1"]
            self._git(fetch, self.cache_root, f"fetch {name}@{ref}")
            self._git([self.git, "-C", str(clone_dir), "checkout", "--detach", "FETCH_HEAD"],
                      self.cache_root, f"checkout {name}@{ref}")
            self._git([self.git, "-C", str(clone_dir), "submodule", "update", "--init", "--recursive"],
                      self.cache_root, f"update {name} submodules")
        try:
            marker.write_text(json.dumps({"repository": repository, "ref": ref}), encoding="utf-8")
        except OSError:
            logger.debug("could not write git cache marker %s", marker)

    def _git(self, cmd: List[str], cwd: Path, label: str):
        result = self.runner.run(cmd, cwd, label)
        if not result.ok:
            raise ToolFailure(label, result.returncode, result.diagnostics, result.compile_error)

def _describe(repository: str, ref: Optional[str]) -> str:
    return f"{repository}#{ref}" if ref else repository

def _read_marker(path: Path) -> Dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        return {}

# -----------------------
# Resolver
# -----------------------
class Resolver:
    def __init__(self, registry: PackageRegistry, git_cache: GitDependencyCache):
        self.registry = registry
        self.git_cache = git_cache

    def resolve_local(self, project_dir: Path, config: ProjectConfig,
                      index: Dict[str, LocalProjectReference]) -> Dict[str, LocalProjectReference]:
        local: Dict[str, LocalProjectReference] = {}
        for text in config.dependencies:
            dep = parse_project_dependency(text)
            if dep.is_git or self.registry.find(dep.name) is not None:
                continue
            if dep.variant is not None:
                raise ConfigurationError(
                    f"Dependency '{text}' uses variant syntax but '{dep.name}' is not a known registry package."
                )
            ref = index.get(dep.name)
            if ref is None:
                logger.debug("%s: '%s' is not a local project, expecting an installed package", config.name, dep.name)
                continue
            if _same_path(ref.directory, project_dir):
                continue
            local[dep.name] = ref
        return local

    def resolve_git(self, config: ProjectConfig) -> Dict[str, GitDependencyReference]:
        out: Dict[str, GitDependencyReference] = {}
        for text in config.dependencies:
            dep = parse_project_dependency(text)
            if dep.is_git:
                out[dep.name] = self.git_cache.resolve(dep.name, dep.git_repository, dep.git_ref)
        return out

    def resolve(self, project_dir: Path, config: ProjectConfig,
                index: Dict[str, LocalProjectReference]) -> Dict[str, LocalProjectReference]:
        """Local and git dependencies of one project, merged. A name must map to one directory."""
        merged = dict(self.resolve_local(project_dir, config, index))
        for name, git_ref in self.resolve_git(config).items():
            existing = merged.get(name)
            if existing is not None and not _same_path(existing.directory, git_ref.project.directory):
                raise ConfigurationError(
                    f"Dependency '{name}' of '{config.name}' resolves to both '{existing.directory}' "
                    f"and '{git_ref.project.directory}'."
                )
            merged[name] = git_ref.project
        return merged

    def plan(self, config: ProjectConfig, assigned: Optional[Dict[str, Optional[str]]] = None) -> ResolvedBuildPlan:
        return plan_registry_dependencies(config.dependencies, self.registry, assigned)


# -----------------------
# Export
# -----------------------
def export_graphviz(edges: Dict[str, List[str]], path: Optional[Path] = None,
                    kinds: Optional[Dict[str, str]] = None) -> str:
    """Render a project graph (name -> dependency names) as DOT; write it when path is given."""
    kinds = kinds or {}
    lines = ["digraph abel {"]
    nodes: Set[str] = set(edges)
    for deps in edges.values():
        nodes.update(deps)
    for name in sorted(nodes):
        kind = kinds.get(name)
        label = f"{name}\\n{kind}" if kind else name
        shape = "box" if kind == "exe" else "ellipse"
        lines.append(f'  "{name}" [label="{label}", shape={shape}];')
    for name in sorted(edges):
        for dep in edges[name]:
            lines.append(f'  "{name}" -> "{dep}";')
    lines.append("}")
    text = "\n".join(lines) + "\n"
    if path is not None:
        Path(path).write_text(text, encoding="utf-8")
    return text
