# abel/buildsystem.py
"""
buildsystem.py - build orchestration for abel projects

API:
  bs = get_buildsystem(configuration="Debug")
  result = bs.build([Path("app")])      # BuildResult
  result = bs.run([Path("app")])        # build, then execute exe projects

Per project, depth first over the dependency graph:
  resolve dependencies -> build dependencies -> generate CMakeLists.txt -> configure -> build -> install (libraries)

Result:
  BuildResult(status="ok|circular|error", error_kind="configuration|tool|environment", message,
              project, diagnostics, built=[names in build order])

Behaviour:
  - a project already on the active path is a circular dependency; completed projects are not rebuilt
  - local and git dependencies must be libraries
  - configure is skipped when CMakeLists.txt is unchanged and build/<cfg>/CMakeCache.txt records the same configuration
  - a failed phase is retried once after wiping build/<cfg>, unless it was a compile error or the build activity itself
  - one variant per registry package across the whole graph
"""

from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rich.console import Console

from abel.config import get_config
from abel.errors import (AbelError, CircularDependencyError, ConfigurationError, EnvironmentFailure,
                         ExitCode, ToolFailure)
from abel.generator import CMAKE_FILE, CmakeBuilder, write_if_changed
from abel.logging import get_logger
from abel.project import ProjectConfig, load_project, normalize_configuration
from abel.registry import PackageRegistry, load_registry
from abel.resolver import (GitDependencyCache, LocalProjectReference, Resolver, build_local_index,
                           export_graphviz, format_plan)
from abel.supervisor import (CommandRunner, format_elapsed, parse_build_progress,
                             parse_configure_progress, parse_install_progress)

logger = get_logger("buildsystem")

DEFAULT_CONFIGURATION = "Release"
CACHE_FILE = "CMakeCache.txt"
BUILD_TYPE_PREFIX = "CMAKE_BUILD_TYPE:STRING="

# -----------------------
# Result type
# -----------------------
@dataclass
class BuildResult:
    status: str = "ok"                       # ok | circular | error
    error_kind: Optional[str] = None         # configuration | tool | environment
    message: str = ""
    project: Optional[str] = None
    diagnostics: List[str] = field(default_factory=list)
    built: List[str] = field(default_factory=list)
    program_exit_codes: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def exit_code(self) -> int:
        if self.ok:
            return ExitCode.SUCCESS
        if self.status == "circular" or self.error_kind == "configuration":
            return ExitCode.USAGE_ERROR
        return ExitCode.RUNTIME_ERROR

    @classmethod
    def from_error(cls, error: AbelError, project: Optional[str] = None) -> "BuildResult":
        if isinstance(error, CircularDependencyError):
            return cls(status="circular", error_kind="configuration", message=str(error), project=error.name)
        if isinstance(error, ConfigurationError):
            kind = "configuration"
        elif isinstance(error, ToolFailure):
            kind = "tool"
        else:
            kind = "environment"
        diagnostics = list(error.diagnostics) if isinstance(error, ToolFailure) else []
        return cls(status="error", error_kind=kind, message=str(error), project=project, diagnostics=diagnostics)

# -----------------------
# Helpers
# -----------------------
def _path_key(path: Path) -> str:
    return os.path.normcase(str(Path(path).resolve()))

def build_dir(project_dir: Path, configuration: str) -> Path:
    return Path(project_dir) / "build" / configuration

def configure_up_to_date(cache_file: Path, configuration: str) -> bool:
    """True when the CMake cache records the same CMAKE_BUILD_TYPE."""
    try:
        with open(cache_file, "r", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                if line.startswith(BUILD_TYPE_PREFIX):
                    return line[len(BUILD_TYPE_PREFIX):].strip().lower() == configuration.lower()
    except FileNotFoundError:
        return False
    return False

def executable_path(project_dir: Path, name: str, configuration: str) -> Path:
    """Configuration-scoped build output first, then the legacy flat build/ directory."""
    exe = name + (".exe" if os.name == "nt" else "")
    scoped = build_dir(project_dir, configuration) / exe
    if scoped.is_file():
        return scoped
    legacy = Path(project_dir) / "build" / exe
    if legacy.is_file():
        return legacy
    return scoped

def clean_build(project_dir: Path, configuration: str):
    path = build_dir(project_dir, configuration)
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise EnvironmentFailure(f"Cannot remove '{path}': {e}") from e


@dataclass
class _Walk:
    """State of one orchestration run."""
    configuration: str
    prefix: Path
    resolver: Resolver
    active: set = field(default_factory=set)
    completed: set = field(default_factory=set)
    built: List[str] = field(default_factory=list)
    variants: Dict[str, Optional[str]] = field(default_factory=dict)
    indexes: Dict[str, Dict[str, LocalProjectReference]] = field(default_factory=dict)

    def index_for(self, root: Path) -> Dict[str, LocalProjectReference]:
        key = _path_key(root)
        if key not in self.indexes:
            self.indexes[key] = build_local_index(root)
        return self.indexes[key]

# -----------------------
# BuildSystem
# -----------------------
class BuildSystem:
    def __init__(self, registry: Optional[PackageRegistry] = None, runner: Optional[Any] = None,
                 configuration: Optional[str] = None, verbose: bool = False,
                 console: Optional[Console] = None, settings: Optional[Dict[str, Any]] = None):
        cfg = get_config()
        self.console = console or Console()
        self.verbose = verbose
        self.registry = registry
        self.runner = runner or CommandRunner(console=self.console, verbose=verbose)
        self.configuration = configuration
        self.settings = settings if settings is not None else cfg.section("build")
        self.git_settings = cfg.section("git")

    # -----------------------
    # Output
    # -----------------------
    def _say(self, text: str, style: Optional[str] = None):
        self.console.print(text, style=style, markup=False, highlight=False)

    def _progress(self, text: str):
        # step lines give way to raw tool output in verbose mode
        if not self.verbose:
            self._say(text)

    # -----------------------
    # Configuration
    # -----------------------
    def resolve_configuration(self, config: ProjectConfig) -> str:
        """CLI choice, then the project's default, then the global default."""
        if self.configuration:
            return normalize_configuration(self.configuration)
        if config.build is not None and config.build.default_configuration:
            return normalize_configuration(config.build.default_configuration)
        return normalize_configuration(self.settings.get("configuration") or DEFAULT_CONFIGURATION)

    def _registry_for(self, project_dir: Path) -> PackageRegistry:
        if self.registry is None:
            self.registry = load_registry(project_dir)
        return self.registry

    def _walk_for(self, root: Path, config: ProjectConfig) -> _Walk:
        registry = self._registry_for(root)
        cache_dir = self.git_settings.get("cache_dir") or (root / ".abel" / "git_deps")
        git_cache = GitDependencyCache(Path(cache_dir), self.runner,
                                       git=self.git_settings.get("executable") or "git",
                                       shallow=bool(self.git_settings.get("shallow", True)))
        prefix = root / ".abel" / "local_deps"
        try:
            prefix.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentFailure(f"Cannot create '{prefix}': {e}") from e
        return _Walk(self.resolve_configuration(config), prefix, Resolver(registry, git_cache))

    def _validated(self, directory: Path, config: ProjectConfig) -> ProjectConfig:
        checked, missing = config.without_missing_tests(directory)
        for f in missing:
            self._say(f"  [warn] Test file '{f}' not found in {directory} - skipping.", style="yellow")
        return checked

    # -----------------------
    # Public API
    # -----------------------
    def build(self, project_dirs: Iterable[Path]) -> BuildResult:
        return self._execute(project_dirs, run_after=False)

    def run(self, project_dirs: Iterable[Path]) -> BuildResult:
        return self._execute(project_dirs, run_after=True)

    def _execute(self, project_dirs: Iterable[Path], run_after: bool) -> BuildResult:
        started = time.monotonic()
        built: List[str] = []
        completed: set = set()
        roots: List[Tuple[Path, ProjectConfig, str]] = []
        for directory in project_dirs:
            root = Path(directory).resolve()
            try:
                config = load_project(root)
                walk = self._walk_for(root, config)
            except AbelError as e:
                return self._finish(BuildResult.from_error(e), built)
            walk.completed = completed
            walk.built = built
            ref = LocalProjectReference(root, config, origin_root=root)
            result = self._build_node(walk, ref)
            if not result.ok:
                return self._finish(result, built)
            roots.append((root, config, walk.configuration))
        if self.verbose:
            self._say(f"  [build] Total: {format_elapsed(time.monotonic() - started)}", style="cyan")

        result = BuildResult(built=list(built))
        if run_after:
            for root, config, configuration in roots:
                if config.is_library:
                    continue
                try:
                    code = self._run_program(root, config, configuration)
                except AbelError as e:
                    return self._finish(BuildResult.from_error(e, config.name), built)
                result.program_exit_codes[config.name] = code
        return result

    def _finish(self, result: BuildResult, built: List[str]) -> BuildResult:
        result.built = list(built)
        logger.debug("build finished: status=%s project=%s", result.status, result.project)
        return result

    # -----------------------
    # Graph walk
    # -----------------------
    def _build_node(self, walk: _Walk, ref: LocalProjectReference) -> BuildResult:
        key = _path_key(ref.directory)
        name = ref.config.name
        if key in walk.completed:
            return BuildResult()
        if key in walk.active:
            return BuildResult.from_error(CircularDependencyError(name, str(ref.directory)))
        walk.active.add(key)
        try:
            config = self._validated(ref.directory, ref.config)
            index = walk.index_for(ref.origin_root or ref.directory)
            dependencies = walk.resolver.resolve(ref.directory, config, index)
            for dep in dependencies.values():
                if not dep.config.is_library:
                    raise ConfigurationError(
                        f"Dependency '{dep.config.name}' is not a library. Only library dependencies are supported."
                    )
                result = self._build_node(walk, dep)
                if not result.ok:
                    return result

            self._say(f"  build {name}")
            started = time.monotonic()
            failure = self._build_project(walk, ref.directory, config)
            if failure is not None and failure.retryable and self.settings.get("retry", True):
                if self.verbose:
                    self._say(str(failure))
                self._say(f"  [retry] {name} - cleaning and rebuilding...", style="yellow")
                clean_build(ref.directory, walk.configuration)
                failure = self._build_project(walk, ref.directory, config)
            if failure is not None:
                return BuildResult.from_error(failure, name)

            walk.completed.add(key)
            walk.built.append(name)
            if self.verbose:
                self._say(f"  [done] {name} ({format_elapsed(time.monotonic() - started)})", style="green")
            return BuildResult()
        except AbelError as e:
            return BuildResult.from_error(e, name)
        finally:
            walk.active.discard(key)

    # -----------------------
    # Phases
    # -----------------------
    def _generate(self, walk: _Walk, project_dir: Path, config: ProjectConfig) -> bool:
        plan = walk.resolver.plan(config, walk.variants)
        if plan:
            self._progress(f"  step {config.name}: fetch/build dependencies {format_plan(plan.order)}")
        self._progress(f"  step {config.name}: generate CMakeLists.txt")
        builder = CmakeBuilder.from_project_config(config, walk.resolver.registry, walk.variants)
        changed = write_if_changed(project_dir / CMAKE_FILE, builder.build())
        walk.variants.update(builder.resolved_variants)
        state = "updated" if changed else "unchanged"
        self._progress(f"  [ok] CMakeLists.txt {state} for {config.name}")
        return changed

    def _cmake(self) -> str:
        return self.settings.get("cmake") or "cmake"

    def _timeout(self) -> Optional[float]:
        value = self.settings.get("timeout") or 0
        return float(value) if value else None

    def _build_project(self, walk: _Walk, project_dir: Path, config: ProjectConfig) -> Optional[ToolFailure]:
        """Generate, configure, build and (libraries) install. A tool failure is returned, not raised."""
        cfg = walk.configuration
        out_dir = str(Path("build") / cfg)
        changed = self._generate(walk, project_dir, config)

        if changed or not configure_up_to_date(build_dir(project_dir, cfg) / CACHE_FILE, cfg):
            cmd = [self._cmake(), "-S", ".", "-B", out_dir,
                   "-G", self.settings.get("generator") or "Ninja",
                   f"-DCMAKE_BUILD_TYPE={cfg}"]
            if self.settings.get("export_compile_commands", True):
                cmd.append("-DCMAKE_EXPORT_COMPILE_COMMANDS=ON")
            cmd.append(f"-DCMAKE_PREFIX_PATH={walk.prefix}")
            failure = self._phase(cmd, project_dir, f"configure {config.name}", parse_configure_progress)
            if failure is not None:
                return failure
        else:
            self._progress(f"  [ok] configure {config.name} (up-to-date)")

        failure = self._phase([self._cmake(), "--build", out_dir, "--config", cfg],
                              project_dir, f"build {config.name}", parse_build_progress)
        if failure is not None or not config.is_library:
            return failure
        return self._phase([self._cmake(), "--install", out_dir, "--config", cfg, "--prefix", str(walk.prefix)],
                           project_dir, f"install {config.name}", parse_install_progress)

    def _phase(self, cmd: List[str], cwd: Path, label: str, parser) -> Optional[ToolFailure]:
        result = self.runner.run(cmd, cwd, label, parser, timeout=self._timeout())
        failure = result.failure()
        if failure is not None:
            logger.info("%s failed (compile error: %s)", label, failure.compile_error)
        return failure

    def _run_program(self, project_dir: Path, config: ProjectConfig, configuration: str) -> int:
        exe = executable_path(project_dir, config.name, configuration)
        if not exe.is_file():
            raise EnvironmentFailure(f"Executable for '{config.name}' not found at '{exe}'.")
        self._say(f"  run {config.name} ({configuration})")
        started = time.monotonic()
        code = self.runner.run_attached([str(exe)], exe.parent)
        if self.verbose:
            self._say(f"  [run] {config.name} finished ({format_elapsed(time.monotonic() - started)})", style="green")
        if code != 0:
            self._say(f"  [warn] {config.name} exited with code {code}", style="yellow")
        return code

    # -----------------------
    # Graph export
    # -----------------------
    def graph(self, project_dirs: Iterable[Path]) -> Tuple[Dict[str, List[str]], Dict[str, str]]:
        """Resolve without building. Returns (edges name -> dependency names, kinds name -> exe|library)."""
        edges: Dict[str, List[str]] = {}
        kinds: Dict[str, str] = {}
        for directory in project_dirs:
            root = Path(directory).resolve()
            config = load_project(root)
            walk = self._walk_for(root, config)
            pending = [LocalProjectReference(root, config, origin_root=root)]
            seen = set()
            while pending:
                ref = pending.pop()
                if _path_key(ref.directory) in seen:
                    continue
                seen.add(_path_key(ref.directory))
                kinds[ref.name] = ref.config.output_type.value
                index = walk.index_for(ref.origin_root or ref.directory)
                deps = walk.resolver.resolve(ref.directory, ref.config, index)
                plan = walk.resolver.plan(ref.config)
                edges[ref.name] = sorted(deps) + plan.order
                for name in plan.order:
                    kinds.setdefault(name, "registry")
                pending.extend(deps.values())
        return edges, kinds

    def export_graphviz(self, project_dirs: Iterable[Path], path: Optional[Path] = None) -> str:
        edges, kinds = self.graph(project_dirs)
        return export_graphviz(edges, path, kinds)

# -----------------------
# Accessor
# -----------------------
def get_buildsystem(**kwargs) -> BuildSystem:
    return BuildSystem(**kwargs)
