# abel/generator.py
"""
generator.py - CMakeLists.txt generation for abel projects

Features:
- Fluent CmakeBuilder: collect targets, sources, dependencies and options, then build() the text
- Target model: add_executable / add_library(STATIC), C++20 module and header file sets
- Registry strategies: fetchcontent, wrapper (compiled static lib), header_inject (INTERFACE lib), find_package
- Variant-aware registry planning (one variant per package per project)
- Per-toolchain / per-configuration compile options via generator expressions
- Install/export rules for libraries so other projects can find_package() them
- doctest based CTest targets
- Idempotent writes: write_if_changed() leaves identical files alone

Output is deterministic: the same ProjectConfig and registry always give byte-identical text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from abel.depspec import parse_dependency, parse_project_dependency
from abel.errors import ConfigurationError, EnvironmentFailure
from abel.logging import get_logger
from abel.project import CompilerOptions, OutputType, ProjectConfig, normalize_configuration
from abel.registry import PackageEntry, PackageRegistry, effective
from abel.resolver import plan_registry_dependencies

logger = get_logger("generator")

CMAKE_FILE = "CMakeLists.txt"
TEST_FRAMEWORK = ("doctest", "https://github.com/doctest/doctest.git", "v2.4.12")
TEST_FRAMEWORK_TARGET = "doctest::doctest"

# -----------------------
# Collected pieces
# -----------------------
@dataclass
class FindPackageDep:
    name: str
    required: bool = True
    config_mode: bool = False


@dataclass
class FetchContentDep:
    name: str
    git_repository: str
    git_tag: Optional[str] = None


@dataclass
class WrapperPackageDep:
    name: str
    git_repository: str
    git_tag: str
    sources: List[str]
    include_dirs: List[str]
    compile_definitions: List[str]
    cmake_targets: List[str]
    link_libraries: List[str]
    interface_only: bool


@dataclass
class TestTarget:
    name: str
    sources: List[str]
    link_libraries: List[str] = field(default_factory=list)


@dataclass
class _OptionSet:
    common: List[str] = field(default_factory=list)
    msvc: List[str] = field(default_factory=list)
    gcc: List[str] = field(default_factory=list)
    clang: List[str] = field(default_factory=list)

    def add(self, options: CompilerOptions):
        for bucket in ("common", "msvc", "gcc", "clang"):
            target = getattr(self, bucket)
            for opt in getattr(options, bucket):
                if opt and opt.strip() and opt not in target:
                    target.append(opt)

    def __bool__(self) -> bool:
        return bool(self.common or self.msvc or self.gcc or self.clang)

# -----------------------
# Helpers
# -----------------------
def safe_target_identifier(name: str) -> str:
    if not name or not name.strip():
        return "package"
    ident = re.sub(r"[^A-Za-z0-9_]", "_", name)
    if ident[0].isdigit():
        return f"pkg_{ident}"
    return ident

def escape_argument(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    if " " in escaped or ";" in escaped:
        return f'"{escaped}"'
    return escaped

def _source_dir(package: str, rel: str) -> str:
    if rel == ".":
        return "${" + package + "_SOURCE_DIR}"
    return "${" + package + "_SOURCE_DIR}/" + rel

def _compiler_expression(option: str, configuration: Optional[str], compiler_ids: Tuple[str, ...]) -> str:
    conditions = []
    if configuration:
        conditions.append(f"$<CONFIG:{configuration}>")
    if compiler_ids:
        conditions.append(f"$<CXX_COMPILER_ID:{','.join(compiler_ids)}>")
    if not conditions:
        return option
    if len(conditions) == 1:
        return f"$<{conditions[0]}:{option}>"
    return f"$<$<AND:{','.join(conditions)}>:{option}>"

def _compile_options(options: _OptionSet, configuration: Optional[str]) -> List[str]:
    out: List[str] = []
    for values, ids in ((options.common, ()), (options.msvc, ("MSVC",)),
                        (options.gcc, ("GNU",)), (options.clang, ("Clang", "AppleClang"))):
        for opt in values:
            if opt.strip():
                out.append(_compiler_expression(escape_argument(opt), configuration, ids))
    return out

def write_if_changed(path: Path, text: str) -> bool:
    """Write text unless the file already holds exactly that. Returns True when written."""
    path = Path(path)
    try:
        if path.is_file() and path.read_bytes() == text.encode("utf-8"):
            return False
        path.write_bytes(text.encode("utf-8"))
    except OSError as e:
        raise EnvironmentFailure(f"Cannot write '{path}': {e}") from e
    return True


class _Writer:
    def __init__(self):
        self._lines: List[str] = []

    def line(self, text: str = ""):
        self._lines.append(text)

    def blank(self):
        self._lines.append("")

    def block(self, head: str, items: Iterable[str], indent: str = "    ", close: str = ")"):
        self._lines.append(head)
        for item in items:
            self._lines.append(indent + item)
        self._lines.append(close)

    def text(self) -> str:
        return "\n".join(self._lines) + "\n"

# -----------------------
# Builder
# -----------------------
class CmakeBuilder:
    def __init__(self):
        self.min_version = "3.28"
        self.project_name = ""
        self.language = "CXX"
        self.cxx_standard = 23
        self.output_type = OutputType.exe
        self.private_sources: List[str] = []
        self.module_sources: List[str] = []
        self.public_headers: List[str] = []
        self.find_packages: List[FindPackageDep] = []
        self.fetch_contents: List[FetchContentDep] = []
        self.wrapper_packages: List[WrapperPackageDep] = []
        self.cmake_options: List[Tuple[str, str]] = []
        self.link_libraries: List[str] = []
        self.project_options = _OptionSet()
        self.options_by_configuration: Dict[str, _OptionSet] = {}
        self.test_targets: List[TestTarget] = []
        self.install = False
        self.legacy_layout = False
        # registry packages emitted so far, lower-cased name -> variant
        self._variants: Dict[str, Optional[str]] = {}

    # fluent setters
    def set_project(self, name: str, language: str = "CXX") -> "CmakeBuilder":
        if not name or not name.strip():
            raise ConfigurationError("Project name is required.")
        self.project_name = name
        self.language = language
        return self

    def set_cxx_standard(self, standard: int) -> "CmakeBuilder":
        if standard not in (11, 14, 17, 20, 23, 26):
            raise ConfigurationError(f"Unsupported C++ standard {standard} for '{self.project_name}'.")
        self.cxx_standard = standard
        return self

    def set_output_type(self, output_type: OutputType) -> "CmakeBuilder":
        self.output_type = OutputType(output_type)
        return self

    def add_private_sources(self, *files: str) -> "CmakeBuilder":
        self.private_sources.extend(files)
        return self

    def add_module_sources(self, *files: str) -> "CmakeBuilder":
        self.module_sources.extend(files)
        return self

    def add_public_headers(self, *files: str) -> "CmakeBuilder":
        self.public_headers.extend(files)
        return self

    def add_find_package(self, name: str, required: bool = True, config_mode: bool = False) -> "CmakeBuilder":
        self.find_packages.append(FindPackageDep(name, required, config_mode))
        return self

    def add_fetch_content(self, name: str, git_repository: str, git_tag: Optional[str] = None) -> "CmakeBuilder":
        self.fetch_contents.append(FetchContentDep(name, git_repository, git_tag))
        return self

    def add_cmake_option(self, key: str, value: str) -> "CmakeBuilder":
        self.cmake_options.append((key, value))
        return self

    def add_wrapper_package(self, dep: WrapperPackageDep) -> "CmakeBuilder":
        self.wrapper_packages.append(dep)
        return self

    def add_link_library(self, target: str) -> "CmakeBuilder":
        self.link_libraries.append(target)
        return self

    def add_project_compile_options(self, options: CompilerOptions) -> "CmakeBuilder":
        self.project_options.add(options)
        return self

    def add_compile_options_for_configuration(self, configuration: str, options: CompilerOptions) -> "CmakeBuilder":
        name = normalize_configuration(configuration)
        self.options_by_configuration.setdefault(name, _OptionSet()).add(options)
        return self

    def add_test(self, name: str, sources: Iterable[str], link_libraries: Optional[Iterable[str]] = None) -> "CmakeBuilder":
        self.test_targets.append(TestTarget(name, list(sources), list(link_libraries or [])))
        return self

    def enable_install(self) -> "CmakeBuilder":
        self.install = True
        return self

    def enable_legacy_layout(self) -> "CmakeBuilder":
        self.legacy_layout = True
        return self

    @property
    def is_library(self) -> bool:
        return self.output_type == OutputType.library

    # -----------------------
    # Rendering
    # -----------------------
    def build(self) -> str:
        if not self.project_name:
            raise ConfigurationError("Project name is required.")
        if self.is_library and not self.private_sources and not self.module_sources and not self.legacy_layout:
            raise ConfigurationError(
                f"Library '{self.project_name}' has no source files. Add module sources or private sources."
            )
        w = _Writer()
        self._preamble(w)
        self._cmake_options(w)
        self._fetch_content(w)
        self._wrapper_packages(w)
        self._find_packages(w)
        self._target(w)
        self._legacy_layout(w)
        self._sources(w)
        if self.is_library:
            w.line(f"target_compile_features({self.project_name} PUBLIC cxx_std_{self.cxx_standard})")
        self._warnings(w)
        self._project_options(w)
        self._link_libraries(w)
        if self.is_library and self.install:
            self._install_rules(w)
        if self.test_targets:
            self._tests(w)
        return w.text()

    def _preamble(self, w: _Writer):
        w.line(f"cmake_minimum_required(VERSION {self.min_version})")
        w.line(f"project({self.project_name} LANGUAGES {self.language})")
        w.blank()
        w.line(f"set(CMAKE_CXX_STANDARD {self.cxx_standard})")
        w.line("set(CMAKE_CXX_STANDARD_REQUIRED ON)")
        w.line("set(CMAKE_CXX_EXTENSIONS OFF)")

    def _cmake_options(self, w: _Writer):
        if not self.cmake_options:
            return
        w.blank()
        w.line("# Dependency build options")
        for key, value in self.cmake_options:
            w.line(f'set({key} {value} CACHE BOOL "")')

    def _fetch_content(self, w: _Writer):
        if not self.fetch_contents:
            return
        w.blank()
        w.line("include(FetchContent)")
        for fc in self.fetch_contents:
            w.line("FetchContent_Declare(")
            w.line(f"    {fc.name}")
            w.line(f"    GIT_REPOSITORY {escape_argument(fc.git_repository)}")
            if fc.git_tag and fc.git_tag.strip():
                w.line(f"    GIT_TAG        {escape_argument(fc.git_tag)}")
            w.line("    GIT_SHALLOW    TRUE")
            w.line(")")
        w.line(f"FetchContent_MakeAvailable({' '.join(fc.name for fc in self.fetch_contents)})")

    def _wrapper_packages(self, w: _Writer):
        if not self.wrapper_packages:
            return
        if not self.fetch_contents:
            w.blank()
            w.line("include(FetchContent)")
        for pkg in self.wrapper_packages:
            internal = f"{safe_target_identifier(pkg.name)}_lib"
            w.blank()
            w.line("FetchContent_Declare(")
            w.line(f"    {pkg.name}")
            w.line(f"    GIT_REPOSITORY {escape_argument(pkg.git_repository)}")
            if pkg.git_tag and pkg.git_tag.strip():
                w.line(f"    GIT_TAG        {escape_argument(pkg.git_tag)}")
            w.line("    GIT_SHALLOW    TRUE")
            w.line(")")
            w.line(f"FetchContent_GetProperties({pkg.name})")
            w.line(f"if(NOT {pkg.name}_POPULATED)")
            w.line(f"    FetchContent_Populate({pkg.name})")
            w.line("endif()")
            w.blank()
            if pkg.interface_only:
                w.line(f"add_library({internal} INTERFACE)")
                scope = "INTERFACE"
            else:
                w.line(f"add_library({internal} STATIC)")
                scope = "PUBLIC"
                if pkg.sources:
                    w.block(f"target_sources({internal} PRIVATE", (_source_dir(pkg.name, s) for s in pkg.sources))
            if pkg.include_dirs:
                w.block(f"target_include_directories({internal} {scope}",
                        (_source_dir(pkg.name, d) for d in pkg.include_dirs))
            if pkg.compile_definitions:
                w.block(f"target_compile_definitions({internal} {scope}", pkg.compile_definitions)
            if pkg.link_libraries:
                w.block(f"target_link_libraries({internal} {scope}", pkg.link_libraries)
            for alias in pkg.cmake_targets:
                w.line(f"add_library({alias} ALIAS {internal})")

    def _find_packages(self, w: _Writer):
        if not self.find_packages:
            return
        w.blank()
        for pkg in self.find_packages:
            parts = [pkg.name]
            if pkg.config_mode:
                parts.append("CONFIG")
            if pkg.required:
                parts.append("REQUIRED")
            w.line(f"find_package({' '.join(parts)})")

    def _target(self, w: _Writer):
        w.blank()
        if self.is_library:
            w.line(f"add_library({self.project_name} STATIC)")
        else:
            w.line(f"add_executable({self.project_name})")

    def _legacy_layout(self, w: _Writer):
        if not self.legacy_layout:
            return
        name = self.project_name
        w.blank()
        w.line("# Legacy header/src support (non-module layout).")
        w.line('if(EXISTS "${CMAKE_CURRENT_SOURCE_DIR}/include")')
        w.line(f"    target_include_directories({name} {'PUBLIC' if self.is_library else 'PRIVATE'}")
        w.line('        "${CMAKE_CURRENT_SOURCE_DIR}/include"')
        w.line("    )")
        w.line("endif()")
        if self.private_sources or self.module_sources or self.public_headers:
            return
        var = f"ABEL_{safe_target_identifier(name).upper()}_LEGACY_SOURCES"
        w.block(f"file(GLOB_RECURSE {var} CONFIGURE_DEPENDS",
                ['"${CMAKE_CURRENT_SOURCE_DIR}/src/*.%s"' % ext for ext in ("c", "cc", "cxx", "cpp")])
        w.line(f"if({var})")
        w.line(f"    target_sources({name} PRIVATE ${{{var}}})")
        w.line("endif()")

    def _sources(self, w: _Writer):
        private = list(self.private_sources)
        if not self.is_library and not private and not self.module_sources:
            private.append("main.cpp")
        if not (self.module_sources or private or self.public_headers):
            return
        w.line(f"target_sources({self.project_name}")
        for head, files in (("PUBLIC FILE_SET CXX_MODULES FILES", self.module_sources),
                            ("PUBLIC FILE_SET HEADERS FILES", self.public_headers),
                            ("PRIVATE", private)):
            if files:
                w.line(f"    {head}")
                for f in files:
                    w.line(f"        {f}")
        w.line(")")

    def _warnings(self, w: _Writer):
        w.blank()
        w.line("# Sane warning defaults for project sources.")
        w.line("if(MSVC)")
        w.line(f"    target_compile_options({self.project_name} PRIVATE /W4 /permissive-)")
        w.line("else()")
        w.line(f"    target_compile_options({self.project_name} PRIVATE -Wall -Wextra -Wpedantic)")
        w.line("endif()")

    def _project_options(self, w: _Writer):
        if not self.project_options and not any(self.options_by_configuration.values()):
            return
        w.blank()
        w.line("# Extra compiler options from project.json build section.")
        blocks = [(None, self.project_options)]
        blocks += sorted(self.options_by_configuration.items())
        for configuration, options in blocks:
            rendered = _compile_options(options, configuration)
            if rendered:
                w.block(f"target_compile_options({self.project_name} PRIVATE", rendered)

    def _link_libraries(self, w: _Writer):
        if not self.link_libraries:
            return
        scope = "PUBLIC" if self.is_library else "PRIVATE"
        w.block(f"target_link_libraries({self.project_name} {scope}", self.link_libraries)

    def _install_rules(self, w: _Writer):
        name = self.project_name
        w.blank()
        w.line("include(GNUInstallDirs)")
        w.blank()
        w.line(f"install(TARGETS {name}")
        w.line(f"    EXPORT {name}-targets")
        w.line("    ARCHIVE DESTINATION ${CMAKE_INSTALL_LIBDIR}")
        if self.module_sources:
            w.line("    FILE_SET CXX_MODULES")
            w.line(f"        DESTINATION ${{CMAKE_INSTALL_LIBDIR}}/cmake/{name}/cxx_modules")
        if self.public_headers:
            w.line("    FILE_SET HEADERS")
            w.line("        DESTINATION ${CMAKE_INSTALL_INCLUDEDIR}")
        w.line(")")
        w.blank()
        w.line(f"install(EXPORT {name}-targets")
        w.line(f"    NAMESPACE {name}::")
        w.line(f"    DESTINATION ${{CMAKE_INSTALL_LIBDIR}}/cmake/{name}")
        w.line(")")
        w.blank()
        w.line("include(CMakePackageConfigHelpers)")
        w.blank()
        w.line(f'file(WRITE "${{CMAKE_CURRENT_BINARY_DIR}}/{name}-config.cmake" [=[')
        w.line("include(CMakeFindDependencyMacro)")
        seen = set()
        for pkg in self.find_packages:
            if pkg.name not in seen:
                seen.add(pkg.name)
                w.line(f"find_dependency({pkg.name} CONFIG REQUIRED)")
        w.line(f'include("${{CMAKE_CURRENT_LIST_DIR}}/{name}-targets.cmake")')
        w.line("]=])")
        w.blank()
        w.line(f'install(FILES "${{CMAKE_CURRENT_BINARY_DIR}}/{name}-config.cmake"')
        w.line(f"    DESTINATION ${{CMAKE_INSTALL_LIBDIR}}/cmake/{name}")
        w.line(")")

    def _tests(self, w: _Writer):
        w.blank()
        w.line("include(CTest)")
        w.blank()
        w.line("if(BUILD_TESTING)")
        for test in self.test_targets:
            w.line(f"    add_executable({test.name} {' '.join(test.sources)})")
            w.block(f"    target_link_libraries({test.name} PRIVATE",
                    [self.project_name] + test.link_libraries, indent="        ", close="    )")
            w.line(f"    add_test(NAME {test.name} COMMAND {test.name})")
        w.line("endif()")

    # -----------------------
    # Factory
    # -----------------------
    @classmethod
    def from_project_config(cls, config: ProjectConfig, registry: Optional[PackageRegistry] = None,
                            assigned_variants: Optional[Dict[str, Optional[str]]] = None) -> "CmakeBuilder":
        """
        Map a project descriptor onto a builder.

        sources.modules -> FILE_SET CXX_MODULES, sources.public -> FILE_SET HEADERS,
        sources.private -> PRIVATE. Registry dependencies are planned first (dependencies before
        dependents) and emitted by strategy; git and unknown names become find_package(CONFIG).
        Libraries always get install rules; test files pull in doctest.
        """
        builder = (cls().set_project(config.name)
                   .set_cxx_standard(config.cxx_standard)
                   .set_output_type(config.output_type))
        builder.add_module_sources(*config.bucket("modules"))
        builder.add_private_sources(*config.bucket("private"))
        builder.add_public_headers(*config.bucket("public"))

        if config.build is not None:
            if config.build.legacy_header_src_layout:
                builder.enable_legacy_layout()
            builder.add_project_compile_options(config.build.compile_options)
            for name, section in config.build.configurations.items():
                if section is not None:
                    builder.add_compile_options_for_configuration(name, section.compile_options)

        emitted = set()
        for text in config.dependencies:
            dep = parse_project_dependency(text)
            if dep.is_git:
                builder.add_find_package(dep.name, required=True, config_mode=True)
                builder.add_link_library(f"{dep.name}::{dep.name}")
                continue
            entry = registry.find(dep.name) if registry is not None else None
            if entry is None:
                if dep.variant is not None:
                    raise ConfigurationError(
                        f"Unknown package '{dep.name}' in dependency '{text}'. "
                        "Variant syntax is only supported for registry packages."
                    )
                builder.add_find_package(dep.name, required=True, config_mode=True)
                builder.add_link_library(f"{dep.name}::{dep.name}")
                continue
            # plan this declaration's subtree; packages already emitted are skipped
            plan = plan_registry_dependencies([text], registry, _merged(assigned_variants, builder))
            for pkg_name in plan.order:
                if pkg_name.lower() in emitted:
                    continue
                emitted.add(pkg_name.lower())
                builder._variants[pkg_name.lower()] = plan.variants[pkg_name.lower()]
                builder._emit_package(registry.find(pkg_name), plan.variants[pkg_name.lower()], registry)

        if config.is_library:
            builder.enable_install()

        if config.tests.files:
            builder.add_fetch_content(*TEST_FRAMEWORK)
            for test_file in config.tests.files:
                builder.add_test(Path(test_file).stem, [test_file], [TEST_FRAMEWORK_TARGET])
        return builder

    @property
    def resolved_variants(self) -> Dict[str, Optional[str]]:
        """Registry packages emitted by from_project_config, keyed by lower-cased name."""
        return dict(self._variants)

    def _emit_package(self, entry: PackageEntry, variant: Optional[str], registry: PackageRegistry):
        view = effective(entry, variant)
        for key, value in entry.cmake_options.items():
            self.add_cmake_option(key, value)
        strategy = entry.strategy.strip().lower()
        if strategy == "fetchcontent":
            self.add_fetch_content(entry.name, entry.git_repository, entry.git_tag)
        elif strategy in ("wrapper", "header_inject"):
            interface_only = strategy == "header_inject"
            if not interface_only and not view.sources:
                raise ConfigurationError(f"Package '{entry.name}' uses wrapper strategy but does not define sources.")
            self.add_wrapper_package(WrapperPackageDep(
                name=entry.name,
                git_repository=entry.git_repository,
                git_tag=entry.git_tag,
                sources=[] if interface_only else view.sources,
                include_dirs=view.include_dirs,
                compile_definitions=view.compile_definitions,
                cmake_targets=list(entry.cmake_targets),
                link_libraries=_transitive_targets(view.dependencies, registry),
                interface_only=interface_only,
            ))
        elif strategy == "find_package":
            self.add_find_package(entry.find_package_name or entry.name, required=True,
                                  config_mode=entry.find_package_config_mode)
        else:
            raise ConfigurationError(f"Package '{entry.name}' has unsupported strategy '{entry.strategy}'.")
        for target in entry.cmake_targets:
            self.add_link_library(target)


def _merged(assigned: Optional[Dict[str, Optional[str]]], builder: CmakeBuilder) -> Dict[str, Optional[str]]:
    out = dict(assigned or {})
    out.update(builder._variants)
    return out

def _transitive_targets(dependencies: List[str], registry: PackageRegistry) -> List[str]:
    targets: List[str] = []
    seen = set()
    for text in dependencies:
        entry = registry.find(parse_dependency(text).package)
        if entry is None:
            continue
        for target in entry.cmake_targets:
            if target.lower() not in seen:
                seen.add(target.lower())
                targets.append(target)
    return targets

# -----------------------
# Convenience
# -----------------------
def generate(config: ProjectConfig, registry: Optional[PackageRegistry] = None,
             assigned_variants: Optional[Dict[str, Optional[str]]] = None) -> str:
    return CmakeBuilder.from_project_config(config, registry, assigned_variants).build()

def generate_to(project_dir: Path, config: ProjectConfig, registry: Optional[PackageRegistry] = None,
                assigned_variants: Optional[Dict[str, Optional[str]]] = None) -> Tuple[bool, Dict[str, Optional[str]]]:
    """Generate and write <project_dir>/CMakeLists.txt. Returns (changed, registry variants used)."""
    builder = CmakeBuilder.from_project_config(config, registry, assigned_variants)
    text = builder.build()
    changed = write_if_changed(Path(project_dir) / CMAKE_FILE, text)
    logger.debug("%s %s for %s", CMAKE_FILE, "updated" if changed else "unchanged", config.name)
    return changed, builder.resolved_variants
