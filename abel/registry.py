# abel/registry.py
# -*- coding: utf-8 -*-
"""
Curated third-party package registry

Features:
- Built-in catalog of packages (git source, strategy, link targets, variants, aliases)
- Layered overrides: user file (~/.abel/registry.json|yaml) then project file (./abel-registry.json|yaml)
- Pure construction: merge_layers() builds an immutable registry, later layers win by name
- Case-insensitive lookup with alias resolution
- Variant views: effective() merges a variant onto its base package
- Search across name, description, tag, strategy, targets, dependencies and variants

Strategies:
  fetchcontent   download and build the dependency's own CMake project
  wrapper        download sources only, compile an internal static library from a file list
  header_inject  download sources only, expose include dirs through an INTERFACE target
  find_package   use an already installed package
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from abel.config import get_config, load_structured_file
from abel.depspec import parse_dependency
from abel.errors import ConfigurationError
from abel.logging import get_logger

logger = get_logger("registry")

STRATEGIES = ("fetchcontent", "wrapper", "header_inject", "find_package")

# -----------------------
# Catalog models
# -----------------------
class PackageVariant(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    sources: List[str] = Field(default_factory=list)
    include_dirs: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    compile_definitions: List[str] = Field(default_factory=list)


class PackageEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    git_repository: str = ""
    git_tag: str = ""
    strategy: str = "fetchcontent"
    cmake_targets: List[str] = Field(default_factory=list)
    cmake_options: Dict[str, str] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    sources: List[str] = Field(default_factory=list)
    include_dirs: List[str] = Field(default_factory=list)
    compile_definitions: List[str] = Field(default_factory=list)
    core_sources: List[str] = Field(default_factory=list)
    core_include_dirs: List[str] = Field(default_factory=list)
    core_dependencies: List[str] = Field(default_factory=list)
    find_package_name: str = ""
    find_package_config_mode: bool = False
    variants: Dict[str, PackageVariant] = Field(default_factory=dict)
    aliases: List[str] = Field(default_factory=list)
    description: str = ""

    @property
    def has_core(self) -> bool:
        return bool(self.core_sources or self.core_include_dirs or self.core_dependencies)

    def find_variant(self, variant: Optional[str]) -> Optional[PackageVariant]:
        if not variant:
            return None
        for key, value in self.variants.items():
            if key.lower() == variant.lower():
                return value
        raise ConfigurationError(f"Package '{self.name}' does not define variant '{variant}'.")

    def variant_names(self) -> List[str]:
        return sorted(self.variants.keys(), key=str.lower)


class EffectivePackage(BaseModel):
    """A package with its requested variant folded in."""
    model_config = ConfigDict(frozen=True)

    entry: PackageEntry
    variant: Optional[str] = None
    sources: List[str] = Field(default_factory=list)
    include_dirs: List[str] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    compile_definitions: List[str] = Field(default_factory=list)


def merge_distinct(*lists: Optional[Iterable[str]]) -> List[str]:
    """Concatenate keeping first occurrence, compared case-insensitively."""
    out: List[str] = []
    seen = set()
    for values in lists:
        for v in values or []:
            if v.lower() not in seen:
                seen.add(v.lower())
                out.append(v)
    return out


def effective(entry: PackageEntry, variant: Optional[str] = None) -> EffectivePackage:
    """
    Fold a variant onto its package. Entries declaring core_* fields treat their plain
    sources/include_dirs/dependencies as the default variant: a named variant replaces them.
    Other entries extend the base lists with the variant's.
    """
    v = entry.find_variant(variant)
    if entry.has_core:
        if v is None:
            base_sources, base_includes, base_deps = entry.sources, entry.include_dirs, entry.dependencies
        else:
            base_sources, base_includes, base_deps = v.sources, v.include_dirs, v.dependencies
        return EffectivePackage(
            entry=entry,
            variant=variant,
            sources=merge_distinct(entry.core_sources, base_sources),
            include_dirs=merge_distinct(entry.core_include_dirs, base_includes),
            dependencies=merge_distinct(entry.core_dependencies, base_deps),
            compile_definitions=merge_distinct(entry.compile_definitions, v.compile_definitions if v else None),
        )
    return EffectivePackage(
        entry=entry,
        variant=variant,
        sources=merge_distinct(entry.sources, v.sources if v else None),
        include_dirs=merge_distinct(entry.include_dirs, v.include_dirs if v else None),
        dependencies=merge_distinct(entry.dependencies, v.dependencies if v else None),
        compile_definitions=merge_distinct(entry.compile_definitions, v.compile_definitions if v else None),
    )

# -----------------------
# Registry value
# -----------------------
class PackageRegistry:
    """Immutable after construction; use merge_layers()/with_entries() to derive new ones."""

    def __init__(self, packages: Mapping[str, PackageEntry], aliases: Mapping[str, str]):
        self._packages = MappingProxyType(dict(packages))
        self._aliases = MappingProxyType(dict(aliases))

    def _canonical(self, name: str) -> str:
        key = (name or "").strip().lower()
        return self._aliases.get(key, key)

    def find(self, name: str) -> Optional[PackageEntry]:
        return self._packages.get(self._canonical(name))

    def is_known_package(self, spec: str) -> bool:
        if not spec or not spec.strip():
            return False
        return self.find(parse_dependency(spec).package) is not None

    def all(self) -> List[PackageEntry]:
        return sorted(self._packages.values(), key=lambda e: e.name.lower())

    def aliases_of(self, name: str) -> List[str]:
        canonical = self._canonical(name)
        return sorted(a for a, target in self._aliases.items() if target == canonical)

    def with_entries(self, *entries: PackageEntry) -> "PackageRegistry":
        return merge_layers(self.all(), entries, aliases=self._aliases)

    def search(self, query: str) -> List[PackageEntry]:
        terms = [t.lower() for t in (query or "").split()]
        out = []
        for entry in self.all():
            haystack = " ".join([
                entry.name, entry.description, entry.git_tag, entry.strategy,
                " ".join(entry.cmake_targets), " ".join(entry.dependencies),
                " ".join(entry.variant_names()), " ".join(self.aliases_of(entry.name)),
            ]).lower()
            if all(t in haystack for t in terms):
                out.append(entry)
        return out

    def __len__(self) -> int:
        return len(self._packages)

    def __contains__(self, name: str) -> bool:
        return self.find(name) is not None


def merge_layers(*layers: Iterable[PackageEntry], aliases: Optional[Mapping[str, str]] = None) -> PackageRegistry:
    """Apply entry layers in order. Registering a name again replaces it."""
    packages: Dict[str, PackageEntry] = {}
    alias_map: Dict[str, str] = {k.lower(): v.lower() for k, v in (aliases or {}).items()}
    for layer in layers:
        for entry in layer:
            if not entry.name or not entry.name.strip():
                continue
            key = entry.name.strip().lower()
            packages[key] = entry
            alias_map.pop(key, None)
            for alias in entry.aliases:
                if alias.strip():
                    alias_map[alias.strip().lower()] = key
    return PackageRegistry(packages, alias_map)

# -----------------------
# Override files
# -----------------------
def read_registry_file(path: Path) -> List[PackageEntry]:
    """Read a JSON/YAML list of package entries. Missing files are an empty layer."""
    if not path.is_file():
        return []
    try:
        data = load_structured_file(path)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(f"{path}: expected a list of package entries.")
    entries: List[PackageEntry] = []
    for i, item in enumerate(data):
        try:
            entry = PackageEntry.model_validate(item)
        except ValidationError as e:
            raise ConfigurationError(f"{path}: entry {i}: {e.errors()[0]['msg']}") from e
        if entry.strategy.strip().lower() not in STRATEGIES:
            raise ConfigurationError(f"{path}: package '{entry.name}' has unsupported strategy '{entry.strategy}'.")
        entries.append(entry)
    logger.info("registry: loaded %d entries from %s", len(entries), path)
    return entries


def _with_yaml_sibling(path: Path) -> Path:
    if path.is_file():
        return path
    for suffix in (".yaml", ".yml"):
        alt = path.with_suffix(suffix)
        if alt.is_file():
            return alt
    return path


def load_registry(project_dir: Optional[Path] = None, cfg: Optional[Dict[str, Any]] = None) -> PackageRegistry:
    """Built-ins, then the user-level file, then the project-local file."""
    reg_cfg = cfg if cfg is not None else get_config().section("registry")
    user_file = Path(reg_cfg.get("user_file") or Path.home() / ".abel" / "registry.json").expanduser()
    project_file = Path(project_dir or Path.cwd()) / (reg_cfg.get("project_file") or "abel-registry.json")
    return merge_layers(
        BUILTIN_PACKAGES,
        read_registry_file(_with_yaml_sibling(user_file)),
        read_registry_file(_with_yaml_sibling(project_file)),
    )

# -----------------------
# Built-in catalog
# -----------------------
def _pkg(**kw) -> PackageEntry:
    return PackageEntry.model_validate(kw)

_IMGUI_BACKEND_INCLUDES = ["backends"]

BUILTIN_PACKAGES: List[PackageEntry] = [
    _pkg(
        name="sdl3",
        git_repository="https://github.com/libsdl-org/SDL.git",
        git_tag="release-3.4.2",
        cmake_targets=["SDL3::SDL3"],
        cmake_options={"SDL_SHARED": "OFF", "SDL_STATIC": "ON", "SDL_TEST_LIBRARY": "OFF",
                       "SDL_TESTS": "OFF", "SDL_EXAMPLES": "OFF"},
        description="Cross-platform multimedia library (graphics, audio, input)",
    ),
    _pkg(
        name="sdl3_image",
        git_repository="https://github.com/libsdl-org/SDL_image.git",
        git_tag="release-3.2.4",
        cmake_targets=["SDL3_image::SDL3_image"],
        cmake_options={"SDL3IMAGE_SAMPLES": "OFF", "SDL3IMAGE_TESTS": "OFF"},
        dependencies=["sdl3"],
        description="Image loading library for SDL3 (PNG, JPG, WebP, etc.)",
    ),
    _pkg(
        name="sdl3pp",
        git_repository="https://github.com/talesm/SDL3pp.git",
        git_tag="0.7.3",
        cmake_targets=["SDL3pp::SDL3pp"],
        dependencies=["sdl3"],
        aliases=["sdk3pp"],
        description="Modern C++ wrapper around SDL3",
    ),
    _pkg(
        name="sqlitecpp",
        git_repository="https://github.com/SRombauts/SQLiteCpp.git",
        git_tag="master",
        cmake_targets=["SQLiteCpp"],
        cmake_options={"SQLITECPP_BUILD_EXAMPLES": "OFF", "SQLITECPP_BUILD_TESTS": "OFF",
                       "SQLITECPP_INTERNAL_SQLITE": "ON"},
        aliases=["sqlitec++"],
        description="Lean C++ SQLite3 wrapper (RAII, exceptions)",
    ),
    _pkg(
        name="sqlite_orm",
        git_repository="https://github.com/fnc12/sqlite_orm.git",
        git_tag="master",
        cmake_targets=["sqlite_orm::sqlite_orm"],
        aliases=["sqlite-orm", "sqliteorm"],
        description="Header-only modern C++ ORM for SQLite",
    ),
    _pkg(
        name="luajit",
        strategy="find_package",
        find_package_name="LuaJIT",
        cmake_targets=[
            "$<TARGET_NAME_IF_EXISTS:LuaJIT::LuaJIT>",
            "$<TARGET_NAME_IF_EXISTS:luajit::luajit>",
            "$<TARGET_NAME_IF_EXISTS:unofficial::luajit::luajit>",
            "${LUAJIT_LIBRARIES}",
            "${LUAJIT_LIBRARY}",
        ],
        aliases=["lua_jit"],
        description="LuaJIT runtime/C API (uses installed package manager or system install)",
    ),
    _pkg(
        name="sol2",
        git_repository="https://github.com/ThePhD/sol2.git",
        git_tag="v3.3.0",
        strategy="header_inject",
        cmake_targets=["sol2::sol2"],
        include_dirs=["include"],
        variants={"luajit": {"dependencies": ["luajit"]}},
        aliases=["sol", "sol3"],
        description="Header-only C++ bindings for Lua",
    ),
    _pkg(
        name="fmt",
        git_repository="https://github.com/fmtlib/fmt.git",
        git_tag="11.1.4",
        cmake_targets=["fmt::fmt"],
        cmake_options={"FMT_DOC": "OFF", "FMT_TEST": "OFF"},
        description="Fast, safe C++ formatting library",
    ),
    _pkg(
        name="spdlog",
        git_repository="https://github.com/gabime/spdlog.git",
        git_tag="v1.15.1",
        cmake_targets=["spdlog::spdlog"],
        cmake_options={"SPDLOG_FMT_EXTERNAL": "ON", "SPDLOG_BUILD_BENCH": "OFF",
                       "SPDLOG_BUILD_TESTS": "OFF", "SPDLOG_BUILD_EXAMPLE": "OFF"},
        dependencies=["fmt"],
        description="Fast C++ logging library",
    ),
    _pkg(
        name="fmtlog",
        git_repository="https://github.com/MengRao/fmtlog.git",
        git_tag="v2.3.0",
        strategy="wrapper",
        cmake_targets=["fmtlog::fmtlog"],
        sources=["fmtlog.cc"],
        include_dirs=["."],
        dependencies=["fmt"],
        description="High-performance asynchronous logging library built on fmt",
    ),
    _pkg(
        name="flecs",
        git_repository="https://github.com/SanderMertens/flecs.git",
        git_tag="v4.1.4",
        cmake_targets=["flecs::flecs_static"],
        cmake_options={"FLECS_STATIC": "ON", "FLECS_SHARED": "OFF", "FLECS_TESTS": "OFF",
                       "FLECS_EXAMPLES": "OFF"},
        description="Fast entity component system",
    ),
    _pkg(
        name="imgui",
        git_repository="https://github.com/ocornut/imgui.git",
        git_tag="docking",
        strategy="wrapper",
        cmake_targets=["imgui::imgui"],
        core_sources=["imgui.cpp", "imgui_draw.cpp", "imgui_tables.cpp", "imgui_widgets.cpp", "imgui_demo.cpp"],
        core_include_dirs=["."],
        sources=[
            "backends/imgui_impl_sdl3.cpp",
            "backends/imgui_impl_sdlrenderer3.cpp",
            "backends/imgui_impl_opengl3.cpp",
        ],
        include_dirs=_IMGUI_BACKEND_INCLUDES,
        dependencies=["sdl3"],
        variants={
            "sdl3_renderer": {
                "sources": ["backends/imgui_impl_sdl3.cpp", "backends/imgui_impl_sdlrenderer3.cpp"],
                "include_dirs": _IMGUI_BACKEND_INCLUDES,
                "dependencies": ["sdl3"],
            },
            "sdl3_opengl3": {
                "sources": ["backends/imgui_impl_sdl3.cpp", "backends/imgui_impl_opengl3.cpp"],
                "include_dirs": _IMGUI_BACKEND_INCLUDES,
                "dependencies": ["sdl3"],
            },
            "sdl3_vulkan": {
                "sources": ["backends/imgui_impl_sdl3.cpp", "backends/imgui_impl_vulkan.cpp"],
                "include_dirs": _IMGUI_BACKEND_INCLUDES,
                "dependencies": ["sdl3"],
            },
            # no backend translation units; backend headers stay reachable
            "core": {"include_dirs": _IMGUI_BACKEND_INCLUDES},
        },
        description="Immediate-mode GUI library",
    ),
    _pkg(
        name="stb",
        git_repository="https://github.com/nothings/stb.git",
        git_tag="f0569113a9342d9cf8d7c74942a8f6f0f684995",
        strategy="header_inject",
        cmake_targets=["stb::stb"],
        include_dirs=["."],
        description="Single-header libraries (stb_image, stb_truetype, etc.)",
    ),
    _pkg(
        name="glm",
        git_repository="https://github.com/g-truc/glm.git",
        git_tag="1.0.1",
        cmake_targets=["glm::glm"],
        cmake_options={"GLM_BUILD_TESTS": "OFF"},
        description="OpenGL Mathematics library (vectors, matrices, quaternions)",
    ),
    _pkg(
        name="nlohmann_json",
        git_repository="https://github.com/nlohmann/json.git",
        git_tag="v3.12.0",
        cmake_targets=["nlohmann_json::nlohmann_json"],
        cmake_options={"JSON_BuildTests": "OFF"},
        aliases=["json"],
        description="JSON for Modern C++",
    ),
    _pkg(
        name="entt",
        git_repository="https://github.com/skypjack/entt.git",
        git_tag="v3.14.0",
        cmake_targets=["EnTT::EnTT"],
        description="Fast entity-component-system (ECS) library",
    ),
]


def builtin_registry() -> PackageRegistry:
    return merge_layers(BUILTIN_PACKAGES)
