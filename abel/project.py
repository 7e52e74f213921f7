# abel/project.py
"""
project.json descriptor model

Example:
  {
    "name": "math_module",
    "cxx_standard": 23,
    "output_type": "library",
    "sources": {"modules": ["src/math.cppm"], "private": ["src/math_impl.cpp"]},
    "dependencies": ["fmt", "imgui/sdl3_renderer", "vm@https://example.com/vm.git#v1.0"],
    "tests": {"files": ["tests/math_test.cpp"]},
    "build": {
      "default_configuration": "Debug",
      "compile_options": {"common": ["-DMATH"], "msvc": ["/utf-8"]},
      "configurations": {"Release": {"compile_options": {"gcc": ["-O3"]}}}
    }
  }
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from abel.errors import ConfigurationError
from abel.logging import get_logger

logger = get_logger("project")

PROJECT_FILE = "project.json"
CONFIGURATIONS = ("Debug", "Release", "RelWithDebInfo", "MinSizeRel")
SOURCE_BUCKETS = ("modules", "private", "public")


def normalize_configuration(value: str) -> str:
    """Map a configuration name case-insensitively onto one of the four accepted names."""
    for name in CONFIGURATIONS:
        if (value or "").strip().lower() == name.lower():
            return name
    raise ConfigurationError(
        f"Unsupported configuration '{value}'. Use Debug, Release, RelWithDebInfo, or MinSizeRel."
    )


class OutputType(str, Enum):
    exe = "exe"
    library = "library"


class CompilerOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    common: List[str] = Field(default_factory=list)
    msvc: List[str] = Field(default_factory=list)
    gcc: List[str] = Field(default_factory=list)
    clang: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.common or self.msvc or self.gcc or self.clang)


class ConfigurationSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    compile_options: CompilerOptions = Field(default_factory=CompilerOptions)


class BuildSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default_configuration: Optional[str] = None
    compile_options: CompilerOptions = Field(default_factory=CompilerOptions)
    configurations: Dict[str, Optional[ConfigurationSection]] = Field(default_factory=dict)
    legacy_header_src_layout: bool = False

    @field_validator("default_configuration")
    @classmethod
    def _known_default(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        if v.strip().lower() not in [c.lower() for c in CONFIGURATIONS]:
            raise ValueError(f"unsupported default_configuration '{v}'")
        return normalize_configuration(v)

    @field_validator("configurations")
    @classmethod
    def _known_configurations(cls, v: Dict[str, Optional[ConfigurationSection]]):
        out: Dict[str, Optional[ConfigurationSection]] = {}
        for key, section in v.items():
            if key.strip().lower() not in [c.lower() for c in CONFIGURATIONS]:
                raise ValueError(
                    f"unsupported build configuration '{key}'. Use Debug, Release, RelWithDebInfo, or MinSizeRel."
                )
            out[normalize_configuration(key)] = section
        return out


class TestsSection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    files: List[str] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    cxx_standard: int = 23
    output_type: OutputType = OutputType.library
    sources: Dict[str, List[str]] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    tests: TestsSection = Field(default_factory=TestsSection)
    build: Optional[BuildSection] = None

    @field_validator("name")
    @classmethod
    def _name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("project name is empty")
        return v.strip()

    @property
    def is_library(self) -> bool:
        return self.output_type == OutputType.library

    def bucket(self, name: str) -> List[str]:
        return list(self.sources.get(name) or [])

    def without_missing_tests(self, project_dir: Path) -> Tuple["ProjectConfig", List[str]]:
        """Return a copy whose test list only names files that exist, plus the stripped entries."""
        present = [f for f in self.tests.files if (Path(project_dir) / f).is_file()]
        missing = [f for f in self.tests.files if f not in present]
        if not missing:
            return self, []
        return self.model_copy(update={"tests": TestsSection(files=present)}), missing


def has_project_file(directory: Path) -> bool:
    return (Path(directory) / PROJECT_FILE).is_file()


def load_project(directory: Path) -> ProjectConfig:
    path = Path(directory) / PROJECT_FILE
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigurationError(f"No {PROJECT_FILE} found in '{directory}'.")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"{path}: cannot read project descriptor ({e}).") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{path}: invalid JSON ({e.msg} at line {e.lineno}).") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a JSON object.")
    try:
        config = ProjectConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"{path}: {problems}") from e
    logger.debug("loaded project %s from %s", config.name, path)
    return config
