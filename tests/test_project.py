# tests/test_project.py
import json

import pytest

from abel.errors import ConfigurationError
from abel.project import OutputType, has_project_file, load_project, normalize_configuration


def test_defaults(tmp_path, write_project):
    write_project(tmp_path, "math_module")
    config = load_project(tmp_path)
    assert config.cxx_standard == 23
    assert config.output_type is OutputType.library
    assert config.is_library
    assert config.bucket("modules") == []
    assert config.build is None


def test_full_descriptor(tmp_path, write_project):
    write_project(tmp_path, "app", output_type="exe", cxx_standard=20,
                  sources={"private": ["src/app.cpp"]},
                  build={"default_configuration": "relwithdebinfo",
                         "compile_options": {"common": ["-DAPP"]},
                         "configurations": {"debug": {"compile_options": {"gcc": ["-Og"]}}}})
    config = load_project(tmp_path)
    assert not config.is_library
    assert config.build.default_configuration == "RelWithDebInfo"
    assert config.build.configurations["Debug"].compile_options.gcc == ["-Og"]


@pytest.mark.parametrize("value,expected", [("debug", "Debug"), (" RELEASE ", "Release"), ("minsizerel", "MinSizeRel")])
def test_normalize_configuration(value, expected):
    assert normalize_configuration(value) == expected


def test_unknown_configuration_name():
    with pytest.raises(ConfigurationError) as exc:
        normalize_configuration("Fast")
    assert "Fast" in str(exc.value)


def test_missing_descriptor(tmp_path):
    assert not has_project_file(tmp_path)
    with pytest.raises(ConfigurationError):
        load_project(tmp_path)


@pytest.mark.parametrize("data", [
    {"name": ""},
    {"name": "x", "output_type": "plugin"},
    {"name": "x", "build": {"default_configuration": "Fast"}},
    {"name": "x", "build": {"configurations": {"Profile": {}}}},
    ["not", "an", "object"],
])
def test_invalid_descriptors(tmp_path, data):
    (tmp_path / "project.json").write_text(json.dumps(data), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_project(tmp_path)


def test_malformed_json(tmp_path):
    (tmp_path / "project.json").write_text("{", encoding="utf-8")
    with pytest.raises(ConfigurationError) as exc:
        load_project(tmp_path)
    assert "invalid JSON" in str(exc.value)


def test_undecodable_descriptor(tmp_path):
    (tmp_path / "project.json").write_bytes(b'{"name": "caf\xe9"}')
    with pytest.raises(ConfigurationError) as exc:
        load_project(tmp_path)
    assert "cannot read project descriptor" in str(exc.value)


def test_without_missing_tests(tmp_path, write_project):
    write_project(tmp_path, "lib", tests={"files": ["tests/a.cpp", "tests/b.cpp"]})
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "a.cpp").write_text("", encoding="utf-8")
    config, missing = load_project(tmp_path).without_missing_tests(tmp_path)
    assert config.tests.files == ["tests/a.cpp"]
    assert missing == ["tests/b.cpp"]
