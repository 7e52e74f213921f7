# tests/test_buildsystem.py
import os

import pytest

from abel.buildsystem import (BuildResult, BuildSystem, build_dir, configure_up_to_date, executable_path)
from abel.errors import ConfigurationError, ToolFailure
from abel.project import load_project


@pytest.fixture
def make_bs(runner, console, registry):
    def factory(configuration=None, verbose=False, **settings):
        merged = {"retry": True}
        merged.update(settings)
        return BuildSystem(registry=registry, runner=runner, configuration=configuration, verbose=verbose,
                           console=console, settings=merged)
    return factory


def _lib(write_project, directory, name, **fields):
    fields.setdefault("sources", {"private": [f"src/{name}.cpp"]})
    return write_project(directory, name, **fields)

# -----------------------
# Graph walk
# -----------------------
def test_dependency_is_built_before_dependent(tmp_path, write_project, make_bs, runner, output):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["gameplay"])
    _lib(write_project, app / "gameplay", "gameplay")

    result = make_bs().build([app])

    assert result.ok, result.message
    assert result.built == ["gameplay", "app"]
    text = output()
    assert text.index("  build gameplay\n") < text.index("  build app\n")
    assert runner.labels() == ["configure gameplay", "build gameplay", "install gameplay",
                               "configure app", "build app"]
    assert (app / "gameplay" / "CMakeLists.txt").is_file()
    assert "find_package(gameplay CONFIG REQUIRED)" in (app / "CMakeLists.txt").read_text(encoding="utf-8")


def test_commands_use_configuration_build_dir_and_shared_prefix(tmp_path, write_project, make_bs, runner):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["gameplay"])
    _lib(write_project, app / "gameplay", "gameplay")
    make_bs(configuration="debug").build([app])

    prefix = str(app.resolve() / ".abel" / "local_deps")
    label, configure, cwd = runner.calls[0]
    assert configure[:9] == ["cmake", "-S", ".", "-B", os.path.join("build", "Debug"), "-G", "Ninja",
                             "-DCMAKE_BUILD_TYPE=Debug", "-DCMAKE_EXPORT_COMPILE_COMMANDS=ON"]
    assert configure[-1] == f"-DCMAKE_PREFIX_PATH={prefix}"
    assert cwd == (app / "gameplay").resolve()
    _, install, _ = runner.calls[2]
    assert install == ["cmake", "--install", os.path.join("build", "Debug"), "--config", "Debug", "--prefix", prefix]


def test_shared_dependency_is_built_once(tmp_path, write_project, make_bs):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["ui", "audio"])
    _lib(write_project, app / "ui", "ui", dependencies=["core"])
    _lib(write_project, app / "audio", "audio", dependencies=["core"])
    _lib(write_project, app / "core", "core")

    result = make_bs().build([app])
    assert result.built == ["core", "ui", "audio", "app"]


def test_circular_dependency(tmp_path, write_project, make_bs):
    a = _lib(write_project, tmp_path / "a", "a", dependencies=["b"])
    _lib(write_project, a / "b", "b", dependencies=["c"])
    _lib(write_project, a / "c", "c", dependencies=["a"])

    result = make_bs().build([a])

    assert result.status == "circular"
    assert result.exit_code == 2
    assert result.project == "a"
    assert "Circular dependency" in result.message
    assert result.built == []


def test_executable_dependency_is_rejected(tmp_path, write_project, make_bs, runner):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["tool"])
    write_project(app / "tool", "tool", output_type="exe")

    result = make_bs().build([app])

    assert result.error_kind == "configuration"
    assert result.exit_code == 2
    assert "Dependency 'tool' is not a library" in result.message
    assert runner.calls == []


def test_undecodable_root_descriptor_is_a_configuration_error(tmp_path, make_bs, runner):
    app = tmp_path / "app"
    app.mkdir()
    (app / "project.json").write_bytes(b'{"name": "app\xff"}')

    result = make_bs().build([app])

    assert result.error_kind == "configuration"
    assert result.exit_code == 2
    assert "cannot read project descriptor" in result.message
    assert runner.calls == []


def test_undecodable_nested_descriptor_is_a_configuration_error(tmp_path, write_project, make_bs, runner):
    app = write_project(tmp_path / "app", "app", output_type="exe")
    (app / "junk").mkdir()
    (app / "junk" / "project.json").write_bytes(b"\xff\xfe{}")

    result = make_bs().build([app])

    assert result.error_kind == "configuration"
    assert result.exit_code == 2
    assert "junk" in result.message
    assert runner.calls == []


def test_variant_conflict_across_projects(tmp_path, write_project, make_bs):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["ui", "tools"])
    _lib(write_project, app / "ui", "ui", dependencies=["imgui/sdl3_renderer"])
    _lib(write_project, app / "tools", "tools", dependencies=["imgui/sdl3_opengl3"])

    result = make_bs().build([app])

    assert result.exit_code == 2
    assert result.project == "tools"
    assert "imgui" in result.message
    assert result.built == ["ui"]


def test_missing_test_file_warns_and_is_dropped(tmp_path, write_project, make_bs, output):
    lib = _lib(write_project, tmp_path / "lib", "lib", tests={"files": ["tests/lib_test.cpp"]})
    result = make_bs().build([lib])
    assert result.ok
    assert "[warn] Test file 'tests/lib_test.cpp' not found" in output()
    assert "add_test(" not in (lib / "CMakeLists.txt").read_text(encoding="utf-8")

# -----------------------
# Retry policy
# -----------------------
def test_configure_failure_is_retried_once(tmp_path, write_project, make_bs, runner, output):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    (lib / "build" / "Release").mkdir(parents=True)
    (lib / "build" / "Release" / "stale.txt").write_text("x", encoding="utf-8")
    runner.fail("configure")

    result = make_bs().build([lib])

    assert result.ok
    assert runner.labels().count("configure lib") == 2
    assert "[retry] lib - cleaning and rebuilding..." in output()
    assert not (lib / "build" / "Release" / "stale.txt").exists()


def test_retry_disabled(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    runner.fail("configure")
    result = make_bs(retry=False).build([lib])
    assert result.error_kind == "tool"
    assert runner.labels() == ["configure lib"]


def test_second_failure_is_reported_with_diagnostics(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    runner.fail("configure", times=2)

    result = make_bs().build([lib])

    assert result.error_kind == "tool"
    assert result.exit_code == 1
    assert result.project == "lib"
    assert result.diagnostics == ["CMake Error: boom"]


def test_compile_error_is_not_retried(tmp_path, write_project, make_bs, runner, output):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    runner.fail("install", compile_error=True)

    result = make_bs().build([lib])

    assert not result.ok
    assert runner.labels().count("install lib") == 1
    assert "[retry]" not in output()


def test_build_activity_failure_is_not_retried(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    runner.fail("build")
    result = make_bs().build([lib])
    assert result.error_kind == "tool"
    assert runner.labels() == ["configure lib", "build lib"]

# -----------------------
# Incremental behaviour
# -----------------------
def test_configure_is_skipped_when_up_to_date(tmp_path, write_project, make_bs, runner, output):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    make_bs().build([lib])
    runner.calls.clear()

    result = make_bs().build([lib])

    assert result.ok
    assert runner.labels() == ["build lib", "install lib"]
    assert "[ok] CMakeLists.txt unchanged for lib" in output()
    assert "[ok] configure lib (up-to-date)" in output()


def test_configuration_change_reconfigures(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    make_bs().build([lib])
    runner.calls.clear()
    make_bs(configuration="Debug").build([lib])
    assert runner.labels()[0] == "configure lib"


def test_configure_up_to_date(tmp_path):
    cache = tmp_path / "CMakeCache.txt"
    assert not configure_up_to_date(cache, "Release")
    cache.write_text("FOO:BOOL=ON\nCMAKE_BUILD_TYPE:STRING=Release\n", encoding="utf-8")
    assert configure_up_to_date(cache, "release")
    assert not configure_up_to_date(cache, "Debug")

# -----------------------
# Configuration precedence
# -----------------------
def test_configuration_precedence(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib", build={"default_configuration": "debug"})
    config = load_project(lib)
    plain = load_project(_lib(write_project, tmp_path / "plain", "plain"))

    assert make_bs(configuration="minsizerel").resolve_configuration(config) == "MinSizeRel"
    assert make_bs().resolve_configuration(config) == "Debug"
    assert make_bs(configuration="RelWithDebInfo").resolve_configuration(plain) == "RelWithDebInfo"
    assert make_bs().resolve_configuration(plain) == "Release"
    configured = BuildSystem(runner=runner, settings={"configuration": "debug"})
    assert configured.resolve_configuration(plain) == "Debug"
    with pytest.raises(ConfigurationError):
        make_bs(configuration="Fast").resolve_configuration(plain)

# -----------------------
# Run
# -----------------------
def test_run_executes_built_program(tmp_path, write_project, make_bs, runner, output):
    app = write_project(tmp_path / "app", "app", output_type="exe")

    result = make_bs().run([app])

    assert result.ok
    assert result.program_exit_codes == {"app": 0}
    (cmd, cwd), = runner.attached
    assert cmd == [str(executable_path(app.resolve(), "app", "Release"))]
    assert cwd == build_dir(app.resolve(), "Release")
    assert "  run app (Release)" in output()


def test_run_reports_nonzero_program_exit(tmp_path, write_project, make_bs, runner, output):
    app = write_project(tmp_path / "app", "app", output_type="exe")
    runner.exit_code = 3
    result = make_bs().run([app])
    assert result.ok
    assert result.program_exit_codes == {"app": 3}
    assert "[warn] app exited with code 3" in output()


def test_run_skips_libraries(tmp_path, write_project, make_bs, runner):
    lib = _lib(write_project, tmp_path / "lib", "lib")
    result = make_bs().run([lib])
    assert result.ok
    assert runner.attached == []


def test_executable_lookup_falls_back_to_flat_build_dir(tmp_path):
    exe = "app" + (".exe" if os.name == "nt" else "")
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / exe).write_text("", encoding="utf-8")
    assert executable_path(tmp_path, "app", "Release") == tmp_path / "build" / exe

# -----------------------
# Results and graph
# -----------------------
def test_missing_project_is_configuration_error(tmp_path, make_bs):
    result = make_bs().build([tmp_path])
    assert result.exit_code == 2
    assert "project.json" in result.message


def test_result_exit_codes():
    assert BuildResult().exit_code == 0
    tool = BuildResult.from_error(ToolFailure("build app", 1, ["x"]), "app")
    assert (tool.error_kind, tool.exit_code, tool.diagnostics) == ("tool", 1, ["x"])
    assert BuildResult.from_error(ConfigurationError("bad"), "app").exit_code == 2


def test_graph_export(tmp_path, write_project, make_bs, runner):
    app = write_project(tmp_path / "app", "app", output_type="exe", dependencies=["gameplay"])
    _lib(write_project, app / "gameplay", "gameplay", dependencies=["spdlog"])

    text = make_bs().export_graphviz([app])

    assert '"app" -> "gameplay";' in text
    assert '"gameplay" -> "fmt";' in text
    assert '"gameplay" -> "spdlog";' in text
    assert '"app" [label="app\\nexe", shape=box];' in text
    assert runner.calls == []
