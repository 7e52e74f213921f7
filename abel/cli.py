#!/usr/bin/env python3
# abel/cli.py
"""
Abel CLI - thin command surface over the build orchestrator and the package registry

Commands:
  build    build one or more project directories
  run      build, then run executable projects
  graph    print (or write) the resolved project graph as Graphviz DOT
  list     list registry packages
  search   search registry packages
  info     show one registry package (optionally a variant: imgui/sdl3_renderer)
  help     show help
  version  show version

Exit codes: 0 success, 1 tool/runtime failure, 2 usage/configuration error.
"""

from __future__ import annotations

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from abel import __version__
from abel import config as abel_config
from abel import logging as abel_logging
from abel.buildsystem import BuildResult, BuildSystem, get_buildsystem
from abel.depspec import parse_dependency
from abel.errors import AbelError, ConfigurationError, ExitCode
from abel.project import PROJECT_FILE, has_project_file
from abel.registry import PackageEntry, PackageRegistry, load_registry
from abel.supervisor import CommandRunner, create_process_scope, install_signal_handlers

logger = abel_logging.get_logger("cli")

console = Console()
err_console = Console(stderr=True)

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]ok[/] {escape(msg)}", highlight=False)

def print_warn(msg: str):
    err_console.print(f"[yellow]warn:[/] {escape(msg)}", highlight=False)

def print_err(msg: str):
    err_console.print(f"[bold red]error:[/] {escape(msg)}", highlight=False)

def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]", highlight=False)

# -----------------------
# Path handling
# -----------------------
def resolve_project_dirs(paths: List[str]) -> List[Path]:
    """
    No paths: the current directory if it holds project.json.
    A directory with project.json is used as is; one without contributes its immediate child projects.
    A direct project.json path is accepted. Anything else is skipped with a warning.
    """
    found: List[Path] = []

    def add(p: Path):
        p = p.resolve()
        if p not in found:
            found.append(p)

    if not paths:
        if has_project_file(Path.cwd()):
            add(Path.cwd())
        return found

    for arg in paths:
        p = Path(arg)
        if p.is_file():
            if p.name.lower() == PROJECT_FILE:
                add(p.parent)
            else:
                print_warn(f"'{arg}' is a file but not {PROJECT_FILE} - skipping.")
            continue
        if not p.is_dir():
            print_warn(f"path '{arg}' does not exist - skipping.")
            continue
        if has_project_file(p):
            add(p)
            continue
        children = sorted(c for c in p.iterdir() if c.is_dir() and has_project_file(c))
        if not children:
            print_warn(f"directory '{arg}' has no {PROJECT_FILE} and no immediate child projects - skipping.")
        for c in children:
            add(c)
    return found

def _configuration(args: argparse.Namespace) -> Optional[str]:
    if args.configuration:
        return args.configuration
    if args.debug:
        return "Debug"
    if args.release:
        return "Release"
    return None

# -----------------------
# Registry views
# -----------------------
def _fallback(value: Optional[str]) -> str:
    return value if value and value.strip() else "(none)"

def _format_list(values) -> str:
    items = [v for v in values if v and v.strip()]
    return ", ".join(items) if items else "(none)"

def _describe(entry: PackageEntry) -> str:
    text = _fallback(entry.description)
    if entry.variants:
        text += f" [variants: {', '.join(entry.variant_names())}]"
    return text

def _package_table(entries: List[PackageEntry], verbose: bool) -> Table:
    table = Table(box=None, pad_edge=False, header_style="bold")
    table.add_column("Name")
    table.add_column("Version")
    if verbose:
        table.add_column("Strategy")
    table.add_column("Description")
    for e in entries:
        row = [e.name, e.git_tag]
        if verbose:
            row.append(e.strategy)
        row.append(escape(_describe(e)))
        table.add_row(*row)
    return table

def list_packages(registry: PackageRegistry, verbose: bool = False) -> int:
    entries = sorted(registry.all(), key=lambda e: e.name.lower())
    if not entries:
        console.print("No registry packages available.")
        return ExitCode.SUCCESS
    console.print(_package_table(entries, verbose))
    console.print()
    print_info(f"Packages: {len(entries)}")
    return ExitCode.SUCCESS

def search_packages(registry: PackageRegistry, query: str, verbose: bool = False) -> int:
    if not query or not query.strip():
        raise ConfigurationError("search needs a query.")
    matches = registry.search(query)
    if not matches:
        console.print(f"No packages matching '{query}'.", markup=False)
        return ExitCode.SUCCESS
    console.print(_package_table(matches, verbose))
    console.print()
    print_info(f"Matches: {len(matches)}")
    return ExitCode.SUCCESS

def package_info(registry: PackageRegistry, text: str, verbose: bool = False) -> int:
    spec = parse_dependency(text)
    entry = registry.find(spec.package)
    if entry is None:
        print_err(f"Unknown package '{spec.package}'.")
        err_console.print("Run 'abel list' to see available packages.", markup=False)
        return ExitCode.USAGE_ERROR

    out = lambda s="": console.print(s, markup=False, highlight=False)
    out(f"Name:         {entry.name}")
    out(f"Version:      {_fallback(entry.git_tag)}")
    out(f"Repository:   {_fallback(entry.git_repository)}")
    out(f"Strategy:     {_fallback(entry.strategy)}")
    out(f"Description:  {_fallback(entry.description)}")
    out(f"Targets:      {_format_list(entry.cmake_targets)}")
    out(f"Dependencies: {_format_list(entry.dependencies)}")
    options = [f"{k}={v}" for k, v in entry.cmake_options.items() if k.strip()]
    out(f"CMake options: {', '.join(options) if options else '(none)'}")
    aliases = registry.aliases_of(entry.name)
    if aliases:
        out(f"Aliases:      {', '.join(aliases)}")
    if not entry.variants:
        out("Variants:     (none)")
        return ExitCode.SUCCESS
    out(f"Variants:     {', '.join(entry.variant_names())}")
    if not spec.variant:
        return ExitCode.SUCCESS

    matched = [k for k in entry.variants if k.lower() == spec.variant.lower()]
    if not matched:
        print_err(f"Package '{entry.name}' has no variant '{spec.variant}'.")
        err_console.print(f"available: {', '.join(entry.variant_names())}", markup=False)
        return ExitCode.USAGE_ERROR
    variant = entry.variants[matched[0]]
    out()
    out(f"Variant '{spec.variant}':")
    out(f"  Sources:             {_format_list(variant.sources)}")
    out(f"  Include directories: {_format_list(variant.include_dirs)}")
    out(f"  Dependencies:        {_format_list(variant.dependencies)}")
    out(f"  Definitions:         {_format_list(variant.compile_definitions)}")
    if verbose:
        out()
        out("Base package sources:")
        out(f"  {_format_list(entry.sources or entry.core_sources)}")
        out("Base package includes:")
        out(f"  {_format_list(entry.include_dirs or entry.core_include_dirs)}")
        out("Base package definitions:")
        out(f"  {_format_list(entry.compile_definitions)}")
    return ExitCode.SUCCESS

# -----------------------
# Help
# -----------------------
HELP_TEXT = """Abel - Opinionated C++ build runner

Usage:
  abel <command> [args...] [options]

Commands:
  build      Build one or more project directories
  run        Build then run executable projects
  graph      Print the project dependency graph as Graphviz DOT
  list       List known registry packages
  search     Search registry packages
  info       Show detailed package metadata
  help       Show this help
  version    Show tool version

Options:
  -v, --verbose   Enable verbose output
  --release       Use Release configuration
  --debug         Use Debug configuration
  -c, --configuration <name>   Build config: Debug|Release|RelWithDebInfo|MinSizeRel
                 Default: project.json build.default_configuration, else Release
  --config <file> Read abel settings from this YAML/JSON file

Path behavior:
  - If no paths are provided, current directory is used if it contains project.json.
  - If a provided directory has no project.json, Abel scans immediate child directories.
  - You can also pass a direct path to project.json.

Registry examples:
  - abel list
  - abel search sdl
  - abel info imgui
  - abel info imgui/sdl3_renderer
"""

def print_help() -> int:
    console.print(HELP_TEXT, markup=False, highlight=False, end="")
    return ExitCode.SUCCESS

# -----------------------
# Argparse wiring
# -----------------------
class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    """argparse exits on bad input; usage mistakes go through the normal error path instead."""

    def error(self, message):
        raise _UsageError(message)


def _common(p: argparse.ArgumentParser):
    p.add_argument("-v", "--verbose", action="store_true", help="stream raw tool output")
    p.add_argument("--config", help="abel settings file (YAML/JSON)")

def _build_options(p: argparse.ArgumentParser):
    p.add_argument("paths", nargs="*", help="project directories or project.json files")
    p.add_argument("--release", action="store_true", help="use Release configuration")
    p.add_argument("--debug", action="store_true", help="use Debug configuration")
    p.add_argument("-c", "--configuration", help="Debug|Release|RelWithDebInfo|MinSizeRel")

def make_parser() -> argparse.ArgumentParser:
    ap = _Parser(prog="abel", description="Opinionated C++ build runner", add_help=False)
    sub = ap.add_subparsers(dest="cmd", parser_class=_Parser)

    for name in ("build", "run"):
        p = sub.add_parser(name, add_help=False)
        _build_options(p)
        _common(p)

    p_graph = sub.add_parser("graph", add_help=False)
    _build_options(p_graph)
    _common(p_graph)
    p_graph.add_argument("-o", "--output", help="write DOT to this file instead of stdout")

    p_list = sub.add_parser("list", add_help=False)
    _common(p_list)

    p_search = sub.add_parser("search", add_help=False)
    p_search.add_argument("query", nargs="+")
    _common(p_search)

    p_info = sub.add_parser("info", add_help=False)
    p_info.add_argument("package")
    _common(p_info)

    sub.add_parser("help", add_help=False)
    sub.add_parser("version", add_help=False)
    return ap


def _parse(argv: List[str]) -> argparse.Namespace:
    if argv and argv[0] in ("-h", "--help"):
        argv = ["help"]
    return make_parser().parse_args(argv)

# -----------------------
# Commands
# -----------------------
def _report(result: BuildResult) -> int:
    if result.ok:
        return ExitCode.SUCCESS
    print_err(result.message)
    if result.diagnostics:
        for line in result.diagnostics:
            err_console.print(f"  {line}", markup=False, highlight=False)
    if result.exit_code == ExitCode.USAGE_ERROR:
        err_console.print("Run 'abel help' for usage.", markup=False)
    return result.exit_code

def _buildsystem(args: argparse.Namespace, dirs: List[Path]) -> BuildSystem:
    scope = create_process_scope()
    install_signal_handlers(scope)
    runner = CommandRunner(scope=scope, console=console, verbose=args.verbose)
    return get_buildsystem(registry=load_registry(dirs[0]), runner=runner,
                           configuration=_configuration(args), verbose=args.verbose, console=console)

def cmd_build(args: argparse.Namespace, run: bool = False) -> int:
    dirs = resolve_project_dirs(args.paths)
    if not dirs:
        raise ConfigurationError("No project directories found.")
    bs = _buildsystem(args, dirs)
    result = bs.run(dirs) if run else bs.build(dirs)
    return _report(result)

def cmd_graph(args: argparse.Namespace) -> int:
    dirs = resolve_project_dirs(args.paths)
    if not dirs:
        raise ConfigurationError("No project directories found.")
    bs = _buildsystem(args, dirs)
    text = bs.export_graphviz(dirs, Path(args.output) if args.output else None)
    if args.output:
        print_ok(f"graph written to {args.output}")
    else:
        console.print(text, markup=False, highlight=False, end="")
    return ExitCode.SUCCESS

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    try:
        args = _parse(argv)
        if getattr(args, "config", None):
            abel_config.load(args.config)
            abel_logging.reload_config()
        if getattr(args, "verbose", False):
            abel_logging.set_level(logging.INFO)

        if args.cmd in (None, "help"):
            return print_help()
        if args.cmd == "version":
            console.print(f"abel {__version__}", highlight=False)
            return ExitCode.SUCCESS
        if args.cmd in ("build", "run"):
            return cmd_build(args, run=args.cmd == "run")
        if args.cmd == "graph":
            return cmd_graph(args)

        registry = load_registry(Path.cwd())
        if args.cmd == "list":
            return list_packages(registry, args.verbose)
        if args.cmd == "search":
            return search_packages(registry, " ".join(args.query), args.verbose)
        if args.cmd == "info":
            return package_info(registry, args.package, args.verbose)
        return print_help()
    except _UsageError as e:
        print_err(str(e))
        err_console.print("Run 'abel help' for usage.", markup=False)
        return ExitCode.USAGE_ERROR
    except ConfigurationError as e:
        print_err(str(e))
        err_console.print("Run 'abel help' for usage.", markup=False)
        return ExitCode.USAGE_ERROR
    except AbelError as e:
        print_err(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        print_err("interrupted")
        return 130

def entrypoint():
    sys.exit(main())

if __name__ == "__main__":
    entrypoint()
