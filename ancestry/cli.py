"""
Ancestry CLI -- C++ Class Hierarchy Recovery
=============================================

Click-based command-line interface for recovering Itanium C++ ABI RTTI,
vtables, VTTs and constructor/destructor assignments from an ELF file.

Usage::

    # Full analysis with console tables
    ancestry /path/to/program

    # One class, with vtable layout and assignments
    ancestry /path/to/program --class ns::Widget

    # JSON to stdout
    ancestry /path/to/program --json

    # Save a JSON report, skip constructor detection
    ancestry /path/to/program --output report.json --no-ctors

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import sys

import click

from shared.config import AncestryConfig
from shared.console import AncestryConsole
from shared.logger import AncestryLogger

from ancestry import __version__
from ancestry.core.engine import AncestryEngine
from ancestry.core.errors import AncestryError, CancellationToken
from ancestry.output.console import AncestryConsoleOutput
from ancestry.output.report import AncestryReportGenerator


@click.command("ancestry")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--output", "-o",
    "output_path",
    type=click.Path(),
    default=None,
    help="Write a JSON report to this path.",
)
@click.option(
    "--class", "-c",
    "class_filter",
    default=None,
    help="Only report the class with this (demangled or mangled) name.",
)
@click.option(
    "--workers", "-w",
    type=int,
    default=None,
    help="Worker threads for per-class recovery.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="TOML configuration file.",
)
@click.option(
    "--no-ctors",
    is_flag=True,
    default=False,
    help="Skip constructor/destructor correlation.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable verbose/debug output.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Output results as JSON to stdout.",
)
@click.version_option(__version__, prog_name="ancestry")
def ancestry_cli(
    path: str,
    output_path: str | None,
    class_filter: str | None,
    workers: int | None,
    config_path: str | None,
    no_ctors: bool,
    verbose: bool,
    json_output: bool,
) -> None:
    """Ancestry -- recover C++ class hierarchies from a binary.

    PATH is an ELF executable or shared object built with an Itanium
    C++ ABI toolchain (GCC, Clang).

    Examples:

    \b
        ancestry ./build/app
        ancestry ./libwidgets.so --class ns::Widget
        ancestry ./build/app --json > classes.json
    """
    console = AncestryConsole(quiet=json_output)
    console.title("Ancestry", __version__)

    try:
        config = AncestryConfig.load(config_path)
    except (OSError, ValueError) as exc:
        console.error(f"Cannot load configuration: {exc}")
        sys.exit(2)

    if verbose:
        config.global_settings.log_level = "DEBUG"
    if workers is not None:
        config.global_settings.max_workers = max(1, workers)
    if no_ctors:
        config.rtti.detect_constructors = False

    logger = AncestryLogger(
        "cli",
        log_level=config.global_settings.log_level,
        log_file=config.global_settings.log_file or None,
        json_logs=config.global_settings.log_json,
    )
    engine = AncestryEngine(config=config, logger=logger)
    cancel = CancellationToken()

    try:
        with console.status("Recovering class hierarchy..."):
            result = engine.analyze_sync(path, class_filter=class_filter, cancel=cancel)
    except KeyboardInterrupt:
        cancel.cancel()
        console.warning("Analysis interrupted by user.")
        sys.exit(130)
    except AncestryError as exc:
        console.error(f"Analysis failed: {exc}")
        if verbose:
            logger.exception("Analysis failed")
        sys.exit(1)

    report_gen = AncestryReportGenerator()
    if json_output:
        click.echo(report_gen.to_json(result))
    else:
        AncestryConsoleOutput(console=console).display(result, details=class_filter is not None)
        console.info(f"Duration: {result.duration_seconds:.2f}s")
        if result.failed:
            console.warning(f"{len(result.failed)} classes have malformed type_info")

    if output_path:
        report_path = report_gen.generate_json(result, output_path)
        console.success(f"JSON report saved: {report_path}")


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Entry point for ``python -m ancestry.cli``."""
    ancestry_cli()


if __name__ == "__main__":
    main()
