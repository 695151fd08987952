"""Defines the command-line interface for the cargoyank application.

This module uses the `click` library for the CLI and `rich` for its output.
It is a thin layer over `CachedIndex`: it reads the packages to check,
opens the crates.io index and reports what `find_yanked` returns.
"""
import io
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
from halo import Halo
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core.cached_index import CachedIndex, YankResult
from .core.config import Config
from .core.errors import CargoYankError
from .core.package import Package
from .utils.lockfile import detect_lock_file, parse_cargo_lock

# Configure rich console for beautiful output.
console = Console(emoji=True)

logger = logging.getLogger(__name__)


def _parse_package_spec(package_spec: str) -> Package:
    """Parses a `name@version` or `name==version` string.

    Raises:
        click.BadParameter: If the spec has no version.
    """
    for separator in ("==", "@"):
        if separator in package_spec:
            name, version = package_spec.split(separator, 1)
            if name.strip() and version.strip():
                return Package(name.strip(), version.strip())
    raise click.BadParameter(f"expected NAME@VERSION, got {package_spec!r}")


def _open_index(config: Config, offline: bool, lock_timeout: Optional[float], spinners: bool = True) -> CachedIndex:
    """Opens the index, fetching it unless `offline` is set. Exits on failure."""
    action = "Opening local" if offline else "Fetching"
    with Halo(text=f"{action} crates.io index...", spinner="dots", enabled=spinners) as spinner:
        try:
            if offline:
                index = CachedIndex.open(lock_timeout=lock_timeout, config=config)
            else:
                index = CachedIndex.fetch(lock_timeout=lock_timeout, config=config)
        except CargoYankError as e:
            spinner.fail(f"Could not open crates.io index: {e}")
            sys.exit(1)
        spinner.succeed(f"Opened {index.backend.name} crates.io index")
    return index


def _results_as_dicts(results: List[YankResult]) -> List[Dict[str, Any]]:
    rows = []
    for result in results:
        if isinstance(result, Package):
            rows.append({"name": result.name, "version": result.version, "status": "yanked"})
        else:
            rows.append({"status": "error", "kind": result.kind.value, "message": result.message})
    return rows


def _display_results(results: List[YankResult], checked: int) -> None:
    """Displays the yanked packages and lookup errors as tables."""
    yanked = [r for r in results if isinstance(r, Package)]
    errors = [r for r in results if isinstance(r, CargoYankError)]

    if yanked:
        table = Table(title="Yanked crates")
        table.add_column("Crate", style="cyan")
        table.add_column("Version", style="magenta")
        for package in yanked:
            table.add_row(package.name, package.version)
        console.print(table)

    if errors:
        issues_table = Table(title="Lookup errors")
        issues_table.add_column("Kind", style="bold")
        issues_table.add_column("Message")
        for error in errors:
            issues_table.add_row(f"[red]{error.kind.value}[/red]", error.message)
        console.print(issues_table)

    if yanked or errors:
        console.print(Panel(
            f"Checked {checked} crate(s): {len(yanked)} yanked, {len(errors)} error(s).",
            style="red", title="Scan Complete",
        ))
    else:
        console.print(Panel(f"Checked {checked} crate(s): none yanked.", style="green", title="Scan Complete"))


def _run_check(packages: List[Package], config: Config, offline: bool,
               lock_timeout: Optional[float], json_output: bool) -> None:
    console.no_color = not config.get("colors", True)
    index = _open_index(config, offline, lock_timeout, spinners=not json_output)
    with index:
        with Halo(text=f"Checking {len(packages)} crate(s)...", spinner="dots", enabled=not json_output):
            results = index.find_yanked(packages)

    if json_output:
        click.echo(json.dumps(_results_as_dicts(results), indent=2))
    else:
        _display_results(results, checked=len(set(packages)))

    if results:
        sys.exit(1)


def _common_options(func):
    func = click.option("--offline", is_flag=True, help="Only use the local index, never the network.")(func)
    func = click.option("--lock-timeout", type=float, default=None,
                        help="Seconds to wait for the index lock (0 = fail immediately).")(func)
    func = click.option("--json", "json_output", is_flag=True, help="Output results in JSON format.")(func)
    func = click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
                        help="Path to a custom config file.")(func)
    return func


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="cargoyank")
@click.option("--verbose", is_flag=True, help="Enable verbose output (default: the `verbose` setting).")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
def main(verbose: bool, debug: bool) -> None:
    """Find crates in a Cargo.lock that have been yanked from crates.io."""
    if sys.platform == "win32" and isinstance(sys.stdout, io.TextIOWrapper):
        sys.stdout.reconfigure(encoding='utf-8')
    verbose = verbose or bool(Config().get("verbose", False))
    log_level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')
    logger.debug("Debug mode enabled.")


@main.command()
@click.argument("lockfile", type=click.Path(exists=True, dir_okay=False), required=False)
@_common_options
def audit(lockfile: Optional[str], offline: bool, lock_timeout: Optional[float],
          json_output: bool, config_path: Optional[str]) -> None:
    """Check every crates.io package of a Cargo.lock.

    Without LOCKFILE the nearest Cargo.lock above the current directory is
    used. Exits with status 1 if any crate is yanked or could not be checked.
    """
    config_obj = Config(config_path=config_path)
    lock_path = Path(lockfile) if lockfile else detect_lock_file()
    if lock_path is None:
        console.print("[red]No Cargo.lock given and none found.[/red]")
        sys.exit(1)

    try:
        packages = parse_cargo_lock(lock_path)
    except CargoYankError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if not packages:
        console.print(f"[yellow]No crates.io packages found in {lock_path}.[/yellow]")
        return

    if not json_output:
        console.print(f"[bold blue]Auditing {len(packages)} crates from {lock_path}[/bold blue]")
    _run_check(packages, config_obj, offline, lock_timeout, json_output)


@main.command()
@click.argument("packages", nargs=-1, required=True)
@_common_options
def check(packages: Tuple[str, ...], offline: bool, lock_timeout: Optional[float],
          json_output: bool, config_path: Optional[str]) -> None:
    """Check individual crates given as NAME@VERSION."""
    config_obj = Config(config_path=config_path)
    package_list = [_parse_package_spec(spec) for spec in packages]
    _run_check(package_list, config_obj, offline, lock_timeout, json_output)


@main.command()
@click.argument("key", type=str, required=False)
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Path to config file.")
def config(key: Optional[str], config_path: Optional[str]) -> None:
    """Show the effective configuration, or a single KEY of it."""
    config_obj = Config(config_path=config_path)
    if key:
        console.print(config_obj.get(key))
    else:
        console.print(Panel(json.dumps(config_obj.config, indent=2), title="Current Configuration"))


if __name__ == "__main__":
    main()
