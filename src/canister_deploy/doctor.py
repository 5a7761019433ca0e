"""
canister-deploy doctor: check the local environment before deploying.

Usage:
    canister-deploy-doctor          # Check dfx, the base library cache, lsof, the port and API keys
    canister-deploy-doctor --fix    # Also run `dfx cache install` when the base library is missing
"""

from __future__ import annotations

import argparse
import os
import shutil
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from canister_deploy.constants import DEFAULT_REPLICA_HOST, DEFAULT_REPLICA_PORT, DFX_INSTALL_HINT
from canister_deploy.errors import ToolchainAbsent
from canister_deploy.ports import PortManager
from canister_deploy.toolchain import Toolchain, ToolchainStatus, resolve_dfx_binary, toolchain_status

console = Console()

CACHE_INSTALL_FIX = "dfx cache install"
LSOF_INSTALL_FIX = "install lsof (e.g. apt install lsof)"


# ---------------------------------------------------------------------------
# Check Functions
# ---------------------------------------------------------------------------


def check_dfx_binary(explicit: Path | None = None) -> tuple[bool, str, str | None]:
    """
    Returns:
        (ok, message, fix_command)
    """
    try:
        binary = resolve_dfx_binary(explicit)
    except ToolchainAbsent as e:
        return False, e.message, DFX_INSTALL_HINT
    return True, f"dfx found: {binary}", None


def check_dfx_version(toolchain: Toolchain) -> tuple[bool, str, str | None]:
    try:
        res = toolchain.version()
    except (ToolchainAbsent, TimeoutError) as e:
        return False, f"dfx --version failed: {e}", DFX_INSTALL_HINT
    if not res.ok:
        return False, f"dfx --version exited with {res.returncode}: {res.output[:200]}", DFX_INSTALL_HINT
    return True, res.stdout.strip() or "dfx responds", None


def check_base_cache(toolchain: Toolchain) -> tuple[bool, str, str | None]:
    """Compile a probe program that imports the base library."""
    status = toolchain_status(toolchain)
    if status is ToolchainStatus.READY:
        return True, "moc and the base library compile a probe program", None
    if status is ToolchainStatus.MISSING_PACKAGES:
        return False, "dfx cache is missing moc or the base library", CACHE_INSTALL_FIX
    return False, "dfx is not installed", DFX_INSTALL_HINT


def check_lsof() -> tuple[bool, str, str | None]:
    """Optional: only needed when something else holds the replica port."""
    if shutil.which("lsof"):
        return True, "lsof found (used to free the replica port)", None
    return True, "lsof not found; a busy replica port cannot be freed automatically", LSOF_INSTALL_FIX


def check_port(host: str = DEFAULT_REPLICA_HOST, port: int = DEFAULT_REPLICA_PORT) -> tuple[bool, str, str | None]:
    err = PortManager(host).probe(port)
    if err is None:
        return True, f"{host}:{port} is free", None
    return True, f"{host}:{port} is in use (a running replica is reused, anything else is terminated)", None


def check_api_keys() -> tuple[bool, str, str | None]:
    """Optional: without a key the external rewrite tier is skipped."""
    keys_to_check = ["CDEPLOY_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY", "GROQ_API_KEY"]
    found_keys = []
    for key in keys_to_check:
        val = os.environ.get(key)
        if val and val.strip():
            masked = val[:8] + "..." if len(val) > 12 else "***"
            found_keys.append(f"{key}={masked}")

    if found_keys:
        return True, f"API key(s) configured: {', '.join(found_keys)}", None
    return (
        True,
        "No API key found; external rewrites are disabled. Set one of: " + ", ".join(keys_to_check),
        "export CDEPLOY_API_KEY=sk-your-key-here",
    )


# ---------------------------------------------------------------------------
# Main Doctor Logic
# ---------------------------------------------------------------------------


def run_checks(
    dfx: Path | None = None,
    host: str = DEFAULT_REPLICA_HOST,
    port: int = DEFAULT_REPLICA_PORT,
) -> list[tuple[str, bool, str, str | None]]:
    """
    Returns:
        List of (check_name, passed, message, fix_command)
    """
    results: list[tuple[str, bool, str, str | None]] = []

    ok, msg, fix = check_dfx_binary(dfx)
    results.append(("dfx Binary", ok, msg, fix))
    if ok:
        toolchain = Toolchain(resolve_dfx_binary(dfx))
        ok, msg, fix = check_dfx_version(toolchain)
        results.append(("dfx Version", ok, msg, fix))
        if ok:
            ok, msg, fix = check_base_cache(toolchain)
            results.append(("Base Library", ok, msg, fix))

    ok, msg, fix = check_lsof()
    results.append(("lsof", ok, msg, fix))
    ok, msg, fix = check_port(host, port)
    results.append(("Replica Port", ok, msg, fix))
    ok, msg, fix = check_api_keys()
    results.append(("API Keys", ok, msg, fix))
    return results


def print_results(results: list[tuple[str, bool, str, str | None]]) -> bool:
    """
    Render the checks as a table plus a panel of suggested fixes. True when every check passed.

    A passing check that still carries a fix is a warning: shown in the panel, never blocking.
    """
    table = Table(title="canister-deploy environment", show_header=True)
    table.add_column("Check", style="cyan", width=14)
    table.add_column("", width=3)
    table.add_column("Details", style="dim")

    for name, passed, message, fix in results:
        if not passed:
            mark = "[red]!![/red]"
        elif fix:
            mark = "[yellow]![/yellow]"
        else:
            mark = "[green]ok[/green]"
        table.add_row(name, mark, message)
    console.print(table)

    failed = [name for name, passed, _, _ in results if not passed]
    suggestions = [f"[bold]{name}:[/bold] {fix}" for name, _, _, fix in results if fix]
    if suggestions:
        console.print()
        console.print(Panel.fit("\n".join(suggestions), title="[yellow]Suggested fixes[/yellow]", border_style="yellow"))
    return not failed


def run_fixes(results: list[tuple[str, bool, str, str | None]], dfx: Path | None = None) -> None:
    """Only `dfx cache install` is run automatically; other fixes are printed for the user."""
    for name, passed, _, fix in results:
        if passed or not fix:
            continue
        if fix != CACHE_INSTALL_FIX:
            console.print(f"[yellow]{name}: manual action required:[/yellow] {fix}")
            continue

        console.print(f"[bold]{name}:[/bold] running `{fix}`")
        try:
            res = Toolchain(resolve_dfx_binary(dfx)).cache_install()
        except (ToolchainAbsent, TimeoutError) as e:
            console.print(f"  [red]error:[/red] {e}")
            continue
        console.print("  [green]done[/green]" if res.ok else f"  [red]failed:[/red] {res.output[:200]}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Check that dfx, the Motoko base library and the replica port are ready for canister-deploy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n  canister-deploy-doctor\n  canister-deploy-doctor --fix --port 8000\n",
    )
    parser.add_argument("--fix", action="store_true", help="Run `dfx cache install` if the base library is missing")
    parser.add_argument("--dfx", type=Path, default=None, help="Path to the dfx binary")
    parser.add_argument("--host", type=str, default=DEFAULT_REPLICA_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_REPLICA_PORT)
    args = parser.parse_args(argv)

    results = run_checks(dfx=args.dfx, host=args.host, port=args.port)
    ready = print_results(results)
    if not ready and args.fix:
        console.print()
        run_fixes(results, dfx=args.dfx)
        console.print("\n[bold]Re-checking...[/bold]\n")
        ready = print_results(run_checks(dfx=args.dfx, host=args.host, port=args.port))

    if not ready:
        console.print("\n[bold red]Environment is not ready.[/bold red]")
        sys.exit(1)
    console.print("\n[bold green]Environment is ready.[/bold green]")


if __name__ == "__main__":
    main()
