"""devbox-egress command line interface using Typer."""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from devbox_egress import __version__
from devbox_egress.config.loader import ConfigError, load_config
from devbox_egress.controller import EgressController, create_controller
from devbox_egress.errors import EgressError
from devbox_egress.profiles import Action, ProfileRegistry
from devbox_egress.results import ProvisionResult
from devbox_egress.domains import normalize_domain
from devbox_egress.rules import RuleList, normalize_cidr

app = typer.Typer(
    name="devbox-egress",
    help="devbox-egress - network egress control for devbox containers",
    no_args_is_help=True,
)

console = Console()
err_console = Console(stderr=True)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config file (default: ~/.devbox/egress.yaml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Manage egress profiles, DNS sidecars and domain rules."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )
    ctx.obj = {"config_path": config_path}


def _fail(message: str) -> None:
    err_console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code=1)


def _controller(ctx: typer.Context) -> EgressController:
    try:
        config = load_config(ctx.obj["config_path"])
        return create_controller(config)
    except (ConfigError, ConnectionError) as e:
        _fail(str(e))


def _registry(ctx: typer.Context) -> ProfileRegistry:
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as e:
        _fail(str(e))
    return ProfileRegistry(config.profiles_path)


def _run(coro):
    try:
        return asyncio.run(coro)
    except (EgressError, ValueError) as e:
        _fail(str(e))


def _print_result(result: ProvisionResult) -> None:
    console.print(f"Container: [bold]{result.container_id}[/bold]")
    console.print(f"  Profile: {result.profile}")
    if result.network_mode == "none":
        console.print("  Network: none (airgapped)")
    elif result.network_name:
        console.print(f"  Network: {result.network_name} ({result.network_id[:12]})")
        console.print(f"  DNS sidecar: {result.sidecar_ip}")
    else:
        console.print("  Network: engine default (unfiltered)")

    args = result.docker_run_args()
    if args:
        console.print(f"  Run flags: {' '.join(args)}")

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning.message}")


@app.command()
def version():
    """Show devbox-egress version."""
    console.print(f"devbox-egress version {__version__}")


@app.command()
def provision(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    profile: str = typer.Option(None, "--profile", "-p", help="Egress profile"),
    allow_domain: list[str] = typer.Option(
        None, "--allow-domain", help="Seed the allow list (repeatable)"
    ),
    block_domain: list[str] = typer.Option(
        None, "--block-domain", help="Seed the block list (repeatable)"
    ),
    allow_ip: list[str] = typer.Option(
        None, "--allow-ip", help="Seed the allowed-ips list with an IPv4 CIDR (repeatable)"
    ),
    block_ip: list[str] = typer.Option(
        None, "--block-ip", help="Seed the blocked-ips list with an IPv4 CIDR (repeatable)"
    ),
):
    """Create the network and DNS sidecar for a container."""
    controller = _controller(ctx)
    result = _run(
        controller.provision(
            container,
            profile,
            allow_domains=allow_domain or (),
            block_domains=block_domain or (),
            allow_ips=allow_ip or (),
            block_ips=block_ip or (),
        )
    )
    _print_result(result)


@app.command()
def reconfigure(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
):
    """Re-apply profile and rules (restarts the DNS sidecar at the same address)."""
    controller = _controller(ctx)
    result = _run(controller.reconfigure(container))
    _print_result(result)


app.command("reset-network", hidden=True)(reconfigure)


@app.command()
def destroy(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
):
    """Remove sidecar, network and persisted rules."""
    controller = _controller(ctx)
    _run(controller.destroy(container))
    console.print(f"[green]✓[/green] Egress control removed for {container}")


def _change_rules(
    ctx: typer.Context,
    container: str,
    entries: list[str],
    rule_list: RuleList,
    add: bool,
    apply: bool,
    ips: bool = False,
) -> None:
    # Validate every entry before any of them is persisted
    try:
        if ips:
            entries = [normalize_cidr(entry) for entry in entries]
        elif add:
            entries = [normalize_domain(entry) for entry in entries]
    except EgressError as e:
        _fail(str(e))

    controller = _controller(ctx)
    if ips:
        change = controller.add_ip if add else controller.remove_ip
    else:
        change = controller.add_domain if add else controller.remove_domain

    async def run() -> list[bool]:
        results = [await change(container, rule_list, entry) for entry in entries]
        if apply and any(results):
            await controller.reconfigure(container)
        return results

    results = _run(run())

    verb = "Added to" if add else "Removed from"
    label = f"{rule_list} IP" if ips else str(rule_list)
    for entry, changed in zip(entries, results):
        if changed:
            console.print(f"[green]✓[/green] {verb} {label} list: {entry}")
        else:
            console.print(f"[dim]Unchanged: {entry}[/dim]")
    if apply and any(results):
        console.print("DNS sidecar reloaded")


@app.command()
def allow(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    domains: list[str] = typer.Argument(..., help="Domains to allow"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reload the sidecar now"),
):
    """Allow domains for a container."""
    _change_rules(ctx, container, domains, RuleList.ALLOW, add=True, apply=apply)


@app.command()
def block(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    domains: list[str] = typer.Argument(..., help="Domains to block"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reload the sidecar now"),
):
    """Block domains for a container."""
    _change_rules(ctx, container, domains, RuleList.BLOCK, add=True, apply=apply)


@app.command()
def unallow(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    domains: list[str] = typer.Argument(..., help="Domains to remove from the allow list"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reload the sidecar now"),
):
    """Remove domains from a container's allow list."""
    _change_rules(ctx, container, domains, RuleList.ALLOW, add=False, apply=apply)


@app.command()
def unblock(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    domains: list[str] = typer.Argument(..., help="Domains to remove from the block list"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reload the sidecar now"),
):
    """Remove domains from a container's block list."""
    _change_rules(ctx, container, domains, RuleList.BLOCK, add=False, apply=apply)


@app.command("allow-ip")
def allow_ip(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    cidrs: list[str] = typer.Argument(..., help="IPv4 addresses or CIDR blocks"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reapply the packet filter now"),
):
    """Exempt destinations from the profile's IP blocks (needs the packet filter)."""
    _change_rules(ctx, container, cidrs, RuleList.ALLOW, add=True, apply=apply, ips=True)


@app.command("block-ip")
def block_ip(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    cidrs: list[str] = typer.Argument(..., help="IPv4 addresses or CIDR blocks"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reapply the packet filter now"),
):
    """Drop traffic to destinations (needs the packet filter)."""
    _change_rules(ctx, container, cidrs, RuleList.BLOCK, add=True, apply=apply, ips=True)


@app.command("unallow-ip")
def unallow_ip(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    cidrs: list[str] = typer.Argument(..., help="IPv4 addresses or CIDR blocks"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reapply the packet filter now"),
):
    """Remove entries from a container's allowed-ips list."""
    _change_rules(ctx, container, cidrs, RuleList.ALLOW, add=False, apply=apply, ips=True)


@app.command("unblock-ip")
def unblock_ip(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    cidrs: list[str] = typer.Argument(..., help="IPv4 addresses or CIDR blocks"),
    apply: bool = typer.Option(True, "--apply/--no-apply", help="Reapply the packet filter now"),
):
    """Remove entries from a container's blocked-ips list."""
    _change_rules(ctx, container, cidrs, RuleList.BLOCK, add=False, apply=apply, ips=True)


@app.command()
def rules(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
):
    """List a container's custom allow/block rules."""
    controller = _controller(ctx)
    try:
        rows = [("allow", d) for d in controller.list_domains(container, RuleList.ALLOW)]
        rows += [("block", d) for d in controller.list_domains(container, RuleList.BLOCK)]
        rows += [("allow-ip", c) for c in controller.list_ips(container, RuleList.ALLOW)]
        rows += [("block-ip", c) for c in controller.list_ips(container, RuleList.BLOCK)]
    except (EgressError, ValueError) as e:
        _fail(str(e))

    if not rows:
        console.print(f"[dim]No custom rules for {container}[/dim]")
        return

    table = Table(title=f"Egress rules for {container}")
    table.add_column("List", style="cyan")
    table.add_column("Entry")
    for kind, entry in rows:
        table.add_row(kind, entry)
    console.print(table)


@app.command()
def status(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
):
    """Show a container's egress state."""
    controller = _controller(ctx)
    state = _run(controller.status(container))

    console.print(f"Container: [bold]{state.container_id}[/bold]")
    console.print(f"  Profile: {state.profile} (mode: {state.mode}, default: {state.default_action})")
    if state.network_name:
        running = "[green]running[/green]" if state.sidecar_running else "[red]not running[/red]"
        console.print(f"  Network: {state.network_name}")
        console.print(f"  DNS sidecar: {state.sidecar_ip} ({running})")
    if state.degraded:
        console.print("  [yellow]Isolation: degraded (inter-container traffic allowed)[/yellow]")
    console.print(f"  Custom rules: {len(state.allowed_domains)} allowed, {len(state.blocked_domains)} blocked")
    if state.allowed_ips or state.blocked_ips:
        console.print(f"  IP rules: {len(state.allowed_ips)} allowed, {len(state.blocked_ips)} blocked")


@app.command()
def check(
    ctx: typer.Context,
    container: str = typer.Argument(..., help="Container identity"),
    domain: str = typer.Argument(..., help="Domain to evaluate"),
):
    """Show whether the current policy allows a domain."""
    controller = _controller(ctx)
    try:
        decision = controller.check(container, domain)
    except (EgressError, ValueError) as e:
        _fail(str(e))

    if decision == Action.ALLOW:
        console.print(f"[green]allow[/green] {domain}")
    else:
        console.print(f"[red]deny[/red] {domain}")


@app.command("profiles")
def list_profiles(ctx: typer.Context):
    """List available egress profiles."""
    registry = _registry(ctx)

    table = Table(title="Egress profiles")
    table.add_column("Name", style="cyan")
    table.add_column("Mode")
    table.add_column("Default")
    table.add_column("Description")

    for name in registry.available():
        try:
            profile = registry.load(name)
        except EgressError as e:
            table.add_row(name, "-", "-", f"[red]{e}[/red]")
            continue
        table.add_row(name, str(profile.mode), str(profile.default_action), profile.description)

    console.print(table)


@app.command("show-profile")
def show_profile(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name"),
):
    """Show a profile's settings and domain entries."""
    registry = _registry(ctx)
    try:
        profile = registry.load(name)
    except EgressError as e:
        _fail(str(e))

    console.print(f"Profile: [bold]{profile.name}[/bold]")
    if profile.description:
        console.print(f"  Description: {profile.description}")
    console.print(f"  Network mode: {profile.mode}")
    console.print(f"  Default action: {profile.default_action}")
    if profile.allowed_domains:
        console.print(f"  Allowed domains: {len(profile.allowed_domains)} domain patterns")
        for domain in profile.allowed_domains:
            console.print(f"    + {domain}")
    if profile.blocked_domains:
        console.print(f"  Blocked domains: {len(profile.blocked_domains)} domain patterns")
        for domain in profile.blocked_domains:
            console.print(f"    - {domain}")
    if profile.blocked_cidrs:
        console.print(f"  Blocked IPs: {', '.join(profile.blocked_cidrs)}")


if __name__ == "__main__":
    app()
