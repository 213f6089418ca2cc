# Copyright (c) Syntropy Systems
"""mountsweep doctor command."""
from __future__ import annotations

import shutil

import typer

from mountsweep.appliers import ConfigurationApplier, applier_class
from mountsweep.catalog import ALL_ORDER, build_plans
from mountsweep.cli.common import (
    RemoteHostOption,
    RemoteUserOption,
    console,
    resolve_settings,
)
from mountsweep.config import SweepSettings, find_project_dir
from mountsweep.errors import ConfigError, MountSweepError
from mountsweep.management import SERVICE_FOR_NAMESPACE, MiddlewareClient
from mountsweep.remote import LocalExecutor, RemoteExecutor

SERVER_SERVICES = ("rpcbind", "nfs-idmapd", "nfs-server")


def _required_commands(settings: SweepSettings) -> tuple[set[str], set[str]]:
    client_cmds: set[str] = {"find", "mountpoint"}
    server_cmds: set[str] = set()
    seen: set[type[ConfigurationApplier]] = set()
    for family in ALL_ORDER:
        for plan in build_plans(family, settings):
            for case in plan.cases:
                try:
                    cls = applier_class(case)
                except ConfigError:
                    continue
                if cls in seen:
                    continue
                seen.add(cls)
                client_cmds.update(cls.client_commands)
                server_cmds.update(cls.server_commands)
    return client_cmds, server_cmds


def doctor(
    remote_host: str | None = RemoteHostOption,
    remote_user: str | None = RemoteUserOption,
) -> None:
    """Check both hosts before a sweep.

    Verifies:
    - project directory and configuration
    - local tools (ssh, midclt)
    - ssh access and passwordless sudo on the client
    - tools the sweep needs on the client
    - NFS helper services and middleware share services on the server
    """
    issues: list[str] = []
    warnings: list[str] = []

    project_dir = find_project_dir()
    if project_dir is None:
        console.print("[yellow]\u26a0[/yellow] No .mountsweep directory found, using defaults")
        console.print("  Run [bold]mountsweep init[/bold] to create a project")
        warnings.append("No project directory")
    else:
        console.print(f"[green]\u2713[/green] mountsweep directory: {project_dir}")

    settings = resolve_settings(remote_host=remote_host, remote_user=remote_user)
    console.print(f"[dim]\u2022[/dim] Export path: {settings.export_path}")
    console.print(f"[dim]\u2022[/dim] Server as seen by client: {settings.server_host}")

    client_cmds, server_cmds = _required_commands(settings)

    # Local tools
    for tool in sorted({"ssh", *server_cmds}):
        found = shutil.which(tool)
        if found:
            console.print(f"[green]\u2713[/green] {tool}: {found}")
        else:
            console.print(f"[red]\u2717[/red] {tool} not found on this host")
            issues.append(f"{tool} missing on server")

    # Client access
    if not settings.remote_host:
        console.print("[red]\u2717[/red] No client host configured")
        issues.append("remote_host not set")
    else:
        client = RemoteExecutor(
            settings.remote_host,
            settings.remote_user,
            connect_timeout=settings.connect_timeout,
            default_timeout=settings.command_timeout,
        )
        try:
            client.check_connectivity()
        except MountSweepError as e:
            console.print(f"[red]\u2717[/red] SSH to {client.target} failed: {e}")
            issues.append(f"Cannot reach {client.target}")
        else:
            console.print(f"[green]\u2713[/green] SSH: {client.target}")
            _check_client(client, client_cmds, issues, warnings)

    # Server services
    systemctl = shutil.which("systemctl")
    if systemctl is None:
        console.print("[yellow]\u26a0[/yellow] systemctl not found, skipping service checks")
        warnings.append("Service checks skipped")
    else:
        server = LocalExecutor(default_timeout=settings.command_timeout, use_sudo=False)
        for service in SERVER_SERVICES:
            try:
                result = server.execute(["systemctl", "is-active", service], check=False)
            except MountSweepError as e:
                console.print(f"[yellow]\u26a0[/yellow] {service}: {e}")
                warnings.append(f"{service} check failed")
                continue
            state = result.stdout.strip() or "unknown"
            if result.ok:
                console.print(f"[green]\u2713[/green] {service}: {state}")
            else:
                console.print(f"[yellow]\u26a0[/yellow] {service}: {state}")
                warnings.append(f"{service} is {state}")

    if shutil.which("midclt"):
        middleware = MiddlewareClient(
            LocalExecutor(default_timeout=settings.command_timeout),
            timeout=settings.command_timeout,
        )
        for name in SERVICE_FOR_NAMESPACE.values():
            try:
                running = middleware.service_running(name)
            except MountSweepError as e:
                console.print(f"[yellow]\u26a0[/yellow] middleware {name} service: {e}")
                warnings.append(f"{name} service state unknown")
                continue
            if running:
                console.print(f"[green]\u2713[/green] middleware {name} service: running")
            else:
                console.print(f"[yellow]\u26a0[/yellow] middleware {name} service: stopped")
                warnings.append(f"{name} service stopped")

    if not settings.smb_password:
        console.print("[dim]\u2022[/dim] No SMB password set; SMB cases will record ERROR")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
        raise typer.Exit(1)
    if warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")


def _check_client(
    client: RemoteExecutor,
    commands: set[str],
    issues: list[str],
    warnings: list[str],
) -> None:
    try:
        sudo = client.execute(["sudo", "-n", "true"], check=False)
        if sudo.ok:
            console.print("[green]\u2713[/green] Passwordless sudo on client")
        else:
            console.print("[red]\u2717[/red] sudo -n failed on client")
            issues.append("Client needs passwordless sudo")

        uname = client.execute(["uname", "-sr"], check=False)
        if uname.ok:
            console.print(f"[dim]\u2022[/dim] Client kernel: {uname.stdout.strip()}")

        for name in sorted(commands):
            if client.command_exists(name, elevated=True):
                console.print(f"[green]\u2713[/green] client {name}")
            else:
                console.print(f"[yellow]\u26a0[/yellow] client {name} not found")
                warnings.append(f"{name} missing on client; cases using it will fail")
    except MountSweepError as e:
        console.print(f"[red]\u2717[/red] Client check failed: {e}")
        issues.append(f"Client check failed: {e}")
