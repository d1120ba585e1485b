"""
Lab Range CLI - labctl
Click-based client for lab sessions and local template management.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Optional

import click
import requests


# ============================================
# CLI Configuration
# ============================================

class Context:
    """CLI context for global settings."""

    def __init__(self):
        self.api_url: str = "http://localhost:8000"
        self.token: Optional[str] = None
        self.output_format: str = "table"
        self.quiet: bool = False


pass_context = click.make_pass_decorator(Context, ensure=True)


def setup_api_client(ctx: Context) -> requests.Session:
    """Create API client with auth headers."""
    session = requests.Session()
    session.headers.update({"Content-Type": "application/json"})
    if ctx.token:
        session.headers.update({"Authorization": f"Bearer {ctx.token}"})
    return session


def api_error(e: requests.RequestException) -> str:
    """Prefer the API's error detail over the transport message."""
    response = getattr(e, "response", None)
    if response is not None:
        try:
            body = response.json()
            return f"{body.get('error', response.status_code)}: {body.get('detail')}"
        except ValueError:
            pass
    return str(e)


def print_session(ctx: Context, data: dict) -> None:
    if ctx.output_format == "json":
        click.echo(json.dumps(data, indent=2))
        return

    status = data.get("status", "unknown")
    color = "green" if status == "running" else "yellow"
    click.echo(f"Session:  {data.get('id')}")
    click.echo(f"Lab:      {data.get('lab_id')}")
    click.secho(f"Status:   {status}", fg=color)

    connection = data.get("connection") or {}
    if connection:
        click.echo(f"SSH:      {connection.get('ssh_command')}")
        click.echo(f"Web:      {connection.get('web_url')}")
        if connection.get("password"):
            click.echo(f"Password: {connection.get('password')}")
        if connection.get("vpn_required"):
            click.echo("VPN:      required (labctl vpn download)")

    remaining = data.get("time_remaining_seconds", 0)
    click.echo(f"Remaining: {remaining // 60}m {remaining % 60}s")
    click.echo(f"Extensions used: {data.get('extension_count', 0)}")

    for flag_type, flag in (data.get("flags") or {}).items():
        mark = "found" if flag.get("is_correct") else "-"
        click.echo(f"  {flag_type:<5} {flag.get('points', 0):>3} pts  {mark}")

    for warning in data.get("warnings") or []:
        click.secho(f"Warning: {warning}", fg="yellow")


# ============================================
# Base Commands
# ============================================

@click.group()
@click.option(
    "--api-url",
    default="http://localhost:8000",
    help="API URL for the Lab Range server",
    envvar="LABRANGE_API_URL",
)
@click.option(
    "--token",
    help="Bearer token for authentication",
    envvar="LABRANGE_TOKEN",
)
@click.option(
    "--output",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option(
    "--quiet",
    is_flag=True,
    help="Suppress output except errors",
)
@click.pass_context
def cli(
    ctx: click.Context,
    api_url: str,
    token: Optional[str],
    output: str,
    quiet: bool,
):
    """Lab Range CLI"""
    ctx.ensure_object(Context)
    ctx.obj.api_url = api_url.rstrip("/")
    ctx.obj.token = token
    ctx.obj.output_format = output
    ctx.obj.quiet = quiet


# ============================================
# Session Commands
# ============================================

@cli.group()
def session():
    """Lab session commands"""
    pass


@session.command("start")
@click.argument("lab_id")
@pass_context
def session_start(ctx: Context, lab_id: str):
    """Start a lab session (blocks until the VM is up)"""
    client = setup_api_client(ctx)

    try:
        if not ctx.quiet:
            click.echo(f"Starting {lab_id}, this can take a few minutes...")
        response = client.post(f"{ctx.api_url}/api/v1/sessions", json={"lab_id": lab_id})
        response.raise_for_status()
        print_session(ctx, response.json())
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("show")
@click.argument("session_id", required=False)
@pass_context
def session_show(ctx: Context, session_id: Optional[str]):
    """Show a session, or the active one"""
    client = setup_api_client(ctx)
    path = session_id or "active"

    try:
        response = client.get(f"{ctx.api_url}/api/v1/sessions/{path}")
        response.raise_for_status()
        print_session(ctx, response.json())
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("list")
@click.option("--limit", default=20, show_default=True)
@pass_context
def session_list(ctx: Context, limit: int):
    """List my recent sessions"""
    client = setup_api_client(ctx)

    try:
        response = client.get(f"{ctx.api_url}/api/v1/sessions", params={"limit": limit})
        response.raise_for_status()
        data = response.json()

        if ctx.output_format == "json":
            click.echo(json.dumps(data, indent=2))
        else:
            click.echo(f"{'ID':<18} {'Lab':<20} {'Status':<10} {'Points':<7} {'Created'}")
            click.echo("-" * 80)
            for item in data.get("sessions", []):
                click.echo(
                    f"{item.get('id', ''):<18} "
                    f"{item.get('lab_id', '')[:20]:<20} "
                    f"{item.get('status', ''):<10} "
                    f"{item.get('stats', {}).get('total_points', 0):<7} "
                    f"{item.get('created_at', '')[:19]}"
                )
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("submit")
@click.argument("session_id")
@click.argument("flag_type", type=click.Choice(["user", "root"]))
@click.argument("value")
@pass_context
def session_submit(ctx: Context, session_id: str, flag_type: str, value: str):
    """Submit a flag"""
    client = setup_api_client(ctx)

    try:
        response = client.post(
            f"{ctx.api_url}/api/v1/sessions/{session_id}/flags",
            json={"flag_type": flag_type, "value": value},
        )
        response.raise_for_status()
        result = response.json()

        if ctx.output_format == "json":
            click.echo(json.dumps(result, indent=2))
        elif result.get("accepted"):
            click.secho(f"{result.get('message')} (+{result.get('points')} pts)", fg="green")
            click.echo(f"Flags found: {result.get('flags_found')}/2, total {result.get('total_points')} pts")
            if result.get("completed"):
                click.secho("Lab completed!", fg="green", bold=True)
            for badge in result.get("new_badges") or []:
                click.echo(f"New badge: {badge}")
        else:
            click.secho(result.get("message", "Incorrect flag"), fg="red")
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("extend")
@click.argument("session_id")
@click.option("--minutes", type=int, help="Defaults to the server's extension length")
@pass_context
def session_extend(ctx: Context, session_id: str, minutes: Optional[int]):
    """Extend a running session"""
    client = setup_api_client(ctx)

    try:
        response = client.post(
            f"{ctx.api_url}/api/v1/sessions/{session_id}/extend",
            json={"minutes": minutes},
        )
        response.raise_for_status()
        data = response.json()
        if not ctx.quiet:
            click.echo(f"Session now expires at {data.get('expires_at')}")
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("stop")
@click.argument("session_id")
@click.option("--force", is_flag=True, help="Skip confirmation")
@pass_context
def session_stop(ctx: Context, session_id: str, force: bool):
    """Stop a session and destroy its VM"""
    if not force:
        if not click.confirm(f"Stop session {session_id}?"):
            return

    client = setup_api_client(ctx)

    try:
        response = client.delete(f"{ctx.api_url}/api/v1/sessions/{session_id}")
        response.raise_for_status()
        data = response.json()
        if not ctx.quiet:
            click.echo(f"Session {session_id} {data.get('status')}")
            click.echo(f"Points: {data.get('stats', {}).get('total_points', 0)}")
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


@session.command("history")
@click.argument("session_id")
@pass_context
def session_history(ctx: Context, session_id: str):
    """Show flag submissions for a session"""
    client = setup_api_client(ctx)

    try:
        response = client.get(f"{ctx.api_url}/api/v1/sessions/{session_id}/submissions")
        response.raise_for_status()
        submissions = response.json()

        if ctx.output_format == "json":
            click.echo(json.dumps(submissions, indent=2))
        else:
            click.echo(f"{'#':<4} {'Type':<6} {'Correct':<8} {'Points':<7} {'When'}")
            click.echo("-" * 50)
            for item in submissions:
                click.echo(
                    f"{item.get('attempt_number', 0):<4} "
                    f"{item.get('flag_type', ''):<6} "
                    f"{'Yes' if item.get('is_correct') else 'No':<8} "
                    f"{item.get('points_awarded', 0):<7} "
                    f"{item.get('submitted_at', '')[:19]}"
                )
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


# ============================================
# VPN Commands
# ============================================

@cli.group()
def vpn():
    """VPN profile commands (bridge-mode labs)"""
    pass


@vpn.command("download")
@click.argument("session_id")
@click.option(
    "--dest",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    help="Directory to write the profile into",
)
@pass_context
def vpn_download(ctx: Context, session_id: str, dest: Path):
    """Issue and download the VPN profile for a session"""
    client = setup_api_client(ctx)

    try:
        response = client.post(f"{ctx.api_url}/api/v1/sessions/{session_id}/vpn")
        response.raise_for_status()
        profile = response.json()

        response = client.get(f"{ctx.api_url}{profile['download_url']}")
        response.raise_for_status()

        dest.mkdir(parents=True, exist_ok=True)
        target = dest / profile["filename"]
        target.write_bytes(response.content)
        target.chmod(0o600)

        if not ctx.quiet:
            click.echo(f"Profile written to {target}")
            click.echo(f"Valid until {profile.get('expires_at')}")
    except requests.RequestException as e:
        click.echo(f"Error: {api_error(e)}", err=True)


# ============================================
# Template Commands (run on the lab host)
# ============================================

@cli.group()
def template():
    """Lab template commands, executed locally on the hypervisor host"""
    pass


@template.command("import")
@click.argument("lab_id")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--slug", help="Template name, defaults to the lab id")
@click.option("--name", help="Display name for a new lab")
@click.option("--checksum", help="Expected sha256 of the image")
@click.option("--username", default="user", show_default=True, help="Guest account for a new lab")
@click.option("--password", help="Guest account password for a new lab")
@click.option(
    "--difficulty",
    type=click.Choice(["easy", "medium", "hard", "insane"]),
    default="easy",
    show_default=True,
)
@click.option("--network-mode", type=click.Choice(["nat", "bridge"]))
@pass_context
def template_import(
    ctx: Context,
    lab_id: str,
    image: Path,
    slug: Optional[str],
    name: Optional[str],
    checksum: Optional[str],
    username: str,
    password: Optional[str],
    difficulty: str,
    network_mode: Optional[str],
):
    """Import a VM image as a lab template, registering the lab if new"""
    from labrange.core.config import get_settings
    from labrange.core.logging import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level, "console")

    started = time.monotonic()
    try:
        path = asyncio.run(_import_template(
            settings,
            lab_id=lab_id,
            image=image,
            slug=slug or lab_id,
            name=name or lab_id,
            checksum=checksum,
            username=username,
            password=password,
            difficulty=difficulty,
            network_mode=network_mode,
        ))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    if not ctx.quiet:
        click.echo(f"Template for {lab_id} at {path} ({time.monotonic() - started:.1f}s)")


async def _import_template(settings, lab_id: str, image: Path, slug: str, name: str, **lab_fields) -> str:
    from labrange.infrastructure.database import DatabaseManager
    from labrange.infrastructure.orchestrator.models import (
        Credentials,
        Difficulty,
        Lab,
        NetworkMode,
        default_flag_templates,
    )
    from labrange.infrastructure.orchestrator.repository import SqlSessionRepository
    from labrange.infrastructure.orchestrator.services.hypervisor import LibvirtHypervisor

    db = DatabaseManager(settings)
    await db.connect()
    try:
        await db.create_schema()
        repository = SqlSessionRepository(db)

        lab = await repository.get_lab(lab_id)
        if lab is None:
            username = lab_fields["username"]
            mode = lab_fields["network_mode"]
            lab = Lab(
                id=lab_id,
                slug=slug,
                name=name,
                image_path=str(image.resolve()),
                image_checksum=lab_fields["checksum"],
                default_credentials=Credentials(username=username, password=lab_fields["password"]),
                difficulty=Difficulty(lab_fields["difficulty"]),
                flags=default_flag_templates(username),
                network_mode=NetworkMode(mode) if mode else None,
            )
            await repository.add_lab(lab)

        hypervisor = LibvirtHypervisor.from_settings(settings)
        path = await hypervisor.import_template(str(image), lab.slug, lab_fields["checksum"] or lab.image_checksum)
        await repository.set_lab_template(lab_id, str(path))
        return str(path)
    finally:
        await db.disconnect()


# ============================================
# System Commands
# ============================================

@cli.group()
def system():
    """System commands"""
    pass


@system.command("health")
@click.option("--wait", is_flag=True, help="Wait for healthy status")
@pass_context
def system_health(ctx: Context, wait: bool):
    """Check service health"""
    client = setup_api_client(ctx)

    max_retries = 10 if wait else 1
    retry_delay = 5

    for attempt in range(max_retries):
        try:
            response = client.get(f"{ctx.api_url}/api/v1/health")
            response.raise_for_status()
            health = response.json()

            if ctx.output_format == "json":
                click.echo(json.dumps(health, indent=2))
            else:
                status = health.get("status", "unknown")
                color = "green" if status == "healthy" else "red"
                click.secho(f"Status: {status}", fg=color)

                for name, check in health.get("checks", {}).items():
                    if isinstance(check, dict) and "status" in check:
                        check_color = "green" if check["status"] == "healthy" else "red"
                        click.secho(f"  {name}: {check['status']}", fg=check_color)
                    else:
                        click.echo(f"  {name}: {check}")

            if health.get("status") == "healthy":
                return

        except requests.RequestException as e:
            if attempt < max_retries - 1:
                time.sleep(retry_delay)
            else:
                click.echo(f"Error: {api_error(e)}", err=True)


# ============================================
# Main Entry Point
# ============================================

if __name__ == "__main__":
    cli()
