"""ucibus CLI: UCI config directory published over a pub/sub bus.

Commands:
    ucibus init                       create ucibus.toml + config/backup dirs
    ucibus serve                      run the server until interrupted
    ucibus validate FILE              syntax-check a config file
    ucibus show FILE                  print parsed sections (with uuids)
    ucibus check-acl USER TOPIC ACTION
                                      evaluate the ACL for one request
"""

from __future__ import annotations

import json
from pathlib import Path

import click

from ucibus import codec
from ucibus.acl import ACTIONS
from ucibus.config import UciBusConfig, init_config, load_config
from ucibus.errors import ParseError
from ucibus.models import section_key
from ucibus.registry import IdentityRegistry
from ucibus.server import run

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg(root: str | None = None) -> UciBusConfig:
    try:
        return load_config(root)
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_file(cfg: UciBusConfig, file: str) -> Path:
    path = Path(file)
    if not path.exists():
        path = cfg.config_dir / file
    if not path.is_file():
        msg = f"no such config file: {file}"
        raise click.ClickException(msg)
    return path


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="ucibus")
@click.option("--root", default=None, help="Directory holding ucibus.toml (default: search upward from cwd)")
@click.pass_context
def cli(ctx: click.Context, root: str | None) -> None:
    """ucibus: UCI configuration over a pub/sub bus."""
    ctx.obj = root


# ---------------------------------------------------------------------------
# ucibus init
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
def init(root: str) -> None:
    """Create ucibus.toml and the config/backup directories."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("ucibus.toml already exists, skipping init")

    cfg = load_config(root_path)
    cfg.ensure_dirs()
    click.echo(f"Config dir : {cfg.config_dir}")
    click.echo(f"Backup dir : {cfg.backup_dir}")


# ---------------------------------------------------------------------------
# ucibus serve
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def serve(root: str | None) -> None:
    """Load every config file, publish it and serve commands until interrupted."""
    run(_load_cfg(root))


# ---------------------------------------------------------------------------
# ucibus validate / show
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file")
@click.pass_obj
def validate(root: str | None, file: str) -> None:
    """Syntax-check FILE (a path, or a name inside the config dir)."""
    cfg = _load_cfg(root)
    path = _resolve_file(cfg, file)
    result = codec.validate(path.read_text(encoding="utf-8"))
    if result.valid:
        click.echo(f"{path.name}: ok ({result.sections} sections)")
        return
    for err in result.errors:
        click.echo(f"{path.name}: {err}", err=True)
    raise SystemExit(1)


@cli.command()
@click.argument("file")
@click.option("--json", "as_json", is_flag=True, help="Print sections as JSON")
@click.pass_obj
def show(root: str | None, file: str, as_json: bool) -> None:
    """Print the sections of FILE with their (registered) uuids."""
    cfg = _load_cfg(root)
    path = _resolve_file(cfg, file)
    try:
        sections = codec.parse(path.read_text(encoding="utf-8"))
    except ParseError as exc:
        raise click.ClickException(str(exc)) from exc

    registry = IdentityRegistry(cfg.registry_path)
    registry.load()
    for s in sections:
        if not s.uuid:
            s.uuid = registry.get(section_key(path.name, s.section_type, s.section_name, s.line_number))

    if as_json:
        out = [
            {"uuid": s.uuid, "sectionType": s.section_type, "sectionName": s.section_name, "values": s.values}
            for s in sections
        ]
        click.echo(json.dumps(out, indent=2))
        return

    for s in sections:
        click.echo(f"{s.section_type} {s.section_name or '-'}  [{s.uuid or 'unassigned'}]")
        for key, value in s.values.items():
            click.echo(f"    {key} = {value!r}")


# ---------------------------------------------------------------------------
# ucibus check-acl
# ---------------------------------------------------------------------------


@cli.command("check-acl")
@click.argument("user")
@click.argument("topic")
@click.argument("action", type=click.Choice(ACTIONS))
@click.pass_obj
def check_acl(root: str | None, user: str, topic: str, action: str) -> None:
    """Show whether USER may ACTION on TOPIC under the configured ACL."""
    cfg = _load_cfg(root)
    acl = cfg.access_control()
    caller = acl.caller(user)
    allowed = acl.is_allowed(caller, topic, action)
    roles = ", ".join(caller.roles) or "none"
    click.echo(f"{'allow' if allowed else 'deny'}: {user} ({roles}) {action} {topic}")
    if not allowed:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()
