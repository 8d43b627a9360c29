from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import click

from provegate import __version__
from provegate.config import (
    EVENTS,
    ConfigError,
    condition_errors,
    config_paths,
    load_effective_config,
)
from provegate.dispatch import Gate
from provegate.session import VALID_SIGNALS

log = logging.getLogger(__name__)


class _JsonAwareGroup(click.Group):
    """Group that reports usage and command errors as JSON on stdout.

    Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _gate(project: str | None, session: str | None) -> Gate:
    try:
        return Gate(project or Path.cwd(), session_id=session)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _parse_input(raw: str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--input") from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("expected a JSON object", param_hint="--input")
    return parsed


_project_option = click.option(
    "--project",
    "-p",
    default=None,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project directory (default: current directory).",
)
_session_option = click.option(
    "--session", "-s", default=None, help="Host session id.", envvar="PROVEGATE_SESSION_ID"
)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """Gate expensive checks on how much code changed since they last passed.

    \b
    Typical hook wiring:
      provegate evaluate stop -s $SESSION      Which tasks should run now?
      provegate settle full-tests --pass       Report a verdict afterwards
      provegate record-write --tool Write ...  Count lines an agent wrote
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# -- evaluate --


@main.command()
@click.argument("event", type=click.Choice(EVENTS))
@_project_option
@_session_option
@click.option("--tool", "tool_name", default=None, help="Tool that triggered the event.")
@click.option("--input", "tool_input", default=None, help="Tool input as a JSON object.")
def evaluate(
    event: str,
    project: str | None,
    session: str | None,
    tool_name: str | None,
    tool_input: str | None,
):
    """Decide which tasks bound to EVENT should run."""
    parsed = _parse_input(tool_input)
    gate = _gate(project, session)
    inactive = gate.inactive_reason()
    if inactive:
        _emit({"event": event, "disabled": inactive, "tasks": []})
        return
    plans = gate.plan(event, tool_name=tool_name, tool_input=parsed)
    _emit({"event": event, "tasks": [p.to_dict() for p in plans]})


# -- settle --


@main.command()
@click.argument("task_name")
@click.option("--pass/--fail", "passed", required=True, help="Verdict of the run.")
@_project_option
@_session_option
def settle(task_name: str, passed: bool, project: str | None, session: str | None):
    """Record a task's verdict and move its watermark accordingly."""
    gate = _gate(project, session)
    task = gate.task(task_name)
    if task is None:
        raise click.ClickException(f"Unknown task: {task_name}")
    _emit(gate.settle(task, passed).to_dict())


# -- record-write --


@main.command("record-write")
@click.option("--tool", "tool_name", required=True, help="Name of the editing tool.")
@click.option("--input", "tool_input", required=True, help="Tool input as a JSON object.")
@_project_option
@_session_option
def record_write(tool_name: str, tool_input: str, project: str | None, session: str | None):
    """Count the lines one file-editing tool call wrote."""
    parsed = _parse_input(tool_input)
    gate = _gate(project, session)
    if gate.inactive_reason():
        _emit({"lines": 0})
        return
    _emit({"lines": gate.record_tool_write(tool_name, parsed)})


@main.command("end-turn")
@_project_option
@_session_option
def end_turn(project: str | None, session: str | None):
    """Forget the tools and files used during the current turn."""
    if not session:
        raise click.ClickException("--session is required")
    gate = _gate(project, session)
    gate.sessions.reset_turn(session)
    _emit({"ok": True})


# -- signal --


@main.command()
@click.argument("kind", type=click.Choice([*VALID_SIGNALS, "clear"]))
@click.option("--message", "-m", default=None, help="Optional note stored with the signal.")
@_project_option
@_session_option
def signal(kind: str, message: str | None, project: str | None, session: str | None):
    """Set a session signal (done, stuck, idle), or clear it."""
    if not session:
        raise click.ClickException("--session is required")
    gate = _gate(project, session)
    if kind == "clear":
        gate.sessions.clear_signal(session)
        _emit({"signal": None})
        return
    gate.sessions.set_signal(session, kind, message)
    _emit({"signal": gate.sessions.get_signal(session)})


# -- refs --


@main.group()
def refs():
    """Inspect or drop watermark refs."""


@refs.command("status")
@_project_option
def refs_status(project: str | None):
    """Show each task's watermark and gross counter."""
    gate = _gate(project, None)
    if not gate.watermarks.is_repo:
        raise click.ClickException(f"Not a git repository: {gate.root_dir}")
    names = [t.name for t in gate.tasks]
    _emit({"root": gate.root_dir, "tasks": gate.watermarks.status(names)})


@refs.command("reset")
@_project_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
def refs_reset(project: str | None, yes: bool):
    """Delete every watermark ref; the next evaluation bootstraps afresh."""
    gate = _gate(project, None)
    if not gate.watermarks.is_repo:
        raise click.ClickException(f"Not a git repository: {gate.root_dir}")
    if not yes:
        click.confirm(f"Delete all provegate refs in {gate.root_dir}?", abort=True, err=True)
    _emit({"deleted": gate.watermarks.delete_all()})


# -- validate --


@main.command()
@_project_option
def validate(project: str | None):
    """Validate the effective configuration, including every task's conditions."""
    project_dir = project or str(Path.cwd())
    try:
        cfg = load_effective_config(project_dir)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    errors = condition_errors(cfg)
    if errors:
        raise click.ClickException("Invalid task conditions:\n  " + "\n  ".join(errors))
    layers = [str(p) for p in config_paths(project_dir) if p.is_file()]
    _emit({"ok": True, "layers": layers, "tasks": [t["name"] for t in cfg["tasks"]]})
