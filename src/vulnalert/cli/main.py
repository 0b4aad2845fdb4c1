"""vulnalert CLI: command-line interface for the alert pipeline.

Commands:
    init            Write a starter vulnalert.yaml
    rules create    Create an alert rule from a YAML/JSON file
    rules list      List alert rules
    rules show      Show one alert rule
    rules disable   Deactivate an alert rule
    evaluate        Evaluate a vulnerability record against active rules
    state           Show a rule's cooldown and trigger-count state
    audit verify    Verify dispatch audit log chain integrity
    audit show      Show recent dispatch results
    serve           Run the HTTP API
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import ValidationError

from vulnalert import __version__
from vulnalert.audit.logger import AuditLogger, verify_log
from vulnalert.config import CONFIG_FILENAME, DEFAULT_CONFIG_TEMPLATE, ConfigError, load_config
from vulnalert.models import AlertRule, AlertRuleCreateRequest, OutcomeStatus, Vulnerability
from vulnalert.pipeline import AlertPipeline, PipelineError
from vulnalert.rules.store import RuleStoreError
from vulnalert.rules.validation import RuleValidationError

_STATUS_COLORS = {
    OutcomeStatus.DISPATCHED: "green",
    OutcomeStatus.COOLDOWN: "yellow",
    OutcomeStatus.NOT_MATCHED: "white",
    OutcomeStatus.FAILED: "red",
}


def _pipeline(ctx: click.Context) -> AlertPipeline:
    """Build the pipeline from --config (or discovery), closed with the context."""
    try:
        config = load_config(ctx.obj.get("config_path"))
        return ctx.with_resource(AlertPipeline(config))
    except (FileNotFoundError, ConfigError, PipelineError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _load_document(path: str) -> Any:
    """Read a YAML or JSON file (JSON is valid YAML)."""
    try:
        return yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        click.echo(f"Error reading {path}: {e}", err=True)
        sys.exit(1)


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None,
    help=f"Path to {CONFIG_FILENAME} (default: auto-discover)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """vulnalert: vulnerability alert rules and notification dispatch."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# --- init command ---


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Write a starter vulnalert.yaml."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    config_file = root / CONFIG_FILENAME
    if config_file.exists():
        click.echo(f"  skip  {CONFIG_FILENAME} (already exists)")
        return

    config_file.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    click.echo(click.style("Created:", fg="green", bold=True))
    click.echo(f"  + {CONFIG_FILENAME}")
    click.echo("\n" + click.style("Next steps:", bold=True))
    click.echo("  vulnalert rules create rule.yaml")
    click.echo("  vulnalert evaluate vuln.json")


# --- rules commands ---


@cli.group()
def rules() -> None:
    """Alert rule management."""


def _echo_rule(rule: AlertRule) -> None:
    status = click.style("active", fg="green") if rule.is_active else click.style("inactive", fg="red")
    click.echo(f"{rule.rule_id}  {rule.name}  [{status}]")
    click.echo(f"  owner:     {rule.owner_id}")
    click.echo(f"  cooldown:  {rule.cooldown_minutes}m")
    click.echo(f"  triggers:  {rule.trigger_count}")
    if rule.last_triggered_at:
        click.echo(f"  last:      {rule.last_triggered_at.isoformat()}")
    for c in rule.conditions:
        click.echo(f"  when  {c.field} {c.operator} {json.dumps(c.value)}")
    for a in rule.actions:
        click.echo(f"  send  {a.channel}")


@rules.command("create")
@click.argument("rule_file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def rules_create(ctx: click.Context, rule_file: str, json_output: bool) -> None:
    """Create an alert rule from a YAML or JSON file."""
    data = _load_document(rule_file)
    try:
        req = AlertRuleCreateRequest(**(data or {}))
    except (ValidationError, TypeError) as e:
        click.echo(f"Invalid rule: {e}", err=True)
        sys.exit(1)

    pipeline = _pipeline(ctx)
    try:
        rule = pipeline.rule_store.create_rule(req)
    except (RuleValidationError, RuleStoreError) as e:
        click.echo(f"Invalid rule: {e}", err=True)
        sys.exit(1)

    if json_output:
        _dump(rule.model_dump(mode="json"))
    else:
        click.echo(click.style("Created ", fg="green", bold=True) + rule.rule_id)


@rules.command("list")
@click.option("--owner", default=None, help="Only rules owned by this user")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive rules")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def rules_list(
    ctx: click.Context, owner: str | None, include_inactive: bool, json_output: bool,
) -> None:
    """List alert rules."""
    items = _pipeline(ctx).rule_store.list_rules(owner_id=owner, include_inactive=include_inactive)

    if json_output:
        _dump([r.model_dump(mode="json") for r in items])
        return
    if not items:
        click.echo("No alert rules found.")
        return
    for rule in items:
        flag = "" if rule.is_active else click.style(" (inactive)", fg="red")
        click.echo(
            f"  {rule.rule_id}  {rule.name:<30} owner={rule.owner_id}"
            f"  triggers={rule.trigger_count}{flag}"
        )
    click.echo(f"\n{len(items)} rule(s).")


@rules.command("show")
@click.argument("rule_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def rules_show(ctx: click.Context, rule_id: str, json_output: bool) -> None:
    """Show one alert rule."""
    rule = _pipeline(ctx).rule_store.get_rule(rule_id)
    if rule is None:
        click.echo(f"Alert rule not found: {rule_id}", err=True)
        sys.exit(1)
    if json_output:
        _dump(rule.model_dump(mode="json"))
    else:
        _echo_rule(rule)


@rules.command("disable")
@click.argument("rule_id")
@click.pass_context
def rules_disable(ctx: click.Context, rule_id: str) -> None:
    """Deactivate an alert rule (kept for history)."""
    if not _pipeline(ctx).rule_store.deactivate_rule(rule_id):
        click.echo(f"Alert rule not found: {rule_id}", err=True)
        sys.exit(1)
    click.echo(f"Disabled {rule_id}")


# --- evaluate command ---


@cli.command()
@click.argument("vuln_file")
@click.option("--owner", default=None, help="Only evaluate rules owned by this user")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def evaluate(ctx: click.Context, vuln_file: str, owner: str | None, json_output: bool) -> None:
    """Evaluate a vulnerability record against active rules and dispatch."""
    data = _load_document(vuln_file)
    try:
        vuln = Vulnerability.model_validate(data)
    except ValidationError as e:
        click.echo(f"Invalid vulnerability record: {e}", err=True)
        sys.exit(1)

    pipeline = _pipeline(ctx)
    try:
        outcomes = pipeline.trigger.evaluate_now(vuln, owner_id=owner)
    except RuleStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        _dump([o.to_dict() for o in outcomes])
        return
    if not outcomes:
        click.echo("No active rules.")
        return
    for outcome in outcomes:
        color = _STATUS_COLORS.get(outcome.status, "white")
        click.echo(
            f"  {outcome.rule_id}  "
            + click.style(f"{outcome.status.value.upper():<12}", fg=color)
            + (f" {outcome.dispatch_id}" if outcome.dispatch_id else "")
        )
        for r in outcome.channel_results:
            mark = click.style("ok  ", fg="green") if r.success else click.style("FAIL", fg="red")
            detail = f" ({r.error_message})" if r.error_message else ""
            click.echo(f"      {mark} {r.channel}{detail}")
        if outcome.error:
            click.echo(f"      error: {outcome.error}")


# --- state command ---


@cli.command()
@click.argument("rule_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def state(ctx: click.Context, rule_id: str, json_output: bool) -> None:
    """Show a rule's cooldown and trigger-count state."""
    rule_state = _pipeline(ctx).engine.rule_state(rule_id)
    if rule_state is None:
        click.echo(f"Alert rule not found: {rule_id}", err=True)
        sys.exit(1)

    if json_output:
        _dump(rule_state.model_dump(mode="json"))
        return
    click.echo(f"{rule_state.rule_id}")
    click.echo(f"  active:    {rule_state.is_active}")
    click.echo(f"  triggers:  {rule_state.trigger_count}")
    last = rule_state.last_triggered_at.isoformat() if rule_state.last_triggered_at else "never"
    click.echo(f"  last:      {last}")
    click.echo(f"  in flight: {rule_state.in_flight}")
    click.echo(f"  cooldown:  {rule_state.cooldown_remaining_seconds:.0f}s remaining")
    if rule_state.last_dispatch is not None:
        failed = ", ".join(rule_state.last_dispatch.failed_channels) or "none"
        click.echo(f"  last dispatch: {rule_state.last_dispatch.dispatch_id} (failed: {failed})")


# --- audit commands ---


def _audit_path(ctx: click.Context, log_file: str | None) -> Path:
    if log_file is not None:
        return Path(log_file)
    try:
        return Path(load_config(ctx.obj.get("config_path")).audit_log)
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


@cli.group()
def audit() -> None:
    """Dispatch audit log commands."""


@audit.command("verify")
@click.argument("log_file", required=False)
@click.pass_context
def audit_verify(ctx: click.Context, log_file: str | None) -> None:
    """Verify audit log chain integrity."""
    path = _audit_path(ctx, log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f" - audit log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f" - {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


@audit.command("show")
@click.argument("log_file", required=False)
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--rule", "rule_id", default=None, help="Only dispatches for this rule")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def audit_show(
    ctx: click.Context, log_file: str | None, count: int, rule_id: str | None, json_output: bool,
) -> None:
    """Show recent dispatch results, newest first."""
    path = _audit_path(ctx, log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    results = AuditLogger(path).list_results(rule_id=rule_id, limit=count)

    if json_output:
        _dump([r.model_dump(mode="json") for r in results])
        return
    if not results:
        click.echo("No dispatches found.")
        return
    for result in results:
        ok = sum(1 for r in result.channel_results if r.success)
        color = "green" if result.all_succeeded else "yellow" if ok else "red"
        click.echo(
            f"  {result.completed_at.isoformat()[:19]}  {result.dispatch_id}  "
            f"{result.rule_id}  {result.vulnerability_id:<16} "
            + click.style(f"{ok}/{len(result.channel_results)} ok", fg=color)
        )
    click.echo(f"\n{len(results)} dispatch(es) shown.")


# --- serve command ---


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8430, type=int, help="Port number")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from vulnalert.api.app import create_app

    app = create_app(pipeline=_pipeline(ctx))
    click.echo(f"vulnalert API at http://{host}:{port}/api/docs")
    uvicorn.run(app, host=host, port=port, log_level="info")
