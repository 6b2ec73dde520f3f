# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Dict, Tuple

import click

from gateci import settings
from gateci.composer import expand_pipeline
from gateci.errors import ExpansionError
from gateci.execution import PipelineState, run_plan
from gateci.git_facts.git import current_branch, has_changes_since
from gateci.loader import find_pipeline_files, load_pipeline, resolve_pipeline
from gateci.model import PipelineDefinition
from gateci.pipelines import list_pipelines
from gateci.plan import dumps
from gateci.triggers import TriggerEvent, TriggerPolicy
from gateci.ui.console import Console, get_console, set_console


def parse_parameters(pairs: Tuple[str, ...]) -> Dict[str, str]:
    """Turn ``-p key=value`` options into a dict. Values stay strings."""
    out: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="-p")
        out[key.strip()] = value
    return out


def _load(ctx, name_or_path: str) -> PipelineDefinition:
    console = get_console()
    try:
        return resolve_pipeline(name_or_path, ctx.obj["pipeline_dir"])
    except FileNotFoundError:
        console.print_error(
            "Pipeline not found",
            f"Could not find pipeline: {name_or_path}",
            details=[
                "Looked for:",
                "  a registered pipeline name",
                "  a file path",
                f"  {ctx.obj['pipeline_dir']}/{name_or_path}.yml|.yaml|.py",
            ],
            suggestion="List available pipelines:\n  gateci list",
        )
        sys.exit(1)
    except ExpansionError as e:
        _fail_expansion(e, f"Could not load {name_or_path}")


def _fail_expansion(e: ExpansionError, title: str) -> None:
    get_console().print_error(
        title,
        f"{e.kind}: {e.message}",
        details=[f"{k}={v}" for k, v in e.details.items()] or None,
    )
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (log expansion decisions, show stack traces)",
)
@click.option(
    "--pipeline-dir",
    default=None,
    help=f"Directory with pipeline files (defaults to $GATECI_PIPELINE_DIR or {settings.PIPELINE_DIR!r})",
)
@click.pass_context
def cli(ctx, debug, pipeline_dir):
    """gateci: expand pipeline templates into staged release plans."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["pipeline_dir"] = pipeline_dir or settings.PIPELINE_DIR


@cli.command("list")
@click.pass_context
def list_cmd(ctx):
    """List registered pipelines and pipeline files."""
    console = get_console()
    console.print_header("Registered pipelines")
    for definition in list_pipelines():
        console.print_info(f"  {definition.name}: {definition.description}")

    files = find_pipeline_files(ctx.obj["pipeline_dir"])
    if files:
        console.print_header(f"Pipeline files in {ctx.obj['pipeline_dir']}")
        for path in files:
            try:
                definition = load_pipeline(path)
                console.print_info(f"  {path.name} -> {definition.name}")
            except (ExpansionError, TypeError) as e:
                console.print_info(f"  {path.name} (invalid: {e})")


@cli.command()
@click.argument("pipeline")
@click.option("-p", "--param", "params", multiple=True, help="Invocation parameter as key=value (repeatable)")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(settings.OUTPUT_FORMATS),
    default=None,
    help="Plan format (defaults to $GATECI_OUTPUT_FORMAT or json)",
)
@click.option("--output", "-o", default=None, help="Write the plan to this file instead of stdout")
@click.option("--summary", is_flag=True, default=False, help="Print a stage/job summary instead of the plan")
@click.pass_context
def expand(ctx, pipeline, params, fmt, output, summary):
    """Expand PIPELINE (name or file) into a concrete plan."""
    console = get_console()
    definition = _load(ctx, pipeline)

    try:
        plan = expand_pipeline(definition, parse_parameters(params))
    except ExpansionError as e:
        _fail_expansion(e, f"Expansion of {definition.name} failed")

    if summary:
        console.print_plan_summary(plan)
        return

    text = dumps(plan, fmt or settings.OUTPUT_FORMAT)
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print_info(f"Wrote plan for {plan.name} ({len(plan.jobs)} jobs) to {output}")
    else:
        click.echo(text)


@cli.command()
@click.argument("pipeline")
@click.option("--event", type=click.Choice(["pr", "schedule", "manual"]), required=True, help="What happened")
@click.option("--branch", default=None, help="Target/source branch (defaults to the current git branch)")
@click.option("--unchanged", is_flag=True, default=False, help="Schedule only: the branch has not changed")
@click.option("--since", default=None, help="Schedule only: compare HEAD with this ref (last scheduled run) to decide --unchanged")
@click.pass_context
def triggers(ctx, pipeline, event, branch, unchanged, since):
    """Report whether an event would queue PIPELINE."""
    console = get_console()
    definition = _load(ctx, pipeline)

    if branch is None and event != "manual":
        try:
            branch = current_branch()
            console.print_debug(f"Using git branch: {branch}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine branch",
                "No --branch specified and git could not report the current branch.",
                suggestion=f"Specify --branch explicitly:\n  gateci triggers {pipeline} --event {event} --branch master",
            )
            sys.exit(1)

    changed = not unchanged
    if event == "schedule" and since is not None and not unchanged:
        try:
            changed = has_changes_since(since)
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not compare revisions",
                f"git could not resolve HEAD or {since!r}.",
                suggestion="Pass --unchanged explicitly instead of --since.",
            )
            sys.exit(1)
        console.print_debug(f"Changes since {since}: {changed}")

    policy = definition.triggers or TriggerPolicy()
    hit = policy.first_satisfied([TriggerEvent(kind=event, branch=branch, changed=changed)])
    console.print_trigger(definition.name, hit.kind if hit is not None else None)
    if hit is not None and hit.kind == "manual" and policy.requires_explicit_parameters:
        required = ", ".join(f"{k}: {v}" for k, v in policy.manual.parameters.items())
        console.print_info(f"  requires: {required}")
    if hit is None:
        sys.exit(1)


@cli.command()
@click.argument("pipeline")
@click.option("-p", "--param", "params", multiple=True, help="Invocation parameter as key=value (repeatable)")
@click.option("--fail", "fail_jobs", multiple=True, help="Job name that should report failure (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers per stage")
@click.pass_context
def simulate(ctx, pipeline, params, fail_jobs, workers):
    """Walk PIPELINE through the stage state machine without running anything."""
    console = get_console()
    definition = _load(ctx, pipeline)

    try:
        plan = expand_pipeline(definition, parse_parameters(params))
    except ExpansionError as e:
        _fail_expansion(e, f"Expansion of {definition.name} failed")

    unknown = sorted(set(fail_jobs) - {j.name for j in plan.jobs})
    if unknown:
        console.print_error(
            "Unknown job",
            f"--fail names job(s) not in {plan.name}: {', '.join(unknown)}",
            suggestion=f"See the job names with:\n  gateci expand {pipeline} --summary",
        )
        sys.exit(1)

    failing = set(fail_jobs)
    try:
        execution = run_plan(plan, lambda job: job.name not in failing, max_workers=workers)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_info(" -> ".join(execution.history))
    if execution.state != PipelineState.SUCCEEDED:
        sys.exit(1)


if __name__ == "__main__":
    cli()
