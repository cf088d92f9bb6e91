"""Command line interface for running and inspecting flowgate workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError

from .config import FlowgateConfig, load_config
from .engine import WorkflowEngine, build_engine
from .errors import FlowgateError
from .models import WorkflowDefinition
from .transports import get_transport
from .triggers import TriggerDispatcher
from .validation import validate_workflow
from .worker import ExecutionWorker

app = typer.Typer(help="CLI for flowgate workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for inspecting executions")
scheduled_app = typer.Typer(help="Commands for scheduled triggers")
approval_app = typer.Typer(help="Commands for approval requests")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(scheduled_app, name="scheduled")
app.add_typer(approval_app, name="approval")

_config: Optional[FlowgateConfig] = None


@app.callback()
def main(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a flowgate YAML config file"
    ),
) -> None:
    """flowgate CLI entry point."""
    global _config
    _config = load_config(str(config_path) if config_path else None)
    logging.basicConfig(
        level=_config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _get_config() -> FlowgateConfig:
    return _config or load_config()


async def _engine() -> WorkflowEngine:
    engine = build_engine(_get_config())
    await engine.definitions.init_db()
    return engine


def _run(coro: Any) -> Any:
    """Run ``coro``, turning flowgate errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except FlowgateError as exc:
        typer.secho(f"{exc.kind}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _load_definition_file(path: Path) -> WorkflowDefinition:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or {}
    try:
        return WorkflowDefinition.model_validate(data)
    except PydanticValidationError as exc:
        typer.secho(f"Invalid workflow definition: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_payload(payload: Optional[str]) -> Any:
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Payload is not valid JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@app.command("serve")
def serve(host: str = "127.0.0.1", port: int = 8000) -> None:
    """
    Serve the HTTP API (webhook triggers, scheduled sweep, approvals).

    Example:
        flowgate serve --port 8080
    """
    import uvicorn

    from .api import create_app

    engine = build_engine(_get_config())
    transport = get_transport(config=_get_config())
    dispatcher = TriggerDispatcher(engine, transport, _get_config().transport.topic)
    uvicorn.run(create_app(engine, dispatcher), host=host, port=port)


@app.command("worker")
def worker(lifespan: Optional[float] = None) -> None:
    """
    Run a worker that executes webhook runs queued for asynchronous execution.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        flowgate worker --lifespan 300
    """
    config = _get_config()

    async def _work() -> None:
        engine = await _engine()
        async with get_transport(config=config) as transport:
            await ExecutionWorker(transport, engine, config.transport.topic).start(
                lifespan=lifespan
            )

    typer.echo(f"Starting worker on topic: {config.transport.topic}")
    _run(_work())


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Validate a workflow definition file (YAML or JSON).

    Example:
        flowgate workflow validate ./workflows/triage.yaml
    """
    definition = _load_definition_file(path)
    result = validate_workflow(definition)
    for issue in result.warnings:
        typer.secho(f"warning [{issue.code}] {issue.message}", fg=typer.colors.YELLOW)
    if not result.valid:
        for issue in result.errors:
            typer.secho(f"error [{issue.code}] {issue.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {definition.id} is valid")


@workflow_app.command("import")
def workflow_import(path: Path) -> None:
    """Validate a definition file and save it to the definition store."""
    definition = _load_definition_file(path)
    result = validate_workflow(definition)
    if not result.valid:
        for message in result.messages():
            typer.secho(message, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _save() -> None:
        engine = await _engine()
        await engine.definitions.save_workflow(definition)

    _run(_save())
    typer.echo(f"Saved workflow {definition.id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflow definitions."""

    async def _list() -> list[WorkflowDefinition]:
        engine = await _engine()
        return await engine.definitions.list_workflows()

    definitions = _run(_list())
    if not definitions:
        typer.echo("No workflows found")
        return
    for definition in definitions:
        state = "active" if definition.is_active else "inactive"
        typer.echo(
            f"{definition.id}\t{definition.trigger_type.value}\t{state}\t{definition.name}"
        )


@workflow_app.command("run")
def workflow_run(
    workflow_id: str,
    payload: Optional[str] = typer.Option(None, help="Trigger payload as JSON"),
) -> None:
    """
    Trigger a workflow manually and wait until it finishes or suspends.

    Example:
        flowgate workflow run triage --payload '{"ticket": 42}'
    """
    data = _parse_payload(payload)

    async def _trigger():
        engine = await _engine()
        return await TriggerDispatcher(engine).trigger_manual(workflow_id, data)

    execution = _run(_trigger())
    typer.echo(f"Execution {execution.id}: {execution.status}")
    if execution.output is not None:
        typer.echo(f"Output: {json.dumps(execution.output, default=str)}")
    if execution.error is not None:
        typer.secho(f"Error: {execution.error.message}", fg=typer.colors.RED)


@workflow_app.command("deactivate")
def workflow_deactivate(workflow_id: str) -> None:
    """Deactivate a workflow and cancel its executions waiting for approval."""

    async def _deactivate() -> list[str]:
        engine = await _engine()
        return await engine.deactivate_workflow(workflow_id)

    cancelled = _run(_deactivate())
    typer.echo(f"Workflow {workflow_id} deactivated; cancelled {len(cancelled)} execution(s)")


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow"),
    status: Optional[str] = None,
    limit: int = 50,
) -> None:
    """
    List executions, newest first.

    Example:
        flowgate execution list --workflow triage --status waiting_approval
    """

    async def _list():
        engine = await _engine()
        return await engine.repository.list_executions(
            workflow_id=workflow_id, status=status, limit=limit
        )

    executions = _run(_list())
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_id}\t{execution.status}\t"
            f"{execution.started_at.isoformat()}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step-by-step results."""

    async def _show():
        engine = await _engine()
        return await engine.get_execution(execution_id)

    execution = _run(_show())
    typer.echo(f"Execution {execution.id}: {execution.status}")
    if execution.trigger_payload is not None:
        typer.echo(f"Payload: {json.dumps(execution.trigger_payload, default=str)}")
    for result in execution.step_results:
        line = f"- {result.step_id}: {result.status}"
        if result.branch:
            line += f" [{result.branch}]"
        if result.error is not None:
            line += f" ({result.error.message})"
        typer.echo(line)
    if execution.waiting_step_id:
        typer.echo(f"Waiting at: {execution.waiting_step_id}")
    if execution.error is not None:
        typer.secho(f"Error: {execution.error.message}", fg=typer.colors.RED)


@execution_app.command("cancel")
def execution_cancel(execution_id: str, reason: str = "cancelled by user") -> None:
    """Cancel a pending, running or waiting execution."""

    async def _cancel():
        engine = await _engine()
        return await engine.cancel_execution(execution_id, reason)

    execution = _run(_cancel())
    typer.echo(f"Execution {execution.id}: {execution.status}")


@scheduled_app.command("run")
def scheduled_run() -> None:
    """
    Run one scheduled sweep; meant to be called every minute by an external timer.

    Example:
        * * * * * flowgate scheduled run
    """

    async def _sweep():
        engine = await _engine()
        return await TriggerDispatcher(engine).run_scheduled()

    results = _run(_sweep())
    if not results:
        typer.echo("No scheduled workflows")
        return
    for result in results:
        if result.error:
            typer.secho(f"{result.workflow_id}\terror\t{result.error}", fg=typer.colors.RED)
        elif result.executed:
            typer.echo(f"{result.workflow_id}\tstarted\t{result.execution_id}\t{result.status}")
        else:
            typer.echo(f"{result.workflow_id}\tnot due")


@approval_app.command("respond")
def approval_respond(
    request_id: str,
    decision: str = typer.Option(..., help="approve or reject"),
    responder: Optional[str] = None,
    notes: Optional[str] = None,
) -> None:
    """
    Approve or reject a pending approval request and resume its execution.

    Example:
        flowgate approval respond 1f2e... --decision approve --responder alice
    """

    async def _respond():
        engine = await _engine()
        return await engine.submit_approval_response(request_id, decision, responder, notes)

    execution = _run(_respond())
    typer.echo(f"Execution {execution.id}: {execution.status}")


@approval_app.command("sweep")
def approval_sweep() -> None:
    """Expire overdue approval requests and resume their executions."""

    async def _sweep():
        engine = await _engine()
        return await engine.process_approval_timeouts()

    expired = _run(_sweep())
    if not expired:
        typer.echo("No approvals expired")
        return
    for request in expired:
        typer.echo(f"Expired {request.id} (execution {request.execution_id})")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
