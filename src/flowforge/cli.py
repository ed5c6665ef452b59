"""
FlowForge CLI
"""
import asyncio
import json
import sys

import click
from dotenv import load_dotenv

from .config import Settings, configure_logging
from .core import WorkflowEngine, WorkflowParser, build_executors
from .core.parser import find_execution_order
from .core.scheduler import validate_schedule_config
from .exceptions import WorkflowEngineError, ConfigurationError
from .integrations import SmtpMailTransport
from .models.execution import RunStatus
from .storage.repository import InMemoryWorkflowRepository, InMemoryExecutionRepository


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to LOG_LEVEL)')
@click.pass_context
def cli(ctx, log_level):
    """FlowForge automation engine CLI"""
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings: Settings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "flowforge.api:app",
        host=host,
        port=port,
        reload=reload or settings.api_reload
    )


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--payload', default='{}', help='Trigger payload as a JSON object')
@click.pass_obj
def run(settings: Settings, workflow_file, payload):
    """Run a workflow file once with in-memory storage"""
    try:
        trigger_payload = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint='--payload')
    if not isinstance(trigger_payload, dict):
        raise click.BadParameter("payload must be a JSON object", param_hint='--payload')

    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    async def _run():
        workflow_repo = InMemoryWorkflowRepository()
        execution_repo = InMemoryExecutionRepository()
        await workflow_repo.save(workflow)

        engine = WorkflowEngine(
            workflow_repository=workflow_repo,
            execution_repository=execution_repo,
            executors=build_executors(
                mail_transport=SmtpMailTransport(settings.smtp),
                smtp_settings=settings.smtp,
                http_timeout=settings.http_timeout_seconds
            )
        )
        result = await engine.trigger_execution(workflow.id, trigger_payload, triggered_by="cli")
        logs = await execution_repo.list_logs(result.run_id)
        return result, logs

    result, logs = asyncio.run(_run())

    output = result.to_dict()
    output["logs"] = [entry.to_dict() for entry in logs]
    click.echo(json.dumps(output, indent=2, default=str))

    if result.status != RunStatus.COMPLETED:
        sys.exit(1)


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def validate(settings: Settings, workflow_file):
    """Validate a workflow file and its schedule configuration"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    order = find_execution_order(workflow)
    if len(order) != len(workflow.nodes):
        blocked = [node.id for node in workflow.nodes if node.id not in order]
        raise click.ClickException(f"Circular dependency detected among nodes: {', '.join(blocked)}")

    schedule_node = workflow.schedule_node()
    if schedule_node is not None:
        try:
            schedule = validate_schedule_config(schedule_node.config, settings.scheduler_timezone)
        except ConfigurationError as e:
            raise click.ClickException(f"Schedule node '{schedule_node.id}': {e}")
        click.echo(f"Schedule: '{schedule.cron_expression}' ({schedule.timezone or settings.scheduler_timezone})")

    click.echo(f"Workflow '{workflow.name or workflow.id}' is valid")
    click.echo(f"Execution order: {' -> '.join(order)}")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
