"""
Command Line Interface for meanship.
"""
import json
import os
import click
from ..CONVERTERS.to_compose import ComposeConverter
from ..CONVERTERS.to_nginx import NginxConverter
from ..MANAGERS.proxy_router import ProxyRouter
from ..MANAGERS.state_store import DeploymentStateStore, RunHistory
from ..MODELS.pipeline_run import RunStatus, TriggerEvent
from ..MODELS.settings import PipelineSettings
from ..PIPELINE.coordinator import PipelineCoordinator
from ..errors import PipelineError


@click.group()
@click.option('--env-file', default='.env', help='dotenv file with MEANSHIP_* settings')
@click.option('--file', '-f', 'descriptor', default=None, help='Compose descriptor path')
@click.pass_context
def cli(ctx, env_file, descriptor):
    """
    meanship - build, publish and deploy the three-tier stack.

    Builds the backend and frontend images, pushes them to the registry and
    reconciles the compose topology on the remote host.
    """
    ctx.ensure_object(dict)
    try:
        ctx.obj['settings'] = PipelineSettings.load(env_file=env_file, descriptor_path=descriptor)
    except PipelineError as e:
        raise click.ClickException(str(e))


def _coordinator(ctx) -> PipelineCoordinator:
    factory = ctx.obj.get('coordinator_factory', PipelineCoordinator.from_settings)
    return factory(ctx.obj['settings'])


def _report(run) -> None:
    click.echo(f"Run {run.run_id}  commit={run.commit or '-'}  tag={run.tag}  status={run.status.value}")
    click.echo(f"{'STAGE':18} {'STATUS':10} {'TIME':>7}  DETAIL")
    click.echo("-" * 60)
    for stage in run.stages:
        detail = stage.message.splitlines()[0] if stage.message else ""
        if stage.error_kind:
            detail = f"{stage.error_kind}: {detail}"
        click.echo(f"{stage.name:18} {stage.status.value:10} {stage.duration:6.1f}s  {detail}")


def _execute(ctx, fn):
    try:
        run = fn()
    except PipelineError as e:
        raise click.ClickException(f"{e.kind}: {e}")
    if run is None:
        return
    _report(run)
    if run.status != RunStatus.SUCCEEDED:
        ctx.exit(1)


@cli.command()
@click.option('--commit', '-c', envvar='GITHUB_SHA', default=None, help='Commit id to build and deploy')
@click.option('--sequential', is_flag=True, help='Build and publish one component at a time')
@click.pass_context
def run(ctx, commit, sequential):
    """Build, publish and deploy one commit."""
    if sequential:
        ctx.obj['settings'].parallel = False
    coordinator = _coordinator(ctx)
    _execute(ctx, lambda: coordinator.run(commit))


@cli.command()
@click.option('--event-file', envvar='GITHUB_EVENT_PATH', type=click.Path(exists=True),
              default=None, help='Push event payload (JSON)')
@click.option('--ref', default=None, help='Pushed ref, when no event file is given')
@click.option('--commit', default=None, help='Pushed commit, when no event file is given')
@click.pass_context
def trigger(ctx, event_file, ref, commit):
    """Run the pipeline for a push event; non-mainline pushes are ignored."""
    if event_file:
        with open(event_file, 'r') as f:
            event = TriggerEvent.from_github_payload(json.load(f))
    elif ref and commit:
        event = TriggerEvent(ref=ref, commit=commit)
    else:
        raise click.UsageError("Provide --event-file or both --ref and --commit")

    coordinator = _coordinator(ctx)
    _execute(ctx, lambda: coordinator.handle_event(event))


@cli.command()
@click.option('--tag', '-t', default='latest', help='Image tag to render')
@click.pass_context
def validate(ctx, tag):
    """Check the descriptor and its service references."""
    coordinator = _coordinator(ctx)
    try:
        descriptor = coordinator.load_descriptor(tag)
    except PipelineError as e:
        raise click.ClickException(f"{e.kind}: {e}")
    click.echo(f"Descriptor OK: {', '.join(descriptor.services)} on network {descriptor.network}")


@cli.command()
@click.option('--tag', '-t', default='latest', help='Image tag to render')
@click.option('--out', '-o', default='deploy', help='Output directory')
@click.pass_context
def render(ctx, tag, out):
    """Write the remote descriptor and the frontend nginx config."""
    coordinator = _coordinator(ctx)
    try:
        descriptor = coordinator.load_descriptor(tag)
    except PipelineError as e:
        raise click.ClickException(f"{e.kind}: {e}")

    ComposeConverter(descriptor).convert(os.path.join(out, 'docker-compose.yml'), include_build=False)

    backend = descriptor.service('backend')
    port = backend.listening_ports()[0] if backend.listening_ports() else 8080
    NginxConverter(ProxyRouter(backend_host=backend.name, backend_port=port)).convert(
        os.path.join(out, 'nginx.conf')
    )


@cli.command()
@click.option('--limit', '-n', default=10, help='Number of runs to show')
@click.pass_context
def runs(ctx, limit):
    """List recent pipeline runs."""
    history = RunHistory(ctx.obj['settings'].state_dir)
    entries = history.list(limit)
    if not entries:
        click.echo("No runs recorded.")
        return
    click.echo(f"{'RUN':14} {'STATUS':10} {'TAG':14} {'FAILED STAGE':18} STARTED")
    click.echo("-" * 80)
    for entry in entries:
        failed = f"{entry.failed_stage} ({entry.error_kind})" if entry.failed_stage else ""
        click.echo(f"{entry.run_id:14} {entry.status.value:10} {entry.tag[:14]:14} {failed:18} {entry.started_at}")


@cli.command()
@click.argument('run_id', required=False)
@click.pass_context
def logs(ctx, run_id):
    """Show the stage messages of a run (the latest one by default)."""
    history = RunHistory(ctx.obj['settings'].state_dir)
    if run_id:
        entry = history.get(run_id)
    else:
        entries = history.list(1)
        entry = entries[0] if entries else None
    if entry is None:
        raise click.ClickException(f"No run {run_id}" if run_id else "No runs recorded.")

    _report(entry)
    for stage in entry.stages:
        if stage.message:
            click.echo(f"\n--- {stage.name} ---")
            click.echo(stage.message)


@cli.command()
@click.option('--remote', is_flag=True, help='Read the record kept on the host instead of the local copy')
@click.pass_context
def status(ctx, remote):
    """Show the last recorded deployment state."""
    if remote:
        try:
            state = _coordinator(ctx).reconciler.current_state()
        except PipelineError as e:
            raise click.ClickException(f"{e.kind}: {e}")
    else:
        state = DeploymentStateStore(ctx.obj['settings'].state_dir).load()
    if state.version == 0:
        click.echo("Nothing deployed yet.")
        return
    click.echo(f"Version {state.version}  commit={state.commit or '-'}  updated={state.updated_at}")
    click.echo(f"{'SERVICE':15} {'CONTAINER':30} {'STATE':10} IMAGE")
    click.echo("-" * 80)
    for container in state.containers:
        click.echo(f"{container.service:15} {container.name:30} {container.state:10} {container.image}")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
