"""Main CLI entry point."""

import getpass
import sys
import uuid
from typing import Optional, Tuple

import boto3
import click
from rich.panel import Panel

from stackflow.capacity.aws import AwsFleet
from stackflow.capacity.fleet import BaseFleet, SimulatedFleet
from stackflow.cli.output import (
    console,
    print_changeset,
    print_deployment_result,
    print_error,
    print_exports,
    print_graph,
    print_status,
    print_teardown_result,
)
from stackflow.config.parser import Config, ConfigValidationError
from stackflow.orchestrator.approval import (
    ApprovalGate,
    AutoApprovalGate,
    InteractiveApprovalGate,
    StateApprovalGate,
)
from stackflow.orchestrator.orchestrator import DeploymentOrchestrator
from stackflow.provisioners.base import BaseProvisioner
from stackflow.provisioners.cloudformation import CloudFormationProvisioner
from stackflow.provisioners.simulated import SimulatedProvisioner
from stackflow.state.manager import StateManager
from stackflow.state.models import ApprovalRecord
from stackflow.utils.clock import Clock
from stackflow.utils.errors import ConfigurationError, CredentialError, DeploymentError, ExitCode
from stackflow.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@click.group()
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.pass_context
def cli(ctx, log_level):
    """Deploy interdependent infrastructure stacks in dependency order."""
    ctx.ensure_object(dict)
    ctx.obj['log_level'] = log_level


def load_config(ctx: click.Context, stackset: str) -> Config:
    """Load the stack-set file and set up logging next to its state."""
    try:
        config = Config(stackset).load()
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e), markup=False)
        sys.exit(ExitCode.CONFIGURATION)

    setup_logging(ctx.obj.get('log_level', 'info'), log_dir=config.log_dir)
    return config


def create_backend(config: Config, clock: Clock) -> Tuple[BaseProvisioner, BaseFleet]:
    """Provisioner and fleet driver for ``settings.backend``."""
    settings = config.settings
    if settings.backend == 'simulated':
        # Unit IDs must not collide with units persisted by earlier runs
        return SimulatedProvisioner(), SimulatedFleet(clock=clock, id_prefix=f"i-sim{uuid.uuid4().hex[:6]}-")

    try:
        session = boto3.Session(profile_name=settings.profile, region_name=settings.region)
    except Exception as e:
        raise CredentialError(f"Error creating AWS session: {e}", cause=e)

    provisioner = CloudFormationProvisioner(
        session,
        name_prefix=config.project_name,
        tags={'stackflow:project': config.project_name, **config.stack_set.project.tags}
    )
    return provisioner, AwsFleet(session, clock=clock)


def create_orchestrator(
    config: Config,
    approval_gate: Optional[ApprovalGate] = None,
    state_manager: Optional[StateManager] = None
) -> DeploymentOrchestrator:
    """Create deployment orchestrator with all dependencies."""
    clock = Clock()
    state_manager = state_manager or StateManager(str(config.state_path))
    provisioner, fleet = create_backend(config, clock)

    return DeploymentOrchestrator(
        config=config.stack_set,
        state_manager=state_manager,
        provisioner=provisioner,
        approval_gate=approval_gate or AutoApprovalGate(),
        fleet=fleet,
        clock=clock
    )


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.option('--stack', 'stacks', multiple=True, help='Deploy only this stack (repeatable)')
@click.option('--approve-risky', is_flag=True, help='Apply risky change sets without waiting for approval')
@click.option('--approval-timeout', type=float, help='Seconds to wait for approval of a risky change set')
@click.option('--interactive', is_flag=True, help='Ask on the terminal before applying risky change sets')
@click.pass_context
def deploy(ctx, stackset, stacks, approve_risky, approval_timeout, interactive):
    """Deploy a stack set in dependency order."""
    config = load_config(ctx, stackset)

    console.print(Panel.fit(
        f"[bold]Deploying {config.project_name}[/bold]\n"
        f"Stacks: {', '.join(stacks) if stacks else 'all'}\n"
        f"Backend: {config.settings.backend}\n"
        f"Risky changes: {'auto-approved' if approve_risky else 'require approval'}",
        title="Deployment Configuration",
        border_style="cyan"
    ))

    try:
        state_manager = StateManager(str(config.state_path))
        if approve_risky:
            gate = AutoApprovalGate()
        elif interactive:
            gate = InteractiveApprovalGate()
        else:
            gate = StateApprovalGate(
                state_manager,
                timeout=approval_timeout if approval_timeout is not None else config.settings.approval_timeout,
                poll_interval=config.settings.approval_poll_interval
            )
        orchestrator = create_orchestrator(config, gate, state_manager)
        result = orchestrator.deploy(list(stacks) or None)
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        # Interrupts while a wave runs become a cancelled result instead
        console.print("[yellow]Deployment interrupted[/yellow]")
        sys.exit(ExitCode.ROLLING_UPDATE)

    print_deployment_result(result)
    sys.exit(result.exit_code)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.option('--stack', 'stacks', multiple=True, help='Tear down only this stack (repeatable)')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def teardown(ctx, stackset, stacks, yes):
    """Destroy deployed stacks, dependents first."""
    config = load_config(ctx, stackset)
    target = ', '.join(stacks) if stacks else f"all stacks of {config.project_name}"

    if not yes and not click.confirm(f"Destroy {target}?", default=False):
        console.print("[yellow]Teardown cancelled[/yellow]")
        return

    try:
        orchestrator = create_orchestrator(config)
        result = orchestrator.teardown(list(stacks) or None)
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    print_teardown_result(result)
    sys.exit(result.exit_code)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.argument('stack')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.pass_context
def plan(ctx, stackset, stack, output_format):
    """Show the change set the next deploy of STACK would apply."""
    config = load_config(ctx, stackset)
    try:
        changeset = create_orchestrator(config).plan(stack)
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    if output_format == 'json':
        console.print_json(data=changeset.to_dict())
    else:
        print_changeset(changeset)


def _record_decision(ctx, stackset, stack, changeset_id, decision, actor, reason) -> None:
    config = load_config(ctx, stackset)
    try:
        if config.get_stack(stack) is None:
            raise ConfigurationError(
                f"Unknown stack: {stack}",
                suggestions=[f"Declared stacks: {', '.join(s.name for s in config.stacks)}"]
            )
        record = ApprovalRecord(
            stack=stack,
            changeset_id=changeset_id,
            decision=decision,
            actor=actor or getpass.getuser(),
            reason=reason
        )
        with StateManager(str(config.state_path)).transaction(config.project_name) as state:
            state.put_approval(record)
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    logger.info(f"Change set {changeset_id} {decision} by {record.actor}", extra={'stack_id': stack})
    style = "green" if decision == "approved" else "red"
    console.print(f"[{style}]Change set {changeset_id} for {stack} {decision}[/{style}]")


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.argument('stack')
@click.argument('changeset_id')
@click.option('--actor', help='Who is approving (defaults to the current user)')
@click.option('--reason', help='Why the change set is approved')
@click.pass_context
def approve(ctx, stackset, stack, changeset_id, actor, reason):
    """Approve a risky change set for STACK."""
    _record_decision(ctx, stackset, stack, changeset_id, "approved", actor, reason)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.argument('stack')
@click.argument('changeset_id')
@click.option('--actor', help='Who is rejecting (defaults to the current user)')
@click.option('--reason', help='Why the change set is rejected')
@click.pass_context
def reject(ctx, stackset, stack, changeset_id, actor, reason):
    """Reject a risky change set for STACK."""
    _record_decision(ctx, stackset, stack, changeset_id, "rejected", actor, reason)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='Output format')
@click.pass_context
def exports(ctx, stackset, output_format):
    """List published exports and the stacks importing them."""
    config = load_config(ctx, stackset)
    try:
        registry = create_orchestrator(config).registry
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    if output_format == 'json':
        console.print_json(data={name: record.model_dump(mode='json') for name, record in registry.snapshot().items()})
    else:
        print_exports(registry)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.pass_context
def status(ctx, stackset):
    """Show the persisted state of every stack."""
    config = load_config(ctx, stackset)
    try:
        records = create_orchestrator(config).status()
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    print_status(config.project_name, records)


@cli.command()
@click.argument('stackset', type=click.Path(dir_okay=False))
@click.pass_context
def graph(ctx, stackset):
    """Show deployment waves and imports."""
    config = load_config(ctx, stackset)
    try:
        waves = create_orchestrator(config).build_graph().get_deployment_waves()
    except DeploymentError as e:
        print_error(e)
        sys.exit(e.exit_code)

    print_graph(config.project_name, waves, {s.name: list(s.imports) for s in config.stacks})


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
