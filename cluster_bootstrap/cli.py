"""Main CLI entry point for cluster bootstrap."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from cluster_bootstrap.exceptions import BootstrapError, ConfigurationError, RunCancelled
from cluster_bootstrap.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-bootstrap",
    help="Bootstrap a kubeadm Kubernetes cluster on Vagrant-managed VMs",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

RUNNERS = ("vagrant", "local")

SETTINGS_OPTION = typer.Option("settings.yaml", "--settings", "-s", help="Path to cluster settings")
RUNNER_OPTION = typer.Option(
    "vagrant",
    "--runner",
    "-r",
    help="Where commands run: 'vagrant' (vagrant ssh from the host) or 'local' (this machine)",
)
INVENTORY_SOURCE_OPTION = typer.Option(
    None, "--inventory", "-i", help="Read nodes from an exported inventory instead of planning them"
)
DEADLINE_OPTION = typer.Option(
    None, "--deadline", help="Abort the whole run after this many seconds"
)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _load_spec(settings: str):
    from cluster_bootstrap.models.cluster import ClusterSpec

    try:
        return ClusterSpec.load(settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        console.print(f"[red]Configuration Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=e.exit_code)


def _load_nodes(spec, inventory: str | None):
    from cluster_bootstrap.inventory import InventoryError, InventoryManager
    from cluster_bootstrap.provisioner import plan_nodes

    if inventory is None:
        return plan_nodes(spec)
    try:
        return InventoryManager(inventory).get_nodes()
    except InventoryError as e:
        console.print(f"[red]Inventory Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)


def _build_context(spec, settings: str, runner: str, deadline: float | None = None):
    """Wire the runner and the two views of the shared folder for one run."""
    from cluster_bootstrap.context import RunContext
    from cluster_bootstrap.runner import LocalRunner, VagrantRunner

    if runner not in RUNNERS:
        console.print(f"[red]Error:[/red] Unknown runner '{runner}'. Choose from: {', '.join(RUNNERS)}")
        raise typer.Exit(code=1)

    folder = spec.shared_folder
    if runner == "vagrant":
        vagrant_dir = Path(settings).resolve().parent
        shared_dir = vagrant_dir / folder.host_path

        def factory(node):
            return VagrantRunner(node.hostname, vagrant_dir=vagrant_dir)

    else:
        shared_dir = Path(folder.vm_path)

        def factory(node):
            return LocalRunner(node.hostname)

    logger.debug(f"Shared folder: {shared_dir} (nodes see {folder.vm_path})")
    return RunContext(spec, factory, shared_dir, folder.vm_path, deadline=deadline)


def _nodes_table(nodes, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Hostname", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Public IP", style="green")
    table.add_column("Private IP", style="green")
    table.add_column("CPU")
    table.add_column("Memory (MB)")
    table.add_column("Disk (MB)")
    for node in nodes:
        table.add_row(
            node.hostname,
            node.role,
            str(node.public_ip),
            str(node.private_ip),
            str(node.cpu),
            str(node.memory),
            str(node.disk_size),
        )
    return table


def _print_failure(failure) -> None:
    console.print(
        f"\n[red]✗ {failure.node}: stage '{failure.stage}' failed "
        f"after {failure.attempts} attempt(s)[/red]"
    )
    console.print(f"  {getattr(failure.cause, 'message', failure.cause)}")
    diagnostics = getattr(failure.cause, "diagnostics", None) or getattr(
        failure.cause, "details", None
    )
    if diagnostics:
        console.print("\n[bold]Diagnostics:[/bold]")
        console.print(diagnostics, markup=False, highlight=False)


def _print_node_reports(node_reports) -> None:
    table = Table(title="Stage Results")
    table.add_column("Node", style="cyan")
    table.add_column("Stage", style="magenta")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Elapsed")

    for node_report in node_reports:
        for result in node_report.results:
            if result.status.value == "failed":
                status = f"[red]{result.status.value}[/red]"
            elif result.status.value == "retried-then-success":
                status = f"[yellow]{result.status.value}[/yellow]"
            else:
                status = f"[green]{result.status.value}[/green]"
            table.add_row(
                result.node, result.stage, status, str(result.attempts), f"{result.elapsed:.1f}s"
            )
    console.print(table)

    for node_report in node_reports:
        if node_report.failure is not None:
            _print_failure(node_report.failure)


def _print_validation(report) -> None:
    table = Table(title="Post-Join Validation")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_column("Detail")
    for check in report.checks:
        result = "[green]✓ pass[/green]" if check.passed else "[red]✗ fail[/red]"
        table.add_row(check.name, result, check.detail)
    console.print(table)


def _run_validation(spec, nodes, kubeconfig: Path, wait: float):
    from cluster_bootstrap.validator import PostJoinValidator

    validator = PostJoinValidator.from_kubeconfig(kubeconfig, spec, nodes)
    report = validator.validate(wait_timeout=wait)
    _print_validation(report)
    return report


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_bootstrap import __version__

    typer.echo(f"cluster-bootstrap version {__version__}")


@app.command()
def check_config(settings: str = SETTINGS_OPTION) -> None:
    """
    Validate the settings file without touching any node.

    Reports every invalid field, then a summary of the cluster it describes.
    """
    spec = _load_spec(settings)

    table = Table(title=f"Cluster '{spec.cluster_name}'")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Environment", spec.environment or "-")
    table.add_row("Kubernetes", spec.software.kubernetes)
    table.add_row("CRI-O", spec.software.crio)
    table.add_row("Calico", spec.software.calico)
    table.add_row("Pod CIDR", spec.network.pod_cidr)
    table.add_row("Service CIDR", spec.network.service_cidr)
    table.add_row("DNS servers", spec.network.dns_servers_csv)
    table.add_row("Workers", str(spec.nodes.workers.count))
    table.add_row("Shared folder", f"{spec.shared_folder.host_path} -> {spec.shared_folder.vm_path}")
    table.add_row("Argo CD", "yes" if spec.devops_tools.install_argo else "no")
    table.add_row("node_exporter", "yes" if spec.monitoring.enable_node_exporter else "no")
    console.print(table)
    console.print("\n[green]✓[/green] Settings are valid")


@app.command()
def plan(
    settings: str = SETTINGS_OPTION,
    inventory: str | None = typer.Option(
        None, "--inventory", "-i", help="Also export the plan as an Ansible inventory file"
    ),
) -> None:
    """
    Show the node descriptors derived from the settings.

    Hostnames and addresses are computed exactly as the bootstrap run uses them.
    """
    from cluster_bootstrap.inventory import InventoryError, InventoryManager
    from cluster_bootstrap.provisioner import plan_nodes

    spec = _load_spec(settings)
    nodes = plan_nodes(spec)
    console.print(_nodes_table(nodes, f"Planned nodes for '{spec.cluster_name}'"))

    if inventory:
        try:
            InventoryManager(inventory).export_nodes(spec, nodes)
        except InventoryError as e:
            console.print(f"[red]Inventory Error:[/red] {e}")
            raise typer.Exit(code=1)
        console.print(f"\n[green]✓[/green] Inventory written to {inventory}")


@app.command()
def up(
    settings: str = SETTINGS_OPTION,
    runner: str = RUNNER_OPTION,
    inventory: str | None = INVENTORY_SOURCE_OPTION,
    parallel: int = typer.Option(1, "--parallel", "-p", min=1, help="Worker pipelines run at once"),
    deadline: float | None = DEADLINE_OPTION,
    skip_validation: bool = typer.Option(
        False, "--skip-validation", help="Do not run post-join validation"
    ),
    validation_timeout: float = typer.Option(
        300, "--validation-timeout", help="Seconds to wait for post-join checks to pass"
    ),
) -> None:
    """
    Bootstrap the whole cluster: control plane first, then every worker.

    Exit codes: 0 success, 1 configuration error, 2 stage failure,
    3 readiness timeout, 130 cancelled.
    """
    from cluster_bootstrap.orchestrator import BootstrapOrchestrator

    spec = _load_spec(settings)
    nodes = _load_nodes(spec, inventory)
    ctx = _build_context(spec, settings, runner, deadline)
    orchestrator = BootstrapOrchestrator(ctx, nodes=nodes, parallel=parallel)

    console.print(f"\n[bold cyan]Bootstrapping cluster '{spec.cluster_name}'[/bold cyan]")
    console.print(_nodes_table(nodes, "Nodes"))

    try:
        report = orchestrator.run()
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Bootstrap interrupted by user[/yellow]")
        raise typer.Exit(code=RunCancelled.exit_code)

    _print_node_reports(report.nodes)
    console.print(f"\n[bold]Elapsed:[/bold] {report.elapsed:.1f}s")

    if not report.succeeded:
        console.print("\n[red]✗ Cluster bootstrap failed[/red]")
        raise typer.Exit(code=report.exit_code)

    console.print("\n[green]✓ All node pipelines completed[/green]")
    if skip_validation:
        return

    try:
        validation = _run_validation(spec, nodes, ctx.kubeconfig_path, validation_timeout)
    except BootstrapError as e:
        console.print(f"[red]Validation Error:[/red] {e.message}")
        raise typer.Exit(code=2)
    if not validation.passed:
        console.print("\n[red]✗ Post-join validation failed[/red]")
        raise typer.Exit(code=validation.exit_code)
    console.print("\n[green]✓ Cluster is ready[/green]")


@app.command()
def control(
    settings: str = SETTINGS_OPTION,
    runner: str = RUNNER_OPTION,
    inventory: str | None = INVENTORY_SOURCE_OPTION,
    deadline: float | None = DEADLINE_OPTION,
) -> None:
    """Run only the control-plane pipeline."""
    from cluster_bootstrap.orchestrator import BootstrapOrchestrator

    spec = _load_spec(settings)
    ctx = _build_context(spec, settings, runner, deadline)
    orchestrator = BootstrapOrchestrator(ctx, nodes=_load_nodes(spec, inventory))

    try:
        node_report = orchestrator.run_control_plane()
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        ctx.cancel()
        console.print("\n[yellow]Control-plane pipeline interrupted by user[/yellow]")
        raise typer.Exit(code=RunCancelled.exit_code)

    _print_node_reports([node_report])
    if not node_report.succeeded:
        raise typer.Exit(code=node_report.failure.exit_code)
    console.print(f"\n[green]✓[/green] Join artifact published at {ctx.join_artifact_path}")


@app.command()
def worker(
    hostname: str = typer.Argument(..., help="Hostname of the worker to bootstrap"),
    settings: str = SETTINGS_OPTION,
    runner: str = RUNNER_OPTION,
    inventory: str | None = INVENTORY_SOURCE_OPTION,
    deadline: float | None = DEADLINE_OPTION,
) -> None:
    """
    Run the pipeline for a single worker.

    The control-plane pipeline must already have published the join artifact.
    """
    from cluster_bootstrap.orchestrator import BootstrapOrchestrator
    from cluster_bootstrap.provisioner import find_node

    spec = _load_spec(settings)
    nodes = _load_nodes(spec, inventory)
    node = find_node(nodes, hostname)
    if node is None or node.is_control:
        known = ", ".join(n.hostname for n in nodes if not n.is_control) or "none"
        console.print(f"[red]Error:[/red] '{hostname}' is not a planned worker (workers: {known})")
        raise typer.Exit(code=1)

    ctx = _build_context(spec, settings, runner, deadline)
    orchestrator = BootstrapOrchestrator(ctx, nodes=nodes)
    try:
        node_report = orchestrator.run_worker(node)
    except KeyboardInterrupt:
        ctx.cancel()
        console.print("\n[yellow]Worker pipeline interrupted by user[/yellow]")
        raise typer.Exit(code=RunCancelled.exit_code)

    _print_node_reports([node_report])
    if not node_report.succeeded:
        raise typer.Exit(code=node_report.failure.exit_code)
    console.print(f"\n[green]✓[/green] {hostname} joined the cluster")


@app.command()
def verify(
    settings: str = SETTINGS_OPTION,
    inventory: str | None = INVENTORY_SOURCE_OPTION,
    kubeconfig: str | None = typer.Option(
        None,
        "--kubeconfig",
        "-k",
        help="Path to kubeconfig (defaults to the one published in the shared folder)",
    ),
    wait: float = typer.Option(0, "--wait", "-w", help="Seconds to keep re-checking until healthy"),
) -> None:
    """Check that every planned node is registered and Ready and system pods are healthy."""
    spec = _load_spec(settings)
    nodes = _load_nodes(spec, inventory)
    if kubeconfig is None:
        kubeconfig_path = Path(settings).resolve().parent / spec.shared_folder.host_path / "config"
    else:
        kubeconfig_path = Path(kubeconfig)

    try:
        report = _run_validation(spec, nodes, kubeconfig_path, wait)
    except BootstrapError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Validation interrupted by user[/yellow]")
        raise typer.Exit(code=RunCancelled.exit_code)

    if not report.passed:
        raise typer.Exit(code=report.exit_code)
    console.print("\n[green]✓ Cluster is healthy[/green]")


@app.command()
def reset(
    hostname: str = typer.Argument(..., help="Hostname of the node to clean up"),
    settings: str = SETTINGS_OPTION,
    runner: str = RUNNER_OPTION,
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation prompt"),
) -> None:
    """
    Undo local Kubernetes state on a node.

    Runs the same cleanup that follows a failed cluster init or join: kubeadm
    reset, iptables flush, CNI removal and container runtime shutdown.
    """
    from cluster_bootstrap.provisioner import find_node, plan_nodes
    from cluster_bootstrap.stages.rollback import cleanup_on_failure

    spec = _load_spec(settings)
    node = find_node(plan_nodes(spec), hostname)
    if node is None:
        console.print(f"[red]Error:[/red] Node '{hostname}' is not part of the plan")
        raise typer.Exit(code=1)

    if not force:
        console.print(f"[yellow]Warning:[/yellow] About to reset Kubernetes state on '{hostname}'")
        if not typer.confirm("Are you sure you want to continue?"):
            console.print("Operation cancelled")
            raise typer.Exit(code=0)

    ctx = _build_context(spec, settings, runner)
    failed = cleanup_on_failure(ctx.runner_for(node))
    if failed:
        console.print(f"[yellow]⚠ Cleanup finished with failed steps:[/yellow] {', '.join(failed)}")
    else:
        console.print(f"[green]✓[/green] {hostname} reset")


if __name__ == "__main__":
    app()
