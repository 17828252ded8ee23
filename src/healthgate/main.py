"""Main CLI entry point for Healthgate.

This module provides the Typer application for deploying a service image
behind a readiness gate, rolling back to the previous image, and inspecting
local images and the running container.

Usage:
    healthgate deploy v3
    healthgate deploy --timeout 90 --no-rollback
    healthgate deploy v3 --poll-interval 1 --request-timeout 0.5
    healthgate rollback
    healthgate images
    healthgate status

Exit codes for deploy:
    0   the requested image is healthy
    1   the deployment failed and service was not restored
    2   the requested image failed and a rollback restored service
    130 interrupted
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Coroutine, Iterator
from pathlib import Path
from typing import Annotated, Any, Optional, TypeVar

import typer
from docker.errors import DockerException
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healthgate.config import HealthgateConfig, load_config
from healthgate.logging import setup_logging
from healthgate.models import (
    DeploymentAttempt,
    DeploymentOutcome,
    FailureReason,
    ImageRef,
    ImageTag,
    NoPriorImage,
)
from healthgate.orchestrator.deployer import DeploymentOrchestrator
from healthgate.orchestrator.release import (
    EXIT_FAILED,
    EXIT_HEALTHY,
    EXIT_INTERRUPTED,
    ReleaseResult,
    release,
)
from healthgate.orchestrator.report import write_report
from healthgate.orchestrator.rollback import RollbackPlanner
from healthgate.pipeline.container import ContainerRuntime
from healthgate.pipeline.health import HealthProbe
from healthgate.pipeline.registry import ImageRegistry

T = TypeVar("T")

app = typer.Typer(
    name="healthgate",
    help="Healthgate: health-gated container deployments with rollback",
    no_args_is_help=True,
)

console = Console()

_OUTCOME_STYLES = {
    DeploymentOutcome.HEALTHY: "green",
    DeploymentOutcome.ROLLED_BACK: "yellow",
    DeploymentOutcome.FAILED: "red",
    DeploymentOutcome.PENDING: "dim",
}


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded Healthgate configuration
    """

    def __init__(self, config: HealthgateConfig):
        self.config = config


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: HealthgateConfig) -> AppContext:
    """Initialize the global application context."""
    global _app_context
    _app_context = AppContext(config)
    return _app_context


class Components:
    """Adapters and orchestration objects wired from configuration.

    Attributes:
        registry: Local image registry adapter
        runtime: Container runtime adapter
        probe: HTTP readiness probe
        orchestrator: Deployment orchestrator
        planner: Rollback planner
    """

    def __init__(
        self,
        registry: ImageRegistry,
        runtime: ContainerRuntime,
        probe: HealthProbe,
        orchestrator: DeploymentOrchestrator,
        planner: RollbackPlanner,
    ) -> None:
        self.registry = registry
        self.runtime = runtime
        self.probe = probe
        self.orchestrator = orchestrator
        self.planner = planner

    async def close(self) -> None:
        await self.probe.close()
        await self.runtime.close()
        await self.registry.close()


def build_components(config: HealthgateConfig) -> Components:
    """Create the adapters and orchestrator for one CLI invocation."""
    registry = ImageRegistry(config.docker)
    runtime = ContainerRuntime(config.docker)
    probe = HealthProbe(config.health.expected_status_codes)
    orchestrator = DeploymentOrchestrator(
        registry=registry,
        runtime=runtime,
        probe=probe,
        health_config=config.health,
        log_tail_lines=config.deploy.log_tail_lines,
    )
    planner = RollbackPlanner(registry, orchestrator)
    return Components(registry, runtime, probe, orchestrator, planner)


@contextlib.contextmanager
def _cancel_on_signals(
    loop: asyncio.AbstractEventLoop, cancel_event: asyncio.Event
) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation request while the block runs."""

    def signal_handler(sig: int, frame: Any) -> None:
        console.print()
        console.print("[yellow]Interrupt received. Cancelling health polling...[/yellow]")
        loop.call_soon_threadsafe(cancel_event.set)

    previous = {
        sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion, mapping Ctrl+C to exit code 130."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=EXIT_INTERRUPTED)


async def _docker_available(components: Components) -> bool:
    health = await components.runtime.check_docker_health()
    if not health.available:
        console.print(f"[red]Docker daemon unavailable:[/red] {health.error}")
    return health.available


def _probe_table(attempt: DeploymentAttempt) -> Table:
    table = Table(title=f"Health checks ({attempt.target.image.reference})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Checked at")
    table.add_column("Result")
    table.add_column("HTTP", justify="right")
    table.add_column("Detail")
    table.add_column("Time", justify="right")

    for index, check in enumerate(attempt.health_checks, start=1):
        result = "[green]pass[/green]" if check.success else "[red]fail[/red]"
        table.add_row(
            str(index),
            check.checked_at.strftime("%H:%M:%S"),
            result,
            str(check.status_code) if check.status_code is not None else "-",
            check.detail,
            f"{check.duration_seconds:.2f}s",
        )
    return table


def render_attempt(attempt: DeploymentAttempt) -> None:
    """Print an attempt summary, its probe history, and logs on failure."""
    style = _OUTCOME_STYLES[attempt.outcome]
    label = "Rollback" if attempt.is_rollback else "Deployment"
    outcome = attempt.outcome.value
    if attempt.failure_reason is not None:
        outcome = f"{outcome} ({attempt.failure_reason.value})"
        if attempt.cause is not None:
            outcome = f"{outcome}, cause: {attempt.cause.value}"

    console.print(
        f"[bold]{label}[/bold] {attempt.deployment_id} "
        f"[cyan]{attempt.target.image.reference}[/cyan]: [{style}]{outcome}[/{style}]"
    )
    if attempt.detail:
        console.print(f"[dim]{attempt.detail}[/dim]")

    if attempt.outcome == DeploymentOutcome.FAILED:
        if attempt.health_checks:
            console.print(_probe_table(attempt))
        if attempt.container_logs:
            console.print(
                Panel(
                    "\n".join(attempt.container_logs),
                    title=f"Last {len(attempt.container_logs)} log lines",
                    border_style="red",
                )
            )


def fit_request_timeout(
    configured: float,
    poll_interval: float | None,
    request_timeout: float | None,
) -> float | None:
    """Per-check timeout for a deploy given the command-line overrides.

    An explicit request timeout is used as given. When only the poll interval
    is overridden and the configured request timeout does not fit inside it,
    half the interval is used instead.
    """
    if request_timeout is not None or poll_interval is None:
        return request_timeout
    if configured < poll_interval:
        return None
    return poll_interval / 2


def render_release(result: ReleaseResult) -> None:
    """Print every attempt of a release and the final verdict."""
    for attempt in result.attempts:
        render_attempt(attempt)
        console.print()

    if result.no_prior_image is not None:
        console.print(f"[red]Rollback impossible:[/red] {result.no_prior_image.reason}")

    final = result.final
    if final.outcome == DeploymentOutcome.HEALTHY:
        console.print(f"[bold green]Deployed {final.target.image.reference}[/bold green]")
    elif final.outcome == DeploymentOutcome.ROLLED_BACK:
        console.print(
            f"[bold yellow]{result.primary.target.image.reference} failed; "
            f"rolled back to {final.target.image.reference}[/bold yellow]"
        )
    elif final.failure_reason == FailureReason.ROLLBACK_FAILED:
        console.print(
            "[bold red]Rollback failed. Manual intervention required.[/bold red]"
        )
    else:
        console.print("[bold red]Deployment failed[/bold red]")

    if result.smoke_check is not None:
        smoke = result.smoke_check
        colour = "green" if smoke.within_budget else "yellow"
        usage = (
            f", CPU {smoke.stats.cpu_percent:.1f}%, memory {smoke.stats.memory_percent:.1f}%"
            if smoke.stats is not None
            else ""
        )
        console.print(
            f"[{colour}]Smoke check:[/{colour}] {smoke.detail} in "
            f"{smoke.response_time_seconds:.2f}s (budget {smoke.budget_seconds:.2f}s){usage}"
        )
    if result.removed_images:
        console.print(f"[dim]Removed old images: {', '.join(result.removed_images)}[/dim]")


@app.command()
def deploy(
    tag: Annotated[
        Optional[str],
        typer.Argument(help="Image tag to deploy (default: configured tag)"),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Seconds allowed for the service to become healthy"),
    ] = None,
    poll_interval: Annotated[
        Optional[float],
        typer.Option("--poll-interval", help="Seconds between health checks"),
    ] = None,
    request_timeout: Annotated[
        Optional[float],
        typer.Option(
            "--request-timeout",
            help="Seconds allowed for each health check (must be below the poll interval)",
        ),
    ] = None,
    build: Annotated[
        bool,
        typer.Option("--build", "-b", help="Rebuild the image from the build context"),
    ] = False,
    no_rollback: Annotated[
        bool,
        typer.Option("--no-rollback", help="Do not roll back when the deployment fails"),
    ] = False,
) -> None:
    """Deploy an image and roll back to the previous one if it is not healthy.

    Args:
        tag: Image tag to deploy
        timeout: Readiness deadline in seconds
        poll_interval: Delay between health checks in seconds
        request_timeout: Per-check timeout in seconds
        build: Rebuild the image even if it exists locally
        no_rollback: Leave a failed deployment in place
    """
    config = get_app_context().config
    target = config.service.to_target(tag)
    rollback_on_failure = config.deploy.rollback_on_failure and not no_rollback
    request_timeout = fit_request_timeout(
        config.health.request_timeout_seconds, poll_interval, request_timeout
    )

    console.print(
        Panel(
            f"[bold]Service:[/bold] {target.service_name}\n"
            f"[bold]Container:[/bold] {target.container_name}\n"
            f"[bold]Image:[/bold] {target.image.reference}\n"
            f"[bold]Health URL:[/bold] {target.probe_url()}\n"
            f"[bold]Rollback on failure:[/bold] {'yes' if rollback_on_failure else 'no'}",
            title="Healthgate deploy",
            border_style="cyan",
        )
    )

    async def run() -> ReleaseResult | None:
        components = build_components(config)
        cancel_event = asyncio.Event()
        try:
            if not await _docker_available(components):
                return None
            with _cancel_on_signals(asyncio.get_running_loop(), cancel_event):
                return await release(
                    components.orchestrator,
                    components.planner,
                    target,
                    rollback_on_failure=rollback_on_failure,
                    timeout=timeout,
                    poll_interval=poll_interval,
                    request_timeout=request_timeout,
                    cancel_event=cancel_event,
                    force_build=build,
                    smoke_budget=(
                        config.deploy.response_time_budget_seconds
                        if config.deploy.smoke_check
                        else None
                    ),
                    keep_images=config.deploy.keep_images,
                )
        finally:
            await components.close()

    try:
        result = _run(run())
    except ValueError as e:
        console.print(f"[red]Invalid deployment parameters:[/red] {e}")
        raise typer.Exit(code=EXIT_FAILED)

    if result is None:
        raise typer.Exit(code=EXIT_FAILED)

    console.print()
    render_release(result)

    if config.deploy.report_dir is not None:
        try:
            path = write_report(result, config.deploy.report_dir)
            console.print(f"[dim]Report saved: {path}[/dim]")
        except OSError as e:
            console.print(f"[yellow]Could not write deployment report:[/yellow] {e}")

    raise typer.Exit(code=result.exit_code)


@app.command()
def rollback(
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Seconds allowed for the previous image"),
    ] = None,
) -> None:
    """Roll the running container back to the previous image.

    Args:
        timeout: Readiness deadline in seconds
    """
    config = get_app_context().config
    container_name = config.service.container_name or config.service.service_name

    async def run() -> DeploymentAttempt | NoPriorImage | None:
        components = build_components(config)
        cancel_event = asyncio.Event()
        try:
            if not await _docker_available(components):
                return None

            current = await components.runtime.current_image(container_name)
            if current is None:
                console.print(f"[red]No container named '{container_name}' exists[/red]")
                return None
            try:
                image = ImageRef.parse(current)
            except ValueError as e:
                console.print(f"[red]Cannot roll back container '{container_name}':[/red] {e}")
                return None
            if image.repository != config.service.repository:
                console.print(
                    f"[red]Container '{container_name}' runs {current}, "
                    f"not an image of {config.service.repository}[/red]"
                )
                return None

            target = config.service.to_target(image.tag)
            plan = await components.planner.plan_rollback(target, reason="operator request")
            if isinstance(plan, NoPriorImage):
                return plan

            console.print(
                f"Rolling back [cyan]{plan.from_image.reference}[/cyan] -> "
                f"[cyan]{plan.to_image.reference}[/cyan]"
            )
            with _cancel_on_signals(asyncio.get_running_loop(), cancel_event):
                return await components.planner.execute_rollback(
                    plan, timeout=timeout, cancel_event=cancel_event
                )
        finally:
            await components.close()

    try:
        outcome = _run(run())
    except ValueError as e:
        console.print(f"[red]Invalid rollback parameters:[/red] {e}")
        raise typer.Exit(code=EXIT_FAILED)

    if outcome is None:
        raise typer.Exit(code=EXIT_FAILED)
    if isinstance(outcome, NoPriorImage):
        console.print(f"[red]Rollback impossible:[/red] {outcome.reason}")
        raise typer.Exit(code=EXIT_FAILED)

    console.print()
    render_attempt(outcome)
    if outcome.outcome == DeploymentOutcome.ROLLED_BACK:
        console.print(
            f"[bold green]Rolled back to {outcome.target.image.reference}[/bold green]"
        )
        raise typer.Exit(code=EXIT_HEALTHY)
    if outcome.failure_reason == FailureReason.CANCELLED:
        raise typer.Exit(code=EXIT_INTERRUPTED)
    console.print("[bold red]Rollback failed. Manual intervention required.[/bold red]")
    raise typer.Exit(code=EXIT_FAILED)


@app.command()
def images() -> None:
    """List local tags of the service repository, newest first."""
    config = get_app_context().config
    repository = config.service.repository
    container_name = config.service.container_name or config.service.service_name

    async def run() -> tuple[list[ImageTag], str | None]:
        components = build_components(config)
        try:
            tags = await components.registry.list_tags(repository)
            current = await components.runtime.current_image(container_name)
            return tags, current
        finally:
            await components.close()

    tags, current = _run(run())
    if not tags:
        console.print(f"[yellow]No local images found for {repository}[/yellow]")
        return

    table = Table(title=f"Images for {repository}")
    table.add_column("Tag", style="cyan")
    table.add_column("Image ID")
    table.add_column("Created")
    table.add_column("Running", justify="center")

    for record in tags:
        running = "[green]*[/green]" if current == record.image.reference else ""
        table.add_row(
            record.tag,
            record.image_id.removeprefix("sha256:")[:12],
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            running,
        )
    console.print(table)


@app.command()
def status() -> None:
    """Show the service container state and run one health check."""
    config = get_app_context().config
    target = config.service.to_target()

    async def run() -> tuple[str, str | None, Any]:
        components = build_components(config)
        try:
            state = await components.runtime.status(target.container_name)
            current = await components.runtime.current_image(target.container_name)
            probe = await components.probe.check(
                target.probe_url(), config.health.request_timeout_seconds
            )
            return state.value, current, probe
        finally:
            await components.close()

    try:
        state, current, probe = _run(run())
    except (DockerException, ValueError) as e:
        console.print(f"[red]Error reading status:[/red] {e}")
        raise typer.Exit(code=EXIT_FAILED)

    table = Table(title=f"Status of {target.container_name}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Container", state)
    table.add_row("Image", current or "-")
    table.add_row("Health URL", target.probe_url())
    health = "[green]healthy[/green]" if probe.success else f"[red]{probe.detail}[/red]"
    table.add_row("Health", health)
    console.print(table)

    if state != "running" or not probe.success:
        raise typer.Exit(code=EXIT_FAILED)


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Load configuration and configure logging.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    if verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)
    initialize_context(config)

    if verbose:
        console.print("[dim]Debug logging enabled[/dim]")


if __name__ == "__main__":
    app()
