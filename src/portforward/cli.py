"""Port-forward operator CLI (pfo).

Usage:
    pfo run                           # Run the operator (in-cluster or kubeconfig)
    pfo validate services.yaml        # Check ports annotations offline
    pfo drift services.yaml           # Report drift against the live router
    pfo drift services.yaml --apply   # ...and correct it
    pfo clean -t 81=192.168.27.130    # Remove rules forwarding to 192.168.27.130:81
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .config import DEFAULT_PORTS_ANNOTATION, Config, ConfigurationError, RouterConfig
from .desired_state import DesiredStateCalculator
from .drift import DriftAnalysis, DriftDetector, build_correction_operations
from .errors import PortForwardError, RouterError
from .executor import OperationExecutor
from .manifests import ManifestLoadError, load_manifests
from .models import PortRule, RouterRule, ServiceResource
from .port_registry import PortRegistry
from .routers.unifi import UnifiRouter

# Destination used by validate for Services without a LoadBalancer IP
PLACEHOLDER_ADDRESS = "0.0.0.0"

# Exit status of drift when drift was found and not applied
EXIT_DRIFT_FOUND = 2


def open_router(config: RouterConfig) -> UnifiRouter:
    """Build the router client used by drift."""
    return UnifiRouter(config)


def load_services(manifest: Path) -> list[ServiceResource]:
    try:
        return load_manifests(manifest)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="pfo")
def cli() -> None:
    """Port-forward operator CLI (pfo).

    Keeps UniFi port-forward rules converged with annotated Services.

    \b
    Quick Start:
        pfo validate services.yaml
        pfo drift services.yaml
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator with configuration from the environment."""
    from .main import main

    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--annotation", "-a", envvar="PORTS_ANNOTATION", default=None, help="Ports annotation key")
def validate(manifest: Path, annotation: str | None) -> None:
    """Validate the ports annotations of Services in MANIFEST.

    No router is contacted. External ports are checked for collisions
    across every Service in the file.
    """
    annotation = annotation or DEFAULT_PORTS_ANNOTATION
    calculator = DesiredStateCalculator(PortRegistry(), annotation)
    failures = 0

    for resource in load_services(manifest):
        if annotation not in resource.annotations:
            click.echo(f"{resource.key}: skipped (no {annotation} annotation)")
            continue

        if not resource.load_balancer_ip:
            resource = resource.model_copy(update={"load_balancer_ip": PLACEHOLDER_ADDRESS})
        try:
            rules = calculator.calculate(resource)
        except PortForwardError as e:
            failures += 1
            click.secho(f"{resource.key}: {e}", fg="red")
            continue

        click.secho(f"{resource.key}: {len(rules)} rule(s)", fg="green")
        for rule in rules:
            click.echo(f"  {rule.name}  {rule.describe()}")

    if failures:
        raise click.ClickException(f"{failures} service(s) failed validation")


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--apply", "apply_changes", is_flag=True, help="Apply the correction operations")
def drift(manifest: Path, apply_changes: bool) -> None:
    """Compare Services in MANIFEST with the live router rules.

    Router settings are read from the environment (UNIFI_*). Exits with
    status 2 when drift was found and not applied.
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    resources = load_services(manifest)
    router = open_router(config.router)
    try:
        try:
            snapshot = router.list()
        except RouterError as e:
            raise click.ClickException(f"Failed to read router rules: {e}") from e

        registry = PortRegistry()
        registry.sync_from_rules(snapshot)
        calculator = DesiredStateCalculator(registry, config.ports_annotation)
        managed = [r for r in resources if calculator.qualifies(r)]

        analyses = DriftDetector(calculator).analyze_all(managed, snapshot)
        errors = sum(1 for a in analyses if a.error is not None)
        drifted = [a for a in analyses if a.error is None and a.has_drift]
        for analysis in analyses:
            _print_analysis(analysis)

        if apply_changes and drifted:
            executor = OperationExecutor(router, registry)
            for analysis in drifted:
                try:
                    result = executor.execute(build_correction_operations(analysis))
                except PortForwardError as e:
                    errors += 1
                    click.secho(f"{analysis.service_key}: correction failed: {e}", fg="red")
                    continue
                click.secho(f"{analysis.service_key}: applied {result.applied_count} operation(s)", fg="green")
    finally:
        router.close()

    click.echo(f"\n{len(managed)} service(s) checked, {len(drifted)} with drift, {errors} error(s)")
    if errors:
        raise click.ClickException(f"{errors} service(s) could not be reconciled")
    if drifted and not apply_changes:
        sys.exit(EXIT_DRIFT_FOUND)


def _parse_target(ctx: click.Context, param: click.Parameter, values: tuple[str, ...]) -> list[tuple[int, str]]:
    targets = []
    for value in values:
        port, sep, address = value.partition("=")
        if not sep or not port.strip().isdigit() or not address.strip():
            raise click.BadParameter(f"expected PORT=IP, got '{value}'", ctx=ctx, param=param)
        targets.append((int(port), address.strip()))
    return targets


@cli.command()
@click.option(
    "--target",
    "-t",
    "targets",
    multiple=True,
    required=True,
    callback=_parse_target,
    help="Forward target as PORT=IP (repeatable)",
)
@click.option("--dry-run", is_flag=True, help="List matching rules without removing them")
def clean(targets: list[tuple[int, str]], dry_run: bool) -> None:
    """Remove router rules that forward to the given targets.

    A rule matches when its internal port and destination IP equal a
    target, whoever owns it. Router settings are read from the
    environment (UNIFI_*).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    router = open_router(config.router)
    try:
        try:
            snapshot = router.list()
        except RouterError as e:
            raise click.ClickException(f"Failed to read router rules: {e}") from e

        matches = [rule for rule in snapshot if _forwards_to(rule, targets)]
        failures = 0
        for rule in matches:
            label = _describe_rule(rule)
            if dry_run:
                click.echo(f"would remove {label}")
                continue
            try:
                router.remove(PortRule.from_router_rule(rule))
            except RouterError as e:
                failures += 1
                click.secho(f"failed to remove {label}: {e}", fg="red")
                continue
            click.secho(f"removed {label}", fg="green")
    finally:
        router.close()

    click.echo(f"\n{len(matches)} matching rule(s), {failures} failure(s)")
    if failures:
        raise click.ClickException(f"{failures} rule(s) could not be removed")


def _forwards_to(rule: RouterRule, targets: list[tuple[int, str]]) -> bool:
    return (rule.internal_port, rule.destination_ip) in targets


def _describe_rule(rule: RouterRule) -> str:
    target = f"{rule.destination_ip}:{rule.internal_port}/{rule.protocol}"
    return f"{rule.name or rule.id}  {rule.external_port} -> {target}"


def _print_analysis(analysis: DriftAnalysis) -> None:
    if analysis.error is not None:
        click.secho(f"{analysis.service_key}: {analysis.error}", fg="red")
        return
    if not analysis.has_drift:
        click.secho(f"{analysis.service_key}: in sync ({len(analysis.desired)} rule(s))", fg="green")
        return

    summary = analysis.summary()
    click.secho(
        f"{analysis.service_key}: drift ({summary['missing']} missing, "
        f"{summary['wrong']} wrong, {summary['extra']} extra)",
        fg="yellow",
    )
    for operation in build_correction_operations(analysis):
        click.echo(f"  {operation}  [{operation.reason.value}]")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
