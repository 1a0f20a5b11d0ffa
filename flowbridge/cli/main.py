"""Command line interface for running mappings from a YAML runtime configuration."""
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click

from flowbridge.engine import ExecutionContext, MappingExecutionEngine, build_mapping
from flowbridge.exceptions import ConfigurationError, FlowBridgeError
from flowbridge.pool.manager import ConnectionPoolManager
from flowbridge.streams import DataStreamOptimizer
from flowbridge.utils.config import RuntimeConfiguration, load_runtime_configuration
from flowbridge.validation import ValidationFramework


def build_engine(runtime: RuntimeConfiguration, *, strict: bool = False) -> MappingExecutionEngine:
    """Create an engine wired with the sections and endpoints of ``runtime``."""
    return MappingExecutionEngine(
        runtime.execution_config(strict=strict),
        endpoints=runtime.endpoints,
        validation=ValidationFramework(runtime.validation_options(strict=strict), strict=strict),
        optimizer=DataStreamOptimizer(runtime.stream_options(strict=strict), strict=strict),
        pool_manager=ConnectionPoolManager(runtime.pool_options(strict=strict), strict=strict),
        strict=strict,
    )


def result_payload(ctx: ExecutionContext, *, include_errors: bool) -> dict[str, Any]:
    """Summary printed for a finished run."""
    payload: dict[str, Any] = {"summary": ctx.get_summary(), "metrics": ctx.get_metrics()}
    if include_errors:
        payload["errors"] = [
            {key: value for key, value in error.to_dict().items() if key != "stack"} for error in ctx.state.errors
        ]
    profiling = ctx.get_profiling_report()
    if profiling is not None:
        payload["profiling"] = profiling
    return payload


async def _run_mapping(
    runtime: RuntimeConfiguration,
    mapping_id: str,
    overrides: dict[str, Any],
    *,
    strict: bool,
) -> ExecutionContext:
    engine = build_engine(runtime, strict=strict)
    try:
        return await engine.execute(runtime.find_mapping(mapping_id), overrides or None)
    finally:
        await engine.shutdown()


@click.group()
@click.version_option(package_name="flowbridge")
def cli() -> None:
    """Move records between systems using declarative mappings."""


@cli.command("run")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--mapping", "mapping_id", required=True, help="Id of the mapping to execute")
@click.option(
    "--executor",
    type=click.Choice(["auto", "sequential", "batch", "stream", "parallel"]),
    default=None,
    help="Force an executor instead of the automatic strategy",
)
@click.option(
    "--error-policy",
    type=click.Choice(["stop", "skip", "retry"]),
    default=None,
    help="How record-level failures are handled",
)
@click.option("--timeout", type=int, default=None, help="Run timeout in milliseconds")
@click.option("--profile", is_flag=True, help="Collect per-stage profiling")
@click.option("--strict", is_flag=True, help="Reject unknown options and promote validation warnings")
@click.option("--show-errors", is_flag=True, help="Include recorded errors in the output")
def run_command(
    config_path: Path,
    mapping_id: str,
    executor: str | None,
    error_policy: str | None,
    timeout: int | None,
    profile: bool,
    strict: bool,
    show_errors: bool,
) -> None:
    """Execute MAPPING from CONFIG_PATH and print the run summary as JSON."""
    overrides: dict[str, Any] = {}
    if executor:
        overrides["executor_type"] = executor
    if error_policy:
        overrides["error_policy"] = error_policy
    if timeout:
        overrides["timeout"] = timeout
    if profile:
        overrides["enable_profiling"] = True
    if strict:
        overrides["strict_mode"] = True

    try:
        runtime = load_runtime_configuration(config_path, strict=strict)
        ctx = asyncio.run(_run_mapping(runtime, mapping_id, overrides, strict=strict))
    except ConfigurationError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    click.echo(json.dumps(result_payload(ctx, include_errors=show_errors), indent=2, default=str))
    if ctx.status.value != "completed":
        sys.exit(1)


@cli.command("check-config")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--strict", is_flag=True, help="Reject unknown options")
def check_config_command(config_path: Path, strict: bool) -> None:
    """Validate CONFIG_PATH and every mapping it declares."""
    try:
        runtime = load_runtime_configuration(config_path, strict=strict)
        problems: list[str] = []
        for raw in runtime.mappings:
            try:
                mapping = build_mapping(raw)
            except FlowBridgeError as exc:
                problems.append(f"mapping '{raw.get('id', '?')}': {exc}")
                continue
            for endpoint in (mapping.source.endpoint, mapping.target.endpoint):
                if endpoint not in runtime.endpoints:
                    problems.append(f"mapping '{mapping.id}': unknown endpoint '{endpoint}'")
    except ConfigurationError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)

    if problems:
        for problem in problems:
            click.echo(f"✗ {problem}", err=True)
        sys.exit(1)

    click.echo(
        f"✓ {config_path} is valid: {len(runtime.endpoints)} endpoint(s), {len(runtime.mappings)} mapping(s)"
    )


def main() -> None:
    """Entry point for the console script."""
    cli()


if __name__ == "__main__":
    main()
