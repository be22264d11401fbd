"""CLI interface for pipestep"""

import dataclasses
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from pipestep.application.matrix_expander import MatrixExpander
from pipestep.application.retry_controller import RetryController
from pipestep.domain.config.matrix import MatrixStepConfig
from pipestep.domain.config.matrix_file import MatrixDefinition, MatrixDocument
from pipestep.domain.errors import ConfigurationError, MatrixFailure
from pipestep.domain.models.fan_out_result import FanOutResult
from pipestep.domain.models.matrix_combination import MATRIX_STAGE_NAME, StageContext
from pipestep.domain.models.status import StageStatus
from pipestep.domain.signatures import BUILTIN_FAILURE_SIGNATURES, FailureSignatureMatcher, merge_signatures
from pipestep.infrastructure.config.config_manager import ConfigManager
from pipestep.infrastructure.config.matrix_file import load_matrix_file
from pipestep.infrastructure.execution import LocalAllocator
from pipestep.infrastructure.log_stream import LogStream, retry_window

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Setup logging configuration"""
    log_level = logging.DEBUG if verbose else getattr(logging, level, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    logging.getLogger().setLevel(log_level)


def _die(message: str, verbose: bool = False, exc: Optional[Exception] = None) -> None:
    """Exit with a user-friendly error message"""
    if exc is not None:
        logger.error(message, exc_info=verbose)
    else:
        logger.error(message)
    raise click.ClickException(message)


def parse_signatures(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse NAME=REGEX options into a mapping

    Raises:
        click.BadParameter: If a value has no '='
    """
    signatures = {}
    for value in values:
        name, sep, pattern = value.partition("=")
        if not sep or not name or not pattern:
            raise click.BadParameter(f"Expected NAME=REGEX, got '{value}'", param_hint="--signature")
        signatures[name] = pattern
    return signatures


def _load_config_manager(ctx: click.Context) -> ConfigManager:
    verbose = ctx.obj.get("verbose", False)
    try:
        config_manager = ConfigManager(config_path=ctx.obj.get("config_path"))
    except ConfigurationError as e:
        _die(str(e), verbose=verbose, exc=e)
    if not verbose:
        setup_logging(False, config_manager.get_logging_config().level)
    return config_manager


def _echo_log_line(scope: str, line: str) -> None:
    click.echo(f"[{scope}] {line}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to .pipestep.yml config file",
)
@click.pass_context
def cli(ctx, verbose: bool, config: Path):
    """pipestep - conditional retry and dynamic matrix steps for CI pipelines"""
    ctx.ensure_object(dict)
    setup_logging(verbose)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


@cli.command()
def signatures():
    """List the builtin failure signatures."""
    width = max(len(name) for name in BUILTIN_FAILURE_SIGNATURES)
    for name, pattern in BUILTIN_FAILURE_SIGNATURES.items():
        click.echo(f"{name.ljust(width)}  {pattern}")


@cli.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tries-left", type=int, help="Only scan the output after the marker of this attempt")
@click.option("--stage-name", default="retry", show_default=True, help="Stage name used in the marker")
@click.option("--signature", "signature_options", multiple=True, metavar="NAME=REGEX", help="Extra failure signature")
@click.option("--no-builtin-signatures", is_flag=True, help="Only use the signatures given with --signature")
@click.pass_context
def scan(
    ctx,
    log_file: Path,
    tries_left: Optional[int],
    stage_name: str,
    signature_options: Tuple[str, ...],
    no_builtin_signatures: bool,
):
    """Scan a log for recoverable failure signatures.

    Exits with status 0 if a signature matched (retry advised), 1 otherwise.

    LOG_FILE: Path to the log to scan
    """
    verbose = ctx.obj.get("verbose", False)
    custom = parse_signatures(signature_options)
    try:
        matcher = FailureSignatureMatcher(merge_signatures(not no_builtin_signatures, custom))
    except ConfigurationError as e:
        _die(str(e), verbose=verbose, exc=e)

    text = log_file.read_text(encoding="utf-8", errors="replace")
    if tries_left is not None:
        text = retry_window(text, f"[{stage_name}] Tries left {tries_left}")

    matched = matcher.matched_lines(text)
    if not matched:
        click.echo("There are no matched patterns")
        sys.exit(1)

    for line in matched:
        click.echo(f"{matcher.signature_for(line)}: {line}")


@cli.command()
@click.argument("command", type=str)
@click.option("--label", default="local", show_default=True, help="Execution context label")
@click.option("--stage-name", default="retry", show_default=True, help="Stage name used in logs and markers")
@click.option("--retry-budget", type=click.IntRange(min=0), help="Retries after the first attempt. Overrides config.")
@click.option("--retry-delay", type=click.FloatRange(min=0), help="Seconds between attempts. Overrides config.")
@click.option("--signature", "signature_options", multiple=True, metavar="NAME=REGEX", help="Extra failure signature")
@click.option("--no-builtin-signatures", is_flag=True, help="Only use the signatures given with --signature")
@click.option("--no-suppress", is_flag=True, help="Fail with an error instead of recording the failure")
@click.pass_context
def retry(
    ctx,
    command: str,
    label: str,
    stage_name: str,
    retry_budget: Optional[int],
    retry_delay: Optional[float],
    signature_options: Tuple[str, ...],
    no_builtin_signatures: bool,
    no_suppress: bool,
):
    """Run a shell command with conditional retry.

    COMMAND: Shell command line to run
    """
    verbose = ctx.obj.get("verbose", False)
    config_manager = _load_config_manager(ctx)

    parameters = {
        "execution_target": label,
        "stage_name": stage_name,
        "task": lambda context: context.sh(command),
    }
    if retry_budget is not None:
        parameters["retry_budget"] = retry_budget
    if retry_delay is not None:
        parameters["retry_delay_seconds"] = retry_delay
    if signature_options:
        defaults = config_manager.get_retry_config().custom_failure_signatures
        parameters["custom_failure_signatures"] = {**defaults, **parse_signatures(signature_options)}
    if no_builtin_signatures:
        parameters["use_builtin_failure_signatures"] = False
    if no_suppress:
        parameters["suppress_failure"] = False

    try:
        config = config_manager.build_retry_step(**parameters)
    except ConfigurationError as e:
        _die(str(e), verbose=verbose, exc=e)

    log_stream = LogStream(listener=_echo_log_line)
    controller = RetryController(LocalAllocator(log_stream), log_stream)
    try:
        result = controller.run(config)
    except ConfigurationError as e:
        _die(str(e), verbose=verbose, exc=e)
    except Exception as e:
        _die(f"Command failed: {e}", verbose=verbose, exc=e)

    click.echo(f"\nStatus: {result.status.value} after {result.attempt_count} attempt(s)")
    if result.post_action_failures:
        for failure in result.post_action_failures:
            click.echo(f"Post action failure: {failure}", err=True)
    if result.status == StageStatus.FAILURE:
        sys.exit(1)


def _shell_actions(
    definition: MatrixDefinition,
    config_manager: ConfigManager,
    allocator: LocalAllocator,
    log_stream: LogStream,
    suppressed: List[str],
):
    """Stage action running the definition's command for one combination"""

    def _actions(stage: StageContext) -> None:
        if definition.retry is None:
            with allocator.acquire(definition.execution_target, stage.identifier, env=stage.env) as context:
                context.sh(definition.command)
            return

        def _task(context) -> None:
            dataclasses.replace(context, env={**context.env, **stage.env}).sh(definition.command)

        config = config_manager.build_retry_step(
            execution_target=definition.execution_target,
            stage_name=stage.identifier,
            task=_task,
            **definition.retry,
        )
        result = RetryController(allocator, log_stream).run(config)
        if result.status == StageStatus.FAILURE:
            suppressed.append(stage.identifier)

    return _actions


def _noop_actions(stage: StageContext) -> None:
    pass


def _build_configs(
    document: MatrixDocument,
    config_manager: ConfigManager,
    allocator: LocalAllocator,
    log_stream: LogStream,
    suppressed: List[str],
    list_only: bool,
) -> List[MatrixStepConfig]:
    """One single-matrix config per axes mapping of every group"""
    configs: List[MatrixStepConfig] = []
    for index, definition in enumerate(document.groups, 1):
        if not list_only and not definition.command:
            raise ConfigurationError(f"Matrix group {index} has no command to run")
        if definition.retry is not None:
            # Stage threads build the real step; invalid keys must fail before any stage runs.
            config_manager.build_retry_step(
                execution_target=definition.execution_target,
                task=_noop_actions,
                **definition.retry,
            )
        if list_only:
            actions = _noop_actions
        else:
            actions = _shell_actions(definition, config_manager, allocator, log_stream, suppressed)
        parameters = definition.step_parameters(actions)
        if definition.is_multi_combination:
            configs.extend(config_manager.build_multi_combination_step(**parameters).split())
        else:
            configs.append(config_manager.build_matrix_step(**parameters))
    return configs


def _output_fan_out_results(result: FanOutResult, suppressed: List[str]) -> None:
    """Output matrix results to console"""
    click.echo("\n" + "=" * 80)
    click.echo("Matrix Results")
    click.echo("=" * 80)
    for identifier, status in result.statuses.items():
        if status == StageStatus.SUCCESS and identifier in suppressed:
            status = StageStatus.FAILURE
        click.echo(f"{status.value:<9} {identifier}")
        if identifier in result.errors:
            click.echo(f"          {result.errors[identifier]}", err=True)


@cli.command()
@click.argument("matrix_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--list", "list_only", is_flag=True, help="Only list the expanded stages")
@click.option(
    "--fail-fast/--no-fail-fast",
    default=None,
    help="Fail-fast policy of the merged stages. Overrides the matrix file.",
)
@click.pass_context
def matrix(ctx, matrix_file: Path, list_only: bool, fail_fast: Optional[bool]):
    """Expand a matrix definition file and run its stages in parallel.

    MATRIX_FILE: Path to the YAML matrix definition
    """
    verbose = ctx.obj.get("verbose", False)
    config_manager = _load_config_manager(ctx)

    log_stream = LogStream(listener=_echo_log_line)
    allocator = LocalAllocator(log_stream)
    suppressed: List[str] = []
    try:
        document = load_matrix_file(matrix_file)
        configs = _build_configs(document, config_manager, allocator, log_stream, suppressed, list_only)
    except ConfigurationError as e:
        _die(str(e), verbose=verbose, exc=e)

    expander = MatrixExpander(max_workers=config_manager.get_matrix_config().max_workers)

    if list_only:
        for config in configs:
            for combination in expander.combinations(config.axes):
                env = combination.env(config.stage_name_separator, config.extra_vars)
                click.echo(f"{combination.identifier}  ->  {env[MATRIX_STAGE_NAME]}")
        return

    merged_fail_fast = fail_fast if fail_fast is not None else document.fail_fast
    try:
        result = expander.run_multi_groups(configs, merged_fail_fast=merged_fail_fast)
    except MatrixFailure as e:
        _output_fan_out_results(e.result, suppressed)
        _die(str(e), verbose=verbose, exc=e)

    _output_fan_out_results(result, suppressed)
    if suppressed:
        click.echo(f"\n{len(suppressed)} stage(s) failed with suppressed errors", err=True)
        sys.exit(1)
    click.echo("\nMatrix completed!")


def main():
    """Main entry point"""
    cli(obj={})


if __name__ == "__main__":
    main()
