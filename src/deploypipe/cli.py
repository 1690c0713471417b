import logging
import os

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE
from .core import DeploymentPipeline, PipelineError, console
from .pipeline import reference_stages
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _coerce_option(value, converter, key):
    if value is None:
        return None
    try:
        return converter(value)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid value for '{key}': {value!r}") from exc


def _parse_overrides(values):
    overrides = {}
    for item in values:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'.", param_hint="--set")
        overrides[key.strip()] = value
    return overrides


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.group()
def main():
    """Build, push, and deploy an application image through ordered stages."""


@main.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--dry-run", is_flag=True, default=None, help="Resolve config and print the plan only.")
@click.option("--stage", required=False, help="Run only the stage with this name.")
@click.option(
    "--set",
    "set_values",
    multiple=True,
    metavar="KEY=VALUE",
    help="Override a pipeline value, e.g. --set image_tag=42. Repeatable.",
)
@click.option(
    "--provisioner",
    type=click.Choice(DeploymentPipeline.PROVISIONERS),
    default=None,
    help="Where stages run: tool containers (docker, default) or the host (local).",
)
@click.option(
    "--stage-timeout",
    "stage_timeout_seconds",
    type=float,
    default=None,
    help="Maximum duration of each stage in seconds.",
)
@click.option("--summary-file", type=click.Path(), help="Write a JSON run summary to this path.")
@click.option(
    "--verify-image",
    is_flag=True,
    default=None,
    help="Check that the pushed image exists in the registry before deploying.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
def run(
    config,
    dry_run,
    stage,
    set_values,
    provisioner,
    stage_timeout_seconds,
    summary_file,
    verify_image,
    verbose,
    log_file,
):
    """Run the deployment pipeline."""
    logger = logging.getLogger("deploypipe")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        pipeline_values, config_values = config_loader.split(config_loader.load(resolved_config))
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    overrides = _parse_overrides(set_values)
    dry_run = bool(_resolve_option(dry_run, config_values, "dry_run", default=False))
    stage = _resolve_option(stage, config_values, "stage")
    provisioner = _resolve_option(provisioner, config_values, "provisioner", default="docker")
    stage_timeout_seconds = _resolve_option(
        stage_timeout_seconds, config_values, "stage_timeout_seconds"
    )
    stage_timeout_seconds = _coerce_option(stage_timeout_seconds, float, "stage_timeout_seconds")
    retry_count = _coerce_option(config_values.get("retry_count", 0), int, "retry_count")
    retry_backoff_seconds = _coerce_option(
        config_values.get("retry_backoff_seconds", 2.0), float, "retry_backoff_seconds"
    )
    summary_file = _resolve_option(summary_file, config_values, "summary_file")
    verify_image = bool(_resolve_option(verify_image, config_values, "verify_image", default=False))
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        pipeline = DeploymentPipeline(
            file_values=pipeline_values,
            overrides=overrides,
            stage=stage,
            dry_run=dry_run,
            provisioner=provisioner,
            stage_timeout_seconds=stage_timeout_seconds,
            summary_file=summary_file,
            verify_image=verify_image,
            registry_username=config_values.get("registry_username"),
            registry_password=config_values.get("registry_password"),
            allow_insecure_http=bool(config_values.get("allow_insecure_http", False)),
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
            registry_auth_file=config_values.get("registry_auth_file"),
            kubeconfig=config_values.get("kubeconfig"),
            build_number=config_values.get("build_number"),
        )
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(pipeline.run())


@main.command()
def stages():
    """List the stages of the reference pipeline."""
    for index, stage in enumerate(reference_stages(), start=1):
        required = ", ".join(sorted(stage.required_env))
        console.print(f"[blue]{index}. {stage.name}[/blue] [dim]({stage.environment})[/dim] requires: {required}")


if __name__ == "__main__":
    main()
