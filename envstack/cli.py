"""
CLI interface for envstack.

Provides commands to stand up and tear down branch environments, promote an
image tag, and post environment status to pull requests.

Every operation exits non-zero on an unrecovered failure. The orchestrator
writes the failure to the error artifact before the CLI exits, so a later
``stack pr ...`` step can report it.
"""

from pathlib import Path
from typing import Callable, Optional

import click
import yaml

from envstack import __version__
from envstack.artifacts import ArtifactStore
from envstack.config import (
    LOG_LEVELS,
    StackConfig,
    check_log_level,
    default_config_dict,
    get_envstack_home,
    load_config,
)
from envstack.errors import ConfigError, EnvstackError
from envstack.notify import comments
from envstack.notify.github import GitHubNotifier, NoOpNotifier, Notifier
from envstack.orchestrator import ENVIRONMENTS, IMAGE_COMPONENTS, StackOrchestrator, StackResult
from envstack.remote.client import RemoteGraphClient
from envstack.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


@click.group()
@click.version_option(version=__version__, prog_name="stack")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Configuration file (default: $ENVSTACK_HOME/config.yaml)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Logging level",
)
@click.option(
    "--log-format",
    type=click.Choice(["pretty", "structured"]),
    help="Console log format",
)
@click.option(
    "--artifact-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for the error and ip artifacts",
)
@click.pass_context
def main(ctx, config_path, log_level, log_format, artifact_dir):
    """
    stack - ephemeral environment lifecycle for pull requests.

    Provisions and tears down branch environments through the remote
    infrastructure change-set API.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        # init and pr commands can run without a usable config
        ctx.obj["config_error"] = str(e)
        config = None

    if config is not None:
        if log_level:
            config.log_level = log_level
        if log_format:
            config.log_format = log_format
        if artifact_dir:
            config.artifact_dir = str(artifact_dir)
        ctx.obj["config"] = config

    effective = config or StackConfig()
    try:
        level = check_log_level(log_level or effective.log_level)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    setup_logging(
        level,
        log_format or effective.log_format,
        Path(effective.log_file) if effective.log_file else None,
    )
    ctx.obj["artifacts"] = ArtifactStore(artifact_dir or effective.artifact_path)


def _require_config(ctx) -> StackConfig:
    """Return a validated config or exit 1."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        raise SystemExit(1)

    config = ctx.obj["config"]
    try:
        config.validate()
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    return config


def _pr_notifier() -> Notifier:
    try:
        return GitHubNotifier.from_env()
    except ConfigError as e:
        print_warning(f"PR comments disabled: {e}")
        return NoOpNotifier()


def _build_orchestrator(ctx, notifier: Optional[Notifier] = None) -> StackOrchestrator:
    config = _require_config(ctx)
    client = RemoteGraphClient.from_config(config)
    return StackOrchestrator(client, config, artifacts=ctx.obj["artifacts"], notifier=notifier)


def _run_operation(description: str, operation: Callable[[], StackResult]) -> StackResult:
    """Single error boundary for orchestrator operations."""
    try:
        result = operation()
    except Exception as e:
        print_error(f"{description} failed: {e}")
        raise SystemExit(1)

    if result.duration_seconds is not None:
        print_success(f"{description} completed in {format_duration(result.duration_seconds)}")
    else:
        print_success(f"{description} completed")
    return result


@main.command("up")
@click.argument("version")
@click.argument("branch")
@click.argument("pr_number", required=False, type=click.IntRange(min=1))
@click.pass_context
def up(ctx, version: str, branch: str, pr_number: Optional[int]):
    """
    Stand up an environment for BRANCH running VERSION.

    Any environment BRANCH already owns is destroyed first. When PR_NUMBER is
    given, the PR is told the environment is being refreshed.

    Examples:

        stack up 20241015.143022.0-sha.abc1234 feat/new-feature

        stack up 20241015.143022.0-sha.abc1234 feat/new-feature 123
    """
    notifier = _pr_notifier() if pr_number else None
    orchestrator = _build_orchestrator(ctx, notifier)

    print_banner(f"stack up {branch} (v{version})")
    result = _run_operation("stack up", lambda: orchestrator.up(version, branch, pr_number))
    click.echo(f"Environment for {branch} is reachable at: {result.address}")


@main.command("down")
@click.argument("branch")
@click.pass_context
def down(ctx, branch: str):
    """
    Tear down every component owned by BRANCH.

    Examples:

        stack down feat/new-feature
    """
    orchestrator = _build_orchestrator(ctx)

    print_banner(f"stack down {branch}")
    result = _run_operation("stack down", lambda: orchestrator.down(branch))
    if result.change_set_id is None:
        print_info(f"Nothing to tear down for {branch}")
    else:
        print_info(f"Queued {result.removed} component(s) for deletion")


@main.command("deploy-tag")
@click.argument("environment", type=click.Choice(ENVIRONMENTS))
@click.argument("component", type=click.Choice(IMAGE_COMPONENTS))
@click.argument("tag")
@click.pass_context
def deploy_tag(ctx, environment: str, component: str, tag: str):
    """
    Point ENVIRONMENT's image tag component at TAG.

    Examples:

        stack deploy-tag sandbox api 20231201120000-abc1234
    """
    orchestrator = _build_orchestrator(ctx)

    print_banner(f"deploy {component} {tag} to {environment}")
    _run_operation("stack deploy-tag", lambda: orchestrator.deploy_image_tag(environment, component, tag))


@main.group("pr")
def pr_group():
    """Post environment status to a pull request."""
    pass


def _post(thread_key, body: str) -> None:
    try:
        notifier = GitHubNotifier.from_env()
        notifier.post_comment(thread_key, body)
    except EnvstackError as e:
        click.echo(f"✗ Failed to post comment to PR #{thread_key.pr_number}: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Posted comment to PR #{thread_key.pr_number}")


@pr_group.command("new-environment")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.argument("version")
@click.argument("endpoint", required=False)
@click.pass_context
def pr_new_environment(ctx, pr_number: int, version: str, endpoint: Optional[str]):
    """
    Report a deployment result on PR_NUMBER.

    Uses ENDPOINT if given, else the ip artifact. An error artifact turns the
    comment into a failure report.
    """
    artifacts = ctx.obj["artifacts"]
    address = endpoint or artifacts.read_address()
    error = artifacts.read_error()
    if error:
        print_warning(f"Found error message: {error}")

    _post(comments.new_environment_key(pr_number), comments.new_environment(version, address, error))


@pr_group.command("cleanup-complete")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.argument("branch")
@click.pass_context
def pr_cleanup_complete(ctx, pr_number: int, branch: str):
    """Report a teardown result for BRANCH on PR_NUMBER."""
    error = ctx.obj["artifacts"].read_error()
    _post(comments.cleanup_key(pr_number, branch), comments.cleanup_complete(branch, error))


@pr_group.command("environment-refresh")
@click.argument("pr_number", type=click.IntRange(min=1))
@click.argument("branch")
def pr_environment_refresh(pr_number: int, branch: str):
    """Mark the PR's environment comment as refreshing."""
    _post(comments.new_environment_key(pr_number), comments.environment_refresh(branch))


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize envstack configuration."""
    home = get_envstack_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(), sort_keys=False))

    click.echo(f"Initialized envstack config at {cfg_path}")
    click.echo("Set SI_API_TOKEN and SI_WORKSPACE_ID in the environment before running stack up/down.")


if __name__ == "__main__":
    main()
