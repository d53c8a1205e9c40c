"""
Stack orchestrator - stands up and tears down branch environments.

Run lifecycle (both operations):

    Init -> PreCleanup -> ChangeSetOpen -> Applying -> Converging
         -> {Succeeded | Failed} -> Cleanup -> Terminal

Every run works in its own change set and never writes to head directly.
Cleanup (deleting that change set) happens in ``finally`` so it is reached
from every state, and it is the only step allowed to swallow its own errors.
Any failure writes a human-readable message to the error artifact before the
typed error propagates to the caller.

Concurrent runs for the same branch are not safe against each other: the
pre-cleanup search is the only ownership check and no lock is taken. Callers
must serialize them (e.g. CI concurrency groups).
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from envstack.apply import apply_with_retry
from envstack.artifacts import ArtifactStore
from envstack.config import StackConfig
from envstack.convergence import wait_for_convergence
from envstack.errors import ActionFailed, AddressTimeout, EnvstackError, NotFound
from envstack.notify import comments
from envstack.notify.github import NoOpNotifier, Notifier
from envstack.remote.client import HEAD
from envstack.remote.models import Component
from envstack.resource_graph import (
    PUBLIC_IP_PATH,
    ComponentSpec,
    ResourceGraphBuilder,
    load_bootstrap_template,
)

logger = logging.getLogger(__name__)


ENVIRONMENTS = ("sandbox", "dev", "preprod", "prod", "pr")
IMAGE_COMPONENTS = ("api", "web", "e2e")
IMAGE_TAG_ATTRIBUTE = "/domain/Template"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StackResult:
    """
    Outcome of one orchestrator run.

    Attributes:
        operation: 'up', 'down' or 'deploy-tag'
        branch: Branch the environment belongs to (empty for deploy-tag)
        version: Image version deployed, when relevant
        status: 'running', 'success', 'failed'
        change_set_id: Working change set (None if none was needed)
        address: Reachable address of a new environment
        removed: Components queued for deletion by a teardown
        error: Message written to the error artifact on failure
        duration_seconds: Wall-clock duration of the run
    """
    operation: str
    branch: str = ""
    version: Optional[str] = None
    status: str = "running"
    change_set_id: Optional[str] = None
    address: Optional[str] = None
    removed: int = 0
    error: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {"operation": self.operation, "status": self.status}
        for key in ("branch", "version", "change_set_id", "address", "error", "duration_seconds"):
            value = getattr(self, key)
            if value:
                result[key] = value
        if self.removed:
            result["removed"] = self.removed
        return result


class StackOrchestrator:
    """
    Drives the remote change-management API through environment lifecycles.

    Args:
        client: RemoteGraphClient
        config: StackConfig supplying timeouts and resource settings
        artifacts: Where error/address artifacts are written
        builder: ResourceGraphBuilder (defaults to config.resources)
        notifier: PR comment notifier used when refreshing an environment
        sleep: Sleep function shared by all polling loops
        clock: Monotonic clock shared by all polling loops
    """

    def __init__(
        self,
        client,
        config: StackConfig,
        artifacts: Optional[ArtifactStore] = None,
        builder: Optional[ResourceGraphBuilder] = None,
        notifier: Optional[Notifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.config = config
        self.artifacts = artifacts or ArtifactStore(config.artifact_path)
        self.builder = builder or ResourceGraphBuilder(config.resources)
        self.notifier = notifier or NoOpNotifier()
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def up(self, version: str, branch: str, pr_number: Optional[int] = None) -> StackResult:
        """
        Stand up a fresh environment for ``branch`` running ``version``.

        Any environment the branch already owns is torn down first.

        Raises:
            EnvstackError: On any unrecovered failure (error artifact written)
        """
        result = StackResult(operation="up", branch=branch, version=version)
        self.artifacts.clear_error()
        start = self.clock()
        change_set_id = None
        step = "Failed to clean up existing environment"

        logger.info("Starting environment setup for branch %s (v%s)", branch, version)
        try:
            self._pre_cleanup(branch, pr_number)

            run_id = str(uuid.uuid4())
            name = f"Environment {run_id} - v{version}"
            step = f"Failed to create change set '{name}'"
            change_set_id = self.client.create_change_set(name).id
            result.change_set_id = change_set_id

            step = "Failed to read bootstrap script"
            template = load_bootstrap_template(self.config.bootstrap_template_path)
            graph = self.builder.build(version, branch, run_id, template)

            step = "Failed to create bootstrap script component"
            self._create(change_set_id, graph.bootstrap_script)

            step = "Failed to create instance component"
            instance = self._create(change_set_id, graph.instance)

            step = "Failed to apply change set"
            self._apply(change_set_id)

            step = "Deployment actions failed"
            self._converge(change_set_id)

            step = "Failed to retrieve or save public IP"
            address = self.wait_for_address(instance.id)
            self.artifacts.write_address(address)

            result.address = address
            result.status = "success"
            logger.info("Instance is reachable at: %s", address)
            return result
        except Exception as e:
            result.status = "failed"
            result.error = self._record_failure(step, e)
            raise
        finally:
            if change_set_id:
                self._cleanup(change_set_id)
            result.duration_seconds = self.clock() - start

    def down(self, branch: str) -> StackResult:
        """
        Tear down every component owned by ``branch``.

        Succeeds without creating a change set when the branch owns nothing.
        A failed component delete is logged and the rest of the batch still
        goes through apply and convergence.

        Raises:
            EnvstackError: On any unrecovered failure (error artifact written)
        """
        result = StackResult(operation="down", branch=branch)
        self.artifacts.clear_error()
        start = self.clock()
        change_set_id = None
        step = f"Failed to search components for branch {branch}"

        logger.info("Starting environment teardown for branch %s", branch)
        try:
            owned = self.find_owned_components(branch)
            if not owned:
                logger.info("No components found for branch %s - nothing to clean up", branch)
                result.status = "success"
                return result

            name = f"Teardown Branch {branch} - {_utcnow_iso()}"
            step = f"Failed to create teardown change set '{name}'"
            change_set_id = self.client.create_change_set(name).id
            result.change_set_id = change_set_id

            result.removed = self._delete_components(change_set_id, owned)

            step = "Failed to apply teardown change set"
            self._apply(change_set_id)

            step = "Teardown actions failed"
            self._converge(change_set_id)

            self.artifacts.clear_address()
            result.status = "success"
            logger.info("All teardown actions completed successfully")
            return result
        except Exception as e:
            result.status = "failed"
            result.error = self._record_failure(step, e)
            raise
        finally:
            if change_set_id:
                self._cleanup(change_set_id)
            result.duration_seconds = self.clock() - start

    def deploy_image_tag(self, environment: str, component: str, tag: str) -> StackResult:
        """
        Point a long-lived environment's image tag component at ``tag``.

        Finds ``<environment>-tonys-chips-image-tag`` by name, sets its
        template attribute, and applies. Image build and push happen
        elsewhere.
        """
        if environment not in ENVIRONMENTS:
            raise ValueError(f"Invalid environment: {environment}. Must be one of {', '.join(ENVIRONMENTS)}")
        if component not in IMAGE_COMPONENTS:
            raise ValueError(f"Invalid component: {component}. Must be one of {', '.join(IMAGE_COMPONENTS)}")

        result = StackResult(operation="deploy-tag", version=tag)
        self.artifacts.clear_error()
        start = self.clock()
        change_set_id = None
        name = f"Deploy {component.upper()} - {tag} - {_utcnow_iso()}"
        step = f"Failed to create change set '{name}'"

        try:
            change_set_id = self.client.create_change_set(name).id
            result.change_set_id = change_set_id

            target = self.config.resources.image_tag_component.format(environment=environment)
            step = f"Deployment failed for {component.upper()}"
            found = self.client.find_component_by_name(change_set_id, target)
            if found is None:
                raise NotFound(
                    f"Component '{target}' not found. Ensure the image tag component exists in the workspace."
                )
            logger.info("Updating %s on %s (%s) to %s", IMAGE_TAG_ATTRIBUTE, found.name, found.id, tag)
            self.client.update_component_attribute(change_set_id, found.id, IMAGE_TAG_ATTRIBUTE, tag)

            self._apply(change_set_id)
            result.status = "success"
            logger.info("Deployment complete for %s", component.upper())
            return result
        except Exception as e:
            result.status = "failed"
            result.error = self._record_failure(step, e)
            raise
        finally:
            if change_set_id:
                self._cleanup(change_set_id)
            result.duration_seconds = self.clock() - start

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def find_owned_components(self, branch: str) -> list[Component]:
        """Search head for every component tagged ``Branch=branch``."""
        owned: list[Component] = []
        for schema_name in self.config.resources.schemas:
            owned.extend(self.client.search_components_by_branch(branch, schema_name))
        return owned

    def wait_for_address(self, component_id: str) -> str:
        """
        Poll the head-merged instance until it reports a public address.

        Raises:
            AddressTimeout: No address within config.address_timeout seconds
        """
        timeout = self.config.address_timeout
        start = self.clock()

        while self.clock() - start < timeout:
            component = self.client.get_component(HEAD, component_id)
            address = component.resource_value(PUBLIC_IP_PATH)
            if address:
                logger.info("Public IP found: %s", address)
                return address

            logger.info("Public IP not ready yet, retrying...")
            remaining = timeout - (self.clock() - start)
            if remaining <= 0:
                break
            self.sleep(min(self.config.address_interval, remaining))

        raise AddressTimeout(component_id, self.clock() - start)

    def _pre_cleanup(self, branch: str, pr_number: Optional[int]) -> None:
        logger.info("Checking for existing components for branch %s...", branch)
        existing = self.find_owned_components(branch)
        if not existing:
            logger.info("No existing components found for branch %s", branch)
            return

        logger.info("Found %d existing component(s) for branch %s. Cleaning up...", len(existing), branch)
        if pr_number:
            self._notify_refresh(pr_number, branch)
        self.down(branch)
        logger.info("Cleanup complete. Proceeding with new deployment")

    def _notify_refresh(self, pr_number: int, branch: str) -> None:
        logger.info("Posting environment refresh comment to PR #%s", pr_number)
        try:
            self.notifier.post_comment(
                comments.new_environment_key(pr_number),
                comments.environment_refresh(branch),
            )
        except Exception as e:
            # A refresh notice never aborts up
            logger.warning("Failed to post PR comment: %s", e)

    def _create(self, change_set_id: str, spec: ComponentSpec) -> Component:
        logger.info("Creating %s component %s...", spec.schema_name, spec.name)
        return self.client.create_component(
            change_set_id,
            spec.schema_name,
            spec.name,
            spec.attributes,
            view_name=spec.view_name,
        )

    def _delete_components(self, change_set_id: str, components: list[Component]) -> int:
        logger.info("Deleting %d component(s)...", len(components))
        queued = 0
        for component in components:
            try:
                self.client.delete_component(change_set_id, component.id)
            except EnvstackError as e:
                logger.error("Failed to delete component %s (%s): %s", component.name, component.id, e)
                continue
            queued += 1
            logger.info("Component %s queued for deletion", component.name)
        return queued

    def _apply(self, change_set_id: str) -> None:
        logger.info("Force applying change set %s...", change_set_id, extra={"change_set_id": change_set_id})
        apply_with_retry(
            self.client,
            change_set_id,
            timeout=self.config.apply_timeout,
            interval=self.config.apply_interval,
            sleep=self.sleep,
            clock=self.clock,
        )

    def _converge(self, change_set_id: str) -> None:
        logger.info("Waiting for actions to complete...", extra={"change_set_id": change_set_id})
        outcome = wait_for_convergence(
            self.client,
            change_set_id,
            timeout=self.config.convergence_timeout,
            poll_interval=self.config.convergence_interval,
            sleep=self.sleep,
            clock=self.clock,
        )
        if not outcome.succeeded:
            raise ActionFailed(change_set_id, outcome.diagnostics)

    def _record_failure(self, step: str, error: Exception) -> str:
        # Extracted action diagnostics are written verbatim for the PR comment
        if isinstance(error, ActionFailed) and error.diagnostics:
            message = str(error)
        else:
            message = f"{step}: {error}"
        logger.error(message)
        self.artifacts.write_error(message)
        return message

    def _cleanup(self, change_set_id: str) -> None:
        logger.info("Cleaning up change set %s...", change_set_id)
        try:
            self.client.delete_change_set(change_set_id)
        except Exception as e:
            logger.error("Failed to clean up change set %s: %s", change_set_id, e)
