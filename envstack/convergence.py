"""
Convergence poller - wait for a change set's actions to finish.

After apply, the remote runs provisioning actions asynchronously. This module
polls merge status until every action is terminal:

    no actions + applied      -> succeeded
    no actions + not applied  -> pending
    all actions Success       -> succeeded
    any action Failed         -> failed (diagnose, stop polling)
    otherwise                 -> pending

On failure the logs of each failed action are scanned for an embedded JSON
error payload, whose ``message`` becomes the diagnostic.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from envstack.errors import ConvergenceTimeout, RemoteError
from envstack.remote.client import HEAD
from envstack.remote.models import Action, LogLine, MergeStatus

logger = logging.getLogger(__name__)


DEFAULT_CONVERGENCE_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 10

OUTPUT_STREAM = "output"
OUTPUT_PREFIX = "Output: "


class ConvergenceState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ConvergenceResult:
    """Terminal outcome of polling one change set."""
    succeeded: bool
    diagnostics: list[str] = field(default_factory=list)
    actions: list[Action] = field(default_factory=list)


def classify_merge_status(status: MergeStatus) -> ConvergenceState:
    """Map one merge-status snapshot onto the poller's state machine."""
    if not status.actions:
        if status.change_set.is_applied:
            return ConvergenceState.SUCCEEDED
        return ConvergenceState.PENDING
    if all(action.succeeded for action in status.actions):
        return ConvergenceState.SUCCEEDED
    if any(action.failed for action in status.actions):
        return ConvergenceState.FAILED
    return ConvergenceState.PENDING


def wait_for_convergence(
    client,
    change_set_id: str,
    timeout: float = DEFAULT_CONVERGENCE_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ConvergenceResult:
    """
    Poll merge status until all actions of ``change_set_id`` are terminal.

    Transport errors are not retried; they propagate to the caller.

    Returns:
        ConvergenceResult (succeeded=False carries extracted diagnostics)

    Raises:
        ConvergenceTimeout: No terminal state within ``timeout`` seconds
    """
    start = clock()

    while True:
        elapsed = clock() - start
        if elapsed >= timeout:
            break

        status = client.get_merge_status(change_set_id)
        state = classify_merge_status(status)

        if state is ConvergenceState.SUCCEEDED:
            if status.actions:
                logger.info("All %d action(s) succeeded", len(status.actions))
            else:
                logger.info("Change set applied with no actions remaining")
            return ConvergenceResult(succeeded=True, actions=status.actions)

        if state is ConvergenceState.FAILED:
            failed = [action for action in status.actions if action.failed]
            logger.error("%d action(s) failed. Collecting logs", len(failed))
            diagnostics = diagnose_failed_actions(client, change_set_id, failed)
            return ConvergenceResult(succeeded=False, diagnostics=diagnostics, actions=status.actions)

        if status.actions:
            logger.info("Action states: %s. Waiting...", ", ".join(a.state for a in status.actions))
        else:
            logger.info("No actions found. Change set status: %s. Waiting...", status.change_set.status)

        remaining = timeout - (clock() - start)
        if remaining <= 0:
            break
        sleep(min(poll_interval, remaining))

    raise ConvergenceTimeout(change_set_id, clock() - start)


def diagnose_failed_actions(client, change_set_id: str, failed: Iterable[Action]) -> list[str]:
    """Fetch logs for each failed action and extract one diagnostic per action."""
    diagnostics = []
    detail: Optional[dict[str, Action]] = None

    for action in failed:
        logger.info("--- Logs for failed action: %s ---", action.name)
        func_run_id = action.func_run_id
        if not func_run_id:
            if detail is None:
                detail = {a.id: a for a in client.list_actions(change_set_id)}
            resolved = detail.get(action.id)
            func_run_id = resolved.func_run_id if resolved else None

        if not func_run_id:
            logger.info("No func run ID available for action %s", action.name)
            continue

        lines = fetch_action_logs(client, change_set_id, func_run_id)
        if not lines:
            logger.info("No logs available for action %s", action.name)
            continue
        for line in lines:
            logger.info("%s", line)

        message = extract_diagnostic(lines)
        if message:
            diagnostics.append(message)
        logger.info("--- End of logs ---")

    return diagnostics


def fetch_action_logs(client, change_set_id: str, func_run_id: str) -> list[LogLine]:
    """
    Retrieve logs for a function run.

    Head is tried first since logs may only be indexed once merged; the
    working change set is the fallback when head has none or rejects the
    lookup with an HTTP error.
    """
    try:
        lines = client.get_action_logs(HEAD, func_run_id)
    except RemoteError as e:
        logger.debug("Head has no logs for func run %s: %s", func_run_id, e)
        lines = []
    if lines:
        return lines
    return client.get_action_logs(change_set_id, func_run_id)


def extract_diagnostic(lines: Iterable[LogLine]) -> Optional[str]:
    """
    Pull the error message out of an action's log lines.

    Only ``output`` stream lines that look like error payloads are
    considered. The JSON after ``Output: `` (or the whole message) is parsed
    and its ``message`` field used; an unparseable candidate is used as-is.
    The last candidate wins.
    """
    diagnostic = None
    for line in lines:
        message = line.message
        if line.stream != OUTPUT_STREAM:
            continue
        if "error" not in message.lower() and "message" not in message:
            continue

        payload_text = message.split(OUTPUT_PREFIX, 1)[1] if OUTPUT_PREFIX in message else message
        try:
            payload = json.loads(payload_text)
        except ValueError:
            diagnostic = message
            continue
        if isinstance(payload, dict) and payload.get("message"):
            diagnostic = str(payload["message"])

    return diagnostic
