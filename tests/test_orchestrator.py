"""Tests for the stack orchestrator.

Tests cover:
- up: provisioning, idempotent pre-cleanup, PR refresh notice
- down: empty state, branch isolation, partial delete failures
- Change set cleanup on every exit path
- Error artifact contents
- deploy_image_tag
"""

from unittest.mock import MagicMock

import pytest
import requests

from conftest import log_line
from envstack.errors import (
    ActionFailed,
    AddressTimeout,
    ApplyTimeout,
    NotFound,
    RemoteError,
)
from envstack.notify.github import GitHubNotifier
from envstack.orchestrator import StackOrchestrator
from envstack.remote.models import Action, ChangeSet, MergeStatus


INSTANCE = "AWS::EC2::Instance"
SCRIPT = "Userdata"


class RecordingNotifier:
    def __init__(self, error=None):
        self.posted = []
        self.error = error

    def post_comment(self, thread_key, body):
        self.posted.append((thread_key, body))
        if self.error:
            raise self.error


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(fake_client, fake_clock, stack_config, notifier):
    return StackOrchestrator(
        fake_client,
        stack_config,
        notifier=notifier,
        sleep=fake_clock.sleep,
        clock=fake_clock,
    )


def owned(fake_client, branch):
    return sorted(
        (component.schema_name, component.name)
        for component, owner in fake_client.head.values()
        if owner == branch
    )


def failed_status(func_run_id="fr-1"):
    return MergeStatus(
        change_set=ChangeSet(id="cs", status="Open"),
        actions=[Action(id="a1", name="Create Instance", state="Failed", func_run_id=func_run_id)],
    )


class TestUp:
    def test_provisions_environment(self, orchestrator, fake_client):
        result = orchestrator.up("1.2.3", "feat/x")

        assert result.succeeded
        assert result.address == "203.0.113.10"
        assert orchestrator.artifacts.read_address() == "203.0.113.10"
        assert orchestrator.artifacts.read_error() is None

        created = fake_client.calls_to("create_component")
        assert [args[1] for args in created] == [SCRIPT, INSTANCE]
        assert fake_client.calls_to("create_change_set")[0][0].startswith("Environment ")
        assert fake_client.calls_to("create_change_set")[0][0].endswith(" - v1.2.3")
        assert [schema for schema, _ in owned(fake_client, "feat/x")] == [INSTANCE, SCRIPT]

    def test_change_set_deleted_once(self, orchestrator, fake_client):
        result = orchestrator.up("1.2.3", "feat/x")
        assert fake_client.deleted_change_sets == [result.change_set_id]

    def test_address_polled_on_head(self, orchestrator, fake_client, fake_clock):
        fake_client.address_polls_before_ready = 2

        orchestrator.up("1.2.3", "feat/x")

        polls = fake_client.calls_to("get_component")
        assert len(polls) == 3
        assert all(args[0] == "head" for args in polls)
        assert fake_clock.sleeps == [3, 3]

    def test_retries_apply_conflicts(self, orchestrator, fake_client, fake_clock):
        fake_client.apply_results = [428, 428]

        assert orchestrator.up("1.2.3", "feat/x").succeeded
        assert len(fake_client.calls_to("force_apply")) == 3
        assert fake_clock.sleeps == [5, 5]

    def test_idempotent(self, orchestrator, fake_client):
        orchestrator.up("1.2.3", "feat/x")
        first = owned(fake_client, "feat/x")

        orchestrator.up("1.2.4", "feat/x")
        second = owned(fake_client, "feat/x")

        # Exactly one environment survives, and it is the new one
        assert len(first) == len(second) == 2
        assert all(name.endswith("1.2.4") for _, name in second)
        assert len(fake_client.calls_to("delete_component")) == 2
        assert len(fake_client.deleted_change_sets) == 3
        assert len(set(fake_client.deleted_change_sets)) == 3

    def test_leaves_other_branches_alone(self, orchestrator, fake_client):
        other = fake_client.add_head_component("other-instance", INSTANCE, "feat/other")

        orchestrator.up("1.2.3", "feat/x")

        assert other.id in fake_client.head
        assert fake_client.calls_to("delete_component") == []

    def test_refresh_notice_posted_when_replacing(self, orchestrator, fake_client, notifier):
        fake_client.add_head_component("old", INSTANCE, "feat/x")

        orchestrator.up("1.2.3", "feat/x", pr_number=42)

        assert len(notifier.posted) == 1
        thread_key, body = notifier.posted[0]
        assert thread_key.pr_number == 42
        assert "Environment Refreshing" in body

    def test_no_refresh_notice_for_fresh_environment(self, orchestrator, notifier):
        orchestrator.up("1.2.3", "feat/x", pr_number=42)
        assert notifier.posted == []

    def test_refresh_notice_failure_is_not_fatal(self, orchestrator, fake_client, notifier):
        notifier.error = RemoteError("POST", "https://api.github.com/x", 403)
        fake_client.add_head_component("old", INSTANCE, "feat/x")

        assert orchestrator.up("1.2.3", "feat/x", pr_number=42).succeeded

    def test_unexpected_refresh_notice_error_is_not_fatal(self, orchestrator, fake_client, notifier):
        notifier.error = ValueError("Expecting value: line 1 column 1 (char 0)")
        fake_client.add_head_component("old", INSTANCE, "feat/x")

        result = orchestrator.up("1.2.3", "feat/x", pr_number=42)

        assert result.succeeded
        assert len(fake_client.calls_to("delete_component")) == 1
        assert orchestrator.artifacts.read_error() is None

    def test_github_html_reply_does_not_block_refresh(self, fake_client, fake_clock, stack_config):
        session = MagicMock()
        session.headers = {}
        html = requests.Response()
        html.status_code = 200
        html.encoding = "utf-8"
        html._content = b"<html>not json</html>"
        session.request.return_value = html
        orchestrator = StackOrchestrator(
            fake_client,
            stack_config,
            notifier=GitHubNotifier("gh-token", "acme/chips", session=session),
            sleep=fake_clock.sleep,
            clock=fake_clock,
        )
        fake_client.add_head_component("old", INSTANCE, "feat/x")

        assert orchestrator.up("1.2.3", "feat/x", pr_number=5).succeeded
        assert len(fake_client.calls_to("delete_component")) == 1
        assert session.request.call_count == 1

    def test_clears_stale_error(self, orchestrator):
        orchestrator.artifacts.write_error("previous run failed")
        orchestrator.up("1.2.3", "feat/x")
        assert orchestrator.artifacts.read_error() is None

    def test_action_failure_writes_diagnostic(self, orchestrator, fake_client):
        fake_client.merge_statuses = [failed_status()]
        fake_client.logs[("head", "fr-1")] = [log_line('Output: {"status":"error","message":"disk full"}')]

        with pytest.raises(ActionFailed):
            orchestrator.up("1.2.3", "feat/x")

        assert orchestrator.artifacts.read_error() == "disk full"
        assert orchestrator.artifacts.read_address() is None

    def test_create_change_set_failure_needs_no_cleanup(self, orchestrator, fake_client):
        fake_client.fail["create_change_set"] = RemoteError("POST", "https://api/x", 500, "boom")

        with pytest.raises(RemoteError):
            orchestrator.up("1.2.3", "feat/x")

        assert fake_client.deleted_change_sets == []
        assert orchestrator.artifacts.read_error().startswith("Failed to create change set")


@pytest.mark.parametrize(
    "arrange, expected_error, message_prefix",
    [
        (
            lambda c: c.fail.__setitem__("create_component", RemoteError("POST", "https://api/x", 500, "boom")),
            RemoteError,
            "Failed to create bootstrap script component: HTTP 500",
        ),
        (
            lambda c: setattr(c, "apply_results", [RemoteError("POST", "https://api/x", 500, "boom")]),
            RemoteError,
            "Failed to apply change set: HTTP 500",
        ),
        (
            lambda c: setattr(c, "apply_results", [428] * 100),
            ApplyTimeout,
            "Failed to apply change set: Change set apply timeout",
        ),
        (
            lambda c: setattr(c, "merge_statuses", [failed_status(func_run_id="fr-none")]),
            ActionFailed,
            "Deployment actions failed: Actions failed for change set",
        ),
        (
            lambda c: setattr(c, "address_polls_before_ready", 10_000),
            AddressTimeout,
            "Failed to retrieve or save public IP: Public IP lookup timeout",
        ),
    ],
    ids=["create-component", "apply", "apply-timeout", "actions-failed", "address-timeout"],
)
def test_up_failure_cleans_up_exactly_once(orchestrator, fake_client, arrange, expected_error, message_prefix):
    arrange(fake_client)

    with pytest.raises(expected_error):
        orchestrator.up("1.2.3", "feat/x")

    created = [args[0] for args in fake_client.calls_to("create_change_set")]
    assert len(created) == 1
    assert len(fake_client.deleted_change_sets) == 1
    assert orchestrator.artifacts.read_error().startswith(message_prefix)


def test_pre_cleanup_failure_cleans_up_teardown_change_set(orchestrator, fake_client):
    fake_client.add_head_component("old", INSTANCE, "feat/x")
    fake_client.apply_results = [RemoteError("POST", "https://api/x", 500, "boom")]

    with pytest.raises(RemoteError):
        orchestrator.up("1.2.3", "feat/x")

    created = [args[0] for args in fake_client.calls_to("create_change_set")]
    assert len(created) == 1
    assert created[0].startswith("Teardown Branch feat/x")
    assert len(fake_client.deleted_change_sets) == 1
    assert fake_client.calls_to("create_component") == []
    assert orchestrator.artifacts.read_error().startswith("Failed to clean up existing environment")


def test_cleanup_failure_does_not_fail_run(orchestrator, fake_client):
    fake_client.fail["delete_change_set"] = RemoteError("DELETE", "https://api/x", 500)

    result = orchestrator.up("1.2.3", "feat/x")

    assert result.succeeded
    assert len(fake_client.calls_to("delete_change_set")) == 1


def test_cleanup_failure_does_not_mask_original_error(orchestrator, fake_client):
    fake_client.fail["delete_change_set"] = RemoteError("DELETE", "https://api/x", 500)
    fake_client.apply_results = [RemoteError("POST", "https://api/x", 502, "bad gateway")]

    with pytest.raises(RemoteError) as exc_info:
        orchestrator.up("1.2.3", "feat/x")

    assert exc_info.value.http_status == 502


class TestDown:
    def test_nothing_to_remove(self, orchestrator, fake_client):
        result = orchestrator.down("feat/x")

        assert result.succeeded
        assert result.change_set_id is None
        assert fake_client.calls_to("create_change_set") == []
        assert fake_client.calls_to("force_apply") == []
        searched = sorted(args[1] for args in fake_client.calls_to("search_components_by_branch"))
        assert searched == [INSTANCE, SCRIPT]

    def test_removes_only_branch_components(self, orchestrator, fake_client):
        fake_client.add_head_component("a-instance", INSTANCE, "feat/a")
        fake_client.add_head_component("a-script", SCRIPT, "feat/a")
        fake_client.add_head_component("b-instance", INSTANCE, "feat/b")

        result = orchestrator.down("feat/a")

        assert result.removed == 2
        assert owned(fake_client, "feat/a") == []
        assert owned(fake_client, "feat/b") == [(INSTANCE, "b-instance")]
        assert fake_client.calls_to("create_change_set")[0][0].startswith("Teardown Branch feat/a - ")
        assert fake_client.deleted_change_sets == [result.change_set_id]

    def test_delete_failure_continues_batch(self, orchestrator, fake_client):
        stuck = fake_client.add_head_component("a-instance", INSTANCE, "feat/a")
        fake_client.add_head_component("a-script", SCRIPT, "feat/a")
        fake_client.delete_errors[stuck.id] = RemoteError("DELETE", "https://api/x", 409)

        result = orchestrator.down("feat/a")

        assert result.succeeded
        assert result.removed == 1
        assert len(fake_client.calls_to("delete_component")) == 2
        assert len(fake_client.calls_to("force_apply")) == 1
        assert owned(fake_client, "feat/a") == [(INSTANCE, "a-instance")]

    def test_removes_address_artifact(self, orchestrator, fake_client):
        orchestrator.artifacts.write_address("203.0.113.10")
        fake_client.add_head_component("a-instance", INSTANCE, "feat/a")

        orchestrator.down("feat/a")

        assert orchestrator.artifacts.read_address() is None

    def test_teardown_failure(self, orchestrator, fake_client):
        fake_client.add_head_component("a-instance", INSTANCE, "feat/a")
        fake_client.merge_statuses = [failed_status(func_run_id=None)]

        with pytest.raises(ActionFailed):
            orchestrator.down("feat/a")

        assert orchestrator.artifacts.read_error().startswith("Teardown actions failed")
        assert len(fake_client.deleted_change_sets) == 1

    def test_search_failure(self, orchestrator, fake_client):
        fake_client.fail["search_components_by_branch"] = RemoteError("GET", "https://api/x", 500)

        with pytest.raises(RemoteError):
            orchestrator.down("feat/a")

        assert fake_client.calls_to("create_change_set") == []
        assert "Failed to search components for branch feat/a" in orchestrator.artifacts.read_error()


class TestDeployImageTag:
    def test_updates_tag_component(self, orchestrator, fake_client):
        target = fake_client.add_head_component("dev-tonys-chips-image-tag", "String Template", None)

        result = orchestrator.deploy_image_tag("dev", "api", "20231201120000-abc1234")

        assert result.succeeded
        assert fake_client.attribute_updates == [(target.id, "/domain/Template", "20231201120000-abc1234")]
        assert len(fake_client.calls_to("force_apply")) == 1
        assert fake_client.deleted_change_sets == [result.change_set_id]
        assert fake_client.calls_to("create_change_set")[0][0].startswith("Deploy API - 20231201120000-abc1234")

    def test_missing_component(self, orchestrator, fake_client):
        with pytest.raises(NotFound, match="prod-tonys-chips-image-tag"):
            orchestrator.deploy_image_tag("prod", "web", "v1")

        assert len(fake_client.deleted_change_sets) == 1
        assert orchestrator.artifacts.read_error().startswith("Deployment failed for WEB")

    @pytest.mark.parametrize("environment, component", [("staging", "api"), ("dev", "worker")])
    def test_rejects_unknown_targets(self, orchestrator, fake_client, environment, component):
        with pytest.raises(ValueError):
            orchestrator.deploy_image_tag(environment, component, "v1")
        assert fake_client.calls_to("create_change_set") == []


def test_result_to_dict(orchestrator):
    result = orchestrator.up("1.2.3", "feat/x")
    data = result.to_dict()

    assert data["operation"] == "up"
    assert data["status"] == "success"
    assert data["address"] == "203.0.113.10"
    assert "removed" not in data
