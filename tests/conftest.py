import pytest

from envstack.config import StackConfig
from envstack.errors import ApplyConflict
from envstack.remote.models import ChangeSet, Component, LogLine, MergeStatus


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _branch_of(attributes):
    tags = attributes.get("/si/tags")
    if tags and tags.get("Key") == "Branch":
        return tags["Value"]
    for key, value in attributes.items():
        if key.startswith("/domain/Tags/") and value.get("Key") == "Branch":
            return value["Value"]
    return None


class FakeClient:
    """
    In-memory stand-in for RemoteGraphClient.

    Components created or deleted in a change set only reach head when that
    change set is force-applied. Set ``fail[method] = exc`` to make a method
    raise, and queue ``apply_results`` / ``merge_statuses`` to script the
    remote's behaviour.
    """

    def __init__(self):
        self.calls = []
        self.fail = {}
        self.head = {}  # component id -> (Component, branch)
        self.pending = {}  # change set id -> [ops]
        self.change_sets = {}
        self.deleted_change_sets = []
        self.apply_results = []
        self.merge_statuses = []
        self.actions = []
        self.logs = {}
        self.delete_errors = {}
        self.attribute_updates = []
        self.address_polls_before_ready = 0
        self.public_ip = "203.0.113.10"
        self._address_polls = 0
        self._next_id = 0

    def _record(self, method, *args):
        self.calls.append((method, args))
        if method in self.fail:
            raise self.fail[method]

    def _id(self, prefix):
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def calls_to(self, method):
        return [args for name, args in self.calls if name == method]

    def add_head_component(self, name, schema_name, branch):
        component = Component(id=self._id("comp"), name=name, schema_name=schema_name)
        self.head[component.id] = (component, branch)
        return component

    # Change sets

    def create_change_set(self, name):
        self._record("create_change_set", name)
        change_set = ChangeSet(id=self._id("cs"), name=name, status="Open")
        self.change_sets[change_set.id] = change_set
        self.pending[change_set.id] = []
        return change_set

    def delete_change_set(self, change_set_id):
        self._record("delete_change_set", change_set_id)
        self.deleted_change_sets.append(change_set_id)
        self.change_sets.pop(change_set_id, None)

    def force_apply(self, change_set_id):
        self._record("force_apply", change_set_id)
        if self.apply_results:
            outcome = self.apply_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome == 428:
                raise ApplyConflict(change_set_id)
        for op, payload in self.pending.get(change_set_id, []):
            if op == "create":
                self.head[payload[0].id] = payload
            else:
                self.head.pop(payload, None)
        self.pending[change_set_id] = []
        self.change_sets[change_set_id].status = "Applied"
        return {"success": True}

    def get_merge_status(self, change_set_id):
        self._record("get_merge_status", change_set_id)
        if self.merge_statuses:
            if len(self.merge_statuses) > 1:
                return self.merge_statuses.pop(0)
            return self.merge_statuses[0]
        change_set = self.change_sets.get(change_set_id) or ChangeSet(id=change_set_id)
        return MergeStatus(change_set=ChangeSet(id=change_set_id, status=change_set.status or "Applied"))

    # Components

    def create_component(self, change_set_id, schema_name, name, attributes, view_name=None):
        self._record("create_component", change_set_id, schema_name, name, attributes, view_name)
        component = Component(id=self._id("comp"), name=name, schema_name=schema_name)
        self.pending[change_set_id].append(("create", (component, _branch_of(attributes))))
        return component

    def get_component(self, change_set_id, component_id):
        self._record("get_component", change_set_id, component_id)
        self._address_polls += 1
        props = []
        if self._address_polls > self.address_polls_before_ready:
            props = [{"path": "root/resource_value/PublicIp", "value": self.public_ip}]
        return Component(id=component_id, resource_props=props)

    def delete_component(self, change_set_id, component_id):
        self._record("delete_component", change_set_id, component_id)
        if component_id in self.delete_errors:
            raise self.delete_errors[component_id]
        self.pending[change_set_id].append(("delete", component_id))

    def update_component_attribute(self, change_set_id, component_id, attribute_path, value):
        self._record("update_component_attribute", change_set_id, component_id, attribute_path, value)
        self.attribute_updates.append((component_id, attribute_path, value))
        return Component(id=component_id)

    def find_component_by_name(self, change_set_id, name):
        self._record("find_component_by_name", change_set_id, name)
        for component, _ in self.head.values():
            if component.name == name:
                return component
        return None

    def search_components_by_branch(self, branch, schema_name):
        self._record("search_components_by_branch", branch, schema_name)
        return [
            component
            for component, owner in self.head.values()
            if owner == branch and component.schema_name == schema_name
        ]

    # Actions

    def list_actions(self, change_set_id):
        self._record("list_actions", change_set_id)
        return list(self.actions)

    def get_action_logs(self, change_set_id, func_run_id):
        self._record("get_action_logs", change_set_id, func_run_id)
        result = self.logs.get((change_set_id, func_run_id), [])
        if isinstance(result, Exception):
            raise result
        return list(result)


def log_line(message, stream="output"):
    return LogLine(timestamp="2024-10-15T14:30:22Z", stream=stream, message=message)


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def stack_config(tmp_path):
    return StackConfig(
        api_token="test-token",
        workspace_id="ws-123",
        artifact_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Keep developer environment variables out of tests."""
    for var in (
        "SI_API_TOKEN",
        "SI_WORKSPACE_ID",
        "SI_API_URL",
        "ENVSTACK_ARTIFACT_DIR",
        "ENVSTACK_LOG_LEVEL",
        "ENVSTACK_LOG_FORMAT",
        "ENVSTACK_LOG_FILE",
        "GITHUB_TOKEN",
        "GITHUB_REPOSITORY",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("ENVSTACK_HOME", str(tmp_path / "envstack_home"))
