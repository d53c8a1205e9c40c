"""
Typed views over remote infrastructure API payloads.

The remote API returns camelCase JSON. These dataclasses pick out the fields
the orchestrator relies on and keep the original payload in ``raw`` so callers
can still reach anything else.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


ACTION_SUCCESS = "Success"
ACTION_FAILED = "Failed"


@dataclass
class ChangeSet:
    """
    A draft transaction of graph mutations scoped to a workspace.

    Attributes:
        id: Change set identifier
        name: Display name
        status: Remote status string (Open, Applying, Applied, Failed, ...)
        is_head: True for the workspace's head change set
    """
    id: str
    name: str = ""
    status: str = ""
    is_head: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_applied(self) -> bool:
        return self.status.lower() == "applied"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeSet":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            status=data.get("status", "") or "",
            is_head=bool(data.get("isHead", False)),
            raw=data,
        )


@dataclass
class Component:
    """
    A typed node in the infrastructure graph.

    ``resource_props`` holds the read-only properties the remote system fills
    in after provisioning, as a list of ``{"path": ..., "value": ...}`` dicts.
    """
    id: str
    name: str = ""
    schema_name: str = ""
    resource_props: list[dict[str, Any]] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def resource_value(self, path: str) -> Any:
        """Return the resource-derived value at ``path``, or None if unset."""
        for prop in self.resource_props:
            if prop.get("path") == path and prop.get("value"):
                return prop["value"]
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Component":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            schema_name=data.get("schemaName", "") or data.get("schema", ""),
            resource_props=list(data.get("resourceProps") or []),
            raw=data,
        )


@dataclass
class Action:
    """An asynchronous provisioning side effect attached to a component."""
    id: str
    name: str = ""
    state: str = ""
    func_run_id: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.state == ACTION_SUCCESS

    @property
    def failed(self) -> bool:
        return self.state == ACTION_FAILED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Action":
        return cls(
            id=data.get("id", ""),
            name=data.get("displayName") or data.get("name") or "Unknown",
            state=data.get("state", "") or "",
            func_run_id=data.get("funcRunId") or None,
            raw=data,
        )


@dataclass
class MergeStatus:
    """Change set status plus the actions attached to it."""
    change_set: ChangeSet
    actions: list[Action] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeStatus":
        return cls(
            change_set=ChangeSet.from_dict(data.get("changeSet") or {}),
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
        )


@dataclass
class LogLine:
    """One log entry of a function run."""
    timestamp: str = ""
    stream: str = ""
    message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LogLine":
        return cls(
            timestamp=str(data.get("timestamp", "") or ""),
            stream=data.get("stream", "") or "",
            message=data.get("message", "") or "",
        )

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.stream}: {self.message}"
