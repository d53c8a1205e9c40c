"""Remote infrastructure API binding."""

from envstack.remote.client import (
    APPLY_CONFLICT_STATUS,
    DEFAULT_API_URL,
    HEAD,
    INDEX_NOT_FOUND_PHRASE,
    RemoteGraphClient,
    branch_query,
)
from envstack.remote.models import Action, ChangeSet, Component, LogLine, MergeStatus

__all__ = [
    "APPLY_CONFLICT_STATUS",
    "DEFAULT_API_URL",
    "HEAD",
    "INDEX_NOT_FOUND_PHRASE",
    "RemoteGraphClient",
    "branch_query",
    "Action",
    "ChangeSet",
    "Component",
    "LogLine",
    "MergeStatus",
]
