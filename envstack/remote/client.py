"""
Remote graph client - IO boundary for the infrastructure API.

This module provides the single boundary where envstack talks to the remote
declarative infrastructure system. It is a thin typed transport: every method
issues one HTTP request and either returns a parsed result or raises.

Error classification:
- Non-2xx responses -> RemoteError (carries http_status and body)
- requests network failures -> TransportError (http_status=None)
- force_apply 428 -> ApplyConflict (keyed off the status code only)
- search 500 mentioning a missing change set index -> empty result

No retries and no sleeping happen here; callers own that policy.
"""

import logging
from typing import Any, Optional

import requests

from envstack.errors import ApplyConflict, NotFound, RemoteError, TransportError
from envstack.remote.models import Action, ChangeSet, Component, LogLine, MergeStatus

logger = logging.getLogger(__name__)


DEFAULT_API_URL = "https://api.systeminit.com"

# force_apply answers 428 Precondition Required while dependent values compute
APPLY_CONFLICT_STATUS = 428

# Freshly created change sets may not be indexed yet
INDEX_NOT_FOUND_PHRASE = "change set index not found"

HEAD = "head"


class RemoteGraphClient:
    """
    Typed HTTP binding to one workspace of the remote infrastructure API.

    Args:
        api_token: Bearer token for the API
        workspace_id: Workspace all requests are scoped to
        api_url: Base URL of the API
        request_timeout: Per-request timeout in seconds
        session: Optional requests.Session (injected in tests)
    """

    def __init__(
        self,
        api_token: str,
        workspace_id: str,
        api_url: str = DEFAULT_API_URL,
        request_timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.workspace_id = workspace_id
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
        })

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "RemoteGraphClient":
        """Build a client from a validated StackConfig."""
        return cls(
            api_token=config.api_token,
            workspace_id=config.workspace_id,
            api_url=config.api_url,
            request_timeout=config.request_timeout,
            session=session,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, path: str = "") -> str:
        return f"{self.api_url}/v1/w/{self.workspace_id}/change-sets{path}"

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Issue a request, wrapping network failures as TransportError."""
        kwargs.setdefault("timeout", self.request_timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Issue a request and return the parsed JSON body, raising on non-2xx."""
        response = self._send(method, url, **kwargs)
        if not response.ok:
            raise RemoteError(method, url, response.status_code, response.text)
        return _json_body(response)

    # ------------------------------------------------------------------
    # Change sets
    # ------------------------------------------------------------------

    def create_change_set(self, name: str) -> ChangeSet:
        data = self._request("POST", self._url(), json={"changeSetName": name})
        change_set = ChangeSet.from_dict(data.get("changeSet") or {})
        if not change_set.id:
            raise NotFound(f"Change set '{name}' created without an id")
        logger.info("Created change set %s (%s)", change_set.id, name)
        return change_set

    def list_change_sets(self) -> list[ChangeSet]:
        data = self._request("GET", self._url())
        return [ChangeSet.from_dict(cs) for cs in data.get("changeSets") or []]

    def get_change_set(self, change_set_id: str) -> ChangeSet:
        data = self._request("GET", self._url(f"/{change_set_id}"))
        return ChangeSet.from_dict(data.get("changeSet") or data)

    def get_head_change_set_id(self) -> str:
        """Return the id of the change set flagged as head."""
        for change_set in self.list_change_sets():
            if change_set.is_head:
                logger.debug("Found HEAD change set: %s", change_set.id)
                return change_set.id
        raise NotFound("No HEAD change set found")

    def delete_change_set(self, change_set_id: str) -> None:
        self._request("DELETE", self._url(f"/{change_set_id}"))
        logger.info("Deleted change set %s", change_set_id)

    def force_apply(self, change_set_id: str) -> dict[str, Any]:
        """
        Commit a change set to head.

        Raises:
            ApplyConflict: Remote answered 428 (dependent values still computing)
            RemoteError: Any other non-2xx response
        """
        url = self._url(f"/{change_set_id}/force_apply")
        response = self._send("POST", url, data="", headers={"accept": "application/json"})
        if response.status_code == APPLY_CONFLICT_STATUS:
            raise ApplyConflict(change_set_id, response.text)
        if not response.ok:
            raise RemoteError("POST", url, response.status_code, response.text)
        return _json_body(response)

    def get_merge_status(self, change_set_id: str) -> MergeStatus:
        data = self._request("GET", self._url(f"/{change_set_id}/merge_status"))
        return MergeStatus.from_dict(data)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def create_component(
        self,
        change_set_id: str,
        schema_name: str,
        name: str,
        attributes: dict[str, Any],
        view_name: Optional[str] = None,
    ) -> Component:
        body: dict[str, Any] = {"schemaName": schema_name, "name": name, "attributes": attributes}
        if view_name:
            body["viewName"] = view_name
        data = self._request("POST", self._url(f"/{change_set_id}/components"), json=body)
        component = Component.from_dict(data.get("component") or {})
        logger.info("Created %s component %s (%s)", schema_name, name, component.id)
        return component

    def get_component(self, change_set_id: str, component_id: str) -> Component:
        data = self._request("GET", self._url(f"/{change_set_id}/components/{component_id}"))
        return Component.from_dict(data.get("component") or {})

    def update_component_attribute(
        self,
        change_set_id: str,
        component_id: str,
        attribute_path: str,
        value: Any,
    ) -> Component:
        data = self._request(
            "PUT",
            self._url(f"/{change_set_id}/components/{component_id}"),
            json={"attributes": {attribute_path: value}},
        )
        return Component.from_dict(data.get("component") or {"id": component_id})

    def delete_component(self, change_set_id: str, component_id: str) -> None:
        self._request("DELETE", self._url(f"/{change_set_id}/components/{component_id}"))

    def find_component_by_name(self, change_set_id: str, name: str) -> Optional[Component]:
        """Look a component up by display name; None when the API returns none."""
        data = self._request(
            "GET",
            self._url(f"/{change_set_id}/components/find"),
            params={"component": name},
        )
        component = data.get("component")
        return Component.from_dict(component) if component else None

    def search_components(self, change_set_id: str, query: str) -> list[Component]:
        """
        Run a tag/attribute search.

        A 500 whose body mentions a missing change set index is treated as
        zero results. Every other failure raises RemoteError.
        """
        url = self._url(f"/{change_set_id}/search")
        response = self._send("GET", url, params={"q": query})
        if not response.ok:
            if response.status_code == 500 and INDEX_NOT_FOUND_PHRASE in response.text:
                logger.warning(
                    "Change set index not found for %s - treating as no components found",
                    change_set_id,
                )
                return []
            raise RemoteError("GET", url, response.status_code, response.text)
        data = _json_body(response)
        return [Component.from_dict(c) for c in data.get("components") or []]

    def search_components_by_branch(self, branch: str, schema_name: str) -> list[Component]:
        """Search head for components of ``schema_name`` tagged Branch=branch."""
        head_id = self.get_head_change_set_id()
        query = branch_query(branch, schema_name)
        logger.info("Searching with query: %s", query)
        components = self.search_components(head_id, query)
        logger.info("Found %d %s component(s) for branch %s", len(components), schema_name, branch)
        for component in components:
            logger.info("  - %s (%s)", component.name, component.id)
        return components

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def list_actions(self, change_set_id: str) -> list[Action]:
        data = self._request("GET", self._url(f"/{change_set_id}/actions"))
        return [Action.from_dict(a) for a in data.get("actions") or []]

    def get_action_logs(self, change_set_id: str, func_run_id: str) -> list[LogLine]:
        data = self._request("GET", self._url(f"/{change_set_id}/funcs/runs/{func_run_id}"))
        func_run = data.get("funcRun") or {}
        logs = (func_run.get("logs") or {}).get("logs") or []
        return [LogLine.from_dict(line) for line in logs]


def branch_query(branch: str, schema_name: str) -> str:
    """Search query for components of a schema owned by ``branch``.

    The branch is quoted so names with hyphens and slashes match literally.
    """
    return f'schema:{schema_name} & Key:Branch & Value:"{branch}"'


def _json_body(response: requests.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}
