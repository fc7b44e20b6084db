"""
taloscluster/backends/hetzner_client.py

An asynchronous Hetzner Cloud API client covering the resources a Talos
cluster needs: servers (and their actions), networks, firewalls, placement
groups, SSH keys and the actions that track asynchronous operations.
"""

from __future__ import annotations

import asyncio
import aiohttp
from typing import Any, Dict, List, Optional, Type

from taloscluster.models.settings import HetznerSettings
from taloscluster.models.validator import validate_type

ACTION_TIMEOUT_SECONDS = 300.0


class HetznerAPIError(Exception):
    """An error returned by the Hetzner Cloud API.

    Attributes:
        code (str): API error code, e.g. "not_found", "resource_unavailable".
        status (int): HTTP status of the response.
    """

    def __init__(self, code: str, message: str, status: int = 0) -> None:
        super().__init__(f"{message} ({code})")
        self.code = code
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.code == "not_found" or self.status == 404


class AsyncHetznerClient:
    """Thin async wrapper over the Hetzner Cloud REST API.

    Usable as an async context manager; otherwise a session is created lazily
    and must be released with `close()`.
    """

    def __init__(self, settings: HetznerSettings) -> None:
        """
        Initialize the AsyncHetznerClient.

        Args:
            settings (HetznerSettings): API token, endpoint and action poll interval.
        """
        self._endpoint = settings.endpoint.rstrip("/")
        self._token = settings.token
        self._poll_interval = settings.poll_interval_seconds
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> AsyncHetznerClient:
        self._session = aiohttp.ClientSession()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
        self._session = None

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one API request and return the decoded JSON body.

        Raises:
            HetznerAPIError: For any non-2xx response, carrying the API error code.
        """
        session = await self.ensure_session()
        headers = {"Authorization": f"Bearer {self._token}"}
        url = f"{self._endpoint}{path}"
        async with session.request(
            method, url, json=payload, params=params, headers=headers
        ) as resp:
            try:
                raw_js = await resp.json()
            except aiohttp.ContentTypeError:
                raw_js = {}
            js = validate_type(raw_js or {}, Dict[str, Any])
            if resp.status >= 400:
                error = js.get("error") or {}
                raise HetznerAPIError(
                    str(error.get("code", "unknown")),
                    str(error.get("message", f"HTTP {resp.status} for {method} {path}")),
                    resp.status,
                )
        return js

    async def _list(self, path: str, key: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page: Optional[int] = 1
        while page is not None:
            js = await self._request(
                "GET", path, params={**params, "page": page, "per_page": 50}
            )
            items += validate_type(js.get(key) or [], List[Dict[str, Any]])
            pagination = (js.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    async def _first_by_name(self, path: str, key: str, name: str) -> Optional[Dict[str, Any]]:
        matches = await self._list(path, key, {"name": name})
        return matches[0] if matches else None

    # ------------------------------
    # Actions
    # ------------------------------
    async def wait_for_action(
        self, action: Optional[Dict[str, Any]], timeout: float = ACTION_TIMEOUT_SECONDS
    ) -> None:
        """Poll an action until it succeeds.

        Raises:
            HetznerAPIError: If the action ends in status "error".
            asyncio.TimeoutError: If it is still running after `timeout` seconds.
        """
        if not action:
            return

        async def poll() -> None:
            current = action
            while current.get("status") == "running":
                await asyncio.sleep(self._poll_interval)
                js = await self._request("GET", f"/actions/{current['id']}")
                current = js.get("action") or {}
            if current.get("status") == "error":
                error = current.get("error") or {}
                raise HetznerAPIError(
                    str(error.get("code", "action_failed")),
                    str(error.get("message", f"action {current.get('command')} failed")),
                )

        await asyncio.wait_for(poll(), timeout=timeout)

    # ------------------------------
    # Servers
    # ------------------------------
    async def list_servers(self, label_selector: str) -> List[Dict[str, Any]]:
        return await self._list("/servers", "servers", {"label_selector": label_selector})

    async def get_server(self, server_id: int) -> Optional[Dict[str, Any]]:
        try:
            js = await self._request("GET", f"/servers/{server_id}")
        except HetznerAPIError as err:
            if err.is_not_found:
                return None
            raise
        return js.get("server")

    async def create_server(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a server and wait for its create action and follow-up actions."""
        js = await self._request("POST", "/servers", payload=payload)
        await self.wait_for_action(js.get("action"))
        for action in js.get("next_actions") or []:
            await self.wait_for_action(action)
        return validate_type(js.get("server"), Dict[str, Any])

    async def delete_server(self, server_id: int) -> None:
        js = await self._request("DELETE", f"/servers/{server_id}")
        await self.wait_for_action(js.get("action"))

    async def server_action(
        self, server_id: int, action: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Run a server action (poweron, shutdown, reset, attach_iso, detach_iso) to completion."""
        js = await self._request(
            "POST", f"/servers/{server_id}/actions/{action}", payload=payload
        )
        await self.wait_for_action(js.get("action"))

    # ------------------------------
    # Networks, firewalls, placement groups, SSH keys
    # ------------------------------
    async def get_network(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._first_by_name("/networks", "networks", name)

    async def create_network(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        js = await self._request("POST", "/networks", payload=payload)
        return validate_type(js.get("network"), Dict[str, Any])

    async def delete_network(self, network_id: int) -> None:
        await self._request("DELETE", f"/networks/{network_id}")

    async def get_firewall(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._first_by_name("/firewalls", "firewalls", name)

    async def create_firewall(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        js = await self._request("POST", "/firewalls", payload=payload)
        for action in js.get("actions") or []:
            await self.wait_for_action(action)
        return validate_type(js.get("firewall"), Dict[str, Any])

    async def delete_firewall(self, firewall_id: int) -> None:
        await self._request("DELETE", f"/firewalls/{firewall_id}")

    async def get_placement_group(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._first_by_name("/placement_groups", "placement_groups", name)

    async def create_placement_group(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        js = await self._request("POST", "/placement_groups", payload=payload)
        return validate_type(js.get("placement_group"), Dict[str, Any])

    async def delete_placement_group(self, placement_group_id: int) -> None:
        await self._request("DELETE", f"/placement_groups/{placement_group_id}")

    async def get_ssh_key(self, name: str) -> Optional[Dict[str, Any]]:
        return await self._first_by_name("/ssh_keys", "ssh_keys", name)

    async def is_reachable(self) -> bool:
        """Return True if the API accepts the token (GET /locations succeeds)."""
        try:
            await self._request("GET", "/locations", params={"per_page": 1})
            return True
        except (HetznerAPIError, aiohttp.ClientError):
            return False
