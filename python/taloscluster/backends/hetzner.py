"""
taloscluster/backends/hetzner.py

Runs Talos nodes as Hetzner Cloud servers.

Every cluster owns four shared resources, created get-or-create style before
the first server and deleted only on cluster teardown:

    <cluster>-network     private network (one cloud subnet)
    <cluster>-firewall    inbound Talos, Kubernetes, etcd, kubelet and ICMP
    <cluster>-placement   spread placement group (optional)
    SSH key               looked up by name (optional)

Servers boot a placeholder image, get the Talos ISO attached and are reset so
they come up in Talos maintenance mode. Creation is retried per location and
falls back to alternate locations, and optionally drops the placement group,
when Hetzner reports capacity problems.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.backends.hetzner_client import AsyncHetznerClient, HetznerAPIError
from taloscluster.models.cluster import ClusterSpec, PlacementGroupStrategy, Provider
from taloscluster.models.nodes import HetznerInfrastructure, NodeDescriptor, NodeRole
from taloscluster.provisioner.errors import MissingEndpointError, ProvisionerError
from taloscluster.talos.client import TALOS_API_PORT
from taloscluster.talos.machine_config import KUBERNETES_API_PORT, MachineConfig
from taloscluster.utils.async_retry import ExpectedError, retry_until
from taloscluster.utils.naming import node_name

logger = logging.getLogger(__name__)

LABEL_OWNED = "taloscluster.owned"
LABEL_CLUSTER_NAME = "taloscluster.cluster.name"
LABEL_NODE_TYPE = "taloscluster.node.type"
LABEL_NODE_INDEX = "taloscluster.node.index"

NETWORK_SUFFIX = "-network"
FIREWALL_SUFFIX = "-firewall"
PLACEMENT_GROUP_SUFFIX = "-placement"

PLACEHOLDER_IMAGE = "debian-13"
DEFAULT_NETWORK_CIDR = "10.0.0.0/16"
DEFAULT_SUBNET_CIDR = "10.0.1.0/24"

MAX_CREATE_ATTEMPTS = 3
RETRY_BASE_DELAY = 2.0
RETRY_MAX_DELAY = 10.0
RESOURCE_RELEASE_DELAY = 5.0
FIREWALL_DELETE_ATTEMPTS = 5
FIREWALL_DELETE_DELAY = 2.0
SERVER_STOP_TIMEOUT = 300.0
SERVER_POLL_INTERVAL = 2.0

PERMANENT_ERROR_CODES = {
    "resource_limit_exceeded",
    "invalid_input",
    "forbidden",
    "unauthorized",
}
PLACEMENT_ERROR_CODES = {"placement_error", "resource_unavailable"}
RETRYABLE_ERROR_CODES = {
    "resource_unavailable",
    "conflict",
    "timeout",
    "rate_limit_exceeded",
    "robot_unavailable",
    "locked",
}

FIREWALL_TCP_PORTS = [
    (str(TALOS_API_PORT), "Talos API"),
    ("50001", "Talos trustd"),
    (str(KUBERNETES_API_PORT), "Kubernetes API"),
    ("2379-2380", "etcd"),
    ("10250", "kubelet"),
]


class AllLocationsFailedError(ProvisionerError):
    """Server creation failed in the primary and every fallback location."""


class AllRetriesExhaustedError(ProvisionerError):
    """Server creation kept failing with retryable errors in one location."""


def is_permanent_error(err: HetznerAPIError) -> bool:
    return err.code in PERMANENT_ERROR_CODES


def is_placement_error(err: HetznerAPIError) -> bool:
    return err.code in PLACEMENT_ERROR_CODES


def is_retryable_error(err: HetznerAPIError) -> bool:
    return err.code in RETRYABLE_ERROR_CODES or is_placement_error(err)


def retry_delay(
    attempt: int, base: float = RETRY_BASE_DELAY, cap: float = RETRY_MAX_DELAY
) -> float:
    """Exponential delay before retry `attempt + 1`: 2s, 4s, 8s, capped at 10s."""
    return min(base * (2 ** (attempt - 1)), cap)


def subnet_for(network_cidr: str) -> str:
    return DEFAULT_SUBNET_CIDR if network_cidr == DEFAULT_NETWORK_CIDR else network_cidr


def firewall_rules() -> List[Dict[str, Any]]:
    sources = ["0.0.0.0/0", "::/0"]
    rules: List[Dict[str, Any]] = [
        {
            "direction": "in",
            "protocol": "tcp",
            "port": port,
            "source_ips": sources,
            "description": description,
        }
        for port, description in FIREWALL_TCP_PORTS
    ]
    rules.append(
        {"direction": "in", "protocol": "icmp", "source_ips": sources, "description": "ICMP"}
    )
    return rules


def _role_from_label(value: str) -> NodeRole:
    return NodeRole.CONTROL_PLANE if value == NodeRole.CONTROL_PLANE.value else NodeRole.WORKER


class HetznerBackend(InfrastructureBackend):
    """
    InfrastructureBackend for Hetzner Cloud.

    Args:
        client: Hetzner API client.
        retry_base_delay: First delay of the server-creation backoff, in seconds.
        resource_release_delay: Pause between deleting servers and deleting the
            resources they referenced.
        out: Callable receiving progress lines.
    """

    provider = Provider.HETZNER
    config_at_creation = False

    def __init__(
        self,
        client: AsyncHetznerClient,
        *,
        retry_base_delay: float = RETRY_BASE_DELAY,
        resource_release_delay: float = RESOURCE_RELEASE_DELAY,
        firewall_delete_delay: float = FIREWALL_DELETE_DELAY,
        server_poll_interval: float = SERVER_POLL_INTERVAL,
        out: Callable[[str], None] = print,
    ) -> None:
        self._client = client
        self._retry_base_delay = retry_base_delay
        self._resource_release_delay = resource_release_delay
        self._firewall_delete_delay = firewall_delete_delay
        self._server_poll_interval = server_poll_interval
        self._out = out
        self._infra: Dict[str, HetznerInfrastructure] = {}

    async def is_available(self) -> bool:
        return await self._client.is_reachable()

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------
    # Discovery
    # ------------------------------
    def _descriptor(self, server: Dict[str, Any]) -> NodeDescriptor:
        labels: Dict[str, str] = server.get("labels") or {}
        public_net = server.get("public_net") or {}
        private_nets = server.get("private_net") or []
        index = labels.get(LABEL_NODE_INDEX, "0")
        return NodeDescriptor(
            name=server["name"],
            role=_role_from_label(labels.get(LABEL_NODE_TYPE, "")),
            index=int(index) if index.isascii() and index.isdigit() else 0,
            ip=(public_net.get("ipv4") or {}).get("ip", ""),
            private_ip=private_nets[0].get("ip") if private_nets else None,
            handle=str(server["id"]),
            status=server.get("status", ""),
            labels=labels,
        )

    async def list_nodes(
        self, cluster_name: str, role: Optional[NodeRole] = None
    ) -> List[NodeDescriptor]:
        selector = f"{LABEL_OWNED}=true,{LABEL_CLUSTER_NAME}={cluster_name}"
        if role is not None:
            selector += f",{LABEL_NODE_TYPE}={role.value}"
        servers = await self._client.list_servers(selector)
        return sorted((self._descriptor(s) for s in servers), key=lambda node: node.name)

    async def list_clusters(self) -> List[str]:
        servers = await self._client.list_servers(f"{LABEL_OWNED}=true")
        names = {(s.get("labels") or {}).get(LABEL_CLUSTER_NAME, "") for s in servers}
        return sorted(name for name in names if name)

    # ------------------------------
    # Shared infrastructure
    # ------------------------------
    def _labels(self, cluster_name: str) -> Dict[str, str]:
        return {LABEL_OWNED: "true", LABEL_CLUSTER_NAME: cluster_name}

    async def ensure_network(
        self, cluster_name: str, network_cidr: str, zone: str
    ) -> Dict[str, Any]:
        name = cluster_name + NETWORK_SUFFIX
        existing = await self._client.get_network(name)
        if existing is not None:
            return existing
        return await self._client.create_network(
            {
                "name": name,
                "ip_range": network_cidr,
                "subnets": [
                    {"type": "cloud", "ip_range": subnet_for(network_cidr), "network_zone": zone}
                ],
                "labels": self._labels(cluster_name),
            }
        )

    async def ensure_firewall(self, cluster_name: str) -> Dict[str, Any]:
        name = cluster_name + FIREWALL_SUFFIX
        existing = await self._client.get_firewall(name)
        if existing is not None:
            return existing
        return await self._client.create_firewall(
            {"name": name, "rules": firewall_rules(), "labels": self._labels(cluster_name)}
        )

    async def ensure_placement_group(
        self, cluster_name: str, strategy: PlacementGroupStrategy
    ) -> Optional[Dict[str, Any]]:
        if strategy is PlacementGroupStrategy.NONE:
            return None
        name = cluster_name + PLACEMENT_GROUP_SUFFIX
        existing = await self._client.get_placement_group(name)
        if existing is not None:
            return existing
        return await self._client.create_placement_group(
            {"name": name, "type": strategy.value, "labels": self._labels(cluster_name)}
        )

    async def prepare_cluster(self, spec: ClusterSpec) -> None:
        await self.infrastructure(spec)

    async def infrastructure(self, spec: ClusterSpec) -> HetznerInfrastructure:
        """Get-or-create the cluster's network, firewall, placement group and SSH key."""
        if spec.name in self._infra:
            return self._infra[spec.name]

        options = spec.hetzner
        network = await self.ensure_network(spec.name, options.network_cidr, options.network_zone)
        self._out(f"  ✓ Network {network['name']} ready")
        firewall = await self.ensure_firewall(spec.name)
        self._out(f"  ✓ Firewall {firewall['name']} ready")
        placement = await self.ensure_placement_group(spec.name, options.placement_group_strategy)
        if placement is not None:
            self._out(f"  ✓ Placement group {placement['name']} ready")
        else:
            self._out("  ✓ Placement group disabled (strategy: none)")

        ssh_key_id: Optional[int] = None
        if options.ssh_key_name:
            ssh_key = await self._client.get_ssh_key(options.ssh_key_name)
            if ssh_key is None:
                raise ProvisionerError(f"SSH key {options.ssh_key_name!r} not found")
            ssh_key_id = int(ssh_key["id"])

        infra = HetznerInfrastructure(
            network_id=int(network["id"]),
            firewall_id=int(firewall["id"]),
            placement_group_id=int(placement["id"]) if placement else None,
            ssh_key_id=ssh_key_id,
        )
        self._infra[spec.name] = infra
        return infra

    # ------------------------------
    # Servers
    # ------------------------------
    def server_payload(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        index: int,
        infra: HetznerInfrastructure,
    ) -> Dict[str, Any]:
        options = spec.hetzner
        payload: Dict[str, Any] = {
            "name": node_name(spec.name, role, index),
            "server_type": (
                options.control_plane_server_type
                if role.is_control_plane
                else options.worker_server_type
            ),
            "location": options.location,
            "image": PLACEHOLDER_IMAGE,
            "start_after_create": True,
            "networks": [infra.network_id],
            "firewalls": [{"firewall": infra.firewall_id}],
            "labels": {
                **self._labels(spec.name),
                LABEL_NODE_TYPE: role.value,
                LABEL_NODE_INDEX: str(index),
            },
        }
        if infra.placement_group_id is not None:
            payload["placement_group"] = infra.placement_group_id
        if infra.ssh_key_id is not None:
            payload["ssh_keys"] = [infra.ssh_key_id]
        return payload

    async def _create_server(self, payload: Dict[str, Any], iso: int) -> Dict[str, Any]:
        server = await self._client.create_server(payload)
        if iso > 0:
            await self._client.server_action(server["id"], "attach_iso", {"iso": str(iso)})
            await self._client.server_action(server["id"], "reset")
        return server

    async def _create_in_location(
        self, payload: Dict[str, Any], iso: int, allow_placement_fallback: bool
    ) -> Dict[str, Any]:
        current = dict(payload)
        name, location = payload["name"], payload["location"]
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            try:
                server = await self._create_server(current, iso)
                if "placement_group" in payload and "placement_group" not in current:
                    self._out(f"  ✓ {name} created in {location} without placement group")
                return server
            except HetznerAPIError as err:
                if is_permanent_error(err):
                    raise ProvisionerError(
                        f"permanent error creating server {name}: {err}"
                    ) from err
                if (
                    is_placement_error(err)
                    and allow_placement_fallback
                    and "placement_group" in current
                ):
                    self._out(
                        f"  ⚠ Placement failed for {name} in {location}, retrying without placement group"
                    )
                    current.pop("placement_group")
                    continue
                if not is_retryable_error(err):
                    raise
                if attempt < MAX_CREATE_ATTEMPTS:
                    delay = retry_delay(attempt, self._retry_base_delay)
                    self._out(
                        f"  ⚠ Attempt {attempt}/{MAX_CREATE_ATTEMPTS} for {name} in {location} "
                        f"failed ({err.code}), retrying in {delay:g}s"
                    )
                    await asyncio.sleep(delay)
        raise AllRetriesExhaustedError(f"all retries exhausted for {name} in location {location}")

    async def create_server_with_retry(
        self,
        payload: Dict[str, Any],
        *,
        iso: int,
        fallback_locations: List[str],
        allow_placement_fallback: bool,
    ) -> Dict[str, Any]:
        """
        Create a server, trying the payload's location then each fallback location.

        Per location, up to MAX_CREATE_ATTEMPTS attempts are made with exponential
        backoff on retryable errors. A placement error drops the placement group
        (if allowed) for the rest of that location. Permanent errors (quota,
        invalid input, auth) abort immediately; other errors move on to the next
        location.

        Raises:
            ProvisionerError: On a permanent error.
            AllLocationsFailedError: When every location failed.
        """
        locations = [payload["location"], *fallback_locations]
        last_error: Optional[Exception] = None
        for position, location in enumerate(locations):
            try:
                server = await self._create_in_location(
                    {**payload, "location": location}, iso, allow_placement_fallback
                )
                if position > 0:
                    self._out(f"  ✓ {payload['name']} created in fallback location {location}")
                return server
            except (HetznerAPIError, AllRetriesExhaustedError) as err:
                last_error = err
                if position < len(locations) - 1:
                    self._out(
                        f"  ⚠ Location {location} failed for {payload['name']}, "
                        f"trying {locations[position + 1]}"
                    )
        raise AllLocationsFailedError(
            f"could not create {payload['name']} in any location (last error: {last_error})"
        ) from last_error

    async def create_node(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        index: int,
        config: MachineConfig,
    ) -> NodeDescriptor:
        """Create a server booted into Talos maintenance mode.

        The machine configuration is pushed later over the Talos API, so `config`
        is not sent to Hetzner.
        """
        infra = await self.infrastructure(spec)
        payload = self.server_payload(spec, role, index, infra)
        server = await self.create_server_with_retry(
            payload,
            iso=spec.talos.iso,
            fallback_locations=spec.hetzner.fallback_locations,
            allow_placement_fallback=spec.hetzner.allow_placement_fallback,
        )
        return self._descriptor(server)

    async def remove_node(self, node: NodeDescriptor) -> None:
        try:
            await self._client.delete_server(int(node.handle))
        except HetznerAPIError as err:
            if not err.is_not_found:
                raise ProvisionerError(f"failed to delete server {node.name}: {err}") from err
            logger.info("Server %s already deleted", node.name)

    async def start_all(self, cluster_name: str) -> None:
        for node in await self.list_nodes(cluster_name):
            if node.status == "running":
                continue
            await self._client.server_action(int(node.handle), "poweron")
            self._out(f"  ✓ {node.name} powered on")

    async def stop_all(self, cluster_name: str) -> None:
        """Shut every server down gracefully and wait until all report "off"."""
        for node in await self.list_nodes(cluster_name):
            if node.status == "off":
                continue
            await self._client.server_action(int(node.handle), "shutdown")

        async def all_off() -> None:
            pending = [n.name for n in await self.list_nodes(cluster_name) if n.status != "off"]
            if pending:
                raise ExpectedError(f"servers still running: {', '.join(pending)}")

        await retry_until(
            all_off,
            timeout=SERVER_STOP_TIMEOUT,
            interval=self._server_poll_interval,
            description=f"servers of {cluster_name} to power off",
        )

    async def detach_iso_best_effort(self, node: NodeDescriptor) -> bool:
        """Detach the install ISO; failures only produce a warning."""
        try:
            await self._client.server_action(int(node.handle), "detach_iso")
            return True
        except HetznerAPIError as err:
            self._out(f"  ⚠ Failed to detach ISO from {node.name}: {err}")
            logger.warning("Failed to detach ISO from %s: %s", node.name, err)
            return False

    async def finalize_install(self, nodes: List[NodeDescriptor]) -> None:
        for node in nodes:
            if await self.detach_iso_best_effort(node):
                self._out(f"  ✓ ISO detached from {node.name}")

    async def _delete_ignoring_missing(
        self, kind: str, name: str, delete: Callable[[], Any]
    ) -> None:
        try:
            await delete()
            self._out(f"  ✓ {kind} {name} deleted")
        except HetznerAPIError as err:
            if not err.is_not_found:
                raise

    async def _delete_firewall(self, firewall: Dict[str, Any]) -> None:
        for attempt in range(1, FIREWALL_DELETE_ATTEMPTS + 1):
            try:
                await self._client.delete_firewall(int(firewall["id"]))
                self._out(f"  ✓ Firewall {firewall['name']} deleted")
                return
            except HetznerAPIError as err:
                if err.is_not_found:
                    return
                if err.code != "resource_in_use" or attempt == FIREWALL_DELETE_ATTEMPTS:
                    raise
                await asyncio.sleep(self._firewall_delete_delay)

    async def delete_cluster(self, cluster_name: str) -> None:
        """Delete servers, then the placement group, firewall and network."""
        nodes = await self.list_nodes(cluster_name)
        for node in nodes:
            await self.remove_node(node)
            self._out(f"  ✓ Server {node.name} deleted")
        if nodes:
            await asyncio.sleep(self._resource_release_delay)

        placement = await self._client.get_placement_group(cluster_name + PLACEMENT_GROUP_SUFFIX)
        if placement is not None:
            await self._delete_ignoring_missing(
                "Placement group",
                placement["name"],
                lambda: self._client.delete_placement_group(int(placement["id"])),
            )

        firewall = await self._client.get_firewall(cluster_name + FIREWALL_SUFFIX)
        if firewall is not None:
            await self._delete_firewall(firewall)

        network = await self._client.get_network(cluster_name + NETWORK_SUFFIX)
        if network is not None:
            await self._delete_ignoring_missing(
                "Network",
                network["name"],
                lambda: self._client.delete_network(int(network["id"])),
            )
        self._infra.pop(cluster_name, None)

    async def kubernetes_endpoint(
        self, cluster_name: str, control_plane: NodeDescriptor
    ) -> str:
        if not control_plane.ip:
            raise MissingEndpointError(f"server {control_plane.name} has no public IPv4 address")
        return f"https://{control_plane.ip}:{KUBERNETES_API_PORT}"
