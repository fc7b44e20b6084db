"""
taloscluster/backends/docker.py

Runs Talos nodes as Docker containers, driving the `docker` CLI.

Each cluster gets a bridge network named after it; every container is attached
with a static IPv4 address computed from the network prefix:

    offset 1                          gateway
    offset 1 + i                      control-plane node i   (i >= 1)
    offset 1 + control_planes + i     worker node i          (i >= 1)

If the computed address is already held by another container of the cluster
(after scaling changed the control-plane count), the next free offset is used.

Containers follow the Talos container runtime contract: privileged, read-only
root filesystem, tmpfs for /run /system /tmp, anonymous volumes for state
paths, and the machine configuration passed base64-encoded in USERDATA.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Set

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.models.cluster import ClusterSpec, Provider
from taloscluster.models.nodes import NodeDescriptor, NodeRole
from taloscluster.models.settings import ProvisionerSettings
from taloscluster.models.validator import validate_type
from taloscluster.provisioner.errors import (
    NetworkAddressError,
    NoPortMappingError,
    ProvisionerError,
)
from taloscluster.talos.client import TALOS_API_PORT
from taloscluster.talos.machine_config import KUBERNETES_API_PORT, MachineConfig
from taloscluster.utils.async_command_runner import CommandError, run_command
from taloscluster.utils.ipam import nth_address
from taloscluster.utils.naming import node_name, node_prefix, parse_index

logger = logging.getLogger(__name__)

LABEL_OWNED = "talos.owned"
LABEL_CLUSTER_NAME = "talos.cluster.name"
LABEL_TYPE = "talos.type"

CONTAINER_STOP_TIMEOUT = 30
NODE_MEMORY = "2g"
NODE_CPUS = "2"
NETWORK_MTU = 1500

TMPFS_MOUNTS = ["/run", "/system", "/tmp"]
VOLUME_MOUNTS = [
    "/var",
    "/system/state",
    "/etc/cni",
    "/etc/kubernetes",
    "/usr/libexec/kubernetes",
    "/opt",
]

_ROLE_LABELS = {NodeRole.CONTROL_PLANE: "controlplane", NodeRole.WORKER: "worker"}
_LABEL_ROLES = {value: key for key, value in _ROLE_LABELS.items()}


def _is_missing(err: CommandError) -> bool:
    text = (err.stderr or str(err)).lower()
    return "no such" in text or "not found" in text


class DockerBackend(InfrastructureBackend):
    """
    InfrastructureBackend for Talos-in-Docker.

    Args:
        settings: Supplies the Talos image and the docker binary.
    """

    provider = Provider.DOCKER
    config_at_creation = True

    def __init__(self, settings: Optional[ProvisionerSettings] = None) -> None:
        self._settings = settings or ProvisionerSettings()
        self._docker = self._settings.docker_binary

    async def _docker_json(self, *args: str) -> Any:
        output = await run_command([self._docker, *args], sensitive=False)
        return json.loads(output) if output else []

    async def is_available(self) -> bool:
        try:
            await run_command([self._docker, "info"], retries=1)
            return True
        except (CommandError, OSError):
            return False

    async def _container_ids(
        self, cluster_name: Optional[str] = None, role: Optional[NodeRole] = None
    ) -> List[str]:
        filters = ["--filter", f"label={LABEL_OWNED}=true"]
        if cluster_name is not None:
            filters += ["--filter", f"label={LABEL_CLUSTER_NAME}={cluster_name}"]
        if role is not None:
            filters += ["--filter", f"label={LABEL_TYPE}={_ROLE_LABELS[role]}"]
        output = await run_command(
            [self._docker, "ps", "--all", "--quiet", "--no-trunc", *filters],
            sensitive=False,
        )
        return [line for line in output.splitlines() if line.strip()]

    async def _inspect(self, ids: List[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        raw = await self._docker_json("container", "inspect", *ids)
        return validate_type(raw, List[Dict[str, Any]])

    def _descriptor(self, cluster_name: str, container: Dict[str, Any]) -> NodeDescriptor:
        labels: Dict[str, str] = container.get("Config", {}).get("Labels") or {}
        role = _LABEL_ROLES.get(labels.get(LABEL_TYPE, ""), NodeRole.WORKER)
        name = str(container.get("Name", "")).lstrip("/")
        networks = container.get("NetworkSettings", {}).get("Networks") or {}
        network = networks.get(cluster_name) or next(iter(networks.values()), {})
        return NodeDescriptor(
            name=name,
            role=role,
            index=parse_index(name, node_prefix(cluster_name, role)) or 0,
            ip=network.get("IPAddress", ""),
            handle=container.get("Id", ""),
            status=container.get("State", {}).get("Status", ""),
            labels=labels,
        )

    async def list_nodes(
        self, cluster_name: str, role: Optional[NodeRole] = None
    ) -> List[NodeDescriptor]:
        containers = await self._inspect(await self._container_ids(cluster_name, role))
        nodes = [self._descriptor(cluster_name, c) for c in containers]
        return sorted(nodes, key=lambda node: node.name)

    async def list_clusters(self) -> List[str]:
        output = await run_command(
            [
                self._docker,
                "ps",
                "--all",
                "--filter",
                f"label={LABEL_OWNED}=true",
                "--format",
                f'{{{{.Label "{LABEL_CLUSTER_NAME}"}}}}',
            ],
            sensitive=False,
        )
        return sorted({line.strip() for line in output.splitlines() if line.strip()})

    async def prepare_cluster(self, spec: ClusterSpec) -> None:
        """Create the cluster's bridge network unless it already exists."""
        try:
            await run_command(
                [self._docker, "network", "inspect", spec.name], sensitive=False
            )
            return
        except CommandError as err:
            if not _is_missing(err):
                raise

        gateway = nth_address(spec.network_cidr, 1)
        await run_command(
            [
                self._docker,
                "network",
                "create",
                "--driver",
                "bridge",
                "--subnet",
                spec.network_cidr,
                "--gateway",
                str(gateway),
                "--opt",
                f"com.docker.network.driver.mtu={NETWORK_MTU}",
                "--label",
                f"{LABEL_OWNED}=true",
                "--label",
                f"{LABEL_CLUSTER_NAME}={spec.name}",
                spec.name,
            ],
            sensitive=False,
        )

    def node_offset(self, spec: ClusterSpec, role: NodeRole, index: int) -> int:
        """Address offset of a node inside the cluster network, before collision checks."""
        if role.is_control_plane:
            return 1 + index
        return 1 + spec.talos.control_planes + index

    async def _allocate_ip(self, spec: ClusterSpec, role: NodeRole, index: int) -> str:
        used: Set[str] = {node.ip for node in await self.list_nodes(spec.name)}
        offset = self.node_offset(spec, role, index)
        while True:
            candidate = str(nth_address(spec.network_cidr, offset))
            if candidate not in used:
                return candidate
            offset += 1

    def _run_args(
        self, spec: ClusterSpec, role: NodeRole, name: str, ip: str, config: MachineConfig
    ) -> List[str]:
        args = [
            self._docker,
            "run",
            "--detach",
            "--name",
            name,
            "--hostname",
            name,
            "--privileged",
            "--security-opt",
            "seccomp=unconfined",
            "--read-only",
            "--cpus",
            NODE_CPUS,
            "--memory",
            NODE_MEMORY,
            "--network",
            spec.name,
            "--ip",
            ip,
            "--label",
            f"{LABEL_OWNED}=true",
            "--label",
            f"{LABEL_CLUSTER_NAME}={spec.name}",
            "--label",
            f"{LABEL_TYPE}={_ROLE_LABELS[role]}",
            "--env",
            "PLATFORM=container",
            "--env",
            f"USERDATA={config.encode_string()}",
        ]
        for path in TMPFS_MOUNTS:
            args += ["--tmpfs", path]
        for path in VOLUME_MOUNTS:
            args += ["--mount", f"type=volume,destination={path}"]
        if role.is_control_plane:
            args += [
                "--publish",
                f"127.0.0.1::{TALOS_API_PORT}/tcp",
                "--publish",
                f"127.0.0.1::{KUBERNETES_API_PORT}/tcp",
            ]
        args.append(self._settings.docker_image)
        return args

    async def create_node(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        index: int,
        config: MachineConfig,
    ) -> NodeDescriptor:
        name = node_name(spec.name, role, index)
        try:
            ip = await self._allocate_ip(spec, role, index)
            container_id = await run_command(self._run_args(spec, role, name, ip, config))
            containers = await self._inspect([container_id.strip()])
        except (CommandError, NetworkAddressError) as err:
            raise ProvisionerError(f"failed to create container {name}: {err}") from err
        if not containers:
            raise ProvisionerError(f"container {name} disappeared right after creation")
        return self._descriptor(spec.name, containers[0])

    async def remove_node(self, node: NodeDescriptor) -> None:
        try:
            await run_command(
                [self._docker, "stop", "--time", str(CONTAINER_STOP_TIMEOUT), node.handle],
                sensitive=False,
            )
        except CommandError as err:
            if _is_missing(err):
                logger.info("Container %s already removed", node.name)
                return
            logger.warning("Graceful stop of %s failed, forcing removal: %s", node.name, err)

        try:
            await run_command(
                [self._docker, "rm", "--force", "--volumes", node.handle], sensitive=False
            )
        except CommandError as err:
            if not _is_missing(err):
                raise ProvisionerError(f"failed to remove container {node.name}: {err}") from err

    async def start_all(self, cluster_name: str) -> None:
        ids = await self._container_ids(cluster_name)
        if ids:
            await run_command([self._docker, "start", *ids], sensitive=False)

    async def stop_all(self, cluster_name: str) -> None:
        ids = await self._container_ids(cluster_name)
        if ids:
            await run_command(
                [self._docker, "stop", "--time", str(CONTAINER_STOP_TIMEOUT), *ids],
                sensitive=False,
            )

    async def _volumes(self, ids: List[str]) -> List[str]:
        return [
            mount["Name"]
            for container in await self._inspect(ids)
            for mount in container.get("Mounts") or []
            if mount.get("Type") == "volume" and mount.get("Name")
        ]

    async def remove_volumes_best_effort(self, volumes: List[str]) -> None:
        """Remove leftover volumes; failures are logged and ignored."""
        for volume in volumes:
            try:
                await run_command([self._docker, "volume", "rm", volume], sensitive=False)
            except CommandError as err:
                if not _is_missing(err):
                    logger.warning("Failed to remove volume %s: %s", volume, err)

    async def delete_cluster(self, cluster_name: str) -> None:
        """Remove containers, then their volumes (best effort), then the network."""
        ids = await self._container_ids(cluster_name)
        volumes = await self._volumes(ids)
        for node in await self.list_nodes(cluster_name):
            await self.remove_node(node)
        await self.remove_volumes_best_effort(volumes)

        try:
            await run_command([self._docker, "network", "rm", cluster_name], sensitive=False)
        except CommandError as err:
            if not _is_missing(err):
                raise ProvisionerError(f"failed to remove network {cluster_name}: {err}") from err

    async def _host_port(self, node: NodeDescriptor, port: int) -> str:
        containers = await self._inspect([node.handle])
        ports = (containers[0].get("NetworkSettings", {}).get("Ports") or {}) if containers else {}
        bindings = ports.get(f"{port}/tcp") or []
        for binding in bindings:
            if binding.get("HostPort"):
                return str(binding["HostPort"])
        raise NoPortMappingError(f"container {node.name} does not publish port {port}/tcp")

    async def _first_control_plane(self, cluster_name: str) -> Optional[NodeDescriptor]:
        nodes = await self.list_nodes(cluster_name, NodeRole.CONTROL_PLANE)
        return nodes[0] if nodes else None

    async def talos_endpoint(self, cluster_name: str) -> Optional[str]:
        first = await self._first_control_plane(cluster_name)
        if first is None:
            return None
        return f"127.0.0.1:{await self._host_port(first, TALOS_API_PORT)}"

    async def kubernetes_endpoint(
        self, cluster_name: str, control_plane: NodeDescriptor
    ) -> str:
        port = await self._host_port(control_plane, KUBERNETES_API_PORT)
        return f"https://127.0.0.1:{port}"
