"""
taloscluster/talos/cluster_access.py

The "cluster access" capability the readiness checks run against: Talos
service health per node plus Kubernetes node and pod status.

TalosClusterAccess combines an authenticated TalosClient with `kubectl`
calls made through a kubeconfig written to an ephemeral file.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from taloscluster.models.nodes import NodeDescriptor
from taloscluster.models.validator import validate_type
from taloscluster.talos.client import TalosClient
from taloscluster.utils.async_command_runner import run_command
from taloscluster.utils.ephemeral_file import ephemeral_file


class KubernetesNodeStatus(BaseModel):
    name: str
    ready: bool


class PodStatus(BaseModel):
    name: str
    node_name: str = ""
    phase: str = ""
    ready: bool = False


class ClusterAccess(ABC):
    """Read-only view of a cluster for health checks."""

    def __init__(self, nodes: List[NodeDescriptor]) -> None:
        self.nodes = nodes

    @property
    def control_planes(self) -> List[NodeDescriptor]:
        return [node for node in self.nodes if node.role.is_control_plane]

    @abstractmethod
    async def talos_version(self, node: NodeDescriptor) -> str:
        pass

    @abstractmethod
    async def service_health(self, node: NodeDescriptor, service: str) -> Optional[bool]:
        pass

    @abstractmethod
    async def kubernetes_nodes(self) -> List[KubernetesNodeStatus]:
        pass

    @abstractmethod
    async def pods(self, namespace: str) -> List[PodStatus]:
        pass


def parse_node_list(document: Dict[str, Any]) -> List[KubernetesNodeStatus]:
    """Extract name and Ready condition from `kubectl get nodes -o json` output."""
    result = []
    for item in document.get("items") or []:
        conditions = (item.get("status") or {}).get("conditions") or []
        ready = any(
            c.get("type") == "Ready" and c.get("status") == "True" for c in conditions
        )
        result.append(
            KubernetesNodeStatus(name=item.get("metadata", {}).get("name", ""), ready=ready)
        )
    return result


def parse_pod_list(document: Dict[str, Any]) -> List[PodStatus]:
    """Extract phase and readiness from `kubectl get pods -o json` output."""
    result = []
    for item in document.get("items") or []:
        status = item.get("status") or {}
        containers = status.get("containerStatuses") or []
        result.append(
            PodStatus(
                name=item.get("metadata", {}).get("name", ""),
                node_name=(item.get("spec") or {}).get("nodeName", ""),
                phase=status.get("phase", ""),
                ready=bool(containers) and all(c.get("ready") for c in containers),
            )
        )
    return result


class TalosClusterAccess(ClusterAccess):
    """
    ClusterAccess over talosctl and kubectl.

    Args:
        nodes: All nodes of the cluster.
        talos: Authenticated Talos client.
        kubeconfig: Kubeconfig bytes with an externally reachable server.
        endpoint: Talos endpoint to dial, or None to dial each node directly.
        kubectl_binary: kubectl executable.
    """

    def __init__(
        self,
        nodes: List[NodeDescriptor],
        talos: TalosClient,
        kubeconfig: bytes,
        endpoint: Optional[str] = None,
        kubectl_binary: str = "kubectl",
    ) -> None:
        super().__init__(nodes)
        self._talos = talos
        self._kubeconfig = kubeconfig
        self._endpoint = endpoint
        self._kubectl = kubectl_binary

    async def talos_version(self, node: NodeDescriptor) -> str:
        return await self._talos.version(node.ip, endpoint=self._endpoint)

    async def service_health(self, node: NodeDescriptor, service: str) -> Optional[bool]:
        return await self._talos.service_health(node.ip, service, endpoint=self._endpoint)

    async def _kubectl_json(self, *args: str) -> Dict[str, Any]:
        async with ephemeral_file("kubeconfig", self._kubeconfig) as path:
            output = await run_command(
                [self._kubectl, "--kubeconfig", path, *args, "--output", "json"],
                sensitive=False,
            )
        return validate_type(json.loads(output or "{}"), Dict[str, Any])

    async def kubernetes_nodes(self) -> List[KubernetesNodeStatus]:
        return parse_node_list(await self._kubectl_json("get", "nodes"))

    async def pods(self, namespace: str) -> List[PodStatus]:
        return parse_pod_list(await self._kubectl_json("get", "pods", "--namespace", namespace))
