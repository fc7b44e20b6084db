"""
taloscluster/backends/base.py

Defines the InfrastructureBackend abstract base class: the capability the
bootstrap, scaling and update orchestrators use to realize nodes, whatever
runs them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from taloscluster.models.cluster import ClusterSpec, Provider
from taloscluster.models.nodes import NodeDescriptor, NodeRole
from taloscluster.talos.machine_config import MachineConfig


class InfrastructureBackend(ABC):
    """
    Node lifecycle for one infrastructure provider.

    Nodes are discovered from the backend's own labels every time; nothing is
    cached between calls except handles to shared per-cluster resources.

    Class attributes:
        provider: Which Provider this backend implements.
        config_at_creation: True when nodes receive their machine configuration
            when they are created (Docker USERDATA), so there is no maintenance
            mode, config push or install reboot.
    """

    provider: Provider
    config_at_creation: bool = False

    @abstractmethod
    async def is_available(self) -> bool:
        """Return True if the backend's API/daemon answers."""

    @abstractmethod
    async def list_nodes(
        self, cluster_name: str, role: Optional[NodeRole] = None
    ) -> List[NodeDescriptor]:
        """Return the cluster's nodes, optionally of one role, sorted by name."""

    async def nodes_exist(self, cluster_name: str) -> bool:
        return bool(await self.list_nodes(cluster_name))

    @abstractmethod
    async def list_clusters(self) -> List[str]:
        """Return the distinct cluster names owned by this tool, sorted."""

    @abstractmethod
    async def prepare_cluster(self, spec: ClusterSpec) -> None:
        """Get-or-create the shared per-cluster resources (network, firewall, ...)."""

    @abstractmethod
    async def create_node(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        index: int,
        config: MachineConfig,
    ) -> NodeDescriptor:
        """Create one node. Errors are wrapped with the node name."""

    @abstractmethod
    async def remove_node(self, node: NodeDescriptor) -> None:
        """Remove one node. Removing an already-gone node is not an error."""

    @abstractmethod
    async def start_all(self, cluster_name: str) -> None:
        pass

    @abstractmethod
    async def stop_all(self, cluster_name: str) -> None:
        pass

    @abstractmethod
    async def delete_cluster(self, cluster_name: str) -> None:
        """Remove every node and shared resource of the cluster, tolerating partial state."""

    async def talos_endpoint(self, cluster_name: str) -> Optional[str]:
        """Address to dial for authenticated Talos calls, or None to dial each node directly."""
        return None

    @abstractmethod
    async def kubernetes_endpoint(
        self, cluster_name: str, control_plane: NodeDescriptor
    ) -> str:
        """Externally reachable Kubernetes API URL for the kubeconfig."""

    async def finalize_install(self, nodes: List[NodeDescriptor]) -> None:
        """Best-effort cleanup after nodes installed themselves (e.g. detach install media)."""
        return None

    async def close(self) -> None:
        """Release API sessions held by the backend."""
        return None
