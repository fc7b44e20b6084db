"""
taloscluster/models/nodes.py

Node-level models shared by the infrastructure backends and the orchestrators.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class NodeRole(str, Enum):
    """Role of a Talos node. The value is the role segment of the node name."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @property
    def is_control_plane(self) -> bool:
        return self is NodeRole.CONTROL_PLANE


class NodeDescriptor(BaseModel):
    """
    A node as reported by a backend.

    Never persisted: always rebuilt from container or server labels.

    Attributes:
        name: Node name, `<cluster>-<role>-<index>`.
        role: Control-plane or worker.
        index: Parsed 1-based index from the name.
        ip: Address the Talos API is reached on (static network IP for Docker,
            public IPv4 for Hetzner).
        private_ip: Address on the cluster's private network, if any.
        handle: Backend-specific identifier (container ID or server ID).
        status: Raw backend status ("running", "exited", "off", ...).
        labels: Labels/tags read from the backend.
    """

    name: str
    role: NodeRole
    index: int
    ip: str
    private_ip: Optional[str] = None
    handle: str
    status: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)

    class Config:
        frozen = True


class HetznerInfrastructure(BaseModel):
    """Shared per-cluster Hetzner resources referenced by every server."""

    network_id: int
    firewall_id: int
    placement_group_id: Optional[int] = None
    ssh_key_id: Optional[int] = None

    class Config:
        frozen = True

