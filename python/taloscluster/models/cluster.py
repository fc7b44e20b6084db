"""
taloscluster/models/cluster.py

Desired-state description of a Talos cluster. A ClusterSpec is what callers
hand to Create/Update and what GetCurrentConfig reconstructs from the live
cluster, so the diff engine can compare two of them field by field.
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator


class Provider(str, Enum):
    """Infrastructure backend that runs the Talos nodes."""

    DOCKER = "docker"
    HETZNER = "hetzner"


class PlacementGroupStrategy(str, Enum):
    SPREAD = "spread"
    NONE = "none"


class TalosOptions(BaseModel):
    """Talos node counts, install media and machine-config patches.

    `config_patches` maps a machine-config path (".machine.kubelet.extraArgs")
    to the value patched in; the diff engine classifies every changed path.
    """

    control_planes: int = 1
    workers: int = 0
    iso: int = 122630
    config_patches: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, value: int) -> int:
        if value < 0:
            raise ValueError("worker count cannot be negative")
        return value

    class Config:
        frozen = True


class HetznerOptions(BaseModel):
    control_plane_server_type: str = "cx23"
    worker_server_type: str = "cx23"
    location: str = "fsn1"
    fallback_locations: List[str] = Field(default_factory=list)
    allow_placement_fallback: bool = True
    network_cidr: str = "10.0.0.0/16"
    network_zone: str = "eu-central"
    placement_group_strategy: PlacementGroupStrategy = PlacementGroupStrategy.SPREAD
    ssh_key_name: str = ""

    @field_validator("network_cidr")
    @classmethod
    def validate_network_cidr(cls, value: str) -> str:
        ipaddress.ip_network(value, strict=False)
        return value

    class Config:
        frozen = True


class ClusterSpec(BaseModel):
    """
    Desired state of one Talos cluster.

    Attributes:
        name: Cluster name, also the value of the cluster-name label on every resource.
        provider: Which backend runs the nodes.
        talos: Node counts and machine-config patches.
        network_cidr: Docker network prefix; nodes get static addresses inside it.
        hetzner: Hetzner Cloud options, used when provider is hetzner.
        components: Detected or requested add-on components (e.g. {"cni": "cilium"}).
        cni_disabled: True when a custom CNI will be installed after creation.
    """

    name: str
    provider: Provider = Provider.DOCKER
    talos: TalosOptions = Field(default_factory=TalosOptions)
    network_cidr: str = "10.5.0.0/24"
    hetzner: HetznerOptions = Field(default_factory=HetznerOptions)
    components: Dict[str, str] = Field(default_factory=dict)
    cni_disabled: bool = False

    @field_validator("network_cidr")
    @classmethod
    def validate_network_cidr(cls, value: str) -> str:
        ipaddress.ip_network(value, strict=False)
        return value

    class Config:
        frozen = True
