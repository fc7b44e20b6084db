"""
taloscluster/tests/conftest.py

In-memory stand-ins for the backend, the Talos machine API and the cluster
readiness view, plus a small pre-generated configuration bundle.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import pytest
import yaml

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.models.cluster import ClusterSpec, Provider
from taloscluster.models.nodes import NodeDescriptor, NodeRole
from taloscluster.provisioner.timings import Timings
from taloscluster.talos.client import ApplyMode, TalosClient
from taloscluster.talos.cluster_access import ClusterAccess, KubernetesNodeStatus, PodStatus
from taloscluster.talos.machine_config import (
    MachineConfig,
    YamlConfigBundle,
    YamlMachineConfig,
)
from taloscluster.utils.naming import node_name

CONTROL_PLANE_YAML = """
version: v1alpha1
machine:
  type: controlplane
  certSANs: []
cluster:
  clusterName: dev
  controlPlane:
    endpoint: https://10.5.0.2:6443
  network:
    cni:
      name: flannel
"""

WORKER_YAML = """
version: v1alpha1
machine:
  type: worker
cluster:
  clusterName: dev
  controlPlane:
    endpoint: https://10.5.0.2:6443
"""

TALOSCONFIG = {
    "context": "dev",
    "contexts": {"dev": {"endpoints": ["10.5.0.2"], "nodes": ["10.5.0.2"], "ca": "Y2E="}},
}

KUBECONFIG = b"""
apiVersion: v1
kind: Config
clusters:
  - name: dev
    cluster:
      server: https://10.5.0.2:6443
contexts:
  - name: admin@dev
    context:
      cluster: dev
      user: admin@dev
users:
  - name: admin@dev
    user:
      client-certificate-data: Y2VydA==
current-context: admin@dev
"""


class FakeBackend(InfrastructureBackend):
    """Backend keeping nodes in a dict; every mutation is appended to `events`."""

    def __init__(
        self,
        provider: Provider = Provider.DOCKER,
        config_at_creation: bool = True,
        events: Optional[List[Tuple[str, str]]] = None,
    ) -> None:
        self.provider = provider
        self.config_at_creation = config_at_creation
        self.available = True
        self.nodes: Dict[str, NodeDescriptor] = {}
        self.events = events if events is not None else []
        self.created: List[str] = []
        self.removed: List[str] = []
        self.configs: Dict[str, MachineConfig] = {}
        self.fail_create: Set[str] = set()
        self.prepared: List[str] = []
        self.finalized: List[str] = []
        self.deleted: List[str] = []
        self.started: List[str] = []
        self.stopped: List[str] = []
        self._next_ip = 2
        self.api_port = 6443

    def add_existing(self, cluster_name: str, role: NodeRole, *indices: int) -> None:
        for index in indices:
            name = node_name(cluster_name, role, index)
            self.nodes[name] = self._node(cluster_name, role, index)

    def _node(self, cluster_name: str, role: NodeRole, index: int) -> NodeDescriptor:
        name = node_name(cluster_name, role, index)
        ip = f"10.5.0.{self._next_ip}"
        self._next_ip += 1
        return NodeDescriptor(
            name=name,
            role=role,
            index=index,
            ip=ip,
            handle=name,
            labels={"cluster": cluster_name},
        )

    async def is_available(self) -> bool:
        return self.available

    async def list_nodes(
        self, cluster_name: str, role: Optional[NodeRole] = None
    ) -> List[NodeDescriptor]:
        return sorted(
            (
                node
                for node in self.nodes.values()
                if node.labels["cluster"] == cluster_name and (role is None or node.role == role)
            ),
            key=lambda node: node.name,
        )

    async def list_clusters(self) -> List[str]:
        return sorted({node.labels["cluster"] for node in self.nodes.values()})

    async def prepare_cluster(self, spec: ClusterSpec) -> None:
        self.prepared.append(spec.name)

    async def create_node(
        self, spec: ClusterSpec, role: NodeRole, index: int, config: MachineConfig
    ) -> NodeDescriptor:
        name = node_name(spec.name, role, index)
        if name in self.fail_create:
            raise RuntimeError(f"cannot create {name}")
        node = self._node(spec.name, role, index)
        self.nodes[name] = node
        self.configs[name] = config
        self.created.append(name)
        self.events.append(("create", name))
        return node

    async def remove_node(self, node: NodeDescriptor) -> None:
        if self.nodes.pop(node.name, None) is not None:
            self.removed.append(node.name)
            self.events.append(("remove", node.name))

    async def start_all(self, cluster_name: str) -> None:
        self.started.append(cluster_name)

    async def stop_all(self, cluster_name: str) -> None:
        self.stopped.append(cluster_name)

    async def delete_cluster(self, cluster_name: str) -> None:
        for node in await self.list_nodes(cluster_name):
            await self.remove_node(node)
        self.deleted.append(cluster_name)

    async def kubernetes_endpoint(
        self, cluster_name: str, control_plane: NodeDescriptor
    ) -> str:
        return f"https://{control_plane.ip}:{self.api_port}"

    async def finalize_install(self, nodes: List[NodeDescriptor]) -> None:
        self.finalized.extend(node.name for node in nodes)


class FakeTalosClient(TalosClient):
    """
    Records every machine-API call as (method, node) in `events`.

    `failures[method]` is a list of exceptions raised, one per call, before
    the method starts succeeding.
    """

    def __init__(self, events: Optional[List[Tuple[str, str]]] = None) -> None:
        self.events = events if events is not None else []
        self.failures: Dict[str, List[Exception]] = {}
        self.applied: List[Tuple[str, bytes, ApplyMode, bool]] = []
        self.talosconfigs: List[bytes] = []
        self.healthy = True

    def _record(self, method: str, node: str) -> None:
        self.events.append((method, node))
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls(self, method: str) -> List[str]:
        return [node for name, node in self.events if name == method]

    async def version(
        self, node: str, *, endpoint: Optional[str] = None, insecure: bool = False
    ) -> str:
        self._record("version", node)
        return "v1.11.2"

    async def apply_configuration(
        self,
        node: str,
        data: bytes,
        *,
        mode: ApplyMode = ApplyMode.AUTO,
        endpoint: Optional[str] = None,
        insecure: bool = False,
    ) -> None:
        self._record("apply_configuration", node)
        self.applied.append((node, data, mode, insecure))

    async def bootstrap(self, node: str, *, endpoint: Optional[str] = None) -> None:
        self._record("bootstrap", node)

    async def kubeconfig(self, node: str, *, endpoint: Optional[str] = None) -> bytes:
        self._record("kubeconfig", node)
        return KUBECONFIG

    async def etcd_forfeit_leadership(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        self._record("etcd_forfeit_leadership", node)

    async def etcd_leave_cluster(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        self._record("etcd_leave_cluster", node)

    async def service_health(
        self, node: str, service: str, *, endpoint: Optional[str] = None
    ) -> Optional[bool]:
        self._record("service_health", node)
        return self.healthy

    def with_talosconfig(self, talosconfig: bytes) -> FakeTalosClient:
        self.talosconfigs.append(talosconfig)
        return self


class FakeClusterAccess(ClusterAccess):
    """A cluster view whose answers are plain attributes."""

    def __init__(self, nodes: List[NodeDescriptor], *args: object, **kwargs: object) -> None:
        super().__init__(nodes)
        self.etcd_healthy = True
        self.nodes_ready = True
        self.registered: Optional[List[str]] = None

    async def talos_version(self, node: NodeDescriptor) -> str:
        return "v1.11.2"

    async def service_health(self, node: NodeDescriptor, service: str) -> Optional[bool]:
        return self.etcd_healthy if service == "etcd" else True

    async def kubernetes_nodes(self) -> List[KubernetesNodeStatus]:
        names = self.registered if self.registered is not None else [n.name for n in self.nodes]
        return [KubernetesNodeStatus(name=name, ready=self.nodes_ready) for name in names]

    async def pods(self, namespace: str) -> List[PodStatus]:
        pods = []
        for node in self.control_planes:
            for component in ("kube-apiserver", "kube-controller-manager", "kube-scheduler"):
                pods.append(
                    PodStatus(
                        name=f"{component}-{node.name}",
                        node_name=node.name,
                        phase="Running",
                        ready=True,
                    )
                )
        pods.append(PodStatus(name="coredns-abc12", node_name="", phase="Running", ready=True))
        pods.append(PodStatus(name="kube-proxy-xyz89", node_name="", phase="Running", ready=True))
        return pods


def make_bundle(cni: str = "flannel") -> YamlConfigBundle:
    control_plane = YamlMachineConfig.from_yaml(
        CONTROL_PLANE_YAML.replace("name: flannel", f"name: {cni}")
    )
    return YamlConfigBundle(
        control_plane,
        YamlMachineConfig.from_yaml(WORKER_YAML),
        yaml.safe_load(yaml.safe_dump(TALOSCONFIG)),
    )


@pytest.fixture
def events() -> List[Tuple[str, str]]:
    return []


@pytest.fixture
def backend(events: List[Tuple[str, str]]) -> FakeBackend:
    return FakeBackend(events=events)


@pytest.fixture
def cloud_backend(events: List[Tuple[str, str]]) -> FakeBackend:
    return FakeBackend(provider=Provider.HETZNER, config_at_creation=False, events=events)


@pytest.fixture
def talos(events: List[Tuple[str, str]]) -> FakeTalosClient:
    return FakeTalosClient(events=events)


@pytest.fixture
def bundle() -> YamlConfigBundle:
    return make_bundle()


@pytest.fixture
def fast_timings() -> Timings:
    return Timings(
        maintenance_timeout=0.5,
        install_timeout=0.5,
        api_timeout=0.5,
        bootstrap_timeout=0.5,
        kubeconfig_timeout=0.5,
        readiness_timeout=0.5,
        interval=0.0,
        long_interval=0.0,
        tcp_dial_timeout=0.1,
    )
