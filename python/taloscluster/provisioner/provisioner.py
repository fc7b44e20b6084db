"""
taloscluster/provisioner/provisioner.py

The cluster lifecycle façade: Create, Delete, Start, Stop, List and Exists,
plus Update, DiffConfig and GetCurrentConfig.

A TalosProvisioner wraps one InfrastructureBackend; `backend_for` picks the
Docker or Hetzner implementation for a provider. Creation runs the bootstrap
orchestrator and the readiness checks, then hands the fetched credentials to
the kubeconfig and talosconfig stores. Deletion removes those entries again.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TextIO, Type

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.backends.docker import DockerBackend
from taloscluster.backends.hetzner import HetznerBackend
from taloscluster.backends.hetzner_client import AsyncHetznerClient
from taloscluster.models.cluster import ClusterSpec, Provider, TalosOptions
from taloscluster.models.nodes import NodeDescriptor, NodeRole
from taloscluster.models.settings import HetznerSettings, ProvisionerSettings
from taloscluster.models.update import UpdateOptions, UpdateResult
from taloscluster.provisioner.bootstrap import BootstrapOrchestrator, BootstrapOutcome
from taloscluster.provisioner.errors import (
    BackendUnavailableError,
    ClusterAlreadyExistsError,
    ClusterNotFoundError,
    HetznerProviderRequiredError,
    MinimumControlPlaneError,
    NoConfigForRoleError,
    NoControlPlaneError,
    ProvisionerError,
)
from taloscluster.provisioner.persistence import KubeconfigStore, TalosconfigStore
from taloscluster.provisioner.readiness import ProgressReporter, select_checks, wait_for_checks
from taloscluster.provisioner.scaling import MIN_CONTROL_PLANES
from taloscluster.provisioner.timings import Timings
from taloscluster.provisioner.update import ClusterUpdater, diff_config
from taloscluster.talos.client import TalosApiError, TalosClient, TalosctlClient
from taloscluster.talos.cluster_access import TalosClusterAccess
from taloscluster.talos.machine_config import MachineConfigBundle
from taloscluster.utils.kubeconfig import rewrite_server

logger = logging.getLogger(__name__)

PROVIDER_NAMES = {
    Provider.DOCKER: "Docker",
    Provider.HETZNER: "Hetzner Cloud",
}


class ComponentDetector(ABC):
    """Reports add-on components (CNI, GitOps engine, ...) installed in a cluster."""

    @abstractmethod
    async def detect(self, cluster_name: str) -> Dict[str, str]:
        """Return a component-kind -> component-name mapping."""


class NullComponentDetector(ComponentDetector):
    async def detect(self, cluster_name: str) -> Dict[str, str]:
        return {}


def backend_for(
    provider: Provider,
    settings: Optional[ProvisionerSettings] = None,
    hetzner_settings: Optional[HetznerSettings] = None,
    out: Optional[TextIO] = None,
) -> InfrastructureBackend:
    """
    Build the InfrastructureBackend for `provider`.

    Args:
        provider: Which backend runs the nodes.
        settings: Local settings (docker binary, Talos image).
        hetzner_settings: Hetzner API access; read from HCLOUD_* variables if omitted.
        out: Stream for the backend's progress lines.

    Returns:
        InfrastructureBackend: DockerBackend or HetznerBackend.
    """
    if provider is Provider.HETZNER:
        client = AsyncHetznerClient(hetzner_settings or HetznerSettings())
        return HetznerBackend(client, out=lambda line: print(line, file=out))
    return DockerBackend(settings)


class TalosProvisioner:
    """
    Lifecycle operations for Talos clusters on one backend.

    Args:
        backend: Backend that runs the nodes.
        bundle: Machine configuration for new nodes. Needed by create and by
            updates that add nodes or change machine config.
        talos: Talos client; a TalosctlClient by default.
        settings: Paths of the credential files and tool binaries.
        detector: Reports installed components for get_current_config.
        timings: Timeouts and intervals of every wait.
        skip_cni_checks: Skip the checks that need a pod network even when the
            configuration ships a CNI.
        out: Stream for progress lines (stdout by default).
    """

    def __init__(
        self,
        backend: InfrastructureBackend,
        bundle: Optional[MachineConfigBundle] = None,
        *,
        talos: Optional[TalosClient] = None,
        settings: Optional[ProvisionerSettings] = None,
        detector: Optional[ComponentDetector] = None,
        timings: Optional[Timings] = None,
        skip_cni_checks: bool = False,
        out: Optional[TextIO] = None,
    ) -> None:
        self._settings = settings or ProvisionerSettings()
        self._backend = backend
        self._bundle = bundle
        self._talos = talos or TalosctlClient(binary=self._settings.talosctl_binary)
        self._detector = detector or NullComponentDetector()
        self._timings = timings or Timings()
        self._skip_cni_checks = skip_cni_checks
        self._out = out
        self.kubeconfigs = KubeconfigStore(self._settings.kubeconfig_path)
        self.talosconfigs = TalosconfigStore(self._settings.talosconfig_path)

    async def __aenter__(self) -> TalosProvisioner:
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._backend.close()

    @property
    def backend(self) -> InfrastructureBackend:
        return self._backend

    def _say(self, line: str) -> None:
        print(line, file=self._out)

    async def _require_available(self) -> None:
        if not await self._backend.is_available():
            raise BackendUnavailableError(
                f"{PROVIDER_NAMES[self._backend.provider]} is not available"
            )

    async def _require_cluster(self, name: str) -> List[NodeDescriptor]:
        nodes = await self._backend.list_nodes(name)
        if not nodes:
            raise ClusterNotFoundError(f"cluster {name} not found")
        return nodes

    async def _talosconfig(self, name: str) -> bytes:
        if self._bundle is not None:
            return self._bundle.talos_config()
        return await self.talosconfigs.load(name)

    # Readiness

    async def wait_ready(
        self,
        name: str,
        nodes: List[NodeDescriptor],
        kubeconfig: bytes,
        talosconfig: bytes,
        endpoint: Optional[str],
        cni_disabled: bool,
    ) -> None:
        self._say("Waiting for cluster to be ready...")
        if cni_disabled or self._skip_cni_checks:
            self._say("  CNI is disabled, skipping checks that need a pod network")
        else:
            self._say("  Running full cluster readiness checks...")
        access = TalosClusterAccess(
            nodes,
            self._talos.with_talosconfig(talosconfig),
            kubeconfig,
            endpoint=endpoint,
            kubectl_binary=self._settings.kubectl_binary,
        )
        await wait_for_checks(
            access,
            select_checks(cni_disabled, self._skip_cni_checks),
            timings=self._timings,
            reporter=ProgressReporter(self._out),
        )
        self._say("  ✓ Cluster is ready")

    # Lifecycle

    async def create(self, spec: ClusterSpec) -> BootstrapOutcome:
        """
        Create nodes for `spec`, bootstrap them and wait for the cluster to be ready.

        Nodes are created control-plane first, at indices 1..n. The fetched
        kubeconfig and talosconfig are merged into the configured files before
        the readiness checks run.

        Returns:
            BootstrapOutcome: Credentials and the configuration the nodes received.

        Raises:
            BackendUnavailableError: The backend cannot be reached.
            ClusterAlreadyExistsError: Nodes of a cluster with this name exist.
            MinimumControlPlaneError: `spec` asks for no control-plane node.
            NoConfigForRoleError: No configuration bundle was supplied.
            BootstrapError: A bootstrap phase failed.
            ClusterNotReadyError: Readiness checks did not pass in time.
        """
        if spec.provider is not self._backend.provider:
            raise ProvisionerError(
                f"cluster {spec.name} targets {spec.provider.value} but the backend "
                f"runs {self._backend.provider.value}"
            )
        if spec.talos.control_planes < MIN_CONTROL_PLANES:
            raise MinimumControlPlaneError(
                f"cluster {spec.name} needs at least {MIN_CONTROL_PLANES} control-plane node"
            )
        if self._bundle is None:
            raise NoConfigForRoleError("creating a cluster requires a machine configuration bundle")
        await self._require_available()
        if await self._backend.nodes_exist(spec.name):
            raise ClusterAlreadyExistsError(f"cluster {spec.name} already exists")

        provider = PROVIDER_NAMES[spec.provider]
        self._say(f"Creating Talos cluster '{spec.name}' on {provider}...")
        self._say("Creating infrastructure resources...")
        await self._backend.prepare_cluster(spec)

        nodes: List[NodeDescriptor] = []
        plan = [
            (NodeRole.CONTROL_PLANE, spec.talos.control_planes, "Control-plane"),
            (NodeRole.WORKER, spec.talos.workers, "Worker"),
        ]
        for role, count, label in plan:
            if count:
                self._say(f"Creating {count} {role.value} node(s)...")
            config = self._bundle.for_role(role)
            for index in range(1, count + 1):
                node = await self._backend.create_node(spec, role, index, config)
                nodes.append(node)
                self._say(f"  ✓ {label} node {node.name} created (IP: {node.ip})")

        self._say("")
        self._say("Infrastructure created. Bootstrapping Talos cluster...")
        orchestrator = BootstrapOrchestrator(
            self._backend, self._talos, timings=self._timings, out=self._out
        )
        outcome = await orchestrator.run(spec.name, nodes, self._bundle)

        self._say("Fetching and saving kubeconfig...")
        await self.kubeconfigs.add(spec.name, outcome.kubeconfig)
        await self.talosconfigs.add(spec.name, outcome.talosconfig)
        self._say(f"  ✓ Kubeconfig saved to {self.kubeconfigs.path}")

        await self.wait_ready(
            spec.name,
            nodes,
            outcome.kubeconfig,
            outcome.talosconfig,
            outcome.talos_endpoint,
            outcome.bundle.cni_disabled() or spec.cni_disabled,
        )
        self._say(f"✓ Talos cluster '{spec.name}' created on {provider}")
        return outcome

    async def forget_credentials_best_effort(self, name: str) -> None:
        """Remove the cluster's kubeconfig and talosconfig entries; failures are only logged."""
        for store in (self.kubeconfigs, self.talosconfigs):
            try:
                await store.remove(name)
            except Exception as err:
                logger.warning("Failed to clean up %s for %s: %s", store.path, name, err)
                self._say(f"  ⚠ Failed to clean up {store.path}: {err}")

    async def delete(self, name: str) -> None:
        """
        Delete every node and shared resource of the cluster and its credential entries.

        Raises:
            BackendUnavailableError: The backend cannot be reached.
            ClusterNotFoundError: No nodes of the cluster exist.
        """
        await self._require_available()
        await self._require_cluster(name)
        self._say(f"Deleting Talos cluster '{name}'...")
        await self._backend.delete_cluster(name)
        await self.forget_credentials_best_effort(name)
        self._say(f"✓ Talos cluster '{name}' deleted")

    async def start(self, name: str) -> None:
        """
        Start every node of a stopped cluster.

        Servers that went through a full power cycle are waited on with the
        readiness checks. Containers resume their previous state, but their
        published ports are reassigned, so the stored kubeconfig is repointed.
        """
        await self._require_available()
        await self._require_cluster(name)
        self._say(f"Starting Talos cluster '{name}'...")
        await self._backend.start_all(name)
        self._say(f"  ✓ Nodes of '{name}' started")

        if self._backend.config_at_creation:
            await self.refresh_kubeconfig_server(name)
            return
        talosconfig = await self._talosconfig(name)
        if not talosconfig:
            self._say(f"  ⚠ No talosconfig for '{name}', skipping readiness checks")
            return
        nodes = await self._backend.list_nodes(name)
        control_planes = [n for n in nodes if n.role.is_control_plane]
        if not control_planes:
            raise NoControlPlaneError(f"cluster {name} has no control-plane node")
        first = min(control_planes, key=lambda n: n.index)
        talos = self._talos.with_talosconfig(talosconfig)
        endpoint = await self._backend.talos_endpoint(name)
        try:
            kubeconfig = await talos.kubeconfig(first.ip, endpoint=endpoint)
        except TalosApiError as err:
            raise ProvisionerError(f"fetching kubeconfig from {first.name} failed: {err}") from err
        kubeconfig = rewrite_server(
            kubeconfig, await self._backend.kubernetes_endpoint(name, first)
        )
        cni_disabled = self._bundle.cni_disabled() if self._bundle else False
        await self.wait_ready(name, nodes, kubeconfig, talosconfig, endpoint, cni_disabled)

    async def refresh_kubeconfig_server(self, name: str) -> None:
        """Point the stored kubeconfig entry at the cluster's current Kubernetes API endpoint."""
        control_planes = await self._backend.list_nodes(name, NodeRole.CONTROL_PLANE)
        if not control_planes:
            raise NoControlPlaneError(f"cluster {name} has no control-plane node")
        first = min(control_planes, key=lambda n: n.index)
        server = await self._backend.kubernetes_endpoint(name, first)
        await self.kubeconfigs.set_server(name, server)
        self._say(f"  ✓ Kubeconfig for '{name}' points at {server}")

    async def stop(self, name: str) -> None:
        await self._require_available()
        await self._require_cluster(name)
        self._say(f"Stopping Talos cluster '{name}'...")
        await self._backend.stop_all(name)
        self._say(f"✓ Talos cluster '{name}' stopped")

    async def list(self) -> List[str]:
        """Return the names of all clusters this tool created on the backend."""
        await self._require_available()
        return await self._backend.list_clusters()

    async def exists(self, name: str) -> bool:
        if not name:
            return False
        await self._require_available()
        return await self._backend.nodes_exist(name)

    # Updates

    def diff_config(self, old: ClusterSpec, new: ClusterSpec) -> UpdateResult:
        return diff_config(old, new)

    async def update(
        self,
        old: ClusterSpec,
        new: ClusterSpec,
        opts: Optional[UpdateOptions] = None,
    ) -> UpdateResult:
        """
        Apply the difference between `old` and `new` to the running cluster.

        See ClusterUpdater.update for the gate and failure semantics.

        Raises:
            ClusterNotFoundError: The cluster does not exist (not checked for dry runs).
        """
        opts = opts or UpdateOptions()
        if opts.dry_run:
            return diff_config(old, new)
        await self._require_available()
        await self._require_cluster(new.name)
        updater = ClusterUpdater(
            self._backend,
            self._talos,
            self._bundle,
            await self._talosconfig(new.name),
            timings=self._timings,
            out=self._out,
        )
        result = await updater.update(old, new, opts)
        self._say(
            f"✓ Cluster '{new.name}' updated: {len(result.applied_changes)} change(s) applied"
        )
        return result

    async def get_current_config(self, name: str) -> ClusterSpec:
        """
        Reconstruct the cluster's spec from the backend.

        Node counts come from the backend's labels and `components` from the
        component detector; everything else keeps its default.
        """
        nodes = await self._require_cluster(name)
        control_planes = sum(1 for n in nodes if n.role.is_control_plane)
        return ClusterSpec(
            name=name,
            provider=self._backend.provider,
            talos=TalosOptions(
                control_planes=control_planes,
                workers=len(nodes) - control_planes,
            ),
            components=await self._detector.detect(name),
        )

    async def detach_iso(self, name: str) -> None:
        """Detach the install ISO from every server of a Hetzner cluster."""
        if not isinstance(self._backend, HetznerBackend):
            raise HetznerProviderRequiredError(
                f"detaching install media needs the Hetzner backend, not {self._backend.provider.value}"
            )
        await self._backend.finalize_install(await self._require_cluster(name))
