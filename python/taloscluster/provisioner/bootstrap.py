"""
taloscluster/provisioner/bootstrap.py

Drives freshly created nodes to a running Kubernetes cluster with a fetched,
externally reachable kubeconfig.

Phases, strictly in order, each node handled sequentially so a failure names
the node it happened on:

 1. MAINTENANCE_WAIT  Talos API answers over the insecure transport
 2. CONFIG_PUSH       role-specific machine configuration applied insecurely
 3. INSTALL_REBOOT    Talos port reachable again after install and reboot
 4. MEDIA_CLEANUP     install media detached (best effort)
 5. API_WAIT          authenticated Talos API answers
 6. ETCD_BOOTSTRAP    etcd bootstrapped on the first control-plane node
 7. KUBERNETES_READY  a kubeconfig can be fetched
 8. CREDENTIAL_FETCH  kubeconfig fetched and its server endpoint rewritten

Backends that hand the configuration to nodes at creation time (Docker) skip
phases 1-4. For the other backends the configuration bundle is regenerated
with the first control-plane node's address before any node receives it.
"""

from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, List, Optional, TextIO

from pydantic import BaseModel

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.models.nodes import NodeDescriptor
from taloscluster.provisioner.errors import BootstrapError, NoControlPlaneError
from taloscluster.provisioner.timings import Timings
from taloscluster.talos.client import (
    TALOS_API_PORT,
    ApplyMode,
    TalosApiError,
    TalosClient,
    wait_tcp,
)
from taloscluster.talos.machine_config import MachineConfigBundle
from taloscluster.utils.async_retry import ExpectedError, RetryTimeoutError, retry_until
from taloscluster.utils.kubeconfig import rewrite_server

# gRPC codes that will not change by waiting
FATAL_TALOS_CODES = {"PermissionDenied", "Unauthenticated", "InvalidArgument"}


class BootstrapPhase(str, Enum):
    MAINTENANCE_WAIT = "maintenance-wait"
    CONFIG_PUSH = "config-push"
    INSTALL_REBOOT = "install-reboot"
    MEDIA_CLEANUP = "media-cleanup"
    API_WAIT = "api-wait"
    ETCD_BOOTSTRAP = "etcd-bootstrap"
    KUBERNETES_READY = "kubernetes-ready"
    CREDENTIAL_FETCH = "credential-fetch"


class BootstrapOutcome(BaseModel):
    """What a successful bootstrap produced.

    Attributes:
        kubeconfig: Kubeconfig pointing at the externally reachable API endpoint.
        talosconfig: Talos client credentials of the bundle actually distributed.
        bundle: The configuration bundle the nodes received.
        talos_endpoint: Talos endpoint used for authenticated calls, if not per node.
    """

    kubeconfig: bytes
    talosconfig: bytes
    bundle: MachineConfigBundle
    talos_endpoint: Optional[str] = None

    class Config:
        arbitrary_types_allowed = True


def _expected_unless_fatal(err: TalosApiError) -> ExpectedError:
    if err.code in FATAL_TALOS_CODES:
        raise err
    return ExpectedError(str(err))


class BootstrapOrchestrator:
    """
    Runs the bootstrap phases for one cluster.

    Args:
        backend: Backend the nodes were created on.
        talos: Talos client; an authenticated copy is derived from the bundle.
        timings: Timeouts and intervals for every wait.
        out: Stream for progress lines (stdout by default).
        tcp_probe: Coroutine opening a TCP connection to (host, port).
    """

    def __init__(
        self,
        backend: InfrastructureBackend,
        talos: TalosClient,
        *,
        timings: Optional[Timings] = None,
        out: Optional[TextIO] = None,
        tcp_probe: Optional[Callable[[str, int], Awaitable[None]]] = None,
    ) -> None:
        self._backend = backend
        self._talos = talos
        self._timings = timings or Timings()
        self._out = out
        self._tcp_probe = tcp_probe or self._dial
        self.phases: List[BootstrapPhase] = []

    def _say(self, line: str) -> None:
        print(line, file=self._out)

    def _enter(self, phase: BootstrapPhase, line: str) -> None:
        self.phases.append(phase)
        self._say(line)

    async def _dial(self, host: str, port: int) -> None:
        await wait_tcp(host, port, timeout=self._timings.tcp_dial_timeout)

    async def _wait(
        self,
        node: NodeDescriptor,
        what: str,
        probe: Callable[[], Awaitable[object]],
        timeout: float,
        interval: float,
    ) -> None:
        try:
            await retry_until(
                probe, timeout=timeout, interval=interval, description=f"{what} on {node.name}"
            )
        except RetryTimeoutError as exc:
            raise BootstrapError(f"{what} on {node.name} failed: {exc}") from exc
        except TalosApiError as exc:
            raise BootstrapError(f"{what} on {node.name} failed: {exc}") from exc

    # Phases

    async def wait_for_maintenance(self, nodes: List[NodeDescriptor]) -> None:
        """Wait until each node's Talos API answers; "Unimplemented" counts as up."""
        for node in nodes:
            self._say(f"  Waiting for Talos API on {node.name} ({node.ip}:{TALOS_API_PORT})...")

            async def probe(node: NodeDescriptor = node) -> None:
                try:
                    await self._talos.version(node.ip, insecure=True)
                except TalosApiError as err:
                    if err.is_unimplemented:
                        return
                    raise _expected_unless_fatal(err)

            await self._wait(
                node,
                "Talos API",
                probe,
                self._timings.maintenance_timeout,
                self._timings.interval,
            )
            self._say(f"  ✓ Talos API reachable on {node.name}")

    async def push_configs(self, nodes: List[NodeDescriptor], bundle: MachineConfigBundle) -> None:
        for node in nodes:
            data = bundle.for_role(node.role).to_bytes()
            try:
                await self._talos.apply_configuration(
                    node.ip, data, mode=ApplyMode.AUTO, insecure=True
                )
            except TalosApiError as err:
                raise BootstrapError(
                    f"applying configuration to {node.name} failed: {err}"
                ) from err
            self._say(f"  ✓ Configuration applied to {node.name}")

    async def wait_for_install(self, nodes: List[NodeDescriptor]) -> None:
        """Wait for each node's Talos port to accept TCP connections after install and reboot."""
        for node in nodes:
            self._say(f"  Waiting for {node.name} to install, reboot, and become reachable...")

            async def probe(node: NodeDescriptor = node) -> None:
                try:
                    await self._tcp_probe(node.ip, TALOS_API_PORT)
                except OSError as err:
                    raise ExpectedError(f"{node.ip}:{TALOS_API_PORT} unreachable: {err}") from err

            await self._wait(
                node,
                "reboot after install",
                probe,
                self._timings.install_timeout,
                self._timings.long_interval,
            )
            self._say(f"  ✓ {node.name} is reachable after install")

    async def wait_for_api(
        self, nodes: List[NodeDescriptor], talos: TalosClient, endpoint: Optional[str]
    ) -> None:
        for node in nodes:

            async def probe(node: NodeDescriptor = node) -> None:
                try:
                    await talos.version(node.ip, endpoint=endpoint)
                except TalosApiError as err:
                    raise _expected_unless_fatal(err)

            await self._wait(
                node,
                "authenticated Talos API",
                probe,
                self._timings.api_timeout,
                self._timings.long_interval,
            )
            self._say(f"  ✓ Talos API ready on {node.name}")

    async def bootstrap_etcd(
        self, node: NodeDescriptor, talos: TalosClient, endpoint: Optional[str]
    ) -> None:
        """Bootstrap etcd, retrying while the node reports it is not ready for it yet."""

        async def probe() -> None:
            try:
                await talos.bootstrap(node.ip, endpoint=endpoint)
            except TalosApiError as err:
                if err.code == "AlreadyExists":
                    return
                if err.is_failed_precondition or err.is_unavailable:
                    raise ExpectedError(str(err)) from err
                raise

        await self._wait(
            node,
            "etcd bootstrap",
            probe,
            self._timings.bootstrap_timeout,
            self._timings.interval,
        )
        self._say(f"  ✓ etcd bootstrapped on {node.name}")

    async def wait_for_kubeconfig(
        self, node: NodeDescriptor, talos: TalosClient, endpoint: Optional[str]
    ) -> bytes:
        fetched: List[bytes] = []

        async def probe() -> None:
            try:
                kubeconfig = await talos.kubeconfig(node.ip, endpoint=endpoint)
            except TalosApiError as err:
                raise _expected_unless_fatal(err)
            if not kubeconfig.strip():
                raise ExpectedError("kubeconfig is empty")
            fetched.append(kubeconfig)

        await self._wait(
            node,
            "Kubernetes API",
            probe,
            self._timings.kubeconfig_timeout,
            self._timings.long_interval,
        )
        return fetched[-1]

    async def run(
        self,
        cluster_name: str,
        nodes: List[NodeDescriptor],
        bundle: MachineConfigBundle,
    ) -> BootstrapOutcome:
        """
        Bootstrap a cluster whose nodes were just created.

        Args:
            cluster_name: Name of the cluster.
            nodes: All created nodes, control-plane and worker.
            bundle: Configuration bundle the nodes were (or will be) configured with.

        Returns:
            BootstrapOutcome: kubeconfig, talosconfig and the distributed bundle.

        Raises:
            NoControlPlaneError: If `nodes` holds no control-plane node.
            BootstrapError: If a phase fails or times out, naming phase and node.
        """
        self.phases = []
        control_planes = sorted(
            (n for n in nodes if n.role.is_control_plane), key=lambda n: n.index
        )
        if not control_planes:
            raise NoControlPlaneError(f"cluster {cluster_name} has no control-plane node")
        first = control_planes[0]
        ordered = control_planes + sorted(
            (n for n in nodes if not n.role.is_control_plane), key=lambda n: n.index
        )

        if not self._backend.config_at_creation:
            self._say(f"Regenerating configs with endpoint IP {first.ip}...")
            bundle = bundle.with_endpoint(first.ip)

            self._enter(
                BootstrapPhase.MAINTENANCE_WAIT,
                f"Waiting for Talos API on {len(ordered)} nodes...",
            )
            await self.wait_for_maintenance(ordered)

            self._enter(BootstrapPhase.CONFIG_PUSH, "Applying machine configuration to nodes...")
            await self.push_configs(ordered, bundle)

            self._enter(
                BootstrapPhase.INSTALL_REBOOT,
                "Waiting for installation and reboot to complete...",
            )
            await self.wait_for_install(ordered)

            self._enter(BootstrapPhase.MEDIA_CLEANUP, "Detaching install media...")
            await self._backend.finalize_install(ordered)

        talos = self._talos.with_talosconfig(bundle.talos_config())
        endpoint = await self._backend.talos_endpoint(cluster_name)

        self._enter(BootstrapPhase.API_WAIT, "Waiting for the authenticated Talos API...")
        await self.wait_for_api(ordered, talos, endpoint)

        self._enter(BootstrapPhase.ETCD_BOOTSTRAP, "Bootstrapping etcd cluster...")
        await self.bootstrap_etcd(first, talos, endpoint)

        self._enter(BootstrapPhase.KUBERNETES_READY, "Waiting for Kubernetes API...")
        kubeconfig = await self.wait_for_kubeconfig(first, talos, endpoint)

        self._enter(BootstrapPhase.CREDENTIAL_FETCH, "Fetching kubeconfig...")
        server = await self._backend.kubernetes_endpoint(cluster_name, first)
        kubeconfig = rewrite_server(kubeconfig, server)
        self._say(f"  ✓ Kubeconfig points at {server}")

        return BootstrapOutcome(
            kubeconfig=kubeconfig,
            talosconfig=bundle.talos_config(),
            bundle=bundle,
            talos_endpoint=endpoint,
        )
