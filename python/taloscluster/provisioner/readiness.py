"""
taloscluster/provisioner/readiness.py

CNI-aware cluster readiness checks.

Checks run one after another under a single overall deadline. Each check is
a probe that raises ExpectedError while its condition does not hold yet;
Talos and kubectl failures during a probe count as "not yet" because the
APIs come and go while a cluster boots.

Two check sets exist:

 - full: pre-boot checks, Kubernetes component checks and node readiness;
 - CNI-disabled: the same without anything that needs a pod network (node
   Ready, kube-proxy, CoreDNS), for clusters whose CNI is installed later.
"""

from __future__ import annotations

import time
from typing import Awaitable, Callable, List, Optional, TextIO

from pydantic import BaseModel

from taloscluster.provisioner.errors import ClusterNotReadyError
from taloscluster.provisioner.timings import Timings
from taloscluster.talos.client import TalosApiError
from taloscluster.talos.cluster_access import ClusterAccess
from taloscluster.utils.async_command_runner import CommandError
from taloscluster.utils.async_retry import ExpectedError, RetryTimeoutError, retry_until

CONTROL_PLANE_STATIC_PODS = [
    "kube-apiserver",
    "kube-controller-manager",
    "kube-scheduler",
]


class ClusterCheck(BaseModel):
    description: str
    probe: Callable[[ClusterAccess], Awaitable[None]]

    class Config:
        frozen = True
        arbitrary_types_allowed = True


class ProgressReporter:
    """Prints a status line only when it differs from the previous one."""

    def __init__(self, out: Optional[TextIO] = None) -> None:
        self._out = out
        self._last: Optional[str] = None

    def update(self, line: str) -> None:
        if line == self._last:
            return
        self._last = line
        print(line, file=self._out)


# Pre-boot


async def etcd_healthy(access: ClusterAccess) -> None:
    for node in access.control_planes:
        if not await access.service_health(node, "etcd"):
            raise ExpectedError(f"etcd is not healthy on {node.name}")


async def apid_ready(access: ClusterAccess) -> None:
    for node in access.nodes:
        await access.talos_version(node)


async def kubelet_healthy(access: ClusterAccess) -> None:
    for node in access.nodes:
        if not await access.service_health(node, "kubelet"):
            raise ExpectedError(f"kubelet is not healthy on {node.name}")


# Kubernetes components


async def all_nodes_reported(access: ClusterAccess) -> None:
    reported = {node.name for node in await access.kubernetes_nodes()}
    missing = [node.name for node in access.nodes if node.name not in reported]
    if missing:
        raise ExpectedError(f"nodes not registered yet: {', '.join(missing)}")


async def static_pods_running(access: ClusterAccess) -> None:
    pods = await access.pods("kube-system")
    for node in access.control_planes:
        for component in CONTROL_PLANE_STATIC_PODS:
            name = f"{component}-{node.name}"
            if not any(p.name == name and p.phase == "Running" for p in pods):
                raise ExpectedError(f"{name} is not running")


# CNI-dependent


async def all_nodes_ready(access: ClusterAccess) -> None:
    not_ready = [node.name for node in await access.kubernetes_nodes() if not node.ready]
    if not_ready:
        raise ExpectedError(f"nodes not ready: {', '.join(not_ready)}")


async def kube_proxy_ready(access: ClusterAccess) -> None:
    pods = [p for p in await access.pods("kube-system") if p.name.startswith("kube-proxy-")]
    if any(not p.ready for p in pods):
        raise ExpectedError("kube-proxy is not ready")


async def coredns_ready(access: ClusterAccess) -> None:
    pods = [p for p in await access.pods("kube-system") if p.name.startswith("coredns-")]
    if not pods or any(not p.ready for p in pods):
        raise ExpectedError("coredns is not ready")


PREBOOT_CHECKS = [
    ClusterCheck(description="etcd to be healthy", probe=etcd_healthy),
    ClusterCheck(description="apid to be ready", probe=apid_ready),
    ClusterCheck(description="kubelet to be healthy", probe=kubelet_healthy),
]

K8S_COMPONENT_CHECKS = [
    ClusterCheck(description="all k8s nodes to report", probe=all_nodes_reported),
    ClusterCheck(
        description="all control plane static pods to be running",
        probe=static_pods_running,
    ),
]

CNI_DEPENDENT_CHECKS = [
    ClusterCheck(description="all k8s nodes to report ready", probe=all_nodes_ready),
    ClusterCheck(description="kube-proxy to report ready", probe=kube_proxy_ready),
    ClusterCheck(description="coredns to report ready", probe=coredns_ready),
]


def default_checks() -> List[ClusterCheck]:
    return [*PREBOOT_CHECKS, *K8S_COMPONENT_CHECKS, *CNI_DEPENDENT_CHECKS]


def cni_disabled_checks() -> List[ClusterCheck]:
    return [*PREBOOT_CHECKS, *K8S_COMPONENT_CHECKS]


def select_checks(cni_disabled: bool, skip_cni_checks: bool = False) -> List[ClusterCheck]:
    """Pick the check set: CNI-disabled if the config disables it or the caller asks."""
    return cni_disabled_checks() if cni_disabled or skip_cni_checks else default_checks()


def _as_expected(
    probe: Callable[[ClusterAccess], Awaitable[None]], access: ClusterAccess
) -> Callable[[], Awaitable[None]]:
    async def attempt() -> None:
        try:
            await probe(access)
        except (TalosApiError, CommandError, OSError) as exc:
            raise ExpectedError(str(exc)) from exc

    return attempt


async def wait_for_checks(
    access: ClusterAccess,
    checks: List[ClusterCheck],
    *,
    timings: Optional[Timings] = None,
    reporter: Optional[ProgressReporter] = None,
) -> None:
    """
    Run `checks` in order until each passes, all within `timings.readiness_timeout`.

    Args:
        access: Cluster access capability the probes use.
        checks: Ordered checks, see `select_checks`.
        timings: Deadline and poll interval.
        reporter: Receives "waiting for ..." / "... OK" lines without repeats.

    Raises:
        ClusterNotReadyError: If a check has not passed when the deadline expires.
    """
    timings = timings or Timings()
    reporter = reporter or ProgressReporter()
    remaining = timings.readiness_timeout

    for check in checks:
        reporter.update(f"  waiting for {check.description}")
        started = time.monotonic()
        try:
            await retry_until(
                _as_expected(check.probe, access),
                timeout=max(remaining, 0.0),
                interval=timings.long_interval,
                description=check.description,
            )
        except RetryTimeoutError as exc:
            raise ClusterNotReadyError(f"cluster is not ready: {exc}") from exc
        remaining -= time.monotonic() - started
        reporter.update(f"  ✓ {check.description}")
