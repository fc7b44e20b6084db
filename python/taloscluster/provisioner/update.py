"""
taloscluster/provisioner/update.py

Configuration diff and in-place update of a running cluster.

`diff_config` is side-effect free and classifies every difference between two
ClusterSpecs. `ClusterUpdater.update` gates on the destructive category,
applies node-count changes through the NodeScaler, pushes machine-config
changes with the no-reboot apply mode, and reports reboot-required changes
as unsupported when a rolling reboot is requested.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, TextIO

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.models.cluster import ClusterSpec, Provider
from taloscluster.models.nodes import NodeRole
from taloscluster.models.update import (
    Change,
    ChangeCategory,
    UpdateOptions,
    UpdateResult,
)
from taloscluster.provisioner.errors import (
    MinimumControlPlaneError,
    RecreationRequiredError,
    ScalingError,
    UpdateError,
)
from taloscluster.provisioner.scaling import MIN_CONTROL_PLANES, NodeScaler, endpoint_bundle
from taloscluster.provisioner.timings import Timings
from taloscluster.talos.client import ApplyMode, TalosApiError, TalosClient
from taloscluster.talos.machine_config import MachineConfigBundle

logger = logging.getLogger(__name__)

# Machine-config paths Talos applies without a reboot.
NO_REBOOT_PATHS = [
    ".cluster",
    ".machine.network",
    ".machine.kubelet",
    ".machine.registries",
    ".machine.nodeLabels",
    ".machine.nodeTaints",
    ".machine.time",
    ".machine.sysfs",
    ".machine.sysctls",
    ".machine.logging",
    ".machine.pods",
    ".machine.kernel",
]

REBOOT_REQUIRED_PATHS = [
    ".machine.install",
    ".machine.disks",
]


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + ".") or path.startswith(prefix + "[")


def classify_talos_patch(path: str) -> ChangeCategory:
    """Classify a machine-config path; anything unknown is treated as reboot-required."""
    if any(_under(path, prefix) for prefix in REBOOT_REQUIRED_PATHS):
        return ChangeCategory.REBOOT_REQUIRED
    if any(_under(path, prefix) for prefix in NO_REBOOT_PATHS):
        return ChangeCategory.IN_PLACE
    return ChangeCategory.REBOOT_REQUIRED


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def diff_config(old: Optional[ClusterSpec], new: Optional[ClusterSpec]) -> UpdateResult:
    """
    Compare two cluster specs field by field.

    Node counts are in-place (the scaler applies them live). The provider and
    the network prefixes are baked into nodes and certificates at creation, so
    changing them requires recreating the cluster. Machine-config patch paths
    are classified by `classify_talos_patch`.

    Args:
        old: Spec the cluster currently runs with.
        new: Desired spec.

    Returns:
        UpdateResult: Detected changes sorted into their category lists.
    """
    result = UpdateResult()
    if old is None or new is None:
        return result

    if old.provider != new.provider:
        result.add(
            Change(
                field="provider",
                old_value=old.provider.value,
                new_value=new.provider.value,
                category=ChangeCategory.RECREATE_REQUIRED,
                reason="nodes cannot move between infrastructure providers",
            )
        )

    if old.talos.control_planes != new.talos.control_planes:
        result.add(
            Change(
                field="talos.controlPlanes",
                old_value=str(old.talos.control_planes),
                new_value=str(new.talos.control_planes),
                category=ChangeCategory.IN_PLACE,
                reason="control-plane nodes can be added/removed via provider",
            )
        )

    if old.talos.workers != new.talos.workers:
        result.add(
            Change(
                field="talos.workers",
                old_value=str(old.talos.workers),
                new_value=str(new.talos.workers),
                category=ChangeCategory.IN_PLACE,
                reason="worker nodes can be added/removed via provider",
            )
        )

    if new.provider is Provider.DOCKER and old.network_cidr != new.network_cidr:
        result.add(
            Change(
                field="networkCidr",
                old_value=old.network_cidr,
                new_value=new.network_cidr,
                category=ChangeCategory.RECREATE_REQUIRED,
                reason="node addresses are fixed when the Docker network is created",
            )
        )

    old_cidr, new_cidr = old.hetzner.network_cidr, new.hetzner.network_cidr
    if new.provider is Provider.HETZNER and old_cidr and new_cidr and old_cidr != new_cidr:
        result.add(
            Change(
                field="hetzner.networkCidr",
                old_value=old_cidr,
                new_value=new_cidr,
                category=ChangeCategory.RECREATE_REQUIRED,
                reason="network CIDR change requires PKI regeneration",
            )
        )

    old_patches, new_patches = old.talos.config_patches, new.talos.config_patches
    for path in sorted(set(old_patches) | set(new_patches)):
        if old_patches.get(path) == new_patches.get(path):
            continue
        category = classify_talos_patch(path)
        result.add(
            Change(
                field=path,
                old_value=_text(old_patches.get(path)),
                new_value=_text(new_patches.get(path)),
                category=category,
                reason=(
                    "Talos applies this path without a reboot"
                    if category is ChangeCategory.IN_PLACE
                    else "changing this path requires a node reboot"
                ),
            )
        )

    return result


def _is_config_change(change: Change) -> bool:
    return change.field.startswith(".")


class ClusterUpdater:
    """
    Applies a spec change to a running cluster.

    Args:
        backend: Backend running the cluster.
        talos: Talos client.
        bundle: Machine configuration reflecting the new spec, or None when
            only node counts can change.
        talosconfig: Client credentials; defaults to the bundle's.
        timings: Wait bounds for configuring new nodes.
        out: Stream for progress lines.
    """

    def __init__(
        self,
        backend: InfrastructureBackend,
        talos: TalosClient,
        bundle: Optional[MachineConfigBundle] = None,
        talosconfig: bytes = b"",
        *,
        timings: Optional[Timings] = None,
        out: Optional[TextIO] = None,
    ) -> None:
        self._backend = backend
        self._talos = talos
        self._bundle = bundle
        self._talosconfig = talosconfig or (bundle.talos_config() if bundle else b"")
        self._timings = timings or Timings()
        self._out = out

    def _say(self, line: str) -> None:
        print(line, file=self._out)

    def _scaler(self) -> NodeScaler:
        return NodeScaler(
            self._backend,
            self._talos,
            self._bundle,
            self._talosconfig,
            timings=self._timings,
            out=self._out,
        )

    async def update(
        self,
        old: ClusterSpec,
        new: ClusterSpec,
        opts: Optional[UpdateOptions] = None,
    ) -> UpdateResult:
        """
        Diff `old` against `new` and apply what can be applied in place.

        Returns:
            UpdateResult: Classified changes plus applied and failed lists.

        Raises:
            RecreationRequiredError: Recreate-required changes without `force`;
                nothing has been applied.
            MinimumControlPlaneError: The new spec has no control-plane node;
                nothing has been applied.
            UpdateError: A change that was attempted failed. Changes that do not
                depend on it are still applied before this is raised.
        """
        opts = opts or UpdateOptions()
        diff = diff_config(old, new)
        if opts.dry_run:
            return diff

        result = diff.seeded_copy()
        if diff.has_recreate_required() and not opts.force:
            raise RecreationRequiredError(
                f"{len(diff.recreate_required)} change(s) require recreating cluster {new.name}",
                result,
            )
        if new.talos.control_planes < MIN_CONTROL_PLANES:
            raise MinimumControlPlaneError(
                f"cluster {new.name} needs at least {MIN_CONTROL_PLANES} control-plane node"
            )
        if diff.has_recreate_required():
            self.skip_recreate_required(result)
        skipped = len(result.failed_changes)

        await self.apply_node_counts(old, new, result)
        await self.apply_in_place_configs(new, result)
        if diff.has_reboot_required() and opts.rolling_reboot:
            self.apply_reboot_required(result)

        if len(result.failed_changes) > skipped:
            raise UpdateError(
                f"{len(result.failed_changes) - skipped} change(s) could not be applied "
                f"to {new.name}",
                result,
            )
        return result

    async def apply_node_counts(
        self, old: ClusterSpec, new: ClusterSpec, result: UpdateResult
    ) -> None:
        scaler = self._scaler()
        cp_delta = new.talos.control_planes - old.talos.control_planes
        worker_delta = new.talos.workers - old.talos.workers
        if cp_delta or worker_delta:
            self._say(
                f"Scaling cluster {new.name}: CP {cp_delta:+d}, Workers {worker_delta:+d}"
            )
        deltas = [(NodeRole.CONTROL_PLANE, cp_delta), (NodeRole.WORKER, worker_delta)]
        for role, delta in deltas:
            try:
                await scaler.scale(new, role, delta, result)
            except ScalingError as err:
                logger.warning("Scaling %s nodes of %s failed: %s", role.value, new.name, err)
                self._say(f"  ⚠ {err}")

    def skip_recreate_required(self, result: UpdateResult) -> None:
        """Record forced-past recreate-required changes as failed; update never recreates."""
        self._say(
            f"  ⚠ Skipping {len(result.recreate_required)} change(s) "
            "that need cluster recreation"
        )
        reason = "cluster recreation is not performed by update"
        result.failed_changes.extend(
            change.model_copy(update={"reason": reason})
            for change in result.recreate_required
        )

    async def apply_in_place_configs(self, spec: ClusterSpec, result: UpdateResult) -> None:
        """Push each node's role configuration with the no-reboot apply mode."""
        changes = [c for c in result.in_place_changes if _is_config_change(c)]
        if not changes:
            return
        if self._bundle is None:
            for change in changes:
                result.failed_changes.append(
                    change.model_copy(update={"reason": "no machine configuration to apply"})
                )
            return

        bundle = await endpoint_bundle(self._backend, spec.name, self._bundle)
        talos = self._talos.with_talosconfig(self._talosconfig)
        endpoint = await self._backend.talos_endpoint(spec.name)
        failures: List[str] = []

        self._say("Applying machine configuration (no reboot)...")
        for node in await self._backend.list_nodes(spec.name):
            data = bundle.for_role(node.role).to_bytes()
            try:
                await talos.apply_configuration(
                    node.ip, data, mode=ApplyMode.NO_REBOOT, endpoint=endpoint
                )
                self._say(f"  ✓ Config applied to {node.name} (no reboot)")
            except TalosApiError as err:
                logger.warning("Applying configuration to %s failed: %s", node.name, err)
                self._say(f"  ⚠ Failed to apply config to {node.name}: {err}")
                failures.append(node.name)

        if failures:
            reason = f"no-reboot apply failed on {', '.join(failures)}"
            result.failed_changes.extend(
                change.model_copy(update={"reason": reason}) for change in changes
            )
        else:
            result.applied_changes.extend(changes)

    def apply_reboot_required(self, result: UpdateResult) -> None:
        """Rolling reboots are not implemented: report every reboot-required change as failed."""
        self._say(
            f"  ⚠ {len(result.reboot_required)} change(s) need a rolling reboot, "
            "which is not supported yet"
        )
        result.failed_changes.extend(
            change.model_copy(update={"reason": "rolling reboot is not supported yet"})
            for change in result.reboot_required
        )
