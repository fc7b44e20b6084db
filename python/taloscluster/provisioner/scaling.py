"""
taloscluster/provisioner/scaling.py

Adds and removes nodes of a running cluster.

Scale-up creates nodes at the next free indices; on backends without
configuration-at-creation each new node is then configured over the Talos
maintenance API. Scale-down removes the highest-indexed nodes first and, for
control-plane nodes, first asks etcd to let the member go (best effort).

Every node added or removed is recorded in the UpdateResult. The first failure
is recorded as a failed change and stops the operation; nodes handled before
it stay in place and stay recorded as applied.
"""

from __future__ import annotations

import logging
from typing import List, Optional, TextIO

from taloscluster.backends.base import InfrastructureBackend
from taloscluster.models.cluster import ClusterSpec
from taloscluster.models.nodes import NodeDescriptor, NodeRole
from taloscluster.models.update import Change, ChangeCategory, UpdateResult
from taloscluster.provisioner.bootstrap import BootstrapOrchestrator
from taloscluster.provisioner.errors import (
    MinimumControlPlaneError,
    NoConfigForRoleError,
    ProvisionerError,
    ScalingError,
)
from taloscluster.provisioner.timings import Timings
from taloscluster.talos.client import TalosApiError, TalosClient
from taloscluster.talos.machine_config import MachineConfigBundle
from taloscluster.utils.async_command_runner import CommandError
from taloscluster.utils.naming import next_index, node_name, node_prefix

logger = logging.getLogger(__name__)

MIN_CONTROL_PLANES = 1


def count_field(role: NodeRole) -> str:
    return "talos.controlPlanes" if role.is_control_plane else "talos.workers"


async def endpoint_bundle(
    backend: InfrastructureBackend, cluster_name: str, bundle: MachineConfigBundle
) -> MachineConfigBundle:
    """Return `bundle` as distributed to the cluster's nodes.

    Backends configuring nodes at creation keep the bundle as is; the others
    had it regenerated with the first control-plane node's address.
    """
    if backend.config_at_creation:
        return bundle
    control_planes = await backend.list_nodes(cluster_name, NodeRole.CONTROL_PLANE)
    if not control_planes:
        return bundle
    first = min(control_planes, key=lambda node: node.index)
    return bundle.with_endpoint(first.ip)


class NodeScaler:
    """
    Applies node-count deltas through an InfrastructureBackend.

    Args:
        backend: Backend running the cluster.
        talos: Talos client (credentials are taken from `talosconfig`).
        bundle: Machine configuration for new nodes; required for scale-up.
        talosconfig: Client credentials for etcd cleanup on scale-down.
        timings: Wait bounds used when configuring new nodes.
        out: Stream for progress lines.
    """

    def __init__(
        self,
        backend: InfrastructureBackend,
        talos: TalosClient,
        bundle: Optional[MachineConfigBundle],
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

    async def scale(
        self, spec: ClusterSpec, role: NodeRole, delta: int, result: UpdateResult
    ) -> None:
        """
        Add (`delta > 0`) or remove (`delta < 0`) nodes of `role`.

        Raises:
            MinimumControlPlaneError: If fewer than one control-plane node would
                remain. Raised before any node is touched.
            NoConfigForRoleError: If scaling up without a configuration bundle.
            ScalingError: If creating or removing a node failed. Carries `result`.
        """
        if delta == 0:
            return

        existing = await self._backend.list_nodes(spec.name, role)
        if role.is_control_plane and len(existing) + delta < MIN_CONTROL_PLANES:
            raise MinimumControlPlaneError(
                f"cannot scale {spec.name} to {len(existing) + delta} control-plane "
                f"node(s): at least {MIN_CONTROL_PLANES} is required"
            )

        self._say(f"  Scaling {role.value} nodes of {spec.name}: {delta:+d}")
        if delta > 0:
            await self.scale_up(spec, role, delta, existing, result)
        else:
            await self.scale_down(spec, role, -delta, existing, result)

    async def scale_up(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        count: int,
        existing: List[NodeDescriptor],
        result: UpdateResult,
    ) -> None:
        if self._bundle is None:
            raise NoConfigForRoleError("adding nodes requires a machine configuration bundle")
        bundle = await endpoint_bundle(self._backend, spec.name, self._bundle)
        config = bundle.for_role(role)
        start = next_index([node.name for node in existing], node_prefix(spec.name, role))
        current = len(existing)
        configurer = BootstrapOrchestrator(
            self._backend, self._talos, timings=self._timings, out=self._out
        )

        for index in range(start, start + count):
            name = node_name(spec.name, role, index)
            try:
                node = await self._backend.create_node(spec, role, index, config)
                if not self._backend.config_at_creation:
                    await configurer.wait_for_maintenance([node])
                    await configurer.push_configs([node], bundle)
            except Exception as err:
                result.failed_changes.append(
                    Change(
                        field=count_field(role),
                        old_value=str(current),
                        new_value=str(current + 1),
                        category=ChangeCategory.IN_PLACE,
                        reason=f"failed to add {role.value} node {name}: {err}",
                    )
                )
                raise ScalingError(
                    f"failed to add {role.value} node {name}: {err}", result
                ) from err

            result.applied_changes.append(
                Change(
                    field=count_field(role),
                    old_value=str(current),
                    new_value=str(current + 1),
                    category=ChangeCategory.IN_PLACE,
                    reason=f"added {role.value} node {name}",
                )
            )
            current += 1
            self._say(f"  ✓ Added {role.value} node {name}")

    async def etcd_cleanup_best_effort(self, cluster_name: str, node: NodeDescriptor) -> None:
        """Forfeit etcd leadership and leave the etcd cluster; failures are only logged."""
        talos = self._talos.with_talosconfig(self._talosconfig)
        try:
            endpoint = await self._backend.talos_endpoint(cluster_name)
        except (CommandError, ProvisionerError) as err:
            logger.warning("No Talos endpoint for %s, skipping etcd cleanup: %s", node.name, err)
            self._say(f"  ⚠ Skipping etcd cleanup on {node.name}: {err}")
            return

        steps = [
            ("forfeit etcd leadership", talos.etcd_forfeit_leadership),
            ("leave etcd", talos.etcd_leave_cluster),
        ]
        for action, call in steps:
            try:
                await call(node.ip, endpoint=endpoint)
            except TalosApiError as err:
                logger.warning("Failed to %s on %s: %s", action, node.name, err)
                self._say(f"  ⚠ Failed to {action} on {node.name}: {err}")

    async def scale_down(
        self,
        spec: ClusterSpec,
        role: NodeRole,
        count: int,
        existing: List[NodeDescriptor],
        result: UpdateResult,
    ) -> None:
        victims = sorted(existing, key=lambda node: node.index, reverse=True)[:count]
        current = len(existing)

        for node in victims:
            if role.is_control_plane:
                await self.etcd_cleanup_best_effort(spec.name, node)
            try:
                await self._backend.remove_node(node)
            except Exception as err:
                result.failed_changes.append(
                    Change(
                        field=count_field(role),
                        old_value=str(current),
                        new_value=str(current - 1),
                        category=ChangeCategory.IN_PLACE,
                        reason=f"failed to remove {role.value} node {node.name}: {err}",
                    )
                )
                raise ScalingError(
                    f"failed to remove {role.value} node {node.name}: {err}", result
                ) from err

            result.applied_changes.append(
                Change(
                    field=count_field(role),
                    old_value=str(current),
                    new_value=str(current - 1),
                    category=ChangeCategory.IN_PLACE,
                    reason=f"removed {role.value} node {node.name}",
                )
            )
            current -= 1
            self._say(f"  ✓ Removed {role.value} node {node.name}")
