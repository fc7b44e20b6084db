import asyncio
import io

import pytest

from taloscluster.models.nodes import NodeRole
from taloscluster.provisioner.errors import ClusterNotReadyError
from taloscluster.provisioner.readiness import (
    CNI_DEPENDENT_CHECKS,
    ProgressReporter,
    default_checks,
    select_checks,
    wait_for_checks,
)
from taloscluster.talos.client import TalosApiError

from conftest import FakeClusterAccess


def cluster_nodes(backend):
    backend.add_existing("dev", NodeRole.CONTROL_PLANE, 1)
    backend.add_existing("dev", NodeRole.WORKER, 1)
    return asyncio.run(backend.list_nodes("dev"))


def test_progress_reporter_prints_only_changes():
    out = io.StringIO()
    reporter = ProgressReporter(out)
    for line in ["waiting for etcd", "waiting for etcd", "etcd OK", "etcd OK"]:
        reporter.update(line)
    assert out.getvalue().splitlines() == ["waiting for etcd", "etcd OK"]


def test_cni_disabled_drops_pod_network_checks():
    descriptions = {check.description for check in select_checks(cni_disabled=True)}
    assert not descriptions & {check.description for check in CNI_DEPENDENT_CHECKS}
    assert "etcd to be healthy" in descriptions
    assert "all control plane static pods to be running" in descriptions


def test_skip_flag_selects_cni_disabled_set():
    assert len(select_checks(False, skip_cni_checks=True)) == len(select_checks(True))
    assert len(select_checks(False)) == len(default_checks())


def test_healthy_cluster_passes_all_checks(backend, fast_timings):
    out = io.StringIO()
    access = FakeClusterAccess(cluster_nodes(backend))

    asyncio.run(
        wait_for_checks(access, default_checks(), timings=fast_timings, reporter=ProgressReporter(out))
    )

    lines = out.getvalue().splitlines()
    assert lines[0] == "  waiting for etcd to be healthy"
    assert lines[-1] == "  ✓ coredns to report ready"


def test_not_ready_nodes_time_out(backend, fast_timings):
    access = FakeClusterAccess(cluster_nodes(backend))
    access.nodes_ready = False

    with pytest.raises(ClusterNotReadyError) as info:
        asyncio.run(
            wait_for_checks(
                access, default_checks(), timings=fast_timings, reporter=ProgressReporter(io.StringIO())
            )
        )
    assert "all k8s nodes to report ready" in str(info.value)


def test_not_ready_nodes_pass_without_cni(backend, fast_timings):
    access = FakeClusterAccess(cluster_nodes(backend))
    access.nodes_ready = False

    asyncio.run(
        wait_for_checks(
            access,
            select_checks(cni_disabled=True),
            timings=fast_timings,
            reporter=ProgressReporter(io.StringIO()),
        )
    )


def test_unregistered_node_is_reported(backend, fast_timings):
    access = FakeClusterAccess(cluster_nodes(backend))
    access.registered = ["dev-control-plane-1"]

    with pytest.raises(ClusterNotReadyError) as info:
        asyncio.run(
            wait_for_checks(
                access, default_checks(), timings=fast_timings, reporter=ProgressReporter(io.StringIO())
            )
        )
    assert "dev-worker-1" in str(info.value)


def test_talos_errors_during_probe_are_retried(backend, fast_timings):
    class FlakyAccess(FakeClusterAccess):
        calls = 0

        async def talos_version(self, node):
            FlakyAccess.calls += 1
            if FlakyAccess.calls == 1:
                raise TalosApiError("connection refused", "Unavailable")
            return "v1.11.2"

    access = FlakyAccess(cluster_nodes(backend))
    asyncio.run(
        wait_for_checks(
            access, select_checks(True), timings=fast_timings, reporter=ProgressReporter(io.StringIO())
        )
    )
    assert FlakyAccess.calls >= 3
