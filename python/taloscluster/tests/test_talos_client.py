import asyncio
import json

import pytest

from taloscluster.talos import client as client_module
from taloscluster.talos.client import (
    ApplyMode,
    TalosApiError,
    TalosctlClient,
    talos_error_from_command,
)
from taloscluster.utils.async_command_runner import CommandError


@pytest.fixture
def talosctl(monkeypatch):
    """Replaces run_command; records each invocation and the talosconfig it saw."""
    calls = []
    outputs = {}

    async def fake_run_command(command, **kwargs):
        seen = None
        if "--talosconfig" in command:
            with open(command[command.index("--talosconfig") + 1]) as f:
                seen = f.read()
        calls.append((command, seen))
        result = outputs.get(command[1] if command[1] != "--talosconfig" else command[3], "")
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(client_module, "run_command", fake_run_command)
    fake_run_command.calls = calls
    fake_run_command.outputs = outputs
    return fake_run_command


def test_error_code_is_parsed_from_stderr():
    err = CommandError("talosctl failed", 1, "rpc error: code = FailedPrecondition desc = not ready")
    assert talos_error_from_command("bootstrap", "10.5.0.2", err).is_failed_precondition


def test_connection_refused_is_unavailable():
    err = CommandError("talosctl failed", 1, "dial tcp 10.5.0.2:50000: connect: connection refused")
    assert talos_error_from_command("version", "10.5.0.2", err).is_unavailable


def test_maintenance_mode_is_unimplemented():
    err = CommandError("talosctl failed", 1, "API is not implemented in maintenance mode")
    assert talos_error_from_command("version", "10.5.0.2", err).is_unimplemented


def test_insecure_calls_skip_talosconfig(talosctl):
    asyncio.run(TalosctlClient(b"context: dev\n").version("10.5.0.2", insecure=True))

    command, seen = talosctl.calls[0]
    assert command == [
        "talosctl", "version", "--short", "--nodes", "10.5.0.2", "--endpoints", "10.5.0.2", "--insecure",
    ]
    assert seen is None


def test_authenticated_calls_use_endpoint_and_talosconfig(talosctl):
    client = TalosctlClient(binary="talosctl").with_talosconfig(b"context: dev\n")

    asyncio.run(client.bootstrap("10.5.0.2", endpoint="127.0.0.1:32768"))

    command, seen = talosctl.calls[0]
    assert command[-5:] == ["bootstrap", "--nodes", "10.5.0.2", "--endpoints", "127.0.0.1:32768"]
    assert seen == "context: dev\n"


def test_apply_configuration_passes_mode(talosctl):
    asyncio.run(
        TalosctlClient(b"x: 1\n").apply_configuration(
            "10.5.0.3", b"machine: {}\n", mode=ApplyMode.NO_REBOOT
        )
    )

    command, _ = talosctl.calls[0]
    assert command[command.index("--mode") + 1] == "no-reboot"


def test_failed_command_raises_talos_api_error(talosctl):
    talosctl.outputs["etcd"] = CommandError("talosctl failed", 1, "rpc error: code = Unavailable desc = x")

    with pytest.raises(TalosApiError) as info:
        asyncio.run(TalosctlClient(b"x: 1\n").etcd_leave_cluster("10.5.0.4"))
    assert info.value.code == "Unavailable"


def test_service_health_reads_spec(talosctl):
    client = TalosctlClient(b"x: 1\n")
    talosctl.outputs["get"] = json.dumps({"spec": {"running": True, "healthy": True}})
    assert asyncio.run(client.service_health("10.5.0.2", "etcd")) is True

    talosctl.outputs["get"] = json.dumps({"spec": {"running": True, "healthy": False}})
    assert asyncio.run(client.service_health("10.5.0.2", "etcd")) is False

    talosctl.outputs["get"] = json.dumps({"spec": {"unknown": True}})
    assert asyncio.run(client.service_health("10.5.0.2", "etcd")) is None
