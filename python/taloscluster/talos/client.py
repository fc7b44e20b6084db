"""
taloscluster/talos/client.py

Talos machine-API access.

TalosClient is the capability the orchestrators depend on; TalosctlClient
implements it by driving the `talosctl` binary. Two transports are used:

 - insecure (`--insecure`): nodes in maintenance mode, before they have a
   machine configuration and therefore before they have certificates;
 - authenticated: everything after configuration, using the talosconfig from
   the machine-config bundle, written to an ephemeral file per call.

Each call takes the target `node` and an optional `endpoint` to dial. The
endpoint defaults to the node itself; Docker clusters dial the host-mapped
port of the first control-plane container and let apid proxy to the node.
"""

from __future__ import annotations

import asyncio
import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import aiofiles

from taloscluster.models.validator import validate_type
from taloscluster.utils.async_command_runner import CommandError, run_command
from taloscluster.utils.ephemeral_file import ephemeral_file

TALOS_API_PORT = 50000

_GRPC_CODE = re.compile(r"code = (\w+)")


class ApplyMode(str, Enum):
    """Reboot behaviour requested from apply-configuration."""

    AUTO = "auto"
    NO_REBOOT = "no-reboot"
    REBOOT = "reboot"
    STAGED = "staged"
    TRY = "try"


class TalosApiError(Exception):
    """A machine-API call failed.

    Attributes:
        code (str): gRPC status name ("Unimplemented", "FailedPrecondition",
            "Unavailable", ...) or "Unknown" if it could not be determined.
    """

    def __init__(self, message: str, code: str = "Unknown") -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_unimplemented(self) -> bool:
        return self.code == "Unimplemented"

    @property
    def is_failed_precondition(self) -> bool:
        return self.code == "FailedPrecondition"

    @property
    def is_unavailable(self) -> bool:
        return self.code in ("Unavailable", "DeadlineExceeded")


def talos_error_from_command(action: str, node: str, err: CommandError) -> TalosApiError:
    """Translate a failed talosctl invocation into a TalosApiError."""
    stderr = err.stderr or str(err)
    match = _GRPC_CODE.search(stderr)
    if match:
        code = match.group(1)
    elif "connection refused" in stderr or "no route to host" in stderr:
        code = "Unavailable"
    elif "not implemented in maintenance mode" in stderr:
        code = "Unimplemented"
    else:
        code = "Unknown"
    return TalosApiError(f"{action} on {node} failed: {stderr}", code)


class TalosClient(ABC):
    """Machine-API operations used by bootstrap, scaling, update and readiness."""

    @abstractmethod
    async def version(
        self, node: str, *, endpoint: Optional[str] = None, insecure: bool = False
    ) -> str:
        pass

    @abstractmethod
    async def apply_configuration(
        self,
        node: str,
        data: bytes,
        *,
        mode: ApplyMode = ApplyMode.AUTO,
        endpoint: Optional[str] = None,
        insecure: bool = False,
    ) -> None:
        pass

    @abstractmethod
    async def bootstrap(self, node: str, *, endpoint: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def kubeconfig(self, node: str, *, endpoint: Optional[str] = None) -> bytes:
        pass

    @abstractmethod
    async def etcd_forfeit_leadership(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    async def etcd_leave_cluster(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    async def service_health(
        self, node: str, service: str, *, endpoint: Optional[str] = None
    ) -> Optional[bool]:
        """Return True/False for a service's health, or None if Talos does not know yet."""

    @abstractmethod
    def with_talosconfig(self, talosconfig: bytes) -> TalosClient:
        """Return a client authenticating with a different talosconfig."""


class TalosctlClient(TalosClient):
    """
    TalosClient backed by the `talosctl` CLI.

    Args:
        talosconfig: Serialized talosconfig for authenticated calls. May be
            empty when only insecure calls are made.
        binary: Path or name of the talosctl executable.
    """

    def __init__(self, talosconfig: bytes = b"", binary: str = "talosctl") -> None:
        self._talosconfig = talosconfig
        self._binary = binary

    def with_talosconfig(self, talosconfig: bytes) -> TalosctlClient:
        return TalosctlClient(talosconfig, self._binary)

    async def _run(
        self,
        action: str,
        args: List[str],
        node: str,
        endpoint: Optional[str],
        insecure: bool = False,
    ) -> str:
        target = ["--nodes", node, "--endpoints", endpoint or node]
        try:
            if insecure:
                return await run_command(
                    [self._binary, *args, *target, "--insecure"], sensitive=False
                )
            async with ephemeral_file("talosconfig", self._talosconfig) as path:
                return await run_command(
                    [self._binary, "--talosconfig", path, *args, *target],
                    sensitive=False,
                )
        except CommandError as err:
            raise talos_error_from_command(action, node, err) from err

    async def version(
        self, node: str, *, endpoint: Optional[str] = None, insecure: bool = False
    ) -> str:
        return await self._run("version", ["version", "--short"], node, endpoint, insecure)

    async def apply_configuration(
        self,
        node: str,
        data: bytes,
        *,
        mode: ApplyMode = ApplyMode.AUTO,
        endpoint: Optional[str] = None,
        insecure: bool = False,
    ) -> None:
        async with ephemeral_file("machineconfig.yaml", data) as config_path:
            await self._run(
                "apply-config",
                ["apply-config", "--file", config_path, "--mode", mode.value],
                node,
                endpoint,
                insecure,
            )

    async def bootstrap(self, node: str, *, endpoint: Optional[str] = None) -> None:
        await self._run("bootstrap", ["bootstrap"], node, endpoint)

    async def kubeconfig(self, node: str, *, endpoint: Optional[str] = None) -> bytes:
        async with ephemeral_file("kubeconfig", b"") as path:
            await self._run(
                "kubeconfig",
                ["kubeconfig", path, "--force", "--merge=false"],
                node,
                endpoint,
            )
            async with aiofiles.open(path, "rb") as f:
                return await f.read()

    async def etcd_forfeit_leadership(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        await self._run(
            "etcd forfeit-leadership", ["etcd", "forfeit-leadership"], node, endpoint
        )

    async def etcd_leave_cluster(
        self, node: str, *, endpoint: Optional[str] = None
    ) -> None:
        await self._run("etcd leave", ["etcd", "leave"], node, endpoint)

    async def service_health(
        self, node: str, service: str, *, endpoint: Optional[str] = None
    ) -> Optional[bool]:
        output = await self._run(
            f"get service {service}",
            ["get", "services", service, "--output", "json"],
            node,
            endpoint,
        )
        if not output:
            return None
        resource = validate_type(json.loads(output), Dict[str, Any])
        spec = resource.get("spec") or {}
        if spec.get("unknown"):
            return None
        return bool(spec.get("running")) and bool(spec.get("healthy"))


async def wait_tcp(host: str, port: int = TALOS_API_PORT, timeout: float = 5.0) -> None:
    """Open and close a TCP connection to host:port.

    Raises:
        OSError: If the connection cannot be established within `timeout`.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        raise OSError(f"connection to {host}:{port} timed out") from exc
    writer.close()
    await writer.wait_closed()
