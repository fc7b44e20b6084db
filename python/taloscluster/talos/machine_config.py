"""
taloscluster/talos/machine_config.py

Machine configuration provider consumed by the orchestrators.

The provisioner never generates Talos configuration: it receives a ready-made
bundle (control-plane config, worker config, talosconfig client credentials)
and only serializes it, picks the payload for a node role, and asks for a copy
pointing at a different API endpoint once a cloud node's address is known.

YamlConfigBundle is the concrete provider over pre-generated YAML documents,
e.g. the `controlplane.yaml`, `worker.yaml` and `talosconfig` files written by
`talosctl gen config`.
"""

from __future__ import annotations

import base64
import copy
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List

import aiofiles
import yaml

from taloscluster.models.nodes import NodeRole
from taloscluster.provisioner.errors import NoConfigForRoleError

KUBERNETES_API_PORT = 6443


class MachineConfig(ABC):
    """One node-role machine configuration."""

    @abstractmethod
    def to_bytes(self) -> bytes:
        """Serialized configuration, as sent to the Talos apply-configuration API."""

    def encode_string(self) -> str:
        """Base64 of `to_bytes()`, as passed to containers in the USERDATA env var."""
        return base64.b64encode(self.to_bytes()).decode()


class MachineConfigBundle(ABC):
    """Per-role machine configurations plus the talosconfig client credentials."""

    @abstractmethod
    def control_plane(self) -> MachineConfig:
        pass

    @abstractmethod
    def worker(self) -> MachineConfig:
        pass

    @abstractmethod
    def talos_config(self) -> bytes:
        """Serialized talosconfig used to authenticate against configured nodes."""

    @abstractmethod
    def with_endpoint(self, ip: str) -> MachineConfigBundle:
        """Return a new bundle whose API endpoint is `ip`; self is left untouched."""

    @abstractmethod
    def cni_disabled(self) -> bool:
        """True when the configuration disables the built-in CNI."""

    def for_role(self, role: NodeRole) -> MachineConfig:
        """Return the configuration for `role`.

        Raises:
            NoConfigForRoleError: If the bundle has no payload for the role.
        """
        config = self.control_plane() if role.is_control_plane else self.worker()
        if config is None:
            raise NoConfigForRoleError(f"no machine configuration for role {role.value}")
        return config


class YamlMachineConfig(MachineConfig):
    """A machine configuration held as a list of YAML documents."""

    def __init__(self, documents: List[Dict[str, Any]]) -> None:
        self._documents = documents

    @classmethod
    def from_yaml(cls, text: str) -> YamlMachineConfig:
        return cls([doc for doc in yaml.safe_load_all(text) if doc])

    @property
    def documents(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._documents)

    def machine_document(self) -> Dict[str, Any]:
        """The v1alpha1 document, i.e. the one with `machine` or `cluster` keys."""
        for doc in self._documents:
            if "machine" in doc or "cluster" in doc:
                return doc
        return {}

    def to_bytes(self) -> bytes:
        return yaml.safe_dump_all(self._documents, sort_keys=False).encode()

    def with_endpoint(self, ip: str) -> YamlMachineConfig:
        documents = copy.deepcopy(self._documents)
        for doc in documents:
            if "machine" not in doc and "cluster" not in doc:
                continue
            cluster = doc.setdefault("cluster", {}) or {}
            doc["cluster"] = cluster
            cluster.setdefault("controlPlane", {})["endpoint"] = (
                f"https://{ip}:{KUBERNETES_API_PORT}"
            )
            api_server = cluster.setdefault("apiServer", {})
            _append_unique(api_server.setdefault("certSANs", []), ip)
            machine = doc.setdefault("machine", {}) or {}
            doc["machine"] = machine
            _append_unique(machine.setdefault("certSANs", []), ip)
        return YamlMachineConfig(documents)


class YamlConfigBundle(MachineConfigBundle):
    """
    Bundle over pre-generated YAML machine configurations.

    Args:
        control_plane: Control-plane machine configuration.
        worker: Worker machine configuration.
        talosconfig: Parsed talosconfig (`context` and `contexts` keys).
    """

    def __init__(
        self,
        control_plane: YamlMachineConfig,
        worker: YamlMachineConfig,
        talosconfig: Dict[str, Any],
    ) -> None:
        self._control_plane = control_plane
        self._worker = worker
        self._talosconfig = talosconfig

    @classmethod
    async def load(cls, directory: str) -> YamlConfigBundle:
        """Read `controlplane.yaml`, `worker.yaml` and `talosconfig` from `directory`."""

        async def read(name: str) -> str:
            async with aiofiles.open(os.path.join(directory, name), "r") as f:
                return await f.read()

        control_plane = YamlMachineConfig.from_yaml(await read("controlplane.yaml"))
        worker = YamlMachineConfig.from_yaml(await read("worker.yaml"))
        talosconfig = yaml.safe_load(await read("talosconfig")) or {}
        return cls(control_plane, worker, talosconfig)

    def control_plane(self) -> YamlMachineConfig:
        return self._control_plane

    def worker(self) -> YamlMachineConfig:
        return self._worker

    def talos_config(self) -> bytes:
        return yaml.safe_dump(self._talosconfig, sort_keys=False).encode()

    def context_name(self) -> str:
        return str(self._talosconfig.get("context", ""))

    def with_endpoint(self, ip: str) -> YamlConfigBundle:
        talosconfig = copy.deepcopy(self._talosconfig)
        context = talosconfig.get("contexts", {}).get(self.context_name())
        if isinstance(context, dict):
            context["endpoints"] = [ip]
            context["nodes"] = [ip]
        return YamlConfigBundle(
            self._control_plane.with_endpoint(ip),
            self._worker.with_endpoint(ip),
            talosconfig,
        )

    def cni_disabled(self) -> bool:
        cluster = self._control_plane.machine_document().get("cluster") or {}
        cni = (cluster.get("network") or {}).get("cni") or {}
        return cni.get("name") == "none"


def _append_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)
