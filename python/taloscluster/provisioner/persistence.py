"""
taloscluster/provisioner/persistence.py

Persists fetched kubeconfig and talosconfig entries to the user's config files.

The provisioner only hands raw bytes and a cluster name to these stores; the
stores own reading, merging and rewriting the YAML files.
"""

from __future__ import annotations

import os
from typing import Any, Callable, Dict

import aiofiles
import yaml

from taloscluster.utils.kubeconfig import (
    merge_kubeconfig,
    merge_talosconfig,
    prune_kubeconfig,
    prune_talosconfig,
    set_cluster_server,
)


class _YamlFileStore:
    def __init__(self, path: str) -> None:
        self.path = os.path.expanduser(path)

    async def _read(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        async with aiofiles.open(self.path, "r") as f:
            doc = yaml.safe_load(await f.read())
        return doc if isinstance(doc, dict) else {}

    async def _write(self, doc: Dict[str, Any]) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiofiles.open(self.path, "w") as f:
            await f.write(yaml.safe_dump(doc, sort_keys=False))
        os.chmod(self.path, 0o600)

    async def _update(
        self, transform: Callable[[Dict[str, Any]], Dict[str, Any]], create: bool
    ) -> None:
        if not create and not os.path.exists(self.path):
            return
        await self._write(transform(await self._read()))


class KubeconfigStore(_YamlFileStore):
    """Kubeconfig file holding one `admin@<cluster>` entry per cluster."""

    async def add(self, cluster_name: str, kubeconfig: bytes) -> None:
        """Merge a kubeconfig fetched for `cluster_name` into the file, creating it if needed."""
        new = yaml.safe_load(kubeconfig) or {}
        await self._update(lambda doc: merge_kubeconfig(doc, new), create=True)

    async def remove(self, cluster_name: str) -> None:
        """Drop the cluster's entries. A missing file is not an error."""
        await self._update(lambda doc: prune_kubeconfig(doc, cluster_name), create=False)

    async def set_server(self, cluster_name: str, server: str) -> None:
        """Repoint the cluster's entry at `server`. A missing file is not an error."""
        await self._update(
            lambda doc: set_cluster_server(doc, cluster_name, server), create=False
        )


class TalosconfigStore(_YamlFileStore):
    """Talosconfig file holding one context per cluster."""

    async def add(self, cluster_name: str, talosconfig: bytes) -> None:
        """Store the talosconfig's context under the cluster name."""
        new = yaml.safe_load(talosconfig) or {}
        contexts = new.get("contexts") or {}
        if cluster_name not in contexts and len(contexts) == 1:
            entry = next(iter(contexts.values()))
            new = {"context": cluster_name, "contexts": {cluster_name: entry}}
        await self._update(lambda doc: merge_talosconfig(doc, new), create=True)

    async def remove(self, cluster_name: str) -> None:
        await self._update(lambda doc: prune_talosconfig(doc, cluster_name), create=False)

    async def load(self, cluster_name: str) -> bytes:
        """Return a talosconfig selecting the cluster's context, or b"" if there is none."""
        doc = await self._read()
        context = (doc.get("contexts") or {}).get(cluster_name)
        if context is None:
            return b""
        single = {"context": cluster_name, "contexts": {cluster_name: context}}
        return yaml.safe_dump(single, sort_keys=False).encode()
