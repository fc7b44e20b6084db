"""
taloscluster/utils/kubeconfig.py

Pure transformations of kubeconfig and talosconfig documents (parsed YAML dicts).

Talos names the kubeconfig entries after the cluster: cluster `<name>`,
context and user `admin@<name>`.
"""

from typing import Any, Dict, List

import yaml


def admin_entry_name(cluster_name: str) -> str:
    return f"admin@{cluster_name}"


def load_kubeconfig(data: bytes) -> Dict[str, Any]:
    doc = yaml.safe_load(data) if data else None
    if not isinstance(doc, dict):
        raise ValueError("kubeconfig is empty or not a mapping")
    return doc


def rewrite_server(data: bytes, server: str) -> bytes:
    """Point every cluster entry of a kubeconfig at `server`.

    Args:
        data: Serialized kubeconfig as fetched from Talos.
        server: Externally reachable API URL, e.g. "https://127.0.0.1:32768".

    Returns:
        bytes: The rewritten kubeconfig.
    """
    doc = load_kubeconfig(data)
    for entry in doc.get("clusters") or []:
        cluster = entry.setdefault("cluster", {})
        cluster["server"] = server
    return yaml.safe_dump(doc, sort_keys=False).encode()


def _upsert(items: List[Dict[str, Any]], new_items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    names = {item.get("name") for item in new_items}
    return [item for item in items if item.get("name") not in names] + new_items


def merge_kubeconfig(existing: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    """Merge the clusters, contexts and users of `new` into `existing`.

    Entries with the same name are replaced. `current-context` is switched to
    the new document's current context.
    """
    merged = dict(existing) if existing else {"apiVersion": "v1", "kind": "Config"}
    for key in ("clusters", "contexts", "users"):
        merged[key] = _upsert(list(merged.get(key) or []), list(new.get(key) or []))
    if new.get("current-context"):
        merged["current-context"] = new["current-context"]
    merged.setdefault("preferences", {})
    return merged


def prune_kubeconfig(existing: Dict[str, Any], cluster_name: str) -> Dict[str, Any]:
    """Remove the cluster, context and user entries belonging to `cluster_name`."""
    admin = admin_entry_name(cluster_name)
    drop = {"clusters": cluster_name, "contexts": admin, "users": admin}
    pruned = dict(existing)
    for key, name in drop.items():
        pruned[key] = [item for item in existing.get(key) or [] if item.get("name") != name]
    if pruned.get("current-context") == admin:
        pruned["current-context"] = ""
    return pruned


def set_cluster_server(
    existing: Dict[str, Any], cluster_name: str, server: str
) -> Dict[str, Any]:
    """Point the cluster entry named `cluster_name` at `server`; other entries are untouched."""
    updated = dict(existing)
    clusters = []
    for entry in existing.get("clusters") or []:
        if entry.get("name") == cluster_name:
            entry = dict(entry)
            entry["cluster"] = dict(entry.get("cluster") or {}, server=server)
        clusters.append(entry)
    updated["clusters"] = clusters
    return updated


def merge_talosconfig(existing: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(existing) if existing else {}
    contexts = dict(merged.get("contexts") or {})
    contexts.update(new.get("contexts") or {})
    merged["contexts"] = contexts
    if new.get("context"):
        merged["context"] = new["context"]
    return merged


def prune_talosconfig(existing: Dict[str, Any], cluster_name: str) -> Dict[str, Any]:
    pruned = dict(existing)
    contexts = dict(existing.get("contexts") or {})
    contexts.pop(cluster_name, None)
    pruned["contexts"] = contexts
    if pruned.get("context") == cluster_name:
        pruned["context"] = ""
    return pruned
