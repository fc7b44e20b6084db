import asyncio
import base64

import yaml

from taloscluster.models.nodes import NodeRole
from taloscluster.talos.machine_config import YamlConfigBundle

from conftest import CONTROL_PLANE_YAML, TALOSCONFIG, WORKER_YAML, make_bundle


def test_for_role_picks_payload(bundle):
    assert bundle.for_role(NodeRole.CONTROL_PLANE) is bundle.control_plane()
    assert bundle.for_role(NodeRole.WORKER) is bundle.worker()


def test_encode_string_is_base64_of_bytes(bundle):
    config = bundle.worker()
    assert base64.b64decode(config.encode_string()) == config.to_bytes()


def test_with_endpoint_returns_new_bundle(bundle):
    original = bundle.control_plane().to_bytes()

    updated = bundle.with_endpoint("203.0.113.5")

    assert bundle.control_plane().to_bytes() == original
    doc = updated.control_plane().machine_document()
    assert doc["cluster"]["controlPlane"]["endpoint"] == "https://203.0.113.5:6443"
    assert "203.0.113.5" in doc["machine"]["certSANs"]
    assert "203.0.113.5" in doc["cluster"]["apiServer"]["certSANs"]
    worker = updated.worker().machine_document()
    assert worker["cluster"]["controlPlane"]["endpoint"] == "https://203.0.113.5:6443"
    talosconfig = yaml.safe_load(updated.talos_config())
    assert talosconfig["contexts"]["dev"]["endpoints"] == ["203.0.113.5"]


def test_with_endpoint_does_not_duplicate_sans(bundle):
    twice = bundle.with_endpoint("203.0.113.5").with_endpoint("203.0.113.5")
    sans = twice.control_plane().machine_document()["machine"]["certSANs"]
    assert sans.count("203.0.113.5") == 1


def test_cni_disabled_follows_cni_name():
    assert not make_bundle().cni_disabled()
    assert make_bundle(cni="none").cni_disabled()


def test_load_reads_generated_files(tmp_path):
    (tmp_path / "controlplane.yaml").write_text(CONTROL_PLANE_YAML)
    (tmp_path / "worker.yaml").write_text(WORKER_YAML)
    (tmp_path / "talosconfig").write_text(yaml.safe_dump(TALOSCONFIG))

    loaded = asyncio.run(YamlConfigBundle.load(str(tmp_path)))

    assert loaded.context_name() == "dev"
    assert loaded.worker().machine_document()["machine"]["type"] == "worker"
