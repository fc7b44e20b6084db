import asyncio

import pytest

from taloscluster.backends.hetzner import (
    LABEL_CLUSTER_NAME,
    LABEL_NODE_INDEX,
    LABEL_NODE_TYPE,
    LABEL_OWNED,
    AllLocationsFailedError,
    HetznerBackend,
    retry_delay,
    subnet_for,
)
from taloscluster.backends.hetzner_client import HetznerAPIError
from taloscluster.models.cluster import (
    ClusterSpec,
    HetznerOptions,
    PlacementGroupStrategy,
    Provider,
)
from taloscluster.models.nodes import NodeRole
from taloscluster.provisioner.errors import MissingEndpointError, ProvisionerError


class FakeHetznerClient:
    """In-memory Hetzner API; `create_errors` are raised by create_server in order."""

    def __init__(self):
        self.servers = {}
        self.resources = {"networks": {}, "firewalls": {}, "placement_groups": {}}
        self.ssh_keys = {"ops": {"id": 77, "name": "ops"}}
        self.create_errors = []
        self.create_payloads = []
        self.actions = []
        self.action_errors = {}
        self.firewall_delete_errors = []
        self.deleted = []
        self._next_id = 100

    def _id(self):
        self._next_id += 1
        return self._next_id

    def _matches(self, server, selector):
        labels = server["labels"]
        return all(labels.get(k) == v for k, v in (t.split("=", 1) for t in selector.split(",")))

    async def list_servers(self, label_selector):
        return [s for s in self.servers.values() if self._matches(s, label_selector)]

    async def create_server(self, payload):
        self.create_payloads.append(payload)
        if self.create_errors:
            raise self.create_errors.pop(0)
        server_id = self._id()
        server = {
            "id": server_id,
            "name": payload["name"],
            "status": "running",
            "labels": dict(payload["labels"]),
            "public_net": {"ipv4": {"ip": f"203.0.113.{server_id - 100}"}},
            "private_net": [{"ip": f"10.0.1.{server_id - 100}"}],
        }
        self.servers[server_id] = server
        return server

    async def delete_server(self, server_id):
        if self.servers.pop(server_id, None) is None:
            raise HetznerAPIError("not_found", "server not found", 404)
        self.deleted.append(("server", server_id))

    async def server_action(self, server_id, action, payload=None):
        self.actions.append((server_id, action, payload))
        if action in self.action_errors:
            raise self.action_errors[action]
        if action == "shutdown":
            self.servers[server_id]["status"] = "off"
        if action == "poweron":
            self.servers[server_id]["status"] = "running"

    def _get(self, kind, name):
        return next((r for r in self.resources[kind].values() if r["name"] == name), None)

    def _create(self, kind, payload):
        resource = {**payload, "id": self._id()}
        self.resources[kind][resource["id"]] = resource
        return resource

    def _delete(self, kind, resource_id):
        del self.resources[kind][resource_id]
        self.deleted.append((kind, resource_id))

    async def get_network(self, name):
        return self._get("networks", name)

    async def create_network(self, payload):
        return self._create("networks", payload)

    async def delete_network(self, network_id):
        self._delete("networks", network_id)

    async def get_firewall(self, name):
        return self._get("firewalls", name)

    async def create_firewall(self, payload):
        return self._create("firewalls", payload)

    async def delete_firewall(self, firewall_id):
        if self.firewall_delete_errors:
            raise self.firewall_delete_errors.pop(0)
        self._delete("firewalls", firewall_id)

    async def get_placement_group(self, name):
        return self._get("placement_groups", name)

    async def create_placement_group(self, payload):
        return self._create("placement_groups", payload)

    async def delete_placement_group(self, placement_group_id):
        self._delete("placement_groups", placement_group_id)

    async def get_ssh_key(self, name):
        return self.ssh_keys.get(name)

    async def is_reachable(self):
        return True

    async def close(self):
        return None


@pytest.fixture
def client():
    return FakeHetznerClient()


@pytest.fixture
def lines():
    return []


@pytest.fixture
def hetzner(client, lines):
    return HetznerBackend(
        client,
        retry_base_delay=0,
        resource_release_delay=0,
        firewall_delete_delay=0,
        server_poll_interval=0,
        out=lines.append,
    )


def hetzner_spec(**options):
    return ClusterSpec(name="prod", provider=Provider.HETZNER, hetzner=HetznerOptions(**options))


def create(backend, spec, role=NodeRole.CONTROL_PLANE, index=1):
    return asyncio.run(backend.create_node(spec, role, index, None))


def test_retry_delay_backs_off_and_caps():
    assert [retry_delay(attempt) for attempt in (1, 2, 3, 4)] == [2, 4, 8, 10]


def test_default_network_gets_default_subnet():
    assert subnet_for("10.0.0.0/16") == "10.0.1.0/24"
    assert subnet_for("10.9.0.0/24") == "10.9.0.0/24"


def test_prepare_cluster_creates_shared_resources_once(client, hetzner):
    spec = hetzner_spec()

    asyncio.run(hetzner.prepare_cluster(spec))
    asyncio.run(hetzner.prepare_cluster(spec))

    networks = list(client.resources["networks"].values())
    assert [n["name"] for n in networks] == ["prod-network"]
    assert networks[0]["subnets"][0]["ip_range"] == "10.0.1.0/24"
    assert len(client.resources["firewalls"]) == 1
    ports = {rule.get("port") for rule in next(iter(client.resources["firewalls"].values()))["rules"]}
    assert {"50000", "6443", "2379-2380"} <= ports
    assert len(client.resources["placement_groups"]) == 1


def test_placement_strategy_none_skips_placement_group(client, hetzner):
    asyncio.run(hetzner.prepare_cluster(hetzner_spec(placement_group_strategy=PlacementGroupStrategy.NONE)))
    assert client.resources["placement_groups"] == {}


def test_missing_ssh_key_is_an_error(hetzner):
    with pytest.raises(ProvisionerError):
        asyncio.run(hetzner.prepare_cluster(hetzner_spec(ssh_key_name="missing")))


def test_create_node_boots_talos_iso(client, hetzner):
    spec = ClusterSpec(name="prod", provider=Provider.HETZNER, hetzner=HetznerOptions(ssh_key_name="ops"))

    node = create(hetzner, spec, NodeRole.WORKER, 2)

    payload = client.create_payloads[0]
    assert payload["name"] == "prod-worker-2"
    assert payload["labels"][LABEL_OWNED] == "true"
    assert payload["labels"][LABEL_CLUSTER_NAME] == "prod"
    assert payload["labels"][LABEL_NODE_TYPE] == "worker"
    assert payload["labels"][LABEL_NODE_INDEX] == "2"
    assert payload["ssh_keys"] == [77]
    assert "placement_group" in payload
    server_id = int(node.handle)
    assert client.actions == [
        (server_id, "attach_iso", {"iso": str(spec.talos.iso)}),
        (server_id, "reset", None),
    ]
    assert (node.role, node.index, node.ip) == (NodeRole.WORKER, 2, "203.0.113.4")
    assert node.private_ip == "10.0.1.4"


def test_retryable_errors_are_retried_in_place(client, hetzner):
    client.create_errors = [
        HetznerAPIError("conflict", "busy", 409),
        HetznerAPIError("rate_limit_exceeded", "slow down", 429),
    ]

    create(hetzner, hetzner_spec())

    assert [p["location"] for p in client.create_payloads] == ["fsn1", "fsn1", "fsn1"]


def test_placement_error_drops_placement_group(client, hetzner, lines):
    client.create_errors = [HetznerAPIError("placement_error", "no spread capacity", 412)]

    create(hetzner, hetzner_spec())

    assert "placement_group" in client.create_payloads[0]
    assert "placement_group" not in client.create_payloads[1]
    assert any("without placement group" in line for line in lines)


def test_placement_fallback_can_be_disabled(client, hetzner):
    client.create_errors = [HetznerAPIError("placement_error", "no spread capacity", 412)]

    create(hetzner, hetzner_spec(allow_placement_fallback=False))

    assert all("placement_group" in p for p in client.create_payloads)


def test_exhausted_location_falls_back(client, hetzner):
    client.create_errors = [HetznerAPIError("resource_unavailable", "sold out", 412)] * 3
    spec = hetzner_spec(
        fallback_locations=["nbg1"],
        placement_group_strategy=PlacementGroupStrategy.NONE,
    )

    create(hetzner, spec)

    assert [p["location"] for p in client.create_payloads] == ["fsn1", "fsn1", "fsn1", "nbg1"]


def test_unknown_error_moves_to_next_location(client, hetzner):
    client.create_errors = [HetznerAPIError("server_error", "oops", 500)]

    create(hetzner, hetzner_spec(fallback_locations=["hel1"]))

    assert [p["location"] for p in client.create_payloads] == ["fsn1", "hel1"]


def test_permanent_error_aborts(client, hetzner):
    client.create_errors = [HetznerAPIError("resource_limit_exceeded", "quota", 403)]

    with pytest.raises(ProvisionerError) as info:
        create(hetzner, hetzner_spec(fallback_locations=["nbg1"]))

    assert not isinstance(info.value, AllLocationsFailedError)
    assert len(client.create_payloads) == 1


def test_all_locations_failing(client, hetzner):
    client.create_errors = [HetznerAPIError("conflict", "busy", 409)] * 6
    spec = hetzner_spec(fallback_locations=["nbg1"], placement_group_strategy=PlacementGroupStrategy.NONE)

    with pytest.raises(AllLocationsFailedError):
        create(hetzner, spec)

    assert len(client.create_payloads) == 6


def test_remove_node_twice_is_not_an_error(client, hetzner):
    node = create(hetzner, hetzner_spec())

    asyncio.run(hetzner.remove_node(node))
    asyncio.run(hetzner.remove_node(node))

    assert client.servers == {}


def test_list_nodes_and_clusters(client, hetzner):
    create(hetzner, hetzner_spec(), NodeRole.CONTROL_PLANE, 1)
    create(hetzner, hetzner_spec(), NodeRole.WORKER, 1)
    create(hetzner, ClusterSpec(name="alpha", provider=Provider.HETZNER))

    workers = asyncio.run(hetzner.list_nodes("prod", NodeRole.WORKER))

    assert [n.name for n in workers] == ["prod-worker-1"]
    assert asyncio.run(hetzner.list_clusters()) == ["alpha", "prod"]


def test_list_nodes_tolerates_malformed_index_label(client, hetzner):
    node = create(hetzner, hetzner_spec(), NodeRole.CONTROL_PLANE, 1)
    client.servers[int(node.handle)]["labels"][LABEL_NODE_INDEX] = "²"

    nodes = asyncio.run(hetzner.list_nodes("prod"))

    assert [(n.name, n.index) for n in nodes] == [("prod-control-plane-1", 0)]


def test_stop_all_waits_for_power_off(client, hetzner):
    create(hetzner, hetzner_spec(), NodeRole.CONTROL_PLANE, 1)
    create(hetzner, hetzner_spec(), NodeRole.WORKER, 1)

    asyncio.run(hetzner.stop_all("prod"))
    assert {s["status"] for s in client.servers.values()} == {"off"}

    asyncio.run(hetzner.start_all("prod"))
    assert {s["status"] for s in client.servers.values()} == {"running"}


def test_detach_iso_failure_only_warns(client, hetzner, lines):
    node = create(hetzner, hetzner_spec())
    client.action_errors["detach_iso"] = HetznerAPIError("locked", "server is locked", 423)

    asyncio.run(hetzner.finalize_install([node]))

    assert any("Failed to detach ISO" in line for line in lines)


def test_delete_cluster_tears_down_everything(client, hetzner):
    create(hetzner, hetzner_spec(), NodeRole.CONTROL_PLANE, 1)
    create(hetzner, hetzner_spec(), NodeRole.WORKER, 1)
    client.firewall_delete_errors = [HetznerAPIError("resource_in_use", "still attached", 409)]

    asyncio.run(hetzner.delete_cluster("prod"))

    assert client.servers == {}
    assert all(not resources for resources in client.resources.values())
    kinds = [kind for kind, _ in client.deleted]
    assert kinds == ["server", "server", "placement_groups", "firewalls", "networks"]


def test_delete_cluster_tolerates_partial_state(client, hetzner):
    asyncio.run(hetzner.delete_cluster("ghost"))
    assert client.deleted == []


def test_kubernetes_endpoint_needs_public_ip(client, hetzner):
    node = create(hetzner, hetzner_spec())
    assert asyncio.run(hetzner.kubernetes_endpoint("prod", node)) == "https://203.0.113.4:6443"

    with pytest.raises(MissingEndpointError):
        asyncio.run(hetzner.kubernetes_endpoint("prod", node.model_copy(update={"ip": ""})))
