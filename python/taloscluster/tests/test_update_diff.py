from taloscluster.models.cluster import ClusterSpec, HetznerOptions, Provider, TalosOptions
from taloscluster.models.update import ChangeCategory
from taloscluster.provisioner.update import classify_talos_patch, diff_config


def spec(**kwargs):
    return ClusterSpec(name="dev", **kwargs)


def test_identical_specs_have_no_changes():
    result = diff_config(spec(), spec())
    assert result.total_changes() == 0
    assert not result.needs_user_confirmation()


def test_missing_spec_yields_empty_result():
    assert diff_config(None, spec()).total_changes() == 0


def test_worker_count_change_is_single_in_place_change():
    result = diff_config(spec(), spec(talos=TalosOptions(workers=2)))
    assert len(result.in_place_changes) == 1
    assert not result.reboot_required
    assert not result.recreate_required
    change = result.in_place_changes[0]
    assert change.field == "talos.workers"
    assert (change.old_value, change.new_value) == ("0", "2")
    assert change.reason == "worker nodes can be added/removed via provider"


def test_control_plane_count_change_is_in_place():
    result = diff_config(spec(), spec(talos=TalosOptions(control_planes=3)))
    assert [c.field for c in result.in_place_changes] == ["talos.controlPlanes"]


def test_hetzner_network_cidr_change_requires_recreate():
    old = spec(provider=Provider.HETZNER)
    new = spec(provider=Provider.HETZNER, hetzner=HetznerOptions(network_cidr="10.1.0.0/16"))
    result = diff_config(old, new)
    assert len(result.recreate_required) == 1
    assert result.recreate_required[0].field == "hetzner.networkCidr"
    assert result.total_changes() == 1
    assert result.needs_user_confirmation()


def test_hetzner_network_cidr_ignored_for_docker():
    new = spec(hetzner=HetznerOptions(network_cidr="10.1.0.0/16"))
    assert diff_config(spec(), new).total_changes() == 0


def test_docker_network_cidr_change_requires_recreate():
    result = diff_config(spec(), spec(network_cidr="10.6.0.0/24"))
    assert [c.field for c in result.recreate_required] == ["networkCidr"]


def test_provider_change_requires_recreate():
    result = diff_config(spec(), spec(provider=Provider.HETZNER))
    assert "provider" in [c.field for c in result.recreate_required]


def test_config_patch_changes_are_classified_by_path():
    old = spec()
    new = spec(
        talos=TalosOptions(
            config_patches={
                ".machine.kubelet.extraArgs": {"max-pods": "200"},
                ".machine.install.image": "ghcr.io/siderolabs/installer:v1.11.3",
                ".machine.features.hostDNS": True,
            }
        )
    )
    result = diff_config(old, new)
    assert [c.field for c in result.in_place_changes] == [".machine.kubelet.extraArgs"]
    assert sorted(c.field for c in result.reboot_required) == [
        ".machine.features.hostDNS",
        ".machine.install.image",
    ]


def test_classify_talos_patch():
    assert classify_talos_patch(".cluster.network") is ChangeCategory.IN_PLACE
    assert classify_talos_patch(".machine.sysctls") is ChangeCategory.IN_PLACE
    assert classify_talos_patch(".machine.disks[0]") is ChangeCategory.REBOOT_REQUIRED
    assert classify_talos_patch(".machine.install") is ChangeCategory.REBOOT_REQUIRED
    assert classify_talos_patch(".machine.networkExtras") is ChangeCategory.REBOOT_REQUIRED
    assert classify_talos_patch(".unknown.path") is ChangeCategory.REBOOT_REQUIRED


def test_seeded_copy_keeps_classification_only():
    diff = diff_config(spec(), spec(talos=TalosOptions(workers=1)))
    seeded = diff.seeded_copy()
    assert seeded.in_place_changes == diff.in_place_changes
    assert seeded.applied_changes == [] and seeded.failed_changes == []
    seeded.in_place_changes.clear()
    assert diff.in_place_changes
