# taloscluster/models/settings.py

from pydantic_settings import BaseSettings


class ProvisionerSettings(BaseSettings):
    """
    Pydantic settings for the provisioner's local environment.
    Fields map to environment variables prefixed with `TALOSCLUSTER_`,
    e.g. `TALOSCLUSTER_KUBECONFIG_PATH`, `TALOSCLUSTER_DOCKER_IMAGE`.
    """

    kubeconfig_path: str = "~/.kube/config"
    talosconfig_path: str = "~/.talos/config"
    docker_image: str = "ghcr.io/siderolabs/talos:v1.11.2"
    docker_binary: str = "docker"
    talosctl_binary: str = "talosctl"
    kubectl_binary: str = "kubectl"

    class Config:
        env_prefix = "TALOSCLUSTER_"


class HetznerSettings(BaseSettings):
    """
    Hetzner Cloud API access. `HCLOUD_TOKEN` must be set when the Hetzner
    backend is used; `HCLOUD_ENDPOINT` overrides the API base URL.
    """

    token: str
    endpoint: str = "https://api.hetzner.cloud/v1"
    poll_interval_seconds: float = 1.0

    class Config:
        env_prefix = "HCLOUD_"
