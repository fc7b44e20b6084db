"""
taloscluster/provisioner/timings.py

Timeouts and poll intervals of every wait phase, in seconds.
"""

from pydantic import BaseModel

TALOS_API_WAIT_TIMEOUT = 300.0
RETRY_INTERVAL = 5.0
LONG_RETRY_INTERVAL = 10.0
CLUSTER_READINESS_TIMEOUT = 600.0
BOOTSTRAP_TIMEOUT = 120.0
TCP_DIAL_TIMEOUT = 5.0


class Timings(BaseModel):
    """Bounds for the bootstrap and readiness waits.

    Attributes:
        maintenance_timeout: Talos API reachable in maintenance mode.
        install_timeout: Node back on the Talos port after install and reboot.
        api_timeout: Authenticated Talos API answers after configuration.
        bootstrap_timeout: etcd bootstrap accepted.
        kubeconfig_timeout: A kubeconfig can be fetched.
        readiness_timeout: All readiness checks pass.
        interval: Poll interval for short waits.
        long_interval: Poll interval for install/reboot and readiness waits.
    """

    maintenance_timeout: float = TALOS_API_WAIT_TIMEOUT
    install_timeout: float = CLUSTER_READINESS_TIMEOUT
    api_timeout: float = CLUSTER_READINESS_TIMEOUT
    bootstrap_timeout: float = BOOTSTRAP_TIMEOUT
    kubeconfig_timeout: float = CLUSTER_READINESS_TIMEOUT
    readiness_timeout: float = CLUSTER_READINESS_TIMEOUT
    interval: float = RETRY_INTERVAL
    long_interval: float = LONG_RETRY_INTERVAL
    tcp_dial_timeout: float = TCP_DIAL_TIMEOUT
