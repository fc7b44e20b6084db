"""
taloscluster/provisioner/errors.py

Exception hierarchy for cluster provisioning.

Precondition errors are raised before anything is mutated and are safe to retry
once the precondition is fixed. ScalingError and UpdateError carry the partially
filled UpdateResult so callers can see exactly what was applied before the failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taloscluster.models.update import UpdateResult


class ProvisionerError(Exception):
    """Base class for every error raised by taloscluster."""


# Preconditions


class BackendUnavailableError(ProvisionerError):
    """The infrastructure backend (Docker daemon, Hetzner API) cannot be reached."""


class ClusterAlreadyExistsError(ProvisionerError):
    """Nodes labelled with the cluster name already exist."""


class ClusterNotFoundError(ProvisionerError):
    """No nodes labelled with the cluster name exist."""


class MinimumControlPlaneError(ProvisionerError):
    """A request would leave the cluster without a control-plane node."""


class NoControlPlaneError(ProvisionerError):
    """An operation needs a control-plane node but the cluster has none."""


# Fatal / unclassified


class NetworkAddressError(ProvisionerError):
    """A network prefix or address computation is invalid."""


class NegativeOffsetError(NetworkAddressError):
    """A negative offset was requested from the IP allocator."""


class IPv6NotSupportedError(NetworkAddressError):
    """An IPv6 prefix was handed to the IPv4-only allocator."""


class MissingEndpointError(ProvisionerError):
    """The externally reachable Kubernetes API endpoint could not be determined."""


class NoPortMappingError(ProvisionerError):
    """A container does not publish the requested port on the host."""


class NoConfigForRoleError(ProvisionerError):
    """The machine configuration bundle has no payload for a node role."""


class HetznerProviderRequiredError(ProvisionerError):
    """A Hetzner-only operation was invoked against another backend."""


# Partial failures and gates


class RecreationRequiredError(ProvisionerError):
    """The requested update contains changes that need the cluster to be recreated."""

    def __init__(self, message: str, result: "UpdateResult") -> None:
        super().__init__(message)
        self.result = result


class ScalingError(ProvisionerError):
    """Scaling stopped part-way; `result.failed_changes` names the node that failed."""

    def __init__(self, message: str, result: "UpdateResult") -> None:
        super().__init__(message)
        self.result = result


class UpdateError(ProvisionerError):
    """At least one change of an update could not be applied."""

    def __init__(self, message: str, result: "UpdateResult") -> None:
        super().__init__(message)
        self.result = result


class ClusterNotReadyError(ProvisionerError):
    """Readiness checks did not pass before their deadline."""


class BootstrapError(ProvisionerError):
    """A bootstrap phase failed; the message names the phase and node."""
