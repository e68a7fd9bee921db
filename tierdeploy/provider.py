"""Cloud provider client for TierDeploy.

:class:`ProviderClient` is the small interface the deployment orchestrator
drives.  Every call returns a typed result or raises :class:`ProviderError`
tagged with the operation that failed.  Nothing here retries; control-plane
failures go straight back to the caller.

:class:`AzureProvider` implements it on the Azure management SDK.  The
topology maps onto Azure Resource Manager as follows:

- affinity group  → resource group (placement + lifetime of everything else),
- network site    → virtual network with one subnet,
- virtual machine → public IP + network security group + NIC + VM.
"""

from __future__ import annotations

import abc
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Iterator

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "canonical:0001-com-ubuntu-server-jammy:22_04-lts-gen2:latest"

# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AffinityGroup:
    name: str
    location: str
    created: bool = False


@dataclass(frozen=True)
class NetworkSite:
    name: str
    address_space: str
    subnet_name: str
    subnet_prefix: str
    subnet_id: str
    created: bool = False


@dataclass(frozen=True)
class VmSpec:
    """What to build for one tier."""

    name: str
    role: str
    size: str
    admin_username: str
    ssh_public_key: str
    image: str = DEFAULT_IMAGE
    open_ports: tuple[int, ...] = (22,)
    data_disk_gb: int = 0


@dataclass(frozen=True)
class VirtualMachine:
    name: str
    role: str
    public_ip: str
    private_ip: str
    admin_username: str
    tags: dict[str, str] = field(default_factory=dict, compare=False)


class ProviderError(Exception):
    """A provider call failed.

    Attributes:
        operation: Which provider operation failed, e.g. ``"create_vm"``.
        detail: The provider's error message.
    """

    def __init__(self, operation: str, detail: str) -> None:
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class ProviderClient(abc.ABC):
    """Operations the deployment needs from a cloud provider."""

    @abc.abstractmethod
    def ensure_affinity_group(self, name: str, location: str) -> AffinityGroup:
        """Return the affinity group *name*, creating it in *location* if absent."""

    @abc.abstractmethod
    def ensure_network_site(
        self,
        group: str,
        name: str,
        location: str,
        address_space: str,
        subnet_name: str,
        subnet_prefix: str,
    ) -> NetworkSite:
        """Return the network site *name*, creating it with one subnet if absent."""

    @abc.abstractmethod
    def get_virtual_machine(self, group: str, name: str) -> VirtualMachine | None:
        """Return the VM *name*, or ``None`` if it does not exist."""

    @abc.abstractmethod
    def create_virtual_machine(
        self,
        group: str,
        location: str,
        spec: VmSpec,
        subnet_id: str,
    ) -> VirtualMachine:
        """Create a VM from *spec* attached to *subnet_id*."""


# ---------------------------------------------------------------------------
# Azure
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _tagged(operation: str) -> Iterator[None]:
    """Re-raise Azure SDK errors as :class:`ProviderError`."""
    try:
        yield
    except HttpResponseError as exc:
        logger.error("%s failed: %s", operation, exc.message)
        raise ProviderError(operation, exc.message or str(exc)) from exc


def _name_from_id(resource_id: str) -> str:
    return resource_id.rstrip("/").rsplit("/", 1)[-1]


def parse_image(image: str) -> dict[str, str]:
    """Turn ``publisher:offer:sku:version`` into an image reference dict.

    A value starting with ``/subscriptions/`` is treated as a custom image id.
    """
    if image.startswith("/subscriptions/"):
        return {"id": image}
    parts = image.split(":")
    if len(parts) != 4 or not all(parts):
        raise ValueError(f"Image must be 'publisher:offer:sku:version', got {image!r}")
    publisher, offer, sku, version = parts
    return {"publisher": publisher, "offer": offer, "sku": sku, "version": version}


class AzureProvider(ProviderClient):
    """Provider client backed by the Azure Resource Manager SDK.

    The management clients are created from ``AzureCliCredential`` unless
    supplied explicitly.
    """

    def __init__(
        self,
        subscription_id: str,
        resource_client=None,
        network_client=None,
        compute_client=None,
    ) -> None:
        if not subscription_id and None in (resource_client, network_client, compute_client):
            raise ValueError("An Azure subscription id is required")
        if None in (resource_client, network_client, compute_client):
            from azure.identity import AzureCliCredential
            from azure.mgmt.compute import ComputeManagementClient
            from azure.mgmt.network import NetworkManagementClient
            from azure.mgmt.resource import ResourceManagementClient

            credential = AzureCliCredential()
            resource_client = resource_client or ResourceManagementClient(credential, subscription_id)
            network_client = network_client or NetworkManagementClient(credential, subscription_id)
            compute_client = compute_client or ComputeManagementClient(credential, subscription_id)

        self.subscription_id = subscription_id
        self._resources = resource_client
        self._network = network_client
        self._compute = compute_client

    # ------------------------------------------------------------------
    # Affinity group
    # ------------------------------------------------------------------

    def ensure_affinity_group(self, name: str, location: str) -> AffinityGroup:
        with _tagged("ensure_affinity_group"):
            if self._resources.resource_groups.check_existence(name):
                group = self._resources.resource_groups.get(name)
                if group.location != location:
                    logger.warning(
                        "Affinity group %s exists in %s, not %s — reusing it",
                        name,
                        group.location,
                        location,
                    )
                logger.info("Affinity group %s already exists", name)
                return AffinityGroup(name=group.name, location=group.location)

            group = self._resources.resource_groups.create_or_update(
                name, {"location": location}
            )
        logger.info("Created affinity group %s in %s", group.name, group.location)
        return AffinityGroup(name=group.name, location=group.location, created=True)

    # ------------------------------------------------------------------
    # Network site
    # ------------------------------------------------------------------

    def ensure_network_site(
        self,
        group: str,
        name: str,
        location: str,
        address_space: str,
        subnet_name: str,
        subnet_prefix: str,
    ) -> NetworkSite:
        created = False
        with _tagged("ensure_network_site"):
            try:
                vnet = self._network.virtual_networks.get(group, name)
                logger.info("Network site %s already exists", name)
            except ResourceNotFoundError:
                poller = self._network.virtual_networks.begin_create_or_update(group, name, {
                    "location": location,
                    "address_space": {"address_prefixes": [address_space]},
                })
                vnet = poller.result()
                created = True
                logger.info("Created network site %s (%s)", vnet.name, address_space)

            try:
                subnet = self._network.subnets.get(group, name, subnet_name)
            except ResourceNotFoundError:
                poller = self._network.subnets.begin_create_or_update(group, name, subnet_name, {
                    "address_prefix": subnet_prefix,
                })
                subnet = poller.result()
                logger.info("Created subnet %s (%s)", subnet.name, subnet_prefix)

        return NetworkSite(
            name=vnet.name,
            address_space=address_space,
            subnet_name=subnet.name,
            subnet_prefix=subnet.address_prefix,
            subnet_id=subnet.id,
            created=created,
        )

    # ------------------------------------------------------------------
    # Virtual machines
    # ------------------------------------------------------------------

    def get_virtual_machine(self, group: str, name: str) -> VirtualMachine | None:
        with _tagged("get_virtual_machine"):
            try:
                vm = self._compute.virtual_machines.get(group, name)
            except ResourceNotFoundError:
                return None
            tags = dict(vm.tags or {})
            nic_id = vm.network_profile.network_interfaces[0].id
            nic = self._network.network_interfaces.get(group, _name_from_id(nic_id))
            ip_config = nic.ip_configurations[0]
            public_ip = ""
            if ip_config.public_ip_address is not None:
                address = self._network.public_ip_addresses.get(
                    group, _name_from_id(ip_config.public_ip_address.id)
                )
                public_ip = address.ip_address or ""
        return VirtualMachine(
            name=vm.name,
            role=tags.get("role", ""),
            public_ip=public_ip,
            private_ip=ip_config.private_ip_address or "",
            admin_username=vm.os_profile.admin_username,
            tags=tags,
        )

    def create_virtual_machine(
        self,
        group: str,
        location: str,
        spec: VmSpec,
        subnet_id: str,
    ) -> VirtualMachine:
        image_reference = parse_image(spec.image)
        with _tagged("create_virtual_machine"):
            nsg = self._create_security_group(group, location, f"{spec.name}-nsg", spec.open_ports)
            address = self._network.public_ip_addresses.begin_create_or_update(group, f"{spec.name}-ip", {
                "location": location,
                "sku": {"name": "Standard"},
                "public_ip_allocation_method": "Static",
                "public_ip_address_version": "IPV4",
            }).result()
            logger.info("Allocated public IP %s for %s", address.ip_address, spec.name)

            nic = self._network.network_interfaces.begin_create_or_update(group, f"{spec.name}-nic", {
                "location": location,
                "ip_configurations": [{
                    "name": f"{spec.name}-ip-config",
                    "subnet": {"id": subnet_id},
                    "public_ip_address": {"id": address.id},
                }],
                "network_security_group": {"id": nsg.id},
            }).result()

            storage_profile: dict = {"image_reference": image_reference}
            if spec.data_disk_gb > 0:
                storage_profile["data_disks"] = [{
                    "lun": 0,
                    "disk_size_gb": spec.data_disk_gb,
                    "create_option": "Empty",
                }]

            logger.info("Creating virtual machine %s (%s) ...", spec.name, spec.size)
            vm = self._compute.virtual_machines.begin_create_or_update(group, spec.name, {
                "location": location,
                "tags": {"role": spec.role},
                "hardware_profile": {"vm_size": spec.size},
                "storage_profile": storage_profile,
                "os_profile": {
                    "computer_name": spec.name,
                    "admin_username": spec.admin_username,
                    "linux_configuration": {
                        "disable_password_authentication": True,
                        "ssh": {
                            "public_keys": [{
                                "path": f"/home/{spec.admin_username}/.ssh/authorized_keys",
                                "key_data": spec.ssh_public_key,
                            }],
                        },
                    },
                },
                "network_profile": {"network_interfaces": [{"id": nic.id}]},
            }).result()

        logger.info("Virtual machine %s has been created", vm.name)
        return VirtualMachine(
            name=vm.name,
            role=spec.role,
            public_ip=address.ip_address or "",
            private_ip=nic.ip_configurations[0].private_ip_address or "",
            admin_username=spec.admin_username,
            tags={"role": spec.role},
        )

    def _create_security_group(self, group: str, location: str, name: str, ports):
        rules = [
            {
                "name": f"Allow-{port}",
                "access": "Allow",
                "direction": "Inbound",
                "protocol": "Tcp",
                "priority": 500 + index,
                "source_address_prefix": "*",
                "source_port_range": "*",
                "destination_address_prefix": "*",
                "destination_port_range": str(port),
            }
            for index, port in enumerate(ports)
        ]
        nsg = self._network.network_security_groups.begin_create_or_update(group, name, {
            "location": location,
            "security_rules": rules,
        }).result()
        logger.info("Created network security group %s (ports %s)", nsg.name, list(ports))
        return nsg
