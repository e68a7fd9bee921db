"""Two-tier deployment orchestration.

Runs the deployment as an explicit sequence of steps against a
:class:`~tierdeploy.provider.ProviderClient` and per-VM
:class:`~tierdeploy.connection.RemoteSession` objects:

1. ensure the affinity group,
2. ensure the network site and its private subnet,
3. provision the front-end VM,
4. provision the back-end VM,
5. install the web server on the front end,
6. initialise the data disk, push the database installer, install and
   configure the database on the back end.

Affinity group, network site and VMs are reused when they already exist,
so a failed run can simply be started again.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

from tierdeploy import provisioning
from tierdeploy.config import ConfigManager
from tierdeploy.connection import RemoteChannelError, RemoteSession
from tierdeploy.provider import (
    DEFAULT_IMAGE,
    AffinityGroup,
    NetworkSite,
    ProviderClient,
    VirtualMachine,
    VmSpec,
)
from tierdeploy.provisioning import DATABASE_PORT, DeploymentError
from tierdeploy.transfer import (
    ChunkedFilePusher,
    ProgressSink,
    RemoteFileInfo,
    TransferInterruptedError,
    TransferRequest,
)
from tierdeploy.utils.path_helpers import posix_join

logger = logging.getLogger(__name__)

__all__ = [
    "DeploymentError",
    "DeploymentProfile",
    "DeploymentResult",
    "TwoTierDeployment",
]

FRONT_END_ROLE = "front-end"
BACK_END_ROLE = "back-end"
_DATA_DISK_LUN = 0
_TOTAL_STEPS = 6

SessionFactory = Callable[[VirtualMachine], RemoteSession]

# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@dataclass
class DeploymentProfile:
    """Everything that describes one two-tier deployment.

    Names left empty are derived from ``name``.
    """

    name: str
    location: str = ""
    affinity_group: str = ""
    network_site: str = ""
    address_space: str = "10.0.0.0/16"
    subnet_name: str = "tier-subnet"
    subnet_prefix: str = "10.0.1.0/24"
    front_end_name: str = ""
    front_end_size: str = "Standard_B1s"
    back_end_name: str = ""
    back_end_size: str = "Standard_B2s"
    image: str = DEFAULT_IMAGE
    data_disk_gb: int = 32
    data_mount_point: str = "/var/lib/postgresql"
    web_server_package: str = "nginx"
    database_installer: str = ""
    database_name: str = "appdb"

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Profile must have a non-empty 'name' field")
        self.affinity_group = self.affinity_group or f"{self.name}-ag"
        self.network_site = self.network_site or f"{self.name}-vnet"
        self.front_end_name = self.front_end_name or f"{self.name}-web"
        self.back_end_name = self.back_end_name or f"{self.name}-db"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentProfile":
        """Build a profile from a saved profile dict.

        Raises:
            ValueError: On unknown keys or a missing name.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown profile keys: {', '.join(unknown)}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class DeploymentResult:
    affinity_group: AffinityGroup
    network_site: NetworkSite
    front_end: VirtualMachine
    back_end: VirtualMachine
    installer: RemoteFileInfo | None = None

    def summary(self) -> str:
        lines = [
            f"Affinity group : {self.affinity_group.name} ({self.affinity_group.location})",
            f"Network site   : {self.network_site.name} / {self.network_site.subnet_name}"
            f" ({self.network_site.subnet_prefix})",
            f"Front end      : {self.front_end.name} public={self.front_end.public_ip}"
            f" private={self.front_end.private_ip}",
            f"Back end       : {self.back_end.name} public={self.back_end.public_ip}"
            f" private={self.back_end.private_ip}",
            f"Database       : {self.back_end.private_ip}:{DATABASE_PORT}",
        ]
        if self.installer is not None:
            lines.append(f"Installer      : {self.installer.path} ({self.installer.size} bytes)")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# TwoTierDeployment
# ---------------------------------------------------------------------------


class TwoTierDeployment:
    """Runs the two-tier deployment described by a :class:`DeploymentProfile`."""

    def __init__(
        self,
        profile: DeploymentProfile,
        provider: ProviderClient,
        config: ConfigManager,
        session_factory: SessionFactory | None = None,
        on_progress: ProgressSink | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.profile = profile
        self.provider = provider
        self.config = config
        self._session_factory = session_factory or self._default_session
        self.on_progress = on_progress
        self._cancel_event = cancel_event
        self._location = profile.location or config.get("location")
        self._step_index = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def plan(self) -> list[str]:
        """Describe the steps :meth:`run` would take, without side effects."""
        p = self.profile
        steps = [
            f"Ensure affinity group {p.affinity_group} in {self._location}",
            f"Ensure network site {p.network_site} ({p.address_space})"
            f" with subnet {p.subnet_name} ({p.subnet_prefix})",
            f"Provision front-end VM {p.front_end_name} ({p.front_end_size})",
            f"Provision back-end VM {p.back_end_name} ({p.back_end_size},"
            f" {p.data_disk_gb} GB data disk)",
            f"Install {p.web_server_package} on {p.front_end_name}",
        ]
        back = []
        if p.data_disk_gb > 0:
            back.append(f"mount data disk on {p.data_mount_point}")
        if p.database_installer:
            back.append(f"push {p.database_installer}")
        back.append(f"install and configure database {p.database_name}")
        steps.append(f"On {p.back_end_name}: " + ", ".join(back))
        return steps

    def run(self) -> DeploymentResult:
        """Execute every step in order.

        Raises:
            ProviderError: A provider call failed.
            DeploymentError: A remote step failed.
            TransferError: The installer push failed.
            RemoteChannelError: A VM never became reachable.
        """
        p = self.profile
        logger.info("Starting deployment %s in %s", p.name, self._location)
        self._step_index = 0

        self._progress("Ensuring affinity group")
        group = self.provider.ensure_affinity_group(p.affinity_group, self._location)

        self._progress("Ensuring network site")
        site = self.provider.ensure_network_site(
            group.name,
            p.network_site,
            self._location,
            p.address_space,
            p.subnet_name,
            p.subnet_prefix,
        )

        ssh_public_key = self._read_public_key()

        self._progress("Provisioning front end")
        front = self.provision_vm(
            group,
            site,
            VmSpec(
                name=p.front_end_name,
                role=FRONT_END_ROLE,
                size=p.front_end_size,
                admin_username=self.config.get("admin_username"),
                ssh_public_key=ssh_public_key,
                image=p.image,
                open_ports=(22, 80),
            ),
        )

        self._progress("Provisioning back end")
        back = self.provision_vm(
            group,
            site,
            VmSpec(
                name=p.back_end_name,
                role=BACK_END_ROLE,
                size=p.back_end_size,
                admin_username=self.config.get("admin_username"),
                ssh_public_key=ssh_public_key,
                image=p.image,
                open_ports=(22,),
                data_disk_gb=p.data_disk_gb,
            ),
        )

        self._progress("Configuring front end")
        self.configure_front_end(front)

        self._progress("Configuring back end")
        installer = self.configure_back_end(back, site)

        self._progress("Complete")
        result = DeploymentResult(
            affinity_group=group,
            network_site=site,
            front_end=front,
            back_end=back,
            installer=installer,
        )
        logger.info("Deployment %s complete", p.name)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def provision_vm(self, group: AffinityGroup, site: NetworkSite, spec: VmSpec) -> VirtualMachine:
        """Return the VM named in *spec*, creating it on *site* if absent."""
        existing = self.provider.get_virtual_machine(group.name, spec.name)
        if existing is not None:
            logger.info("Reusing existing VM %s (%s)", existing.name, existing.public_ip)
            return existing
        return self.provider.create_virtual_machine(group.name, self._location, spec, site.subnet_id)

    def configure_front_end(self, vm: VirtualMachine) -> None:
        with self._session_for(vm) as session:
            provisioning.install_web_server(session, self.profile.web_server_package)

    def configure_back_end(self, vm: VirtualMachine, site: NetworkSite) -> RemoteFileInfo | None:
        """Prepare storage, push the installer, install and configure the database."""
        p = self.profile
        installer: RemoteFileInfo | None = None
        with self._session_for(vm) as session:
            if p.data_disk_gb > 0:
                provisioning.init_data_disk(session, _DATA_DISK_LUN, p.data_mount_point)
            if p.database_installer:
                destination = posix_join(
                    self.config.get("remote_installer_dir"),
                    Path(p.database_installer).name,
                )
                installer = self.push_with_restart(session, p.database_installer, destination)
            provisioning.install_database(session, installer.path if installer else "")
            password = self.config.get_or_create_secret(f"db:{p.name}")
            provisioning.configure_database(session, site.subnet_prefix, p.database_name, password)
        return installer

    def push_with_restart(self, session: RemoteSession, source: str, destination: str) -> RemoteFileInfo:
        """Push *source* and restart the whole transfer after a dropped channel.

        Only channel loss is retried, up to ``transfer_retries`` times.  Write,
        prep, source and verification errors propagate immediately.
        """
        pusher = ChunkedFilePusher(
            block_size=self.config.get("transfer_block_size"),
            on_progress=self.on_progress,
            cancel_event=self._cancel_event,
        )
        retries = self.config.get("transfer_retries")
        attempt = 0
        while True:
            try:
                return pusher.push(TransferRequest(source, destination, session))
            except (TransferInterruptedError, RemoteChannelError) as exc:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.warning(
                    "Push of %s interrupted (%s) — reopening session, restart %d/%d",
                    source,
                    exc,
                    attempt,
                    retries,
                )
                session.reconnect()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _read_public_key(self) -> str:
        path = Path(self.config.get("ssh_public_key_path")).expanduser()
        try:
            key = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise DeploymentError("read_ssh_public_key", f"{path}: {exc}") from exc
        if not key:
            raise DeploymentError("read_ssh_public_key", f"{path} is empty")
        return key

    def _default_session(self, vm: VirtualMachine) -> RemoteSession:
        return RemoteSession(
            host=vm.public_ip,
            port=self.config.get("ssh_port"),
            username=vm.admin_username or self.config.get("admin_username"),
            auth_type="key",
            key_path=self.config.get("ssh_private_key_path"),
            timeout=self.config.get("ssh_timeout"),
            command_timeout=self.config.get("command_timeout"),
            keepalive_interval=self.config.get("keepalive_interval"),
            trust_new_hosts=self.config.get("trust_new_hosts"),
            reconnect_retries=self.config.get("reconnect_retries"),
            reconnect_base_delay=self.config.get("reconnect_base_delay"),
        )

    @contextlib.contextmanager
    def _session_for(self, vm: VirtualMachine) -> Iterator[RemoteSession]:
        if not vm.public_ip:
            raise DeploymentError("open_session", f"VM {vm.name} has no public IP")
        session = self._session_factory(vm)
        session.connect_with_backoff()
        try:
            yield session
        finally:
            session.disconnect()

    def _progress(self, status: str) -> None:
        percent = 100.0 * self._step_index / _TOTAL_STEPS
        self._step_index = min(self._step_index + 1, _TOTAL_STEPS)
        logger.info("[%s] %s", self.profile.name, status)
        if self.on_progress is None:
            return
        try:
            self.on_progress(f"Deploying {self.profile.name}", status, percent)
        except Exception:
            logger.exception("Exception in on_progress callback")
