"""SSH remote-execution sessions for TierDeploy.

A :class:`RemoteSession` is the remote execution channel used by the file
pusher and the provisioning steps.  It wraps one paramiko SSH client and
exposes two ways of running code on the far side:

- :meth:`RemoteSession.invoke` runs a named operation from
  :mod:`tierdeploy.remote_ops` with a byte payload on stdin;
- :meth:`RemoteSession.run_script` runs an inline ``sh`` script block with
  positional arguments.

Transport failures are classified here and surface as
:class:`RemoteChannelError`.  A command that runs but exits nonzero is not a
channel failure; its result is returned for the caller to judge.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import keyring
import keyring.errors
import paramiko

from tierdeploy import remote_ops
from tierdeploy.config import KEYRING_SERVICE

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["SessionState", Optional[str]], None]


@dataclass(frozen=True)
class CommandResult:
    """Output of one remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def error_text(self) -> str:
        """Best available description of a failed command."""
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.exit_code}"


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(Exception):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can decide whether to
    trust it and save it via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class RemoteChannelError(Exception):
    """The remote channel is closed, unauthenticated or unreachable."""


# ---------------------------------------------------------------------------
# Host-key policies
# ---------------------------------------------------------------------------


def _fingerprint(key: paramiko.PKey) -> str:
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = _fingerprint(key)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


class _TrustOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    """Accepts and persists the key of a host seen for the first time.

    Freshly provisioned VMs have no known_hosts entry yet.  A host whose
    key *changed* still fails with ``BadHostKeyException``.
    """

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        logger.warning(
            "Trusting new host key for %s (%s %s)",
            hostname,
            key.get_name(),
            _fingerprint(key),
        )
        client.get_host_keys().add(hostname, key.get_name(), key)
        accept_host_key(hostname, key)


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising."""
    try:
        client.close()
    except Exception:
        pass  # Socket already gone; nothing left to release


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.
    """
    ssh_dir = Path.home() / ".ssh"
    ssh_dir.mkdir(mode=0o700, exist_ok=True)
    known_hosts_path = ssh_dir / "known_hosts"

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class SessionState(Enum):
    """States for the remote session lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECTING = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# RemoteSession
# ---------------------------------------------------------------------------

_RECONNECT_BASE_DELAY = 2  # seconds
_RECONNECT_MAX_RETRIES = 3
_KEEPALIVE_INTERVAL = 30  # seconds
_COMMAND_TIMEOUT = 600  # seconds


class RemoteSession:
    """Manages a single SSH remote-execution session to one VM.

    ``_lock`` protects all state transitions.  Commands themselves run
    synchronously on the calling thread; one command is in flight at a time.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "azureuser",
        auth_type: str = "key",
        key_path: str | None = None,
        timeout: float = 15.0,
        command_timeout: float = _COMMAND_TIMEOUT,
        keepalive_interval: int = _KEEPALIVE_INTERVAL,
        trust_new_hosts: bool = False,
        reconnect_retries: int = _RECONNECT_MAX_RETRIES,
        reconnect_base_delay: float = _RECONNECT_BASE_DELAY,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise session parameters (does NOT connect yet).

        Args:
            host: Hostname or IP of the VM.
            port: SSH port (default 22).
            username: Login user on the VM.
            auth_type: "key" or "password".  Passwords come from the keyring.
            key_path: Path to the private key file (used when auth_type="key").
            timeout: Connection timeout in seconds.
            command_timeout: Per-command channel timeout in seconds.
            keepalive_interval: Seconds between SSH keepalive packets.
            trust_new_hosts: Save unknown host keys instead of refusing them.
            reconnect_retries: Attempts made by :meth:`connect_with_backoff`.
            reconnect_base_delay: First backoff delay; doubles per attempt.
            on_state_change: Callback invoked on every state transition.
                Called with ``(new_state, optional_message)``.
        """
        self.host = host
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_path = key_path
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.keepalive_interval = keepalive_interval
        self.trust_new_hosts = trust_new_hosts
        self.reconnect_retries = reconnect_retries
        self.reconnect_base_delay = reconnect_base_delay
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = SessionState.DISCONNECTED
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<RemoteSession {self.username}@{self.host}:{self.port}>"

    def __enter__(self) -> "RemoteSession":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current session state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def _set_state(self, new_state: SessionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Session %s state → %s%s",
            self.host,
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """Establish the SSH session.

        Raises:
            UnknownHostError: Host key is unknown (and not trusted) or changed.
            paramiko.AuthenticationException: Wrong credentials.
            RemoteChannelError: Network-level failure or timeout.
        """
        with self._lock:
            if self._state in (SessionState.CONNECTED, SessionState.CONNECTING):
                logger.debug("connect() called but already %s", self._state.name)
                return
            if self._client is not None:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(SessionState.CONNECTING)

        try:
            self._do_connect()
        except Exception as exc:
            with self._lock:
                self._set_state(SessionState.ERROR, str(exc))
            raise

    def _do_connect(self) -> None:
        """Internal connection logic — called without holding the lock."""
        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)

        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))

        if self.trust_new_hosts:
            client.set_missing_host_key_policy(_TrustOnFirstUsePolicy())
        else:
            client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": self.auth_type == "key",
        }

        if self.auth_type == "password":
            password = keyring.get_password(KEYRING_SERVICE, self._profile_key)
            if password:
                connect_kwargs["password"] = password
        elif self.auth_type == "key" and self.key_path:
            connect_kwargs["key_filename"] = str(Path(self.key_path).expanduser())

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check ~/.ssh/known_hosts",
                hostname=self.host,
            ) from exc
        except paramiko.AuthenticationException:
            _close_client_safely(client)
            raise
        except (paramiko.SSHException, OSError) as exc:
            _close_client_safely(client)
            raise RemoteChannelError(
                f"Could not connect to {self.host}:{self.port}: {exc}"
            ) from exc

        # Larger window so 1 MB payloads are not stalled waiting for ACKs
        transport = client.get_transport()
        if transport:
            transport.set_keepalive(self.keepalive_interval)
            transport.default_window_size = 64 * 1024 * 1024

        with self._lock:
            self._client = client
            self._set_state(SessionState.CONNECTED)

        logger.info("Connected to %s", self.host)

    def disconnect(self) -> None:
        """Close the SSH session."""
        with self._lock:
            if self._client:
                _close_client_safely(self._client)
                self._client = None
            self._set_state(SessionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.host)

    def connect_with_backoff(self) -> None:
        """Connect, retrying with exponential backoff on channel failures.

        Used both to wait for a freshly booted VM to accept SSH and to reopen
        a dropped session.  Host-key and authentication errors are not
        retried.

        Raises:
            RemoteChannelError: If every attempt failed.
        """
        delay = self.reconnect_base_delay
        last_exc: Exception | None = None
        for attempt in range(1, self.reconnect_retries + 1):
            try:
                self.connect()
                if attempt > 1:
                    logger.info("Connected to %s on attempt %d", self.host, attempt)
                return
            except RemoteChannelError as exc:
                last_exc = exc
                logger.warning(
                    "Connect attempt %d/%d for %s failed: %s",
                    attempt,
                    self.reconnect_retries,
                    self.host,
                    exc,
                )
            if attempt < self.reconnect_retries:
                with self._lock:
                    self._set_state(SessionState.RECONNECTING)
                logger.info("Retrying %s in %ss", self.host, delay)
                time.sleep(delay)
                delay *= 2

        with self._lock:
            self._set_state(
                SessionState.ERROR,
                f"Could not connect to {self.host} after {self.reconnect_retries} attempts",
            )
        logger.error("All connect attempts exhausted for %s", self.host)
        raise RemoteChannelError(
            f"Could not connect to {self.host} after {self.reconnect_retries} attempts"
        ) from last_exc

    def reconnect(self) -> None:
        """Drop the current session (if any) and open a fresh one with backoff."""
        logger.info("Reopening session to %s", self.host)
        self.disconnect()
        self.connect_with_backoff()

    # ------------------------------------------------------------------
    # Remote execution
    # ------------------------------------------------------------------

    @property
    def _profile_key(self) -> str:
        """Keyring account key for this session (user@host)."""
        return f"{self.username}@{self.host}"

    def _require_client(self) -> paramiko.SSHClient:
        with self._lock:
            if self._state != SessionState.CONNECTED or self._client is None:
                raise RemoteChannelError(
                    f"Not connected to {self.host} (state: {self._state.name})"
                )
            return self._client

    def execute_command(
        self,
        command: str,
        stdin: bytes = b"",
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute *command* on the remote host and return its result.

        *stdin* is written in full and then the write side is closed, so the
        remote command sees end-of-file after the payload.

        Raises:
            RemoteChannelError: If not connected, or the channel failed or
                timed out while the command was running.
        """
        client = self._require_client()

        try:
            chan_in, chan_out, chan_err = client.exec_command(
                command, timeout=timeout or self.command_timeout
            )
            try:
                if stdin:
                    chan_in.write(stdin)
                    chan_in.flush()
                chan_in.channel.shutdown_write()
            except OSError as exc:
                # The command may exit before reading all of stdin
                if not chan_out.channel.exit_status_ready():
                    raise
                logger.debug(
                    "Remote command on %s exited before reading stdin: %s", self.host, exc
                )
            out = chan_out.read()
            err = chan_err.read()
            exit_code = chan_out.channel.recv_exit_status()
        except (paramiko.SSHException, EOFError, OSError) as exc:
            logger.error("Remote command on %s failed: %s", self.host, exc)
            with self._lock:
                self._set_state(SessionState.ERROR, str(exc))
            raise RemoteChannelError(f"Channel to {self.host} failed: {exc}") from exc

        if exit_code == -1:
            # Channel closed without reporting an exit status
            with self._lock:
                self._set_state(SessionState.ERROR, "no exit status")
            raise RemoteChannelError(f"Channel to {self.host} closed without exit status")

        return CommandResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=exit_code,
        )

    def invoke(self, operation: str, payload: bytes = b"", *args: object) -> CommandResult:
        """Run the named remote operation with *payload* on stdin.

        Raises:
            KeyError: If *operation* is not registered in ``remote_ops``.
            RemoteChannelError: On channel failure.
        """
        script = remote_ops.get_operation(operation)
        logger.debug(
            "invoke %s on %s (%d byte payload, args=%r)",
            operation,
            self.host,
            len(payload),
            args,
        )
        return self.execute_command(
            remote_ops.render_command(script, *args, name=operation),
            stdin=payload,
        )

    def run_script(
        self,
        script: str,
        *args: object,
        stdin: bytes = b"",
        name: str = "tierdeploy",
        timeout: float | None = None,
    ) -> CommandResult:
        """Run an inline ``sh`` *script* with positional *args*.

        Raises:
            RemoteChannelError: On channel failure.
        """
        logger.debug("run_script %s on %s (args=%r)", name, self.host, args)
        return self.execute_command(
            remote_ops.render_command(script, *args, name=name),
            stdin=stdin,
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    def store_password(self, password: str) -> None:
        """Store *password* in the OS keyring for this session."""
        keyring.set_password(KEYRING_SERVICE, self._profile_key, password)
        logger.debug("Password stored in keyring for %s", self._profile_key)

    def delete_password(self) -> None:
        """Remove the stored password from the OS keyring."""
        try:
            keyring.delete_password(KEYRING_SERVICE, self._profile_key)
        except keyring.errors.PasswordDeleteError:
            pass
        logger.debug("Password deleted from keyring for %s", self._profile_key)
