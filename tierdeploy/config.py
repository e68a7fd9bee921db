"""Configuration and deployment profile management for TierDeploy.

All settings are stored as JSON files under ``~/.tierdeploy/``.
Passwords and database secrets are never written to disk — they are
delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
import secrets
from pathlib import Path
from typing import Any

import keyring

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "TierDeploy"

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "subscription_id": "",
    "location": "westeurope",
    "admin_username": "azureuser",
    "ssh_public_key_path": str(Path.home() / ".ssh" / "id_rsa.pub"),
    "ssh_private_key_path": str(Path.home() / ".ssh" / "id_rsa"),
    "ssh_port": 22,
    "ssh_timeout": 15,
    "command_timeout": 600,
    "trust_new_hosts": True,
    "keepalive_interval": 30,
    "reconnect_retries": 6,
    "reconnect_base_delay": 5,
    "transfer_block_size": 1024 * 1024,
    "transfer_retries": 2,
    "remote_installer_dir": "installers",
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and deployment profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset — it never crashes the tool.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.tierdeploy/`` if necessary."""
        self._base = base_dir or Path.home() / ".tierdeploy"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt config.json (%s) — resetting to defaults", exc
            )
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_profiles(self) -> list[dict[str, Any]]:
        """Load ``profiles.json``, returning an empty list on corruption."""
        if not self._profiles_path.exists():
            return []
        try:
            raw = self._profiles_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, list):
                raise ValueError("Profiles root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning(
                "Corrupt profiles.json (%s) — resetting to empty list", exc
            )
            self._atomic_write(self._profiles_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def set_from_string(self, key: str, raw: str) -> Any:
        """Coerce *raw* to the type of the default for *key*, then ``set`` it.

        Used by the command line, where every value arrives as a string.
        Unknown keys are stored as plain strings.

        Raises:
            ValueError: If *raw* cannot be converted.
        """
        default = DEFAULT_CONFIG.get(key)
        value: Any
        if isinstance(default, bool):
            lowered = raw.strip().lower()
            if lowered in ("1", "true", "yes", "on"):
                value = True
            elif lowered in ("0", "false", "no", "off"):
                value = False
            else:
                raise ValueError(f"Expected a boolean for {key!r}, got {raw!r}")
        elif isinstance(default, int):
            try:
                value = int(raw)
            except ValueError:
                raise ValueError(f"Expected an integer for {key!r}, got {raw!r}") from None
        else:
            value = raw
        self.set(key, value)
        return value

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        """Return a copy of all saved deployment profiles."""
        return list(self._profiles)

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Upsert a profile by its ``name`` field.

        If a profile with the same ``name`` already exists it is replaced;
        otherwise the new profile is appended.  Secrets must NOT be in
        *profile* — store them via :meth:`store_secret` instead.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")

        # Strip any accidental secret keys
        profile = {
            k: v for k, v in profile.items()
            if k not in ("password", "database_password")
        }

        for i, existing in enumerate(self._profiles):
            if existing.get("name") == name:
                self._profiles[i] = profile
                break
        else:
            self._profiles.append(profile)

        self._atomic_write(self._profiles_path, self._profiles)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Delete the profile identified by *name*.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        original_len = len(self._profiles)
        self._profiles = [p for p in self._profiles if p.get("name") != name]
        if len(self._profiles) < original_len:
            self._atomic_write(self._profiles_path, self._profiles)
            logger.info("Profile deleted: %s", name)
            return True
        logger.warning("delete_profile: profile not found: %s", name)
        return False

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return the profile dict for *name*, or ``None`` if not found."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None

    def import_profiles(self, path: Path, validate=None) -> int:
        """Upsert every profile found in the JSON file at *path*.

        The file may hold a single profile object or an array of them.
        *validate*, if given, is called on each profile before anything is
        saved and should raise ``ValueError`` to reject it.  Returns the
        number of profiles saved.
        """
        loaded = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(loaded, dict):
            loaded = [loaded]
        if not isinstance(loaded, list):
            raise ValueError(f"{path} must contain a profile object or array")
        if validate is not None:
            for profile in loaded:
                validate(profile)
        for profile in loaded:
            self.save_profile(profile)
        return len(loaded)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    @staticmethod
    def store_secret(account: str, secret: str) -> None:
        """Store *secret* in the OS keyring under *account*."""
        keyring.set_password(KEYRING_SERVICE, account, secret)
        logger.debug("Secret stored in keyring for %s", account)

    @staticmethod
    def get_secret(account: str) -> str | None:
        """Return the keyring secret for *account*, or ``None``."""
        return keyring.get_password(KEYRING_SERVICE, account)

    def get_or_create_secret(self, account: str) -> str:
        """Return the keyring secret for *account*, generating one if absent."""
        secret = self.get_secret(account)
        if secret:
            return secret
        secret = secrets.token_urlsafe(24)
        self.store_secret(account, secret)
        logger.info("Generated new secret for %s", account)
        return secret
