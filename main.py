"""TierDeploy — entry point.

Configures logging, parses the command line and dispatches to one of:

- ``deploy``   run (or ``--dry-run`` plan) a saved deployment profile,
- ``push``     push a single file to a host over SSH,
- ``profiles`` list / show / delete / import deployment profiles,
- ``config``   read or change settings, store SSH passwords in the keyring.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path

from tierdeploy import __version__
from tierdeploy.config import ConfigManager

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger("tierdeploy.main")


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tierdeploy",
        description="Provision a two-tier (web + database) deployment.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="settings directory (default ~/.tierdeploy)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="run a deployment profile")
    deploy.add_argument("profile", help="name of a saved profile")
    deploy.add_argument("--installer", help="local database installer to push (overrides profile)")
    deploy.add_argument("--dry-run", action="store_true", help="print the plan and exit")

    push = sub.add_parser("push", help="push one file to a host over SSH")
    push.add_argument("host")
    push.add_argument("source", help="local file")
    push.add_argument("destination", help="remote path, relative to the login directory or absolute")
    push.add_argument("--user", help="login user (default: admin_username setting)")
    push.add_argument("--port", type=int, help="SSH port (default: ssh_port setting)")
    push.add_argument("--password", action="store_true", help="authenticate with the password stored by 'config set-password'")
    push.add_argument("--block-size", help="chunk size, e.g. 1M or 262144")

    profiles = sub.add_parser("profiles", help="manage deployment profiles")
    profiles_sub = profiles.add_subparsers(dest="action", required=True)
    profiles_sub.add_parser("list")
    show = profiles_sub.add_parser("show")
    show.add_argument("name")
    delete = profiles_sub.add_parser("delete")
    delete.add_argument("name")
    imp = profiles_sub.add_parser("import")
    imp.add_argument("file", type=Path)

    config = sub.add_parser("config", help="read or change settings")
    config_sub = config.add_subparsers(dest="action", required=True)
    get = config_sub.add_parser("get")
    get.add_argument("key", nargs="?")
    set_ = config_sub.add_parser("set")
    set_.add_argument("key")
    set_.add_argument("value")
    set_password = config_sub.add_parser(
        "set-password", help="store an SSH password in the keyring for 'push --password'"
    )
    set_password.add_argument("target", metavar="USER@HOST")
    delete_password = config_sub.add_parser("delete-password", help="forget a stored SSH password")
    delete_password.add_argument("target", metavar="USER@HOST")

    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_deploy(args: argparse.Namespace, config: ConfigManager) -> int:
    from tierdeploy.deploy import DeploymentProfile, TwoTierDeployment
    from tierdeploy.progress import ConsoleProgress
    from tierdeploy.provider import AzureProvider

    raw = config.get_profile(args.profile)
    if raw is None:
        log.error("No profile named %r — see 'tierdeploy profiles list'", args.profile)
        return 1
    profile = DeploymentProfile.from_dict(raw)
    if args.installer:
        profile.database_installer = args.installer

    if args.dry_run:
        provider = None
    else:
        provider = AzureProvider(config.get("subscription_id"))
    sink = ConsoleProgress()
    deployment = TwoTierDeployment(profile, provider, config, on_progress=sink)

    if args.dry_run:
        for number, step in enumerate(deployment.plan(), start=1):
            print(f"{number}. {step}")
        return 0

    try:
        result = deployment.run()
    finally:
        sink.close()
    print(result.summary())
    return 0


def _cmd_push(args: argparse.Namespace, config: ConfigManager) -> int:
    from tierdeploy.connection import RemoteSession
    from tierdeploy.progress import ConsoleProgress
    from tierdeploy.transfer import ChunkedFilePusher, TransferRequest
    from tierdeploy.utils.path_helpers import parse_size

    block_size = parse_size(args.block_size) if args.block_size else config.get("transfer_block_size")
    session = RemoteSession(
        host=args.host,
        port=args.port or config.get("ssh_port"),
        username=args.user or config.get("admin_username"),
        auth_type="password" if args.password else "key",
        key_path=config.get("ssh_private_key_path"),
        timeout=config.get("ssh_timeout"),
        command_timeout=config.get("command_timeout"),
        keepalive_interval=config.get("keepalive_interval"),
        trust_new_hosts=config.get("trust_new_hosts"),
    )
    sink = ConsoleProgress()
    pusher = ChunkedFilePusher(block_size=block_size, on_progress=sink)
    with session:
        try:
            info = pusher.push(TransferRequest(args.source, args.destination, session))
        finally:
            sink.close()
    print(f"{info.path}\t{info.size}")
    return 0


def _cmd_profiles(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.action == "list":
        for profile in config.get_profiles():
            print(profile.get("name"))
        return 0
    if args.action == "show":
        profile = config.get_profile(args.name)
        if profile is None:
            log.error("No profile named %r", args.name)
            return 1
        print(json.dumps(profile, indent=2))
        return 0
    if args.action == "delete":
        return 0 if config.delete_profile(args.name) else 1
    if args.action == "import":
        from tierdeploy.deploy import DeploymentProfile

        count = config.import_profiles(args.file, validate=DeploymentProfile.from_dict)
        print(f"Imported {count} profile(s)")
        return 0
    return 2


def _password_session(target: str, config: ConfigManager):
    from tierdeploy.connection import RemoteSession

    username, sep, host = target.rpartition("@")
    if not sep or not username or not host:
        raise ValueError(f"Expected USER@HOST, got {target!r}")
    return RemoteSession(host=host, port=config.get("ssh_port"), username=username, auth_type="password")


def _cmd_config(args: argparse.Namespace, config: ConfigManager) -> int:
    if args.action == "set-password":
        session = _password_session(args.target, config)
        password = getpass.getpass(f"Password for {args.target}: ")
        if not password:
            log.error("Empty password, nothing stored")
            return 1
        session.store_password(password)
        log.info("Password for %s stored in keyring", args.target)
        return 0
    if args.action == "delete-password":
        _password_session(args.target, config).delete_password()
        return 0
    if args.action == "get":
        if args.key is None:
            print(json.dumps(config.get_all(), indent=2))
        else:
            print(json.dumps(config.get(args.key)))
        return 0
    value = config.set_from_string(args.key, args.value)
    log.info("%s = %r", args.key, value)
    return 0


_COMMANDS = {
    "deploy": _cmd_deploy,
    "push": _cmd_push,
    "profiles": _cmd_profiles,
    "config": _cmd_config,
}


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run TierDeploy."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    log.debug("Starting TierDeploy %s", __version__)

    import paramiko

    from tierdeploy.connection import RemoteChannelError, UnknownHostError
    from tierdeploy.provider import ProviderError
    from tierdeploy.provisioning import DeploymentError
    from tierdeploy.transfer import TransferError

    config = ConfigManager(base_dir=args.config_dir)
    try:
        return _COMMANDS[args.command](args, config)
    except (
        TransferError,
        RemoteChannelError,
        UnknownHostError,
        paramiko.AuthenticationException,
        ProviderError,
        DeploymentError,
        ValueError,
    ) as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
