"""Remote script blocks that turn bare VMs into the two tiers.

Each block is a plain ``sh`` script; all inputs are positional arguments,
secrets arrive on stdin.  The helpers below run one block over a
:class:`~tierdeploy.connection.RemoteSession` and raise
:class:`DeploymentError` when it exits nonzero.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DATABASE_PORT = 5432

# $1: web server package
INSTALL_WEB_SERVER = """\
set -e
pkg=${1:-nginx}
export DEBIAN_FRONTEND=noninteractive
sudo -E apt-get update -q
sudo -E apt-get install -y -q "$pkg"
sudo systemctl enable --now "$pkg"
systemctl is-active "$pkg"
"""

# $1: LUN of the data disk, $2: mount point
INIT_DATA_DISK = """\
set -e
lun=$1
mount_point=$2
if mountpoint -q "$mount_point"; then
  echo "$mount_point already mounted"
  exit 0
fi
dev=$(readlink -f "/dev/disk/azure/scsi1/lun$lun")
if [ ! -b "$dev" ]; then
  echo "No data disk attached at LUN $lun" >&2
  exit 1
fi
if ! sudo blkid "$dev" >/dev/null 2>&1; then
  sudo mkfs.ext4 -q -F "$dev"
fi
sudo mkdir -p "$mount_point"
uuid=$(sudo blkid -s UUID -o value "$dev")
if ! grep -q "$uuid" /etc/fstab; then
  echo "UUID=$uuid $mount_point ext4 defaults,nofail 0 2" | sudo tee -a /etc/fstab >/dev/null
fi
sudo mount "$mount_point"
echo "Mounted $dev on $mount_point"
"""

# $1: path of a pushed installer package, or empty for the distribution package
INSTALL_DATABASE = """\
set -e
export DEBIAN_FRONTEND=noninteractive
sudo -E apt-get update -q
if [ -n "$1" ]; then
  case "$1" in
    /*) installer=$1 ;;
    *) installer="$PWD/$1" ;;
  esac
  sudo -E apt-get install -y -q "$installer"
else
  sudo -E apt-get install -y -q postgresql
fi
sudo systemctl enable --now postgresql
"""

# $1: subnet allowed to connect, $2: database name; stdin: password
CONFIGURE_DATABASE = """\
set -e
subnet=$1
dbname=$2
IFS= read -r db_password
conf_dir=$(ls -d /etc/postgresql/*/main 2>/dev/null | sort -V | tail -n 1)
if [ ! -d "$conf_dir" ]; then
  echo "PostgreSQL configuration directory not found" >&2
  exit 1
fi
sudo sed -i "s/^#\\?listen_addresses.*/listen_addresses = '*'/" "$conf_dir/postgresql.conf"
rule="host all all $subnet scram-sha-256"
if ! sudo grep -qxF "$rule" "$conf_dir/pg_hba.conf"; then
  echo "$rule" | sudo tee -a "$conf_dir/pg_hba.conf" >/dev/null
fi
sudo systemctl restart postgresql
cd /tmp
sudo -u postgres psql -q -v ON_ERROR_STOP=1 -v pw="$db_password" -v db="$dbname" <<'SQL'
ALTER USER postgres WITH PASSWORD :'pw';
SELECT format('CREATE DATABASE %I', :'db')
WHERE NOT EXISTS (SELECT FROM pg_database WHERE datname = :'db')\\gexec
SQL
"""


class DeploymentError(Exception):
    """A deployment step failed.

    Attributes:
        step: Name of the step, e.g. ``"install_web_server"``.
        detail: Remote error text or other cause.
    """

    def __init__(self, step: str, detail: str) -> None:
        super().__init__(f"{step} failed: {detail}")
        self.step = step
        self.detail = detail


def run_step(session, step: str, script: str, *args: object, stdin: bytes = b""):
    """Run *script* on *session* and return its result.

    Raises:
        DeploymentError: If the script exits nonzero.
        RemoteChannelError: If the channel fails.
    """
    logger.info("[%s] %s ...", session.host, step)
    result = session.run_script(script, *args, stdin=stdin, name=step)
    if not result.ok:
        logger.error("[%s] %s exited %d: %s", session.host, step, result.exit_code, result.error_text)
        raise DeploymentError(step, result.error_text)
    logger.info("[%s] %s done", session.host, step)
    return result


def install_web_server(session, package: str = "nginx"):
    return run_step(session, "install_web_server", INSTALL_WEB_SERVER, package)


def init_data_disk(session, lun: int, mount_point: str):
    return run_step(session, "init_data_disk", INIT_DATA_DISK, lun, mount_point)


def install_database(session, installer_path: str = ""):
    return run_step(session, "install_database", INSTALL_DATABASE, installer_path)


def configure_database(session, subnet_prefix: str, database_name: str, password: str):
    """Open the database to *subnet_prefix* and set the admin password."""
    return run_step(
        session,
        "configure_database",
        CONFIGURE_DATABASE,
        subnet_prefix,
        database_name,
        stdin=(password + "\n").encode("utf-8"),
    )
