# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Provisions packages and the aisandbox helper inside a mounted guest rootfs via chroot.
"""
import logging
import os
import shlex
import shutil
from pathlib import Path
from typing import List, Optional

from ..errors import CommandError
from ..ISOLATION.filesystem_isolation import bind_mounts
from ..MODELS.guest_layout import DEFAULT_TARGET, GUEST_USER, HELPER_SOURCE_DIR, UNIT_DIR
from ..MODELS.step_result import StepResult
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)

ENSURE_IPTABLES = "command -v iptables >/dev/null 2>&1 || (apt-get update && apt-get install -y iptables)"

INSTALL_SSHD = """
if ! command -v sshd >/dev/null 2>&1; then
    apt-get update && apt-get install -y --no-install-recommends openssh-server
    rm -rf /var/lib/apt/lists/*
fi
mkdir -p /run/sshd
echo {credentials} | chpasswd
sed -i "s/^#*PasswordAuthentication.*/PasswordAuthentication yes/" /etc/ssh/sshd_config
sed -i "s/^#*PermitUserEnvironment.*/PermitUserEnvironment yes/" /etc/ssh/sshd_config
grep -q "^AcceptEnv TERM" /etc/ssh/sshd_config || echo "AcceptEnv TERM" >> /etc/ssh/sshd_config
"""

INSTALL_HELPER = """
if ! python3 -m pip --version >/dev/null 2>&1; then
    apt-get update && apt-get install -y --no-install-recommends python3-pip
fi
python3 -m pip install --quiet --break-system-packages {source}
"""

SOURCE_IGNORE = shutil.ignore_patterns(
    ".build", ".git", "__pycache__", "*.pyc", "tests", "*.ext4", "*.tar", ".pytest_cache"
)


class GuestProvisioner:
    """
    Installs what the guest needs beyond the base image: iptables, an SSH
    server for proper PTY access, and the aisandbox helper that the boot
    units execute.
    """

    def __init__(self, source_dir: str, runner: Optional[CommandRunner] = None,
                 ssh_password: str = "sandbox"):
        """
        :param source_dir: Project tree of this package, copied into the guest.
        :param runner: Command runner for chroot invocations.
        :param ssh_password: Password set for the guest user.
        """
        self.source_dir = source_dir
        self.runner = runner or CommandRunner("chroot")
        self.ssh_password = ssh_password

    def _chroot(self, root: Path, script: str, check: bool = True):
        return self.runner.run(["chroot", str(root), "/bin/bash", "-lc", script], check=check)

    def provision(self, root: Path) -> List[StepResult]:
        """
        Runs every provisioning step against a mounted rootfs.

        :param root: Mount point of the guest rootfs.
        :return: Step results; iptables is best effort.
        :raises CommandError: If the SSH server or helper cannot be installed.
        """
        results = [self.ensure_iptables(root)]
        self.copy_helper_source(root)
        with bind_mounts(str(root), ["/proc", "/dev"], self.runner):
            self.install_ssh_server(root)
            self.install_helper(root)
        self.enable_ssh_service(root)
        results.append(StepResult.success("ssh", "OpenSSH server installed and enabled"))
        results.append(StepResult.success("helper", f"aisandbox installed from {HELPER_SOURCE_DIR}"))
        return results

    def ensure_iptables(self, root: Path) -> StepResult:
        try:
            self._chroot(root, ENSURE_IPTABLES)
        except CommandError as e:
            logger.warning("Could not ensure iptables in guest: %s", e)
            return StepResult.recoverable("iptables", str(e), e)
        return StepResult.success("iptables")

    def copy_helper_source(self, root: Path) -> Path:
        target = root / HELPER_SOURCE_DIR.lstrip("/")
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(self.source_dir, target, ignore=SOURCE_IGNORE)
        logger.info("Copied aisandbox source to %s", HELPER_SOURCE_DIR)
        return target

    def install_ssh_server(self, root: Path) -> None:
        credentials = shlex.quote(f"{GUEST_USER}:{self.ssh_password}")
        self._chroot(root, INSTALL_SSHD.format(credentials=credentials))

    def install_helper(self, root: Path) -> None:
        self._chroot(root, INSTALL_HELPER.format(source=shlex.quote(HELPER_SOURCE_DIR)))

    def enable_ssh_service(self, root: Path) -> Optional[Path]:
        """
        Links whichever of ``ssh.service`` / ``sshd.service`` the distribution ships.
        """
        wants_dir = root / UNIT_DIR.lstrip("/") / f"{DEFAULT_TARGET}.wants"
        wants_dir.mkdir(parents=True, exist_ok=True)
        for name in ("ssh.service", "sshd.service"):
            unit = f"/lib/systemd/system/{name}"
            if os.path.lexists(root / unit.lstrip("/")):
                link = wants_dir / name
                if link.is_symlink() or link.exists():
                    link.unlink()
                link.symlink_to(unit)
                return link
        logger.warning("No ssh.service found in guest; SSH will not start at boot")
        return None
