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
Writes systemd unit files into a mounted guest rootfs and enables them.
"""
import logging
import os
from pathlib import Path
from typing import List, Optional, Sequence

from jinja2 import Template

from ..MODELS.guest_layout import UNIT_DIR
from ..MODELS.unit_descriptor import UnitDescriptor
from ..RUNNERS.dependency_resolver import DependencyResolver

logger = logging.getLogger(__name__)

SYSTEMD_TEMPLATE = """\
[Unit]
Description={{ unit.description }}
{% if unit.wants %}
Wants={{ unit.wants | join(' ') }}
{% endif %}
{% if unit.after %}
After={{ unit.after | join(' ') }}
{% endif %}
{% if unit.requires %}
Requires={{ unit.requires | join(' ') }}
{% endif %}
{% for path in unit.condition_path_exists %}
ConditionPathExists={{ path }}
{% endfor %}

[Service]
Type={{ unit.type.value }}
ExecStart={{ unit.exec_start | join(' ') }}
{% if unit.remain_after_exit %}
RemainAfterExit=yes
{% endif %}
{% if unit.standard_output %}
StandardOutput={{ unit.standard_output }}
{% endif %}
{% if unit.timeout_start_sec %}
TimeoutStartSec={{ unit.timeout_start_sec }}
{% endif %}

[Install]
WantedBy={{ unit.wanted_by }}
"""


class UnitInstaller:
    """
    Persists unit descriptors under ``<root>/etc/systemd/system`` and links
    them into their target's ``.wants`` directory so they start at next boot.
    """

    def __init__(self, root: str, resolver: Optional[DependencyResolver] = None):
        """
        Initializes the unit installer.

        :param root: Mount point of the guest rootfs.
        :param resolver: Resolver used to reject cyclic unit sets.
        """
        self.root = Path(root)
        self.unit_dir = self.root / UNIT_DIR.lstrip("/")
        self.resolver = resolver or DependencyResolver()
        self.template = Template(SYSTEMD_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def render(self, unit: UnitDescriptor) -> str:
        """Renders a descriptor to unit file text."""
        return self.template.render(unit=unit)

    def install(self, unit: UnitDescriptor) -> Path:
        """
        Writes and enables a single unit. A previous unit of the same name is
        replaced, including its link under any other target.

        No dependency validation happens here; see ``install_all``.

        :param unit: The descriptor to install.
        :return: Path of the unit file inside the mounted tree.
        """
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        unit_path = self.unit_dir / unit.name
        tmp_path = unit_path.with_name(f".{unit.name}.tmp")
        tmp_path.write_text(self.render(unit))
        os.replace(tmp_path, unit_path)

        # Links dangle outside the guest, so test with is_symlink
        for other in self.unit_dir.glob("*.wants"):
            stale = other / unit.name
            if other.name != f"{unit.wanted_by}.wants" and stale.is_symlink():
                stale.unlink()

        wants_dir = self.unit_dir / f"{unit.wanted_by}.wants"
        wants_dir.mkdir(parents=True, exist_ok=True)
        link = wants_dir / unit.name
        if link.is_symlink() or link.exists():
            link.unlink()
        # Absolute target as seen from inside the guest
        link.symlink_to(f"{UNIT_DIR}/{unit.name}")

        logger.info("%s installed and enabled", unit.name)
        return unit_path

    def install_all(self, units: Sequence[UnitDescriptor]) -> List[Path]:
        """
        Installs a set of units after checking their edges form a DAG.

        :raises CyclicDependencyError: Before anything is written.
        """
        self.resolver.check_acyclic(units)
        return [self.install(unit) for unit in units]

    def installed_units(self) -> List[str]:
        """Names of unit files present in the unit directory."""
        if not self.unit_dir.exists():
            return []
        return sorted(p.name for p in self.unit_dir.iterdir() if p.is_file() and not p.name.startswith("."))
