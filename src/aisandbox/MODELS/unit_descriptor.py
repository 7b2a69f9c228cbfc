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
Models for boot-time units written into the guest image.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator

from .guest_layout import DEFAULT_TARGET


class UnitType(str, Enum):
    """
    systemd service types used by the sandbox units.
    """

    ONESHOT = "oneshot"
    SIMPLE = "simple"


class UnitDescriptor(BaseModel):
    """
    A declarative boot-time task.

    ``after``, ``requires`` and ``wants`` are ordering edges to other units;
    together with the other descriptors they must form a DAG.
    """

    name: str
    description: str
    exec_start: List[str]

    # Ordering
    after: List[str] = []
    requires: List[str] = []
    wants: List[str] = []

    # Trigger conditions
    condition_path_exists: List[str] = []

    # Lifecycle
    type: UnitType = UnitType.ONESHOT
    remain_after_exit: bool = True
    timeout_start_sec: Optional[int] = None
    standard_output: Optional[str] = None

    wanted_by: str = DEFAULT_TARGET

    @field_validator("name")
    @classmethod
    def _service_suffix(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value:
            raise ValueError(f"Invalid unit name: {value!r}")
        if "." not in value:
            value += ".service"
        return value

    @property
    def edges(self) -> List[str]:
        """All units this one is ordered after or depends on."""
        seen: List[str] = []
        for dep in self.after + self.requires + self.wants:
            if dep not in seen:
                seen.append(dep)
        return seen
