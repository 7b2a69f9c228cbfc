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
Models for the disk image being assembled and the payload it carries.
"""
import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from ..errors import CapacityError, PreconditionError

MIB = 1024 * 1024
# ext4 block size used by the base rootfs
BLOCK_SIZE = 4096


class MountState(str, Enum):
    """
    Mount state of a disk image.
    """

    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"
    BUSY = "busy"


class Payload(BaseModel):
    """
    The exported container image. Opaque: only its location and size matter.
    """

    path: str
    size_bytes: int

    @classmethod
    def from_path(cls, path: str) -> "Payload":
        """
        Describes an existing payload file.

        :param path: Path to the exported image tar.
        :raises PreconditionError: If the file does not exist.
        """
        if not os.path.isfile(path):
            raise PreconditionError(f"Payload not found at {path}")
        return cls(path=str(path), size_bytes=os.path.getsize(path))


class DiskImage(BaseModel):
    """
    A file-backed ext4 filesystem image.

    Lifecycle: copied from a base image, grown, mounted, injected, unmounted.
    After unmount it is treated as an immutable build artifact.
    """

    path: str
    current_size: int = 0
    target_size: int = 0
    mount_state: MountState = MountState.UNMOUNTED

    @classmethod
    def from_path(cls, path: str) -> "DiskImage":
        """
        Describes an existing image file.

        :raises PreconditionError: If the file does not exist.
        """
        if not os.path.isfile(path):
            raise PreconditionError(f"Base image not found at {path}")
        size = os.path.getsize(path)
        return cls(path=str(path), current_size=size, target_size=size)

    def plan_growth(self, growth_bytes: int, payload: Payload, safety_margin: int = 0) -> int:
        """
        Computes and records the target size for the image.

        The target is the current size plus the requested growth, rounded up to
        a whole filesystem block.

        :param growth_bytes: Bytes to add to the image.
        :param payload: Payload that must fit into the added space.
        :param safety_margin: Headroom required beyond the payload size.
        :return: The target size in bytes.
        :raises CapacityError: If the growth cannot hold payload plus margin.
        """
        if growth_bytes < 0:
            raise CapacityError(f"Growth must not be negative, got {growth_bytes}")
        required = payload.size_bytes + safety_margin
        if growth_bytes < required:
            raise CapacityError(
                f"Growth of {growth_bytes // MIB}MB cannot hold payload "
                f"({payload.size_bytes // MIB}MB) plus {safety_margin // MIB}MB margin"
            )
        target = self.current_size + growth_bytes
        remainder = target % BLOCK_SIZE
        if remainder:
            target += BLOCK_SIZE - remainder
        self.target_size = target
        return target

    @property
    def is_artifact(self) -> bool:
        """An image is only usable as a build artifact once unmounted."""
        return self.mount_state == MountState.UNMOUNTED and Path(self.path).is_file()
