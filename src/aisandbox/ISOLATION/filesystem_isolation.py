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
Scoped loop and bind mounts for editing a guest rootfs image offline.

Every mount acquired here is released on all exit paths, including when the
body of the ``with`` block raises, so a failed build never leaks a loop device.
"""
import logging
import os
import tempfile
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import psutil

from ..errors import CommandError, MountError
from ..MODELS.disk_image import DiskImage, MountState
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)


def is_mounted(path: str) -> bool:
    """
    Checks the kernel mount table for a mount point.

    Callers use this after a failed build before declaring an image broken.
    """
    target = os.path.realpath(path)
    return any(
        os.path.realpath(part.mountpoint) == target
        for part in psutil.disk_partitions(all=True)
    )


class LoopMount:
    """
    Loop-mounts a disk image at a private mount point for the duration of a
    ``with`` block. The mounted tree is owned exclusively by the holder.
    """

    def __init__(
        self,
        image: DiskImage,
        runner: Optional[CommandRunner] = None,
        mount_point: Optional[str] = None,
        mount_table: Callable[[str], bool] = is_mounted,
    ):
        """
        Initialize the loop mount.

        Args:
            image: Image to mount. Its ``mount_state`` is kept up to date.
            runner: Command runner for mount/umount.
            mount_point: Directory to mount at. A fresh temporary directory when omitted.
            mount_table: Probe used to detect a partially acquired mount.
        """
        self.image = image
        self.runner = runner or CommandRunner("mount")
        self.mount_point = mount_point
        self.mount_table = mount_table
        self._created_dir = False

    def __enter__(self) -> Path:
        if self.mount_point is None:
            self.mount_point = tempfile.mkdtemp(prefix="aisandbox-rootfs-")
            self._created_dir = True
        elif not os.path.isdir(self.mount_point):
            os.makedirs(self.mount_point, mode=0o700)
            self._created_dir = True

        self.image.mount_state = MountState.BUSY
        try:
            self.runner.run(["mount", "-o", "loop", self.image.path, self.mount_point])
        except CommandError as e:
            # mount may have attached the loop device before failing
            self.release()
            raise MountError(f"Failed to mount {self.image.path}: {e}") from e

        self.image.mount_state = MountState.MOUNTED
        logger.info("Mounted %s at %s", self.image.path, self.mount_point)
        return Path(self.mount_point)

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.release()
        except MountError:
            if exc_type is None:
                raise
            # Keep the original error; the release failure is secondary
            logger.error("Failed to release %s while handling %s", self.mount_point, exc_type.__name__)
        return False

    def release(self) -> None:
        """
        Unmounts (if mounted) and removes the mount point directory.

        Raises:
            MountError: If the image is still mounted afterwards.
        """
        if self.mount_point is None:
            return
        if self.image.mount_state == MountState.MOUNTED or self.mount_table(self.mount_point):
            result = self.runner.run(["umount", self.mount_point], check=False)
            if result.returncode != 0:
                logger.warning("umount %s failed, retrying lazily", self.mount_point)
                result = self.runner.run(["umount", "-l", self.mount_point], check=False)
            if result.returncode != 0:
                self.image.mount_state = MountState.BUSY
                raise MountError(f"Could not unmount {self.mount_point}: {result.stderr.strip()}")
            logger.info("Unmounted %s", self.mount_point)
        self.image.mount_state = MountState.UNMOUNTED

        if self._created_dir:
            try:
                os.rmdir(self.mount_point)
            except OSError as e:
                logger.warning("Leaving mount point %s behind: %s", self.mount_point, e)


@contextmanager
def bind_mounts(root: str, sources: Sequence[str], runner: Optional[CommandRunner] = None) -> Iterator[None]:
    """
    Bind-mounts host paths (``/proc``, ``/dev``) into a rootfs for chroot work.
    Mounts are released in reverse order on every exit path.

    Args:
        root: Rootfs mount point.
        sources: Absolute host paths, mounted at the same path under ``root``.
        runner: Command runner for mount/umount.
    """
    runner = runner or CommandRunner("mount")
    with ExitStack() as stack:
        for source in sources:
            target = os.path.join(root, source.lstrip("/"))
            os.makedirs(target, exist_ok=True)
            try:
                runner.run(["mount", "--bind", source, target])
            except CommandError as e:
                raise MountError(f"Failed to bind {source} into {root}: {e}") from e
            stack.callback(runner.run, ["umount", target], check=False)
        yield
