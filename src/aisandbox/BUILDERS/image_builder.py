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
Transforms a base guest rootfs image into a sandbox image carrying the payload.
"""
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..errors import PreconditionError
from ..CONVERTERS.to_systemd import UnitInstaller
from ..ISOLATION.filesystem_isolation import LoopMount
from ..MODELS.disk_image import MIB, DiskImage, Payload
from ..MODELS.guest_layout import GUEST_GID, GUEST_HOME, GUEST_UID, HELPER_BIN, PAYLOAD_PATH
from ..MODELS.step_result import StepResult
from ..MODELS.unit_descriptor import UnitDescriptor
from ..RUNNERS.process_runner import CommandRunner
from .guest_provisioner import GuestProvisioner
from .guest_units import default_units, render_login_hook

logger = logging.getLogger(__name__)


class DiskImageTransformer:
    """
    Copies a base ext4 image, grows it and injects the payload, boot units and
    login hook through a scoped loop mount.

    A transform is not re-runnable in place: every run starts from a fresh
    copy of the base image, which itself is never modified.
    """

    def __init__(
        self,
        base_image_path: str,
        payload_path: str,
        output_path: str,
        growth_bytes: int,
        safety_margin: int = 0,
        runner: Optional[CommandRunner] = None,
        provisioner: Optional[GuestProvisioner] = None,
        units: Optional[Sequence[UnitDescriptor]] = None,
        inner_image: str = "ai-dev-sandbox:latest",
        mount_point: Optional[str] = None,
    ):
        """
        Initializes the transformer.

        :param base_image_path: Base rootfs image, read only.
        :param payload_path: Exported container image tar.
        :param output_path: Where the new image is written.
        :param growth_bytes: Bytes added to the base image size.
        :param safety_margin: Space required beyond the payload size.
        :param runner: Command runner for e2fsprogs and mount.
        :param provisioner: Optional chroot provisioning step.
        :param units: Boot units to install (defaults to the sandbox units).
        :param inner_image: Image reference the login hook launches.
        :param mount_point: Fixed mount point; a private temp dir when omitted.
        """
        self.base_image_path = base_image_path
        self.payload_path = payload_path
        self.output_path = output_path
        self.growth_bytes = growth_bytes
        self.safety_margin = safety_margin
        self.runner = runner or CommandRunner("inject")
        self.provisioner = provisioner
        self.units = list(units) if units is not None else default_units()
        self.inner_image = inner_image
        self.mount_point = mount_point
        self.results: List[StepResult] = []

    def check_preconditions(self) -> Tuple[DiskImage, Payload]:
        """
        Validates inputs before anything is written.

        :raises PreconditionError: If the base image or payload is missing,
            the growth cannot hold the payload, or the boot units call the
            aisandbox helper and nothing installs it.
        """
        base = DiskImage.from_path(self.base_image_path)
        payload = Payload.from_path(self.payload_path)
        self.plan(base, payload)
        needs_helper = [unit.name for unit in self.units if unit.exec_start[:1] == [HELPER_BIN]]
        if needs_helper and self.provisioner is None:
            raise PreconditionError(
                f"{', '.join(needs_helper)} run {HELPER_BIN} but no provisioner installs it; pass a source dir"
            )
        return base, payload

    def plan(self, base: DiskImage, payload: Payload) -> int:
        """Records the target size on ``base``; see ``DiskImage.plan_growth``."""
        return base.plan_growth(self.growth_bytes, payload, self.safety_margin)

    def copy_base(self, base: DiskImage) -> DiskImage:
        """Copies the base image byte for byte to the output path."""
        logger.info("Copying %s to %s", base.path, self.output_path)
        os.makedirs(os.path.dirname(os.path.abspath(self.output_path)), exist_ok=True)
        shutil.copyfile(base.path, self.output_path)
        return DiskImage(
            path=self.output_path,
            current_size=base.current_size,
            target_size=base.target_size,
        )

    def grow(self, image: DiskImage) -> None:
        """
        Extends the image file and its filesystem to ``image.target_size``.

        Filesystem check problems are logged and tolerated; a failed resize is fatal.
        """
        logger.info("Resizing %dMB to %dMB", image.current_size // MIB, image.target_size // MIB)
        os.truncate(image.path, image.target_size)
        image.current_size = image.target_size

        check = self.runner.run(["e2fsck", "-f", "-y", image.path], check=False)
        if check.returncode != 0:
            # 1 and 2 mean errors were corrected; anything else is still best effort
            logger.warning("e2fsck exited with %d on %s, continuing", check.returncode, image.path)
            self.results.append(StepResult.recoverable("e2fsck", f"exit {check.returncode}"))

        self.runner.run(["resize2fs", image.path])
        capacity = self.filesystem_bytes(image)
        if capacity is not None and capacity != image.target_size:
            logger.warning("Filesystem holds %d bytes, image file is %d", capacity, image.target_size)
        logger.info("Filesystem resized to %dMB", image.target_size // MIB)

    def filesystem_bytes(self, image: DiskImage) -> Optional[int]:
        """
        Reads the nominal filesystem capacity from the superblock.

        :return: Block count times block size, or None if it cannot be read.
        """
        result = self.runner.run(["dumpe2fs", "-h", image.path], check=False)
        fields = {}
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            fields[key.strip()] = value.strip()
        try:
            return int(fields["Block count"]) * int(fields["Block size"])
        except (KeyError, ValueError):
            return None

    def inject_payload(self, root: Path, payload: Payload) -> Path:
        """Copies the payload to its fixed location inside the mounted tree."""
        dest = root / PAYLOAD_PATH.lstrip("/")
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Copying %s into rootfs", os.path.basename(payload.path))
        shutil.copyfile(payload.path, dest)
        logger.info("Copied %dMB to %s", dest.stat().st_size // MIB, PAYLOAD_PATH)
        return dest

    def install_units(self, root: Path) -> List[Path]:
        return UnitInstaller(str(root)).install_all(self.units)

    def install_login_hook(self, root: Path) -> Path:
        """Writes the guest user's .bash_profile that launches the inner container."""
        home = root / GUEST_HOME.lstrip("/")
        home.mkdir(parents=True, exist_ok=True)
        profile = home / ".bash_profile"
        profile.write_text(render_login_hook(self.inner_image))
        try:
            os.chown(profile, GUEST_UID, GUEST_GID)
        except PermissionError:
            logger.warning("Cannot chown %s to %d:%d (not root)", profile, GUEST_UID, GUEST_GID)
        logger.info(".bash_profile patched")
        return profile

    def transform(self) -> DiskImage:
        """
        Runs the full transformation.

        :return: The finished, unmounted image.
        :raises PreconditionError: Before any mutation if inputs are missing.
        :raises MountError: If the loop mount cannot be acquired or released.
        :raises CommandError: If resize or provisioning fails; a failed resize
            removes the output image.
        """
        base, payload = self.check_preconditions()
        logger.info("Payload size %dMB", payload.size_bytes // MIB)
        logger.info("Adding %dMB to rootfs", self.growth_bytes // MIB)

        image = self.copy_base(base)
        try:
            self.grow(image)
        except Exception:
            # A partly resized image must not be mistaken for a finished one
            logger.error("Resize failed, removing %s", image.path)
            os.remove(image.path)
            raise

        with LoopMount(image, self.runner, self.mount_point) as root:
            self.inject_payload(root, payload)
            if self.provisioner is not None:
                self.results.extend(self.provisioner.provision(root))
            self.install_units(root)
            self.install_login_hook(root)

        logger.info("Injection complete at %s", image.path)
        return image
