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
Thin wrapper over the docker CLI, used both on the build host and inside the guest.
"""
import logging
from typing import List, Optional

from tenacity import retry_if_exception_type, stop_after_delay, wait_fixed, Retrying

from ..errors import CommandError
from .process_runner import CommandRunner

logger = logging.getLogger(__name__)


class ContainerRuntime:
    """
    Image-level operations on a docker daemon.
    """

    def __init__(self, runner: Optional[CommandRunner] = None, docker_bin: str = "docker"):
        """
        Initializes the runtime wrapper.

        :param runner: Command runner used for every docker invocation.
        :param docker_bin: The docker executable.
        """
        self.runner = runner or CommandRunner("docker")
        self.docker_bin = docker_bin

    def _docker(self, *args: str, **kwargs):
        return self.runner.run([self.docker_bin, *args], **kwargs)

    def image_exists(self, reference: str) -> bool:
        """Checks whether an image is present in the local daemon."""
        result = self._docker("image", "inspect", reference, check=False)
        return result.returncode == 0

    def wait_until_ready(self, timeout: float = 60.0, interval: float = 2.0) -> None:
        """
        Blocks until the daemon answers ``docker info``.

        :raises CommandError: If the daemon is still unreachable after ``timeout``.
        """
        for attempt in Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(interval),
            retry=retry_if_exception_type(CommandError),
            reraise=True,
        ):
            with attempt:
                self._docker("info")

    def load(self, archive_path: str, timeout: Optional[float] = None) -> str:
        """
        Imports an image archive. Loading the same archive twice leaves a single image.

        :return: The daemon's report, e.g. ``Loaded image: name:tag``.
        """
        result = self._docker("load", "-i", archive_path, timeout=timeout)
        return result.stdout.strip()

    def build(self, dockerfile: str, tag: str, context_dir: str) -> None:
        self._docker("build", "--progress=plain", "-f", dockerfile, "-t", tag, context_dir, capture=False)

    def save(self, reference: str, output_path: str) -> None:
        self._docker("save", reference, "-o", output_path)

    def copy_from_image(self, reference: str, source_path: str, output_path: str) -> None:
        """
        Copies a single file out of an image through a throwaway container.
        The container is removed on every exit path.
        """
        container_id = self._docker("create", reference, "/bin/true").stdout.strip()
        try:
            self._docker("cp", f"{container_id}:{source_path}", output_path)
        finally:
            self._docker("rm", container_id, check=False)

    def run_container(self, args: List[str], image: str, command: List[str]) -> None:
        """Runs a foreground ``docker run --rm`` with the given options."""
        self._docker("run", "--rm", *args, image, *command, capture=False)
