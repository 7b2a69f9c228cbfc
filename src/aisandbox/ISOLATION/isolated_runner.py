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
Runs the rootfs injection step inside a throwaway privileged container.

Loop mounting needs CAP_SYS_ADMIN; confining it to a disposable container
keeps the elevated privilege away from the build host's own tree.
"""
import logging
import shlex
from dataclasses import dataclass
from typing import List, Optional

from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)

CONTAINER_BUILD_DIR = "/build"
CONTAINER_SOURCE_DIR = "/src"
CONTAINER_WORK_SOURCE = "/tmp/aisandbox-src"


@dataclass
class IsolationConfig:
    """Configuration for the privileged injection container."""

    build_dir: str
    source_dir: str
    image: str = "python:3.12-slim"
    extra_mb: int = 6144
    safety_margin_mb: int = 256
    inner_image: str = "ai-dev-sandbox:latest"
    ssh_password: str = "sandbox"


class IsolatedRunner:
    """
    Launches ``aisandbox inject`` in a ``--privileged`` container with the
    build directory mounted read-write and the project source read-only.
    """

    def __init__(self, name: str, config: IsolationConfig, runtime: Optional[ContainerRuntime] = None):
        """
        Initialize the isolated runner.

        Args:
            name: Identifier used in log lines.
            config: Isolation configuration.
            runtime: Docker wrapper used to start the container.
        """
        self.name = name
        self.config = config
        self.runtime = runtime or ContainerRuntime()

    def docker_args(self) -> List[str]:
        """Options passed to ``docker run``."""
        return [
            "--privileged",
            "-v", f"{self.config.build_dir}:{CONTAINER_BUILD_DIR}",
            "-v", f"{self.config.source_dir}:{CONTAINER_SOURCE_DIR}:ro",
            "-e", f"AI_SANDBOX_ROOTFS_EXTRA_MB={self.config.extra_mb}",
        ]

    def bootstrap_script(self) -> str:
        """
        Shell run inside the container: tooling, this package, then the inject command.
        """
        inject = [
            "aisandbox", "inject",
            "--build-dir", CONTAINER_BUILD_DIR,
            "--source-dir", CONTAINER_WORK_SOURCE,
            "--extra-mb", str(self.config.extra_mb),
            "--safety-margin-mb", str(self.config.safety_margin_mb),
            "--inner-image", self.config.inner_image,
            "--ssh-password", self.config.ssh_password,
        ]
        return "\n".join([
            "set -e",
            "apt-get update -qq",
            "apt-get install -y -qq e2fsprogs >/dev/null 2>&1",
            # pip builds in-tree, so work from a writable copy of the read-only mount
            f"cp -r {CONTAINER_SOURCE_DIR} {CONTAINER_WORK_SOURCE}",
            f"pip install --quiet {CONTAINER_WORK_SOURCE}",
            " ".join(shlex.quote(part) for part in inject),
        ])

    def run(self) -> None:
        """
        Runs the injection to completion.

        Raises:
            CommandError: If the container exits non-zero.
        """
        logger.info("[%s] Starting privileged container from %s", self.name, self.config.image)
        self.runtime.run_container(self.docker_args(), self.config.image, ["bash", "-c", self.bootstrap_script()])
