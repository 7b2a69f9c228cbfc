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
Sequences the sandbox build: inner image, payload export, base rootfs
extraction, privileged injection and host image finalization.
"""
import logging
import os
import shutil
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import PreconditionError, SandboxError, StageError
from ..ISOLATION.isolated_runner import IsolatedRunner, IsolationConfig
from ..MODELS.build_config import BuildConfig
from ..MODELS.disk_image import MIB
from ..MODELS.step_result import StepResult
from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """
    Pipeline stages in execution order.
    """

    INNER = "inner"
    EXPORT = "export"
    EXTRACT = "extract"
    INJECT = "inject"
    HOST = "host"


ALL_STAGES: Tuple[Stage, ...] = tuple(Stage)

BUILD_MODES: Dict[str, Tuple[Stage, ...]] = {
    "full": ALL_STAGES,
    "clean": ALL_STAGES,
    "payload-only": (Stage.INNER,),
    "inner-only": (Stage.INNER,),
    "inject-only": (Stage.INJECT,),
    "finalize-only": (Stage.HOST,),
    "host-only": (Stage.HOST,),
}


class BuildPipeline:
    """
    Runs a subset of the build stages, always in pipeline order.

    Every stage reads and writes artifacts under ``config.build_dir`` so a
    later invocation can resume from any stage.
    """

    def __init__(
        self,
        config: BuildConfig,
        runtime: Optional[ContainerRuntime] = None,
        injector: Optional[IsolatedRunner] = None,
    ):
        """
        Initializes the pipeline.

        :param config: Resolved build configuration.
        :param runtime: Docker wrapper on the build host.
        :param injector: Runner for the privileged inject stage.
        """
        self.config = config
        self.runtime = runtime or ContainerRuntime()
        self.injector = injector or IsolatedRunner(
            "inject",
            IsolationConfig(
                build_dir=config.build_dir,
                source_dir=config.project_dir,
                image=config.privileged_image,
                extra_mb=config.extra_mb,
                safety_margin_mb=config.safety_margin_mb,
                inner_image=config.inner_image,
                ssh_password=config.ssh_password,
            ),
            self.runtime,
        )
        self._handlers: Dict[Stage, Callable[[], str]] = {
            Stage.INNER: self.build_inner_image,
            Stage.EXPORT: self.export_inner_image,
            Stage.EXTRACT: self.extract_base_rootfs,
            Stage.INJECT: self.inject,
            Stage.HOST: self.build_host_image,
        }

    @staticmethod
    def stages_for(mode: str) -> Tuple[Stage, ...]:
        """
        :raises ValueError: For an unknown mode.
        """
        try:
            return BUILD_MODES[mode]
        except KeyError:
            raise ValueError(f"Unknown build mode: {mode}") from None

    def run(self, mode: str = "full") -> List[StepResult]:
        """
        Runs the stages selected by ``mode``.

        :return: One result per executed stage.
        :raises StageError: On the first failing stage; later stages do not run.
        """
        stages = self.stages_for(mode)
        if mode == "clean":
            self.clean()

        try:
            self.preflight()
            os.makedirs(self.config.build_dir, exist_ok=True)
        except (SandboxError, OSError) as e:
            raise StageError("preflight", e) from e

        results = []
        total = len(ALL_STAGES)
        for stage in stages:
            logger.info("Step %d/%d: %s", ALL_STAGES.index(stage) + 1, total, stage.value)
            try:
                detail = self._handlers[stage]()
            except (SandboxError, OSError) as e:
                logger.error("Stage %s failed: %s", stage.value, e)
                raise StageError(stage.value, e) from e
            logger.info(detail)
            results.append(StepResult.success(stage.value, detail))
        return results

    def clean(self) -> None:
        if os.path.isdir(self.config.build_dir):
            logger.info("Removing %s", self.config.build_dir)
            shutil.rmtree(self.config.build_dir)

    def preflight(self) -> None:
        if not self.runtime.image_exists(self.config.base_image):
            raise PreconditionError(
                f"Base image not found: {self.config.base_image}. Build firecracker-base first."
            )
        logger.info("Base image found: %s", self.config.base_image)

    def build_inner_image(self) -> str:
        dockerfile = os.path.join(self.config.project_dir, self.config.dockerfile)
        self.runtime.build(dockerfile, self.config.inner_image, self.config.project_dir)
        return f"Inner image built: {self.config.inner_image}"

    def export_inner_image(self) -> str:
        self.runtime.save(self.config.inner_image, self.config.payload_path)
        return f"Saved {self.config.payload_path} ({_size_mb(self.config.payload_path)}MB)"

    def extract_base_rootfs(self) -> str:
        self.runtime.copy_from_image(
            self.config.base_image, self.config.base_rootfs_path, self.config.base_ext4_path
        )
        return f"Extracted base.ext4 ({_size_mb(self.config.base_ext4_path)}MB)"

    def inject(self) -> str:
        for required in (self.config.base_ext4_path, self.config.payload_path):
            if not os.path.isfile(required):
                raise PreconditionError(f"{required} not found; run the earlier stages first")
        self.injector.run()
        if not os.path.isfile(self.config.output_ext4_path):
            raise PreconditionError(f"Injection produced no image at {self.config.output_ext4_path}")
        return f"Injection complete: {self.config.output_ext4_path} ({_size_mb(self.config.output_ext4_path)}MB)"

    def build_host_image(self) -> str:
        if not os.path.isfile(self.config.output_ext4_path):
            raise PreconditionError(f"{self.config.output_ext4_path} not found; run inject first")
        dockerfile = os.path.join(self.config.project_dir, self.config.host_dockerfile)
        self.runtime.build(dockerfile, self.config.host_image, self.config.project_dir)
        return f"Host image built: {self.config.host_image}"


def _size_mb(path: str) -> int:
    return os.path.getsize(path) // MIB if os.path.exists(path) else 0
