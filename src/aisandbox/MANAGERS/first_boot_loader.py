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
First-boot loading of the baked-in payload into the guest's docker daemon.
"""
import logging
import os
from typing import Optional

from ..errors import PreconditionError
from ..MODELS.guest_layout import LOADED_MARKER, PAYLOAD_PATH
from ..MODELS.marker import FileMarker, Marker
from ..MODELS.step_result import StepResult
from ..RUNNERS.container_runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class FirstBootLoader:
    """
    Two-state machine: pending (marker absent) and loaded (marker present).

    The marker is written only after a successful import, so a crash in
    between re-imports on the next boot. ``docker load`` of the same archive
    is a no-op duplicate, which makes at-least-once invocation safe.
    """

    def __init__(
        self,
        payload_path: str = PAYLOAD_PATH,
        marker: Optional[Marker] = None,
        runtime: Optional[ContainerRuntime] = None,
        daemon_timeout: float = 60.0,
    ):
        """
        Initializes the loader.

        :param payload_path: Payload tar inside the guest.
        :param marker: Records that the payload was loaded.
        :param runtime: Guest container runtime.
        :param daemon_timeout: Seconds to wait for the docker daemon.
        """
        self.payload_path = payload_path
        self.marker = marker or FileMarker(LOADED_MARKER)
        self.runtime = runtime or ContainerRuntime()
        self.daemon_timeout = daemon_timeout

    @property
    def state(self) -> str:
        return "loaded" if self.marker.is_ready() else "pending"

    def run(self) -> StepResult:
        """
        Performs the pending -> loaded transition if it has not happened yet.

        :return: ``skipped`` when already loaded, ``success`` after an import.
        :raises PreconditionError: If the payload file is missing.
        :raises CommandError: If the daemon is unreachable or the import fails.
        """
        if self.marker.is_ready():
            logger.info("Image already loaded, skipping")
            return StepResult.skipped("first-boot-load", "marker present")

        if not os.path.isfile(self.payload_path):
            raise PreconditionError(f"{self.payload_path} not found")

        logger.info("Loading docker image from %s", self.payload_path)
        self.runtime.wait_until_ready(timeout=self.daemon_timeout)
        report = self.runtime.load(self.payload_path)

        self.marker.mark_ready()
        logger.info("Done: %s", report or "image loaded")
        return StepResult.success("first-boot-load", report)
