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
First-run initialization of the inner container.

On the first start with a fresh home volume the home directory is scaffolded
and the AI CLI tools are installed; a marker in the home volume makes every
later start skip straight to the shell.
"""
import logging
import os
import shutil
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from ..errors import CommandError, PreconditionError
from ..MODELS.guest_layout import INIT_MARKER_NAME, WORKSPACE_DIR
from ..MODELS.marker import FileMarker, Marker
from ..MODELS.step_result import StepResult
from ..RUNNERS.process_runner import CommandRunner
from ..UTILS.banner import render_banner
from .environment_manager import EnvironmentManager
from .home_scaffolder import HomeScaffolder
from .probes import HostLLMProbe, VoiceProbe

logger = logging.getLogger(__name__)


class InitState(str, Enum):
    """Lifecycle of the sandbox home."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


@dataclass
class ToolInstallTask:
    """
    An idempotent, non-fatal tool installation.

    Tasks sharing a ``group`` touch the same global install namespace (the npm
    prefix) and run one after another; ungrouped tasks run concurrently.
    """

    name: str
    binary: str
    install_command: List[str]
    group: Optional[str] = None
    timeout: float = 900.0
    log_dir: str = "/tmp"

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def run(self, runner: CommandRunner) -> StepResult:
        """
        Installs the tool unless it is already on PATH. Failures are logged
        and reported, never raised.
        """
        if self.is_installed():
            logger.info("%s: already installed", self.name)
            return StepResult.skipped(self.name, "already installed")

        logger.info("Installing %s...", self.name)
        try:
            runner.run(self.install_command, timeout=self.timeout)
        except CommandError as e:
            log_path = os.path.join(self.log_dir, f"{self.binary}-install.log")
            try:
                with open(log_path, "w") as f:
                    f.write(e.stderr)
            except OSError:
                log_path = "no log"
            logger.warning("%s install failed (check %s)", self.name, log_path)
            return StepResult.recoverable(self.name, str(e), e)
        logger.info("%s installed", self.name)
        return StepResult.success(self.name)


def default_tasks() -> List[ToolInstallTask]:
    return [
        ToolInstallTask("Claude CLI", "claude", ["npm", "install", "-g", "@anthropic-ai/claude-code"], group="npm"),
        ToolInstallTask("Gemini CLI", "gemini", ["npm", "install", "-g", "@google/gemini-cli"], group="npm"),
        ToolInstallTask(
            "OpenCode",
            "opencode",
            ["/bin/bash", "-c", "curl -fsSL --max-time 300 https://opencode.ai/install | bash"],
        ),
        ToolInstallTask(
            "ChatGPT CLI", "chatgpt", ["go", "install", "github.com/kardolus/chatgpt-cli/cmd/chatgpt@latest"]
        ),
    ]


class SandboxInitializer:
    """
    uninitialized -> initializing -> ready, exactly once per home volume.
    """

    def __init__(
        self,
        home: str,
        marker: Optional[Marker] = None,
        tasks: Optional[Sequence[ToolInstallTask]] = None,
        scaffolder: Optional[HomeScaffolder] = None,
        probes: Optional[Sequence[Callable[[], StepResult]]] = None,
        runner: Optional[CommandRunner] = None,
        workspace: str = WORKSPACE_DIR,
        max_workers: int = 4,
    ):
        """
        Initializes the state machine.

        :param home: Durable home directory holding the marker.
        :param marker: Ready marker (``~/.sandbox_initialized`` by default).
        :param tasks: Tool installs to run on first start.
        :param scaffolder: Home directory setup step.
        :param probes: Informational checks run after the installs.
        :param runner: Command runner handed to the install tasks.
        :param workspace: Shared workspace mount; the shell starts there.
        :param max_workers: Upper bound on concurrently running install lanes.
        """
        self.home = Path(home)
        self.marker = marker or FileMarker(self.home / INIT_MARKER_NAME)
        self.tasks = list(tasks) if tasks is not None else default_tasks()
        self.runner = runner or CommandRunner("install")
        self.scaffolder = scaffolder or HomeScaffolder(str(self.home), workspace, self.runner)
        self.probes = list(probes) if probes is not None else [VoiceProbe(str(self.home)), HostLLMProbe()]
        self.workspace = workspace
        self.max_workers = max_workers
        self._state = InitState.UNINITIALIZED

    @property
    def state(self) -> InitState:
        if self.marker.is_ready():
            return InitState.READY
        return self._state

    def initialize(self) -> List[StepResult]:
        """
        Runs first-run setup unless the marker says it already happened.

        The marker is written once every step reached a terminal state,
        whatever the individual outcomes.

        :return: Results of all steps, empty when already ready.
        """
        if self.marker.is_ready():
            return []

        logger.info("Initializing AI Sandbox (first run)...")
        self._state = InitState.INITIALIZING

        results = list(self.scaffolder.scaffold())
        results.extend(self.run_tasks())
        results.append(self.scaffolder.guarded("claude-settings", self.scaffolder.preseed_tool_config))
        for probe in self.probes:
            try:
                results.append(probe())
            except Exception as e:
                logger.warning("Probe failed: %s", e)
                results.append(StepResult.recoverable(getattr(probe, "__name__", type(probe).__name__), str(e), e))

        self.marker.mark_ready()
        self._state = InitState.READY
        failed = [r.name for r in results if r.failed]
        if failed:
            logger.warning("Initialization complete with failures: %s", ", ".join(failed))
        else:
            logger.info("Initialization complete")
        return results

    def _lanes(self) -> List[List[ToolInstallTask]]:
        grouped: Dict[str, List[ToolInstallTask]] = OrderedDict()
        lanes: List[List[ToolInstallTask]] = []
        for task in self.tasks:
            if task.group is None:
                lanes.append([task])
            elif task.group in grouped:
                grouped[task.group].append(task)
            else:
                grouped[task.group] = [task]
                lanes.append(grouped[task.group])
        return lanes

    def _run_lane(self, lane: List[ToolInstallTask]) -> List[StepResult]:
        results = []
        for task in lane:
            try:
                results.append(task.run(self.runner))
            except Exception as e:
                # A broken task must not stop its lane or the join
                logger.warning("%s install crashed: %s", task.name, e)
                results.append(StepResult.recoverable(task.name, str(e), e))
        return results

    def run_tasks(self) -> List[StepResult]:
        """
        Runs all install lanes in a bounded thread pool and waits for every
        one of them. Never short-circuits on a failed task.
        """
        lanes = self._lanes()
        if not lanes:
            return []
        workers = max(1, min(self.max_workers, len(lanes)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="install") as pool:
            futures = [pool.submit(self._run_lane, lane) for lane in lanes]
            results: List[StepResult] = []
            for future in futures:
                results.extend(future.result())
        return results

    def start(
        self,
        command: Sequence[str] = (),
        env_files: Optional[Sequence[str]] = None,
        exec_fn: Callable[[str, List[str], Mapping[str, str]], None] = os.execvpe,
        allow_root: bool = False,
    ) -> None:
        """
        Container entrypoint: initialize if needed, print the banner, then
        replace this process with ``command`` or an interactive shell.

        :param command: Command to run; ``/bin/bash`` when empty.
        :param env_files: Env files merged into the environment first.
        :param exec_fn: Process replacement function.
        :param allow_root: Skip the non-root check.
        :raises PreconditionError: When started as root.
        """
        if not allow_root and os.geteuid() == 0:
            raise PreconditionError("Refusing to run as root. Use the sandbox user.")

        environment = EnvironmentManager(self.workspace, str(self.home))
        os.environ.update(environment.get_merged_environment(env_files))

        self.initialize()

        if os.path.isdir(self.workspace):
            os.chdir(self.workspace)
        print(render_banner())

        argv = list(command) or ["/bin/bash"]
        exec_fn(argv[0], argv, dict(os.environ))
