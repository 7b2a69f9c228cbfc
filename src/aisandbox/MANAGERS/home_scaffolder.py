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
Home directory scaffolding for the inner container's first run.
"""
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import CommandError
from ..MODELS.guest_layout import WORKSPACE_DIR
from ..MODELS.step_result import StepResult
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)

HOME_DIRS = [
    ".config",
    ".cache",
    ".local/bin",
    ".npm-global/bin",
    "go/bin",
    "go/pkg",
    "go/src",
    ".cargo/bin",
]


class HomeScaffolder:
    """
    Creates the expected home layout and merges bind-mounted host credentials.

    Credentials are merged, never synced: files already present in the home
    volume win over the host copies.
    """

    def __init__(self, home: str, workspace: str = WORKSPACE_DIR, runner: Optional[CommandRunner] = None):
        """
        :param home: The durable home directory (a named volume in practice).
        :param workspace: Shared workspace mount.
        :param runner: Command runner for tool configuration commands.
        """
        self.home = Path(home)
        self.workspace = Path(workspace)
        self.runner = runner or CommandRunner("setup")

    def scaffold(self) -> List[StepResult]:
        """
        Runs every scaffolding step. Filesystem errors become recoverable
        results so the first run always reaches the ready marker.
        """
        logger.info("Setting up home directory...")
        results = [
            self.guarded("home-dirs", self.create_dirs),
            self.guarded("ssh-keys", self.merge_ssh_keys),
            self.guarded("gitconfig", self.merge_file,
                         self.home / ".gitconfig.host", self.home / ".gitconfig", "gitconfig"),
            self.configure_npm_prefix(),
            self.guarded("sandbox-env", self.copy_sandbox_env),
        ]
        logger.info("Home directory setup complete")
        return results

    def guarded(self, name: str, step: Callable[..., StepResult], *args) -> StepResult:
        try:
            return step(*args)
        except OSError as e:
            logger.warning("%s failed: %s", name, e)
            return StepResult.recoverable(name, str(e), e)

    def create_dirs(self) -> StepResult:
        for sub in HOME_DIRS:
            (self.home / sub).mkdir(parents=True, exist_ok=True)
        return StepResult.success("home-dirs")

    def merge_ssh_keys(self) -> StepResult:
        """
        Copies keys from the read-only ``~/.ssh.host`` mount into ``~/.ssh``
        without overwriting, then tightens permissions.
        """
        source = self.home / ".ssh.host"
        if not source.is_dir():
            return StepResult.skipped("ssh-keys", "no ~/.ssh.host")
        target = self.home / ".ssh"
        target.mkdir(exist_ok=True)
        copied = 0
        for entry in sorted(source.iterdir()):
            dest = target / entry.name
            if entry.is_file() and not dest.exists():
                shutil.copy2(entry, dest)
                copied += 1
        os.chmod(target, 0o700)
        for entry in target.iterdir():
            if entry.is_file():
                os.chmod(entry, 0o600)
        logger.info("SSH keys configured (%d new)", copied)
        return StepResult.success("ssh-keys", f"{copied} copied")

    def merge_file(self, source: Path, dest: Path, name: str) -> StepResult:
        if not source.is_file():
            return StepResult.skipped(name, f"no {source.name}")
        if dest.exists():
            return StepResult.skipped(name, f"{dest.name} already present")
        shutil.copy2(source, dest)
        logger.info("%s configured", name)
        return StepResult.success(name)

    def configure_npm_prefix(self) -> StepResult:
        """Points the npm global prefix into the home volume so installs survive restarts."""
        prefix = str(self.home / ".npm-global")
        try:
            self.runner.run(["npm", "config", "set", "prefix", prefix], timeout=30)
        except CommandError as e:
            logger.warning("Could not set npm prefix: %s", e)
            return StepResult.recoverable("npm-prefix", str(e), e)
        return StepResult.success("npm-prefix", prefix)

    def copy_sandbox_env(self) -> StepResult:
        source = self.workspace / ".sandbox.env"
        if not source.is_file():
            return StepResult.skipped("sandbox-env")
        shutil.copyfile(source, self.home / ".env")
        return StepResult.success("sandbox-env")

    def preseed_tool_config(self) -> StepResult:
        """
        Writes a default theme for the claude CLI so its first start does not
        block on the interactive theme picker.
        """
        settings = self.home / ".claude" / "settings.json"
        if settings.exists():
            return StepResult.skipped("claude-settings", "already present")
        settings.parent.mkdir(parents=True, exist_ok=True)
        settings.write_text(json.dumps({"theme": "dark"}) + "\n")
        return StepResult.success("claude-settings")
