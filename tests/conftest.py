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
Shared fakes for the command runner and the container runtime.
"""
import subprocess

import pytest

from aisandbox.errors import CommandError
from aisandbox.RUNNERS.container_runtime import ContainerRuntime
from aisandbox.RUNNERS.process_runner import CommandRunner


class FakeRunner(CommandRunner):
    """
    Records commands instead of executing them.

    ``failures`` maps a program name to the exit code it returns, ``outputs``
    maps a program name to its stdout.
    """

    def __init__(self, failures=None, outputs=None):
        super().__init__("fake")
        self.failures = dict(failures or {})
        self.outputs = dict(outputs or {})
        self.commands = []
        self.inputs = []

    def run(self, command, check=True, timeout=None, input_text=None, stdin_path=None,
            capture=True, cwd=None, env=None):
        command = [str(part) for part in command]
        self.commands.append(command)
        self.inputs.append(input_text)
        returncode = self.failures.get(command[0], 0)
        stdout = self.outputs.get(command[0], "")
        stderr = "boom" if returncode else ""
        if check and returncode != 0:
            raise CommandError(command, returncode, stderr)
        return subprocess.CompletedProcess(command, returncode, stdout, stderr)

    def programs(self):
        return [command[0] for command in self.commands]


class FakeRuntime(ContainerRuntime):
    """In-memory docker daemon. Loading the same archive twice keeps one image."""

    def __init__(self, images=()):
        super().__init__(FakeRunner())
        self.images = set(images)
        self.loads = 0
        self.waits = 0
        self.built = []
        self.containers = []

    def image_exists(self, reference):
        return reference in self.images

    def wait_until_ready(self, timeout=60.0, interval=2.0):
        self.waits += 1

    def load(self, archive_path, timeout=None):
        self.loads += 1
        self.images.add(f"loaded:{archive_path}")
        return f"Loaded image: {archive_path}"

    def build(self, dockerfile, tag, context_dir):
        self.built.append(tag)
        self.images.add(tag)

    def save(self, reference, output_path):
        with open(output_path, "wb") as f:
            f.write(b"payload")

    def copy_from_image(self, reference, source_path, output_path):
        with open(output_path, "wb") as f:
            f.truncate(1024 * 1024)

    def run_container(self, args, image, command):
        self.containers.append((args, image, command))


@pytest.fixture
def runner():
    return FakeRunner()
