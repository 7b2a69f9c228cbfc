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
Exception hierarchy shared by the build pipeline and the guest-side services.
"""
from typing import List, Optional


class SandboxError(Exception):
    """Base class for all aisandbox errors."""


class PreconditionError(SandboxError):
    """A required input artifact is missing or unusable. Raised before any mutation."""


class CapacityError(PreconditionError):
    """The planned image growth cannot hold the payload plus the safety margin."""


class CommandError(SandboxError):
    """
    An external command exited non-zero.
    """

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr or ""
        detail = self.stderr.strip().splitlines()[-1] if self.stderr.strip() else "no output"
        super().__init__(f"{' '.join(self.command)} exited with {returncode}: {detail}")


class MountError(SandboxError):
    """Acquiring or releasing a mount failed."""


class PolicyApplyError(SandboxError):
    """The packet filter rejected the compiled egress policy."""


class CyclicDependencyError(SandboxError):
    """Unit ordering edges contain a cycle."""


class StageError(SandboxError):
    """
    A build pipeline stage failed. Carries the stage name for user-facing reports.
    """

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        message = f"Stage '{stage}' failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
