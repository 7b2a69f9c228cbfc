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
Tagged results threaded through the build pipeline and the first-run sequence.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StepOutcome(str, Enum):
    """
    Terminal state of a single step.
    """

    SUCCESS = "success"
    SKIPPED = "skipped"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass
class StepResult:
    """Outcome of one pipeline stage, boot task or install task."""

    name: str
    outcome: StepOutcome
    detail: str = ""
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """True unless the step failed fatally."""
        return self.outcome != StepOutcome.FATAL

    @property
    def failed(self) -> bool:
        return self.outcome in (StepOutcome.RECOVERABLE, StepOutcome.FATAL)

    @classmethod
    def success(cls, name: str, detail: str = "") -> "StepResult":
        return cls(name, StepOutcome.SUCCESS, detail)

    @classmethod
    def skipped(cls, name: str, detail: str = "") -> "StepResult":
        return cls(name, StepOutcome.SKIPPED, detail)

    @classmethod
    def recoverable(cls, name: str, detail: str = "", error: Optional[BaseException] = None) -> "StepResult":
        return cls(name, StepOutcome.RECOVERABLE, detail, error)

    @classmethod
    def fatal(cls, name: str, detail: str = "", error: Optional[BaseException] = None) -> "StepResult":
        return cls(name, StepOutcome.FATAL, detail, error)
