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
Presence-only durable facts ("payload loaded", "sandbox initialized").

Components receive a marker object instead of touching marker files directly,
so the state machines can be driven from tests without a real filesystem.
"""
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Union


class Marker(ABC):
    """
    A single boolean fact with an ``is_ready`` / ``mark_ready`` capability pair.
    """

    @abstractmethod
    def is_ready(self) -> bool:
        """Return True once the fact has been recorded."""

    @abstractmethod
    def mark_ready(self) -> None:
        """Record the fact. Must be idempotent."""


class FileMarker(Marker):
    """
    Marker backed by the existence of a file. The file content is irrelevant.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def is_ready(self) -> bool:
        return self.path.exists()

    def mark_ready(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def __repr__(self) -> str:
        return f"FileMarker({str(self.path)!r})"


class MemoryMarker(Marker):
    """In-process marker, used where no durable state is wanted."""

    def __init__(self, ready: bool = False):
        self._ready = ready
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def mark_ready(self) -> None:
        with self._lock:
            self._ready = True
