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
Optional subsystem probes run at the end of first-run initialization.
Their findings are informational only.
"""
import json
import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Sequence
from urllib.error import URLError
from urllib.request import urlopen

from ..errors import CommandError
from ..MODELS.step_result import StepResult
from ..RUNNERS.process_runner import CommandRunner

logger = logging.getLogger(__name__)

VOICE_SCRIPTS = ("stt", "tts", "voice")


class VoiceProbe:
    """
    Links the voice scripts into ``~/.local/bin`` and checks for a PulseAudio
    server. Without audio the scripts stay installed and warn on use.
    """

    def __init__(self, home: str, scripts_dir: str = "/opt/scripts",
                 runner: Optional[CommandRunner] = None, scripts: Sequence[str] = VOICE_SCRIPTS):
        self.home = Path(home)
        self.scripts_dir = Path(scripts_dir)
        self.runner = runner or CommandRunner("voice")
        self.scripts = scripts

    def link_scripts(self) -> int:
        bin_dir = self.home / ".local" / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        linked = 0
        for name in self.scripts:
            source = self.scripts_dir / name
            if not source.exists():
                continue
            link = bin_dir / name
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(source)
            linked += 1
        return linked

    def __call__(self) -> StepResult:
        self.link_scripts()
        try:
            self.runner.run(["pactl", "info"], timeout=5)
        except CommandError:
            logger.warning("Voice mode: no audio detected, stt/tts/voice will be skipped gracefully")
            logger.warning('  To enable, on the host run: pactl load-module module-native-protocol-tcp '
                           'auth-ip-acl="127.0.0.1;172.16.0.0/24" auth-anonymous=1')
            return StepResult.skipped("voice", "no PulseAudio server")
        logger.info("Voice mode: PulseAudio connected (stt / tts / voice ready)")
        return StepResult.success("voice")


class HostLLMProbe:
    """
    Checks whether the host-local LLM server named by ``OLLAMA_HOST`` answers.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, timeout: float = 3.0):
        self.environ = environ
        self.timeout = timeout

    def list_models(self, host: str) -> Sequence[str]:
        with urlopen(f"{host.rstrip('/')}/api/tags", timeout=self.timeout) as response:
            data = json.loads(response.read().decode("utf-8") or "{}")
        return [model.get("name", "?") for model in data.get("models", [])]

    def __call__(self) -> StepResult:
        environ = os.environ if self.environ is None else self.environ
        host = environ.get("OLLAMA_HOST", "")
        if not host:
            logger.warning("OLLAMA_HOST is not set")
            return StepResult.skipped("host-llm", "OLLAMA_HOST not set")
        if "://" not in host:
            host = f"http://{host}"
        try:
            models = self.list_models(host)
        except (URLError, OSError, ValueError) as e:
            logger.warning("OPTIONAL - Ollama: cannot reach %s (%s)", host, e)
            return StepResult.skipped("host-llm", f"unreachable: {host}")
        shown = " ".join(models[:3]) or "no models"
        logger.info("Ollama: connected at %s (%s)", host, shown)
        return StepResult.success("host-llm", shown)
