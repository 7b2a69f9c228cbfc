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
Execution of external commands (docker, e2fsprogs, mount, chroot, iptables).
"""
import logging
import subprocess
from typing import Dict, List, Optional, Union

from ..errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """
    Runs one external command at a time and raises on failure.

    Every privileged or destructive operation goes through this class so a
    test harness can substitute a recording fake.
    """

    def __init__(self, name: str = "run", dry_run: bool = False):
        """
        Initializes the command runner.

        Args:
            name (str): Prefix used in log lines.
            dry_run (bool): Log commands instead of executing them.
        """
        self.name = name
        self.dry_run = dry_run

    def run(
        self,
        command: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        stdin_path: Optional[str] = None,
        capture: bool = True,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """
        Runs a command to completion.

        Args:
            command (List[str]): Command and arguments to execute.
            check (bool): Raise CommandError on a non-zero exit.
            timeout (Optional[float]): Seconds before the command is killed.
            input_text (Optional[str]): Text fed to stdin.
            stdin_path (Optional[str]): File fed to stdin.
            capture (bool): Capture stdout/stderr instead of inheriting them.
            cwd (Optional[str]): Working directory.
            env (Optional[Dict[str, str]]): Full environment for the process.

        Returns:
            subprocess.CompletedProcess: The finished process.

        Raises:
            CommandError: If ``check`` is set and the command fails, or it
                cannot be started at all.
        """
        command = [str(part) for part in command]
        logger.debug("[%s] %s", self.name, " ".join(command))
        if self.dry_run:
            return subprocess.CompletedProcess(command, 0, "", "")

        stdin_handle = open(stdin_path, "rb") if stdin_path else None
        try:
            result = subprocess.run(
                command,
                input=input_text.encode() if input_text is not None else None,
                stdin=stdin_handle,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE if capture else None,
                cwd=cwd,
                env=env,
                timeout=timeout,
                # Avoid shell=True for security reasons (CWE-78)
                shell=False,
            )
        except FileNotFoundError as e:
            raise CommandError(command, 127, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(command, -1, f"timed out after {timeout}s") from e
        finally:
            if stdin_handle:
                stdin_handle.close()

        stdout = _decode(result.stdout)
        stderr = _decode(result.stderr)
        completed = subprocess.CompletedProcess(command, result.returncode, stdout, stderr)
        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, stderr or stdout)
        return completed

    def run_shell(self, script: str, check: bool = True, timeout: Optional[float] = None,
                  env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        """
        Runs a shell pipeline this package owns (installer one-liners).
        Never pass user input here.
        """
        return self.run(["/bin/bash", "-c", script], check=check, timeout=timeout, env=env)


def _decode(data: Union[bytes, str, None]) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
