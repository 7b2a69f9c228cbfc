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
Resolution of the environment the sandbox shell starts with.
"""
import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from ..MODELS.guest_layout import WORKSPACE_DIR
from ..PARSERS.env_parser import EnvParser

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Layers env files over the process environment.

    The default chain is the egress/secret file the host drops into the
    workspace, the project ``.env`` and finally ``~/.env`` in the home volume;
    later files override earlier ones.
    """

    def __init__(self, workspace: str = WORKSPACE_DIR, home: Optional[str] = None):
        """
        :param workspace: Shared workspace mount.
        :param home: Durable home directory (defaults to ``~``).
        """
        self.workspace = Path(workspace)
        self.home = Path(home or os.path.expanduser("~"))
        self.parser = EnvParser()

    def default_env_files(self) -> List[str]:
        return [
            str(self.workspace / ".sandbox.env"),
            str(self.workspace / ".env"),
            str(self.home / ".env"),
        ]

    def get_merged_environment(self,
                               env_files: Optional[Sequence[str]] = None,
                               explicit_env: Optional[Mapping[str, str]] = None,
                               base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges the base environment, env files and explicit values, in that order.

        :param env_files: Files to layer; missing ones are skipped. Defaults to the sandbox chain.
        :param explicit_env: Values that override everything.
        :param base_env: Starting environment (defaults to os.environ).
        :return: The merged environment.
        """
        merged = dict(os.environ if base_env is None else base_env)
        for env_file in self.default_env_files() if env_files is None else env_files:
            path = os.path.expanduser(env_file)
            if not os.path.isfile(path):
                continue
            values = self.parser.parse(path)
            logger.debug("Loaded %d variables from %s", len(values), path)
            merged.update(values)
        merged.update(explicit_env or {})
        return merged
