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
Build-time configuration for the image assembly pipeline.

Values resolve in order: defaults, an optional YAML file, environment
variables, explicit overrides (CLI options).
"""
import os
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .disk_image import MIB

ENV_OVERRIDES = {
    "INNER_IMAGE": "inner_image",
    "HOST_IMAGE": "host_image",
    "FC_BASE_IMAGE": "base_image",
    "FC_BASE_ROOTFS_PATH": "base_rootfs_path",
    "AI_SANDBOX_ROOTFS_EXTRA_MB": "extra_mb",
    "AI_SANDBOX_PRIVILEGED_IMAGE": "privileged_image",
}


class BuildConfig(BaseModel):
    """
    Settings for one pipeline invocation.
    """

    inner_image: str = "ai-dev-sandbox:latest"
    host_image: str = "ai-dev-sandbox-host:latest"
    base_image: str = "firecracker-base:latest"
    base_rootfs_path: str = "/var/lib/firecracker/rootfs/base.ext4"

    # Extra space added to the rootfs for the payload tar plus runtime metadata
    extra_mb: int = Field(default=6144, ge=0)
    safety_margin_mb: int = Field(default=256, ge=0)

    project_dir: str = "."
    build_dir: Optional[str] = None
    dockerfile: str = "Dockerfile"
    host_dockerfile: str = "Dockerfile.host"

    # Throwaway container the loop mount runs in
    privileged_image: str = "python:3.12-slim"
    ssh_password: str = "sandbox"

    @model_validator(mode="after")
    def _resolve_paths(self) -> "BuildConfig":
        self.project_dir = os.path.abspath(self.project_dir)
        if not self.build_dir:
            self.build_dir = os.path.join(self.project_dir, ".build")
        self.build_dir = os.path.abspath(self.build_dir)
        return self

    @property
    def extra_bytes(self) -> int:
        return self.extra_mb * MIB

    @property
    def safety_margin_bytes(self) -> int:
        return self.safety_margin_mb * MIB

    @property
    def payload_path(self) -> str:
        return os.path.join(self.build_dir, "ai-dev-sandbox.tar")

    @property
    def base_ext4_path(self) -> str:
        return os.path.join(self.build_dir, "base.ext4")

    @property
    def output_ext4_path(self) -> str:
        return os.path.join(self.build_dir, "ai-dev-sandbox.ext4")

    @classmethod
    def load(
        cls,
        config_file: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "BuildConfig":
        """
        Resolves a configuration from all sources.

        :param config_file: Optional YAML file with top-level keys matching field names.
        :param environ: Environment to read overrides from (defaults to os.environ).
        :param overrides: Explicit values; ``None`` entries are ignored.
        :return: The resolved configuration.
        """
        values: Dict[str, Any] = {}

        if config_file and os.path.exists(config_file):
            with open(config_file, "r") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{config_file} must contain a mapping")
            values.update(data)

        environ = os.environ if environ is None else environ
        for env_key, field_name in ENV_OVERRIDES.items():
            if environ.get(env_key):
                values[field_name] = environ[env_key]

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
