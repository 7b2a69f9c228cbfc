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
Unit tests for build configuration resolution.
"""
import os

import pytest
from pydantic import ValidationError

from aisandbox.MODELS.build_config import BuildConfig
from aisandbox.MODELS.disk_image import MIB


class TestBuildConfig:
    """Tests for BuildConfig.load."""

    def test_defaults(self, tmp_path):
        config = BuildConfig.load(environ={}, project_dir=str(tmp_path))
        assert config.extra_mb == 6144
        assert config.extra_bytes == 6144 * MIB
        assert config.build_dir == os.path.join(str(tmp_path), ".build")
        assert config.payload_path.endswith(os.path.join(".build", "ai-dev-sandbox.tar"))
        assert config.base_ext4_path.endswith("base.ext4")
        assert config.output_ext4_path.endswith("ai-dev-sandbox.ext4")

    def test_yaml_file(self, tmp_path):
        config_file = tmp_path / "aisandbox.yml"
        config_file.write_text("inner_image: custom:1\nextra_mb: 2048\n")

        config = BuildConfig.load(str(config_file), environ={})

        assert config.inner_image == "custom:1"
        assert config.extra_mb == 2048

    def test_missing_yaml_file_is_ignored(self, tmp_path):
        config = BuildConfig.load(str(tmp_path / "absent.yml"), environ={})
        assert config.inner_image == "ai-dev-sandbox:latest"

    def test_yaml_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "aisandbox.yml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            BuildConfig.load(str(config_file), environ={})

    def test_precedence(self, tmp_path):
        config_file = tmp_path / "aisandbox.yml"
        config_file.write_text("extra_mb: 2048\nbase_image: from-yaml\n")
        environ = {"AI_SANDBOX_ROOTFS_EXTRA_MB": "4096", "FC_BASE_IMAGE": "from-env"}

        config = BuildConfig.load(str(config_file), environ=environ, extra_mb=1024, base_image=None)

        assert config.extra_mb == 1024
        assert config.base_image == "from-env"

    def test_negative_extra(self):
        with pytest.raises(ValidationError):
            BuildConfig.load(environ={}, extra_mb=-1)
