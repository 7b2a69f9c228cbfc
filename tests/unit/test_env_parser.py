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
Unit tests for env file parsing and merging.
"""
from aisandbox.MANAGERS.environment_manager import EnvironmentManager
from aisandbox.PARSERS.env_parser import EnvParser


def test_parse_from_string():
    content = """
    KEY1=VALUE1
    KEY2 = VALUE2
    # This is a comment
    KEY3="VALUE3" # Trailing comment
    KEY4='VALUE4'
    export KEY5=VALUE5
    """
    env = EnvParser.parse_from_string(content)
    assert env['KEY1'] == 'VALUE1'
    assert env['KEY2'] == 'VALUE2'
    assert env['KEY3'] == 'VALUE3'
    assert env['KEY4'] == 'VALUE4'
    assert env['KEY5'] == 'VALUE5'
    assert 'KEY6' not in env


def test_no_interpolation():
    env = EnvParser.parse_from_string("TOKEN=abc${HOME}def\n")
    assert env['TOKEN'] == 'abc${HOME}def'


def test_bare_keys_dropped():
    env = EnvParser.parse_from_string("EGRESS_ALLOW_IP\nEGRESS_ALLOW_TCP_PORTS=22\n")
    assert env == {'EGRESS_ALLOW_TCP_PORTS': '22'}


def test_merge_order(tmp_path):
    workspace = tmp_path / "workspace"
    home = tmp_path / "home"
    workspace.mkdir()
    home.mkdir()
    (workspace / ".sandbox.env").write_text("A=sandbox\nB=sandbox\n")
    (workspace / ".env").write_text("B=project\nC=project\n")
    (home / ".env").write_text("C=home\n")

    manager = EnvironmentManager(str(workspace), str(home))
    env = manager.get_merged_environment(base_env={"A": "base", "D": "base"}, explicit_env={"D": "explicit"})

    assert env == {"A": "sandbox", "B": "project", "C": "home", "D": "explicit"}


def test_missing_files_skipped(tmp_path):
    manager = EnvironmentManager(str(tmp_path), str(tmp_path))
    env = manager.get_merged_environment([str(tmp_path / "nope.env")], base_env={"X": "1"})
    assert env == {"X": "1"}
