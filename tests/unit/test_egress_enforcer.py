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
Unit tests for the boot-time egress enforcer.
"""
import stat

import pytest
from conftest import FakeRunner

from aisandbox.errors import PolicyApplyError
from aisandbox.MANAGERS.network_manager import EgressEnforcer


def make_enforcer(tmp_path, runner):
    return EgressEnforcer(
        runner=runner,
        env_source=str(tmp_path / "workspace" / ".sandbox.env"),
        env_dir=str(tmp_path / "state" / "env"),
    )


def drop_env(tmp_path, content):
    source = tmp_path / "workspace" / ".sandbox.env"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_text(content)
    return source


class TestEgressEnforcer:
    """Tests for EgressEnforcer."""

    def test_moves_env_file_privately(self, tmp_path, runner):
        source = drop_env(tmp_path, "EGRESS_ALLOW_IP=192.168.1.50\nOPENAI_API_KEY=secret\n")
        enforcer = make_enforcer(tmp_path, runner)

        enforcer.run()

        assert not source.exists()
        assert stat.S_IMODE(enforcer.env_dir.stat().st_mode) == 0o700
        assert stat.S_IMODE(enforcer.env_file.stat().st_mode) == 0o600
        assert "OPENAI_API_KEY=secret" in enforcer.env_file.read_text()

    def test_applies_in_one_restore(self, tmp_path, runner):
        drop_env(tmp_path, "EGRESS_ALLOW_IP=192.168.1.50\nEGRESS_ALLOW_TCP_PORTS=22,8080\n")
        enforcer = make_enforcer(tmp_path, runner)

        result = enforcer.run()

        assert runner.commands == [["iptables-restore", "--noflush"]]
        document = runner.inputs[0]
        assert document.startswith("*filter\n")
        assert "-A OUTPUT -d 192.168.1.50 -p tcp --dport 8080 -j ACCEPT" in document
        assert "192.168.1.50 tcp/22,8080" in result.detail

    def test_defaults_without_env_file(self, tmp_path, runner):
        enforcer = make_enforcer(tmp_path, runner)

        result = enforcer.run()

        assert "peer: none" in result.detail
        assert "--dport 11434" in runner.inputs[0]

    def test_private_copy_survives_reboot(self, tmp_path, runner):
        drop_env(tmp_path, "EGRESS_ALLOW_IP=10.0.0.7\n")
        make_enforcer(tmp_path, runner).run()

        config = make_enforcer(tmp_path, runner).load_config()
        assert config.allow_ip == "10.0.0.7"

    def test_rejected_policy(self, tmp_path):
        enforcer = make_enforcer(tmp_path, FakeRunner(failures={"iptables-restore": 2}))

        with pytest.raises(PolicyApplyError):
            enforcer.run()

    def test_invalid_env_file_closes_egress(self, tmp_path, runner):
        drop_env(tmp_path, "EGRESS_ALLOW_IP=192.168.1.50\nEGRESS_ALLOW_TCP_PORTS=22,ssh\n")

        for _ in range(2):
            with pytest.raises(ValueError):
                make_enforcer(tmp_path, runner).run()

        assert runner.commands == [["iptables-restore", "--noflush"]] * 2
        for document in runner.inputs:
            assert ":OUTPUT DROP [0:0]" in document
            assert "-A OUTPUT -j REJECT" in document
            assert "192.168.1.50" not in document

    def test_ipv6_peer_closes_egress(self, tmp_path, runner):
        drop_env(tmp_path, "EGRESS_ALLOW_IP=fd00::5\n")

        with pytest.raises(ValueError):
            make_enforcer(tmp_path, runner).run()
        assert "fd00::5" not in runner.inputs[0]
