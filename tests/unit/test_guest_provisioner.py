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
Unit tests for chroot provisioning of the guest rootfs.
"""
import os

import pytest
from conftest import FakeRunner

from aisandbox.BUILDERS.guest_provisioner import GuestProvisioner
from aisandbox.errors import CommandError
from aisandbox.MODELS.step_result import StepOutcome


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "src"
    (src / "src" / "aisandbox").mkdir(parents=True)
    (src / "setup.py").write_text("from setuptools import setup\n")
    (src / "src" / "aisandbox" / "__init__.py").write_text("")
    (src / ".build").mkdir()
    (src / ".build" / "ai-dev-sandbox.ext4").write_bytes(b"\0")
    return src


@pytest.fixture
def root(tmp_path):
    rootfs = tmp_path / "rootfs"
    (rootfs / "lib/systemd/system").mkdir(parents=True)
    (rootfs / "lib/systemd/system/ssh.service").write_text("[Unit]\n")
    return rootfs


def chroot_scripts(runner):
    return [command[-1] for command in runner.commands if command[0] == "chroot"]


class TestGuestProvisioner:
    """Tests for GuestProvisioner."""

    def test_provision(self, source, root, runner):
        results = GuestProvisioner(str(source), runner, ssh_password="s3cret").provision(root)

        assert [r.name for r in results] == ["iptables", "ssh", "helper"]
        scripts = chroot_scripts(runner)
        assert "iptables" in scripts[0]
        assert "echo sandbox:s3cret | chpasswd" in scripts[1]
        assert "--break-system-packages /opt/aisandbox/src" in scripts[2]
        assert os.readlink(root / "etc/systemd/system/multi-user.target.wants/ssh.service") == \
            "/lib/systemd/system/ssh.service"

    def test_source_copy_skips_build_output(self, source, root, runner):
        GuestProvisioner(str(source), runner).provision(root)
        copied = root / "opt/aisandbox/src"
        assert (copied / "setup.py").is_file()
        assert not (copied / ".build").exists()

    def test_chroot_runs_inside_bind_mounts(self, source, root, runner):
        GuestProvisioner(str(source), runner).provision(root)
        programs = runner.programs()
        first_bind = programs.index("mount")
        last_unbind = len(programs) - 1 - programs[::-1].index("umount")
        inner = programs[first_bind:last_unbind + 1]
        assert inner.count("chroot") == 2

    def test_iptables_is_best_effort(self, source, root):
        class IptablesFails(FakeRunner):
            def run(self, command, check=True, **kwargs):
                if command[0] == "chroot" and "iptables" in command[-1]:
                    self.commands.append(list(command))
                    raise CommandError(command, 100, "E: Unable to locate package")
                return super().run(command, check=check, **kwargs)

        results = GuestProvisioner(str(source), IptablesFails()).provision(root)
        assert results[0].outcome == StepOutcome.RECOVERABLE
        assert results[1].outcome == StepOutcome.SUCCESS

    def test_ssh_failure_is_fatal_and_unbinds(self, source, root):
        runner = FakeRunner(failures={"chroot": 1})

        with pytest.raises(CommandError):
            GuestProvisioner(str(source), runner).provision(root)
        assert runner.programs().count("umount") == 2

    def test_no_ssh_unit(self, source, tmp_path, runner):
        rootfs = tmp_path / "bare"
        rootfs.mkdir()
        assert GuestProvisioner(str(source), runner).enable_ssh_service(rootfs) is None
