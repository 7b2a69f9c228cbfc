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
Integration tests for the aisandbox command line.
"""
from click.testing import CliRunner

from aisandbox.CLI.main import cli


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('build', 'inject', 'first-boot-load', 'egress', 'entrypoint'):
        assert command in result.output


def test_build_unknown_mode():
    runner = CliRunner()
    result = runner.invoke(cli, ['build', 'everything'])
    assert result.exit_code == 2
    assert 'everything' in result.output


def test_build_reports_failed_stage(tmp_path):
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ['build', 'full', '--project-dir', str(tmp_path)],
        env={'FC_BASE_IMAGE': 'aisandbox-test/missing-base:none'},
    )
    assert result.exit_code == 1
    assert "Stage 'preflight' failed" in result.output


def test_build_invalid_config(tmp_path):
    (tmp_path / 'aisandbox.yml').write_text('extra_mb: -5\n')
    runner = CliRunner()
    result = runner.invoke(cli, ['build', '--project-dir', str(tmp_path)])
    assert result.exit_code == 2
    assert 'Invalid configuration' in result.output


def test_egress_show():
    runner = CliRunner()
    result = runner.invoke(cli, ['egress', 'show', '--allow-ip', '192.168.1.50', '--ports', '22,8080'])
    assert result.exit_code == 0
    assert result.output.startswith('*filter')
    assert '-A OUTPUT -d 192.168.1.50 -p tcp --dport 8080 -j ACCEPT' in result.output


def test_egress_show_bad_port():
    runner = CliRunner()
    result = runner.invoke(cli, ['egress', 'show', '--allow-ip', '192.168.1.50', '--ports', 'ssh'])
    assert result.exit_code == 2


def test_first_boot_load_already_loaded(tmp_path):
    marker = tmp_path / '.loaded'
    marker.touch()
    runner = CliRunner()
    result = runner.invoke(cli, ['first-boot-load', '--payload', str(tmp_path / 'none.tar'), '--marker', str(marker)])
    assert result.exit_code == 0
    assert 'skipped' in result.output


def test_first_boot_load_missing_payload(tmp_path):
    runner = CliRunner()
    result = runner.invoke(
        cli, ['first-boot-load', '--payload', str(tmp_path / 'none.tar'), '--marker', str(tmp_path / '.loaded')]
    )
    assert result.exit_code == 1
    assert 'not found' in result.output
    assert not (tmp_path / '.loaded').exists()


def test_inject_missing_base(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['inject', '--build-dir', str(tmp_path)])
    assert result.exit_code == 1
    assert 'Base image not found' in result.output


def test_inject_without_source_dir(tmp_path):
    with open(tmp_path / 'base.ext4', 'wb') as f:
        f.truncate(4 * 1024 * 1024)
    (tmp_path / 'ai-dev-sandbox.tar').write_bytes(b'x' * 4096)
    runner = CliRunner()
    result = runner.invoke(cli, ['inject', '--build-dir', str(tmp_path), '--extra-mb', '8', '--safety-margin-mb', '0'])
    assert result.exit_code == 1
    assert 'no provisioner installs it' in result.output
    assert not (tmp_path / 'ai-dev-sandbox.ext4').exists()
