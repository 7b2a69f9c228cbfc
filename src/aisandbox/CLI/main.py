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
Command Line Interface for aisandbox.
"""
import logging
import os

import click

from ..BUILDERS.guest_provisioner import GuestProvisioner
from ..BUILDERS.image_builder import DiskImageTransformer
from ..BUILDERS.pipeline import BUILD_MODES, BuildPipeline
from ..errors import SandboxError, StageError
from ..MANAGERS.first_boot_loader import FirstBootLoader
from ..MANAGERS.network_manager import EgressEnforcer, EgressPolicyCompiler
from ..MANAGERS.sandbox_initializer import SandboxInitializer
from ..MODELS.build_config import BuildConfig
from ..MODELS.egress import EgressConfig
from ..MODELS.guest_layout import EGRESS_ENV_DIR, EGRESS_ENV_SOURCE, LOADED_MARKER, PAYLOAD_PATH
from ..MODELS.marker import FileMarker


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(module)s] %(levelname)s %(message)s",
    )


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Log every external command')
@click.pass_context
def cli(ctx, verbose):
    """
    aisandbox - build and boot the AI development sandbox.

    Builds a microVM rootfs with the sandbox image baked in, and provides the
    guest-side services that load it, firewall it and initialize it.
    """
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    _configure_logging(verbose)


@cli.command()
@click.argument('mode', type=click.Choice(list(BUILD_MODES)), default='full')
@click.option('--project-dir', '-p', default='.', help='Project root holding the Dockerfiles')
@click.option('--config', '-c', 'config_file', default=None, help='YAML config (default: <project>/aisandbox.yml)')
@click.option('--extra-mb', type=int, default=None, help='Extra MB added to the rootfs')
@click.pass_context
def build(ctx, mode, project_dir, config_file, extra_mb):
    """Build sandbox images (inner image, payload, rootfs, host image)."""
    config_file = config_file or os.path.join(project_dir, 'aisandbox.yml')
    try:
        config = BuildConfig.load(config_file=config_file, project_dir=project_dir, extra_mb=extra_mb)
    except (ValueError, OSError) as e:
        raise click.UsageError(f"Invalid configuration: {e}")

    click.echo(f"AI-Dev-Sandbox build ({mode})")
    try:
        results = BuildPipeline(config).run(mode)
    except StageError as e:
        click.echo(f"[build] {e}", err=True)
        ctx.exit(1)
        return

    for result in results:
        click.echo(f"[build] {result.name:8} {result.detail}")
    click.echo("Build complete!")


@cli.command()
@click.option('--build-dir', default='/build', help='Directory holding base.ext4 and the payload tar')
@click.option('--source-dir', default=None, help='aisandbox source tree to install into the guest; the boot units need it')
@click.option('--extra-mb', type=int, default=6144, envvar='AI_SANDBOX_ROOTFS_EXTRA_MB', show_default=True)
@click.option('--safety-margin-mb', type=int, default=256, show_default=True)
@click.option('--inner-image', default='ai-dev-sandbox:latest', show_default=True)
@click.option('--ssh-password', default='sandbox')
@click.option('--mount-point', default='/mnt/rootfs', show_default=True)
@click.pass_context
def inject(ctx, build_dir, source_dir, extra_mb, safety_margin_mb, inner_image, ssh_password, mount_point):
    """Transform base.ext4 into the sandbox rootfs. Needs root and loop devices."""
    config = BuildConfig.load(
        environ={}, build_dir=build_dir, extra_mb=extra_mb,
        safety_margin_mb=safety_margin_mb, inner_image=inner_image,
    )
    provisioner = GuestProvisioner(source_dir, ssh_password=ssh_password) if source_dir else None
    transformer = DiskImageTransformer(
        base_image_path=config.base_ext4_path,
        payload_path=config.payload_path,
        output_path=config.output_ext4_path,
        growth_bytes=config.extra_bytes,
        safety_margin=config.safety_margin_bytes,
        provisioner=provisioner,
        inner_image=config.inner_image,
        mount_point=mount_point,
    )
    try:
        image = transformer.transform()
    except SandboxError as e:
        click.echo(f"[inject] Error: {e}", err=True)
        ctx.exit(1)
        return
    click.echo(f"[inject] {image.path} ({image.current_size // (1024 * 1024)}MB)")


@cli.command('first-boot-load')
@click.option('--payload', default=PAYLOAD_PATH, show_default=True)
@click.option('--marker', default=LOADED_MARKER, show_default=True)
@click.pass_context
def first_boot_load(ctx, payload, marker):
    """Load the baked-in image into the guest docker daemon once."""
    try:
        result = FirstBootLoader(payload, FileMarker(marker)).run()
    except SandboxError as e:
        click.echo(f"[load-ai-dev-sandbox] ERROR {e}", err=True)
        ctx.exit(1)
        return
    click.echo(f"[load-ai-dev-sandbox] {result.outcome.value}")


@cli.group()
def egress():
    """Guest egress firewall."""


@egress.command('apply')
@click.option('--env-source', default=EGRESS_ENV_SOURCE, show_default=True)
@click.option('--env-dir', default=EGRESS_ENV_DIR, show_default=True)
@click.pass_context
def egress_apply(ctx, env_source, env_dir):
    """Compile the egress config and load it into the packet filter."""
    try:
        result = EgressEnforcer(env_source=env_source, env_dir=env_dir).run()
    except (SandboxError, ValueError) as e:
        click.echo(f"[egress] Error: {e}", err=True)
        ctx.exit(1)
        return
    click.echo(f"[egress] {result.detail}")


@egress.command('show')
@click.option('--allow-ip', default=None, help='Allow-listed peer address')
@click.option('--ports', default=None, help='Comma separated TCP ports for the peer')
def egress_show(allow_ip, ports):
    """Print the compiled ruleset without applying it."""
    try:
        config = EgressConfig(allow_ip=allow_ip, allow_tcp_ports=ports)
    except ValueError as e:
        raise click.BadParameter(str(e))
    click.echo(EgressPolicyCompiler().compile(config).render(), nl=False)


@cli.command(context_settings={'ignore_unknown_options': True, 'allow_interspersed_args': False})
@click.argument('command', nargs=-1, type=click.UNPROCESSED)
@click.option('--home', default=lambda: os.path.expanduser('~'), help='Durable home directory')
@click.pass_context
def entrypoint(ctx, command, home):
    """Inner container entrypoint: first-run setup, banner, then COMMAND or bash."""
    try:
        SandboxInitializer(home).start(command)
    except SandboxError as e:
        click.echo(str(e), err=True)
        ctx.exit(1)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
