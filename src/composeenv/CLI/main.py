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
Command Line Interface for composeenv.
"""
import logging
import os
import subprocess

import click

from ..MANAGERS.environment_exposer import EnvironmentExposer, TargetProcessConfig
from ..MANAGERS.lifecycle_controller import ComposeLifecycleController
from ..MODELS.errors import ComposeError
from ..MODELS.manifest_config import ComposeSettings, ServiceManifestConfig
from ..PARSERS.settings_parser import SettingsParser
from ..RUNNERS.engine_client import DockerComposeClient


def _load_config(settings_path, nested, compose_files, project_name) -> ServiceManifestConfig:
    if os.path.exists(settings_path):
        settings = SettingsParser().parse(settings_path)
    else:
        settings = ComposeSettings()
    config = settings.get(nested)

    overrides = {}
    if compose_files:
        overrides['compose_files'] = list(compose_files)
    if project_name:
        overrides['project_name'] = project_name
    return config.model_copy(update=overrides) if overrides else config


@click.group()
@click.option('--settings', '-s', default='composeenv.yml', help='Settings file path')
@click.option('--nested', '-n', default=None, help='Name of a nested configuration')
@click.option('--file', '-f', 'compose_files', multiple=True, help='Compose file path (repeatable)')
@click.option('--project-name', '-p', default=None, help='Compose project name')
@click.option('--verbose', '-v', is_flag=True, help='Log debug output')
@click.pass_context
def cli(ctx, settings, nested, compose_files, project_name, verbose):
    """
    composeenv - Compose test environments.

    Brings compose services up for a test run and exposes their
    addresses and ports to the process under test.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    ctx.ensure_object(dict)
    try:
        config = _load_config(settings, nested, compose_files, project_name)
    except (KeyError, ValueError) as e:
        raise click.ClickException(str(e))
    client = ctx.obj.get('client') or DockerComposeClient()
    ctx.obj['controller'] = ComposeLifecycleController(config, client)


def _up(controller):
    try:
        return controller.up()
    except ComposeError as e:
        raise click.ClickException(str(e))


def _resolve(controller):
    try:
        return controller.resolve()
    except ComposeError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.pass_context
def up(ctx):
    """Start services and wait until they are reachable."""
    services_info = _up(ctx.obj['controller'])
    click.echo(f"Services started: {', '.join(services_info) or 'none'}")


@cli.command()
@click.pass_context
def down(ctx):
    """Stop and remove the services."""
    try:
        ctx.obj['controller'].down()
    except ComposeError as e:
        raise click.ClickException(str(e))
    click.echo("Services stopped.")


@cli.command()
@click.pass_context
def pull(ctx):
    """Pull service images."""
    try:
        ctx.obj['controller'].pull()
    except ComposeError as e:
        raise click.ClickException(str(e))
    click.echo("Images pulled.")


@cli.command()
@click.pass_context
def ps(ctx):
    """List the containers of the running project"""
    services_info = _resolve(ctx.obj['controller'])
    click.echo(f"{'CONTAINER':25} {'SERVICE':15} {'HOST':15} {'PORTS'}")
    click.echo("-" * 70)
    for service in services_info.values():
        for key, info in service.container_infos.items():
            ports = ', '.join(f"{host_port}->{port}" for port, host_port in info.ports.items())
            click.echo(f"{key:25} {service.name:15} {info.host:15} {ports}")


@cli.command()
@click.pass_context
def env(ctx):
    """Print environment variables for the running project"""
    services_info = _resolve(ctx.obj['controller'])
    for name, value in sorted(EnvironmentExposer(services_info).environment().items()):
        click.echo(f"export {name}={value}")


@cli.command()
@click.pass_context
def properties(ctx):
    """Print system properties for the running project"""
    services_info = _resolve(ctx.obj['controller'])
    for name, value in sorted(EnvironmentExposer(services_info).system_properties().items()):
        click.echo(f"{name}={value}")


@cli.command(context_settings={'ignore_unknown_options': True})
@click.option('--keep', is_flag=True, help='Leave services running afterwards')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(ctx, keep, command):
    """Run COMMAND with the services up and their variables in its environment."""
    controller = ctx.obj['controller']
    try:
        _up(controller)
        target = TargetProcessConfig(command=list(command), environment=dict(os.environ))
        controller.expose_as_environment(target)
        try:
            result = subprocess.run(target.command, env=target.environment)
        except OSError as e:
            raise click.ClickException(f"Cannot run {target.command[0]}: {e}")
    finally:
        if not keep:
            try:
                controller.down()
            except ComposeError as e:
                click.echo(f"Error during tear-down: {e}", err=True)
    ctx.exit(result.returncode)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
