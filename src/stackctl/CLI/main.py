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
Command Line Interface for stackctl.
"""
import functools
import os
import time

import click

from ..BUILDERS.image_builder import ImageBuilder
from ..CONVERTERS.to_nginx import NginxConverter
from ..errors import StackctlError
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.plan import Mode, ReconcileResult
from ..MODELS.routing_config import MatchKind
from ..MODELS.settings import Settings
from ..PARSERS.stack_parser import StackParser, load_context
from ..PROXY.routing_table import RoutingTable
from ..RUNTIME.docker_runtime import DockerRuntime
from ..UTILS.logging import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_FAILURE = 1
EXIT_CANCELLED = 3


def handle_errors(f):
    """Turns stackctl errors into a message on stderr and exit code 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return f(*args, **kwargs)
        except StackctlError as e:
            logger.debug("command failed", **e.to_dict())
            click.echo(f"Error: {e.message}", err=True)
            ctx.exit(EXIT_FAILURE)
    return wrapper


@click.group()
@click.option('--file', '-f', default=None, help='Stack file path (default: stack.yaml)')
@click.option('--env-file', default=None, help='Env file used for interpolation (default: .env)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.option('--log-json', is_flag=True, help='Log JSON lines instead of console output')
@click.pass_context
def cli(ctx, file, env_file, verbose, log_json):
    """
    stackctl - bring a multi-service stack up and down as one unit.

    Reconciles the running containers with the stack file and renders the
    reverse-proxy rules it declares.
    """
    ctx.ensure_object(dict)
    settings = ctx.obj.get('settings') or Settings.from_env(
        os.environ,
        stack_file=file,
        env_file=env_file,
        log_level='debug' if verbose else None,
        log_json=log_json or None,
    )
    ctx.obj['settings'] = settings
    configure_logging(settings.log_level, settings.log_json)


def _load(ctx) -> OrchestrationConfig:
    settings = ctx.obj['settings']
    context = load_context(os.environ, settings.env_file)
    return StackParser(context).parse(settings.stack_file)


def _backend(ctx):
    if ctx.obj.get('backend') is None:
        ctx.obj['backend'] = DockerRuntime()
    return ctx.obj['backend']


def _orchestrator(ctx) -> ServiceOrchestrator:
    return ServiceOrchestrator(
        _backend(ctx), ctx.obj['settings'], sleep=ctx.obj.get('sleep', time.sleep)
    )


def _print_result(result: ReconcileResult):
    click.echo(f"{'SERVICE':20} {'ACTION':10} {'OUTCOME':8} DETAIL")
    click.echo("-" * 60)
    reasons = {p.service: p.reason for p in result.plan}
    for r in result.results:
        detail = r.error or reasons.get(r.service, "")
        click.echo(f"{r.service:20} {r.action.value:10} {r.outcome.value:8} {detail}")
    if result.network:
        net = result.network
        detail = f" ({net.error})" if net.error else ""
        click.echo(f"network {net.name}: {net.action} [{net.outcome.value}]{detail}")


def _print_entrypoints(orchestrator: ServiceOrchestrator, config: OrchestrationConfig):
    click.echo("\nEntrypoints:")
    topology = config.topology
    if config.proxy and config.proxy_service:
        ports = topology.services[config.proxy_service].published_ports()
        if ports:
            base = f"http://localhost:{next(iter(ports.values()))}"
            for route in config.proxy.routes:
                if route.kind == MatchKind.REGEX:
                    continue
                target = "static" if route.is_static else route.upstream
                click.echo(f"  - {target + ' (via proxy)':28} {base}{route.literal}")
    for name, url in orchestrator.endpoints(topology):
        click.echo(f"  - {name + ' (direct)':28} {url}")


@cli.command()
@click.option('--no-build', is_flag=True, help='Skip building images')
@click.option('--dry-run', is_flag=True, help='Show the plan without changing anything')
@click.pass_context
@handle_errors
def up(ctx, no_build, dry_run):
    """Bring every service up in dependency order."""
    config = _load(ctx)
    orchestrator = _orchestrator(ctx)
    orchestrator.inspector.check_backend()

    if not no_build:
        base_dir = os.path.dirname(os.path.abspath(ctx.obj['settings'].stack_file))
        built = ImageBuilder(orchestrator.backend, base_dir).build_all(config.topology, dry_run=dry_run)
        if built:
            click.echo(f"{'Would build' if dry_run else 'Built'}: {', '.join(built)}")

    mode = Mode.DRY_RUN if dry_run else Mode.APPLY
    result = orchestrator.reconcile(config.topology, mode)
    _print_result(result)

    if not result.ok:
        click.echo(
            f"Failed: {', '.join(result.failed) or '-'}; blocked: {', '.join(result.blocked) or '-'}",
            err=True,
        )
        ctx.exit(EXIT_FAILURE)
    if not dry_run:
        _print_entrypoints(orchestrator, config)


@cli.command()
@click.option('--dry-run', is_flag=True, help='Show what would be removed')
@click.option('--yes', is_flag=True, help='Skip the confirmation prompt')
@click.pass_context
@handle_errors
def down(ctx, dry_run, yes):
    """Stop and remove every service and the stack network."""
    config = _load(ctx)
    settings = ctx.obj['settings']
    orchestrator = _orchestrator(ctx)
    topology = config.topology

    if dry_run:
        _print_result(orchestrator.reconcile(topology, Mode.DRY_RUN, destroy=True))
        return

    orchestrator.inspector.check_backend()
    click.echo("This will remove:")
    for name in orchestrator.resolver.shutdown_order(topology):
        click.echo(f"  - container {name}")
    click.echo(f"  - network {topology.network}")

    phrase = settings.destroy_phrase
    if yes:
        confirmation = phrase
    else:
        try:
            confirmation = click.prompt(f"Type '{phrase}' to confirm", default='', show_default=False)
        except click.Abort:
            confirmation = None
    if confirmation != phrase:
        click.echo("Destroy cancelled.", err=True)
        ctx.exit(EXIT_CANCELLED)

    result = orchestrator.reconcile(topology, Mode.DESTROY, confirmation=confirmation)
    _print_result(result)
    if not result.ok:
        ctx.exit(EXIT_FAILURE)


@cli.command()
@click.pass_context
@handle_errors
def ps(ctx):
    """List service status"""
    config = _load(ctx)
    status = _orchestrator(ctx).ps(config.topology)
    click.echo(f"{'SERVICE':20} {'STATUS':10}")
    click.echo("-" * 31)
    for name, state in status.items():
        click.echo(f"{name:20} {state.value:10}")


@cli.command()
@click.argument('path')
@click.pass_context
@handle_errors
def route(ctx, path):
    """Show which route handles PATH."""
    config = _load(ctx)
    if not config.proxy:
        raise StackctlError("the stack file has no proxy section")
    matched = RoutingTable.from_config(config.proxy).match(path)
    click.echo(f"route:    {matched.kind.value} {matched.pattern}")
    if matched.is_static:
        click.echo(f"static:   {matched.static_response.status}")
    else:
        click.echo(f"upstream: {matched.upstream}")
    click.echo(f"zone:     {matched.zone or '-'}")


@cli.command('render-proxy')
@click.option('--out', '-o', default=None, help='Write the config to this file')
@click.option('--listen', default=80, show_default=True, help='Port the proxy listens on')
@click.pass_context
@handle_errors
def render_proxy(ctx, out, listen):
    """Render the proxy rules as an nginx config."""
    config = _load(ctx)
    if not config.proxy:
        raise StackctlError("the stack file has no proxy section")
    content = NginxConverter(config.proxy, listen=listen).convert(out)
    if out:
        click.echo(f"nginx config written to {out}")
    else:
        click.echo(content, nl=False)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
