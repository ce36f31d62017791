import logging
import pathlib
import sys

from typing import List, Optional
from typing_extensions import Annotated

import typer.core

typer.core.rich = None

import typer  # noqa: E402

from ..config import Settings  # noqa: E402
from ..exceptions import ConfigError, FatalError  # noqa: E402
from . import loaders  # noqa: E402


app = typer.Typer(add_completion=False)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option('--verbose', '-v')] = False,
    debug: Annotated[bool, typer.Option('--debug', '-d')] = False,
    config_file: Annotated[
        Optional[pathlib.Path],
        typer.Option('--config', '-c', envvar='CONVERGE_CONFIG_FILE', help='YAML settings file.'),
    ] = None,
) -> None:
    """
    Converge, a declarative reconciliation controller.
    """
    setattr(ctx, 'obj', {})

    logging.basicConfig(
        level=logging.ERROR,
        format='%(levelname)s: %(module)s: %(message)s',
        stream=sys.stderr,
    )
    log = logging.getLogger('converge')
    log_level = logging.ERROR
    if verbose:
        log_level = logging.INFO
    elif debug:
        log_level = logging.DEBUG
    log.setLevel(log_level)
    ctx.obj['log_level'] = log_level
    ctx.obj['log'] = log
    ctx.obj['debug'] = debug
    try:
        ctx.obj['settings'] = Settings.load(config_file)
    except ConfigError as e:
        typer.echo(f'Error: {e}', err=True)
        raise typer.Exit(code=2)


def _configure(ctx, modules, paths, identity=None):
    from converge import manager

    manager.settings = ctx.obj['settings']
    if identity:
        manager.identity = identity
    manager.use_builtin_reconcilers()
    try:
        loaders.load(paths=paths, modules=modules)
    except ConfigError as e:
        typer.echo(f'Error: {e}', err=True)
        raise typer.Exit(code=2)
    return manager


@app.command(name='run', short_help='Run the controllers')
def run(
    ctx: typer.Context,
    modules: Annotated[
        List[str],
        typer.Option('--module', '-m', help='Import the given module. Can be given multiple times.'),
    ] = None,
    paths: Annotated[List[pathlib.Path], typer.Argument()] = None,
    all_namespaces: Annotated[
        bool, typer.Option('--all-namespaces', help='Watch all namespaces.')
    ] = False,
    namespaces: Annotated[
        List[str],
        typer.Option(
            '--namespace',
            help='Watch the given namespaces instead of the configured ones. Can be given multiple times.',
        ),
    ] = None,
    identity: Annotated[
        Optional[str],
        typer.Option('--identity', help='Leader election identity, defaults to host name and a random suffix.'),
    ] = None,
) -> None:
    manager = _configure(ctx, modules, paths, identity=identity)
    if all_namespaces:
        namespaces = []
    try:
        manager.run(namespaces=namespaces, debug=ctx.obj['debug'])
    except (ConfigError, FatalError) as e:
        typer.echo(f'Error: {e}', err=True)
        raise typer.Exit(code=1)


@app.command(name='kinds', short_help='List the kinds that are reconciled')
def kinds(
    ctx: typer.Context,
    modules: Annotated[
        List[str],
        typer.Option('--module', '-m', help='Import the given module. Can be given multiple times.'),
    ] = None,
    paths: Annotated[List[pathlib.Path], typer.Argument()] = None,
) -> None:
    manager = _configure(ctx, modules, paths)
    for kind in manager.kinds:
        typer.echo(kind)


if __name__ == '__main__':
    app()
