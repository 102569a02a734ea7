"""
Command line interface of carcass.

Provides the commands to:
- list environments and show their machines
- start and stop the machines of environments
- list, add and remove OS images of a storage pool
- show and generate the configuration
"""

import contextlib
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from .config import Config, validate_name
from .environment import Environment
from .exceptions import (
    CarcassError,
    ConfigurationError,
    HypervisorConnectionError,
    SourceMapError,
)
from .hypervisor import Hypervisor
from .images import ImageStore, add_provenance, remove_provenance
from .logging import configure_logging, get_logger
from .models import ControlReport, size_pretty

app = typer.Typer(
    name="carcass",
    help="A simple virtual machine management tool",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

image_app = typer.Typer(help="Manage OS images", no_args_is_help=True)
app.add_typer(image_app, name="image")

console = Console()
logger = get_logger(__name__)


def version_callback(value: bool):
    """Print the version and exit."""
    if value:
        from . import __version__
        console.print(f"[bold green]carcass[/bold green] version [bold blue]{__version__}[/bold blue]")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-V", callback=version_callback, is_eager=True,
                     help="Show the version and exit")
    ] = None,
    connect: Annotated[
        Optional[str],
        typer.Option("--connect", "-c", help="Hypervisor connection URI")
    ] = None,
    data_dir: Annotated[
        Optional[str],
        typer.Option("--data-dir", "-d", help="Data directory")
    ] = None,
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", help="Configuration file (YAML)", exists=True,
                     dir_okay=False, readable=True)
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Log level")
    ] = None,
):
    """
    Carcass manages sets of libvirt based virtual machines as environments.
    """
    try:
        config = _load_config(config_file, connect, data_dir, log_level)
    except (ConfigurationError, ValueError) as e:
        console.print(f"[red]❌ invalid configuration: {e}[/red]")
        raise typer.Exit(code=1)

    configure_logging(config)
    ctx.obj = config


def _load_config(
    config_file: Optional[Path],
    connect: Optional[str],
    data_dir: Optional[str],
    log_level: Optional[str],
) -> Config:
    """Load the configuration and apply command line overrides."""
    config = Config.load(str(config_file) if config_file else None)

    if connect:
        config.hypervisor.uri = connect
    if data_dir:
        config.storage.data_dir = data_dir
    if log_level:
        config.logging = config.logging.model_validate(
            {**config.logging.model_dump(), "level": log_level}
        )

    return config


@contextlib.contextmanager
def _connected(config: Config) -> Iterator[Hypervisor]:
    """Connect to the hypervisor, exiting when it is unreachable."""
    hypervisor = Hypervisor(config)
    try:
        hypervisor.connect()
    except HypervisorConnectionError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1)

    try:
        yield hypervisor
    finally:
        hypervisor.close()


def _data_dir(config: Config) -> Optional[Path]:
    try:
        return config.data_dir
    except ConfigurationError as e:
        logger.warning(f"could not expand data-dir: {e}")
        return None


def _print_report(env: str, action: str, report: ControlReport) -> None:
    for failure in report.failures:
        console.print(f"[yellow]⚠️  {env}: could not {action} {failure.name}: {failure.message}[/yellow]")


@app.command("list")
def list_environments(
    ctx: typer.Context,
    envs: Annotated[Optional[List[str]], typer.Argument(help="Environments to show")] = None,
    show_all: Annotated[bool, typer.Option("--all", "-a", help="Show details of all environments")] = False,
):
    """
    Show environments, with details when named.
    """
    config: Config = ctx.obj
    names = list(envs or [])

    with _connected(config) as hypervisor:
        if not names:
            try:
                networks = hypervisor.list_networks()
            except CarcassError as e:
                console.print(f"[red]❌ {e}[/red]")
                raise typer.Exit(code=1)

            for network in networks:
                if show_all:
                    names.append(network.name)
                else:
                    console.print(network.name, markup=False, highlight=False)

        for name in names:
            try:
                env = Environment.lookup(hypervisor, name)
            except CarcassError as e:
                logger.warning(f"could not load environment {name}: {e}")
                continue
            console.print(env.render(), markup=False, highlight=False)


@app.command()
def start(
    ctx: typer.Context,
    envs: Annotated[List[str], typer.Argument(help="Environments to start")],
):
    """
    Start all machines of the environments.
    """
    config: Config = ctx.obj

    with _connected(config) as hypervisor:
        for name in envs:
            try:
                env = Environment.lookup(hypervisor, name)
            except CarcassError as e:
                logger.warning(f"could not load environment {name}: {e}")
                continue
            _print_report(name, "start", env.start())


@app.command()
def stop(
    ctx: typer.Context,
    envs: Annotated[Optional[List[str]], typer.Argument(help="Environments to stop")] = None,
    stop_all: Annotated[bool, typer.Option("--all", "-a", help="Stop all environments")] = False,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Send shutdown request even if domain is not active")
    ] = False,
):
    """
    Stop all machines of the environments.
    """
    config: Config = ctx.obj
    force = force or config.control.force_stop

    with _connected(config) as hypervisor:
        names = list(envs or [])
        if stop_all:
            try:
                names = [n.name for n in hypervisor.list_networks()]
            except CarcassError as e:
                console.print(f"[red]❌ {e}[/red]")
                raise typer.Exit(code=1)

        if not names:
            console.print("[red]❌ missing environment[/red]")
            raise typer.Exit(code=1)

        for name in names:
            try:
                env = Environment.lookup(hypervisor, name)
            except CarcassError as e:
                logger.warning(f"could not load environment {name}: {e}")
                continue
            _print_report(name, "stop", env.stop(force))


PoolOption = Annotated[
    Optional[str],
    typer.Option("--storage-pool", "-p", help="Operate on this storage pool")
]


@image_app.command("list")
def list_images(ctx: typer.Context, pool: PoolOption = None):
    """
    List images in the storage pool.
    """
    config: Config = ctx.obj
    pool = pool or config.storage.pool

    with _connected(config) as hypervisor:
        store = ImageStore(hypervisor, config)
        try:
            images = store.list(pool, _data_dir(config))
        except CarcassError as e:
            console.print(f"[red]❌ could not list images: {e}[/red]")
            raise typer.Exit(code=1)

    table = Table(title=f"OS images of pool {pool}", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Format")
    table.add_column("Size", justify="right")
    table.add_column("Capacity", justify="right")
    table.add_column("Source", style="green")

    for image in images:
        table.add_row(
            image.name, image.format, size_pretty(image.size),
            size_pretty(image.capacity), image.source,
        )

    console.print(table)


@image_app.command("add")
def add_image(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Name of the image")],
    source: Annotated[str, typer.Argument(help="Path or URL of the image")],
    pool: PoolOption = None,
):
    """
    Download and store an OS cloud image in the storage pool.
    """
    config: Config = ctx.obj

    try:
        validate_name(name, "image name")
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1)

    with _connected(config) as hypervisor:
        store = ImageStore(hypervisor, config)
        image = store.new_image(name, source, pool)

        try:
            store.store(image)
        except CarcassError as e:
            console.print(f"[red]❌ could not add image: {e}[/red]")
            raise typer.Exit(code=1)

    data_dir = _data_dir(config)
    if data_dir is not None:
        try:
            add_provenance(data_dir, image.pool, image.name, image.source)
        except SourceMapError as e:
            logger.warning(str(e))

    console.print(f"✅ OS image {image.name} added to pool {image.pool}")


@image_app.command("rm")
def remove_image(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Name of the image")],
    pool: PoolOption = None,
):
    """
    Remove an OS cloud image from the storage pool.
    """
    config: Config = ctx.obj

    with _connected(config) as hypervisor:
        store = ImageStore(hypervisor, config)
        image = store.new_image(name, pool=pool)

        try:
            exists = store.exists(image)
        except CarcassError as e:
            console.print(f"[red]❌ could not check if image exists: {e}[/red]")
            raise typer.Exit(code=1)

        if not exists:
            console.print(f"[red]❌ OS image {name} does not exist in pool {image.pool}[/red]")
            raise typer.Exit(code=1)

        data_dir = _data_dir(config)
        if data_dir is not None:
            try:
                remove_provenance(data_dir, image.pool, image.name)
            except SourceMapError as e:
                logger.warning(str(e))

        try:
            store.drop(image)
        except CarcassError as e:
            console.print(f"[red]❌ could not remove image: {e}[/red]")
            raise typer.Exit(code=1)

    console.print(f"✅ OS image {name} removed from pool {image.pool}")


@app.command()
def info(ctx: typer.Context):
    """
    Show the configuration in use.
    """
    from . import __version__
    config: Config = ctx.obj

    table = Table(title="carcass", show_header=True, header_style="bold cyan")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Version", __version__)
    table.add_row("Hypervisor URI", config.hypervisor.uri)
    table.add_row("Read-only", "yes" if config.hypervisor.readonly else "no")
    table.add_row("Storage pool", config.storage.pool)
    table.add_row("Data directory", str(_data_dir(config) or config.storage.data_dir))
    table.add_row("Log level", config.logging.level)

    console.print(table)


@app.command()
def generate_config(
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Path of the configuration file")
    ] = Path("carcass.yaml"),
):
    """
    Write a configuration file with the default settings.
    """
    try:
        Config().to_yaml_file(str(output))
    except OSError as e:
        console.print(f"[red]❌ could not write configuration file: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"✅ configuration written to [bold blue]{output}[/bold blue]")


def main_cli():
    """Entry point of the carcass command."""
    app()


if __name__ == '__main__':
    main_cli()
