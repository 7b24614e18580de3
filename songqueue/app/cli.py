import asyncio
import logging
import os
import sys
from functools import wraps

import click
from rich.logging import RichHandler
from rich.table import Table
from rich.traceback import install

from .. import __version__, db
from ..config import DEFAULT_CONFIG_PATH, Config, OutdatedConfigError, set_user_defaults
from ..console import console
from ..models import Phase, RepeatMode
from .main import Main

logger = logging.getLogger("songqueue")

HELP = """[bold]Commands:[/bold] [cyan]p[/cyan] pause  [cyan]r[/cyan] resume  [cyan]s[/cyan] skip  \
[cyan]seek <sec>[/cyan]  [cyan]vol <0-100>[/cyan]  [cyan]add <url>[/cyan]  [cyan]status[/cyan]  [cyan]q[/cyan] quit"""


def coro(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))

    return wrapper


@click.group()
@click.option("--config-path", default=DEFAULT_CONFIG_PATH, help="Path to the configuration file")
@click.option("-v", "--verbose", help="Enable verbose output (debug mode)", is_flag=True)
@click.version_option(version=__version__)
@click.pass_context
def songqueue(ctx, config_path, verbose):
    """Queue songs from URLs, searches or files and play them one after another."""
    logging.basicConfig(
        level="INFO",
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console)],
    )

    if verbose:
        install(
            console=console,
            suppress=[click, asyncio],
            show_locals=True,
            locals_hide_sunder=False,
        )
        logger.setLevel(logging.DEBUG)
        logger.debug("Showing all debug logs")
    else:
        install(console=console, suppress=[click, asyncio], max_frames=1)
        logger.setLevel(logging.INFO)

    if not os.path.isfile(config_path):
        console.print(f"No file found at [bold cyan]{config_path}[/bold cyan], creating default config.")
        set_user_defaults(config_path)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path

    try:
        ctx.obj["config"] = Config(config_path)
    except OutdatedConfigError as e:
        console.print(f"[red]{e}[/red]")
        console.print("Run [bold]songqueue config reset[/bold] to start over with a fresh config.")
        ctx.obj["config"] = None


def _config(ctx) -> Config:
    config = ctx.obj["config"]
    if config is None:
        raise click.ClickException("config file is out of date")
    return config


@songqueue.command()
@click.argument("items", nargs=-1)
@click.option("--shuffle/--no-shuffle", default=None, help="Pick songs at random, favoring priority requests")
@click.option("--repeat", type=click.Choice(["off", "one", "all"]), default=None)
@click.option("--requester", default="", help="Requester id used for priority checks")
@click.option("--no-db", is_flag=True, help="Do not restore or save the session")
@click.option("-i", "--interactive", is_flag=True, help="Read playback commands from stdin")
@click.pass_context
@coro
async def play(ctx, items, shuffle, repeat, requester, no_db, interactive):
    """Queue URLS, search queries or FILES and play until the queue runs out.

    Example usage:

        songqueue play https://example.com/song.mp3 "artist - title" ~/music/track.flac
    """
    config = _config(ctx)
    if shuffle is not None:
        config.session.playback.shuffle = shuffle
    if repeat is not None:
        config.session.playback.repeat_mode = repeat
    if no_db:
        config.session.database.enabled = False

    async with Main(config) as main:
        if not main.backend.available:
            console.print("[red]No audio player found.[/red] Install [bold]mpv[/bold] or [bold]ffplay[/bold].")
            return
        if shuffle is not None:
            await main.orchestrator.set_shuffle(shuffle)
        if repeat is not None:
            await main.orchestrator.set_repeat_mode(RepeatMode.parse(repeat))

        added = await main.add_all(list(items), requester)
        console.print(f"Queued [bold]{len(added)}[/bold] songs ({len(main.queue)} waiting)")

        if interactive:
            await interactive_loop(main)
        else:
            await main.wait_until_drained()

        console.print(f"Played [bold]{main.orchestrator.state.songs_played}[/bold] songs")


async def interactive_loop(main: Main):
    console.print(HELP)
    lines: asyncio.Queue[str] = asyncio.Queue()
    loop = asyncio.get_running_loop()
    loop.add_reader(sys.stdin, lambda: lines.put_nowait(sys.stdin.readline()))
    try:
        while True:
            get_line = asyncio.create_task(lines.get())
            drained = asyncio.create_task(main.wait_until_drained())
            done, pending = await asyncio.wait({get_line, drained}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if get_line not in done:
                return
            if not await handle_command(main, get_line.result()):
                return
    finally:
        loop.remove_reader(sys.stdin)


async def handle_command(main: Main, line: str) -> bool:
    """Run one interactive command. Returns False to quit."""
    orchestrator = main.orchestrator
    parts = line.strip().split(maxsplit=1)
    if not parts:
        if line == "":
            # stdin closed
            return False
        return True
    command, arg = parts[0].lower(), (parts[1] if len(parts) > 1 else "")

    if command in ("q", "quit"):
        return False
    if command in ("p", "pause"):
        ok = await orchestrator.pause()
    elif command in ("r", "resume"):
        ok = await orchestrator.resume()
    elif command in ("s", "skip"):
        ok = await orchestrator.skip()
    elif command == "seek":
        try:
            ok = await orchestrator.seek(float(arg) * 1000)
        except ValueError:
            console.print("[red]seek needs a number of seconds[/red]")
            return True
    elif command in ("vol", "volume"):
        try:
            ok = await orchestrator.set_volume(int(arg))
        except ValueError:
            console.print("[red]volume needs a number between 0 and 100[/red]")
            return True
    elif command == "add":
        ok = await main.add(arg) is not None
    elif command == "status":
        print_status(main)
        return True
    else:
        console.print(HELP)
        return True

    if not ok:
        console.print(f"[yellow]{command}: nothing to do[/yellow]")
    return True


def print_status(main: Main):
    orchestrator = main.orchestrator
    current = orchestrator.current
    if current is None or orchestrator.phase == Phase.IDLE:
        console.print("Nothing playing")
    else:
        elapsed = orchestrator.position_ms() / 1000
        console.print(
            f"[bold]{orchestrator.phase.value}[/bold] {current.item.title} "
            f"[dim]{int(elapsed // 60)}:{int(elapsed % 60):02d}[/dim]"
        )
    console.print(queue_table([item.to_dict() for item in main.queue.snapshot()]))


def queue_table(rows: list[dict]) -> Table:
    table = Table(title="Queue")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Requester")
    table.add_column("Status")
    for i, row in enumerate(rows, 1):
        title = row.get("title") or row["content"]
        if row.get("is_priority"):
            title = f"[bold magenta]★[/bold magenta] {title}"
        table.add_row(str(i), title, row.get("requester_id") or "", row.get("download_status") or "")
    return table


@songqueue.command()
@click.pass_context
def queue(ctx):
    """Show the songs saved from the last session."""
    config = _config(ctx)
    database = db.Database.open(config.session.database_path)
    rows = database.load_queue_items()
    if not rows:
        console.print("The queue is empty")
        return
    console.print(queue_table(rows))


@songqueue.group()
def vip():
    """Manage requesters whose songs jump the queue."""


@vip.command("add")
@click.argument("user_id")
@click.pass_context
def vip_add(ctx, user_id):
    database = db.Database.open(_config(ctx).session.database_path)
    database.add_priority_user(user_id)
    console.print(f"[green]{user_id}[/green] now has priority")


@vip.command("remove")
@click.argument("user_id")
@click.pass_context
def vip_remove(ctx, user_id):
    database = db.Database.open(_config(ctx).session.database_path)
    database.remove_priority_user(user_id)
    console.print(f"[yellow]{user_id}[/yellow] no longer has priority")


@vip.command("list")
@click.pass_context
def vip_list(ctx):
    database = db.Database.open(_config(ctx).session.database_path)
    users = database.priority_users()
    if not users:
        console.print("No priority users")
    for user in users:
        console.print(user)


@songqueue.group()
def config():
    """Manage the configuration file."""


@config.command("path")
@click.pass_context
def config_path(ctx):
    """Display the path of the config file."""
    console.print(f"Config path: [bold cyan]'{ctx.obj['config_path']}'")


@config.command("reset")
@click.option("-y", "--yes", is_flag=True)
@click.pass_context
def config_reset(ctx, yes):
    """Reset the config file."""
    config_path = ctx.obj["config_path"]
    if not yes:
        if not click.confirm(f"Are you sure you want to reset the config file at {config_path}?"):
            console.print("[green]Reset aborted")
            return

    set_user_defaults(config_path)
    console.print(f"Reset the config file at [bold cyan]{config_path}!")


def main():
    songqueue(obj={})


if __name__ == "__main__":
    main()
