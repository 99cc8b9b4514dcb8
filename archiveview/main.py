import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger

from archiveview.config import Settings, get_settings
from archiveview.export.client import ExportClient
from archiveview.export.counter import ChannelCountCache
from archiveview.export.errors import ExportError
from archiveview.export.store import MetadataStore
from archiveview.export.threads import assemble, format_timestamp

app = typer.Typer(help="Inspect archived workspace exports.")


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    logger.remove()
    level = "DEBUG" if verbose or settings.debug else settings.log_level.upper()
    logger.add(sys.stderr, level=level)


def build_services(data_dir: Path, metadata_file_name: str) -> dict:
    """Create the export client and the count cache sharing one data directory."""
    client = ExportClient(data_dir, metadata_file_name=metadata_file_name)
    store = MetadataStore(data_dir, file_name=metadata_file_name)
    counter = ChannelCountCache(store, client, metadata_file_name=metadata_file_name)
    return {"client": client, "counter": counter}


@app.callback()
def main(
    ctx: typer.Context,
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Directory holding the workspace exports"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Read message counts and threads from workspace exports."""
    settings = get_settings()
    configure_logging(settings, verbose)
    ctx.obj = build_services(data_dir or settings.data_dir, settings.metadata_file_name)


@app.command("count")
def count(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Name of the workspace"),
    channels: List[str] = typer.Argument(..., help="Channels to count"),
):
    """Print the message count of each channel, counting page files on a cache miss."""
    counter: ChannelCountCache = ctx.obj["counter"]
    results = asyncio.run(counter.count_channels(workspace, channels))

    failed = False
    for channel, result in results.items():
        if result is None:
            typer.echo(f"{channel}: failed to count messages", err=True)
            failed = True
            continue
        typer.echo(f"{channel}: {result.message_count}{' (cached)' if result.cached else ''}")
        if result.warning:
            typer.echo(f"Warning: {result.warning}", err=True)

    if failed:
        raise typer.Exit(code=1)


async def _clear_workspace(counter: ChannelCountCache, workspace: str) -> int:
    metadata = await counter.load_metadata(workspace)
    for key in metadata.channels:
        await counter.clear_metadata(workspace, key)
    await counter.clear_metadata(workspace)
    return len(metadata.channels)


@app.command("clear")
def clear(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Name of the workspace"),
    channel: Optional[str] = typer.Option(None, "--channel", "-c", help="Only clear this channel"),
):
    """Forget cached message counts so they are counted again."""
    counter: ChannelCountCache = ctx.obj["counter"]
    try:
        if channel:
            asyncio.run(counter.clear_metadata(workspace, channel))
            typer.echo(f"Cleared cached count of {channel} in {workspace}")
        else:
            cleared = asyncio.run(_clear_workspace(counter, workspace))
            typer.echo(f"Cleared {cleared} cached counts in {workspace}")
    except ExportError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


@app.command("show")
def show(
    ctx: typer.Context,
    workspace: str = typer.Argument(..., help="Name of the workspace"),
    channel: str = typer.Argument(..., help="Name of the channel"),
    expand: Optional[List[str]] = typer.Option(None, "--expand", "-e", help="Timestamp of a thread to expand"),
    all_threads: bool = typer.Option(False, "--all-threads", "-a", help="Expand every thread"),
):
    """Print the messages of a channel with their threads."""
    client: ExportClient = ctx.obj["client"]
    try:
        messages = asyncio.run(client.load_channel_messages(workspace, channel))
    except ExportError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    channel_view = assemble(messages)
    expanded = set(channel_view.replies_by_root) if all_threads else set(expand or [])

    for message, depth in channel_view.iter_visible(expanded):
        indent = "    " * depth
        author = message.user or "System Message"
        typer.echo(f"{indent}{format_timestamp(message.ts)} - {author}: {message.text}")

        replies = channel_view.reply_count(message.ts) if depth == 0 else 0
        if replies and message.ts not in expanded:
            typer.echo(f"{indent}    [{replies} {'reply' if replies == 1 else 'replies'}, thread {message.ts}]")


if __name__ == "__main__":
    app()
