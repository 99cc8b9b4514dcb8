"""
Tests for the ExportClient class.
"""
import json

import pytest

from archiveview.export.client import ExportClient, is_message_page
from archiveview.export.errors import (
    ChannelNotFoundError,
    ExportFormatError,
    ExportTransportError,
    InvalidNameError,
)


@pytest.fixture
def data_dir(tmp_path):
    """Create an export with one channel split over two pages."""
    channel_dir = tmp_path / "acme" / "general"
    channel_dir.mkdir(parents=True)
    (channel_dir / "2021-01-02.json").write_text(json.dumps([
        {"ts": "1609545600.000100", "text": "second day", "user": "U1"},
    ]))
    (channel_dir / "2021-01-01.json").write_text(json.dumps([
        {"ts": "1609459300.000100", "text": "later", "user": "U2"},
        {"ts": "1609459200.000100", "text": "first", "user": "U1"},
    ]))
    (channel_dir / "channel-metadata.json").write_text('{"channels": {}}')
    (channel_dir / "notes.txt").write_text("not a page")
    return tmp_path


@pytest.fixture
def client(data_dir):
    """Create an ExportClient on the export directory."""
    return ExportClient(data_dir)


@pytest.mark.asyncio
async def test_list_channel_files(client):
    """Test listing all files of a channel."""
    files = await client.list_channel_files("acme", "general")
    assert files == ["2021-01-01.json", "2021-01-02.json", "channel-metadata.json", "notes.txt"]


@pytest.mark.asyncio
async def test_list_missing_channel(client):
    """Test that a missing channel raises ChannelNotFoundError."""
    with pytest.raises(ChannelNotFoundError):
        await client.list_channel_files("acme", "random")


def test_message_page_files(client):
    """Test that only JSON pages other than the metadata sidecar are selected."""
    names = ["2021-01-01.json", "channel-metadata.json", "notes.txt", "users.JSON"]
    assert client.message_page_files(names) == ["2021-01-01.json"]
    assert not is_message_page("channel-metadata.json")
    assert is_message_page("channel-metadata.json", metadata_file_name="counts.json")


@pytest.mark.asyncio
async def test_fetch_file(client):
    """Test reading one page file."""
    page = await client.fetch_file("acme", "general", "2021-01-02.json")
    assert page == [{"ts": "1609545600.000100", "text": "second day", "user": "U1"}]


@pytest.mark.asyncio
async def test_fetch_missing_file(client):
    """Test that a missing file is a transport error."""
    with pytest.raises(ExportTransportError):
        await client.fetch_file("acme", "general", "2020-12-31.json")


@pytest.mark.asyncio
async def test_fetch_malformed_file(client, data_dir):
    """Test that a file that is not JSON is a format error."""
    (data_dir / "acme" / "general" / "broken.json").write_text("[{")

    with pytest.raises(ExportFormatError):
        await client.fetch_file("acme", "general", "broken.json")


@pytest.mark.asyncio
async def test_fetch_rejects_path_traversal(client):
    """Test that file names cannot leave the channel directory."""
    with pytest.raises(InvalidNameError):
        await client.fetch_file("acme", "general", "../../secret.json")


@pytest.mark.asyncio
async def test_load_channel_messages(client):
    """Test that pages are concatenated and ordered by timestamp."""
    messages = await client.load_channel_messages("acme", "general")
    assert [m["text"] for m in messages] == ["first", "later", "second day"]


@pytest.mark.asyncio
async def test_load_channel_messages_skips_bad_pages(client, data_dir):
    """Test that unreadable pages are skipped."""
    (data_dir / "acme" / "general" / "broken.json").write_text("[{")
    (data_dir / "acme" / "general" / "object.json").write_text('{"not": "a list"}')

    messages = await client.load_channel_messages("acme", "general")
    assert len(messages) == 3


@pytest.mark.asyncio
async def test_read_cache(client, data_dir):
    """Test that listings and messages are cached until cleared."""
    await client.list_channel_files("acme", "general")
    first = await client.load_channel_messages("acme", "general")

    (data_dir / "acme" / "general" / "2021-01-03.json").write_text(json.dumps([{"ts": "1609632000"}]))

    assert "2021-01-03.json" not in await client.list_channel_files("acme", "general")
    assert await client.load_channel_messages("acme", "general") == first

    client.clear_cache()

    assert "2021-01-03.json" in await client.list_channel_files("acme", "general")
    assert len(await client.load_channel_messages("acme", "general")) == 4


@pytest.mark.asyncio
async def test_without_read_cache(data_dir):
    """Test that an uncached client always reads the directory."""
    client = ExportClient(data_dir, cache_reads=False)
    await client.list_channel_files("acme", "general")

    (data_dir / "acme" / "general" / "2021-01-03.json").write_text("[]")

    assert "2021-01-03.json" in await client.list_channel_files("acme", "general")
