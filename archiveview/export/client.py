"""
Client for reading channel page files from an export directory.
"""
import asyncio
import json
import math
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from archiveview.export.errors import (
    ChannelNotFoundError,
    ExportError,
    ExportFormatError,
    ExportTransportError,
    InvalidNameError,
)
from archiveview.export.models import parse_timestamp

DEFAULT_METADATA_FILE_NAME = "channel-metadata.json"
PAGE_FILE_SUFFIX = ".json"

# I/O errors worth another attempt, e.g. on network mounts
TRANSIENT_ERRORS = (BlockingIOError, InterruptedError, TimeoutError)


@retry(
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def read_text(path: Path) -> str:
    """Read a UTF-8 file."""
    return path.read_text(encoding="utf-8")


@retry(
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def list_files(path: Path) -> List[str]:
    """List the names of the regular files in a directory, sorted."""
    with os.scandir(path) as entries:
        return sorted(entry.name for entry in entries if entry.is_file())


def check_path_component(value: str, kind: str) -> str:
    """
    Reject names that would escape their parent directory.

    Raises:
        InvalidNameError: If the name is empty, a dot entry, or contains a separator
    """
    if not value or value in (".", "..") or "/" in value or "\\" in value or "\x00" in value:
        raise InvalidNameError(f"Invalid {kind} name: {value!r}")
    return value


def is_message_page(file_name: str, metadata_file_name: str = DEFAULT_METADATA_FILE_NAME) -> bool:
    """Whether a channel file holds messages, as opposed to the metadata sidecar."""
    return file_name.endswith(PAGE_FILE_SUFFIX) and file_name != metadata_file_name


def _ts_sort_key(message: Dict[str, Any]) -> float:
    value = parse_timestamp(message.get("ts"))
    return math.inf if value is None else value


class ExportClient:
    """Client for listing and reading the page files of exported channels."""

    def __init__(
        self,
        data_dir: Union[str, Path],
        metadata_file_name: str = DEFAULT_METADATA_FILE_NAME,
        cache_reads: bool = True,
    ):
        """
        Initialize the export client.

        Args:
            data_dir: Directory holding one subdirectory per workspace
            metadata_file_name: Name of the metadata sidecar, never treated as a page file
            cache_reads: Whether to cache file listings and loaded channel messages
        """
        self.data_dir = Path(data_dir)
        self.metadata_file_name = metadata_file_name
        self.cache_reads = cache_reads
        self._file_list_cache: Dict[str, List[str]] = {}
        self._message_cache: Dict[str, List[Dict[str, Any]]] = {}
        logger.debug(f"Initialized export client for {self.data_dir}")

    @staticmethod
    def _cache_key(workspace: str, channel: str) -> str:
        return f"{workspace}:{channel}"

    def channel_dir(self, workspace: str, channel: str) -> Path:
        """Get the directory holding the page files of a channel."""
        return self.data_dir / check_path_component(workspace, "workspace") / check_path_component(channel, "channel")

    def message_page_files(self, file_names: Iterable[str]) -> List[str]:
        """Select the message page files from a channel listing."""
        return [name for name in file_names if is_message_page(name, self.metadata_file_name)]

    async def list_channel_files(self, workspace: str, channel: str) -> List[str]:
        """
        List the files of a channel directory.

        Args:
            workspace: Workspace directory name
            channel: Channel directory name

        Returns:
            File names, including any that are not message pages
        """
        cache_key = self._cache_key(workspace, channel)
        if self.cache_reads and cache_key in self._file_list_cache:
            return list(self._file_list_cache[cache_key])

        path = self.channel_dir(workspace, channel)
        try:
            logger.debug(f"Listing files of channel {channel} in workspace {workspace}")
            names = await asyncio.to_thread(list_files, path)
        except (FileNotFoundError, NotADirectoryError) as e:
            logger.error(f"Channel {channel} not found in workspace {workspace}")
            raise ChannelNotFoundError(f"Channel {channel} not found in workspace {workspace}") from e
        except OSError as e:
            logger.error(f"Error listing files of channel {channel} in workspace {workspace}: {e}")
            raise ExportTransportError(f"Failed to list files of channel {channel}: {e}") from e

        if self.cache_reads:
            self._file_list_cache[cache_key] = names
        return list(names)

    async def fetch_file(self, workspace: str, channel: str, file_name: str) -> Any:
        """
        Read and parse one JSON file of a channel.

        Args:
            workspace: Workspace directory name
            channel: Channel directory name
            file_name: Name of the file inside the channel directory

        Returns:
            The parsed JSON value

        Raises:
            ExportTransportError: If the file cannot be read
            ExportFormatError: If the file is not valid JSON
        """
        path = self.channel_dir(workspace, channel) / check_path_component(file_name, "file")
        try:
            content = await asyncio.to_thread(read_text, path)
        except OSError as e:
            raise ExportTransportError(f"Failed to read {file_name} of channel {channel}: {e}") from e
        except UnicodeDecodeError as e:
            raise ExportFormatError(f"{file_name} of channel {channel} is not UTF-8 text") from e

        try:
            return json.loads(content)
        except ValueError as e:
            raise ExportFormatError(f"{file_name} of channel {channel} is not valid JSON: {e}") from e

    async def load_channel_messages(self, workspace: str, channel: str) -> List[Dict[str, Any]]:
        """
        Load all messages of a channel.

        Page files that cannot be read or parsed are logged and skipped.

        Args:
            workspace: Workspace directory name
            channel: Channel directory name

        Returns:
            Raw message records of all page files, ordered by timestamp
        """
        cache_key = self._cache_key(workspace, channel)
        if self.cache_reads and cache_key in self._message_cache:
            return list(self._message_cache[cache_key])

        logger.info(f"Loading messages of channel {channel} in workspace {workspace}")
        page_files = self.message_page_files(await self.list_channel_files(workspace, channel))
        pages = await asyncio.gather(
            *(self.fetch_file(workspace, channel, name) for name in page_files),
            return_exceptions=True,
        )

        messages: List[Dict[str, Any]] = []
        for name, page in zip(page_files, pages):
            if isinstance(page, ExportError):
                logger.warning(f"Skipping page {name} of channel {channel}: {page}")
                continue
            if isinstance(page, BaseException):
                raise page
            if not isinstance(page, list):
                logger.warning(f"Skipping page {name} of channel {channel}: not a list of messages")
                continue
            messages.extend(record for record in page if isinstance(record, dict))

        messages.sort(key=_ts_sort_key)
        logger.info(f"Loaded {len(messages)} messages from {len(page_files)} pages of channel {channel}")

        if self.cache_reads:
            self._message_cache[cache_key] = messages
        return list(messages)

    def clear_cache(self) -> None:
        """Forget all cached listings and messages."""
        self._file_list_cache.clear()
        self._message_cache.clear()
        logger.debug("Cleared export client cache")
