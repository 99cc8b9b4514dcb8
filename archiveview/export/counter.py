"""
Cache of per-channel message counts backed by the workspace metadata document.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from loguru import logger

from archiveview.export.client import DEFAULT_METADATA_FILE_NAME, ExportClient, is_message_page
from archiveview.export.errors import ExportError
from archiveview.export.models import ChannelMetadata, MessageCount, WorkspaceMetadata
from archiveview.export.store import MetadataStore


def normalize_channel_key(channel: str) -> str:
    """Get the metadata key of a channel (channel names are case-insensitive)."""
    return channel.casefold()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChannelCountCache:
    """
    Message counts of exported channels, computed on demand and memoized.

    Counting a channel reads every page file, so counts are kept in memory and
    written back to the workspace metadata document. A cached count is trusted
    until it is cleared with `clear_metadata`.

    Concurrent requests share work: the metadata document of a workspace is
    read at most once while a load is pending, and a channel is counted at
    most once while a count is pending. Shared operations are shielded, so a
    caller that stops waiting does not cancel them for the others.
    """

    def __init__(
        self,
        store: MetadataStore,
        client: ExportClient,
        metadata_file_name: str = DEFAULT_METADATA_FILE_NAME,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the count cache.

        Args:
            store: Store holding the metadata document of each workspace
            client: Client used to list and read channel page files
            metadata_file_name: Name of the metadata sidecar, skipped when counting
            clock: Returns the time recorded as `lastCounted` (UTC now by default)
        """
        self.store = store
        self.client = client
        self.metadata_file_name = metadata_file_name
        self._clock = clock or _utc_now
        self._metadata: Dict[str, WorkspaceMetadata] = {}
        self._workspace_loads: Dict[str, asyncio.Task] = {}
        self._channel_counts: Dict[Tuple[str, str], asyncio.Task] = {}
        self._persist_locks: Dict[str, asyncio.Lock] = {}
        self._last_error: Optional[Exception] = None
        logger.debug("Initialized channel count cache")

    @property
    def last_error(self) -> Optional[Exception]:
        """The most recent load or save error, reset by the next successful one."""
        return self._last_error

    def is_loaded(self, workspace: str) -> bool:
        return workspace in self._metadata

    def cached_metadata(self, workspace: str) -> Optional[WorkspaceMetadata]:
        """Get the current in-memory snapshot of a workspace, if loaded."""
        return self._metadata.get(workspace)

    async def load_metadata(self, workspace: str) -> WorkspaceMetadata:
        """
        Get the metadata snapshot of a workspace, reading it from the store once.

        A workspace without a metadata document has no cached counts.

        Raises:
            MetadataFormatError: If the metadata document is malformed
        """
        if workspace in self._metadata:
            return self._metadata[workspace]

        # No await between the lookup and the registration of a new load
        task = self._workspace_loads.get(workspace)
        if task is None:
            task = asyncio.ensure_future(self._load_workspace(workspace))
            self._workspace_loads[workspace] = task
        else:
            logger.debug(f"Already loading metadata for workspace {workspace}, waiting for completion")
        return await asyncio.shield(task)

    async def _load_workspace(self, workspace: str) -> WorkspaceMetadata:
        current = asyncio.current_task()
        registered = False
        logger.info(f"Loading metadata for workspace {workspace}")
        try:
            stored = await self.store.read(workspace)
        except ExportError as e:
            self._last_error = e
            logger.error(f"Error loading metadata for workspace {workspace}: {e}")
            raise
        finally:
            # A clear while loading unregisters this load; its result is then discarded
            registered = self._workspace_loads.get(workspace) is current
            if registered:
                del self._workspace_loads[workspace]

        metadata = stored if stored is not None else WorkspaceMetadata()
        if registered:
            self._metadata[workspace] = metadata
            self._last_error = None
        logger.info(f"Metadata loaded for workspace {workspace}: {len(metadata.channels)} channels")
        return metadata

    async def _count_channel(self, workspace: str, channel: str) -> int:
        logger.info(f"Counting messages for channel {channel} in workspace {workspace}")
        file_names = await self.client.list_channel_files(workspace, channel)
        page_files = [name for name in file_names if is_message_page(name, self.metadata_file_name)]
        pages = await asyncio.gather(
            *(self.client.fetch_file(workspace, channel, name) for name in page_files),
            return_exceptions=True,
        )

        total = 0
        for name, page in zip(page_files, pages):
            if isinstance(page, ExportError):
                logger.warning(f"Skipping file {name} of channel {channel}: {page}")
                continue
            if isinstance(page, BaseException):
                raise page
            if not isinstance(page, list):
                logger.warning(f"Skipping file {name} of channel {channel}: not a list of messages")
                continue
            total += len(page)

        logger.info(f"Found {total} messages in channel {channel} (workspace: {workspace})")
        return total

    async def _persist(self, workspace: str) -> Optional[ExportError]:
        # Writes are serialized per workspace and always store the newest snapshot
        lock = self._persist_locks.setdefault(workspace, asyncio.Lock())
        async with lock:
            snapshot = self._metadata.get(workspace)
            if snapshot is None:
                logger.debug(f"Metadata for workspace {workspace} was cleared, nothing to save")
                return None
            try:
                await self.store.write(workspace, snapshot)
            except ExportError as e:
                self._last_error = e
                logger.warning(f"Could not save metadata for workspace {workspace}: {e}")
                return e
        self._last_error = None
        return None

    async def _count_and_store(self, workspace: str, channel: str, key: str) -> MessageCount:
        current = asyncio.current_task()
        registered = False
        try:
            count = await self._count_channel(workspace, channel)
        finally:
            # A workspace clear while counting unregisters this count
            registered = self._channel_counts.get((workspace, key)) is current
            if registered:
                del self._channel_counts[(workspace, key)]

        snapshot = self._metadata.get(workspace)
        if not registered or snapshot is None:
            logger.warning(f"Metadata for workspace {workspace} was cleared while counting {key}, count not stored")
            return MessageCount(workspace=workspace, channel=channel, message_count=count, persisted=False)

        entry = ChannelMetadata(message_count=count, last_counted=self._clock())
        self._metadata[workspace] = snapshot.with_channel(key, entry)

        error = await self._persist(workspace)
        if error is not None:
            return MessageCount(
                workspace=workspace,
                channel=channel,
                message_count=count,
                persisted=False,
                warning=f"Count kept in memory only, metadata could not be saved: {error}",
            )
        return MessageCount(workspace=workspace, channel=channel, message_count=count)

    async def count_messages(self, workspace: str, channel: str) -> MessageCount:
        """
        Get the message count of a channel along with how it was obtained.

        Args:
            workspace: Workspace directory name
            channel: Channel directory name (matched case-insensitively in metadata)

        Returns:
            MessageCount; `persisted` is False if a fresh count could not be saved

        Raises:
            MetadataFormatError: If the workspace metadata document is malformed
            ExportTransportError: If the channel files cannot be listed
        """
        try:
            metadata = await self.load_metadata(workspace)
            key = normalize_channel_key(channel)

            cached = metadata.channels.get(key)
            if cached is not None:
                logger.debug(
                    f"Using cached count for {key} in workspace {workspace}: {cached.message_count} "
                    f"(last counted: {cached.last_counted.isoformat()})"
                )
                return MessageCount(workspace=workspace, channel=channel, message_count=cached.message_count, cached=True)

            task = self._channel_counts.get((workspace, key))
            if task is None:
                logger.debug(f"No cached count for {key} in workspace {workspace}")
                task = asyncio.ensure_future(self._count_and_store(workspace, channel, key))
                self._channel_counts[(workspace, key)] = task
            else:
                logger.debug(f"Already counting {key} in workspace {workspace}, waiting for completion")
            return await asyncio.shield(task)
        except ExportError as e:
            logger.error(f"Error getting message count for channel {channel} in workspace {workspace}: {e}")
            raise

    async def get_message_count(self, workspace: str, channel: str) -> int:
        """
        Get the message count of a channel, counting its page files on a cache miss.

        A fresh count is returned even if it could not be saved; check
        `last_error` or use `count_messages` to detect that case.
        """
        result = await self.count_messages(workspace, channel)
        return result.message_count

    async def count_channels(self, workspace: str, channels: Iterable[str]) -> Dict[str, Optional[MessageCount]]:
        """
        Count several channels of a workspace concurrently.

        A channel that cannot be counted maps to None and does not affect the others.

        Args:
            workspace: Workspace directory name
            channels: Channel directory names

        Returns:
            Dictionary mapping each channel to its MessageCount, or None on failure
        """
        channels = list(channels)
        results = await asyncio.gather(
            *(self.count_messages(workspace, channel) for channel in channels),
            return_exceptions=True,
        )

        counts: Dict[str, Optional[MessageCount]] = {}
        for channel, result in zip(channels, results):
            if isinstance(result, ExportError):
                counts[channel] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                counts[channel] = result
        return counts

    async def get_message_counts(self, workspace: str, channels: Iterable[str]) -> Dict[str, Optional[int]]:
        """Get the message counts of several channels; failed channels map to None."""
        counts = await self.count_channels(workspace, channels)
        return {channel: result.message_count if result is not None else None for channel, result in counts.items()}

    async def clear_metadata(self, workspace: str, channel: Optional[str] = None) -> None:
        """
        Forget cached counts.

        Args:
            workspace: Workspace directory name
            channel: Channel to forget and remove from the stored metadata. If
                omitted, all in-memory metadata of the workspace is dropped,
                pending counts are not stored, and the next request reads the
                metadata document again.

        Raises:
            MetadataWriteError: If the metadata without the channel cannot be saved
        """
        if channel is None:
            logger.info(f"Clearing all metadata for workspace {workspace}")
            self._metadata.pop(workspace, None)
            self._workspace_loads.pop(workspace, None)
            for pending in [handle for handle in self._channel_counts if handle[0] == workspace]:
                del self._channel_counts[pending]
            return

        key = normalize_channel_key(channel)
        logger.info(f"Clearing metadata for channel {key} in workspace {workspace}")
        metadata = await self.load_metadata(workspace)
        if key not in metadata.channels:
            return

        self._metadata[workspace] = metadata.without_channel(key)
        error = await self._persist(workspace)
        if error is not None:
            logger.error(f"Error clearing metadata for workspace {workspace}: {error}")
            raise error
