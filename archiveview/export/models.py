"""
Data models for exported messages, channel metadata and assembled threads.
"""
import math
import re
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Decimal seconds since the epoch, e.g. "1609459200.123456"
TIMESTAMP_PATTERN = re.compile(r"-?\d+(?:\.\d*)?")


def _stringify_number(value: Any) -> Any:
    # Exports written by different tools store timestamps as strings or numbers
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def parse_timestamp(value: Any) -> Optional[float]:
    """
    Parse a message timestamp into seconds since the epoch.

    Only plain decimal strings and finite numbers are accepted; strings with
    whitespace, digit separators, exponents or words like "nan" are not.

    Returns:
        The timestamp as a float, or None if it is missing or not a timestamp
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str) or not TIMESTAMP_PATTERN.fullmatch(value):
        return None
    return float(value)


class FileAttachment(BaseModel):
    """Model representing a file attached to an exported message."""

    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    mimetype: Optional[str] = None
    created: Optional[str] = None  # Upload time, used when the message has no ts

    @field_validator("created", mode="before")
    @classmethod
    def coerce_created(cls, value: Any) -> Any:
        return _stringify_number(value)


class ExportMessage(BaseModel):
    """Model representing a message record from a channel page file."""

    model_config = ConfigDict(extra="allow")

    client_msg_id: Optional[str] = None
    type: str = "message"
    user: Optional[str] = None  # Can be None for bot and system messages
    text: str = ""
    ts: Optional[str] = None  # Timestamp that serves as the message ID
    thread_ts: Optional[str] = None  # If part of a thread, the root message's ts
    reply_count: Optional[int] = None
    reactions: List[Dict[str, Any]] = Field(default_factory=list)
    files: List[FileAttachment] = Field(default_factory=list)
    parent_user_id: Optional[str] = None

    @field_validator("ts", "thread_ts", mode="before")
    @classmethod
    def coerce_timestamps(cls, value: Any) -> Any:
        return _stringify_number(value)

    # Some exporters write null instead of omitting the key
    @field_validator("text", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("reactions", "files", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_export(cls, message_data: Dict[str, Any]) -> "ExportMessage":
        """Create an ExportMessage from a raw record of a page file."""
        return cls.model_validate(message_data)

    @property
    def is_reply(self) -> bool:
        """Whether this message is a reply inside another message's thread."""
        return bool(self.thread_ts) and self.thread_ts != self.ts

    @property
    def timestamp(self) -> Optional[float]:
        """The numeric value of `ts`, or None if it is missing or not a number."""
        return parse_timestamp(self.ts)


class ChannelMetadata(BaseModel):
    """Cached message count of one channel."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_count: int = Field(alias="messageCount", ge=0)
    last_counted: datetime = Field(alias="lastCounted")


class WorkspaceMetadata(BaseModel):
    """
    Snapshot of the cached channel metadata of one workspace.

    Snapshots are never changed in place: `with_channel` and `without_channel`
    return new snapshots.
    """

    model_config = ConfigDict(frozen=True)

    channels: Dict[str, ChannelMetadata] = Field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "WorkspaceMetadata":
        """Create a snapshot from a parsed `channel-metadata.json` document."""
        return cls.model_validate(document)

    def to_document(self) -> Dict[str, Any]:
        """Dump the snapshot in the `channel-metadata.json` shape."""
        return self.model_dump(mode="json", by_alias=True)

    def with_channel(self, key: str, metadata: ChannelMetadata) -> "WorkspaceMetadata":
        channels = dict(self.channels)
        channels[key] = metadata
        return WorkspaceMetadata(channels=channels)

    def without_channel(self, key: str) -> "WorkspaceMetadata":
        channels = {name: meta for name, meta in self.channels.items() if name != key}
        return WorkspaceMetadata(channels=channels)


class MessageCount(BaseModel):
    """Outcome of a message count request."""

    workspace: str
    channel: str
    message_count: int
    cached: bool = False  # Served from metadata without reading page files
    persisted: bool = True  # False if the fresh count could not be written back
    warning: Optional[str] = None


class AssembledChannel(BaseModel):
    """Two-level view of a channel: root messages and their thread replies."""

    roots: List[ExportMessage] = Field(default_factory=list)
    replies_by_root: Dict[str, List[ExportMessage]] = Field(default_factory=dict)

    def replies_for(self, root_ts: str) -> List[ExportMessage]:
        """Get the ordered replies of a root message (empty if it has none)."""
        return self.replies_by_root.get(root_ts, [])

    def reply_count(self, root_ts: str) -> int:
        return len(self.replies_for(root_ts))

    @property
    def total_messages(self) -> int:
        return len(self.roots) + sum(len(replies) for replies in self.replies_by_root.values())

    def iter_visible(self, expanded: Iterable[str] = ()) -> Iterator[Tuple[ExportMessage, int]]:
        """
        Iterate over the messages to display, in display order.

        Args:
            expanded: Timestamps of the root messages whose threads are expanded

        Yields:
            (message, depth) pairs, depth 0 for roots and 1 for replies
        """
        expanded = set(expanded)
        for root in self.roots:
            yield root, 0
            if root.ts in expanded:
                for reply in self.replies_for(root.ts):
                    yield reply, 1
