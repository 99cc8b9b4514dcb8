"""
Reconstruction of threads from the flat message list of a channel.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger
from pydantic import ValidationError

from archiveview.export.models import AssembledChannel, ExportMessage, parse_timestamp

# Valid message times fall within the years 1970 to 2100
MAX_TIMESTAMP = datetime(2101, 1, 1, tzinfo=timezone.utc).timestamp()

MessageInput = Union[ExportMessage, Dict[str, Any]]


def is_valid_timestamp(ts: Optional[str]) -> bool:
    """Check that `ts` is a number of seconds since the epoch from 1970 through 2100."""
    value = parse_timestamp(ts)
    return value is not None and 0 <= value < MAX_TIMESTAMP


def parse_message(record: Any) -> Optional[ExportMessage]:
    """
    Build a message model from a raw page file record.

    Fields that do not fit the model are ignored instead of rejecting the
    whole record, so only a missing or invalid timestamp can drop a message.

    Returns:
        The message, or None if the record is not a JSON object
    """
    if not isinstance(record, dict):
        logger.warning(f"Dropping message record that is not an object: {type(record).__name__}")
        return None
    try:
        return ExportMessage.from_export(record)
    except ValidationError as e:
        invalid = {str(error["loc"][0]) for error in e.errors() if error["loc"]}
        logger.warning(f"Ignoring invalid fields {sorted(invalid)} of message {record.get('ts')!r}")
        return ExportMessage.from_export({key: value for key, value in record.items() if key not in invalid})


def normalize_timestamp(message: ExportMessage) -> Optional[ExportMessage]:
    """
    Repair or reject the timestamp of a message.

    A message without `ts` takes the creation time of its first attachment
    that has one. The input message is never modified.

    Args:
        message: Message to check

    Returns:
        The message (or a repaired copy), or None if it has no valid timestamp
    """
    if not message.ts:
        created = next((f.created for f in message.files if f.created), None)
        if created is None:
            logger.warning(f"Dropping message without timestamp: {message.text[:50]!r}")
            return None
        message = message.model_copy(update={"ts": created})

    if not is_valid_timestamp(message.ts):
        logger.warning(f"Dropping message with invalid timestamp: {message.ts!r}")
        return None
    return message


def _sort_key(message: ExportMessage) -> float:
    return float(message.ts)


def assemble(messages: Sequence[MessageInput]) -> AssembledChannel:
    """
    Group a flat list of channel messages into root messages and thread replies.

    A message is a reply if its `thread_ts` is set and differs from its own
    `ts`; every other message is a root. Replies are grouped by `thread_ts`
    regardless of the root's advertised `reply_count`. Roots and each reply
    group are sorted by numeric timestamp, keeping input order for ties.

    Args:
        messages: Messages as ExportMessage models or raw page file records

    Returns:
        AssembledChannel with ordered roots and replies keyed by root timestamp
    """
    roots: List[ExportMessage] = []
    replies_by_root: Dict[str, List[ExportMessage]] = defaultdict(list)
    dropped = 0

    for item in messages:
        message = item if isinstance(item, ExportMessage) else parse_message(item)
        if message is not None:
            message = normalize_timestamp(message)
        if message is None:
            dropped += 1
            continue

        if message.is_reply:
            replies_by_root[message.thread_ts].append(message)
        else:
            roots.append(message)

    roots.sort(key=_sort_key)
    for replies in replies_by_root.values():
        replies.sort(key=_sort_key)

    if dropped:
        logger.debug(f"Dropped {dropped} messages without a usable timestamp")
    logger.debug(f"Assembled {len(roots)} root messages and {len(replies_by_root)} threads")
    return AssembledChannel(roots=roots, replies_by_root=dict(replies_by_root))


def format_timestamp(ts: Optional[str]) -> str:
    """
    Format a message timestamp for display, e.g. "01 Jan 2021, 00:00" (UTC).

    Returns "No date" for a missing timestamp and "Invalid date" for one that
    is not a number or lies outside 1970 to 2100.
    """
    if not ts:
        return "No date"
    if not is_valid_timestamp(ts):
        return "Invalid date"
    moment = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    return moment.strftime("%d %b %Y, %H:%M")
