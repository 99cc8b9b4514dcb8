"""
Exceptions raised while reading export data and channel metadata.
"""


class ExportError(Exception):
    """Base class for all export reading errors."""


class ExportTransportError(ExportError):
    """A file or directory of the export could not be read."""


class ChannelNotFoundError(ExportTransportError):
    """The channel directory does not exist in the workspace."""


class ExportFormatError(ExportError):
    """A file was read but its content is not what was expected."""


class MetadataFormatError(ExportFormatError):
    """A channel metadata document is malformed or lacks its `channels` map."""


class MetadataWriteError(ExportError):
    """The channel metadata document could not be persisted."""


class InvalidNameError(ExportError):
    """A workspace, channel or file name would resolve outside its parent directory."""
