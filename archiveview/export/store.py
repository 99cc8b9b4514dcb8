"""
Durable storage of per-workspace channel metadata.
"""
import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger
from pydantic import ValidationError

from archiveview.export.client import DEFAULT_METADATA_FILE_NAME, check_path_component, read_text
from archiveview.export.errors import ExportTransportError, MetadataFormatError, MetadataWriteError
from archiveview.export.models import WorkspaceMetadata


class MetadataStore:
    """Reads and writes the `channel-metadata.json` document of each workspace."""

    def __init__(self, data_dir: Union[str, Path], file_name: str = DEFAULT_METADATA_FILE_NAME):
        """
        Initialize the metadata store.

        Args:
            data_dir: Directory holding one subdirectory per workspace
            file_name: Name of the metadata document inside a workspace directory
        """
        self.data_dir = Path(data_dir)
        self.file_name = file_name
        logger.debug(f"Initialized metadata store in {self.data_dir}")

    def path_for(self, workspace: str) -> Path:
        """Get the path of the metadata document of a workspace."""
        return self.data_dir / check_path_component(workspace, "workspace") / self.file_name

    async def read(self, workspace: str) -> Optional[WorkspaceMetadata]:
        """
        Read the metadata of a workspace.

        Args:
            workspace: Workspace directory name

        Returns:
            The stored snapshot, or None if the workspace has no metadata document

        Raises:
            MetadataFormatError: If the document is not JSON or lacks a `channels` map
        """
        path = self.path_for(workspace)
        try:
            content = await asyncio.to_thread(read_text, path)
        except FileNotFoundError:
            logger.debug(f"No metadata document for workspace {workspace} at {path}")
            return None
        except OSError as e:
            raise ExportTransportError(f"Failed to read metadata for workspace {workspace}: {e}") from e
        except UnicodeDecodeError as e:
            raise MetadataFormatError(f"Metadata for workspace {workspace} is not UTF-8 text") from e

        try:
            document: Any = json.loads(content)
        except ValueError as e:
            raise MetadataFormatError(f"Metadata for workspace {workspace} is not valid JSON: {e}") from e

        if not isinstance(document, dict) or "channels" not in document:
            raise MetadataFormatError(f"Metadata for workspace {workspace} has no channels map")

        try:
            metadata = WorkspaceMetadata.from_document(document)
        except ValidationError as e:
            raise MetadataFormatError(f"Invalid metadata for workspace {workspace}: {e}") from e

        logger.info(f"Read metadata for workspace {workspace}: {len(metadata.channels)} channels")
        return metadata

    async def write(self, workspace: str, metadata: WorkspaceMetadata) -> None:
        """
        Replace the metadata document of a workspace.

        Args:
            workspace: Workspace directory name
            metadata: Snapshot to store

        Raises:
            MetadataWriteError: If the workspace does not exist or the write fails
        """
        path = self.path_for(workspace)
        if not path.parent.is_dir():
            raise MetadataWriteError(f"Workspace directory {path.parent} does not exist")

        content = json.dumps(metadata.to_document(), indent=2)
        try:
            await asyncio.to_thread(self._replace_file, path, content)
        except OSError as e:
            raise MetadataWriteError(f"Failed to write metadata for workspace {workspace}: {e}") from e

        logger.info(f"Saved metadata for workspace {workspace} to {path}")

    @staticmethod
    def _replace_file(path: Path, content: str) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
