"""
Storage Abstraction Layer - The Bridge Pattern

Provides a clean interface for blob storage with LocalStorage
(development) and AzureBlobStorage (production). The caller chooses the
key; implementations never rename the object, so the key recorded on an
Image is exactly where the bytes live.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel

from src.core.config import Settings
from src.core.exceptions import StorageError
from src.core.logging import get_logger

logger = get_logger(__name__)


class StoredObject(BaseModel):
    """Result of a successful upload."""
    key: str
    location: str


class IStorage(ABC):
    """Interface for storage operations - The Bridge"""

    @abstractmethod
    async def upload(
        self,
        file_data: bytes,
        key: str,
        content_type: str = "image/tiff"
    ) -> StoredObject:
        """
        Upload bytes under ``key``.

        Args:
            file_data: Raw bytes of the file
            key: Full object key, including any folder prefix
            content_type: MIME type of the file

        Returns:
            StoredObject with the key and a location URL/path

        Raises:
            StorageError: the upload did not complete
        """
        pass

    async def close(self):
        """Release client connections."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(self, base_path: str = "./data/storage"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    async def upload(
        self,
        file_data: bytes,
        key: str,
        content_type: str = "image/tiff"
    ) -> StoredObject:
        file_path = self.base_path / key
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(file_path.write_bytes, file_data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

        return StoredObject(key=key, location=file_path.resolve().as_uri())


class AzureBlobStorage(IStorage):
    """Azure Blob Storage implementation for production."""

    def __init__(self, connection_string: str, container_name: str = "farm-imagery"):
        from azure.storage.blob import BlobServiceClient

        self.blob_service_client = BlobServiceClient.from_connection_string(connection_string)
        self.container_name = container_name
        self.container_client = self.blob_service_client.get_container_client(container_name)

    def _upload_sync(self, file_data: bytes, key: str, content_type: str) -> StoredObject:
        from azure.storage.blob import ContentSettings

        blob_client = self.container_client.get_blob_client(key)
        blob_client.upload_blob(
            file_data,
            content_settings=ContentSettings(content_type=content_type),
            overwrite=True
        )
        return StoredObject(key=key, location=blob_client.url)

    async def upload(
        self,
        file_data: bytes,
        key: str,
        content_type: str = "image/tiff"
    ) -> StoredObject:
        from azure.core.exceptions import AzureError

        try:
            return await asyncio.to_thread(self._upload_sync, file_data, key, content_type)
        except AzureError as e:
            raise StorageError(f"Azure upload failed for {key}: {e}") from e

    async def close(self):
        self.blob_service_client.close()


def build_storage(settings: Settings) -> IStorage:
    """
    Create the storage implementation for this environment.

    Production with a connection string gets Azure Blob Storage; everything
    else writes to the local filesystem.
    """
    if settings.ENVIRONMENT.upper() == "PROD" and settings.AZURE_STORAGE_CONNECTION_STRING:
        logger.info("storage_selected", backend="azure", container=settings.AZURE_CONTAINER_NAME)
        return AzureBlobStorage(
            connection_string=settings.AZURE_STORAGE_CONNECTION_STRING,
            container_name=settings.AZURE_CONTAINER_NAME
        )

    if settings.ENVIRONMENT.upper() == "PROD":
        logger.warning("storage_fallback_local", reason="AZURE_STORAGE_CONNECTION_STRING not set")
    return LocalStorage(base_path=settings.LOCAL_STORAGE_PATH)
