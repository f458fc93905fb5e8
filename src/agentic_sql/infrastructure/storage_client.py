"""
Supabase Storage client for snapshot blobs.

This module provides a minimal async client for the Supabase Storage
REST API: upload, download, list and delete objects in a bucket. It
backs the Supabase snapshot store.
"""

from typing import Any, Dict, List, Optional
import httpx

from ..config import StorageConfig
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id
from ..domain.errors import ConfigurationError, StorageConnectionError, StorageFileError


logger = get_module_logger()


class StorageClient:
    """
    Minimal async Supabase Storage client.

    This is a thin infrastructure layer: it moves bytes in and out of a
    bucket. Naming, metadata and snapshot semantics live in the snapshot
    store repository.

    Features:
    - Upload (upsert), download, list and delete objects
    - Connection pooling through a shared httpx.AsyncClient
    - Structured logging with trace IDs

    Usage:
        client = StorageClient(config)
        await client.connect()

        await client.upload_file(None, "sales.sqlite", image, "application/vnd.sqlite3")
        image = await client.download_file(None, "sales.sqlite")
        objects = await client.list_files(None)
        await client.delete_file(None, "sales.sqlite")

        await client.close()
    """

    def __init__(self, config: StorageConfig):
        """
        Initialize storage client with configuration.

        Args:
            config: Storage configuration

        Raises:
            ConfigurationError: If the Supabase URL or key is missing
        """
        if not config.supabase_url or not config.supabase_key:
            raise ConfigurationError(
                "Supabase snapshot storage requires STORAGE__SUPABASE_URL and STORAGE__SUPABASE_KEY"
            )

        self.config = config
        self._client: Optional[httpx.AsyncClient] = None
        self._is_connected = False

        self.storage_url = f"{config.supabase_url.rstrip('/')}/storage/v1"

        logger.info(
            "StorageClient initialized",
            supabase_url=config.supabase_url,
            default_bucket=config.default_bucket,
            trace_id=current_trace_id()
        )

    async def connect(self) -> None:
        """
        Open the pooled HTTP client and check the storage endpoint.

        Raises:
            StorageConnectionError: If the endpoint cannot be reached
        """
        if self._is_connected:
            logger.warning("Storage client already connected", trace_id=current_trace_id())
            return

        trace_id = current_trace_id()
        logger.info("Initializing storage client", trace_id=trace_id)

        try:
            self._client = httpx.AsyncClient(
                base_url=self.storage_url,
                headers={
                    "Authorization": f"Bearer {self.config.supabase_key}",
                    "apikey": self.config.supabase_key or ""
                },
                timeout=httpx.Timeout(
                    connect=self.config.connect_timeout_seconds,
                    read=self.config.download_timeout_seconds,
                    write=self.config.write_timeout_seconds,
                    pool=self.config.pool_timeout_seconds
                ),
                limits=httpx.Limits(
                    max_connections=self.config.max_connections,
                    max_keepalive_connections=self.config.max_keepalive_connections
                )
            )

            # The storage root answers 200 or 404 when reachable and authorized
            response = await self._client.get("/")
            if response.status_code not in (200, 404):
                raise StorageConnectionError(f"Storage connection test failed: {response.text}")

            self._is_connected = True
            logger.info("Storage client initialized successfully", trace_id=trace_id)

        except Exception as e:
            error_msg = f"Failed to initialize storage client: {e}"
            logger.error(error_msg, error_type=type(e).__name__, trace_id=trace_id)
            if self._client:
                await self._client.aclose()
                self._client = None
            raise StorageConnectionError(error_msg) from e

    async def close(self) -> None:
        """Close HTTP client and release resources."""
        trace_id = current_trace_id()
        logger.info("Closing storage client", trace_id=trace_id)

        if self._client:
            await self._client.aclose()

        self._is_connected = False
        self._client = None
        logger.info("Storage client closed", trace_id=trace_id)

    def is_connected(self) -> bool:
        """Check if storage client is connected."""
        return self._is_connected and self._client is not None

    def _require_client(self) -> httpx.AsyncClient:
        if not self.is_connected() or self._client is None:
            raise StorageConnectionError("Storage client is not connected")
        return self._client

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        bucket: str,
        **kwargs: Any
    ) -> httpx.Response:
        """Send one request, mapping HTTP and transport failures to StorageFileError."""
        client = self._require_client()
        trace_id = current_trace_id()

        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
            return response

        except httpx.HTTPStatusError as e:
            error_msg = f"Failed to {operation}: {e.response.text}"
            logger.error(
                error_msg,
                status_code=e.response.status_code,
                bucket=bucket,
                url=url,
                trace_id=trace_id
            )
            raise StorageFileError(error_msg, details={"status_code": e.response.status_code}) from e

        except httpx.HTTPError as e:
            error_msg = f"Failed to {operation}: {e}"
            logger.error(error_msg, error_type=type(e).__name__, bucket=bucket, url=url, trace_id=trace_id)
            raise StorageFileError(error_msg) from e

    async def download_file(self, bucket: Optional[str], file_path: str) -> bytes:
        """
        Download an object.

        Args:
            bucket: Bucket name (uses default if not specified)
            file_path: Object path in bucket

        Returns:
            Object content as bytes

        Raises:
            StorageConnectionError: If client is not connected
            StorageFileError: If download fails (details["status_code"] is 404/400 for a missing object)
        """
        bucket_name = bucket or self.config.default_bucket
        clean_path = file_path.lstrip("/")

        response = await self._send(
            "download file", "GET", f"/object/{bucket_name}/{clean_path}", bucket_name
        )

        logger.info(
            "File downloaded",
            bucket=bucket_name,
            file_path=clean_path,
            size_bytes=len(response.content),
            trace_id=current_trace_id()
        )
        return response.content

    async def upload_file(
        self,
        bucket: Optional[str],
        file_path: str,
        file_data: bytes,
        content_type: Optional[str] = None,
        upsert: bool = True
    ) -> Dict[str, Any]:
        """
        Upload an object, overwriting by default.

        Raises:
            StorageConnectionError: If client is not connected
            StorageFileError: If upload fails
        """
        bucket_name = bucket or self.config.default_bucket
        clean_path = file_path.lstrip("/")

        headers = {}
        if content_type:
            headers["Content-Type"] = content_type
        if upsert:
            headers["x-upsert"] = "true"

        response = await self._send(
            "upload file",
            "POST",
            f"/object/{bucket_name}/{clean_path}",
            bucket_name,
            content=file_data,
            headers=headers,
            timeout=self.config.upload_timeout_seconds
        )

        logger.info(
            "File uploaded",
            bucket=bucket_name,
            file_path=clean_path,
            size_bytes=len(file_data),
            trace_id=current_trace_id()
        )
        return response.json()

    async def list_files(self, bucket: Optional[str], prefix: str = "", limit: int = 1000) -> List[Dict[str, Any]]:
        """
        List objects under a prefix.

        Returns:
            Object entries as returned by Supabase (name, updated_at, created_at, metadata)
        """
        bucket_name = bucket or self.config.default_bucket

        response = await self._send(
            "list files",
            "POST",
            f"/object/list/{bucket_name}",
            bucket_name,
            json={"prefix": prefix, "limit": limit, "offset": 0}
        )
        return list(response.json())

    async def delete_file(self, bucket: Optional[str], file_path: str) -> None:
        """
        Delete an object.

        Raises:
            StorageConnectionError: If client is not connected
            StorageFileError: If deletion fails
        """
        bucket_name = bucket or self.config.default_bucket
        clean_path = file_path.lstrip("/")

        await self._send(
            "delete file",
            "DELETE",
            f"/object/{bucket_name}",
            bucket_name,
            json={"prefixes": [clean_path]}
        )
        logger.info("File deleted", bucket=bucket_name, file_path=clean_path, trace_id=current_trace_id())
