"""
Cloud Storage object fetcher.

Downloads a complete object into memory. The storage client is process-wide
and shared by all invocations.
"""

import asyncio
import logging
from typing import Optional

from google.api_core import exceptions as gcs_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage
from google.resumable_media import DataCorruption

from image_describer.core.errors import FetchError

logger = logging.getLogger(__name__)


class StorageObjectFetcher:
    """Retrieves raw object bytes from Cloud Storage."""

    def __init__(self, client: Optional[storage.Client] = None):
        """
        Initialize the fetcher.

        Args:
            client: Shared storage client. Created with Application Default
                Credentials when omitted.
        """
        self.client = client or storage.Client()

    def _download(self, bucket: str, name: str) -> bytes:
        blob = self.client.bucket(bucket).blob(name)
        # Failures are reported to the caller rather than retried here
        return blob.download_as_bytes(retry=None)

    async def fetch(self, bucket: str, name: str) -> bytes:
        """
        Download the whole object.

        Args:
            bucket: Bucket name
            name: Object name

        Returns:
            The object's complete binary content

        Raises:
            FetchError: If the object is missing, access is denied, or the
                transfer fails.
        """
        if not bucket or not name:
            raise ValueError("bucket and name must be non-empty strings")

        try:
            data = await asyncio.to_thread(self._download, bucket, name)
        except gcs_exceptions.NotFound as e:
            raise FetchError(
                f"Object gs://{bucket}/{name} not found",
                bucket, name, reason=FetchError.NOT_FOUND
            ) from e
        except auth_exceptions.TransportError as e:
            raise FetchError(
                f"Download of gs://{bucket}/{name} failed: {e}",
                bucket, name, reason=FetchError.TRANSFER_FAILED
            ) from e
        except (gcs_exceptions.Forbidden, gcs_exceptions.Unauthorized, auth_exceptions.GoogleAuthError) as e:
            raise FetchError(
                f"Access denied to gs://{bucket}/{name}: {e}",
                bucket, name, reason=FetchError.ACCESS_DENIED
            ) from e
        except (gcs_exceptions.GoogleAPIError, DataCorruption, OSError) as e:
            raise FetchError(
                f"Download of gs://{bucket}/{name} failed: {e}",
                bucket, name, reason=FetchError.TRANSFER_FAILED
            ) from e

        logger.debug(f"Downloaded gs://{bucket}/{name} ({len(data)} bytes)")
        return data
