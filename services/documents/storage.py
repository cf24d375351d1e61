"""
Artifact Storage

StorageAdapter is the only component that reads or writes rendered PDFs.
It delegates to a blob store (Supabase Storage in production, an in-memory
dict in mock mode and tests) and guarantees that every failure surfaces as
one of three coded errors:

    NotFoundError           - the key never existed or was purged (not retryable)
    StorageUnavailableError - the store could not be reached (retry with backoff)
    OperationTimeoutError   - the call overran its timeout (safe to retry)
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

import httpx
from storage3.utils import StorageException

from services import supabase_storage

from .exceptions import NotFoundError, OperationTimeoutError, StorageUnavailableError
from .execution import run_with_timeout

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = 'application/pdf'
KEY_PREFIX = 'documents'


# =============================================================================
# BLOB STORES
# =============================================================================

class SupabaseBlobStore:
    """Blob store backed by a Supabase Storage bucket."""

    def __init__(self, bucket: str = supabase_storage.DOCUMENTS_BUCKET):
        self.bucket = bucket

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> None:
        self._call(key, supabase_storage.upload_file, self.bucket, key, data, content_type, True)

    def get(self, key: str) -> bytes:
        return self._call(key, supabase_storage.download_file, self.bucket, key)

    def list_prefix(self, prefix: str) -> List[str]:
        folder, _, name_prefix = prefix.rpartition('/')
        keys = self._call(prefix, supabase_storage.list_files, self.bucket, folder, name_prefix or None)
        return [k for k in keys if k.startswith(prefix)]

    def delete(self, key: str) -> None:
        self._call(key, supabase_storage.delete_file, self.bucket, key)

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        url = self._call(key, supabase_storage.get_signed_url, self.bucket, key, ttl_seconds)
        if not url:
            raise NotFoundError(f"No object at {key}", key=key)
        return url

    def _call(self, key: str, func: Callable, *args):
        """Invoke a supabase_storage helper, translating client errors to coded errors."""
        try:
            return func(*args)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(f"Storage request for {key} timed out: {e}", key=key)
        except httpx.HTTPStatusError as e:
            raise self._from_status(key, e.response.status_code, str(e))
        except httpx.TransportError as e:
            logger.error(f"Storage unreachable for {key}: {e}")
            raise StorageUnavailableError(f"Storage unreachable: {e}", key=key)
        except StorageException as e:
            status, message = self._describe(e)
            raise self._from_status(key, status, message)
        except ValueError as e:
            # get_supabase_client() without credentials
            raise StorageUnavailableError(str(e), key=key)

    @staticmethod
    def _describe(error: StorageException):
        status = getattr(error, 'status', None)
        message = getattr(error, 'message', None) or str(error)
        if status is None and error.args and isinstance(error.args[0], dict):
            payload = error.args[0]
            status = payload.get('statusCode')
            message = payload.get('message') or payload.get('error') or message
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        return status, message

    @staticmethod
    def _from_status(key: str, status: Optional[int], message: str):
        if status == 404 or (status == 400 and 'not found' in message.lower()):
            return NotFoundError(f"No object at {key}", key=key)
        if status == 408 or status == 504:
            return OperationTimeoutError(f"Storage request for {key} timed out", key=key)
        logger.error(f"Storage error for {key} (status={status}): {message}")
        return StorageUnavailableError(f"Storage error ({status}): {message}", key=key, status=status)


class InMemoryBlobStore:
    """
    Dict-backed blob store for mock mode and tests.

    Args:
        delay: Seconds every call sleeps first (simulates a hanging store)
        unavailable: When True every call raises StorageUnavailableError
    """

    def __init__(self, delay: float = 0.0, unavailable: bool = False, bucket: str = 'memory'):
        self.delay = delay
        self.unavailable = unavailable
        self.bucket = bucket
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def _gate(self) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.unavailable:
            raise StorageUnavailableError("In-memory store marked unavailable")

    def put(self, key: str, data: bytes, content_type: str = PDF_CONTENT_TYPE) -> None:
        self._gate()
        with self._lock:
            self._blobs[key] = bytes(data)

    def get(self, key: str) -> bytes:
        self._gate()
        with self._lock:
            if key not in self._blobs:
                raise NotFoundError(f"No object at {key}", key=key)
            return self._blobs[key]

    def list_prefix(self, prefix: str) -> List[str]:
        self._gate()
        with self._lock:
            return sorted(k for k in self._blobs if k.startswith(prefix))

    def delete(self, key: str) -> None:
        self._gate()
        with self._lock:
            self._blobs.pop(key, None)

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        self._gate()
        with self._lock:
            if key not in self._blobs:
                raise NotFoundError(f"No object at {key}", key=key)
        return f"memory://{self.bucket}/{key}?expires={int(time.time()) + int(ttl_seconds)}"

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)


# =============================================================================
# ADAPTER
# =============================================================================

class StorageAdapter:
    """
    Stores rendered artifacts under deterministic keys.

    One document always maps to `documents/<TEMPLATE>/<document_id>.pdf`, and
    `store` overwrites, so a retried generation cannot leave a second copy.
    """

    def __init__(self, blob_store, timeout: Optional[float] = 30.0):
        self.blob_store = blob_store
        self.timeout = timeout

    @staticmethod
    def storage_key(document_id: str, template_code: str) -> str:
        return f"{KEY_PREFIX}/{template_code}/{document_id}.pdf"

    def store(self, document_id: str, data: bytes, template_code: str,
              previous: Optional[bytes] = None, keep_on_failure: bool = False) -> str:
        """
        Write an artifact and return its storage key.

        `previous` is the artifact the write replaces, if any. When the write
        fails, or times out and lands late, the key is rolled back to
        `previous` (or deleted when there was none) so a failed call never
        changes what the key serves.

        `keep_on_failure` skips the rollback, for writes that only put a
        committed record's artifact back.
        """
        key = self.storage_key(document_id, template_code)

        def roll_back_late_write(future) -> None:
            self.roll_back(key, data, previous)

        on_abandon = None if keep_on_failure else roll_back_late_write

        try:
            run_with_timeout(
                self.blob_store.put, key, data, PDF_CONTENT_TYPE,
                timeout=self.timeout,
                description=f"Storing {key}",
                on_abandon=on_abandon,
            )
        except (StorageUnavailableError, OperationTimeoutError, NotFoundError):
            if not keep_on_failure:
                self.roll_back(key, data, previous)
            raise
        logger.info(f"Stored artifact {key} ({len(data)} bytes)")
        return key

    def fetch(self, key: str) -> bytes:
        """Return the artifact bytes, or raise NotFoundError if the key was never written."""
        return run_with_timeout(self.blob_store.get, key, timeout=self.timeout, description=f"Fetching {key}")

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """A URL that serves `key` for `ttl_seconds`."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        return run_with_timeout(
            self.blob_store.signed_url, key, ttl_seconds,
            timeout=self.timeout, description=f"Signing {key}",
        )

    def delete(self, key: str) -> None:
        run_with_timeout(self.blob_store.delete, key, timeout=self.timeout, description=f"Deleting {key}")
        logger.info(f"Deleted artifact {key}")

    def list(self, prefix: str = f"{KEY_PREFIX}/") -> List[str]:
        return run_with_timeout(
            self.blob_store.list_prefix, prefix, timeout=self.timeout, description=f"Listing {prefix}"
        )

    def roll_back(self, key: str, written: bytes, previous: Optional[bytes] = None) -> None:
        """
        Undo a write of `written` to `key`. Never raises.

        A key that no longer holds `written` belongs to a later writer and is
        left alone.
        """
        try:
            try:
                current = self.blob_store.get(key)
            except NotFoundError:
                current = None
            if current is not None and current != written:
                logger.info(f"Not rolling back {key}, it was rewritten since")
                return
            if previous is not None:
                self.blob_store.put(key, previous, PDF_CONTENT_TYPE)
                logger.info(f"Restored previous artifact at {key}")
            elif current is not None:
                self.blob_store.delete(key)
                logger.info(f"Discarded artifact {key}")
        except (StorageUnavailableError, OperationTimeoutError) as e:
            logger.error(f"Could not roll back artifact {key}, it may be out of date: {e}")
