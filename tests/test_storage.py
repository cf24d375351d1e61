"""
Storage Adapter Tests

Key layout, coded errors for every failure mode, and cleanup of writes that
finish after their timeout. Supabase error translation is exercised by
patching the supabase_storage helpers, so no network access is needed.

Run with: python -m pytest tests/test_storage.py -v
"""

import time

import httpx
import pytest
from storage3.utils import StorageException

from services import supabase_storage
from services.documents import (
    ErrorCode,
    InMemoryBlobStore,
    NotFoundError,
    OperationTimeoutError,
    StorageAdapter,
    StorageUnavailableError,
    SupabaseBlobStore,
)
from conftest import FailingWritesBlobStore, SlowWritesBlobStore

PDF = b'%PDF-1.4 test artifact'


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def store():
    return InMemoryBlobStore()


@pytest.fixture
def adapter(store):
    return StorageAdapter(store, timeout=2.0)


class TestKeys:
    """One deterministic key per document."""

    def test_key_layout(self):
        assert StorageAdapter.storage_key('abc', 'CA_RPA') == 'documents/CA_RPA/abc.pdf'

    def test_store_returns_key_and_overwrites(self, adapter, store):
        key = adapter.store('doc-1', PDF, 'CA_RPA')
        adapter.store('doc-1', PDF + b' v2', 'CA_RPA')
        assert key == 'documents/CA_RPA/doc-1.pdf'
        assert store.keys() == [key]
        assert adapter.fetch(key) == PDF + b' v2'

    def test_list_by_prefix(self, adapter):
        adapter.store('a', PDF, 'CA_RPA')
        adapter.store('b', PDF, 'LEAD_BASED_PAINT')
        assert adapter.list('documents/CA_RPA/') == ['documents/CA_RPA/a.pdf']
        assert len(adapter.list()) == 2


class TestFailures:
    """Missing, unreachable and slow stores raise distinct coded errors."""

    def test_never_written_key_is_not_found(self, adapter):
        with pytest.raises(NotFoundError) as exc_info:
            adapter.fetch('documents/CA_RPA/missing.pdf')
        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert not exc_info.value.retryable

    def test_unavailable_store(self, store, adapter):
        store.unavailable = True
        with pytest.raises(StorageUnavailableError) as exc_info:
            adapter.store('doc-1', PDF, 'CA_RPA')
        assert exc_info.value.code == ErrorCode.STORAGE_UNAVAILABLE
        assert exc_info.value.retryable

    def test_slow_store_times_out(self):
        adapter = StorageAdapter(InMemoryBlobStore(delay=0.5), timeout=0.05)
        with pytest.raises(OperationTimeoutError) as exc_info:
            adapter.fetch('documents/CA_RPA/doc-1.pdf')
        assert exc_info.value.code == ErrorCode.TIMEOUT

    def test_late_write_is_discarded(self):
        slow = InMemoryBlobStore(delay=0.3)
        adapter = StorageAdapter(slow, timeout=0.05)
        with pytest.raises(OperationTimeoutError):
            adapter.store('doc-1', PDF, 'CA_RPA')
        # The abandoned put lands, then its done-callback removes it
        time.sleep(0.4)
        assert wait_for(lambda: slow.keys() == [])

    def test_delete_missing_key_is_not_an_error(self, adapter):
        adapter.delete('documents/CA_RPA/never.pdf')

    def test_roll_back_never_raises(self, store, adapter):
        store.unavailable = True
        adapter.roll_back('documents/CA_RPA/doc-1.pdf', PDF)


class TestOverwrites:
    """A failed overwrite leaves the previous artifact in place."""

    KEY = 'documents/CA_RPA/doc-1.pdf'

    def test_failed_overwrite_keeps_previous(self):
        store = FailingWritesBlobStore()
        adapter = StorageAdapter(store, timeout=2.0)
        adapter.store('doc-1', PDF, 'CA_RPA')

        store.fail_writes = True
        with pytest.raises(StorageUnavailableError):
            adapter.store('doc-1', PDF + b' v2', 'CA_RPA', previous=PDF)
        assert store.get(self.KEY) == PDF

    def test_late_overwrite_restores_previous(self):
        store = SlowWritesBlobStore(write_delay=0.0)
        adapter = StorageAdapter(store, timeout=0.05)
        adapter.store('doc-1', PDF, 'CA_RPA')

        store.write_delay = 0.3
        with pytest.raises(OperationTimeoutError):
            adapter.store('doc-1', PDF + b' v2', 'CA_RPA', previous=PDF)
        time.sleep(0.4)
        assert wait_for(lambda: store.get(self.KEY) == PDF)
        assert store.keys() == [self.KEY]

    def test_roll_back_restores_previous(self, store, adapter):
        adapter.store('doc-1', PDF + b' v2', 'CA_RPA')
        adapter.roll_back(self.KEY, PDF + b' v2', previous=PDF)
        assert store.get(self.KEY) == PDF

    def test_roll_back_leaves_later_writes(self, store, adapter):
        adapter.store('doc-1', PDF + b' other', 'CA_RPA')
        adapter.roll_back(self.KEY, PDF)
        assert store.get(self.KEY) == PDF + b' other'

    def test_keep_on_failure_skips_roll_back(self):
        store = SlowWritesBlobStore(write_delay=0.3)
        adapter = StorageAdapter(store, timeout=0.05)
        with pytest.raises(OperationTimeoutError):
            adapter.store('doc-1', PDF, 'CA_RPA', keep_on_failure=True)
        assert wait_for(lambda: store.keys() == [self.KEY])
        time.sleep(0.1)
        assert store.get(self.KEY) == PDF


class TestSignedUrls:
    """Signed URLs require a positive lifetime and an existing key."""

    def test_signed_url(self, adapter):
        key = adapter.store('doc-1', PDF, 'CA_RPA')
        url = adapter.signed_url(key, 600)
        assert url.startswith('memory://memory/documents/CA_RPA/doc-1.pdf?expires=')

    @pytest.mark.parametrize('ttl', [0, -5])
    def test_non_positive_ttl(self, adapter, ttl):
        key = adapter.store('doc-1', PDF, 'CA_RPA')
        with pytest.raises(ValueError):
            adapter.signed_url(key, ttl)

    def test_signed_url_for_missing_key(self, adapter):
        with pytest.raises(NotFoundError):
            adapter.signed_url('documents/CA_RPA/none.pdf', 60)


class TestSupabaseErrorMapping:
    """Supabase client failures become NOT_FOUND, STORAGE_UNAVAILABLE or TIMEOUT."""

    @staticmethod
    def raising(error):
        def helper(*args, **kwargs):
            raise error
        return helper

    @staticmethod
    def status_error(status):
        request = httpx.Request('GET', 'https://example.supabase.co/storage/v1/object/documents/x.pdf')
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError(f'HTTP {status}', request=request, response=response)

    def test_storage_exception_404(self, monkeypatch):
        error = StorageException({'statusCode': 404, 'error': 'not_found', 'message': 'Object not found'})
        monkeypatch.setattr(supabase_storage, 'download_file', self.raising(error))
        with pytest.raises(NotFoundError):
            SupabaseBlobStore().get('documents/CA_RPA/x.pdf')

    def test_storage_exception_400_not_found(self, monkeypatch):
        error = StorageException({'statusCode': '400', 'message': 'Object not found'})
        monkeypatch.setattr(supabase_storage, 'download_file', self.raising(error))
        with pytest.raises(NotFoundError):
            SupabaseBlobStore().get('documents/CA_RPA/x.pdf')

    def test_storage_exception_500(self, monkeypatch):
        error = StorageException({'statusCode': 500, 'message': 'internal'})
        monkeypatch.setattr(supabase_storage, 'upload_file', self.raising(error))
        with pytest.raises(StorageUnavailableError) as exc_info:
            SupabaseBlobStore().put('documents/CA_RPA/x.pdf', PDF)
        assert exc_info.value.details['status'] == 500

    def test_http_status_errors(self, monkeypatch):
        store = SupabaseBlobStore()
        monkeypatch.setattr(supabase_storage, 'download_file', self.raising(self.status_error(404)))
        with pytest.raises(NotFoundError):
            store.get('k')
        monkeypatch.setattr(supabase_storage, 'download_file', self.raising(self.status_error(504)))
        with pytest.raises(OperationTimeoutError):
            store.get('k')
        monkeypatch.setattr(supabase_storage, 'download_file', self.raising(self.status_error(503)))
        with pytest.raises(StorageUnavailableError):
            store.get('k')

    def test_transport_errors(self, monkeypatch):
        store = SupabaseBlobStore()
        monkeypatch.setattr(supabase_storage, 'delete_file', self.raising(httpx.ConnectError('refused')))
        with pytest.raises(StorageUnavailableError):
            store.delete('k')
        monkeypatch.setattr(supabase_storage, 'delete_file', self.raising(httpx.ReadTimeout('slow')))
        with pytest.raises(OperationTimeoutError):
            store.delete('k')

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv('SUPABASE_URL', raising=False)
        monkeypatch.delenv('SUPABASE_KEY', raising=False)
        monkeypatch.setattr(supabase_storage, '_supabase_client', None)
        assert not supabase_storage.is_configured()
        with pytest.raises(StorageUnavailableError):
            SupabaseBlobStore().get('k')

    def test_empty_signed_url_is_not_found(self, monkeypatch):
        monkeypatch.setattr(supabase_storage, 'get_signed_url', lambda *args: None)
        with pytest.raises(NotFoundError):
            SupabaseBlobStore().signed_url('k', 60)

    def test_list_prefix_filters_names(self, monkeypatch):
        monkeypatch.setattr(
            supabase_storage, 'list_files',
            lambda bucket, folder, search: [f'{folder}/doc-1.pdf', f'{folder}/doc-10.pdf', f'{folder}/other.pdf'],
        )
        keys = SupabaseBlobStore().list_prefix('documents/CA_RPA/doc-1')
        assert keys == ['documents/CA_RPA/doc-1.pdf', 'documents/CA_RPA/doc-10.pdf']
