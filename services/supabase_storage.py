"""
Supabase Storage Service for Generated Documents

Thin helpers over the Supabase Storage bucket API. Files are stored
privately and accessed via signed URLs. Error translation happens one
layer up, in services.documents.storage.
"""

import logging
import os
from typing import List, Optional

from supabase import Client, create_client

logger = logging.getLogger(__name__)

# Supabase client singleton
_supabase_client: Client = None

# Bucket names
DOCUMENTS_BUCKET = 'documents'


def get_supabase_client() -> Client:
    """
    Get or create the Supabase client.
    Uses SUPABASE_URL and SUPABASE_KEY from environment.
    """
    global _supabase_client

    if _supabase_client is None:
        supabase_url = os.getenv('SUPABASE_URL')
        supabase_key = os.getenv('SUPABASE_KEY')

        if not supabase_url or not supabase_key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_KEY environment variables are required. "
                "Get these from your Supabase project settings."
            )

        _supabase_client = create_client(supabase_url, supabase_key)

    return _supabase_client


def is_configured() -> bool:
    """True when both Supabase credentials are present in the environment."""
    return bool(os.getenv('SUPABASE_URL') and os.getenv('SUPABASE_KEY'))


def upload_file(bucket: str, storage_path: str, file_data: bytes,
                content_type: str = 'application/pdf', upsert: bool = True) -> dict:
    """
    Upload a file to a Supabase Storage bucket.

    Args:
        bucket: Target bucket name
        storage_path: Path within the bucket
        file_data: The file content as bytes
        content_type: MIME type of the file
        upsert: Overwrite an existing object at the same path

    Returns:
        dict with 'path' and 'size' keys on success
    """
    client = get_supabase_client()

    file_options = {'content-type': content_type}
    if upsert:
        file_options['upsert'] = 'true'

    client.storage.from_(bucket).upload(
        path=storage_path,
        file=file_data,
        file_options=file_options
    )

    return {
        'path': storage_path,
        'size': len(file_data)
    }


def download_file(bucket: str, storage_path: str) -> bytes:
    """Download a file's bytes from Supabase Storage."""
    client = get_supabase_client()
    return client.storage.from_(bucket).download(storage_path)


def list_files(bucket: str, folder: str, search: Optional[str] = None) -> List[str]:
    """
    List object names directly under `folder`.

    Args:
        bucket: Bucket name
        folder: Folder path within the bucket (no trailing slash)
        search: Optional name prefix filter

    Returns:
        Full storage paths, sorted
    """
    client = get_supabase_client()
    options = {'limit': 1000, 'sortBy': {'column': 'name', 'order': 'asc'}}
    if search:
        options['search'] = search

    entries = client.storage.from_(bucket).list(folder, options)
    prefix = f"{folder}/" if folder else ''
    return sorted(f"{prefix}{entry['name']}" for entry in entries if entry.get('name'))


def get_signed_url(bucket: str, storage_path: str, expires_in: int = 3600) -> str:
    """
    Generate a signed URL for private file access.

    Args:
        bucket: Bucket name containing the file
        storage_path: The path to the file in storage
        expires_in: URL expiry time in seconds (default: 1 hour)

    Returns:
        Signed URL string
    """
    client = get_supabase_client()

    response = client.storage.from_(bucket).create_signed_url(
        path=storage_path,
        expires_in=expires_in
    )

    # Older storage3 releases use 'signedURL', newer ones 'signedUrl'
    return response.get('signedURL') or response.get('signedUrl')


def delete_file(bucket: str, storage_path: str) -> None:
    """Delete a file from Supabase Storage. Deleting a missing path is not an error."""
    client = get_supabase_client()
    client.storage.from_(bucket).remove([storage_path])
    logger.debug(f"Deleted {bucket}/{storage_path}")
