# routes/documents/download.py
"""
Document download and preview routes.
"""

from flask import Response, jsonify
from flask_login import login_required

from services.audit_service import actor_kwargs
from . import documents_bp, get_manager


# =============================================================================
# DOCUMENT DOWNLOAD
# =============================================================================

@documents_bp.route('/documents/<document_id>/download')
@login_required
def download_document(document_id):
    """
    Stream the generated PDF as an attachment.

    Unknown document is 404 NOT_FOUND; a record whose PDF is gone is
    503 STORAGE_UNAVAILABLE with detail artifact_missing.
    """
    pdf_bytes, file_name = get_manager().download(document_id, **actor_kwargs())
    return Response(
        pdf_bytes,
        mimetype='application/pdf',
        headers={
            'Content-Disposition': f'attachment; filename="{file_name}"',
            'Content-Length': str(len(pdf_bytes)),
            'Cache-Control': 'private, max-age=3600',
        },
    )


@documents_bp.route('/documents/<document_id>/preview-url')
@login_required
def preview_url(document_id):
    """A fresh signed URL for viewing the PDF."""
    manager = get_manager()
    url = manager.signed_url(document_id)
    return jsonify({'success': True, 'url': url, 'expiresIn': manager.signed_url_ttl})
