# routes/documents/generate.py
"""
Document generation endpoint.
"""

from flask import current_app, jsonify, request, url_for
from flask_login import login_required

from services.audit_service import actor_kwargs
from services.documents import DocumentError, GenerationRequest, ValidationError
from . import documents_bp, get_manager


def read_json_body():
    """The request's JSON object, or ValidationError."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# =============================================================================
# GENERATION
# =============================================================================

@documents_bp.route('/documents/generate', methods=['POST'])
@login_required
def generate_document():
    """
    Generate a document from a template.

    Body: {templateCode, propertyId, fields, sendForSignature?, signers?, documentId?}
    """
    data = read_json_body()
    try:
        generation = GenerationRequest.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed generation request: {e}")

    manager = get_manager()
    document = manager.create(generation, **actor_kwargs())

    try:
        preview_url = manager.signed_url(document.id)
    except DocumentError as e:
        # The document exists; the client can ask for a fresh URL later
        current_app.logger.warning(f"No preview URL for {document.id}: {e.message}")
        preview_url = None

    return jsonify({
        'success': True,
        'documentId': document.id,
        'status': document.status.value,
        'pdfUrl': url_for('documents.download_document', document_id=document.id),
        'previewUrl': preview_url,
        'document': document.to_dict(),
    }), 201
