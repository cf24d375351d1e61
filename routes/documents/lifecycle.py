# routes/documents/lifecycle.py
"""
Status changes, draft field edits and signature capture.
"""

from flask import jsonify
from flask_login import login_required

from services.audit_service import actor_kwargs
from services.documents import SignatureData, ValidationError
from . import documents_bp, get_manager
from .generate import read_json_body


@documents_bp.route('/documents/<document_id>/status', methods=['POST'])
@login_required
def update_status(document_id):
    """
    Move a document along its lifecycle.

    Body: {status, expectedUpdatedAt?}. `cancelled` and `expired` are
    accepted from any non-terminal status.
    """
    data = read_json_body()
    target = data.get('status')
    if not target:
        raise ValidationError("status is required")

    document = get_manager().advance(
        document_id,
        target,
        expected_updated_at=data.get('expectedUpdatedAt'),
        **actor_kwargs(),
    )
    return jsonify({'success': True, 'document': document.to_dict()})


@documents_bp.route('/documents/<document_id>/fields', methods=['PATCH'])
@login_required
def update_fields(document_id):
    """Merge field values into a draft. A null or empty value clears the field."""
    data = read_json_body()
    fields = data.get('fields')
    if not isinstance(fields, dict):
        raise ValidationError("fields must be an object")

    document = get_manager().update_fields(
        document_id,
        fields,
        expected_updated_at=data.get('expectedUpdatedAt'),
        **actor_kwargs(),
    )
    return jsonify({'success': True, 'document': document.to_dict()})


@documents_bp.route('/documents/<document_id>/signatures', methods=['POST'])
@login_required
def record_signature(document_id):
    """
    Record a signer's mark on one signature field.

    Body: {fieldId, signerId, signerRole, value}. `value` is typed text or a
    data:image/png;base64 image. The caller's IP is stored with the mark.
    """
    data = read_json_body()
    try:
        signature = SignatureData.from_dict({
            'fieldId': data['fieldId'],
            'signerId': data['signerId'],
            'signerRole': data['signerRole'],
            'value': data.get('value'),
        })
    except KeyError as e:
        raise ValidationError(f"{e.args[0]} is required")
    if not signature.value:
        raise ValidationError("value is required")

    document = get_manager().record_signature(document_id, signature, **actor_kwargs())
    return jsonify({'success': True, 'document': document.to_dict()})
