# routes/documents/documents.py
"""
Document listing, detail and statistics endpoints.
"""

from datetime import datetime

from flask import jsonify, request
from flask_login import login_required

from services.audit_service import actor_kwargs
from services.documents import DocumentFilter, DocumentStatus, ValidationError
from . import documents_bp, get_manager

MAX_PAGE_SIZE = 200


def _list_arg(name):
    """Comma-separated or repeated query parameter as a list."""
    values = []
    for raw in request.args.getlist(name):
        values.extend(v.strip() for v in raw.split(',') if v.strip())
    return values


def _date_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date or timestamp")


def _int_arg(name, default, minimum, maximum=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    number = max(minimum, number)
    return min(number, maximum) if maximum is not None else number


def build_filter():
    """DocumentFilter from the request's query string."""
    try:
        statuses = [DocumentStatus(s) for s in _list_arg('status')]
    except ValueError as e:
        raise ValidationError(f"Unknown status filter: {e}")

    return DocumentFilter(
        statuses=statuses,
        template_ids=_list_arg('templateId'),
        property_id=request.args.get('propertyId') or None,
        created_by=request.args.get('createdBy') or None,
        date_from=_date_arg('dateFrom'),
        date_to=_date_arg('dateTo'),
        search_text=request.args.get('search') or None,
        limit=_int_arg('limit', 50, 1, MAX_PAGE_SIZE),
        offset=_int_arg('offset', 0, 0),
    )


# =============================================================================
# READS
# =============================================================================

@documents_bp.route('/documents')
@login_required
def list_documents():
    doc_filter = build_filter()
    documents = get_manager().list_documents(doc_filter)
    return jsonify({
        'success': True,
        'documents': [d.to_dict() for d in documents],
        'limit': doc_filter.limit,
        'offset': doc_filter.offset,
    })


@documents_bp.route('/documents/stats')
@login_required
def document_stats():
    return jsonify({'success': True, 'stats': get_manager().statistics()})


@documents_bp.route('/documents/<document_id>')
@login_required
def get_document(document_id):
    """A document with its activity trail. Records a `viewed` activity."""
    manager = get_manager()
    document = manager.get(document_id)
    manager.record_view(document_id, **actor_kwargs())
    return jsonify({
        'success': True,
        'document': document.to_dict(),
        'activity': [a.to_dict() for a in manager.activity(document_id)],
    })
