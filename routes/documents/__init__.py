# routes/documents/__init__.py
"""
Document Generation API Routes Package
All routes require the gateway-asserted identity (X-User-Id)

This package splits the document routes into logical modules:
- templates.py: Template catalog, schemas and bundles
- generate.py: Document generation
- documents.py: Listing, detail and statistics
- lifecycle.py: Status changes, field edits and signatures
- download.py: PDF download and preview URLs
"""

from flask import Blueprint, current_app, jsonify

from services.documents import DocumentError

# Create the blueprint - all sub-modules will register routes on this
documents_bp = Blueprint('documents', __name__, url_prefix='/api/v1')


def get_manager():
    """The DocumentLifecycleManager built by create_app."""
    return current_app.extensions['documents']


@documents_bp.errorhandler(DocumentError)
def handle_document_error(e):
    if e.http_status >= 500:
        current_app.logger.error(f"{e.code.value}: {e.message}")
    return jsonify({'success': False, 'error': e.to_dict()}), e.http_status


# Import all route modules AFTER blueprint creation
# Each module imports documents_bp and registers routes on it
from . import templates
from . import generate
from . import documents
from . import lifecycle
from . import download
