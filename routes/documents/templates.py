# routes/documents/templates.py
"""
Template catalog endpoints and sample previews.
"""

from flask import Response, jsonify, request
from flask_login import login_required

from services.documents import TemplateRegistry
from . import documents_bp, get_manager


def _flag(name):
    """Parse an optional boolean query parameter."""
    value = request.args.get(name)
    if value is None or value == '':
        return None
    return value.lower() in ('true', '1', 'yes')


# =============================================================================
# TEMPLATE CATALOG
# =============================================================================

@documents_bp.route('/document-templates')
@login_required
def list_templates():
    """List templates, optionally filtered by category, commonlyUsed and implemented."""
    templates = TemplateRegistry.list_templates(
        category=request.args.get('category') or None,
        category_number=request.args.get('categoryNumber') or None,
        commonly_used=_flag('commonlyUsed'),
        implemented=_flag('implemented'),
    )
    return jsonify({
        'success': True,
        'templates': [t.to_dict() for t in templates],
        'categories': [{'number': n, 'name': name} for n, name in TemplateRegistry.categories()],
        'total': len(templates),
    })


@documents_bp.route('/document-templates/bundles')
@login_required
def list_bundles():
    """Form bundles commonly generated together."""
    return jsonify({
        'success': True,
        'bundles': [b.to_dict() for b in TemplateRegistry.bundles()],
    })


@documents_bp.route('/document-templates/<code>')
@login_required
def get_template(code):
    """A template definition, plus its field schema when implemented."""
    template = TemplateRegistry.get_template(code)
    data = template.to_dict()
    if TemplateRegistry.has_schema(code):
        data['schema'] = TemplateRegistry.get_schema(code).to_dict()
    return jsonify({'success': True, 'template': data})


@documents_bp.route('/document-templates/bundles/<key>')
@login_required
def get_bundle(key):
    bundle = TemplateRegistry.get_bundle(key)
    data = bundle.to_dict()
    data['templates'] = [TemplateRegistry.get_template(code).to_dict() for code in bundle.forms]
    return jsonify({'success': True, 'bundle': data})


@documents_bp.route('/document-templates/validate', methods=['POST'])
@login_required
def validate_form_definition():
    """Check a candidate documents/forms/<CODE>.yml body without loading it."""
    content = request.get_data(as_text=True)
    errors = TemplateRegistry.validate_yaml_content(content)
    return jsonify({'success': not errors, 'valid': not errors, 'errors': errors})


@documents_bp.route('/document-templates/<code>/preview')
@login_required
def preview_template(code):
    """Render the template with sample data and return the PDF inline. Nothing is saved."""
    rendered, file_name = get_manager().preview(code)
    return Response(
        rendered.pdf_bytes,
        mimetype='application/pdf',
        headers={
            'Content-Disposition': f'inline; filename="{file_name}"',
            'Content-Length': str(len(rendered.pdf_bytes)),
        },
    )
