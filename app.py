import logging

from flask import Flask, jsonify
from flask_login import LoginManager
from flask_migrate import Migrate
from models import db, GatewayUser
from routes import register_blueprints
from services.documents import (
    DocumentLifecycleManager,
    DocumentRecordStore,
    InMemoryBlobStore,
    PdfRenderer,
    StorageAdapter,
    SupabaseBlobStore,
    TemplateRegistry,
)

logger = logging.getLogger(__name__)


def build_document_manager(config):
    """Wire the document pipeline from app config."""
    backend = config['STORAGE_BACKEND']
    if backend == 'supabase':
        blob_store = SupabaseBlobStore(config['DOCUMENTS_BUCKET'])
    elif backend == 'memory':
        logger.warning("STORAGE_BACKEND=memory: generated PDFs are kept in process memory only")
        blob_store = InMemoryBlobStore(bucket=config['DOCUMENTS_BUCKET'])
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")

    renderer = PdfRenderer(
        config['TEMPLATE_PDF_DIR'],
        out_of_bounds_policy=config['OUT_OF_BOUNDS_POLICY'],
        font_name=config['PDF_FONT_NAME'],
        font_size=config['PDF_FONT_SIZE'],
    )
    return DocumentLifecycleManager(
        registry=TemplateRegistry,
        renderer=renderer,
        storage=StorageAdapter(blob_store, timeout=config['STORAGE_TIMEOUT']),
        records=DocumentRecordStore(),
        render_timeout=config['RENDER_TIMEOUT'],
        signed_url_ttl=config['SIGNED_URL_TTL'],
    )


def create_app(config_object='config.Config'):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize extensions
    db.init_app(app)
    Migrate(app, db)

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.request_loader
    def load_user_from_request(request):
        # Identity is asserted by the upstream gateway
        user_id = request.headers.get('X-User-Id')
        if not user_id:
            return None
        return GatewayUser(user_id, request.headers.get('X-User-Name'))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({
            'success': False,
            'error': {'code': 'UNAUTHORIZED', 'message': 'X-User-Id header is required', 'retryable': False},
        }), 401

    # Fail fast on bad template configuration
    TemplateRegistry.load_all(app.config['DOCUMENTS_CONFIG_DIR'])
    app.extensions['documents'] = build_document_manager(app.config)

    # Register blueprints
    register_blueprints(app)

    return app


if __name__ == '__main__':
    from dotenv import load_dotenv
    load_dotenv()

    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(host='0.0.0.0', port=5005, debug=True)
