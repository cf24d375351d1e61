import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _default_storage_backend():
    if os.getenv('SUPABASE_URL') and os.getenv('SUPABASE_KEY'):
        return 'supabase'
    return 'memory'


class Config:
    # Environment
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')

    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///documents.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Template configuration (catalog.yml, forms/*.yml, schema/*.json)
    DOCUMENTS_CONFIG_DIR = os.getenv('DOCUMENTS_CONFIG_DIR', os.path.join(BASE_DIR, 'documents'))
    TEMPLATE_PDF_DIR = os.getenv('TEMPLATE_PDF_DIR', os.path.join(BASE_DIR, 'documents', 'pdfs'))

    # Artifact storage
    STORAGE_BACKEND = os.getenv('STORAGE_BACKEND', _default_storage_backend())
    DOCUMENTS_BUCKET = os.getenv('DOCUMENTS_BUCKET', 'documents')
    SIGNED_URL_TTL = int(os.getenv('SIGNED_URL_TTL', 3600))

    # Timeouts in seconds
    RENDER_TIMEOUT = float(os.getenv('RENDER_TIMEOUT', 30))
    STORAGE_TIMEOUT = float(os.getenv('STORAGE_TIMEOUT', 30))

    # Rendering
    OUT_OF_BOUNDS_POLICY = os.getenv('OUT_OF_BOUNDS_POLICY', 'skip')
    PDF_FONT_NAME = os.getenv('PDF_FONT_NAME', 'Helvetica')
    PDF_FONT_SIZE = float(os.getenv('PDF_FONT_SIZE', 10))
