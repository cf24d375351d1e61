"""
Shared fixtures for the document generation test suite.

Base PDFs are generated on the fly with reportlab into tmp_path so the
tests never depend on the licensed form files. Storage is the in-memory
blob store and the database is SQLite in memory.

Run with: python -m pytest tests/ -v
"""

import base64
import io
import sys
import time
from pathlib import Path

import pytest
from PIL import Image
from pypdf import PdfReader, PdfWriter
from reportlab.pdfgen import canvas

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Config
from models import db
from services.documents import (
    DocumentLifecycleManager,
    DocumentRecordStore,
    GenerationRequest,
    InMemoryBlobStore,
    PdfRenderer,
    StorageAdapter,
    StorageUnavailableError,
    TemplateRegistry,
)

DOCUMENTS_DIR = PROJECT_ROOT / 'documents'

# AcroForm widgets drawn on page 1 of the CA_RPA test form
RPA_WIDGETS = ('Buyer', 'Seller', 'Property Address', 'Purchase Price')

USER_HEADERS = {'X-User-Id': 'agent-1', 'X-User-Name': 'Avery Agent'}

RPA_FIELDS = {
    'buyerName': 'Jane Doe',
    'sellerName': 'John Seller',
    'propertyAddress': '123 Main St, Sacramento, CA 95814',
    'purchasePrice': 500000,
    'earnestMoneyDeposit': 15000,
    'closingDate': '2026-12-15',
}


# =============================================================================
# PDF BUILDERS
# =============================================================================

def build_pdf(path, page_count=1, page_size=(612, 792), text_fields=(), checkbox_fields=()):
    """Write a blank multi-page PDF, optionally with AcroForm widgets on page 1."""
    c = canvas.Canvas(str(path), pagesize=page_size, invariant=1)
    for page in range(1, page_count + 1):
        c.setFont('Helvetica', 8)
        c.drawString(36, 20, f"Test form page {page} of {page_count}")
        if page == 1:
            for i, name in enumerate(text_fields):
                c.acroForm.textfield(name=name, x=300, y=400 - i * 30, width=200, height=20, borderWidth=0)
            for i, name in enumerate(checkbox_fields):
                c.acroForm.checkbox(name=name, x=60, y=400 - i * 30, size=12)
        c.showPage()
    c.save()
    return path


def encrypt_pdf(path, user_password='', owner_password='owner-secret', permissions=None):
    """Re-save `path` encrypted (RC4) with the given /P permissions."""
    writer = PdfWriter(clone_from=PdfReader(str(path)))
    if permissions is None:
        writer.encrypt(user_password, owner_password)
    else:
        writer.encrypt(user_password, owner_password, permissions_flag=permissions)
    with open(path, 'wb') as f:
        writer.write(f)
    return path


def build_template_pdfs(pdf_dir):
    """One base PDF per implemented template, matching its schema geometry."""
    for template in TemplateRegistry.list_templates(implemented=True):
        schema = TemplateRegistry.get_schema(template.code)
        build_pdf(
            Path(pdf_dir) / template.file_name,
            page_count=schema.page_count,
            page_size=schema.page_size,
            text_fields=RPA_WIDGETS if template.code == 'CA_RPA' else (),
        )
    return pdf_dir


def png_data_url(width=120, height=40):
    buf = io.BytesIO()
    Image.new('RGBA', (width, height), (20, 20, 120, 255)).save(buf, format='PNG')
    return 'data:image/png;base64,' + base64.b64encode(buf.getvalue()).decode('ascii')


def page_text(pdf_bytes, page_no):
    return PdfReader(io.BytesIO(pdf_bytes)).pages[page_no - 1].extract_text() or ''


# =============================================================================
# BLOB STORES
# =============================================================================

class SlowWritesBlobStore(InMemoryBlobStore):
    """Reads are instant; puts hang for `write_delay` seconds."""

    def __init__(self, write_delay=0.0):
        super().__init__()
        self.write_delay = write_delay

    def put(self, key, data, content_type='application/pdf'):
        time.sleep(self.write_delay)
        super().put(key, data, content_type)


class FailingWritesBlobStore(InMemoryBlobStore):
    """Reads work; once `fail_writes` is set every put raises."""

    fail_writes = False

    def put(self, key, data, content_type='application/pdf'):
        if self.fail_writes:
            raise StorageUnavailableError("write rejected")
        super().put(key, data, content_type)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(scope='session', autouse=True)
def registry():
    """The real template catalog from documents/."""
    TemplateRegistry.load_all(DOCUMENTS_DIR)
    yield TemplateRegistry
    TemplateRegistry.clear()


@pytest.fixture
def pdf_dir(tmp_path, registry):
    directory = tmp_path / 'pdfs'
    directory.mkdir()
    return build_template_pdfs(directory)


@pytest.fixture
def renderer(pdf_dir):
    return PdfRenderer(pdf_dir)


@pytest.fixture
def app(pdf_dir):
    from app import create_app

    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = 'sqlite://'
        DOCUMENTS_CONFIG_DIR = str(DOCUMENTS_DIR)
        TEMPLATE_PDF_DIR = str(pdf_dir)
        STORAGE_BACKEND = 'memory'
        RENDER_TIMEOUT = 10.0
        STORAGE_TIMEOUT = 5.0

    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def manager(app, renderer, blob_store):
    """A lifecycle manager over the test database and an inspectable blob store."""
    return DocumentLifecycleManager(
        registry=TemplateRegistry,
        renderer=renderer,
        storage=StorageAdapter(blob_store, timeout=5.0),
        records=DocumentRecordStore(),
        render_timeout=10.0,
    )


@pytest.fixture
def rpa_request():
    def make(**overrides):
        data = {'templateCode': 'CA_RPA', 'propertyId': 'P1', 'fields': dict(RPA_FIELDS)}
        data.update(overrides)
        return GenerationRequest.from_dict(data)
    return make
