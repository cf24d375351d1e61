"""
Document Generation System

A configuration-driven pipeline for producing real-estate transaction PDFs.
Templates and their field schemas are defined in YAML under documents/ and
processed through registry lookup, field resolution, PDF rendering and
artifact storage, with a lifecycle manager tracking each generated document.

Usage:
    from services.documents import TemplateRegistry, FieldResolver, PdfRenderer

    # On app startup
    TemplateRegistry.load_all()

    # When generating a document
    template = TemplateRegistry.get_template('CA_RPA')
    schema = TemplateRegistry.get_schema('CA_RPA')
    values = FieldResolver.resolve_or_raise(schema, form_data).values
    result = PdfRenderer(pdf_dir).render(template, schema, values)
"""

from .types import (
    TemplateDefinition,
    FormBundle,
    FieldType,
    FieldDescriptor,
    SignatureField,
    FieldSchema,
    FieldError,
    FieldErrorCode,
    ResolutionResult,
    RenderWarning,
    RenderResult,
    DocumentStatus,
    SignatureData,
    Signer,
    GenerationRequest,
    DocumentMetadata,
    Document,
    ActivityRecord,
    DocumentFilter,
    is_allowed_transition,
)

from .exceptions import (
    ErrorCode,
    DocumentError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    TemplateAssetMissingError,
    TemplateLoadError,
    TemplateGeometryError,
    FieldOutOfBoundsError,
    InvalidTransitionError,
    StaleStateError,
    StorageUnavailableError,
    ArtifactMissingError,
    OperationTimeoutError,
)

from .loader import TemplateRegistry
from .field_resolver import FieldResolver
from .pdf_renderer import PdfRenderer
from .storage import StorageAdapter, SupabaseBlobStore, InMemoryBlobStore
from .record_store import DocumentRecordStore
from .lifecycle import DocumentLifecycleManager
from .transforms import TRANSFORMS, apply_transform

__all__ = [
    # Types
    'TemplateDefinition',
    'FormBundle',
    'FieldType',
    'FieldDescriptor',
    'SignatureField',
    'FieldSchema',
    'FieldError',
    'FieldErrorCode',
    'ResolutionResult',
    'RenderWarning',
    'RenderResult',
    'DocumentStatus',
    'SignatureData',
    'Signer',
    'GenerationRequest',
    'DocumentMetadata',
    'Document',
    'ActivityRecord',
    'DocumentFilter',
    'is_allowed_transition',

    # Exceptions
    'ErrorCode',
    'DocumentError',
    'ConfigurationError',
    'ValidationError',
    'NotFoundError',
    'TemplateAssetMissingError',
    'TemplateLoadError',
    'TemplateGeometryError',
    'FieldOutOfBoundsError',
    'InvalidTransitionError',
    'StaleStateError',
    'StorageUnavailableError',
    'ArtifactMissingError',
    'OperationTimeoutError',

    # Services
    'TemplateRegistry',
    'FieldResolver',
    'PdfRenderer',
    'StorageAdapter',
    'SupabaseBlobStore',
    'InMemoryBlobStore',
    'DocumentRecordStore',
    'DocumentLifecycleManager',

    # Transforms
    'TRANSFORMS',
    'apply_transform',
]
