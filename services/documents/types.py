"""
Document System Type Definitions

Dataclasses representing templates, field schemas and generated documents.
Template and schema objects are immutable after loading and validated on startup.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# =============================================================================
# TEMPLATE CATALOG
# =============================================================================

@dataclass(frozen=True)
class TemplateDefinition:
    """
    One entry of the template catalog.

    Attributes:
        code: Unique identifier (e.g., "CA_RPA")
        file_name: Base PDF file name under the template PDF directory
        category_number: Two-digit transaction stage ("01" through "06")
        sort_order: Default listing order (lower = first)
    """
    code: str
    name: str
    file_name: str
    category: str
    category_number: str
    sort_order: int
    commonly_used: bool = False
    implemented: bool = False
    car_form_number: Optional[str] = None
    version: str = '1.0'

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.sort_order, self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.code,
            'name': self.name,
            'fileName': self.file_name,
            'category': self.category,
            'categoryNumber': self.category_number,
            'sortOrder': self.sort_order,
            'commonlyUsed': self.commonly_used,
            'implemented': self.implemented,
            'carFormNumber': self.car_form_number,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TemplateDefinition':
        return cls(
            code=data['code'],
            name=data['name'],
            file_name=data['file_name'],
            category=data['category'],
            category_number=str(data['category_number']),
            sort_order=int(data['sort_order']),
            commonly_used=bool(data.get('commonly_used', False)),
            implemented=bool(data.get('implemented', False)),
            car_form_number=data.get('car_form_number'),
            version=str(data.get('version', '1.0')),
        )


@dataclass(frozen=True)
class FormBundle:
    """A named group of forms commonly generated together."""
    key: str
    name: str
    description: str
    forms: Tuple[str, ...]
    required_forms: Tuple[str, ...] = ()
    optional_forms: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'forms': list(self.forms),
            'requiredForms': list(self.required_forms),
            'optionalForms': list(self.optional_forms),
        }


# =============================================================================
# FIELD SCHEMA
# =============================================================================

class FieldType(Enum):
    """Declared type of a template field."""
    STRING = 'string'
    TEXT = 'text'
    EMAIL = 'email'
    PHONE = 'phone'
    ADDRESS = 'address'
    NUMBER = 'number'
    CURRENCY = 'currency'
    PERCENTAGE = 'percentage'
    BOOLEAN = 'boolean'
    CHECKBOX = 'checkbox'
    DATE = 'date'
    SELECT = 'select'
    RADIO = 'radio'
    MULTISELECT = 'multiselect'

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.CURRENCY, FieldType.PERCENTAGE)

    @property
    def is_boolean(self) -> bool:
        return self in (FieldType.BOOLEAN, FieldType.CHECKBOX)

    @property
    def is_choice(self) -> bool:
        return self in (FieldType.SELECT, FieldType.RADIO, FieldType.MULTISELECT)


class DependencyCondition(Enum):
    """Comparison applied by a `depends_on` rule."""
    EQUALS = 'equals'
    NOT_EQUALS = 'notEquals'
    CONTAINS = 'contains'
    GREATER_THAN = 'greaterThan'
    LESS_THAN = 'lessThan'


@dataclass(frozen=True)
class FieldValidation:
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['FieldValidation']:
        if not data:
            return None
        return cls(
            min=data.get('min'),
            max=data.get('max'),
            min_length=data.get('min_length'),
            max_length=data.get('max_length'),
            pattern=data.get('pattern'),
        )


@dataclass(frozen=True)
class FieldOption:
    value: str
    label: str


@dataclass(frozen=True)
class FieldDependency:
    """The owning field only applies when `field` satisfies `condition` against `value`."""
    field: str
    condition: DependencyCondition
    value: Any = None


@dataclass(frozen=True)
class FieldPlacement:
    """Where a value is stamped on the page, in PDF points from the bottom-left corner."""
    page: int  # 1-based
    x: float
    y: float
    width: float = 200.0
    height: float = 14.0
    font_size: Optional[float] = None


@dataclass(frozen=True)
class FieldDescriptor:
    """
    One typed data point a template requires.

    Attributes:
        name: Unique key within the template (camelCase, as submitted by clients)
        pdf_field: Name of the AcroForm widget to fill, when the base PDF has one
        placement: Coordinates for direct text stamping when there is no widget
        format: Optional transform name overriding the type's default rendering
    """
    name: str
    type: FieldType
    label: str
    required: bool = False
    section: Optional[str] = None
    default_value: Any = None
    validation: Optional[FieldValidation] = None
    options: Tuple[FieldOption, ...] = ()
    depends_on: Optional[FieldDependency] = None
    pdf_field: Optional[str] = None
    placement: Optional[FieldPlacement] = None
    format: Optional[str] = None

    @property
    def option_values(self) -> Tuple[str, ...]:
        return tuple(o.value for o in self.options)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'type': self.type.value,
            'label': self.label,
            'required': self.required,
            'section': self.section,
            'defaultValue': self.default_value,
            'options': [{'value': o.value, 'label': o.label} for o in self.options],
            'dependsOn': {
                'field': self.depends_on.field,
                'condition': self.depends_on.condition.value,
                'value': self.depends_on.value,
            } if self.depends_on else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldDescriptor':
        depends_on = None
        if data.get('depends_on'):
            dep = data['depends_on']
            depends_on = FieldDependency(
                field=dep['field'],
                condition=DependencyCondition(dep['condition']),
                value=dep.get('value'),
            )

        placement = None
        if data.get('placement'):
            p = data['placement']
            placement = FieldPlacement(
                page=int(p['page']),
                x=float(p['x']),
                y=float(p['y']),
                width=float(p.get('width', 200)),
                height=float(p.get('height', 14)),
                font_size=p.get('font_size'),
            )

        options = tuple(
            FieldOption(value=str(o['value']), label=o.get('label', str(o['value'])))
            if isinstance(o, dict) else FieldOption(value=str(o), label=str(o))
            for o in data.get('options', [])
        )

        return cls(
            name=data['name'],
            type=FieldType(data['type']),
            label=data.get('label', data['name']),
            required=bool(data.get('required', False)),
            section=data.get('section'),
            default_value=data.get('default_value'),
            validation=FieldValidation.from_dict(data.get('validation')),
            options=options,
            depends_on=depends_on,
            pdf_field=data.get('pdf_field'),
            placement=placement,
            format=data.get('format'),
        )


@dataclass(frozen=True)
class SignatureField:
    """A positioned box where a signer's mark, initials or date is recorded."""
    id: str
    page: int  # 1-based
    x: float
    y: float
    width: float
    height: float
    role: str
    type: str = 'signature'
    required: bool = True
    group: Optional[str] = None
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'page': self.page,
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
            'role': self.role,
            'type': self.type,
            'required': self.required,
            'group': self.group,
            'label': self.label,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignatureField':
        return cls(
            id=data['id'],
            page=int(data['page']),
            x=float(data['x']),
            y=float(data['y']),
            width=float(data['width']),
            height=float(data['height']),
            role=data['role'],
            type=data.get('type', 'signature'),
            required=bool(data.get('required', True)),
            group=data.get('group'),
            label=data.get('label'),
        )


@dataclass(frozen=True)
class FieldSchema:
    """
    Complete field/signature schema for one template, loaded from YAML.

    One YAML file under documents/forms/ = one FieldSchema.
    """
    schema_version: str
    template_code: str
    page_count: int
    page_size: Tuple[float, float]
    fields: Tuple[FieldDescriptor, ...]
    signature_fields: Tuple[SignatureField, ...] = ()
    passthrough: Tuple[str, ...] = ()

    def get_field(self, name: str) -> Optional[FieldDescriptor]:
        return next((f for f in self.fields if f.name == name), None)

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def required_fields(self) -> List[FieldDescriptor]:
        return [f for f in self.fields if f.required]

    def get_signature_field(self, field_id: str) -> Optional[SignatureField]:
        return next((s for s in self.signature_fields if s.id == field_id), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'templateId': self.template_code,
            'pageCount': self.page_count,
            'pageSize': list(self.page_size),
            'fields': [f.to_dict() for f in self.fields],
            'signatureFields': [s.to_dict() for s in self.signature_fields],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldSchema':
        page_size = data.get('page_size', [612, 792])
        return cls(
            schema_version=str(data['schema_version']),
            template_code=data['template_code'],
            page_count=int(data['page_count']),
            page_size=(float(page_size[0]), float(page_size[1])),
            fields=tuple(FieldDescriptor.from_dict(f) for f in data.get('fields', [])),
            signature_fields=tuple(SignatureField.from_dict(s) for s in data.get('signature_fields', [])),
            passthrough=tuple(data.get('passthrough', [])),
        )


# =============================================================================
# RESOLUTION / RENDERING RESULTS
# =============================================================================

class FieldErrorCode(Enum):
    MISSING_REQUIRED_FIELD = 'MISSING_REQUIRED_FIELD'
    UNKNOWN_FIELD = 'UNKNOWN_FIELD'
    INVALID_TYPE = 'INVALID_TYPE'
    INVALID_OPTION = 'INVALID_OPTION'
    OUT_OF_RANGE = 'OUT_OF_RANGE'
    INVALID_LENGTH = 'INVALID_LENGTH'
    PATTERN_MISMATCH = 'PATTERN_MISMATCH'


@dataclass(frozen=True)
class FieldError:
    code: FieldErrorCode
    field: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code.value, 'field': self.field, 'message': self.message}


@dataclass
class ResolutionResult:
    """Validated values plus every error found; `ok` when there are no errors."""
    values: Dict[str, Any]
    errors: List[FieldError]
    passthrough: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error_fields(self) -> List[str]:
        return [e.field for e in self.errors]


@dataclass(frozen=True)
class RenderWarning:
    code: str
    field: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'field': self.field, 'message': self.message}


@dataclass
class RenderResult:
    pdf_bytes: bytes
    page_count: int
    warnings: List[RenderWarning] = field(default_factory=list)
    placements: List[Tuple[str, int, float, float]] = field(default_factory=list)


# =============================================================================
# DOCUMENTS
# =============================================================================

class DocumentStatus(Enum):
    DRAFT = 'draft'
    PENDING_REVIEW = 'pending_review'
    PENDING_SIGNATURE = 'pending_signature'
    SIGNED = 'signed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    DocumentStatus.COMPLETED,
    DocumentStatus.CANCELLED,
    DocumentStatus.EXPIRED,
})

# Forward edges only; cancelled/expired are reachable from every non-terminal state.
TRANSITIONS: Dict[DocumentStatus, DocumentStatus] = {
    DocumentStatus.DRAFT: DocumentStatus.PENDING_REVIEW,
    DocumentStatus.PENDING_REVIEW: DocumentStatus.PENDING_SIGNATURE,
    DocumentStatus.PENDING_SIGNATURE: DocumentStatus.SIGNED,
    DocumentStatus.SIGNED: DocumentStatus.COMPLETED,
}


def is_allowed_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    """True when `current -> target` is an edge of the lifecycle graph."""
    if current.is_terminal:
        return False
    if target in (DocumentStatus.CANCELLED, DocumentStatus.EXPIRED):
        return True
    return TRANSITIONS.get(current) == target


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SignatureData:
    field_id: str
    signer_id: str
    signer_role: str
    type: str = 'signature'
    value: Optional[str] = None
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fieldId': self.field_id,
            'signerId': self.signer_id,
            'signerRole': self.signer_role,
            'type': self.type,
            'value': self.value,
            'signedAt': _format_timestamp(self.signed_at),
            'ipAddress': self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SignatureData':
        return cls(
            field_id=data['fieldId'],
            signer_id=str(data['signerId']),
            signer_role=data['signerRole'],
            type=data.get('type', 'signature'),
            value=data.get('value'),
            signed_at=_parse_timestamp(data.get('signedAt')),
            ip_address=data.get('ipAddress'),
        )


@dataclass(frozen=True)
class Signer:
    id: str
    name: str
    email: str
    role: str
    order: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Signer':
        return cls(
            id=str(data['id']),
            name=data['name'],
            email=data['email'],
            role=data['role'],
            order=int(data['order']) if data.get('order') is not None else None,
        )


@dataclass
class GenerationRequest:
    """Caller-facing generation request."""
    template_code: str
    property_id: str
    fields: Dict[str, Any]
    send_for_signature: bool = False
    signers: List[Signer] = field(default_factory=list)
    document_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GenerationRequest':
        return cls(
            template_code=data.get('templateCode') or data.get('templateId'),
            property_id=str(data['propertyId']) if data.get('propertyId') is not None else None,
            fields=dict(data.get('fields') or {}),
            send_for_signature=bool(data.get('sendForSignature', False)),
            signers=[Signer.from_dict(s) for s in data.get('signers') or []],
            document_id=str(data['documentId']) if data.get('documentId') is not None else None,
        )


@dataclass
class DocumentMetadata:
    property_id: str
    property_address: Optional[str]
    category: str
    category_number: str
    version: str
    page_count: int
    buyer_id: Optional[str] = None
    seller_id: Optional[str] = None
    agent_id: Optional[str] = None
    transaction_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'propertyId': self.property_id,
            'propertyAddress': self.property_address,
            'buyerId': self.buyer_id,
            'sellerId': self.seller_id,
            'agentId': self.agent_id,
            'transactionId': self.transaction_id,
            'category': self.category,
            'categoryNumber': self.category_number,
            'version': self.version,
            'pageCount': self.page_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DocumentMetadata':
        return cls(
            property_id=data['propertyId'],
            property_address=data.get('propertyAddress'),
            category=data['category'],
            category_number=data['categoryNumber'],
            version=data['version'],
            page_count=int(data['pageCount']),
            buyer_id=data.get('buyerId'),
            seller_id=data.get('sellerId'),
            agent_id=data.get('agentId'),
            transaction_id=data.get('transactionId'),
        )


@dataclass
class Document:
    """
    A persisted generation instance of a template.

    Only the lifecycle manager changes `status` and the timestamps.
    """
    id: str
    template_id: str
    template_name: str
    status: DocumentStatus
    metadata: DocumentMetadata
    fields: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str]
    signatures: List[SignatureData] = field(default_factory=list)
    storage_key: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    warnings: List[RenderWarning] = field(default_factory=list)  # not persisted

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'templateId': self.template_id,
            'templateName': self.template_name,
            'status': self.status.value,
            'metadata': self.metadata.to_dict(),
            'fields': self.fields,
            'signatures': [s.to_dict() for s in self.signatures],
            'createdAt': _format_timestamp(self.created_at),
            'updatedAt': _format_timestamp(self.updated_at),
            'createdBy': self.created_by,
            'fileName': self.file_name,
            'fileSize': self.file_size,
        }
        if self.warnings:
            data['warnings'] = [w.to_dict() for w in self.warnings]
        return data


@dataclass
class ActivityRecord:
    action: str
    user_id: Optional[str]
    timestamp: datetime
    user_name: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'userId': self.user_id,
            'userName': self.user_name,
            'timestamp': _format_timestamp(self.timestamp),
            'details': self.details,
            'ipAddress': self.ip_address,
        }


@dataclass
class DocumentFilter:
    statuses: List[DocumentStatus] = field(default_factory=list)
    template_ids: List[str] = field(default_factory=list)
    property_id: Optional[str] = None
    created_by: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search_text: Optional[str] = None
    limit: int = 50
    offset: int = 0


def json_safe(value: Any) -> Any:
    """Convert dates (and lists of them) into JSON-safe values."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value
