"""
Document Lifecycle Manager

Owns the Document entity: creation (resolve -> render -> store -> insert),
status transitions, field edits, signatures and retrieval. It is the only
component that changes a document's status or timestamps.

Status graph:
    draft -> pending_review -> pending_signature -> signed -> completed
    any non-terminal status -> cancelled | expired

Every write to an existing document is an optimistic compare-and-set on
(status, updated_at); the loser of a race gets StaleStateError.
"""

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from models import DocumentActivity, utcnow

from .exceptions import (
    ArtifactMissingError,
    DocumentError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from .execution import run_with_timeout
from .field_resolver import FieldResolver
from .types import (
    ActivityRecord,
    Document,
    DocumentFilter,
    DocumentMetadata,
    DocumentStatus,
    FieldError,
    FieldErrorCode,
    FieldSchema,
    GenerationRequest,
    RenderResult,
    SignatureData,
    Signer,
    TemplateDefinition,
    is_allowed_transition,
)

logger = logging.getLogger(__name__)

# Caller-supplied keys that feed Document metadata rather than the form
METADATA_KEYS = ('propertyAddress', 'transactionId', 'buyerId', 'sellerId', 'agentId')

DOCUMENT_ID_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$')

TRANSITION_ACTIONS = {
    DocumentStatus.PENDING_REVIEW: DocumentActivity.SUBMITTED_FOR_REVIEW,
    DocumentStatus.PENDING_SIGNATURE: DocumentActivity.SENT_FOR_SIGNATURE,
    DocumentStatus.SIGNED: DocumentActivity.SIGNED,
    DocumentStatus.COMPLETED: DocumentActivity.COMPLETED,
    DocumentStatus.CANCELLED: DocumentActivity.CANCELLED,
    DocumentStatus.EXPIRED: DocumentActivity.EXPIRED,
}


class DocumentLifecycleManager:
    """
    Orchestrates registry, resolver, renderer, storage and record store.

    Args:
        registry: TemplateRegistry (or anything with get_template/get_schema)
        renderer: PdfRenderer
        storage: StorageAdapter for artifacts
        records: DocumentRecordStore for metadata and activity
        render_timeout: Seconds a render may take before TIMEOUT
        signed_url_ttl: Lifetime of URLs handed to callers
    """

    def __init__(self, registry, renderer, storage, records,
                 render_timeout: Optional[float] = 30.0, signed_url_ttl: int = 3600):
        self.registry = registry
        self.renderer = renderer
        self.storage = storage
        self.records = records
        self.render_timeout = render_timeout
        self.signed_url_ttl = signed_url_ttl

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(self, request: GenerationRequest, user_id: Optional[str],
               user_name: Optional[str] = None, ip_address: Optional[str] = None) -> Document:
        """
        Generate and persist a new document.

        All-or-nothing: on any failure no record exists and no artifact is
        left behind. A request whose `document_id` already exists returns the
        stored document unchanged.
        """
        self._check_request(request)

        if request.document_id:
            existing = self.records.get(request.document_id)
            if existing is not None:
                logger.info(f"Document {request.document_id} already exists, returning it unchanged")
                return existing

        template = self.registry.get_template(request.template_code)
        schema = self.registry.get_schema(template.code)
        resolution = FieldResolver.resolve_or_raise(schema, request.fields, allow_passthrough=METADATA_KEYS)

        send = bool(request.send_for_signature and request.signers)
        status = DocumentStatus.PENDING_SIGNATURE if send else DocumentStatus.DRAFT
        signatures = self._placeholder_signatures(schema, request.signers) if send else []

        rendered = self._render(template, schema, resolution.values, signatures)

        document_id = request.document_id or str(uuid.uuid4())
        try:
            key = self.storage.store(document_id, rendered.pdf_bytes, template.code)
        except DocumentError:
            if request.document_id:
                self._restore_owner_artifact(document_id)
            raise

        now = utcnow()
        document = Document(
            id=document_id,
            template_id=template.code,
            template_name=template.name,
            status=status,
            metadata=self._metadata(template, schema, request.property_id, resolution.values, resolution.passthrough),
            fields=FieldResolver.serialize(resolution.values),
            created_at=now,
            updated_at=now,
            created_by=user_id,
            signatures=signatures,
            storage_key=key,
            file_name=self.download_filename(template.code, request.property_id, document_id),
            file_size=len(rendered.pdf_bytes),
            warnings=list(rendered.warnings),
        )

        activities = [self._activity(
            DocumentActivity.CREATED, user_id, user_name, ip_address, f"Generated {template.name}", now
        )]
        if send:
            recipients = ', '.join(f"{s.name} ({s.role})" for s in request.signers)
            activities.append(self._activity(
                DocumentActivity.SENT_FOR_SIGNATURE, user_id, user_name, ip_address, f"Sent to: {recipients}", now
            ))

        try:
            inserted = self.records.insert(document, activities)
        except DocumentError:
            self.storage.roll_back(key, rendered.pdf_bytes)
            raise

        if not inserted:
            # Lost a race on the same idempotency key; the winner's record stands
            logger.warning(f"Lost create race on {document_id}, restoring the stored document's artifact")
            winner = self.get(document_id)
            self._restore_artifact(winner)
            return winner

        logger.info(f"Created document {document_id} ({template.code}, {status.value}) for property {request.property_id}")
        return document

    def _check_request(self, request: GenerationRequest) -> None:
        errors = []
        if not request.template_code:
            errors.append(FieldError(FieldErrorCode.MISSING_REQUIRED_FIELD, 'templateCode', "templateCode is required"))
        if not request.property_id:
            errors.append(FieldError(FieldErrorCode.MISSING_REQUIRED_FIELD, 'propertyId', "propertyId is required"))
        if request.document_id is not None and not (
            isinstance(request.document_id, str) and DOCUMENT_ID_PATTERN.match(request.document_id)
        ):
            errors.append(FieldError(
                FieldErrorCode.PATTERN_MISMATCH, 'documentId',
                "documentId must be 1-64 letters, digits, '-' or '_'",
            ))
        if request.send_for_signature and not request.signers:
            logger.info("sendForSignature requested without signers, creating a draft")
        if errors:
            raise ValidationError("Invalid generation request", errors=errors)

    @staticmethod
    def _placeholder_signatures(schema: FieldSchema, signers: Sequence[Signer]) -> List[SignatureData]:
        """One unsigned entry per signature field, for the first signer (by order) of its role."""
        ordered = sorted(
            enumerate(signers),
            key=lambda pair: (pair[1].order if pair[1].order is not None else float('inf'), pair[0]),
        )
        first_by_role: Dict[str, Signer] = {}
        for _, signer in ordered:
            first_by_role.setdefault(signer.role, signer)

        return [
            SignatureData(
                field_id=sig_field.id,
                signer_id=first_by_role[sig_field.role].id,
                signer_role=sig_field.role,
                type=sig_field.type,
            )
            for sig_field in schema.signature_fields
            if sig_field.role in first_by_role
        ]

    @staticmethod
    def _metadata(template: TemplateDefinition, schema: FieldSchema, property_id: str,
                  values: Dict[str, Any], passthrough: Dict[str, Any]) -> DocumentMetadata:
        def meta(name):
            value = values.get(name, passthrough.get(name))
            return str(value) if value is not None else None

        return DocumentMetadata(
            property_id=property_id,
            property_address=meta('propertyAddress'),
            category=template.category,
            category_number=template.category_number,
            version=template.version,
            page_count=schema.page_count,
            buyer_id=meta('buyerId'),
            seller_id=meta('sellerId'),
            agent_id=meta('agentId'),
            transaction_id=meta('transactionId'),
        )

    @staticmethod
    def download_filename(template_code: str, property_id: str, document_id: str) -> str:
        safe_property = re.sub(r'[^A-Za-z0-9_-]+', '-', str(property_id)).strip('-') or 'property'
        return f"{template_code}_{safe_property}_{document_id[:8]}.pdf"

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def advance(self, document_id: str, target_status: Union[DocumentStatus, str], user_id: Optional[str],
                expected_updated_at: Union[datetime, str, None] = None,
                user_name: Optional[str] = None, ip_address: Optional[str] = None) -> Document:
        """
        Move a document one edge along the status graph.

        Raises:
            InvalidTransitionError: target is not an edge from the current status
            StaleStateError: the document changed since `expected_updated_at`
                or since it was read here
        """
        target = self._parse_status(target_status)
        if target in (DocumentStatus.CANCELLED, DocumentStatus.EXPIRED):
            return self._terminate(document_id, target, user_id, user_name, ip_address, expected_updated_at)

        document = self.get(document_id)
        expected = self._check_expected(document, expected_updated_at)

        if not is_allowed_transition(document.status, target):
            raise InvalidTransitionError(
                f"Cannot move document from {document.status.value} to {target.value}",
                document_id=document_id,
                current=document.status.value,
                target=target.value,
            )

        return self._transition(document, expected, target, user_id, user_name, ip_address)

    def cancel(self, document_id: str, user_id: Optional[str], user_name: Optional[str] = None,
               ip_address: Optional[str] = None) -> Document:
        return self._terminate(document_id, DocumentStatus.CANCELLED, user_id, user_name, ip_address)

    def expire(self, document_id: str, user_id: Optional[str], user_name: Optional[str] = None,
               ip_address: Optional[str] = None) -> Document:
        return self._terminate(document_id, DocumentStatus.EXPIRED, user_id, user_name, ip_address)

    def _terminate(self, document_id: str, target: DocumentStatus, user_id, user_name, ip_address,
                   expected_updated_at=None) -> Document:
        document = self.get(document_id)
        if document.status == target:
            logger.debug(f"Document {document_id} already {target.value}")
            return document
        if document.status.is_terminal:
            raise InvalidTransitionError(
                f"Document is already {document.status.value}, cannot mark {target.value}",
                document_id=document_id,
                current=document.status.value,
                target=target.value,
            )
        expected = self._check_expected(document, expected_updated_at)
        return self._transition(document, expected, target, user_id, user_name, ip_address)

    def _transition(self, document: Document, expected: datetime, target: DocumentStatus,
                    user_id, user_name, ip_address) -> Document:
        updated_at = self._next_timestamp(document.updated_at)
        activity = self._activity(
            TRANSITION_ACTIONS[target], user_id, user_name, ip_address,
            f"Status changed from {document.status.value} to {target.value}", updated_at,
        )
        applied = self.records.update_where(
            document.id, document.status, expected,
            {'status': target, 'updated_at': updated_at},
            activity,
        )
        if not applied:
            raise StaleStateError(
                f"Document {document.id} changed concurrently; reload and retry",
                document_id=document.id,
            )
        logger.info(f"Document {document.id}: {document.status.value} -> {target.value}")
        return self.get(document.id)

    # =========================================================================
    # EDITS AND SIGNATURES
    # =========================================================================

    def update_fields(self, document_id: str, fields: Dict[str, Any], user_id: Optional[str],
                      expected_updated_at: Union[datetime, str, None] = None,
                      user_name: Optional[str] = None, ip_address: Optional[str] = None) -> Document:
        """Merge new field values into a draft, re-render it and overwrite its artifact."""
        document = self.get(document_id)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidTransitionError(
                f"Fields can only be edited while draft (document is {document.status.value})",
                document_id=document_id,
                current=document.status.value,
            )
        expected = self._check_expected(document, expected_updated_at)

        template = self.registry.get_template(document.template_id)
        schema = self.registry.get_schema(template.code)

        merged = dict(document.fields)
        for name, value in (fields or {}).items():
            if value is None or value == '':
                merged.pop(name, None)
            else:
                merged[name] = value
        resolution = FieldResolver.resolve_or_raise(schema, merged, allow_passthrough=METADATA_KEYS)
        serialized = FieldResolver.serialize(resolution.values)

        rendered = self._render(template, schema, resolution.values, document.signatures)
        previous = self._current_artifact(document)
        key = self.storage.store(document.id, rendered.pdf_bytes, template.code, previous=previous)

        changed = sorted(k for k in set(serialized) | set(document.fields) if serialized.get(k) != document.fields.get(k))
        updated_at = self._next_timestamp(document.updated_at)
        changes = {'fields': serialized, 'file_size': len(rendered.pdf_bytes), 'updated_at': updated_at}
        if 'propertyAddress' in resolution.values:
            changes['property_address'] = str(resolution.values['propertyAddress'])

        activity = self._activity(
            DocumentActivity.UPDATED, user_id, user_name, ip_address,
            f"Updated fields: {', '.join(changed) if changed else 'none'}", updated_at,
        )
        self._apply_or_restore(document, expected, changes, activity, key, rendered.pdf_bytes, previous)

        updated = self.get(document.id)
        updated.warnings = list(rendered.warnings)
        return updated

    def record_signature(self, document_id: str, signature: SignatureData, user_id: Optional[str],
                         user_name: Optional[str] = None, ip_address: Optional[str] = None) -> Document:
        """
        Attach a signer's mark to a signature field and re-render the artifact.

        Replaces the placeholder for that field and any earlier mark by the
        same signer. Status is unchanged; advance to `signed` separately.
        """
        document = self.get(document_id)
        if document.status != DocumentStatus.PENDING_SIGNATURE:
            raise InvalidTransitionError(
                f"Signatures can only be recorded while pending_signature (document is {document.status.value})",
                document_id=document_id,
                current=document.status.value,
            )

        template = self.registry.get_template(document.template_id)
        schema = self.registry.get_schema(template.code)

        sig_field = schema.get_signature_field(signature.field_id)
        if sig_field is None:
            raise ValidationError(
                f"Unknown signature field '{signature.field_id}'",
                errors=[FieldError(FieldErrorCode.UNKNOWN_FIELD, signature.field_id, "No such signature field")],
                template_code=template.code,
            )
        if signature.signer_role != sig_field.role:
            raise ValidationError(
                f"Signature field '{sig_field.id}' belongs to role {sig_field.role}",
                errors=[FieldError(
                    FieldErrorCode.INVALID_OPTION, signature.field_id,
                    f"Expected signer role {sig_field.role}, got {signature.signer_role}",
                )],
                template_code=template.code,
            )

        now = self._next_timestamp(document.updated_at)
        signature.type = sig_field.type
        signature.signed_at = signature.signed_at or now
        if ip_address and not signature.ip_address:
            signature.ip_address = ip_address

        signatures = [
            s for s in document.signatures
            if not (s.field_id == signature.field_id and (s.value is None or s.signer_id == signature.signer_id))
        ]
        signatures.append(signature)

        values = FieldResolver.resolve_or_raise(schema, document.fields, allow_passthrough=METADATA_KEYS).values
        rendered = self._render(template, schema, values, signatures)
        previous = self._current_artifact(document)
        key = self.storage.store(document.id, rendered.pdf_bytes, template.code, previous=previous)

        activity = self._activity(
            DocumentActivity.SIGNED_FIELD, user_id, user_name, ip_address,
            f"{sig_field.role.title()} signed {sig_field.label or sig_field.id}", now,
        )
        changes = {
            'signatures': [s.to_dict() for s in signatures],
            'file_size': len(rendered.pdf_bytes),
            'updated_at': now,
        }
        expected = document.updated_at
        self._apply_or_restore(document, expected, changes, activity, key, rendered.pdf_bytes, previous)

        updated = self.get(document.id)
        updated.warnings = list(rendered.warnings)
        return updated

    def _apply_or_restore(self, document: Document, expected: datetime, changes: Dict[str, Any],
                          activity: ActivityRecord, key: str, written: bytes, previous: Optional[bytes]) -> None:
        """
        Commit a re-render's record changes.

        The new artifact is already stored. If the record cannot be written
        the previous artifact goes back; if the race is lost the winner's
        record is rendered back into place.
        """
        try:
            applied = self.records.update_where(document.id, document.status, expected, changes, activity)
        except DocumentError:
            logger.error(f"Record update for {document.id} failed, restoring previous artifact")
            self.storage.roll_back(key, written, previous)
            raise
        if applied:
            return
        logger.warning(f"Lost update race on {document.id}, restoring artifact from current record")
        current = self.records.get(document.id)
        if current is not None:
            self._restore_artifact(current)
        raise StaleStateError(f"Document {document.id} changed concurrently; reload and retry", document_id=document.id)

    def _current_artifact(self, document: Document) -> Optional[bytes]:
        """The bytes a re-render is about to replace, or None if the blob is already gone."""
        if not document.storage_key:
            return None
        try:
            return self.storage.fetch(document.storage_key)
        except NotFoundError:
            logger.warning(f"Document {document.id} had no artifact at {document.storage_key} before re-render")
            return None

    def _restore_owner_artifact(self, document_id: str) -> None:
        """After a failed create write, re-render the document that owns the id, if one was committed."""
        try:
            owner = self.records.get(document_id)
        except DocumentError as e:
            logger.error(f"Could not check ownership of {document_id}: {e}")
            return
        if owner is not None:
            self._restore_artifact(owner)

    def _restore_artifact(self, document: Document) -> None:
        """Render a committed record back into its key. Best effort."""
        try:
            template = self.registry.get_template(document.template_id)
            schema = self.registry.get_schema(template.code)
            values = FieldResolver.resolve_or_raise(schema, document.fields, allow_passthrough=METADATA_KEYS).values
            rendered = self._render(template, schema, values, document.signatures)
            self.storage.store(document.id, rendered.pdf_bytes, template.code, keep_on_failure=True)
        except DocumentError as e:
            logger.error(f"Could not restore artifact for {document.id}: {e}")

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, document_id: str) -> Document:
        document = self.records.get(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found", document_id=document_id)
        return document

    def list_documents(self, doc_filter: Optional[DocumentFilter] = None) -> List[Document]:
        return self.records.list(doc_filter or DocumentFilter())

    def activity(self, document_id: str) -> List[ActivityRecord]:
        self.get(document_id)
        return self.records.activities(document_id)

    def record_view(self, document_id: str, user_id: Optional[str], user_name: Optional[str] = None,
                    ip_address: Optional[str] = None) -> None:
        self.records.add_activity(document_id, self._activity(
            DocumentActivity.VIEWED, user_id, user_name, ip_address, None, utcnow()
        ))

    def statistics(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in DocumentStatus}
        by_status.update(self.records.status_counts())
        total = sum(by_status.values())
        completed = by_status[DocumentStatus.COMPLETED.value]
        return {
            'total': total,
            'by_status': by_status,
            'by_template': self.records.template_counts(),
            'completion_rate': round(completed / total, 4) if total else 0.0,
        }

    def signed_url(self, document_id: str) -> str:
        document = self.get(document_id)
        try:
            return self.storage.signed_url(self._artifact_key(document), self.signed_url_ttl)
        except NotFoundError:
            raise self._missing_artifact(document)

    def download(self, document_id: str, user_id: Optional[str], user_name: Optional[str] = None,
                 ip_address: Optional[str] = None) -> Tuple[bytes, str]:
        """
        Fetch a document's PDF for download.

        Returns:
            (pdf bytes, attachment file name)

        Raises:
            NotFoundError: unknown document
            ArtifactMissingError: the record exists but its blob is gone
        """
        document = self.get(document_id)
        key = self._artifact_key(document)
        try:
            data = self.storage.fetch(key)
        except NotFoundError:
            raise self._missing_artifact(document)

        self.records.add_activity(document_id, self._activity(
            DocumentActivity.DOWNLOADED, user_id, user_name, ip_address, None, utcnow()
        ))
        file_name = document.file_name or self.download_filename(
            document.template_id, document.metadata.property_id, document.id
        )
        return data, file_name

    def preview(self, template_code: str) -> Tuple[RenderResult, str]:
        """
        Render a template with sample values. Nothing is stored or recorded.

        Sample values the schema rejects are left blank rather than failing.
        """
        template = self.registry.get_template(template_code)
        schema = self.registry.get_schema(template.code)
        resolution = FieldResolver.resolve(schema, FieldResolver.sample_values(schema))
        rendered = self._render(template, schema, resolution.values, [])
        logger.info(f"Rendered preview of {template.code} ({len(resolution.values)} sample fields)")
        return rendered, f"{template.code}_preview.pdf"

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _render(self, template: TemplateDefinition, schema: FieldSchema, values, signatures) -> RenderResult:
        result = run_with_timeout(
            self.renderer.render, template, schema, values, signatures,
            timeout=self.render_timeout,
            description=f"Rendering {template.code}",
        )
        for warning in result.warnings:
            logger.warning(f"{template.code}: {warning.code} {warning.field}: {warning.message}")
        return result

    def _artifact_key(self, document: Document) -> str:
        if not document.storage_key:
            raise self._missing_artifact(document)
        return document.storage_key

    @staticmethod
    def _missing_artifact(document: Document) -> ArtifactMissingError:
        logger.error(f"Document {document.id} has no artifact at {document.storage_key}")
        return ArtifactMissingError(
            f"The PDF for document {document.id} is no longer in storage",
            document_id=document.id,
            detail="artifact_missing",
        )

    @staticmethod
    def _parse_status(value: Union[DocumentStatus, str]) -> DocumentStatus:
        if isinstance(value, DocumentStatus):
            return value
        try:
            return DocumentStatus(value)
        except ValueError:
            allowed = ', '.join(s.value for s in DocumentStatus)
            raise ValidationError(f"Unknown status '{value}'. Expected one of: {allowed}")

    @staticmethod
    def _normalize_timestamp(value: Union[datetime, str, None]) -> Optional[datetime]:
        if value is None or value == '':
            return None
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace('Z', '+00:00'))
            except ValueError:
                raise ValidationError(f"expectedUpdatedAt is not an ISO timestamp: {value}")
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def _check_expected(self, document: Document, expected_updated_at) -> datetime:
        expected = self._normalize_timestamp(expected_updated_at)
        if expected is not None and expected != document.updated_at:
            raise StaleStateError(
                f"Document {document.id} was modified at {document.updated_at.isoformat()}",
                document_id=document.id,
            )
        return expected or document.updated_at

    @staticmethod
    def _next_timestamp(previous: datetime) -> datetime:
        """A timestamp strictly after `previous`, so every write changes updated_at."""
        now = utcnow()
        return now if now > previous else previous + timedelta(microseconds=1)

    @staticmethod
    def _activity(action: str, user_id, user_name, ip_address, details, timestamp: datetime) -> ActivityRecord:
        return ActivityRecord(
            action=action,
            user_id=user_id,
            user_name=user_name,
            timestamp=timestamp,
            details=details,
            ip_address=ip_address,
        )
