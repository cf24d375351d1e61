"""
Document Record Store

Persists Document metadata and activity rows through Flask-SQLAlchemy.
Status changes go through `update_where`, an optimistic compare-and-set on
(status, updated_at); the caller learns it lost a race from the return
value instead of from a held lock.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import DocumentActivity, GeneratedDocument, db

from .exceptions import StorageUnavailableError
from .types import (
    ActivityRecord,
    Document,
    DocumentFilter,
    DocumentMetadata,
    DocumentStatus,
    SignatureData,
)

logger = logging.getLogger(__name__)


class DocumentRecordStore:
    """Record store over the generated_documents / document_activity tables."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, document_id: str) -> Optional[Document]:
        try:
            row = self.session.get(GeneratedDocument, document_id)
        except SQLAlchemyError as e:
            self._fail('get', e)
        return self._to_document(row) if row else None

    def list(self, doc_filter: DocumentFilter) -> List[Document]:
        """Documents matching every set filter, newest first."""
        query = self.session.query(GeneratedDocument)

        if doc_filter.statuses:
            query = query.filter(GeneratedDocument.status.in_([s.value for s in doc_filter.statuses]))
        if doc_filter.template_ids:
            query = query.filter(GeneratedDocument.template_id.in_(doc_filter.template_ids))
        if doc_filter.property_id:
            query = query.filter(GeneratedDocument.property_id == doc_filter.property_id)
        if doc_filter.created_by:
            query = query.filter(GeneratedDocument.created_by == doc_filter.created_by)
        if doc_filter.date_from:
            query = query.filter(GeneratedDocument.created_at >= doc_filter.date_from)
        if doc_filter.date_to:
            query = query.filter(GeneratedDocument.created_at <= doc_filter.date_to)
        if doc_filter.search_text:
            pattern = f"%{doc_filter.search_text}%"
            query = query.filter(or_(
                GeneratedDocument.template_name.ilike(pattern),
                GeneratedDocument.property_address.ilike(pattern),
            ))

        query = query.order_by(GeneratedDocument.created_at.desc(), GeneratedDocument.id.desc())
        try:
            rows = query.offset(doc_filter.offset).limit(doc_filter.limit).all()
        except SQLAlchemyError as e:
            self._fail('list', e)
        return [self._to_document(row) for row in rows]

    def activities(self, document_id: str) -> List[ActivityRecord]:
        try:
            rows = (
                self.session.query(DocumentActivity)
                .filter(DocumentActivity.document_id == document_id)
                .order_by(DocumentActivity.timestamp.asc(), DocumentActivity.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self._fail('activities', e)
        return [self._to_activity(row) for row in rows]

    def status_counts(self) -> Dict[str, int]:
        return self._count_by(GeneratedDocument.status)

    def template_counts(self) -> Dict[str, int]:
        return self._count_by(GeneratedDocument.template_id)

    def _count_by(self, column) -> Dict[str, int]:
        try:
            rows = self.session.query(column, func.count(GeneratedDocument.id)).group_by(column).all()
        except SQLAlchemyError as e:
            self._fail('count', e)
        return {key: count for key, count in rows}

    # =========================================================================
    # WRITES
    # =========================================================================

    def insert(self, document: Document, activities: List[ActivityRecord]) -> bool:
        """
        Insert a document and its first activity rows in one transaction.

        Returns False when a row with the same id already exists.
        """
        meta = document.metadata
        row = GeneratedDocument(
            id=document.id,
            template_id=document.template_id,
            template_name=document.template_name,
            status=document.status.value,
            property_id=meta.property_id,
            property_address=meta.property_address,
            buyer_id=meta.buyer_id,
            seller_id=meta.seller_id,
            agent_id=meta.agent_id,
            transaction_id=meta.transaction_id,
            category=meta.category,
            category_number=meta.category_number,
            version=meta.version,
            page_count=meta.page_count,
            fields=document.fields,
            signatures=[s.to_dict() for s in document.signatures],
            storage_key=document.storage_key,
            file_name=document.file_name,
            file_size=document.file_size,
            created_by=document.created_by,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )
        try:
            self.session.add(row)
            self.session.flush()
            for activity in activities:
                self.session.add(self._activity_row(document.id, activity))
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.info(f"Document {document.id} already exists, insert skipped")
            return False
        except SQLAlchemyError as e:
            self._fail('insert', e)
        return True

    def update_where(
        self,
        document_id: str,
        expected_status: DocumentStatus,
        expected_updated_at: datetime,
        changes: Dict[str, Any],
        activity: Optional[ActivityRecord] = None,
    ) -> bool:
        """
        UPDATE ... WHERE id = ? AND status = ? AND updated_at = ?

        Applies `changes` (column -> value) and appends `activity` atomically.
        Returns False, writing nothing, when the row no longer matches.
        """
        values = {k: (v.value if isinstance(v, DocumentStatus) else v) for k, v in changes.items()}
        stmt = (
            update(GeneratedDocument)
            .where(
                GeneratedDocument.id == document_id,
                GeneratedDocument.status == expected_status.value,
                GeneratedDocument.updated_at == expected_updated_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            if result.rowcount != 1:
                self.session.rollback()
                logger.info(f"Optimistic update of {document_id} lost (expected {expected_status.value})")
                return False
            if activity is not None:
                self.session.add(self._activity_row(document_id, activity))
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail('update', e)
        # Drop identity-map copies the bulk UPDATE bypassed
        self.session.expire_all()
        return True

    def add_activity(self, document_id: str, activity: ActivityRecord) -> None:
        try:
            self.session.add(self._activity_row(document_id, activity))
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail('add_activity', e)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _fail(self, operation: str, error: SQLAlchemyError):
        self.session.rollback()
        logger.error(f"Record store {operation} failed: {error}")
        raise StorageUnavailableError(f"Record store unavailable during {operation}") from error

    @staticmethod
    def _activity_row(document_id: str, activity: ActivityRecord) -> DocumentActivity:
        return DocumentActivity(
            document_id=document_id,
            action=activity.action,
            user_id=activity.user_id,
            user_name=activity.user_name,
            timestamp=activity.timestamp,
            details=activity.details,
            ip_address=activity.ip_address,
        )

    @staticmethod
    def _to_activity(row: DocumentActivity) -> ActivityRecord:
        return ActivityRecord(
            action=row.action,
            user_id=row.user_id,
            user_name=row.user_name,
            timestamp=row.timestamp,
            details=row.details,
            ip_address=row.ip_address,
        )

    @staticmethod
    def _to_document(row: GeneratedDocument) -> Document:
        return Document(
            id=row.id,
            template_id=row.template_id,
            template_name=row.template_name,
            status=DocumentStatus(row.status),
            metadata=DocumentMetadata(
                property_id=row.property_id,
                property_address=row.property_address,
                category=row.category,
                category_number=row.category_number,
                version=row.version,
                page_count=row.page_count,
                buyer_id=row.buyer_id,
                seller_id=row.seller_id,
                agent_id=row.agent_id,
                transaction_id=row.transaction_id,
            ),
            fields=dict(row.fields or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
            created_by=row.created_by,
            signatures=[SignatureData.from_dict(s) for s in row.signatures or []],
            storage_key=row.storage_key,
            file_name=row.file_name,
            file_size=row.file_size,
        )
