# models.py
from datetime import datetime, timezone

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GatewayUser(UserMixin):
    """
    Identity asserted by the upstream gateway (X-User-Id / X-User-Name).

    Not persisted; authentication happens before requests reach this service.
    """

    def __init__(self, user_id, name=None):
        self.id = str(user_id)
        self.name = name

    def __repr__(self):
        return f'<GatewayUser {self.id}>'


class GeneratedDocument(db.Model):
    """One generation instance of a template, its field values and its status."""
    __tablename__ = 'generated_documents'

    id = db.Column(db.String(64), primary_key=True)
    template_id = db.Column(db.String(64), nullable=False, index=True)
    template_name = db.Column(db.String(200), nullable=False)
    status = db.Column(db.String(32), nullable=False, default='draft', index=True)

    # Metadata
    property_id = db.Column(db.String(64), nullable=False, index=True)
    property_address = db.Column(db.String(300))
    buyer_id = db.Column(db.String(64))
    seller_id = db.Column(db.String(64))
    agent_id = db.Column(db.String(64))
    transaction_id = db.Column(db.String(64))
    category = db.Column(db.String(64), nullable=False)
    category_number = db.Column(db.String(4), nullable=False)
    version = db.Column(db.String(20), nullable=False)
    page_count = db.Column(db.Integer, nullable=False)

    # Content
    fields = db.Column(db.JSON, nullable=False, default=dict)  # JSON-safe resolved values
    signatures = db.Column(db.JSON, nullable=False, default=list)

    # Artifact
    storage_key = db.Column(db.String(300))
    file_name = db.Column(db.String(255))
    file_size = db.Column(db.Integer)

    created_by = db.Column(db.String(64), index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    activities = db.relationship(
        'DocumentActivity',
        backref='document',
        lazy='dynamic',
        cascade='all, delete-orphan',
        order_by='DocumentActivity.id',
    )

    def __repr__(self):
        return f'<GeneratedDocument {self.id} {self.template_id} {self.status}>'


class DocumentActivity(db.Model):
    """Append-only trail of what happened to a document."""
    __tablename__ = 'document_activity'

    # Action types
    CREATED = 'created'
    UPDATED = 'updated'
    VIEWED = 'viewed'
    DOWNLOADED = 'downloaded'
    SUBMITTED_FOR_REVIEW = 'submitted_for_review'
    SENT_FOR_SIGNATURE = 'sent_for_signature'
    SIGNED_FIELD = 'signed_field'
    SIGNED = 'signed'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    EXPIRED = 'expired'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    document_id = db.Column(
        db.String(64),
        db.ForeignKey('generated_documents.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    action = db.Column(db.String(40), nullable=False)
    user_id = db.Column(db.String(64))
    user_name = db.Column(db.String(120))
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)
    details = db.Column(db.Text)
    ip_address = db.Column(db.String(45))

    def __repr__(self):
        return f'<DocumentActivity {self.document_id} {self.action}>'
