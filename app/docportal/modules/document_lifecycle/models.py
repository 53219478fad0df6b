from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.docportal.constants import STAGE_SUBMITTED, STATUS_IN_REVIEW
from app.docportal.models import Base, User
from app.docportal.modules.document_types.models import DocumentType


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # DRAFT / IN_REVIEW / PUBLISHED / ARCHIVED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_IN_REVIEW, index=True)

    document_type_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_types.id", ondelete="SET NULL"),
        nullable=True,
    )
    current_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="SET NULL", use_alter=True, name="fk_documents_current_version"),
        nullable=True,
    )

    # Publication metadata, filled in by Quality before publishing.
    risk_level: Mapped[str | None] = mapped_column(String(8), nullable=True)
    elaborator: Mapped[str | None] = mapped_column(String(255), nullable=True)
    approver: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("app_users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="DocumentVersion.version_number",
        foreign_keys="DocumentVersion.document_id",
    )

    current_version: Mapped["DocumentVersion | None"] = relationship(
        "DocumentVersion",
        foreign_keys=[current_version_id],
        lazy="selectin",
        post_update=True,
    )

    document_type: Mapped[DocumentType | None] = relationship(DocumentType, lazy="selectin")
    created_by: Mapped[User | None] = relationship(User, lazy="selectin")

    @property
    def latest_version(self) -> "DocumentVersion | None":
        if not self.versions:
            return None
        return max(self.versions, key=lambda v: v.version_number)

    @property
    def display_version(self) -> "DocumentVersion | None":
        """Version whose file is shown: the current one, falling back to the latest."""
        return self.current_version or self.latest_version

    @property
    def latest_stage(self) -> str | None:
        v = self.latest_version
        return v.stage if v else None


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("document_id", "version_number", name="uq_document_version_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # SUBMITTED / UNDER_REVIEW / NEEDS_CHANGES / EDITED_BY_QUALITY / READY_TO_PUBLISH / PUBLISHED
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=STAGE_SUBMITTED)

    source_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    source_mime_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Optional PDF rendition; preferred over the source file when displaying.
    pdf_file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pdf_storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("app_users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship(
        "Document",
        back_populates="versions",
        foreign_keys=[document_id],
        lazy="selectin",
    )

    @property
    def display_file_name(self) -> str | None:
        return self.pdf_file_name or self.source_file_name

    @property
    def storage_keys(self) -> list[str]:
        return [k for k in (self.source_storage_key, self.pdf_storage_key) if k]


class DocumentAction(Base):
    """
    User-facing history of lifecycle actions on a document.
    Rows outlive the document (document_id is nulled on delete, title is snapshotted).
    """

    __tablename__ = "document_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int | None] = mapped_column(
        ForeignKey("documents.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    document_title: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    action: Mapped[str] = mapped_column(String(32), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    performed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("app_users.id", ondelete="SET NULL"), nullable=True)
    performed_by_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    performed_by_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
