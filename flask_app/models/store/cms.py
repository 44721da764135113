# flask_app/models/store/cms.py

from __future__ import annotations

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db


class CmsContentMixin:
    """Columns shared by CMS pages and static blocks."""

    title: Mapped[str] = mapped_column(db.String(255), nullable=False)
    identifier: Mapped[str] = mapped_column(db.String(100), nullable=False)
    content: Mapped[str] = mapped_column(db.Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    # Store views the content is assigned to; 0 means every store.
    store_ids: Mapped[list] = mapped_column(db.JSON, nullable=False, default=lambda: [0])


class CmsPage(CmsContentMixin, BaseModel):
    __tablename__ = "cms_pages"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    root_template: Mapped[str] = mapped_column(db.String(255), nullable=False, default="one_column")
    content_heading: Mapped[str | None] = mapped_column(db.String(255))
    meta_keywords: Mapped[str | None] = mapped_column(db.Text)
    meta_description: Mapped[str | None] = mapped_column(db.Text)
    meta_robots: Mapped[str | None] = mapped_column(db.String(64))
    sort_order: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    layout_update_xml: Mapped[str | None] = mapped_column(db.Text)

    __table_args__ = (Index("idx_cms_pages_identifier", "identifier"),)


class CmsBlock(CmsContentMixin, BaseModel):
    __tablename__ = "cms_blocks"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)

    __table_args__ = (Index("idx_cms_blocks_identifier", "identifier"),)
