"""SQLAlchemy database models."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    """Generate a string primary key."""
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Account record. Only the admin flag matters to ingestion."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    developer: Mapped[Optional["Developer"]] = relationship(
        "Developer", back_populates="user", uselist=False
    )


class Developer(Base):
    """Catalog owner profile; imported apps are attributed to the admin's developer row."""

    __tablename__ = "developers"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id"), unique=True, nullable=False
    )
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="developer")


class Category(Base):
    """Two-level catalog taxonomy node. A row with a parent is a subcategory."""

    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("categories.id"), nullable=True, index=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )  # Source site category id
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )


class Vendor(Base):
    """Publisher of an app on the source site."""

    __tablename__ = "vendors"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    external_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class App(Base):
    """Catalog entry created by the import pipeline."""

    __tablename__ = "apps"
    __table_args__ = (
        UniqueConstraint("name", "developer_id", name="uq_app_name_developer"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    short_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    full_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    icon: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    screenshots: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    requirements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    other_requirements: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    license: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    file_size: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    bundle_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    price: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    download_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_beta: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_supported: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # Display name
    monetization: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    download_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    purchase_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    release_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_scan_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    original_category: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    developer_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("developers.id"), nullable=False, index=True
    )
    category_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("categories.id"), nullable=False
    )
    subcategory_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("categories.id"), nullable=True
    )
    vendor_id: Mapped[Optional[str]] = mapped_column(
        String(32), ForeignKey("vendors.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    versions: Mapped[list["AppVersion"]] = relationship(
        "AppVersion", back_populates="app", cascade="all, delete-orphan"
    )


class AppVersion(Base):
    """Release of an app; the importer creates the initial one."""

    __tablename__ = "app_versions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    app_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("apps.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    changelog: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    min_os_version: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[str] = mapped_column(Text, default="", nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # bytes
    sha256_hash: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    app: Mapped["App"] = relationship("App", back_populates="versions")


class Job(Base):
    """Background job record polled by the admin UI."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # import, sync
    status: Mapped[str] = mapped_column(
        String(16), default="pending", nullable=False
    )  # pending, processing, completed, failed
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if self.total == 0:
            return 0.0
        return (self.progress / self.total) * 100
