"""
ORM tables for labs, lab sessions and flag submissions.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from labrange.infrastructure.database import Base

ACTIVE_STATUS_SQL = "status IN ('starting', 'running')"


class LabRow(Base):
    __tablename__ = "labs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    difficulty: Mapped[str] = mapped_column(String(20))
    category: Mapped[str] = mapped_column(String(50))
    version: Mapped[str] = mapped_column(String(20))
    image_path: Mapped[str] = mapped_column(String(500))
    image_checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    template_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    flags: Mapped[Dict[str, Any]] = mapped_column(JSON)
    sizing: Mapped[Dict[str, Any]] = mapped_column(JSON)
    network_mode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    default_credentials: Mapped[Dict[str, Any]] = mapped_column(JSON)
    root_credentials: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Counters, only ever incremented
    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    completions: Mapped[int] = mapped_column(Integer, default=0)
    flag_submissions: Mapped[int] = mapped_column(Integer, default=0)
    correct_submissions: Mapped[int] = mapped_column(Integer, default=0)


class LabSessionRow(Base):
    __tablename__ = "lab_sessions"
    __table_args__ = (
        # At most one starting/running session per user
        Index(
            "uq_lab_sessions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_SQL),
            postgresql_where=text(ACTIVE_STATUS_SQL),
        ),
        Index("ix_lab_sessions_status_expires", "status", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    lab_id: Mapped[str] = mapped_column(ForeignKey("labs.id"), index=True)
    status: Mapped[str] = mapped_column(String(20))
    instance_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    network: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    connection: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    flags: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    errors: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    stopped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    teardown_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    extension_count: Mapped[int] = mapped_column(Integer, default=0)
    resources_released: Mapped[bool] = mapped_column(Boolean, default=False)
    teardown_attempts: Mapped[int] = mapped_column(Integer, default=0)
    stop_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class FlagSubmissionRow(Base):
    __tablename__ = "flag_submissions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    session_id: Mapped[str] = mapped_column(String(32), index=True)
    lab_id: Mapped[str] = mapped_column(String(64), index=True)
    flag_type: Mapped[str] = mapped_column(String(10))
    submitted_value: Mapped[str] = mapped_column(String(500))
    expected_value: Mapped[str] = mapped_column(String(500))
    is_correct: Mapped[bool] = mapped_column(Boolean)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0)
    response_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
