"""Build record ORM model.

A BuildRecord is written for every target of every orchestration run,
so past runs and their failures can be listed later.
"""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from kfx_packager.db import Base
from kfx_packager.types import BuildStatus


class BuildRecord(Base):
    """ORM model for one target build within a run.

    Attributes:
        id: Primary key.
        run_id: Identifier shared by all targets of one run.
        target_name: Distribution codename.
        base_image_ref: Container base image used.
        version_label: Version stamped on the packages.
        status: succeeded or failed.
        cache_key: Key of the tracked sources (if computed).
        is_cache_hit: Whether the intermediate image came from cache.
        error_type: Error code if the build failed.
        error_message: Diagnostics if the build failed.
        output_files: Names of the files the build produced.
        log_path: Per-target engine log.
        requested_at: When the record was created.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Target
    target_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    base_image_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    version_label: Mapped[str] = mapped_column(String(100), nullable=False)

    # Outcome
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    cache_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_files: Mapped[list[str] | None] = mapped_column(
        JSON, nullable=True, default=list
    )
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("ix_build_records_target_status", "target_name", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, run_id='{self.run_id}', "
            f"target='{self.target_name}', status='{self.status}')>"
        )

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


__all__ = ["BuildRecord"]
