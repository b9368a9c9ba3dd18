"""Build record ORM models.

This module defines the BuildRecord and LayerRecord models for storing
pipeline executions and the image layers each step committed.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from proxy_imagegen.db import Base
from proxy_imagegen.types import BuildStatus, PipelineState


class BuildRecord(Base):
    """ORM model for pipeline execution records.

    A BuildRecord captures one attempt to build an image from a definition:
    the pipeline state it reached, the step that failed (if any), the final
    image id and the tag applied on success.

    Attributes:
        id: Primary key.
        image_id: Definition identifier.
        definition_snapshot: JSON snapshot of the definition used.
        fingerprint: Build fingerprint (set once the entrypoint is bound).
        status: Build status (pending, running, succeeded, failed).
        state: Last pipeline state reached.
        failed_step: Name of the step that failed.
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the pipeline started.
        finished_at: Timestamp when the pipeline finished.
        final_image: Image id of the last layer on success.
        tag: Tag applied to the final image on success.
        log_path: Path to the engine log file.
        error_type: Error code if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    image_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    definition_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    fingerprint: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PipelineState.INIT.value
    )
    failed_step: Mapped[str | None] = mapped_column(String(100), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outputs
    final_image: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tag: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    layers: Mapped[list["LayerRecord"]] = relationship(
        "LayerRecord",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="LayerRecord.position",
    )

    __table_args__ = (Index("ix_build_records_image_status", "image_id", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, image_id='{self.image_id}', "
            f"status='{self.status}', state='{self.state}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self, final_image: str, tag: str) -> None:
        """Mark this build as succeeded.

        Args:
            final_image: Image id of the last layer.
            tag: Tag applied to the final image.
        """
        self.status = BuildStatus.SUCCEEDED.value
        self.state = PipelineState.DONE.value
        self.finished_at = datetime.now()
        self.final_image = final_image
        self.tag = tag

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        failed_step: str | None = None,
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Error code.
            message: Error message details.
            failed_step: Name of the step that failed.
        """
        self.status = BuildStatus.FAILED.value
        self.state = PipelineState.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if failed_step:
            self.failed_step = failed_step

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class LayerRecord(Base):
    """ORM model for an image layer committed by a build step.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        position: Zero-based position of the step in the pipeline.
        step: Step name.
        image_id: Engine image id of the layer.
        parent_id: Image id (or base reference) the step started from.
        created_at: Commit time.
        details: Step-specific facts (digests, exit codes).
    """

    __tablename__ = "layer_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    step: Mapped[str] = mapped_column(String(100), nullable=False)
    image_id: Mapped[str] = mapped_column(String(255), nullable=False)
    parent_id: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    details: Mapped[dict[str, object] | None] = mapped_column(JSON, nullable=True)

    build: Mapped["BuildRecord"] = relationship("BuildRecord", back_populates="layers")

    def __repr__(self) -> str:
        """Return string representation of LayerRecord."""
        return (
            f"<LayerRecord(build_id={self.build_id}, position={self.position}, "
            f"step='{self.step}', image_id='{self.image_id[:19]}')>"
        )


__all__ = ["BuildRecord", "LayerRecord"]
