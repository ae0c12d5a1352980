# flowrun/persistence/models.py

from sqlalchemy import (
    Column, String, Integer, Text, ForeignKey, DateTime, Boolean, JSON,
    Index, UniqueConstraint, text, true
)

from flowrun.persistence.database import Base
from flowrun.utils.timefmt import utcnow


# -----------------------
# projects
# -----------------------
class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    concurrency = Column(Integer, nullable=True)
    retention_policy = Column(String(50), nullable=False, default="retain_all", server_default=text("'retain_all'"))
    dataclip_retention_period = Column(Integer, nullable=True)   # days
    inserted_at = Column(DateTime, nullable=False, default=utcnow)


# -----------------------
# workflows (live, owned by the editor)
# -----------------------
class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    name = Column(String(255), nullable=False)
    lock_version = Column(Integer, nullable=False, default=1, server_default=text("1"))
    concurrency = Column(Integer, nullable=True)
    enable_job_logs = Column(Boolean, nullable=False, default=True, server_default=true())
    definition = Column(JSON, nullable=False)      # jobs / triggers / edges / positions
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# -----------------------
# workflow_snapshots (immutable)
# -----------------------
class GraphSnapshot(Base):
    __tablename__ = "workflow_snapshots"
    __table_args__ = (
        UniqueConstraint("workflow_id", "lock_version", name="uq_snapshot_workflow_version"),
    )

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False)
    lock_version = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    jobs = Column(JSON, nullable=False)
    triggers = Column(JSON, nullable=False)
    edges = Column(JSON, nullable=False)
    positions = Column(JSON, nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)


# -----------------------
# dataclips
# -----------------------
class Dataclip(Base):
    __tablename__ = "dataclips"
    __table_args__ = (
        Index("idx_dataclips_project_inserted", "project_id", "inserted_at"),
        Index("idx_dataclips_sha256", "project_id", "sha256"),
    )

    id = Column(String(36), primary_key=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    type = Column(String(50), nullable=False)
    body = Column(JSON(none_as_null=True), nullable=True)
    request = Column(JSON(none_as_null=True), nullable=True)
    name = Column(String(255), nullable=True)
    sha256 = Column(String(64), nullable=True)
    wiped_at = Column(DateTime, nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# -----------------------
# work_orders
# -----------------------
class WorkOrder(Base):
    __tablename__ = "work_orders"
    __table_args__ = (
        Index("idx_work_orders_workflow_state", "workflow_id", "state"),
    )

    id = Column(String(36), primary_key=True)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False)
    snapshot_id = Column(String(36), ForeignKey("workflow_snapshots.id"), nullable=False)
    trigger_id = Column(String(36), nullable=True)     # NULL for manual runs
    dataclip_id = Column(String(36), ForeignKey("dataclips.id"), nullable=False)
    state = Column(String(50), nullable=False, default="pending", server_default=text("'pending'"))
    last_activity = Column(DateTime, nullable=False, default=utcnow)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)


# -----------------------
# runs
# -----------------------
class Run(Base):
    __tablename__ = "runs"
    __table_args__ = (
        Index("idx_runs_workflow_state", "workflow_id", "state"),
        Index("idx_runs_state_priority", "state", "priority", "inserted_at"),
        Index("idx_runs_work_order", "work_order_id", "inserted_at"),
    )

    id = Column(String(36), primary_key=True)
    work_order_id = Column(String(36), ForeignKey("work_orders.id"), nullable=False)
    workflow_id = Column(String(36), ForeignKey("workflows.id"), nullable=False)   # denormalised for admission
    snapshot_id = Column(String(36), ForeignKey("workflow_snapshots.id"), nullable=False)
    starting_job_id = Column(String(36), nullable=True)
    starting_trigger_id = Column(String(36), nullable=True)
    dataclip_id = Column(String(36), ForeignKey("dataclips.id"), nullable=False)
    parent_run_id = Column(String(36), ForeignKey("runs.id"), nullable=True)
    state = Column(String(50), nullable=False, default="pending", server_default=text("'pending'"))
    priority = Column(Integer, nullable=False, default=1, server_default=text("1"))
    exit_reason = Column(String(100), nullable=True)
    error_type = Column(String(255), nullable=True)
    worker_name = Column(String(255), nullable=True)
    run_timeout_seconds = Column(Integer, nullable=True)
    created_by = Column(String(255), nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, nullable=True)


# -----------------------
# steps: stored once, shown under many runs via run_steps
# -----------------------
class Step(Base):
    __tablename__ = "steps"
    __table_args__ = (
        Index("idx_steps_run", "run_id"),
    )

    id = Column(String(36), primary_key=True)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False)   # run that executed it
    job_id = Column(String(36), nullable=False)
    snapshot_id = Column(String(36), ForeignKey("workflow_snapshots.id"), nullable=False)
    input_dataclip_id = Column(String(36), ForeignKey("dataclips.id"), nullable=True)
    output_dataclip_id = Column(String(36), ForeignKey("dataclips.id"), nullable=True)
    exit_reason = Column(String(100), nullable=True)
    error_type = Column(String(255), nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)


class RunStep(Base):
    __tablename__ = "run_steps"
    __table_args__ = (
        Index("idx_run_steps_step", "step_id"),
    )

    run_id = Column(String(36), ForeignKey("runs.id"), primary_key=True)
    step_id = Column(String(36), ForeignKey("steps.id"), primary_key=True)
    inserted_at = Column(DateTime, nullable=False, default=utcnow)


# -----------------------
# log_lines (append-only; id is the append sequence)
# -----------------------
class LogLine(Base):
    __tablename__ = "log_lines"
    __table_args__ = (
        Index("idx_log_lines_run", "run_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("runs.id"), nullable=False)
    step_id = Column(String(36), ForeignKey("steps.id"), nullable=True)
    message = Column(Text, nullable=False)
    source = Column(String(50), nullable=True)
    level = Column(String(20), nullable=False, default="info", server_default=text("'info'"))
    timestamp = Column(DateTime, nullable=False)      # worker supplied, may be skewed
    inserted_at = Column(DateTime, nullable=False, default=utcnow)
