from pydantic import BaseModel, ConfigDict, Field, computed_field
from typing import Optional, Dict, Any, List
from datetime import datetime

from flowrun.domain.graph_model import GraphDefinition
from flowrun.domain.states import step_state


# 项目 / 工作流相关模式
class ProjectCreate(BaseModel):
    name: str
    concurrency: Optional[int] = Field(default=None, ge=1)
    retention_policy: str = "retain_all"
    dataclip_retention_period: Optional[int] = Field(default=None, ge=1)


class ProjectUpdate(BaseModel):
    concurrency: Optional[int] = Field(default=None, ge=1)
    retention_policy: Optional[str] = None
    dataclip_retention_period: Optional[int] = Field(default=None, ge=1)


class ProjectResponse(BaseModel):
    id: str
    name: str
    concurrency: Optional[int] = None
    retention_policy: str
    dataclip_retention_period: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class WorkflowSave(BaseModel):
    project_id: str
    name: str
    definition: GraphDefinition
    concurrency: Optional[int] = Field(default=None, ge=1)
    enable_job_logs: bool = True


class WorkflowResponse(BaseModel):
    id: str
    project_id: str
    name: str
    lock_version: int
    concurrency: Optional[int] = None
    enable_job_logs: bool
    definition: Dict[str, Any]
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SnapshotResponse(BaseModel):
    id: str
    workflow_id: str
    lock_version: int
    name: str
    jobs: List[Dict[str, Any]]
    triggers: List[Dict[str, Any]]
    edges: List[Dict[str, Any]]
    positions: Optional[Dict[str, Any]] = None
    inserted_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConcurrencyResponse(BaseModel):
    workflow_id: str
    cap: Optional[int] = None
    source: str
    parallelism_disabled: bool
    notice: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# 数据片段
class DataclipResponse(BaseModel):
    id: str
    project_id: str
    type: str
    body: Optional[Any] = None
    request: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    sha256: Optional[str] = None
    wiped_at: Optional[datetime] = None
    inserted_at: datetime

    model_config = ConfigDict(from_attributes=True)


# 工作单 / 运行
class WorkOrderCreate(BaseModel):
    workflow_id: str
    trigger_id: Optional[str] = None
    job_id: Optional[str] = None
    dataclip: Optional[Any] = None
    dataclip_id: Optional[str] = None
    request: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None
    run_timeout_seconds: Optional[int] = Field(default=None, ge=1)


class RunResponse(BaseModel):
    id: str
    work_order_id: str
    workflow_id: str
    snapshot_id: str
    starting_job_id: Optional[str] = None
    starting_trigger_id: Optional[str] = None
    dataclip_id: str
    parent_run_id: Optional[str] = None
    state: str
    priority: int
    exit_reason: Optional[str] = None
    error_type: Optional[str] = None
    worker_name: Optional[str] = None
    created_by: Optional[str] = None
    inserted_at: datetime
    claimed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WorkOrderResponse(BaseModel):
    id: str
    workflow_id: str
    snapshot_id: str
    trigger_id: Optional[str] = None
    dataclip_id: str
    state: str
    last_activity: datetime
    inserted_at: datetime
    runs: List[RunResponse] = []

    model_config = ConfigDict(from_attributes=True)


class WorkOrderCreatedResponse(BaseModel):
    work_order: WorkOrderResponse
    run: RunResponse
    admitted: bool
    queued_reason: Optional[str] = None


class StepResponse(BaseModel):
    id: str
    run_id: str                       # run that executed the step
    job_id: str
    snapshot_id: str
    input_dataclip_id: Optional[str] = None
    output_dataclip_id: Optional[str] = None
    exit_reason: Optional[str] = None
    error_type: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def state(self) -> str:
        return step_state(self.exit_reason)


# worker 协议
class ClaimRequest(BaseModel):
    worker_id: str
    demand: int = Field(default=1, ge=1, le=100)
    run_id: Optional[str] = None


class ClaimResponse(BaseModel):
    runs: List[RunResponse]
    queued: bool = False


class CompleteRunRequest(BaseModel):
    exit_reason: str
    error_type: Optional[str] = None


class StartStepRequest(BaseModel):
    job_id: str
    input_dataclip_id: str


class CompleteStepRequest(BaseModel):
    exit_reason: str
    output_dataclip: Optional[Any] = None
    output_dataclip_id: Optional[str] = None
    error_type: Optional[str] = None


class LogLineIn(BaseModel):
    message: Any
    timestamp: Optional[datetime] = None
    step_id: Optional[str] = None
    level: str = "info"
    source: Optional[str] = None


class AppendLogsRequest(BaseModel):
    lines: List[LogLineIn]


class LogLineResponse(BaseModel):
    id: int
    run_id: str
    step_id: Optional[str] = None
    message: str
    level: str
    source: Optional[str] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


# 重跑
class RerunRequest(BaseModel):
    job_id: str
    created_by: Optional[str] = None


class BulkRerunRequest(BaseModel):
    work_order_ids: List[str]
    job_id: str
    created_by: Optional[str] = None


class BulkRerunFromStartRequest(BaseModel):
    work_order_ids: List[str]
    created_by: Optional[str] = None


class SkippedWorkOrderResponse(BaseModel):
    work_order_id: str
    reason: str

    model_config = ConfigDict(from_attributes=True)


class BulkRerunResponse(BaseModel):
    message: str
    enqueued: List[RunResponse]
    skipped: List[SkippedWorkOrderResponse]


class RerunEligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    settings_path: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
