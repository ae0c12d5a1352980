from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# -----------------------------
# Edge conditions
# -----------------------------


class ConditionType(str, Enum):
    ALWAYS = "always"
    ON_JOB_SUCCESS = "on_job_success"
    ON_JOB_FAILURE = "on_job_failure"
    JS_EXPRESSION = "js_expression"


class GraphBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# -----------------------------
# Nodes
# -----------------------------


class Job(GraphBase):
    """A job's body and adaptor are opaque payloads, never interpreted here."""

    id: str
    name: str
    adaptor: str
    body: str = ""
    credential_id: Optional[str] = None


class Trigger(GraphBase):
    id: str
    type: Literal["webhook", "cron", "manual"]
    enabled: bool = True
    cron_expression: Optional[str] = None

    @model_validator(mode="after")
    def cron_needs_expression(self):
        if self.type == "cron" and not self.cron_expression:
            raise ValueError("cron trigger must define cron_expression")
        return self


class Edge(GraphBase):
    id: Optional[str] = None
    source: str
    target: str
    condition_type: ConditionType = ConditionType.ALWAYS
    condition_expression: Optional[str] = None
    condition_label: Optional[str] = None
    enabled: bool = True

    @model_validator(mode="after")
    def expression_iff_js(self):
        if self.condition_type == ConditionType.JS_EXPRESSION and not self.condition_expression:
            raise ValueError("js_expression edge must define condition_expression")
        if self.condition_type != ConditionType.JS_EXPRESSION and self.condition_expression:
            raise ValueError("condition_expression is only allowed on js_expression edges")
        return self


# -----------------------------
# Whole graph
# -----------------------------


class GraphDefinition(GraphBase):
    """The jobs/triggers/edges of one workflow version."""

    jobs: List[Job] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    positions: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def edges_reference_nodes(self):
        job_ids = {j.id for j in self.jobs}
        trigger_ids = {t.id for t in self.triggers}
        if len(job_ids) != len(self.jobs):
            raise ValueError("job ids must be unique")
        if job_ids & trigger_ids:
            raise ValueError("job and trigger ids must not overlap")
        for edge in self.edges:
            if edge.source not in job_ids | trigger_ids:
                raise ValueError(f"edge source {edge.source} is not a job or trigger")
            if edge.target not in job_ids:
                raise ValueError(f"edge target {edge.target} is not a job")
        return self

    def job(self, job_id: str) -> Optional[Job]:
        return next((j for j in self.jobs if j.id == job_id), None)

    def trigger(self, trigger_id: str) -> Optional[Trigger]:
        return next((t for t in self.triggers if t.id == trigger_id), None)
