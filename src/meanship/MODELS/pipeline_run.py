"""
Models for pipeline runs, their stages and the events that trigger them.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageResult(BaseModel):
    """
    Outcome of one stage of a run.
    """
    name: str
    status: StageStatus = StageStatus.PENDING
    error_kind: Optional[str] = None
    message: str = ""
    duration: float = 0.0


class PipelineRun(BaseModel):
    """
    One execution of build -> publish -> reconcile for a single trigger.
    """
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    commit: Optional[str] = None
    tag: str = "latest"
    status: RunStatus = RunStatus.PENDING
    stages: List[StageResult] = []
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: str = Field(default_factory=_utcnow)
    finished_at: Optional[str] = None

    @classmethod
    def start(cls, commit: Optional[str], tag: str, stage_names: List[str]) -> "PipelineRun":
        return cls(
            commit=commit,
            tag=tag,
            status=RunStatus.RUNNING,
            stages=[StageResult(name=name) for name in stage_names],
        )

    def stage(self, name: str) -> StageResult:
        for result in self.stages:
            if result.name == name:
                return result
        raise KeyError(name)

    def record_success(self, name: str, message: str = "", duration: float = 0.0) -> None:
        result = self.stage(name)
        result.status = StageStatus.SUCCEEDED
        result.message = message
        result.duration = duration

    def record_failure(self, name: str, error_kind: str, message: str, duration: float = 0.0) -> None:
        result = self.stage(name)
        result.status = StageStatus.FAILED
        result.error_kind = error_kind
        result.message = message
        result.duration = duration
        if self.failed_stage is None:
            self.failed_stage = name
            self.error_kind = error_kind

    def skip_pending(self) -> None:
        for result in self.stages:
            if result.status == StageStatus.PENDING:
                result.status = StageStatus.SKIPPED

    def finish(self, status: RunStatus) -> "PipelineRun":
        self.skip_pending()
        self.status = status
        self.finished_at = _utcnow()
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class TriggerEvent(BaseModel):
    """
    A push notification from the source host (e.g. a GitHub ``push`` event).
    """
    ref: str
    commit: str
    repository: Optional[str] = None
    deleted: bool = False

    @classmethod
    def from_github_payload(cls, payload: dict) -> "TriggerEvent":
        repo = payload.get("repository") or {}
        after = payload.get("after") or ""
        # A deleted branch reports an all-zero "after" and no head commit
        deleted = bool(payload.get("deleted")) or (bool(after) and set(after) == {"0"})
        if deleted:
            after = ""
        return cls(
            ref=payload.get("ref", ""),
            commit=after or (payload.get("head_commit") or {}).get("id", ""),
            repository=repo.get("full_name"),
            deleted=deleted,
        )

    def is_push_to(self, branch: str) -> bool:
        if self.deleted:
            return False
        return self.ref in (branch, f"refs/heads/{branch}")
