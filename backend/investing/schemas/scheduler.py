from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .market_data import IngestMode


class RunType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MANUAL = "manual"


class RunTrigger(str, Enum):
    ACTIVITY_DETECTED = "activity_detected"
    TIME_SCHEDULED = "time_scheduled"
    FORCED = "forced"


class RunStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class StartedDetail(BaseModel):
    kind: Literal["started"] = "started"
    mode: IngestMode
    historical_days: int


class CompletedDetail(BaseModel):
    kind: Literal["completed"] = "completed"
    mode: IngestMode
    historical_days: int
    records_updated: int
    errors: int
    total_records: int
    success_rate: float


class FailedDetail(BaseModel):
    kind: Literal["failed"] = "failed"
    mode: IngestMode
    historical_days: int
    message: str
    conflict: bool = False
    setup: bool = False


RunDetail = Annotated[
    Union[StartedDetail, CompletedDetail, FailedDetail],
    Field(discriminator="kind"),
]


class RunLog(BaseModel):
    """Audit record of one scheduler invocation.

    Status only moves forward: started -> completed | failed.
    """
    id: Optional[int] = None
    timestamp: datetime
    run_type: RunType
    trigger: RunTrigger
    status: RunStatus = RunStatus.STARTED
    duration_ms: Optional[int] = None
    records_updated: Optional[int] = None
    errors: Optional[int] = None
    detail: RunDetail

    @classmethod
    def started(
        cls,
        run_type: RunType,
        trigger: RunTrigger,
        mode: IngestMode,
        historical_days: int,
        timestamp: Optional[datetime] = None,
    ) -> "RunLog":
        return cls(
            timestamp=timestamp or datetime.utcnow(),
            run_type=run_type,
            trigger=trigger,
            detail=StartedDetail(mode=mode, historical_days=historical_days),
        )

    def _finish(self, status: RunStatus) -> None:
        if self.status != RunStatus.STARTED:
            raise ValueError(f"Cannot move run log from '{self.status.value}' to '{status.value}'")
        self.status = status

    def complete(
        self,
        duration_ms: int,
        records_updated: int,
        errors: int,
        total_records: int,
        success_rate: float,
    ) -> None:
        self._finish(RunStatus.COMPLETED)
        self.duration_ms = duration_ms
        self.records_updated = records_updated
        self.errors = errors
        self.detail = CompletedDetail(
            mode=self.detail.mode,
            historical_days=self.detail.historical_days,
            records_updated=records_updated,
            errors=errors,
            total_records=total_records,
            success_rate=success_rate,
        )

    def fail(self, duration_ms: int, message: str, conflict: bool = False, setup: bool = False) -> None:
        self._finish(RunStatus.FAILED)
        self.duration_ms = duration_ms
        self.detail = FailedDetail(
            mode=self.detail.mode,
            historical_days=self.detail.historical_days,
            message=message,
            conflict=conflict,
            setup=setup,
        )

    @property
    def is_conflict(self) -> bool:
        return isinstance(self.detail, FailedDetail) and self.detail.conflict

    @property
    def is_setup_failure(self) -> bool:
        """The run never started: no assets matched or options were invalid."""
        return isinstance(self.detail, FailedDetail) and self.detail.setup


class SchedulerAction(str, Enum):
    START = "start"
    STOP = "stop"
    FORCE_UPDATE = "force_update"


class SchedulerCommand(BaseModel):
    action: str  # start / stop / force_update
