from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatjobs.jobs.base import JobCredentials, WorkflowJob, coerce_bounded_int, parse_model
from chatjobs.logging import get_logger
from chatjobs.storage.models import BatchResult
from chatjobs.workflow.context import StepContext

logger = get_logger(__name__)

MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 3650
DEFAULT_RETENTION_DAYS = 90
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
DEFAULT_BATCH_SIZE = 100
MAX_CLEANUP_BATCHES = 1000
CLEANUP_BATCH_DELAY_SECONDS = 1.0
CLEANUP_BATCH_TIMEOUT_SECONDS = 15.0


class CleanupPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    retention_days: int = Field(DEFAULT_RETENTION_DAYS, alias="retentionDays")
    batch_size: int = Field(DEFAULT_BATCH_SIZE, alias="batchSize")
    dry_run: bool = Field(False, alias="dryRun")

    @field_validator("retention_days", mode="before")
    @classmethod
    def _retention_days(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_RETENTION_DAYS
        return coerce_bounded_int(
            value,
            field="retentionDays",
            minimum=MIN_RETENTION_DAYS,
            maximum=MAX_RETENTION_DAYS,
        )

    @field_validator("batch_size", mode="before")
    @classmethod
    def _batch_size(cls, value: Any) -> int:
        if value is None:
            return DEFAULT_BATCH_SIZE
        return coerce_bounded_int(
            value, field="batchSize", minimum=MIN_BATCH_SIZE, maximum=MAX_BATCH_SIZE
        )

    @field_validator("dry_run", mode="before")
    @classmethod
    def _dry_run(cls, value: Any) -> bool:
        if value is None:
            return False
        if not isinstance(value, bool):
            raise ValueError("dryRun must be a boolean")
        return value


@dataclass
class CleanupRunOutcome:
    success: bool
    batches: int
    total_deleted: int
    error: Optional[str] = None
    dry_run: bool = False
    previewed: Optional[int] = None

    def to_dict(self) -> dict:
        data: dict = {
            "success": self.success,
            "batches": self.batches,
            "totalDeleted": self.total_deleted,
        }
        if self.error:
            data["error"] = self.error
        if self.dry_run:
            data["dryRun"] = True
            data["previewed"] = self.previewed or 0
        return data


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, int(value)))


class CleanupJob(WorkflowJob[CleanupPayload, CleanupRunOutcome]):
    """Retention cleanup: preview a batch, delete it, back off, repeat.

    Batches run strictly one after another. The loop ends on an empty preview
    (success) or when ``max_batches`` destructive batches have run (failure
    that still reports what was deleted).
    """

    name = "cleanup"
    requires_user_token = False

    def __init__(
        self,
        store,
        *,
        max_batches: int = MAX_CLEANUP_BATCHES,
        batch_delay_seconds: float = CLEANUP_BATCH_DELAY_SECONDS,
        batch_timeout_seconds: float = CLEANUP_BATCH_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.max_batches = max(1, max_batches)
        self.batch_delay_seconds = max(0.0, batch_delay_seconds)
        self.batch_timeout_seconds = batch_timeout_seconds

    def parse_payload(self, raw: Any) -> CleanupPayload:
        return parse_model(CleanupPayload, raw)

    def serialize(self, outcome: CleanupRunOutcome) -> dict:
        return outcome.to_dict()

    def http_status(self, outcome: CleanupRunOutcome) -> int:
        return 200 if outcome.success else 500

    async def _batch(
        self, ctx: StepContext, step: str, retention_days: int, batch_size: int,
        dry_run: bool, token: Optional[str],
    ) -> BatchResult:
        async def _call() -> dict:
            result = await self.store.delete_stale_batch(
                retention_days, batch_size, dry_run, token=token
            )
            return result.to_dict()

        raw = await ctx.run(step, _call, timeout=self.batch_timeout_seconds)
        return BatchResult.from_dict(raw)

    async def execute(
        self, ctx: StepContext, payload: CleanupPayload, credentials: JobCredentials
    ) -> CleanupRunOutcome:
        retention_days = _clamp(payload.retention_days, MIN_RETENTION_DAYS, MAX_RETENTION_DAYS)
        batch_size = _clamp(payload.batch_size, MIN_BATCH_SIZE, MAX_BATCH_SIZE)
        token = credentials.token

        if payload.dry_run:
            preview = await self._batch(
                ctx, "query-batch-1", retention_days, batch_size, True, token
            )
            logger.info(
                "cleanup_dry_run",
                retention_days=retention_days,
                batch_size=batch_size,
                would_delete=preview.deleted,
                cutoff_date=preview.cutoff_date.isoformat(),
            )
            return CleanupRunOutcome(
                success=True, batches=0, total_deleted=0, dry_run=True,
                previewed=max(0, preview.deleted),
            )

        batches = 0
        total_deleted = 0
        while True:
            n = batches + 1
            preview = await self._batch(
                ctx, f"query-batch-{n}", retention_days, batch_size, True, token
            )
            if preview.deleted <= 0:
                break

            deleted = await self._batch(
                ctx, f"delete-batch-{n}", retention_days, batch_size, False, token
            )
            batches += 1
            total_deleted += max(0, deleted.deleted)
            logger.info(
                "cleanup_batch_deleted",
                run_id=ctx.run_id,
                batch=n,
                deleted=deleted.deleted,
                total_deleted=total_deleted,
                cutoff_date=deleted.cutoff_date.isoformat(),
            )

            if batches >= self.max_batches:
                logger.error(
                    "cleanup_max_batches_exceeded",
                    run_id=ctx.run_id,
                    max_batches=self.max_batches,
                    total_deleted=total_deleted,
                )
                return CleanupRunOutcome(
                    success=False,
                    batches=batches,
                    total_deleted=total_deleted,
                    error=f"exceeded maximum batches ({self.max_batches})",
                )

            await ctx.sleep(f"sleep-{n}", self.batch_delay_seconds)

        logger.info(
            "cleanup_completed",
            run_id=ctx.run_id,
            batches=batches,
            total_deleted=total_deleted,
            retention_days=retention_days,
        )
        return CleanupRunOutcome(success=True, batches=batches, total_deleted=total_deleted)
