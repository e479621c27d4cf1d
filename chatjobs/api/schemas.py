from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    """Error response body; ``code`` is a stable value clients may branch on."""

    error: str
    code: str = Field(..., description="Stable error code, e.g. rate_limited")


class QueuedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queued: bool = True
    workflow_run_id: str = Field(..., alias="workflowRunId")


class SuspendedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    suspended: bool = True
    workflow_run_id: str = Field(..., alias="workflowRunId")
    step: Optional[str] = None


class CleanupOutcomeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    batches: int
    total_deleted: int = Field(..., alias="totalDeleted")
    error: Optional[str] = None
    dry_run: Optional[bool] = Field(None, alias="dryRun")
    previewed: Optional[int] = None


class TitleOutcomeResponse(BaseModel):
    saved: bool
    title: Optional[str] = None
    kept_existing: Optional[bool] = Field(
        None,
        alias="keptExisting",
        description="set when an auto-mode title was generated but a user-set title was kept",
    )
    reason: Optional[str] = Field(
        None,
        description=(
            "empty_seed, missing_openrouter_key, generation_failed, empty_title, "
            "llm_status_<code>, unsupported_provider, or unauthorized"
        ),
    )


class HealthResponse(BaseModel):
    status: str
    cache: str
    queue_configured: bool
    signing_keys_configured: bool


def error_responses(*status_codes: int) -> dict:
    """OpenAPI ``responses`` entries for the error statuses a route can return."""
    return {code: {"model": ErrorBody} for code in status_codes}
