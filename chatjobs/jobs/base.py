from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from chatjobs.service.errors import ValidationError
from chatjobs.workflow.context import StepContext

PayloadT = TypeVar("PayloadT", bound=BaseModel)
OutcomeT = TypeVar("OutcomeT")


@dataclass
class JobCredentials:
    """Backend credentials available to one job invocation.

    ``token`` is set for inline runs; durable runs carry only ``token_ref`` and
    resolve it through the token bridge on every invocation.
    """

    token: Optional[str] = None
    token_ref: Optional[str] = None


def coerce_bounded_int(value: Any, *, field: str, minimum: int, maximum: int) -> int:
    """Reject a number outside ``[minimum, maximum]``, then floor it."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"{field} must be finite")
    if value < minimum or value > maximum:
        raise ValueError(f"{field} must be between {minimum} and {maximum}")
    return math.floor(value)


def parse_model(model: Type[PayloadT], raw: Any) -> PayloadT:
    """Validate ``raw`` into ``model``, mapping failures to a 400."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError("payload must be a JSON object")
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = str(first.get("msg", "invalid payload"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        detail = f"{location}: {message}" if location else message
        raise ValidationError(f"invalid payload ({detail})") from exc


class WorkflowJob(ABC, Generic[PayloadT, OutcomeT]):
    """A job body shared by the inline and durable executors."""

    name: str = ""
    requires_user_token: bool = False

    @abstractmethod
    def parse_payload(self, raw: Any) -> PayloadT:
        ...

    @abstractmethod
    async def execute(
        self, ctx: StepContext, payload: PayloadT, credentials: JobCredentials
    ) -> OutcomeT:
        ...

    @abstractmethod
    def serialize(self, outcome: OutcomeT) -> dict:
        ...

    def http_status(self, outcome: OutcomeT) -> int:
        return 200

    def queue_payload(self, payload: PayloadT) -> dict:
        return payload.model_dump(by_alias=True, exclude_none=True, mode="json")
