from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class FormSubmission(BaseModel):
    """
    Body of a form submission. Field contents are opaque to the limiter.
    """
    model_config = ConfigDict(extra="forbid")

    fields: Dict[str, Any] = Field(default_factory=dict)


class RateLimitSettings(BaseModel):
    """
    Raw settings payload. Values stay untyped here: coercion and defaults
    are applied by engine.config.sanitize_options so bad input falls back
    instead of failing the request.
    """
    model_config = ConfigDict(extra="ignore")

    max_submissions: Optional[Any] = None
    time_limit: Optional[Any] = None

    def raw_options(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class RateLimitOptions(BaseModel):
    max_submissions: int
    time_limit: int


class SubmissionAccepted(BaseModel):
    status: Literal["mail_sent"] = "mail_sent"
    form_id: str


class SubmissionRejected(BaseModel):
    status: Literal["validation_failed"] = "validation_failed"
    code: str
    message: str
    form_id: str
