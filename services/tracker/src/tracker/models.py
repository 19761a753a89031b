from __future__ import annotations

from typing import Generic, Literal, TypeVar

from common.utils import parse_iso_datetime
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

ApplicationStatus = Literal["applied", "interview", "rejected", "closed"]
APPLICATION_STATUSES: tuple[str, ...] = ("applied", "interview", "rejected", "closed")
DEFAULT_STATUS: ApplicationStatus = "applied"

T = TypeVar("T")

HTTP_URL = TypeAdapter(HttpUrl)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _validate_apply_time(value: str | None) -> str | None:
    if value is not None and parse_iso_datetime(value) is None:
        raise ValueError("applyTime must be an ISO-8601 datetime string.")
    return value


class Application(CamelModel):
    id: int
    company_name: str
    job_title: str | None = None
    location: str | None = None
    source_url: str | None = None
    status: ApplicationStatus
    apply_time: str | None = None
    create_time: str
    update_time: str


class ApplicationDetail(Application):
    soft_skills: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)


class ApplicationCreate(CamelModel):
    company_name: str
    job_title: str | None = None
    location: str | None = None
    source_url: str | None = None
    status: ApplicationStatus = DEFAULT_STATUS
    apply_time: str | None = None
    soft_skills: str | None = None
    skills: str | None = None

    @field_validator("apply_time")
    @classmethod
    def validate_apply_time(cls, value: str | None) -> str | None:
        return _validate_apply_time(value)


class ApplicationUpdate(CamelModel):
    """Partial update; only fields present in the request body are written."""

    company_name: str | None = None
    job_title: str | None = None
    location: str | None = None
    source_url: str | None = None
    status: ApplicationStatus | None = None
    apply_time: str | None = None
    soft_skills: str | None = None
    skills: str | None = None

    @field_validator("apply_time")
    @classmethod
    def validate_apply_time(cls, value: str | None) -> str | None:
        return _validate_apply_time(value)


class ImportApplicationRequest(CamelModel):
    url: str
    status: ApplicationStatus | None = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        # Validated as an http(s) URL, but forwarded as the caller wrote it.
        value = value.strip()
        try:
            HTTP_URL.validate_python(value)
        except ValidationError as exc:
            raise ValueError("url must be an absolute http(s) URL") from exc
        return value


class PingResult(BaseModel):
    text: str


class DataResponse(BaseModel, Generic[T]):
    data: T


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
