from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# --- Query Models ---


class StreamQueryRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    prompt: str = Field(..., min_length=1)
    model: str | None = None

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value

    @field_validator("model")
    @classmethod
    def blank_model_is_default(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value


class QueryRequest(StreamQueryRequest):
    user_id: str | None = Field(default=None, validation_alias=AliasChoices("user_id", "userID"))


class QueryResult(BaseModel):
    success: Literal[True] = True
    response: str
    model: str
    user_id: str | None = None


# --- Readiness / Health Models ---


class Readiness(BaseModel):
    status: Literal["ok", "degraded", "auth_required"]
    message: str
    fields: dict[str, Any] = Field(default_factory=dict)


class HealthRecord(BaseModel):
    service_name: str
    status: Literal["ok", "degraded", "error"]
    timestamp: datetime
    detail: str = ""


class RoundReport(BaseModel):
    round: int
    records: list[HealthRecord]

    @property
    def healthy(self) -> bool:
        return all(record.status == "ok" for record in self.records)

    @property
    def unhealthy_count(self) -> int:
        return sum(1 for record in self.records if record.status != "ok")


# --- Supervisor Models ---


class ProcessStatus(BaseModel):
    name: str
    status: str
    pid: int | None = None
    restart_count: int = 0
    scheduled_restart_count: int = 0
    last_restart_at: datetime | None = None
    last_exit_code: int | None = None
