from __future__ import annotations

from pydantic import BaseModel, Field


class SaveStackRequest(BaseModel):
    yaml: str = Field(..., description="Compose-style stack description")
    env: str = Field("", description="Dotenv text used for ${VAR} substitution")


class StackResponse(BaseModel):
    name: str
    yaml: str
    env: str


class StatusResponse(BaseModel):
    name: str
    status: str = Field(..., description="Operational|Stopped")


class ContainerInfo(BaseModel):
    id: str
    name: str
    service: str | None = None
    state: str = ""


class ActionResponse(BaseModel):
    name: str
    action: str = Field(..., description="start|update|stop")
    started: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    removed: int = 0
