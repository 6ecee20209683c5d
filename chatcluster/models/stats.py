from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class WorkerStatsReport(BaseModel):
    """
    Periodic resource/counter report a worker pushes to the supervisor.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["stats"] = "stats"
    worker_id: str = Field(..., alias="workerId")
    pid: int = 0
    memory_rss_mb: float = Field(0.0, alias="memoryRssMb", ge=0)
    active_connections: int = Field(0, alias="activeConnections", ge=0)
    requests: int = Field(0, ge=0)
    errors: int = Field(0, ge=0)
    sessions: int = Field(0, ge=0)
    timestamp: float = 0.0


class WorkerReadyMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ready"] = "ready"
    worker_id: str = Field(..., alias="workerId")
    pid: int = 0
    port: int = 0


__all__ = ["WorkerReadyMessage", "WorkerStatsReport"]
