"""Dead-letter record for sweeps that raised."""

from datetime import datetime

from beanie import Document
from pydantic import Field


class FailedJob(Document):
    job_name: str
    job_id: str
    attempt: int = 1  # arq job_try
    error_type: str
    error_code: str | None = None  # AppError.code when the sweep failed on a domain error
    reason: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_jobs"
        indexes = [[("job_name", 1), ("created_at", -1)]]
