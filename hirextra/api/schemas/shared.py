from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChunkUploadResponse(CamelModel):
    status: str
    upload_id: str
    progress_percent: int = 0
    storage_key: Optional[str] = None
    headers: Optional[List[str]] = None
    job_id: Optional[str] = None


class HeadersRequest(CamelModel):
    storage_key: str = Field(..., min_length=1)


class HeadersResponse(CamelModel):
    headers: List[str]
    storage_key: str


class ProcessRequest(CamelModel):
    storage_key: str = Field(..., min_length=1)
    headers: List[str] = Field(default_factory=list)
    mapping: Dict[str, Optional[str]] = Field(default_factory=dict)
    require_name: Optional[bool] = None


class ProcessResponse(CamelModel):
    job_id: str


class ResumeRequest(CamelModel):
    fast_forward: bool = False


class ResumeResponse(CamelModel):
    job_id: str
    resume_from: int


class JobStatusResponse(CamelModel):
    job_id: str
    status: str
    total_rows: int = 0
    success_rows: int = 0
    failed_rows: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    failure_reasons: Dict[str, int] = Field(default_factory=dict)
    excess_failure_count: int = 0


class JobSummary(CamelModel):
    id: str
    original_name: Optional[str] = None
    storage_key: Optional[str] = None
    status: str
    total_rows: int = 0
    success_rows: int = 0
    failed_rows: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobListResponse(CamelModel):
    jobs: List[JobSummary]
    total_count: int


class DeleteJobResponse(CamelModel):
    job_id: str
    status: str
    message: str
