from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime


class PromptQueueRequest(BaseModel):
    ref_urls: List[str] = []
    target_url: str
    swap_mode: str = 'face-hair'
    priority: int = Field(default=5, ge=1, le=10)
    model_id: Optional[str] = None
    row_id: Optional[str] = None
    variant_row_id: Optional[str] = None


class PromptEnhanceRequest(BaseModel):
    existing_prompt: str = Field(min_length=1)
    user_instructions: str = Field(min_length=1)
    ref_urls: List[str] = []
    target_url: Optional[str] = None
    priority: int = Field(default=5, ge=1, le=10)
    model_id: Optional[str] = None
    row_id: Optional[str] = None
    variant_row_id: Optional[str] = None


class PromptQueueResponse(BaseModel):
    prompt_job_id: str = Field(serialization_alias='promptJobId')
    status: str = 'queued'


class PromptJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    operation: str
    status: str
    generated_prompt: Optional[str] = None
    error: Optional[str] = None
    retry_count: int
    priority: int
    created_at: datetime
    completed_at: Optional[datetime] = None


class PromptQueueStats(BaseModel):
    total_queued: int
    total_processing: int
    total_completed: int
    total_failed: int
    average_wait_time: float
    estimated_wait_time: int
