from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional
from datetime import datetime

from app.services.error_messages import notification_for_job_error


class JobCreateRequest(BaseModel):
    row_id: Optional[str] = None
    variant_row_id: Optional[str] = None
    use_ai_prompt: bool = False
    swap_mode: str = 'face-hair'

    @model_validator(mode='after')
    def check_single_target(self):
        if bool(self.row_id) == bool(self.variant_row_id):
            raise ValueError('Exactly one of row_id or variant_row_id is required')
        return self


class JobCreateResponse(BaseModel):
    job_id: str = Field(serialization_alias='jobId')
    status: str
    prompt_job_id: Optional[str] = Field(default=None, serialization_alias='promptJobId')


class ErrorNotificationResponse(BaseModel):
    title: str
    description: str
    action: str


def _notification(error: Optional[str]) -> Optional[ErrorNotificationResponse]:
    if not error:
        return None
    return ErrorNotificationResponse(**notification_for_job_error(error)._asdict())


class JobPollResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    queue_position: Optional[int] = Field(default=None, serialization_alias='queuePosition')
    step: Optional[str] = None
    error: Optional[str] = None
    notification: Optional[ErrorNotificationResponse] = None

    @model_validator(mode='after')
    def fill_notification(self):
        if self.notification is None:
            self.notification = _notification(self.error)
        return self


class ActiveJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    row_id: Optional[str] = None
    variant_row_id: Optional[str] = None
    provider_request_id: Optional[str] = None
    prompt_status: Optional[str] = None
    error: Optional[str] = None
    notification: Optional[ErrorNotificationResponse] = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode='after')
    def fill_notification(self):
        if self.notification is None:
            self.notification = _notification(self.error)
        return self


class DispatchResponse(BaseModel):
    ok: bool = True
    claimed: int = 0


class CleanupResponse(BaseModel):
    ok: bool = True
    counts: dict = {}
