import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# fileName names the working directory and the object key folder
SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class JobRequest(BaseModel):
    """One inbound transcoding job, as published on the work queue."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_id: str = Field(alias="UserId")
    upload_id: str = Field(alias="VideoUploadId")
    source_url: str = Field(alias="Url")
    file_name: str = Field(alias="FileName")

    @field_validator("user_id", "upload_id", "source_url", "file_name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("file_name")
    @classmethod
    def safe_segment(cls, value: str) -> str:
        if not SAFE_SEGMENT.match(value) or ".." in value:
            raise ValueError(f"{value!r} is not usable as a path segment")
        return value


class DerivedMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    size_bytes: str
    duration: str


class TranscodeResult(BaseModel):
    """Completion record published on the outbound queue."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    video_upload_id: str = Field(min_length=1)
    transcoded_url: str = Field(min_length=1)
    download_size: str = Field(min_length=1)
    stream_url: str = Field(min_length=1)
    preview_url: str = Field(min_length=1)
    duration: str = Field(min_length=1)


class JobStatus(BaseModel):
    upload_id: str
    user_id: Optional[str] = None
    file_name: Optional[str] = None
    status: str
    stage: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    transcoded_url: Optional[str] = None
    stream_url: Optional[str] = None
    preview_url: Optional[str] = None
    download_size: Optional[str] = None
    duration: Optional[str] = None
    published: Optional[bool] = None
