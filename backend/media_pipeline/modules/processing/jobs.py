"""Processing job payloads.

Jobs are a tagged union on ``kind`` so they survive a trip through a
message broker and come back as the right type.
"""

import uuid
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class UploadCompletedJob(BaseModel):
    """Process a media item registered against a freshly completed upload."""

    kind: Literal["upload_completed"] = "upload_completed"
    media_item_id: uuid.UUID
    upload_session_id: uuid.UUID
    source_path: str


class ReprocessRequestedJob(BaseModel):
    """Process a media item again, after a reset."""

    kind: Literal["reprocess_requested"] = "reprocess_requested"
    media_item_id: uuid.UUID
    reason: str = "manual"


ProcessingJob = Annotated[
    Union[UploadCompletedJob, ReprocessRequestedJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter = TypeAdapter(ProcessingJob)


def parse_job(payload: dict) -> Union[UploadCompletedJob, ReprocessRequestedJob]:
    """Rebuild a job from its JSON-compatible form."""
    return _job_adapter.validate_python(payload)


def dump_job(job: Union[UploadCompletedJob, ReprocessRequestedJob]) -> dict:
    return job.model_dump(mode="json")
