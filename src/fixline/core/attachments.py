"""File attachments sent along with a tool call."""
from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from fixline.core.errors import ValidationError
from fixline.integrations.tasks_api import TasksApi

logger = logging.getLogger("fixline.attachments")

MAX_ATTACHMENTS = 5
MAX_BINARY_BYTES = 10 * 1024 * 1024
MAX_TEXT_BYTES = 1 * 1024 * 1024


class Attachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName", min_length=1)
    content: str = Field(min_length=1)
    mime_type: str = Field(alias="mimeType", min_length=1)

    @property
    def is_binary(self) -> bool:
        """Images and PDFs arrive base64-encoded; everything else is text."""
        return self.mime_type.startswith("image/") or self.mime_type == "application/pdf"

    @property
    def size(self) -> int:
        if self.is_binary:
            try:
                return len(base64.b64decode(self.content, validate=True))
            except (binascii.Error, ValueError):
                raise ValidationError(f"Invalid base64 content for file {self.file_name}") from None
        return len(self.content.encode("utf-8"))


def parse_attachments(raw: Any) -> list[Attachment]:
    """Validate the ``attachments`` tool argument. Raises before any network call."""
    if raw in (None, []):
        return []
    if not isinstance(raw, list):
        raise ValidationError("attachments must be a list")
    if len(raw) > MAX_ATTACHMENTS:
        raise ValidationError(f"Maximum {MAX_ATTACHMENTS} attachments allowed per call")

    attachments = []
    for item in raw:
        try:
            attachment = Attachment.model_validate(item)
        except PydanticValidationError:
            raise ValidationError("Each attachment must have fileName, content, and mimeType") from None
        limit = MAX_BINARY_BYTES if attachment.is_binary else MAX_TEXT_BYTES
        if attachment.size > limit:
            kind = "images" if attachment.mime_type.startswith("image/") else "PDFs" if attachment.is_binary else "text files"
            raise ValidationError(
                f"File {attachment.file_name} is too large (max {limit // (1024 * 1024)}MB for {kind})"
            )
        attachments.append(attachment)
    return attachments


def upload_attachments(tasks_api: TasksApi, task_id: str, attachments: Iterable[Attachment]) -> int:
    """Upload each attachment in order; the first failure propagates. Returns the count uploaded."""
    count = 0
    for attachment in attachments:
        logger.info("Uploading %s (%s) to task %s", attachment.file_name, attachment.mime_type, task_id)
        tasks_api.upload_file(task_id, attachment.file_name, attachment.content, attachment.mime_type)
        count += 1
    return count
