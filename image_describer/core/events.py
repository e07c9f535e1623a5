"""
Event envelope for Cloud Storage object notifications.

Cloud Storage delivers "object finalized" notifications as CloudEvents whose
data payload describes the stored object. Only the fields the pipeline reads
are modelled here.
"""

import mimetypes
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from image_describer.core.errors import ValidationError

GENERIC_CONTENT_TYPE = "application/octet-stream"


def raw_log_context(cloud_event: Any) -> dict:
    """
    Identify an event that failed validation, from whatever fields are readable.

    Never raises; missing fields are simply left out.
    """
    if isinstance(cloud_event, Mapping):
        attributes, data = cloud_event, cloud_event.get("data")
    else:
        get_attributes = getattr(cloud_event, "get_attributes", None)
        attributes = get_attributes() if callable(get_attributes) else {}
        data = getattr(cloud_event, "data", None)

    context = {
        "event_id": attributes.get("id"),
        "event_type": attributes.get("type"),
    }
    if isinstance(data, Mapping):
        context["bucket"] = data.get("bucket")
        context["object_name"] = data.get("name")
    return {key: value for key, value in context.items() if value is not None}


class StorageObjectData(BaseModel):
    """Storage object description carried in the event payload."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    bucket: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    metageneration: Optional[str] = None
    time_created: Optional[str] = Field(default=None, alias="timeCreated")
    updated: Optional[str] = None
    content_type: Optional[str] = Field(default=None, alias="contentType")
    size: Optional[str] = None
    generation: Optional[str] = None


class EventEnvelope(BaseModel):
    """A single delivered storage event."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    type: str = ""
    source: str = ""
    data: StorageObjectData

    @classmethod
    def from_cloud_event(cls, cloud_event: Any) -> "EventEnvelope":
        """
        Build an envelope from a CloudEvent or a plain mapping.

        Args:
            cloud_event: cloudevents CloudEvent (attributes via item access,
                payload via .data) or a dict with "id", "type" and "data" keys.

        Returns:
            Validated EventEnvelope

        Raises:
            ValidationError: If required attributes or payload fields are
                missing or empty.
        """
        if isinstance(cloud_event, Mapping):
            attributes = cloud_event
            data = cloud_event.get("data")
        else:
            try:
                attributes = cloud_event.get_attributes()
            except AttributeError:
                raise ValidationError(f"Unsupported event object: {type(cloud_event).__name__}")
            data = cloud_event.data

        if not isinstance(data, Mapping):
            raise ValidationError(f"Event payload must be an object, got {type(data).__name__}")

        # Metageneration and size arrive as integer-like strings but may be numbers
        payload = {
            key: str(value) if key in ("metageneration", "size", "generation") and value is not None else value
            for key, value in data.items()
        }

        try:
            return cls(
                id=str(attributes.get("id") or ""),
                type=str(attributes.get("type") or ""),
                source=str(attributes.get("source") or ""),
                data=payload,
            )
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(loc) for loc in err["loc"]) for err in e.errors())
            raise ValidationError(f"Invalid storage event ({fields})") from e

    def resolve_mime_type(self, default: str) -> str:
        """
        Pick the MIME type to send with the object.

        Prefers the content type recorded on the object, then a guess from
        the object name, then the supplied default.
        """
        content_type = self.data.content_type
        if content_type and content_type != GENERIC_CONTENT_TYPE:
            return content_type

        guessed, _ = mimetypes.guess_type(self.data.name)
        return guessed or default

    def log_context(self) -> dict:
        """Fields bound to every log line emitted for this event."""
        return {
            "event_id": self.id,
            "event_type": self.type,
            "bucket": self.data.bucket,
            "object_name": self.data.name,
        }
