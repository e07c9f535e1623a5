"""
Multimodal request construction.

Turns raw object bytes and the instruction text into the request sent to
Gemini: a single user turn with the instruction first and the inline image
second. The order anchors the instruction to the attached content.
"""

import base64
from typing import List, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict


class TextPart(BaseModel):
    """Plain-text part of a turn."""
    model_config = ConfigDict(frozen=True)

    text: str


class InlineDataPart(BaseModel):
    """Inline binary part; data is base64 text."""
    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str

    def decoded(self) -> bytes:
        return base64.b64decode(self.data)


Part = Union[TextPart, InlineDataPart]


class Turn(BaseModel):
    """One conversational turn."""
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "model"]
    parts: Tuple[Part, ...]


class InferenceRequest(BaseModel):
    """Ordered conversation sent to the model."""
    model_config = ConfigDict(frozen=True)

    contents: Tuple[Turn, ...]


def build_request(data: bytes, mime_type: str, instruction_text: str) -> InferenceRequest:
    """
    Build the describe request for one object.

    Args:
        data: Raw object bytes
        mime_type: MIME type of the object (e.g. image/jpeg)
        instruction_text: Instruction placed before the image

    Returns:
        InferenceRequest with one user turn: [text part, inline-data part]
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError(f"data must be bytes, got {type(data).__name__}")
    if not isinstance(instruction_text, str):
        raise TypeError(f"instruction_text must be str, got {type(instruction_text).__name__}")
    if not isinstance(mime_type, str) or not mime_type:
        raise ValueError("mime_type must be a non-empty string")

    parts: List[Part] = [
        TextPart(text=instruction_text),
        InlineDataPart(
            mime_type=mime_type,
            data=base64.b64encode(bytes(data)).decode("ascii"),
        ),
    ]
    return InferenceRequest(contents=(Turn(role="user", parts=tuple(parts)),))
