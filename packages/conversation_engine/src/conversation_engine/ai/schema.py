"""
Assistant Output Schema

The model is asked to answer with a JSON object:
{
    "reply": "text for the customer",
    "intent": "question" | "order" | "complaint",
    "orderData": {"product": ..., "quantity": ..., "address": ..., "phone": ...} | null
}

Parsing never raises. The result is tagged: Parsed (valid object),
Unparsed (anything else, raw text kept) or Unavailable (no answer at all).
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from conversation_engine.errors import MalformedInferenceResponse

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?\s*(.*?)\s*```\s*$", re.DOTALL)


class Intent(str, Enum):
    """What the customer wants, as judged by the model."""

    QUESTION = "question"
    ORDER = "order"
    COMPLAINT = "complaint"


class OrderPayload(BaseModel):
    """Order details collected by the assistant."""

    product: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    address: str | None = None
    phone: str | None = None

    @field_validator("product", "address", "phone", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, value: Any) -> Any:
        if value is None or value == "":
            return 1
        if isinstance(value, str):
            match = re.search(r"\d+", value)
            return int(match.group()) if match else value
        return value


class AssistantReply(BaseModel):
    """A well-formed assistant answer."""

    model_config = ConfigDict(populate_by_name=True)

    reply: str = Field(..., min_length=1)
    intent: Intent = Intent.QUESTION
    order: OrderPayload | None = Field(None, alias="orderData")

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in Intent._value2member_map_:
            return value.strip().lower()
        return Intent.QUESTION

    @field_validator("order", mode="before")
    @classmethod
    def _drop_invalid_order(cls, value: Any) -> Any:
        # An unusable order payload downgrades to "no order", not to a parse failure
        if isinstance(value, OrderPayload):
            return value
        if not isinstance(value, dict):
            return None
        try:
            return OrderPayload.model_validate(value)
        except ValidationError:
            logger.info("Discarding invalid order payload", extra={"order_data": value})
            return None


@dataclass(frozen=True)
class Parsed:
    """The model answered with a valid object."""

    reply: AssistantReply


@dataclass(frozen=True)
class Unparsed:
    """The model answered, but not with the expected object."""

    raw_text: str


@dataclass(frozen=True)
class Unavailable:
    """No answer: timeout, transport error or missing credentials."""

    reason: str


InferenceOutcome = Union[Parsed, Unparsed, Unavailable]


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence, if any."""
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text.strip()


def parse_assistant_output(raw_text: str) -> Parsed | Unparsed:
    """
    Parse model output into a tagged result.

    Args:
        raw_text: Text content returned by the model

    Returns:
        Parsed if the text is (or contains) a valid reply object, else Unparsed
    """
    cleaned = strip_code_fences(raw_text or "")

    try:
        return Parsed(reply=validate_assistant_reply(cleaned))
    except MalformedInferenceResponse as e:
        logger.info(f"Assistant output unusable: {e.reason}", extra={"chars": len(cleaned)})
        return Unparsed(raw_text=cleaned)


def validate_assistant_reply(text: str) -> AssistantReply:
    """
    Validate fence-free model output as a reply object.

    Raises:
        MalformedInferenceResponse: no JSON object, or one that is not a valid reply
    """
    data = _load_object(text)
    if data is None:
        raise MalformedInferenceResponse(text, reason="no_json_object")

    try:
        return AssistantReply.model_validate(data)
    except ValidationError as e:
        raise MalformedInferenceResponse(text, reason=f"{e.error_count()}_validation_errors") from e


def _load_object(text: str) -> dict[str, Any] | None:
    """Load a JSON object from text, falling back to the outermost {...} span."""
    candidates = [text]
    start, end = text.find("{"), text.rfind("}")
    if 0 < start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None
