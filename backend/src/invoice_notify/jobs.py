from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import JobDecodeError

EMAIL_INVOICE_TOPIC = "email-invoice"
EMAIL_RECEIPT_TOPIC = "email-receipt"
TOPICS: tuple[str, ...] = (EMAIL_INVOICE_TOPIC, EMAIL_RECEIPT_TOPIC)


class InvoiceEmailJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["email-invoice"] = "email-invoice"
    version: Literal[1] = 1
    sequence: int = Field(ge=1)
    invoice_id: int = Field(ge=1)
    workspace_id: int = Field(ge=1)
    email: str = Field(min_length=3, max_length=320)
    subject: str = Field(min_length=1, max_length=998)
    message: str = Field(default="", max_length=20000)

    @field_validator("email", "subject")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text fields cannot be blank")
        return normalized


class ReceiptEmailJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["email-receipt"] = "email-receipt"
    version: Literal[1] = 1
    payment_id: int = Field(ge=1)
    invoice_id: int = Field(ge=1)
    workspace_id: int = Field(ge=1)
    email: str | None = Field(default=None, max_length=320)
    subject: str | None = Field(default=None, max_length=998)
    message: str | None = Field(default=None, max_length=20000)

    @field_validator("email", "subject", "message")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


JobMessage = Annotated[Union[InvoiceEmailJob, ReceiptEmailJob], Field(discriminator="kind")]
_JOB_ADAPTER: TypeAdapter[InvoiceEmailJob | ReceiptEmailJob] = TypeAdapter(JobMessage)


def topic_for(message: InvoiceEmailJob | ReceiptEmailJob) -> str:
    return message.kind


def encode_job(message: InvoiceEmailJob | ReceiptEmailJob) -> str:
    return message.model_dump_json()


def decode_job(raw: str | bytes) -> InvoiceEmailJob | ReceiptEmailJob:
    try:
        return _JOB_ADAPTER.validate_json(raw)
    except PydanticValidationError as exc:
        raise JobDecodeError(f"undecodable job payload: {exc.error_count()} error(s)") from exc
