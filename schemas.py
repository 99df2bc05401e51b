"""
schemas.py — Structured inputs/outputs exchanged with the prompt invokers and the email tool.

Field aliases follow the camelCase keys the prompts ask the model to emit, so a raw
JSON payload from the provider can be validated directly with `model_validate`.
"""

import re
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from state import Urgency


EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}")

BOOKING_QUESTION = (
    "Would you like me to help you schedule an appointment, "
    "or would you prefer to manage this yourself?"
)
BOOKING_ACCEPT_REPLY  = "Yes, help me schedule"
BOOKING_DECLINE_REPLY = "No, I'll manage it"
BOOKING_QUICK_REPLIES = [BOOKING_ACCEPT_REPLY, BOOKING_DECLINE_REPLY]

BOOKING_QUESTION_RE = re.compile(
    r"\b(?:schedul(?:e|ed|ing)|book(?:ed|ing)?|assistance|manage this yourself)\b", re.IGNORECASE
)


def is_booking_question(question: str) -> bool:
    return bool(BOOKING_QUESTION_RE.search(question or ""))


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.fullmatch((value or "").strip()))


def _coerce_urgency(v: Any) -> Any:
    """Accept the provider's spelling drift ("Non Urgent", "appointment_needed", ...)."""
    if isinstance(v, str):
        key = re.sub(r"[\s_-]", "", v).lower()
        for u in Urgency:
            if re.sub(r"[\s_-]", "", u.value).lower() == key:
                return u
    return v


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ─────────────────────────────────────────────
# Triage
# ─────────────────────────────────────────────
class TriageTurnRequest(_Schema):
    symptom:                 str
    previous_responses_text: Optional[str] = Field(None, alias="previousResponses")
    category_name:           Optional[str] = Field(None, alias="categoryName")

    @field_validator("previous_responses_text", "category_name")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v


class TriageTurnResult(_Schema):
    next_question: str           = Field(alias="nextQuestion")
    quick_replies: List[str]     = Field(default_factory=list, alias="quickReplies")
    urgency:       Urgency
    outcome:       str

    @field_validator("urgency", mode="before")
    @classmethod
    def _normalize_urgency(cls, v: Any) -> Any:
        return _coerce_urgency(v)

    @field_validator("quick_replies", mode="before")
    @classmethod
    def _normalize_quick_replies(cls, v: Any) -> List[str]:
        if not v:
            return []
        seen: List[str] = []
        for reply in v:
            text = str(reply).strip()
            if text and text not in seen:
                seen.append(text)
        # A single suggestion is not a choice.
        return seen[:4] if len(seen) >= 2 else []

    @model_validator(mode="after")
    def _booking_question_offers_choices(self) -> "TriageTurnResult":
        if self.urgency == Urgency.APPOINTMENT_NEEDED and is_booking_question(self.next_question):
            others = [r for r in self.quick_replies if r not in BOOKING_QUICK_REPLIES]
            self.quick_replies = BOOKING_QUICK_REPLIES + others[:2]
        return self


class UrgencyAssessment(_Schema):
    urgency_category: Urgency = Field(alias="urgencyCategory")
    rationale:        str

    @field_validator("urgency_category", mode="before")
    @classmethod
    def _normalize_urgency(cls, v: Any) -> Any:
        return _coerce_urgency(v)


# ─────────────────────────────────────────────
# Email tool
# ─────────────────────────────────────────────
class SendEmailInput(_Schema):
    to:      str
    subject: str
    body:    str

    @field_validator("to")
    @classmethod
    def _check_recipient(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError(f"'{v}' is not a valid email address")
        return v.strip()


class EmailToolResult(_Schema):
    status:  Literal["Sent", "Failed", "SimulatedSkip"]
    message: str


class ToolInvocation(_Schema):
    """One tool call requested by the model and whatever came back for it."""
    name:      str
    ref:       Optional[str] = None
    arguments: dict = Field(default_factory=dict)
    # None when the call was requested but never produced a response part
    response:  Any = None


# ─────────────────────────────────────────────
# Booking
# ─────────────────────────────────────────────
class BookingRequest(_Schema):
    user_email:           str           = Field(alias="userEmail")
    symptoms:             str
    conversation_summary: Optional[str] = Field(None, alias="conversationSummary")
    preferred_date:       Optional[str] = Field(None, alias="preferredDate")

    @field_validator("user_email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError(f"'{v}' is not a valid email address")
        return v.strip()


class BookingDraft(_Schema):
    """What the booking prompt declares before (or alongside) calling the email tool."""
    internal_confirmation_message: str = Field(
        validation_alias=AliasChoices("internalConfirmationMessage", "internal_confirmation_message"),
    )
    simulated_date_time: str = Field(
        validation_alias=AliasChoices("simulatedDateTime", "simulatedBookedDate", "simulated_date_time"),
    )
    email_subject: str = Field(validation_alias=AliasChoices("emailSubject", "email_subject"))
    email_body:    str = Field(validation_alias=AliasChoices("emailBody", "email_body"))


class BookingInvocation(_Schema):
    draft:            Optional[BookingDraft] = None
    tool_invocations: List[ToolInvocation]   = Field(default_factory=list)


class AppointmentDetails(_Schema):
    email:            str
    status:           Literal["Booked", "Pending", "Failed", "Simulated"]
    booked_date_time: Optional[str] = Field(None, alias="bookedDateTime")
    notes:            Optional[str] = None


class BookingResult(_Schema):
    confirmation_message: str                = Field(alias="confirmationMessage")
    appointment_details:  AppointmentDetails = Field(alias="appointmentDetails")
    email_sent_status:    Optional[str]      = Field(None, alias="emailSentStatus")
