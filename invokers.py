"""
invokers.py — The LLM-facing collaborators of the orchestrators.

  - Triage invoker:    TriageTurnRequest  -> TriageTurnResult
  - Urgency assessor:  symptoms + answers -> UrgencyAssessment
  - Booking invoker:   BookingRequest     -> BookingInvocation (draft + tool-call trace)

Each has an OpenAI-backed implementation and a deterministic mock used when
LLM_PROVIDER=mock. Invokers fail loudly; recovery is the orchestrator's job.
"""

import json
import re
import logging
from typing import List, NamedTuple, Optional

from openai import OpenAI

from config import settings as default_settings
from middleware import ModelRetryMiddleware, PIIMiddleware, ToolCallLimitMiddleware
from prompts import (
    ASSESS_URGENCY_SYSTEM_PROMPT,
    BOOKING_USER_PROMPT,
    TRIAGE_SYSTEM_PROMPT,
    render_assessment_prompt,
    render_booking_system_prompt,
    render_triage_prompt,
)
from schemas import (
    BOOKING_QUESTION,
    BOOKING_QUICK_REPLIES,
    BookingDraft,
    BookingInvocation,
    BookingRequest,
    ToolInvocation,
    TriageTurnRequest,
    TriageTurnResult,
    UrgencyAssessment,
)
from state import Urgency
from tools import EMAIL_TOOL_NAME, SEND_EMAIL_TOOL_SPEC, run_tool

logger = logging.getLogger(__name__)


class InvokerError(RuntimeError):
    """The provider answered, but not with anything usable."""


_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


def _extract_json(text: Optional[str]) -> dict:
    """
    Accepts either pure JSON or a text blob (e.g. a fenced code block) containing one object.
    Raises InvokerError when no object can be recovered.
    """
    text = (text or "").strip()
    if not text:
        raise InvokerError("Provider returned empty content.")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        m = _JSON_RE.search(text)
        if not m:
            raise InvokerError(f"Provider returned non-JSON content: {text[:80]!r}")
        try:
            payload = json.loads(m.group(0))
        except json.JSONDecodeError as e:
            raise InvokerError(f"Provider returned malformed JSON: {e}") from e
    if not isinstance(payload, dict):
        raise InvokerError("Provider returned JSON that is not an object.")
    return payload


# ─────────────────────────────────────────────
# OpenAI-backed invokers
# ─────────────────────────────────────────────
class OpenAITriageInvoker:
    def __init__(self, client: OpenAI, model: str = "gpt-4o-mini",
                 retry_mw: Optional[ModelRetryMiddleware] = None):
        self.client   = client
        self.model    = model
        self.retry_mw = retry_mw or ModelRetryMiddleware()

    def invoke(self, request: TriageTurnRequest) -> TriageTurnResult:
        def _call():
            return self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": TRIAGE_SYSTEM_PROMPT},
                    {"role": "user",   "content": render_triage_prompt(request)},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )

        response = self.retry_mw.call(_call)
        payload  = _extract_json(response.choices[0].message.content)
        result   = TriageTurnResult.model_validate(payload)
        logger.info("[triage_invoker] urgency=%s quick_replies=%d",
                    result.urgency.value, len(result.quick_replies))
        return result


class OpenAIUrgencyAssessor:
    def __init__(self, client: OpenAI, model: str = "gpt-4o-mini",
                 retry_mw: Optional[ModelRetryMiddleware] = None):
        self.client   = client
        self.model    = model
        self.retry_mw = retry_mw or ModelRetryMiddleware()

    def assess(self, symptoms: str, responses: str) -> UrgencyAssessment:
        def _call():
            return self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": ASSESS_URGENCY_SYSTEM_PROMPT},
                    {"role": "user",   "content": render_assessment_prompt(symptoms, responses)},
                ],
                temperature=0,
                response_format={"type": "json_object"},
            )

        response = self.retry_mw.call(_call)
        return UrgencyAssessment.model_validate(_extract_json(response.choices[0].message.content))


class OpenAIBookingInvoker:
    """
    Runs the booking prompt with the email tool attached and executes any tool calls
    the model makes, feeding results back until it stops calling tools.

    The returned trace records every call as requested; whether the email really went
    out is decided by the caller from that trace, not assumed here.
    """

    def __init__(self, client: OpenAI, model: str = "gpt-4o-mini",
                 retry_mw: Optional[ModelRetryMiddleware] = None,
                 tool_limit: Optional[ToolCallLimitMiddleware] = None,
                 max_rounds: int = 4):
        self.client     = client
        self.model      = model
        self.retry_mw   = retry_mw or ModelRetryMiddleware()
        self.tool_limit = tool_limit or ToolCallLimitMiddleware()
        self.max_rounds = max_rounds

    def invoke(self, request: BookingRequest, run_id: str = "booking") -> BookingInvocation:
        messages = [
            {"role": "system", "content": render_booking_system_prompt(request)},
            {"role": "user",   "content": BOOKING_USER_PROMPT},
        ]
        draft: Optional[BookingDraft] = None
        invocations: List[ToolInvocation] = []

        try:
            for round_no in range(1, self.max_rounds + 1):
                response = self.retry_mw.call(
                    self.client.chat.completions.create,
                    model=self.model,
                    messages=messages,
                    tools=[SEND_EMAIL_TOOL_SPEC],
                    temperature=0.3,
                )
                message = response.choices[0].message

                if message.content:
                    try:
                        draft = BookingDraft.model_validate(_extract_json(message.content))
                    except (InvokerError, ValueError) as e:
                        logger.warning("[booking_invoker] Round %d: unusable draft (%s)", round_no, e)

                tool_calls = message.tool_calls or []
                if not tool_calls:
                    break

                messages.append({
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.function.name,
                                         "arguments": call.function.arguments},
                        }
                        for call in tool_calls
                    ],
                })
                for call in tool_calls:
                    invocation, output = self._run_tool_call(run_id, call)
                    invocations.append(invocation)
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": output})

            logger.info("[booking_invoker] draft=%s tool_calls=%s email_calls=%d/%d",
                        draft is not None, [i.name for i in invocations],
                        self.tool_limit.count(run_id, EMAIL_TOOL_NAME), self.tool_limit.max_calls)
        finally:
            self.tool_limit.reset(run_id)

        return BookingInvocation(draft=draft, tool_invocations=invocations)

    def _run_tool_call(self, run_id: str, call):
        name = call.function.name
        self.tool_limit.check(run_id, name)

        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as e:
            logger.warning("[booking_invoker] %s called with malformed arguments: %s", name, e)
            return (ToolInvocation(name=name, ref=call.id),
                    json.dumps({"error": f"Malformed arguments: {e}"}))

        try:
            output = run_tool(name, arguments)
        except (KeyError, TypeError) as e:
            logger.warning("[booking_invoker] %s could not run: %s", name, e)
            return (ToolInvocation(name=name, ref=call.id, arguments=arguments),
                    json.dumps({"error": str(e)}))

        logger.info("[booking_invoker] %s → %s", name, PIIMiddleware.mask(output))
        return ToolInvocation(name=name, ref=call.id, arguments=arguments, response=output), output


# ─────────────────────────────────────────────
# Mock invokers (offline)
# ─────────────────────────────────────────────
MOCK_URGENT_TERMS = ("chest pain", "shortness of breath", "can't breathe", "fainted", "severe")

MOCK_QUESTIONS = [
    ("How long have you had this symptom?", ["Less than a day", "1-3 days", "More than 3 days"]),
    ("Is it getting worse over time?", ["Yes", "No", "Not sure"]),
    ("Do you have any other symptoms, such as a fever or rash?", ["Yes", "No"]),
]


class MockTriageInvoker:
    """Walks a fixed question script, then suggests an appointment."""

    def invoke(self, request: TriageTurnRequest) -> TriageTurnResult:
        transcript = request.previous_responses_text or ""
        answered   = max(0, transcript.count("User:") - 1)
        user_text  = " ".join(
            [request.symptom] + [ln for ln in transcript.splitlines() if ln.startswith("User:")]
        ).lower()

        if any(term in user_text for term in MOCK_URGENT_TERMS):
            return TriageTurnResult(
                next_question="Your symptoms may need immediate care.",
                urgency=Urgency.URGENT,
                outcome="Please seek immediate medical attention or call your local emergency number.",
            )

        if answered < len(MOCK_QUESTIONS):
            question, replies = MOCK_QUESTIONS[answered]
            return TriageTurnResult(
                next_question=question,
                quick_replies=replies,
                urgency=Urgency.NON_URGENT,
                outcome="Keep monitoring your symptoms while we gather more details.",
            )

        return TriageTurnResult(
            next_question=BOOKING_QUESTION,
            quick_replies=BOOKING_QUICK_REPLIES,
            urgency=Urgency.APPOINTMENT_NEEDED,
            outcome=f"A doctor should review your {request.symptom.lower()} in the next few days.",
        )


class MockUrgencyAssessor:
    def assess(self, symptoms: str, responses: str) -> UrgencyAssessment:
        answers = responses.count("User:")
        return UrgencyAssessment(
            urgency_category=Urgency.NON_URGENT,
            rationale=f"{symptoms} reported with {answers} answers and no red-flag signs.",
        )


class MockBookingInvoker:
    """Declares a booking and calls the real (simulated) email tool, like a well-behaved model."""

    DEFAULT_SLOT = "next Wednesday at 10:00 AM"

    def invoke(self, request: BookingRequest, run_id: str = "booking") -> BookingInvocation:
        when = request.preferred_date or self.DEFAULT_SLOT
        draft = BookingDraft(
            internal_confirmation_message="Thank you, your booking request has been processed.",
            simulated_date_time=when,
            email_subject="Your HealthAssist Appointment Confirmation",
            email_body=(
                f"<p>Your appointment is scheduled for <b>{when}</b>.</p>"
                f"<p>Symptoms: {request.symptoms}</p>"
                f"<pre>{request.conversation_summary or 'No prior conversation details provided.'}</pre>"
            ),
        )
        arguments = {"to": request.user_email, "subject": draft.email_subject, "body": draft.email_body}
        output = run_tool(EMAIL_TOOL_NAME, arguments)
        return BookingInvocation(
            draft=draft,
            tool_invocations=[ToolInvocation(name=EMAIL_TOOL_NAME, ref="mock-1",
                                             arguments=arguments, response=output)],
        )


# ─────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────
class Invokers(NamedTuple):
    triage:   object
    booking:  object
    assessor: Optional[object]


def build_invokers(cfg=default_settings, provider: Optional[str] = None,
                   model: Optional[str] = None) -> Invokers:
    provider = (provider or cfg.LLM_PROVIDER).strip().lower()
    model    = model or cfg.MODEL_NAME

    if provider == "mock":
        logger.info("[build_invokers] Using offline mock provider.")
        return Invokers(MockTriageInvoker(), MockBookingInvoker(), MockUrgencyAssessor())

    if provider != "openai":
        raise ValueError(f"Unknown LLM provider '{provider}' (expected 'openai' or 'mock').")
    if not cfg.OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set.")

    client = OpenAI(api_key=cfg.OPENAI_API_KEY)
    retry  = ModelRetryMiddleware(max_retries=cfg.LLM_MAX_RETRIES, base_delay=cfg.LLM_RETRY_DELAY)
    limit  = ToolCallLimitMiddleware(max_calls=cfg.MAX_TOOL_CALLS)
    logger.info("[build_invokers] OpenAI provider, model=%s", model)
    return Invokers(
        OpenAITriageInvoker(client, model=model, retry_mw=retry),
        OpenAIBookingInvoker(client, model=model, retry_mw=retry, tool_limit=limit),
        OpenAIUrgencyAssessor(client, model=model, retry_mw=retry),
    )
