"""
nodes.py — LangGraph node functions for the HealthAssist triage and booking flows,
plus the pure decision helpers they are built on.
"""

import json
import re
import logging
from typing import List, Optional, Tuple

from pydantic import ValidationError

from middleware import PIIMiddleware
from schemas import (
    BOOKING_ACCEPT_REPLY,
    BOOKING_DECLINE_REPLY,
    EMAIL_RE,
    AppointmentDetails,
    BookingDraft,
    BookingRequest,
    BookingResult,
    EmailToolResult,
    ToolInvocation,
    TriageTurnRequest,
    TriageTurnResult,
    is_booking_question,
)
from state import (
    MAX_CONVERSATION_TURNS,
    Action,
    BookingIntent,
    ChatState,
    Stage,
    Termination,
    Urgency,
    category_for,
    init_state,
)
from tools import EMAIL_TOOL_NAME

logger = logging.getLogger(__name__)


DECISION_BOOK_NOW     = "Book Now"
DECISION_SELF_MANAGE  = "I'll Manage Myself"
DECISION_OPTIONS      = [DECISION_BOOK_NOW, DECISION_SELF_MANAGE]

APPOINTMENT_DECISION_PROMPT = (
    "Based on your answers, seeing a doctor is recommended. "
    "Would you like me to book an appointment for you?"
)
DECISION_REPROMPT = f'Please choose "{DECISION_BOOK_NOW}" or "{DECISION_SELF_MANAGE}".'
EMAIL_PROMPT = (
    "Great! Please enter your email address to book the appointment. You can add a "
    'preferred date or time on the same line, e.g. "alice@example.com for next Tuesday morning".'
)
INVALID_EMAIL_MESSAGE = (
    "I couldn't find a valid email address in that. Please enter it again (e.g. name@example.com)."
)
SELF_MANAGE_MESSAGE = (
    "Understood. Please keep monitoring your symptoms and contact a healthcare professional "
    "if they get worse or new symptoms appear. You can start a new session at any time."
)

FALLBACK_RESULT = TriageTurnResult(
    next_question=(
        "I'm sorry, but I encountered an issue processing your request. "
        "Please try again later or contact support if the problem persists."
    ),
    quick_replies=["Okay", "Try again later"],
    urgency=Urgency.NON_URGENT,
    outcome=(
        "Could not complete triage due to a system error. "
        "Please seek advice from a healthcare professional if you have concerns."
    ),
)

CLOSING_PHRASES = ("seek immediate medical attention", "final recommendation", "my assessment is")

ACCEPT_KEYWORDS = ("help schedule", "schedule", "book")
DECLINE_PHRASES = ("i'll manage it", "i will manage it", "manage it myself", "manage myself")
NEGATION_RE     = re.compile(r"\b(?:don't|dont|do not|not|no need|never|won't|wont)\b")

EMAIL_TOOL_NOT_CALLED  = "Email tool was not called by the LLM."
EMAIL_TOOL_NO_RESPONSE = (
    "LLM requested email tool, but no valid response part found or response malformed."
)
BOOKING_NOT_ATTEMPTED  = "Not attempted due to internal error."
BOOKING_FAILED_MESSAGE = (
    "We encountered an error while trying to book your appointment. Please try again later."
)

_DATE_SEPARATED_RE = re.compile(
    r"(?P<email>" + EMAIL_RE.pattern + r")\s*"
    r"(?:(?P<comma>,)|\b(?P<kw>for|on|around|next|tomorrow)\b)"
    r"\s*(?P<rest>.*)$",
    re.IGNORECASE | re.DOTALL,
)
_EMAIL_LEAD_IN_RE = re.compile(r"^(?:my\s+)?e-?mail(?:\s+address)?\s*(?:is|:)?\s*", re.IGNORECASE)
_EDGE_PUNCT = " \t\r\n,;:.-"

# stage(s) in which each action is accepted
ACTION_STAGES = {
    Action.START:       {Stage.SELECTING_SYMPTOM},
    Action.REPLY:       {Stage.QUESTIONING},
    Action.DECISION:    {Stage.AWAITING_BOOKING_DECISION},
    Action.BEGIN_EMAIL: {Stage.QUESTIONING, Stage.AWAITING_BOOKING_DECISION},
    Action.EMAIL:       {Stage.COLLECTING_EMAIL},
    Action.RESET:       set(Stage),
}


# ─────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────
def _normalize(text: str) -> str:
    return " ".join((text or "").replace("’", "'").lower().split())


def accepts_action(state: ChatState) -> bool:
    """Turn-taking guard: is this action legal in the current stage?"""
    try:
        action = Action(state.get("action"))
    except ValueError:
        return False
    stage = Stage(state["stage"])
    if stage not in ACTION_STAGES[action]:
        return False
    if action in (Action.START, Action.REPLY, Action.DECISION, Action.EMAIL):
        return bool((state.get("user_input") or "").strip())
    if action == Action.BEGIN_EMAIL and stage == Stage.QUESTIONING:
        return state["appointment_suggested"]
    return True


def classify_booking_intent(text: str, offered_replies: List[str],
                            appointment_suggested: bool) -> BookingIntent:
    """
    Maps a reply onto ACCEPT / DECLINE / CONTINUE.

    Only looks for booking intent when an appointment was already suggested or the reply
    is one of the quick replies on offer; otherwise the reply always goes back to triage.
    Canonical reply identifiers win, then phrase matching. A negation in front of
    "schedule"/"book" ("I don't want to book") is not read as acceptance.
    """
    normalized = _normalize(text)
    offered = {_normalize(r) for r in offered_replies or []}
    if not (appointment_suggested or normalized in offered):
        return BookingIntent.CONTINUE

    if normalized in (_normalize(BOOKING_ACCEPT_REPLY), _normalize(DECISION_BOOK_NOW)):
        return BookingIntent.ACCEPT
    if normalized in (_normalize(BOOKING_DECLINE_REPLY), _normalize(DECISION_SELF_MANAGE)):
        return BookingIntent.DECLINE

    if any(phrase in normalized for phrase in DECLINE_PHRASES):
        return BookingIntent.DECLINE

    for kw in ACCEPT_KEYWORDS:
        idx = normalized.find(kw)
        if idx != -1:
            if NEGATION_RE.search(normalized[:idx]):
                return BookingIntent.CONTINUE
            return BookingIntent.ACCEPT
    return BookingIntent.CONTINUE


def decision_intent(choice: str) -> BookingIntent:
    """Appointment-decision buttons; accepts button labels or BookingIntent values."""
    normalized = _normalize(choice)
    for intent in (BookingIntent.ACCEPT, BookingIntent.DECLINE):
        if normalized == intent.value:
            return intent
    return classify_booking_intent(choice, DECISION_OPTIONS, appointment_suggested=True)


def evaluate_termination(result: TriageTurnResult, turn_count: int) -> Termination:
    """
    Decides what happens after a triage turn. `turn_count` is the number of replies
    already taken before this one. Checked in order:
      booking question pending > urgent > turn cap > appointment needed > closing signal.
    """
    if result.urgency == Urgency.APPOINTMENT_NEEDED and is_booking_question(result.next_question):
        return Termination.BOOKING_QUESTION
    if result.urgency == Urgency.URGENT:
        return Termination.URGENT
    if turn_count + 1 >= MAX_CONVERSATION_TURNS:
        return Termination.TURN_LIMIT
    if result.urgency == Urgency.APPOINTMENT_NEEDED:
        return Termination.APPOINTMENT_DECISION

    outcome = result.outcome.lower()
    if any(p in outcome for p in CLOSING_PHRASES):
        return Termination.CLOSING
    if not result.next_question.strip().endswith("?"):
        return Termination.CLOSING
    return Termination.CONTINUE


def parse_email_and_date(raw: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Splits "alice@example.com for next Tuesday morning" into
    ("alice@example.com", "next Tuesday morning").

    Looks for a separator (comma, "for", "on", "around", "next", "tomorrow") right after
    the address; "next"/"tomorrow" stay part of the date. Without a separator, any text
    left once the address is removed becomes the date. Returns (None, None) when there
    is no address at all, and a None date when nothing is left over.
    """
    raw = (raw or "").strip()

    m = _DATE_SEPARATED_RE.search(raw)
    if m:
        rest = m.group("rest").strip(_EDGE_PUNCT)
        kw = (m.group("kw") or "").lower()
        if kw in ("next", "tomorrow"):
            rest = f"{m.group('kw')} {rest}".strip()
        return m.group("email"), rest or None

    m = EMAIL_RE.search(raw)
    if not m:
        return None, None
    leftover = f"{raw[:m.start()]} {raw[m.end():]}"
    leftover = _EMAIL_LEAD_IN_RE.sub("", leftover.strip())
    leftover = " ".join(leftover.split()).strip(_EDGE_PUNCT)
    return m.group(0), leftover or None


def reconcile_email_tool(invocations: List[ToolInvocation]) -> EmailToolResult:
    """What actually happened to the confirmation email, judged from the tool-call trace."""
    requested = [i for i in invocations if i.name == EMAIL_TOOL_NAME]
    if not requested:
        return EmailToolResult(status="Failed", message=EMAIL_TOOL_NOT_CALLED)

    answered = next((i for i in requested if i.response is not None), None)
    if answered is None:
        return EmailToolResult(status="Failed", message=EMAIL_TOOL_NO_RESPONSE)

    payload = answered.response
    try:
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return EmailToolResult.model_validate(payload)
    except json.JSONDecodeError as e:
        logger.error("[reconcile_email_tool] Tool response is not JSON: %s", e)
        return EmailToolResult(status="Failed",
                               message=f"Could not parse email tool response: {e.msg}.")
    except UnicodeDecodeError as e:
        logger.error("[reconcile_email_tool] Tool response is not valid text: %s", e)
        return EmailToolResult(status="Failed",
                               message=f"Could not parse email tool response: {e.reason}.")
    except ValidationError as e:
        detail = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'response'} - {err['msg']}"
            for err in e.errors()
        )
        logger.error("[reconcile_email_tool] Tool response failed validation: %s", detail)
        return EmailToolResult(status="Failed",
                               message=f"Could not parse email tool response: {detail}.")


def compose_booking_result(request: BookingRequest, draft: BookingDraft,
                           email_result: EmailToolResult) -> BookingResult:
    if email_result.status == "Sent":
        email_text = f"has been sent to {request.user_email}"
    else:
        email_text = (f"attempt was made (Status: {email_result.status}, "
                      f"Message: {email_result.message})")

    return BookingResult(
        confirmation_message=(
            f"{draft.internal_confirmation_message} Following that, your appointment is "
            f"tentatively scheduled for {draft.simulated_date_time}. "
            f"A confirmation email {email_text}."
        ),
        appointment_details=AppointmentDetails(
            email=request.user_email,
            status="Simulated",
            booked_date_time=draft.simulated_date_time,
            notes=(f"Appointment for symptoms: {request.symptoms}. "
                   f"Conversation (trial details): {request.conversation_summary or 'N/A'}"),
        ),
        email_sent_status=f"{email_result.status} - {email_result.message}",
    )


def failed_booking_result(request: BookingRequest) -> BookingResult:
    return BookingResult(
        confirmation_message=BOOKING_FAILED_MESSAGE,
        appointment_details=AppointmentDetails(
            email=request.user_email,
            status="Failed",
            notes=f"Booking attempt failed due to a system error. Symptoms: {request.symptoms}",
        ),
        email_sent_status=BOOKING_NOT_ATTEMPTED,
    )


def _invoke_triage(invoker, request: TriageTurnRequest) -> TriageTurnResult:
    try:
        result = invoker.invoke(request)
    except Exception as e:
        logger.error("[triage] Prompt invoker failed (%s): %s", type(e).__name__, e)
        return FALLBACK_RESULT.model_copy(deep=True)
    if not isinstance(result, TriageTurnResult):
        logger.error("[triage] Prompt invoker returned no usable output (%s).", type(result).__name__)
        return FALLBACK_RESULT.model_copy(deep=True)
    return result


def _msg(sender: str, text: str, **extra) -> dict:
    return {"sender": sender, "text": text, **extra}


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


# ─────────────────────────────────────────────
# Triage nodes
# ─────────────────────────────────────────────
def start_triage(state: ChatState, invoker) -> ChatState:
    symptom  = state["user_input"].strip()
    category = state.get("category") or category_for(symptom)
    path     = state["path_taken"] + ["start_triage"]
    logger.info("[start_triage] symptom=%r category=%r", symptom, category)

    result = _invoke_triage(invoker, TriageTurnRequest(symptom=symptom, category_name=category))
    messages = state["messages"] + [
        _msg("user", symptom),
        _msg("bot", result.next_question, urgency=result.urgency.value),
    ]
    update = {
        **state,
        "initial_symptom":       symptom,
        "category":              category,
        "history":               [f"User: {symptom}", f"AI: {result.next_question}"],
        "turn_count":            0,
        "appointment_suggested": result.urgency == Urgency.APPOINTMENT_NEEDED,
        "last_result":           _dump(result),
        "termination":           None,
        "quick_replies":         list(result.quick_replies),
        "stage":                 Stage.QUESTIONING.value,
        "path_taken":            path,
    }

    if result.urgency == Urgency.URGENT:
        logger.warning("[start_triage] Urgent on first turn — ending triage.")
        messages.append(_msg("system", result.outcome, urgency=result.urgency.value))
        update.update(stage=Stage.COMPLETE.value, quick_replies=[],
                      termination=Termination.URGENT.value)

    return {**update, "messages": messages}


def detect_intent(state: ChatState) -> ChatState:
    text   = state["user_input"].strip()
    intent = classify_booking_intent(text, state["quick_replies"], state["appointment_suggested"])
    logger.info("[detect_intent] intent=%s", intent.value)

    history = state["history"]
    if intent != BookingIntent.CONTINUE:
        history = history + [f"User: {text}"]
    return {
        **state,
        "intent":        intent.value,
        "history":       history,
        "messages":      state["messages"] + [_msg("user", text)],
        "quick_replies": [],
        "path_taken":    state["path_taken"] + ["detect_intent"],
    }


def triage_turn(state: ChatState, invoker) -> ChatState:
    text       = state["user_input"].strip()
    transcript = "\n".join(state["history"] + [f"User: {text}"])
    request    = TriageTurnRequest(
        symptom=state["initial_symptom"],
        previous_responses_text=transcript,
        category_name=state.get("category"),
    )
    result      = _invoke_triage(invoker, request)
    termination = evaluate_termination(result, state["turn_count"])
    logger.info("[triage_turn] turn=%d urgency=%s termination=%s",
                state["turn_count"] + 1, result.urgency.value, termination.value)

    return {
        **state,
        "history":     state["history"] + [f"User: {text}", f"AI: {result.next_question}"],
        "turn_count":  state["turn_count"] + 1,
        "last_result": _dump(result),
        "termination": termination.value,
        "appointment_suggested": (state["appointment_suggested"]
                                  or result.urgency == Urgency.APPOINTMENT_NEEDED),
        "messages":    state["messages"] + [
            _msg("bot", result.next_question, urgency=result.urgency.value),
        ],
        "path_taken":  state["path_taken"] + ["triage_turn"],
    }


def apply_termination(state: ChatState, assessor=None) -> ChatState:
    result      = TriageTurnResult.model_validate(state["last_result"])
    termination = Termination(state["termination"])
    path        = state["path_taken"] + ["apply_termination"]
    messages    = list(state["messages"])
    outcome_msg = _msg("system", result.outcome, urgency=result.urgency.value)

    if termination in (Termination.CONTINUE, Termination.BOOKING_QUESTION):
        return {**state, "stage": Stage.QUESTIONING.value,
                "quick_replies": list(result.quick_replies), "path_taken": path}

    if termination == Termination.APPOINTMENT_DECISION:
        messages += [outcome_msg, _msg("bot", APPOINTMENT_DECISION_PROMPT, options=DECISION_OPTIONS)]
        return {**state, "stage": Stage.AWAITING_BOOKING_DECISION.value,
                "quick_replies": [], "messages": messages, "path_taken": path}

    messages.append(outcome_msg)
    if termination == Termination.TURN_LIMIT:
        logger.info("[apply_termination] Turn limit (%d) reached.", MAX_CONVERSATION_TURNS)
        note = _assessment_note(assessor, state)
        if note:
            messages.append(_msg("system", note))
    return {**state, "stage": Stage.COMPLETE.value, "quick_replies": [],
            "messages": messages, "path_taken": path}


def _assessment_note(assessor, state: ChatState) -> Optional[str]:
    if assessor is None:
        return None
    try:
        assessment = assessor.assess(state["initial_symptom"], "\n".join(state["history"]))
    except Exception as e:
        logger.warning("[apply_termination] Urgency assessment unavailable: %s", e)
        return None
    return f"Overall assessment: {assessment.urgency_category.value}. {assessment.rationale}"


def self_manage(state: ChatState) -> ChatState:
    logger.info("[self_manage] User will manage symptoms themselves.")
    return {
        **state,
        "stage":         Stage.COMPLETE.value,
        "quick_replies": [],
        "messages":      state["messages"] + [_msg("system", SELF_MANAGE_MESSAGE)],
        "path_taken":    state["path_taken"] + ["self_manage"],
    }


# ─────────────────────────────────────────────
# Booking nodes
# ─────────────────────────────────────────────
def booking_decision(state: ChatState) -> ChatState:
    choice = state["user_input"].strip()
    intent = decision_intent(choice)
    logger.info("[booking_decision] choice=%r intent=%s", choice, intent.value)

    messages = state["messages"] + [_msg("user", choice)]
    history  = state["history"]
    if intent == BookingIntent.CONTINUE:
        messages.append(_msg("bot", DECISION_REPROMPT, options=DECISION_OPTIONS))
    else:
        history = history + [f"User: {choice}"]
    return {
        **state,
        "intent":     intent.value,
        "history":    history,
        "messages":   messages,
        "path_taken": state["path_taken"] + ["booking_decision"],
    }


def begin_email_collection(state: ChatState) -> ChatState:
    return {
        **state,
        "stage":         Stage.COLLECTING_EMAIL.value,
        "quick_replies": [],
        "messages":      state["messages"] + [_msg("bot", EMAIL_PROMPT)],
        "path_taken":    state["path_taken"] + ["begin_email_collection"],
    }


def prepare_booking(state: ChatState) -> ChatState:
    raw  = state["user_input"].strip()
    path = state["path_taken"] + ["prepare_booking"]
    messages = state["messages"] + [_msg("user", raw)]

    email, preferred = parse_email_and_date(raw)
    if not email:
        logger.warning("[prepare_booking] No email address found in input.")
        return {**state, "stage": Stage.COLLECTING_EMAIL.value, "path_taken": path,
                "messages": messages + [_msg("bot", INVALID_EMAIL_MESSAGE)]}

    request = BookingRequest(
        user_email=email,
        symptoms=state["initial_symptom"] or "",
        conversation_summary="\n".join(state["history"] + [f"User: {raw}"]),
        preferred_date=preferred,
    )
    logger.info("[prepare_booking] email=%s preferred_date=%r",
                PIIMiddleware.mask(email), preferred)
    return {
        **state,
        "user_email":      email,
        "preferred_date":  preferred,
        "booking_request": _dump(request),
        "stage":           Stage.SUBMITTING_BOOKING.value,
        "messages":        messages,
        "path_taken":      path,
    }


def submit_booking(state: ChatState, invoker) -> ChatState:
    request = BookingRequest.model_validate(state["booking_request"])

    try:
        invocation = invoker.invoke(request, run_id=state["run_id"])
    except Exception as e:
        logger.error("[submit_booking] Booking invoker failed (%s): %s", type(e).__name__, e)
        invocation = None

    if invocation is None or invocation.draft is None:
        result, status = failed_booking_result(request), "Failed"
    else:
        email_result = reconcile_email_tool(invocation.tool_invocations)
        result, status = compose_booking_result(request, invocation.draft, email_result), "Completed"
    logger.info("[submit_booking] status=%s email=%s",
                status, PIIMiddleware.mask(result.email_sent_status))

    return {
        **state,
        "booking_result": _dump(result),
        "booking_status": status,
        "stage":          Stage.COMPLETE.value,
        "quick_replies":  [],
        "messages":       state["messages"] + [_msg("bot", result.confirmation_message)],
        "path_taken":     state["path_taken"] + ["submit_booking"],
    }


def reset_session(state: ChatState) -> ChatState:
    logger.info("[reset_session] Starting over.")
    fresh = init_state()
    return {**fresh, "path_taken": ["reset_session"]}
