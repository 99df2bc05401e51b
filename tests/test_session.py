"""
tests/test_session.py — End-to-end conversations through TriageSession and the compiled graph.

The LLM collaborators are replaced with scripted fakes, so every scenario runs offline.
"""

import sys
from pathlib import Path

import pytest

# Allow imports from parent directory
sys.path.insert(0, str(Path(__file__).parent.parent))

import nodes as n
from invokers import MockBookingInvoker
from schemas import (
    BOOKING_QUESTION,
    BOOKING_QUICK_REPLIES,
    BookingDraft,
    BookingInvocation,
    TriageTurnResult,
    UrgencyAssessment,
)
from session import TriageSession
from state import WELCOME_MESSAGE, Action, BookingIntent, Stage, Urgency, init_state


# ─────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────
class ScriptedTriageInvoker:
    """Returns the scripted results in order; the last one repeats once the script runs out."""

    def __init__(self, *results):
        self.results  = list(results)
        self.requests = []

    def invoke(self, request):
        self.requests.append(request)
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item


class RecordingBookingInvoker:
    def __init__(self, outcome):
        self.outcome  = outcome
        self.requests = []

    def invoke(self, request, run_id="booking"):
        self.requests.append(request)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FixedAssessor:
    def __init__(self, outcome):
        self.outcome = outcome

    def assess(self, symptoms, responses):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def turn(question="Do you have a temperature reading?", urgency="Non-Urgent",
         replies=("Yes", "No"), outcome="Keep monitoring your symptoms.") -> TriageTurnResult:
    return TriageTurnResult.model_validate({
        "nextQuestion": question,
        "quickReplies": list(replies),
        "urgency":      urgency,
        "outcome":      outcome,
    })


NO_TOOL_BOOKING = BookingInvocation(draft=BookingDraft(
    internal_confirmation_message="Processing your request.",
    simulated_date_time="next Wednesday at 10:00 AM",
    email_subject="Your HealthAssist Appointment Confirmation",
    email_body="<p>See you soon.</p>",
))


def make_session(*results, booking=None, assessor=None):
    triage  = ScriptedTriageInvoker(*results)
    booking = booking or RecordingBookingInvoker(NO_TOOL_BOOKING)
    return TriageSession(triage, booking, assessor=assessor), triage, booking


def make_state(**overrides):
    state = init_state()
    state.update(overrides)
    return state


# ─────────────────────────────────────────────
# Triage conversation
# ─────────────────────────────────────────────
def test_initial_state():
    session, _, _ = make_session(turn())
    assert session.stage == Stage.SELECTING_SYMPTOM
    assert session.messages == [{"sender": "bot", "text": WELCOME_MESSAGE}]
    assert session.history == [] and session.turn_count == 0


def test_first_turn_shows_question_and_quick_replies():
    session, triage, _ = make_session(turn())
    session.start_triage("Fever")

    assert session.stage == Stage.QUESTIONING
    assert session.quick_replies == ["Yes", "No"]
    assert session.history == ["User: Fever", "AI: Do you have a temperature reading?"]
    assert session.turn_count == 0
    assert triage.requests[0].symptom == "Fever"
    assert triage.requests[0].category_name == "General"
    assert session.messages[-1]["text"] == "Do you have a temperature reading?"


def test_urgent_answer_completes_immediately():
    session, triage, _ = make_session(
        turn(),
        turn(question="This could be serious.", urgency="Urgent",
             outcome="Please seek immediate medical attention."),
    )
    session.start_triage("Fever")
    session.submit_user_turn("Yes")

    assert session.is_complete
    assert session.quick_replies == []
    assert session.messages[-1] == {"sender": "system", "urgency": Urgency.URGENT.value,
                                    "text": "Please seek immediate medical attention."}

    before = session.messages
    session.submit_user_turn("What now?")
    assert len(triage.requests) == 2
    assert session.messages == before


def test_urgent_on_first_turn_completes():
    session, _, _ = make_session(turn(question="Call for help.", urgency="Urgent",
                                      outcome="Seek immediate medical attention."))
    session.start_triage("Chest Pain")
    assert session.is_complete
    assert session.state["termination"] == "urgent"
    assert session.messages[-1]["sender"] == "system"


def test_appointment_needed_shows_decision_buttons():
    session, _, _ = make_session(
        turn(),
        turn(question="How long has it lasted?", urgency="Appointment Needed",
             outcome="A doctor should take a look."),
    )
    session.start_triage("Fever")
    session.submit_user_turn("Yes")

    assert session.pending_booking
    assert not session.is_complete
    assert session.quick_replies == []
    assert session.messages[-1]["options"] == n.DECISION_OPTIONS
    assert session.messages[-2]["text"] == "A doctor should take a look."


def test_turn_cap_forces_termination():
    session, triage, _ = make_session(turn(question="Anything else?"))
    session.start_triage("Cough")

    for expected in range(1, 5):
        session.submit_user_turn("Not really")
        assert session.turn_count == expected
        assert session.stage == Stage.QUESTIONING

    session.submit_user_turn("Still the same")
    assert session.turn_count == 5
    assert session.is_complete
    assert session.state["termination"] == "turn_limit"
    assert len(triage.requests) == 6


def test_turn_cap_adds_assessment_note():
    assessor = FixedAssessor(UrgencyAssessment(urgency_category=Urgency.NON_URGENT,
                                               rationale="Mild and improving."))
    session, _, _ = make_session(turn(question="Anything else?"), assessor=assessor)
    session.start_triage("Cough")
    for _ in range(5):
        session.submit_user_turn("No")

    assert session.messages[-1] == {"sender": "system",
                                    "text": "Overall assessment: Non-Urgent. Mild and improving."}


def test_assessor_failure_is_not_fatal():
    session, _, _ = make_session(turn(question="Anything else?"),
                                 assessor=FixedAssessor(RuntimeError("provider down")))
    session.start_triage("Cough")
    for _ in range(5):
        session.submit_user_turn("No")

    assert session.is_complete
    assert session.messages[-1]["text"] == "Keep monitoring your symptoms."


def test_closing_statement_completes():
    session, _, _ = make_session(
        turn(),
        turn(question="Rest and drink plenty of fluids.", replies=(),
             outcome="My assessment is: this can be managed at home."),
    )
    session.start_triage("Fever")
    session.submit_user_turn("No")
    assert session.is_complete
    assert session.state["termination"] == "closing"


def test_quick_replies_never_stale():
    session, _, _ = make_session(
        turn(),
        turn(question="Where does it hurt?", replies=()),
    )
    session.start_triage("Back Pain")
    assert session.quick_replies == ["Yes", "No"]
    session.submit_user_turn("Yes")
    assert session.quick_replies == []


def test_invoker_failure_falls_back():
    session, _, _ = make_session(RuntimeError("quota exceeded"))
    session.start_triage("Headache")

    assert session.stage == Stage.QUESTIONING
    assert session.quick_replies == ["Okay", "Try again later"]
    assert session.messages[-1]["text"] == n.FALLBACK_RESULT.next_question


def test_empty_invoker_output_falls_back():
    session, _, _ = make_session(None)
    session.start_triage("Headache")
    assert session.stage == Stage.QUESTIONING
    assert session.quick_replies == ["Okay", "Try again later"]
    assert session.messages[-1]["text"] == n.FALLBACK_RESULT.next_question

    session, triage, _ = make_session(turn(), None)
    session.start_triage("Fever")
    session.submit_user_turn("Not sure")
    assert len(triage.requests) == 2
    assert session.turn_count == 1
    assert session.history[-1] == f"AI: {n.FALLBACK_RESULT.next_question}"
    assert session.messages[-2]["text"] == n.FALLBACK_RESULT.next_question


# ─────────────────────────────────────────────
# Booking intent shortcuts
# ─────────────────────────────────────────────
def booking_offer():
    return turn(question=BOOKING_QUESTION, urgency="Appointment Needed", replies=(),
                outcome="A doctor should review this.")


def test_accept_shortcut_skips_triage():
    session, triage, _ = make_session(booking_offer())
    session.start_triage("Skin Rash")
    assert session.quick_replies == BOOKING_QUICK_REPLIES

    session.submit_user_turn("Yes, help me schedule")
    assert session.pending_email_input
    assert len(triage.requests) == 1
    assert session.turn_count == 0
    assert session.history[-1] == "User: Yes, help me schedule"
    assert session.messages[-1]["text"] == n.EMAIL_PROMPT


def test_decline_shortcut_completes():
    session, triage, _ = make_session(booking_offer())
    session.start_triage("Skin Rash")
    session.submit_user_turn("No, I'll manage it")

    assert session.is_complete
    assert len(triage.requests) == 1
    assert session.messages[-1]["text"] == n.SELF_MANAGE_MESSAGE


def test_negated_booking_goes_back_to_triage():
    session, triage, _ = make_session(booking_offer(), turn(question="Is it itchy?"))
    session.start_triage("Skin Rash")
    session.submit_user_turn("I don't want to schedule anything yet")

    assert len(triage.requests) == 2
    assert session.turn_count == 1
    assert session.stage == Stage.QUESTIONING


# ─────────────────────────────────────────────
# Booking flow
# ─────────────────────────────────────────────
def session_awaiting_decision(booking=None):
    session, triage, booking = make_session(
        turn(),
        turn(question="How long has it lasted?", urgency="Appointment Needed"),
        booking=booking,
    )
    session.start_triage("Fever")
    session.submit_user_turn("Yes")
    assert session.pending_booking
    return session, triage, booking


def test_book_now_without_email_tool_reports_attempt():
    session, _, booking = session_awaiting_decision()
    session.submit_booking_decision("Book Now")
    assert session.pending_email_input

    session.submit_email("bob@x.com")
    assert session.is_complete
    assert booking.requests[0].user_email == "bob@x.com"
    assert booking.requests[0].preferred_date is None
    assert ("attempt was made (Status: Failed, Message: Email tool was not called by the LLM.)"
            in session.booking_result["confirmationMessage"])
    assert session.state["booking_status"] == "Completed"


def test_booking_with_email_tool_and_preferred_date():
    session, _, _ = session_awaiting_decision(booking=MockBookingInvoker())
    session.submit_booking_decision(BookingIntent.ACCEPT)
    session.submit_email("alice@example.com for next Tuesday morning")

    details = session.booking_result["appointmentDetails"]
    assert session.state["user_email"] == "alice@example.com"
    assert session.state["preferred_date"] == "next Tuesday morning"
    assert details["bookedDateTime"] == "next Tuesday morning"
    assert details["status"] == "Simulated"
    assert session.booking_result["emailSentStatus"].startswith("Sent - ")
    assert "has been sent to alice@example.com" in session.messages[-1]["text"]


def test_booking_invoker_failure():
    session, _, _ = session_awaiting_decision(
        booking=RecordingBookingInvoker(RuntimeError("timeout")))
    session.submit_booking_decision("Book Now")
    session.submit_email("bob@x.com")

    assert session.is_complete
    assert session.state["booking_status"] == "Failed"
    assert session.booking_result["appointmentDetails"]["status"] == "Failed"
    assert session.messages[-1]["text"] == n.BOOKING_FAILED_MESSAGE


def test_invalid_email_keeps_collecting():
    session, _, booking = session_awaiting_decision()
    session.begin_email_collection()
    session.submit_email("bob at example dot com")

    assert session.pending_email_input
    assert booking.requests == []
    assert session.messages[-1]["text"] == n.INVALID_EMAIL_MESSAGE

    count = len(session.messages)
    session.submit_email("   ")
    assert len(session.messages) == count


def test_self_manage_decision():
    session, _, booking = session_awaiting_decision()
    session.submit_booking_decision(BookingIntent.DECLINE)
    assert session.is_complete
    assert booking.requests == []


def test_unclear_decision_reprompts():
    session, _, _ = session_awaiting_decision()
    session.submit_booking_decision("maybe later")
    assert session.pending_booking
    assert session.messages[-1]["text"] == n.DECISION_REPROMPT


# ─────────────────────────────────────────────
# Turn-taking and reset
# ─────────────────────────────────────────────
def test_out_of_turn_actions_are_ignored():
    session, triage, _ = make_session(turn())

    session.submit_user_turn("hello")
    assert session.stage == Stage.SELECTING_SYMPTOM
    assert triage.requests == []

    session.start_triage("Fever")
    session.start_triage("Cough")
    assert session.state["initial_symptom"] == "Fever"
    assert len(triage.requests) == 1

    session.begin_email_collection()
    assert session.stage == Stage.QUESTIONING


def test_in_flight_request_blocks_new_input():
    session, triage, _ = make_session(turn())
    session.is_loading = True
    session.start_triage("Fever")
    assert triage.requests == []
    assert session.stage == Stage.SELECTING_SYMPTOM


def test_reset_is_idempotent():
    session, _, _ = session_awaiting_decision()

    def snapshot():
        return {k: v for k, v in session.state.items() if k not in ("run_id", "timestamp")}

    session.reset_session()
    first = snapshot()
    session.reset_session()
    assert snapshot() == first
    assert session.stage == Stage.SELECTING_SYMPTOM
    assert session.history == [] and session.turn_count == 0
    assert session.messages == [{"sender": "bot", "text": WELCOME_MESSAGE}]


# ─────────────────────────────────────────────
# Nodes in isolation
# ─────────────────────────────────────────────
@pytest.mark.parametrize("action, stage, user_input, accepted", [
    (Action.START,       Stage.SELECTING_SYMPTOM,         "Fever", True),
    (Action.START,       Stage.SELECTING_SYMPTOM,         "  ",    False),
    (Action.REPLY,       Stage.COMPLETE,                  "Yes",   False),
    (Action.EMAIL,       Stage.COLLECTING_EMAIL,          "a@b.co", True),
    (Action.BEGIN_EMAIL, Stage.AWAITING_BOOKING_DECISION, "",      True),
    (Action.BEGIN_EMAIL, Stage.QUESTIONING,               "",      False),
    (Action.RESET,       Stage.SUBMITTING_BOOKING,        "",      True),
])
def test_accepts_action(action, stage, user_input, accepted):
    state = make_state(action=action.value, stage=stage.value, user_input=user_input)
    assert n.accepts_action(state) is accepted


def test_unknown_action_rejected():
    assert n.accepts_action(make_state(action="teleport")) is False


def test_prepare_booking_builds_request():
    state = make_state(stage=Stage.COLLECTING_EMAIL.value, initial_symptom="Fever",
                       history=["User: Fever", "AI: Any chills?"],
                       user_input="carol@site.org, Friday afternoon")
    out = n.prepare_booking(state)

    assert out["stage"] == Stage.SUBMITTING_BOOKING.value
    assert out["booking_request"]["userEmail"] == "carol@site.org"
    assert out["booking_request"]["preferredDate"] == "Friday afternoon"
    assert out["booking_request"]["conversationSummary"].endswith(
        "User: carol@site.org, Friday afternoon")
    assert state["messages"] == [{"sender": "bot", "text": WELCOME_MESSAGE}]


def test_reset_node_returns_fresh_state():
    out = n.reset_session(make_state(stage=Stage.COMPLETE.value, turn_count=3,
                                     history=["User: Fever"]))
    assert out["stage"] == Stage.SELECTING_SYMPTOM.value
    assert out["turn_count"] == 0 and out["history"] == []
    assert out["path_taken"] == ["reset_session"]
