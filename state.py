# state.py — ChatState TypedDict (one triage conversation) and its enums
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from typing_extensions import TypedDict


MAX_CONVERSATION_TURNS = 5

WELCOME_MESSAGE = (
    "Hello! I'm HealthAssist. I can help you understand your symptoms. "
    "Please select a primary symptom to begin:"
)

# Picker contents for the chat surface: category label -> symptoms
SYMPTOM_CATEGORIES: Dict[str, List[str]] = {
    "General":     ["Fever", "Fatigue", "Dizziness"],
    "Head & Throat": ["Headache", "Sore Throat", "Runny Nose / Congestion"],
    "Breathing & Chest": ["Cough", "Shortness of Breath", "Chest Pain"],
    "Digestive":   ["Stomach Pain", "Nausea / Vomiting"],
    "Skin & Body": ["Skin Rash", "Back Pain"],
}

COMMON_SYMPTOMS: List[str] = [s for group in SYMPTOM_CATEGORIES.values() for s in group]


class Stage(str, Enum):
    SELECTING_SYMPTOM         = "SelectingSymptom"
    QUESTIONING               = "Questioning"
    AWAITING_BOOKING_DECISION = "AwaitingBookingDecision"
    COLLECTING_EMAIL          = "CollectingEmail"
    SUBMITTING_BOOKING        = "SubmittingBooking"
    COMPLETE                  = "Complete"


class Urgency(str, Enum):
    URGENT             = "Urgent"
    NON_URGENT         = "Non-Urgent"
    APPOINTMENT_NEEDED = "Appointment Needed"


class BookingIntent(str, Enum):
    ACCEPT   = "accept"
    DECLINE  = "decline"
    CONTINUE = "continue"


class Termination(str, Enum):
    BOOKING_QUESTION     = "booking_question"      # keep asking: the question itself is the booking offer
    URGENT               = "urgent"
    TURN_LIMIT           = "turn_limit"
    APPOINTMENT_DECISION = "appointment_decision"
    CLOSING              = "closing"
    CONTINUE             = "continue"


class Action(str, Enum):
    START       = "start"
    REPLY       = "reply"
    DECISION    = "decision"
    BEGIN_EMAIL = "begin_email"
    EMAIL       = "email"
    RESET       = "reset"


class ChatState(TypedDict):
    # ── Entry ─────────────────────────────────────────
    run_id:               str
    timestamp:            str
    action:               str            # Action value dispatched this invocation
    user_input:           str

    # ── Session ───────────────────────────────────────
    stage:                str            # Stage value
    initial_symptom:      Optional[str]
    category:             Optional[str]
    history:              List[str]      # "User: ..." / "AI: ..." lines, append-only
    turn_count:           int
    appointment_suggested: bool          # any result so far came back "Appointment Needed"

    # ── Chat surface ──────────────────────────────────
    messages:             List[Dict[str, Any]]   # {"sender": user|bot|system, "text": ...}
    quick_replies:        List[str]
    intent:               Optional[str]  # BookingIntent value of the last reply

    # ── Latest triage output ──────────────────────────
    last_result:          Optional[dict]
    termination:          Optional[str]

    # ── Booking ───────────────────────────────────────
    user_email:           Optional[str]
    preferred_date:       Optional[str]
    booking_request:      Optional[dict]
    booking_result:       Optional[dict]
    booking_status:       Optional[str]  # None | "Completed" | "Failed"

    # ── Output ────────────────────────────────────────
    path_taken:           List[str]


def init_state() -> ChatState:
    return ChatState(
        run_id=str(uuid.uuid4()),
        timestamp=datetime.now(timezone.utc).isoformat(),
        action="",
        user_input="",

        stage=Stage.SELECTING_SYMPTOM.value,
        initial_symptom=None,
        category=None,
        history=[],
        turn_count=0,
        appointment_suggested=False,

        messages=[{"sender": "bot", "text": WELCOME_MESSAGE}],
        quick_replies=[],
        intent=None,

        last_result=None,
        termination=None,

        user_email=None,
        preferred_date=None,
        booking_request=None,
        booking_result=None,
        booking_status=None,

        path_taken=[],
    )


def category_for(symptom: str) -> Optional[str]:
    for category, symptoms in SYMPTOM_CATEGORIES.items():
        if symptom in symptoms:
            return category
    return None
