"""
session.py — TriageSession: the orchestrator one chat surface talks to.

Each public method dispatches a single action through the compiled graph and
returns the resulting ChatState. Only one action is processed at a time; calls
made while a request is in flight are ignored.
"""

import logging
from typing import List, Optional, Union

from graph import build_graph
from state import Action, BookingIntent, ChatState, Stage, init_state

logger = logging.getLogger(__name__)


class TriageSession:

    def __init__(self, triage_invoker, booking_invoker, assessor=None):
        self.graph      = build_graph(triage_invoker, booking_invoker, assessor=assessor)
        self.state: ChatState = init_state()
        self.is_loading = False

    # ── Operations ────────────────────────────────────
    def start_triage(self, symptom: str, category: Optional[str] = None) -> ChatState:
        return self._dispatch(Action.START, symptom, category=category)

    def submit_user_turn(self, response_text: str) -> ChatState:
        return self._dispatch(Action.REPLY, response_text)

    def submit_booking_decision(self, choice: Union[BookingIntent, str]) -> ChatState:
        if isinstance(choice, BookingIntent):
            choice = choice.value
        return self._dispatch(Action.DECISION, choice)

    def begin_email_collection(self) -> ChatState:
        return self._dispatch(Action.BEGIN_EMAIL)

    def submit_email(self, raw_input: str) -> ChatState:
        if not (raw_input or "").strip():
            logger.warning("[session] Empty email input rejected.")
            return self.state
        return self._dispatch(Action.EMAIL, raw_input)

    def reset_session(self) -> ChatState:
        return self._dispatch(Action.RESET)

    # ── Views ─────────────────────────────────────────
    @property
    def stage(self) -> Stage:
        return Stage(self.state["stage"])

    @property
    def is_complete(self) -> bool:
        return self.stage == Stage.COMPLETE

    @property
    def pending_booking(self) -> bool:
        return self.stage == Stage.AWAITING_BOOKING_DECISION

    @property
    def pending_email_input(self) -> bool:
        return self.stage == Stage.COLLECTING_EMAIL

    @property
    def quick_replies(self) -> List[str]:
        return list(self.state["quick_replies"])

    @property
    def history(self) -> List[str]:
        return list(self.state["history"])

    @property
    def turn_count(self) -> int:
        return self.state["turn_count"]

    @property
    def messages(self) -> List[dict]:
        return list(self.state["messages"])

    @property
    def booking_result(self) -> Optional[dict]:
        return self.state["booking_result"]

    # ── Internal ──────────────────────────────────────
    def _dispatch(self, action: Action, user_input: str = "", **extra) -> ChatState:
        if self.is_loading:
            logger.warning("[session] '%s' ignored: a request is already in flight.", action.value)
            return self.state

        self.is_loading = True
        try:
            inputs = {**self.state, "action": action.value, "user_input": user_input or ""}
            inputs.update({k: v for k, v in extra.items() if v is not None})
            self.state = self.graph.invoke(inputs)
        finally:
            self.is_loading = False
        return self.state
