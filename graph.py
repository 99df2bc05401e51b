# graph.py — Builds and compiles the LangGraph StateGraph that handles one user action per invoke.

import logging
from functools import partial

from langgraph.graph import StateGraph, START, END

from state import Action, BookingIntent, ChatState, Stage
import nodes as n

logger = logging.getLogger(__name__)


def build_graph(triage_invoker, booking_invoker, assessor=None):
    node_start_triage   = partial(n.start_triage,      invoker=triage_invoker)
    node_triage_turn    = partial(n.triage_turn,       invoker=triage_invoker)
    node_apply_term     = partial(n.apply_termination, assessor=assessor)
    node_submit_booking = partial(n.submit_booking,    invoker=booking_invoker)

    builder = StateGraph(ChatState)

    builder.add_node("start_triage",           node_start_triage)
    builder.add_node("detect_intent",          n.detect_intent)
    builder.add_node("triage_turn",            node_triage_turn)
    builder.add_node("apply_termination",      node_apply_term)
    builder.add_node("self_manage",            n.self_manage)
    builder.add_node("booking_decision",       n.booking_decision)
    builder.add_node("begin_email_collection", n.begin_email_collection)
    builder.add_node("prepare_booking",        n.prepare_booking)
    builder.add_node("submit_booking",         node_submit_booking)
    builder.add_node("reset_session",          n.reset_session)

    def route_action(state: ChatState) -> str:
        if not n.accepts_action(state):
            logger.warning("[route_action] '%s' ignored in stage %s.",
                           state.get("action"), state.get("stage"))
            return END
        return {
            Action.START.value:       "start_triage",
            Action.REPLY.value:       "detect_intent",
            Action.DECISION.value:    "booking_decision",
            Action.BEGIN_EMAIL.value: "begin_email_collection",
            Action.EMAIL.value:       "prepare_booking",
            Action.RESET.value:       "reset_session",
        }[state["action"]]

    builder.add_conditional_edges(START, route_action, {
        "start_triage":           "start_triage",
        "detect_intent":          "detect_intent",
        "booking_decision":       "booking_decision",
        "begin_email_collection": "begin_email_collection",
        "prepare_booking":        "prepare_booking",
        "reset_session":          "reset_session",
        END:                      END,
    })

    def route_intent(state: ChatState) -> str:
        intent = state.get("intent")
        if intent == BookingIntent.ACCEPT.value:
            return "begin_email_collection"
        if intent == BookingIntent.DECLINE.value:
            return "self_manage"
        return "triage_turn"

    builder.add_conditional_edges("detect_intent", route_intent, {
        "begin_email_collection": "begin_email_collection",
        "self_manage":            "self_manage",
        "triage_turn":            "triage_turn",
    })

    def route_decision(state: ChatState) -> str:
        intent = state.get("intent")
        if intent == BookingIntent.ACCEPT.value:
            return "begin_email_collection"
        if intent == BookingIntent.DECLINE.value:
            return "self_manage"
        return END

    builder.add_conditional_edges("booking_decision", route_decision, {
        "begin_email_collection": "begin_email_collection",
        "self_manage":            "self_manage",
        END:                      END,
    })

    def route_booking(state: ChatState) -> str:
        if state.get("stage") == Stage.SUBMITTING_BOOKING.value:
            return "submit_booking"
        return END

    builder.add_conditional_edges("prepare_booking", route_booking, {
        "submit_booking": "submit_booking",
        END:              END,
    })

    builder.add_edge("triage_turn", "apply_termination")
    builder.add_edge("start_triage", END)
    builder.add_edge("apply_termination", END)
    builder.add_edge("self_manage", END)
    builder.add_edge("begin_email_collection", END)
    builder.add_edge("submit_booking", END)
    builder.add_edge("reset_session", END)

    return builder.compile()
