"""
main.py — HealthAssist terminal chat
Flow: pick a symptom → answer triage questions → (optional) book an appointment → start over
"""
import sys
import argparse
import logging

from config import settings
from invokers import build_invokers
from session import TriageSession
from state import COMMON_SYMPTOMS, SYMPTOM_CATEGORIES, Stage, category_for
from nodes import DECISION_OPTIONS

BANNER = """
╔══════════════════════════════════════════════════════════════╗
║              HEALTHASSIST  ·  Symptom Triage Chat            ║
║      Not a diagnosis. In an emergency call your local number ║
╚══════════════════════════════════════════════════════════════╝
"""

SENDER_LABELS = {"user": "You   ", "bot": "Bot   ", "system": "Notice"}

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    )


def ask(prompt: str) -> str:
    """Ask for input and exit gracefully on quit."""
    val = input(prompt).strip()
    if val.lower() in ("quit", "exit", "q"):
        print("\n  Goodbye! Take care.\n")
        raise SystemExit(0)
    return val


def pick(options, raw: str):
    """Numbered choice or free text."""
    if raw.isdigit() and 1 <= int(raw) <= len(options):
        return options[int(raw) - 1]
    return raw


def print_new_messages(session: TriageSession, seen: int) -> int:
    messages = session.messages
    for msg in messages[seen:]:
        if msg["sender"] == "user":
            continue
        label = SENDER_LABELS.get(msg["sender"], msg["sender"])
        print(f"\n  {label}: {msg['text']}")
    return len(messages)


def show_symptom_picker() -> None:
    print("\n  ── Select a symptom ──────────────────────────────────")
    number = 1
    for category, symptoms in SYMPTOM_CATEGORIES.items():
        print(f"  {category}")
        for s in symptoms:
            print(f"    [{number:>2}] {s}")
            number += 1
    print("  ──────────────────────────────────────────────────────")


def show_options(title: str, options) -> None:
    print(f"\n  {title}")
    for i, option in enumerate(options, 1):
        print(f"    [{i}] {option}")


def run_chat(session: TriageSession) -> None:
    seen = print_new_messages(session, 0)

    while True:
        stage = session.stage

        if stage == Stage.SELECTING_SYMPTOM:
            show_symptom_picker()
            symptom = pick(COMMON_SYMPTOMS, ask("  You    : "))
            if not symptom:
                continue
            session.start_triage(symptom, category_for(symptom))

        elif stage == Stage.QUESTIONING:
            replies = session.quick_replies
            if replies:
                show_options("Or select a quick response:", replies)
            answer = pick(replies, ask("  You    : "))
            if not answer:
                continue
            if answer.lower() == "restart":
                session.reset_session()
                seen = 0
            else:
                session.submit_user_turn(answer)

        elif stage == Stage.AWAITING_BOOKING_DECISION:
            show_options("Choose:", DECISION_OPTIONS)
            choice = pick(DECISION_OPTIONS, ask("  You    : "))
            if choice:
                session.submit_booking_decision(choice)

        elif stage == Stage.COLLECTING_EMAIL:
            raw = ask("  Email  : ")
            if not raw:
                print("\n  ⚠️  Please enter your email address.")
                continue
            print("  Booking your appointment...")
            session.submit_email(raw)

        else:
            seen = print_new_messages(session, seen)
            print("\n" + "─" * 64)
            print("  Triage complete. You can start a new session if needed.")
            again = ask("  Start over? (Y/N): ").upper()
            if again != "Y":
                print("\n  Thank you. Take care!\n")
                return
            session.reset_session()
            seen = 0

        seen = print_new_messages(session, seen)


def main():
    parser = argparse.ArgumentParser(description="HealthAssist symptom triage chat")
    parser.add_argument("--model", default=settings.MODEL_NAME)
    parser.add_argument("--provider", choices=["openai", "mock"], default=settings.LLM_PROVIDER)
    args = parser.parse_args()

    configure_logging(settings.LOG_LEVEL)

    try:
        invokers = build_invokers(settings, provider=args.provider, model=args.model)
    except (RuntimeError, ValueError) as e:
        print(f"\n❌  {e}\n")
        sys.exit(1)

    print(BANNER)
    session = TriageSession(invokers.triage, invokers.booking, assessor=invokers.assessor)
    try:
        run_chat(session)
    except (KeyboardInterrupt, EOFError):
        print("\n  Session ended.\n")


if __name__ == "__main__":
    main()
