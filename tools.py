"""
tools.py — Tools the booking prompt may call.

Only one exists: a simulated email sender. Nothing leaves the process; the
call is logged (with the recipient masked) and reported as sent.
"""

import json
import logging

from pydantic import ValidationError

from middleware import PIIMiddleware
from schemas import EmailToolResult, SendEmailInput

logger = logging.getLogger(__name__)

EMAIL_TOOL_NAME = "send_email_tool"

# OpenAI function-calling declaration
SEND_EMAIL_TOOL_SPEC = {
    "type": "function",
    "function": {
        "name": EMAIL_TOOL_NAME,
        "description": (
            "Sends an email to a specified recipient with a given subject and body. "
            "This is a simulated tool; no real email is delivered."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "to":      {"type": "string", "description": "The recipient email address."},
                "subject": {"type": "string", "description": "The subject line of the email."},
                "body":    {"type": "string", "description": "The HTML body content of the email."},
            },
            "required": ["to", "subject", "body"],
            "additionalProperties": False,
        },
    },
}


def send_email_tool(to: str, subject: str, body: str) -> dict:
    try:
        email = SendEmailInput(to=to, subject=subject, body=body)
    except ValidationError as e:
        logger.warning("[send_email_tool] Rejected input: %s", e.errors()[0]["msg"])
        return EmailToolResult(
            status="Failed",
            message=f"Failed to simulate sending email to {PIIMiddleware.mask(to)}.",
        ).model_dump()

    logger.info("[send_email_tool] Simulated send → to=%s subject=%r body=%s...",
                PIIMiddleware.mask(email.to), email.subject, email.body[:100])
    return EmailToolResult(
        status="Sent",
        message=f"Email successfully simulated sending to {email.to}.",
    ).model_dump()


TOOL_REGISTRY = {
    EMAIL_TOOL_NAME: send_email_tool,
}


def run_tool(name: str, arguments: dict) -> str:
    """
    Executes a registered tool and returns its result JSON-encoded, the way it is
    handed back to the model as a tool message.
    """
    fn = TOOL_REGISTRY.get(name)
    if fn is None:
        raise KeyError(f"Unknown tool '{name}'")
    return json.dumps(fn(**arguments))
