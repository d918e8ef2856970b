"""
Focused Prompt Building

Every agent sees only what it needs for its step:

- Its own identity tag
- The original user request (for grounding)
- The immediately preceding agent's name and output (for continuity)

Older agents' outputs and previous turns are never included, so context
stays small no matter how long the relay runs.
"""

from __future__ import annotations

from typing import Optional

# Synthetic predecessor of the first agent in a relay
USER_AGENT_NAME = "User"


def build_focused_prompt(
    agent_name: str,
    previous_agent_name: str,
    previous_output: str,
    user_message: str,
) -> str:
    """Build the minimal prompt for one agent step.

    Args:
        agent_name: Agent about to run
        previous_agent_name: Predecessor, or ``USER_AGENT_NAME`` for the first step
        previous_output: Predecessor's output (ignored when the predecessor is the user)
        user_message: The original user request

    Returns:
        Prompt text
    """
    prompt = (
        f"[You are: {agent_name}]\n\n"
        f"[User Request]:\n"
        f"{user_message}"
    )
    if previous_agent_name == USER_AGENT_NAME:
        return prompt

    return (
        f"{prompt}\n\n"
        f"[Previous Agent - {previous_agent_name}]:\n"
        f"{previous_output}"
    )


def build_revision_context(
    requester_name: str,
    revision_request: str,
    target_original_output: Optional[str],
    requester_output: str,
) -> str:
    """Build the composite "previous output" handed to an agent asked to revise.

    Args:
        requester_name: Agent that requested the revision
        revision_request: What the requester wants changed
        target_original_output: The target's own earlier output, if any
        requester_output: The requester's latest output

    Returns:
        Revision context block
    """
    return (
        f"{requester_name} requested a revision from you.\n\n"
        f"Revision request: {revision_request}\n\n"
        f"Your original output:\n"
        f"{target_original_output or '(none yet)'}\n\n"
        f"{requester_name}'s latest output:\n"
        f"{requester_output}"
    )
