"""
Agentrelay Demo Script

Runs one relay turn from the command line and prints each agent's message
as it completes.
Run with: python -m agentrelay.demo --message "Write a function that parses ISO dates"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from agentrelay.config import configure_logging, get_settings

logger = logging.getLogger(__name__)


async def run_demo(
    message: str,
    backend: Optional[str] = None,
    model_name: Optional[str] = None,
    use_streaming: Optional[bool] = None,
    agent_config_path: Optional[str] = None,
    show_debug_log: bool = False,
) -> None:
    """Run the relay demo.

    Args:
        message: The user request
        backend: LLM backend override (openai, openrouter, local)
        model_name: Model override
        use_streaming: Streaming override
        agent_config_path: Path to a custom agent roster JSON
        show_debug_log: Print the debug event log at the end
    """
    from agentrelay.agent.invoker import is_fallback
    from agentrelay.agent.orchestrator import RelayOrchestrator
    from agentrelay.protocols.events import AgentEvent, EventType

    overrides = {
        key: value
        for key, value in {
            "llm_backend": backend,
            "model_name": model_name,
            "use_streaming": use_streaming,
            "agent_config_path": agent_config_path,
        }.items()
        if value is not None
    }
    settings = get_settings().model_copy(update=overrides)

    print("\n" + "="*60)
    print("🏃 Agentrelay Demo")
    print("="*60 + "\n")

    try:
        orchestrator = RelayOrchestrator.from_settings(settings)
    except ValueError as e:
        print(f"❌ Failed to initialize LLM backend: {e}")
        return

    print(f"🤖 Backend: {settings.llm_backend} ({orchestrator.llm.config.model_name})")
    print(f"👥 Agents: {', '.join(orchestrator.directory.names) or '(none)'}")

    if not orchestrator.directory:
        print("❌ No agents configured. Check the agent configuration file.")
        return

    def on_event(event: AgentEvent) -> None:
        """Display events in real-time."""
        if event.event_type == EventType.HANDOFF:
            print(f"\n➡️  {event.content}")
        elif event.event_type == EventType.REVISION:
            print(f"\n🔁 {event.content}: {event.data.get('revision_request', '')}")
        elif event.event_type == EventType.AGENT_END:
            icon = "⚠️" if is_fallback(event.content) else "✅"
            print(f"{icon} {event.actor}:\n{event.content}")
        elif event.event_type == EventType.TOOL_CALL and event.data.get("accepted") is False:
            print(f"   🚫 {event.content}")

    orchestrator.on_event = on_event

    print(f"\n❓ Request: {message}")
    print("\n" + "-"*60)

    handle = orchestrator.start_relay(message)
    if handle is None:
        print("❌ Relay could not be started")
        return

    try:
        turn = await handle.wait()
    finally:
        await orchestrator.llm.close()

    # Print results
    print("\n" + "="*60)
    print("📊 Results")
    print("="*60)

    revisions = turn.revision_messages
    failed = [m.agent.name for m in turn.agent_messages if is_fallback(m.text)]
    print(f"\n📝 Messages: {len(turn.agent_messages)} ({len(revisions)} revisions)")
    if failed:
        print(f"⚠️  Failed agents: {', '.join(failed)}")

    cost = orchestrator.get_cost_summary()
    print(f"\n💰 Cost: ${cost['total_cost_usd']:.4f} over {cost['total_queries']} queries")
    print(f"   Tokens: {cost['total_input_tokens']} in, {cost['total_output_tokens']} out")

    if show_debug_log:
        print("\n" + "="*60)
        print("🪵 Debug Log")
        print("="*60 + "\n")
        print(orchestrator.event_log.formatted_dump())


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Agentrelay Demo - sequential multi-agent relay"
    )
    parser.add_argument(
        "--message", "-m",
        type=str,
        required=True,
        help="The request to relay through the agents",
    )
    parser.add_argument(
        "--backend", "-b",
        type=str,
        default=None,
        choices=["openai", "openrouter", "local"],
        help="LLM backend to use (default: from settings)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Model name override",
    )
    parser.add_argument(
        "--agents",
        type=str,
        default=None,
        help="Path to an agent configuration JSON file",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for complete responses instead of streaming",
    )
    parser.add_argument(
        "--debug-log",
        action="store_true",
        help="Print the debug event log after the run",
    )

    args = parser.parse_args()

    configure_logging(get_settings().log_level)

    asyncio.run(run_demo(
        message=args.message,
        backend=args.backend,
        model_name=args.model,
        use_streaming=False if args.no_stream else None,
        agent_config_path=args.agents,
        show_debug_log=args.debug_log,
    ))


if __name__ == "__main__":
    main()
