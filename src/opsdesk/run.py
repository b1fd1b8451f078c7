# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Swap OPSDESK_MODEL for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import logging
import sys

from rich.logging import RichHandler

from opsdesk import display
from opsdesk.auth import register_user
from opsdesk.chat import ChatService
from opsdesk.config import AgentConfig
from opsdesk.errors import AgentError
from opsdesk.harness import Agent
from opsdesk.models import Message

# Demo prompts: one read, one write, one that must fail validation.
PROMPTS = [
    "Give me a summary of the sales pipeline.",
    "Create a lead for Thapelo Chalatsi, thapelo@example.com, 0783800308, roof repair at 274 Fox Street.",
    "Create a lead for Jane with email jane@example.com for plumbing.",
]


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="opsdesk", description="Talk to the opsdesk operations agent.")
    parser.add_argument("prompts", nargs="*", help="Requests to send, one turn each. Defaults to the demo prompts.")
    parser.add_argument("--token", help="Bearer credential of the acting user.")
    parser.add_argument(
        "--seed-user",
        nargs=2,
        metavar=("EMAIL", "ROLE"),
        help="Create a user, print its token and use it for this session.",
    )
    parser.add_argument("--clear", action="store_true", help="Clear the user's agent transcript first.")
    parser.add_argument("--trace", action="store_true", help="Render loop events and the trace tree.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True)],
    )

    config = AgentConfig.from_env()
    if args.trace:
        config = config.model_copy(update={"trace": True})

    try:
        agent = Agent.from_config(config)
    except AgentError as exc:
        display.halt(str(exc))
        return 2

    token = args.token
    if args.seed_user:
        email, role = args.seed_user
        principal, token = register_user(agent.session_factory, email, role.upper())
        display.console.print(f"[green]Seeded {principal.email} ({principal.role}).[/green] Token: [bold]{token}[/bold]")
    if not token:
        display.halt("Pass --token or --seed-user EMAIL ROLE.")
        return 2

    service = ChatService(agent)
    if args.clear:
        service.clear_conversation(token)

    conversation: list[Message] = []
    try:
        for prompt in args.prompts or PROMPTS:
            conversation.append(Message(role="user", content=prompt))
            reply = service.send(token, conversation)
            if not reply.success:
                display.halt(reply.message)
                return 1
            conversation.append(Message(role="assistant", content=reply.message))
            if not config.trace:
                display.final_result(reply.message)
    finally:
        agent.notifier.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
