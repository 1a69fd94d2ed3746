"""Command-line entry point: run the shell with the agent attached, or one-shot helpers."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Sequence

from rich.console import Console

from termpilot import __version__
from termpilot.agent.messages import Message
from termpilot.agent.prompt import build_system_prompt
from termpilot.agent.transport import ChatTransport
from termpilot.config import AgentConfig, config_path, load_config
from termpilot.context import ContextBuffer, default_shell
from termpilot.errors import TermpilotError
from termpilot.log_utils import build_log_config, configure_logging, log_event
from termpilot.usage import UsageStore, format_usage_summary

logger = logging.getLogger(__name__)

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="termpilot", description="AI agent embedded in your terminal.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    shell = sub.add_parser("shell", help="Run your shell with the agent attached (default)")
    shell.add_argument("--shell", dest="shell_path", help="Shell executable (default: $SHELL)")

    ask = sub.add_parser("ask", help="Ask a one-shot question without tools")
    ask.add_argument("question", nargs="+", help="Question text")

    sub.add_parser("usage", help="Show persisted token usage per provider")
    sub.add_parser("config", help="Show the resolved configuration")
    return parser


async def run_shell(config: AgentConfig, shell_path: str | None = None) -> int:
    if sys.platform == "win32":
        err_console.print("[red]The interactive shell host needs a POSIX pseudo-terminal.[/red]")
        return 1

    from termpilot.terminal.multiplexer import TerminalMultiplexer
    from termpilot.terminal.pty_host import PtyHost, PtySession
    from termpilot.terminal.session import attach_agent

    shell = shell_path or os.environ.get("SHELL") or "/bin/sh"
    host = PtyHost(PtySession([shell]))

    def _factory(session: PtySession, context: ContextBuffer) -> TerminalMultiplexer:
        return TerminalMultiplexer(host.write_to_terminal, session.write_input, context, config)

    attachment = attach_agent(host, _factory, max_context_lines=config.max_context_lines)
    try:
        return await host.run()
    finally:
        attachment.detach()
        if attachment.multiplexer is not None:
            attachment.multiplexer.abort()


async def run_ask(config: AgentConfig, question: str) -> int:
    context = ContextBuffer(config.max_context_lines)
    context.cwd = os.getcwd()
    messages = [Message.system(build_system_prompt(context)), Message.user(question)]
    transport = ChatTransport(config)
    try:
        text, usage = await transport.complete(messages)
    except TermpilotError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        return 1
    console.print(text, markup=False)
    if usage.total_tokens:
        UsageStore().record(config.provider.value, usage)
        console.print(format_usage_summary(usage), style="dim", markup=False)
    return 0


def show_usage() -> int:
    records = UsageStore().load()
    if not records:
        console.print("No usage recorded yet.")
        return 0
    for provider, record in sorted(records.items()):
        console.print(format_usage_summary(record, label=provider), markup=False)
    return 0


def show_config(config: AgentConfig) -> int:
    data = config.to_dict(mask_secret=True)
    data["resolved_base_url"] = config.resolved_base_url
    data["resolved_model"] = config.resolved_model
    console.print(f"# {config_path()}", style="dim", markup=False)
    console.print_json(json.dumps(data))
    return 0


async def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(build_log_config())
    config = load_config()
    command = args.command or "shell"
    log_event(logger, "cli.start", command=command, provider=config.provider.value, shell=default_shell())

    if command == "ask":
        return await run_ask(config, " ".join(args.question))
    if command == "usage":
        return show_usage()
    if command == "config":
        return show_config(config)
    return await run_shell(config, getattr(args, "shell_path", None))


def main_entry() -> int:
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main_entry())
