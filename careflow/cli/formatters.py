"""CLI formatters: console factory, tables and reply rendering."""

from __future__ import annotations

import datetime
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from careflow.types import AgentReply, Conversation, Message


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def format_timestamp(ts: float) -> str:
    return datetime.datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def outcome_indicator(action: str | None) -> Text:
    """Map a task outcome to a colored indicator."""
    mapping = {
        "completed": Text("ok ", style="green"),
        "pending_confirmation": Text("?? ", style="yellow"),
        "needs_input": Text("?? ", style="yellow"),
        "budget_exhausted": Text(".. ", style="yellow"),
        "precondition_failed": Text("!! ", style="red"),
        "not_found": Text("-- ", style="dim"),
    }
    return mapping.get(action or "", Text("xx ", style="red"))


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(str(v) for v in row))
    return table


def render_reply(console: Console, reply: AgentReply, verbose: bool = False) -> None:
    header = Text.assemble(
        outcome_indicator(reply.action),
        (reply.intent.value if reply.intent else "unknown", "bold"),
        (f"  via {reply.executor}" if reply.executor else "", "dim"),
    )
    console.print(header)
    console.print(reply.message)
    if reply.requires_confirmation:
        confirmation = reply.data.get("confirmation", {})
        assessment = confirmation.get("assessment", {})
        console.print(Panel(
            "\n".join(assessment.get("reasons", [])) or "Review required.",
            title=f"Confirmation needed ({assessment.get('level', '?')} risk)",
            subtitle=confirmation.get("proposal_id", ""),
            style="yellow",
        ))
    if verbose and reply.reasoning:
        console.print(Text(reply.reasoning, style="dim"))
    console.print(Text(f"conversation: {reply.conversation_id}", style="dim"))


def conversations_table(conversations: list[Conversation]) -> Table:
    return build_table(
        "Conversations",
        ["ID", "Title", "Subject", "Last activity", "Archived"],
        [
            [
                c.conversation_id,
                c.title,
                c.subject_id or "-",
                format_timestamp(c.last_activity),
                "yes" if c.archived else "no",
            ]
            for c in conversations
        ],
    )


def messages_table(title: str, messages: list[Message]) -> Table:
    return build_table(
        title,
        ["Time", "Role", "Message", "Tools"],
        [
            [
                format_timestamp(m.timestamp),
                m.role,
                m.content,
                ", ".join(tc.tool_name for tc in m.tool_calls) or "-",
            ]
            for m in messages
        ],
    )
