"""CLI application: Click-based command hierarchy for Careflow.

``ask`` runs one full turn through the supervisor. The other commands only
touch the durable store and work without inference credentials.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import click

from careflow.config import CareflowConfig
from careflow.logging_setup import configure_logging
from careflow.memory.cache import WorkingMemoryCache
from careflow.memory.manager import MemoryManager
from careflow.memory.store import DurableStore
from careflow.types import ConversationFilters


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


@asynccontextmanager
async def open_memory(config: CareflowConfig) -> AsyncIterator[MemoryManager]:
    """A memory manager over the configured database, without inference."""
    store = DurableStore(config.memory.db_path)
    await store.initialize()
    try:
        yield MemoryManager(store, WorkingMemoryCache(), None, config.memory)
    finally:
        await store.close()


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Extended details and info-level logs")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool, no_color: bool) -> None:
    """Careflow - conversational orchestration over personal records."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["verbose"] = verbose
    ctx.obj["no_color"] = no_color
    configure_logging(level=logging.INFO if verbose else logging.WARNING, colors=not no_color)


@cli.command("ask")
@click.argument("text")
@click.option("--conversation", "-c", "conversation_id", default=None, help="Continue this conversation")
@click.option("--user", "-u", "user_id", default="local", show_default=True)
@click.option("--subject", "-s", "subject_id", default=None, help="Subject (patient) id")
@click.option(
    "--records",
    "records_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON file of records to load into the in-memory document store",
)
@click.pass_context
@async_cmd
async def ask_cmd(
    ctx: click.Context,
    text: str,
    conversation_id: Optional[str],
    user_id: str,
    subject_id: Optional[str],
    records_path: Optional[Path],
) -> None:
    """Send one message and print the reply."""
    from careflow.app import build_app, load_resources
    from careflow.cli.formatters import get_console, render_reply
    from careflow.records.store import InMemoryDocumentStore

    config = CareflowConfig()
    documents = InMemoryDocumentStore(load_resources(records_path) if records_path else None)
    try:
        app = build_app(config, inference=ctx.obj.get("inference"), documents=documents)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    async with app:
        reply = await app.supervisor.process_user_input(
            text, conversation_id=conversation_id, user_id=user_id, subject_id=subject_id
        )

    if ctx.obj["json"]:
        _emit(reply.to_payload())
    else:
        render_reply(get_console(ctx.obj["no_color"]), reply, verbose=ctx.obj["verbose"])


@cli.command("history")
@click.argument("conversation_id")
@click.option("--limit", "-n", default=20, show_default=True, help="Most recent messages to show")
@click.pass_context
@async_cmd
async def history_cmd(ctx: click.Context, conversation_id: str, limit: int) -> None:
    """Show the recent messages of a conversation."""
    from careflow.cli.formatters import get_console, messages_table

    async with open_memory(CareflowConfig()) as memory:
        conversation = await memory.get_conversation(conversation_id, include_messages=False)
        if conversation is None:
            raise click.ClickException(f"Unknown conversation: {conversation_id}")
        messages = await memory.recent_messages(conversation_id, limit)

    if ctx.obj["json"]:
        _emit({
            "conversation": conversation.model_dump(mode="json", exclude={"messages"}),
            "messages": [m.model_dump(mode="json") for m in messages],
        })
        return
    console = get_console(ctx.obj["no_color"])
    console.print(messages_table(conversation.title, messages))
    if conversation.summary:
        console.print(f"Summary: {conversation.summary}")


@cli.command("conversations")
@click.option("--user", "-u", "user_id", default="local", show_default=True)
@click.option("--subject", "-s", "subject_id", default=None)
@click.option("--archived/--active", default=None, help="Only archived or only active conversations")
@click.option("--limit", "-n", default=50, show_default=True)
@click.option("--offset", default=0, show_default=True)
@click.pass_context
@async_cmd
async def conversations_cmd(
    ctx: click.Context,
    user_id: str,
    subject_id: Optional[str],
    archived: Optional[bool],
    limit: int,
    offset: int,
) -> None:
    """List a user's conversations, most recently active first."""
    from careflow.cli.formatters import conversations_table, get_console

    filters = ConversationFilters(archived=archived, subject_id=subject_id, limit=limit, offset=offset)
    async with open_memory(CareflowConfig()) as memory:
        conversations = await memory.list_conversations(user_id, filters)

    if ctx.obj["json"]:
        _emit([c.model_dump(mode="json", exclude={"messages"}) for c in conversations])
    else:
        get_console(ctx.obj["no_color"]).print(conversations_table(conversations))


@cli.command("archive")
@click.argument("conversation_id")
@click.option("--undo", is_flag=True, help="Unarchive instead")
@click.pass_context
@async_cmd
async def archive_cmd(ctx: click.Context, conversation_id: str, undo: bool) -> None:
    """Archive (or unarchive) a conversation."""
    async with open_memory(CareflowConfig()) as memory:
        changed = await memory.archive_conversation(conversation_id, archived=not undo)
    if not changed:
        raise click.ClickException(f"Unknown conversation: {conversation_id}")
    if ctx.obj["json"]:
        _emit({"conversation_id": conversation_id, "archived": not undo})
    else:
        click.echo(f"{'Unarchived' if undo else 'Archived'} {conversation_id}")


@cli.command("delete")
@click.argument("conversation_id")
@click.confirmation_option(prompt="Delete this conversation and its messages?")
@click.pass_context
@async_cmd
async def delete_cmd(ctx: click.Context, conversation_id: str) -> None:
    """Delete a conversation, its messages and its working memory."""
    async with open_memory(CareflowConfig()) as memory:
        deleted = await memory.delete_conversation(conversation_id)
    if not deleted:
        raise click.ClickException(f"Unknown conversation: {conversation_id}")
    if ctx.obj["json"]:
        _emit({"conversation_id": conversation_id, "deleted": True})
    else:
        click.echo(f"Deleted {conversation_id}")


@cli.command("purge-expired")
@click.pass_context
@async_cmd
async def purge_expired_cmd(ctx: click.Context) -> None:
    """Remove expired working memory from the durable store."""
    async with open_memory(CareflowConfig()) as memory:
        purged = await memory.cleanup_expired_memory()
    if ctx.obj["json"]:
        _emit({"purged": purged})
    else:
        click.echo(f"Purged {purged} expired working-memory record(s)")


def main() -> None:
    cli(obj={})
