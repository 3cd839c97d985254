"""
Prompt text for every inference call site.

Kept in one place so wording changes never touch control flow. Functions
here only format strings; they make no decisions.
"""

from __future__ import annotations

from typing import Iterable

from careflow.types import Intent, Message

CLASSIFIER_SYSTEM = """You classify the intent of one user turn in a conversation with an \
assistant that manages a person's medical records.

Intents:
- create: add or store a new record, document, or piece of medical information
- retrieve: ask a question about, search for, or list existing records
- modify: change or correct an existing record, or confirm a previously proposed change
- remove: delete records
- visualize: see a graph or visual map of how records relate
- general: greetings, small talk, questions about what the assistant can do
- clarification: the user is answering a question the assistant just asked

Use the recent conversation to resolve references like "yes", "that one" or "do it".
Record your answer with the provided tool."""

INTENT_SCHEMA_NAME = "record_intent"

INTENT_SCHEMA = {
    "type": "object",
    "properties": {
        "intent": {"type": "string", "enum": [i.value for i in Intent]},
        "reason": {"type": "string", "description": "At most 20 words."},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["intent"],
}

GENERAL_SYSTEM = """You are a helpful assistant for managing personal medical records. \
Answer briefly. If the user asks what you can do, explain that you can store new \
records, answer questions about existing records, edit or delete records (risky \
changes are previewed and need confirmation), and draw a graph of how records relate. \
You do not give diagnoses."""

SUMMARY_SYSTEM = "You write short, factual conversation summaries."

TITLE_SYSTEM = "You write short conversation titles. Reply with the title only."

EXECUTOR_BASE = """You are the {name} executor of an assistant that manages a person's \
medical records. Work only through the tools provided. Records always belong to the \
current subject; you never need to supply a subject id.

Rules:
- Search before you read, change, or delete; never guess resource ids.
- Changes are two-step: stage_change returns a proposal, commit_change applies it.
- Never set confirmed=true unless the user explicitly confirmed that exact proposal \
in their latest message. If a commit reports pending_confirmation, show the user \
what will change and ask them to confirm.
- If the request is ambiguous, call request_clarification with one short question.
- If a tool reports an error, correct your arguments or explain the problem.
- Finish with a short answer for the user. Cite resource ids for facts you report.

{task}"""

EXECUTOR_TASKS = {
    Intent.CREATE: "Your task: store the new information as a record. Choose a fitting "
                   "resource_kind (document, observation, condition, medication).",
    Intent.RETRIEVE: "Your task: answer the question from the subject's records. If "
                     "nothing relevant exists, say so plainly.",
    Intent.MODIFY: "Your task: change the records the user refers to, exactly as asked.",
    Intent.REMOVE: "Your task: delete the records the user refers to.",
    Intent.VISUALIZE: "Your task: build the relationship graph and describe its main "
                      "structure in a few sentences.",
}


def executor_system_prompt(intent: Intent) -> str:
    return EXECUTOR_BASE.format(name=intent.value, task=EXECUTOR_TASKS[intent])


def format_transcript(messages: Iterable[Message]) -> str:
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


def classification_request(text: str, recent: list[Message]) -> str:
    context = format_transcript(recent) if recent else "None"
    return f"Recent conversation:\n{context}\n\nUser input to classify:\n{text}"


def summary_request(messages: list[Message]) -> str:
    return (
        "Summarize the following conversation in 2-3 sentences. Focus on the main "
        "topics and key information discussed.\n\n"
        f"{format_transcript(messages)}\n\nSummary:"
    )


def title_request(first_message: str) -> str:
    return (
        "Generate a short, descriptive title (max 6 words) for a conversation that "
        f'starts with:\n\n"{first_message[:200]}"\n\nTitle:'
    )


def executor_request(text: str, context_lines: list[str]) -> str:
    if not context_lines:
        return text
    context = "\n".join(context_lines)
    return f"Context:\n{context}\n\nRequest:\n{text}"
