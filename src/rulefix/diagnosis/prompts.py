"""Prompt templates for rule diagnosis.

The system prompt explains the task and the repair vocabulary. The first user
message pre-loads everything Claude needs to diagnose the report: the email,
the rule that matched (or that none did), why the evaluator reached its
verdict, every rule of the owner, and the available categories. Claude has no
fetch tools, only repair tools.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rulefix.rules.evaluator import MatchResult
    from rulefix.rules.models import Category, EmailMessage, Group, Rule


_SYSTEM_PROMPT = """\
You are an assistant that fixes email-filtering rules.

A user's email was handled by the wrong rule, or by no rule at all, and the \
user has described what should have happened. Work out which condition caused \
the mistake and fix it with the tools provided.

Each rule combines up to four condition groups with AND or OR:
- static: sender, recipient, subject and body matchers
- group: the sender or subject must match an item of a named group
- category: the sender's category must (or must not) be in a list
- ai: free-text instructions judged by a language model

How to choose a fix:
- If a group item wrongly matched the sender, use remove_from_group.
- If a sender belongs in a group but is missing, use add_to_group. Prefer the \
sender's domain ('@example.com') when the whole domain belongs there.
- If the sender's category is wrong, use change_sender_category.
- If the rule's AI instructions or static matchers are too broad or too narrow, \
use edit_rule. Keep edits minimal and only change what caused the mistake.
- Never set a field to an empty string. Use null to remove a condition.

Tool results tell you whether each fix was applied. If a fix is rejected, read \
the error and either correct it or stop. When you are done, reply with a short \
explanation for the user and do not call any more tools.
{user_section}"""


def build_system_prompt(user_email: str | None = None, user_about: str | None = None) -> str:
    """Build the diagnosis system prompt.

    Args:
        user_email: The user's own address, so Claude can tell sent from received mail
        user_about: Optional free-text description the user gave of themselves
    """
    lines: list[str] = []
    if user_email:
        lines.append(f"The user's email address is {user_email}.")
    if user_about and user_about.strip():
        lines.append(f"About the user:\n{user_about.strip()}")

    user_section = "\n" + "\n\n".join(lines) + "\n" if lines else ""
    return _SYSTEM_PROMPT.format(user_section=user_section)


def _json_block(data: object) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def build_user_message(
    user_report: str,
    email: EmailMessage,
    rules: Sequence[Rule],
    groups: Mapping[str, Group],
    matched_rule: Rule | None,
    evaluations: Sequence[MatchResult],
    categories: Sequence[Category],
    sender_category: Category | None,
) -> str:
    """Build the first user message of a diagnosis session.

    Args:
        user_report: What the user says went wrong
        email: The misclassified email
        rules: All rules of the owner
        groups: Groups referenced by those rules, keyed by id
        matched_rule: Rule the email was assigned to, or None
        evaluations: Evaluator results for the matched rule (or for every
            rule when none matched)
        categories: Categories available to the owner
        sender_category: Sender's current category, if any
    """
    sections = [f"<user_report>\n{user_report.strip()}\n</user_report>"]

    sections.append(f"<email>\n{_json_block(email.to_prompt_dict())}\n</email>")

    if matched_rule is not None:
        sections.append(
            "<matched_rule>\n"
            f"{_json_block(matched_rule.to_prompt_dict(dict(groups)))}\n"
            "</matched_rule>"
        )
    else:
        sections.append("<matched_rule>\nNo rule matched this email.\n</matched_rule>")

    if evaluations:
        sections.append(
            "<evaluation>\n"
            f"{_json_block([r.to_prompt_dict() for r in evaluations])}\n"
            "</evaluation>"
        )

    sections.append(
        "<rules>\n"
        f"{_json_block([r.to_prompt_dict(dict(groups)) for r in rules])}\n"
        "</rules>"
    )

    if categories:
        category_lines = [
            f"- {c.name}" + (f": {c.description}" if c.description else "") for c in categories
        ]
        sections.append("<categories>\n" + "\n".join(category_lines) + "\n</categories>")

    sender = email.sender_address
    current = sender_category.name if sender_category else "none"
    sections.append(f"<sender_category>\n{sender}: {current}\n</sender_category>")

    return "\n\n".join(sections)
