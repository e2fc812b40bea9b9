"""Repair tool definitions for the reasoning service.

Defines the four tools offered to Claude during a diagnosis session:
- edit_rule: Change a rule's AI instructions, static matchers or operator
- add_to_group: Add a sender/subject pattern to a group
- remove_from_group: Remove a sender/subject pattern from a group
- change_sender_category: Reassign a sender's category

Claude addresses rules and groups by name (unique per owner). Tool calls are
resolved to ids and validated into typed repair actions here; nothing from a
tool call reaches the store without going through parse_repair_action().
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from rulefix.core.errors import ActionValidationError, NotFoundError
from rulefix.repair.actions import RepairAction, parse_repair_action

if TYPE_CHECKING:
    from rulefix.db.store import DatabaseStore


# ---------------------------------------------------------------------------
# Tool schemas (Anthropic API format)
# ---------------------------------------------------------------------------

_NULLABLE_STRING = {"type": ["string", "null"]}

REPAIR_TOOLS: list[dict[str, Any]] = [
    {
        "name": "edit_rule",
        "description": (
            "Fix a rule's matching conditions. Only the fields you include are "
            "changed; omitted fields keep their current value. Set a field to null "
            "to remove that condition. Never use empty strings."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "rule_name": {
                    "type": "string",
                    "description": "Exact name of the rule to fix",
                },
                "new_name": {
                    "type": "string",
                    "description": "Optional new name for the rule",
                },
                "condition": {
                    "type": "object",
                    "properties": {
                        "conditional_operator": {
                            "type": "string",
                            "enum": ["AND", "OR"],
                        },
                        "ai_instructions": {
                            **_NULLABLE_STRING,
                            "description": "Replacement AI instructions (null removes them)",
                        },
                        "static": {
                            "type": ["object", "null"],
                            "properties": {
                                "from": {
                                    **_NULLABLE_STRING,
                                    "description": "Sender address or '@domain.com'",
                                },
                                "to": {
                                    **_NULLABLE_STRING,
                                    "description": "Recipient address or '@domain.com'",
                                },
                                "subject": {
                                    **_NULLABLE_STRING,
                                    "description": "Text the subject must contain",
                                },
                                "body": {
                                    **_NULLABLE_STRING,
                                    "description": "Text the body must contain",
                                },
                            },
                        },
                    },
                },
                "explanation": {
                    "type": "string",
                    "description": "Brief explanation of why this fixes the problem",
                },
            },
            "required": ["rule_name", "condition"],
        },
    },
    {
        "name": "add_to_group",
        "description": (
            "Add a sender or subject pattern to a group so that rules using the "
            "group match it. Prefer a domain ('@example.com') when every sender "
            "of that domain belongs in the group."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "group_name": {
                    "type": "string",
                    "description": "Exact name of the group",
                },
                "type": {
                    "type": "string",
                    "enum": ["from", "subject"],
                },
                "value": {
                    "type": "string",
                    "description": "Sender address, '@domain.com', or subject text",
                },
                "explanation": {"type": "string"},
            },
            "required": ["group_name", "type", "value"],
        },
    },
    {
        "name": "remove_from_group",
        "description": (
            "Remove a sender or subject pattern from a group so that rules using "
            "the group stop matching it. The value must equal an existing item."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "group_name": {
                    "type": "string",
                    "description": "Exact name of the group",
                },
                "type": {
                    "type": "string",
                    "enum": ["from", "subject"],
                },
                "value": {
                    "type": "string",
                    "description": "The existing group item value to remove",
                },
                "explanation": {"type": "string"},
            },
            "required": ["group_name", "type", "value"],
        },
    },
    {
        "name": "change_sender_category",
        "description": (
            "Assign the sender to a different category. Use this when a rule's "
            "category filter matched (or missed) because the sender is in the "
            "wrong category."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "sender": {
                    "type": "string",
                    "description": "Sender email address",
                },
                "category": {
                    "type": "string",
                    "description": "Name of an existing category",
                },
                "explanation": {"type": "string"},
            },
            "required": ["sender", "category"],
        },
    },
]

TOOL_NAMES = frozenset(tool["name"] for tool in REPAIR_TOOLS)


# ---------------------------------------------------------------------------
# Tool call resolution
# ---------------------------------------------------------------------------


def _require_str(args: dict[str, Any], key: str, tool_name: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ActionValidationError(f"{tool_name}: '{key}' is required and must be a string")
    return value.strip()


async def _resolve_edit_rule(
    args: dict[str, Any], owner_id: str, store: DatabaseStore
) -> dict[str, Any]:
    rule_name = _require_str(args, "rule_name", "edit_rule")
    rule = await store.get_rule_by_name(owner_id, rule_name)
    if rule is None:
        raise NotFoundError("rule", rule_name)

    condition = args.get("condition") or {}
    if not isinstance(condition, dict):
        raise ActionValidationError("edit_rule: 'condition' must be an object")

    payload: dict[str, Any] = {"kind": "edit_rule", "rule_id": rule.id}
    if args.get("new_name") is not None:
        payload["name"] = args["new_name"]
    for key in ("conditional_operator", "ai_instructions", "static"):
        if key in condition:
            payload[key] = condition[key]
    if args.get("explanation"):
        payload["explanation"] = args["explanation"]
    return payload


async def _resolve_group_item(
    kind: str, args: dict[str, Any], owner_id: str, store: DatabaseStore
) -> dict[str, Any]:
    group_name = _require_str(args, "group_name", kind)
    group = await store.get_group_by_name(owner_id, group_name)
    if group is None:
        raise NotFoundError("group", group_name)

    payload: dict[str, Any] = {
        "kind": kind,
        "group_id": group.id,
        "item_type": args.get("type"),
        "value": args.get("value"),
    }
    if args.get("explanation"):
        payload["explanation"] = args["explanation"]
    return payload


async def resolve_tool_call(
    tool_name: str,
    tool_input: dict[str, Any],
    owner_id: str,
    store: DatabaseStore,
) -> RepairAction:
    """Turn a tool call into a validated repair action.

    Args:
        tool_name: Name of the tool Claude invoked
        tool_input: Arguments dict from Claude's tool call
        owner_id: Owner whose rules and groups the names refer to
        store: Store used to resolve rule and group names

    Returns:
        A typed repair action (not yet applied)

    Raises:
        ActionValidationError: Unknown tool or malformed arguments
        NotFoundError: Rule or group name does not exist
    """
    if tool_name not in TOOL_NAMES:
        raise ActionValidationError(
            f"Unknown tool: {tool_name}. Available: {', '.join(sorted(TOOL_NAMES))}"
        )
    if not isinstance(tool_input, dict):
        raise ActionValidationError(f"{tool_name}: arguments must be an object")

    if tool_name == "edit_rule":
        payload = await _resolve_edit_rule(tool_input, owner_id, store)
    elif tool_name in ("add_to_group", "remove_from_group"):
        payload = await _resolve_group_item(tool_name, tool_input, owner_id, store)
    else:
        payload = {
            "kind": "change_sender_category",
            "sender": tool_input.get("sender"),
            "category_name": tool_input.get("category"),
        }
        if tool_input.get("explanation"):
            payload["explanation"] = tool_input["explanation"]

    return parse_repair_action(payload)
