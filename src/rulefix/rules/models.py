"""Condition model for email-filtering rules.

A rule combines up to four condition groups with a logical operator:

- static: header/body matchers (from, to, subject, body)
- group: membership of the sender in a Group
- category: INCLUDE/EXCLUDE filter over the sender's assigned Category
- ai: free-text instructions judged by an external reasoning service

Every record here is frozen. Rules are never edited in place; repair actions
build a new Rule through dataclasses.replace(), which re-runs validation.

Usage:
    from rulefix.rules.models import Rule, StaticConditions

    rule = Rule(
        id="rule-1",
        owner_id="user1",
        name="Receipts",
        static=StaticConditions(from_address="@amazon.com", subject="Order"),
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

from rulefix.core.errors import InvalidRuleStateError, NotFoundError
from rulefix.rules.matching import (
    address_matches,
    find_matching_group_item,
    normalize_address,
    split_addresses,
    substring_matches,
)

if TYPE_CHECKING:
    from rulefix.rules.evaluator import EvaluationContext


class LogicalOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class ConditionType(StrEnum):
    STATIC = "static"
    GROUP = "group"
    CATEGORY = "category"
    AI = "ai"


class ConditionOutcome(StrEnum):
    MATCHED = "matched"
    NOT_MATCHED = "not_matched"
    DEFERRED = "deferred"


class GroupItemType(StrEnum):
    FROM = "from"
    SUBJECT = "subject"


class CategoryFilterType(StrEnum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


# ---------------------------------------------------------------------------
# Email snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmailHeaders:
    """Headers of a parsed message."""

    from_address: str
    to: str = ""
    subject: str = ""
    date: str = ""
    message_id: str = ""
    references: str = ""


@dataclass(frozen=True, slots=True)
class Attachment:
    """Attachment metadata (content is never loaded)."""

    filename: str
    mime_type: str = "application/octet-stream"
    size: int = 0


@dataclass(frozen=True, slots=True)
class EmailMessage:
    """Read-only snapshot of an email supplied by the mail provider."""

    id: str
    headers: EmailHeaders
    text_plain: str = ""
    attachments: tuple[Attachment, ...] = ()
    thread_id: str | None = None

    @property
    def sender_address(self) -> str:
        """Bare lowercased sender address."""
        return normalize_address(self.headers.from_address)

    @property
    def recipient_addresses(self) -> list[str]:
        """Bare lowercased recipient addresses from the To header."""
        return split_addresses(self.headers.to)

    def to_prompt_dict(self, max_body_chars: int = 2000) -> dict[str, Any]:
        """Render a JSON-safe snapshot for the reasoning context."""
        return {
            "from": self.headers.from_address,
            "to": self.headers.to,
            "subject": self.headers.subject,
            "date": self.headers.date,
            "body": self.text_plain[:max_body_chars],
            "attachments": [a.filename for a in self.attachments],
        }


# ---------------------------------------------------------------------------
# Groups and categories
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GroupItem:
    """One membership entry of a group."""

    type: GroupItemType
    value: str


@dataclass(frozen=True, slots=True)
class Group:
    """A named sender/subject grouping owned by one account."""

    id: str
    owner_id: str
    name: str
    prompt: str | None = None
    items: tuple[GroupItem, ...] = ()

    def find_matching_item(self, sender_address: str, subject: str | None = None) -> GroupItem | None:
        return find_matching_group_item(self.items, sender_address, subject)


@dataclass(frozen=True, slots=True)
class Category:
    """A sender category (e.g. 'Newsletter', 'Marketing')."""

    id: str
    owner_id: str
    name: str
    description: str | None = None


# ---------------------------------------------------------------------------
# Condition groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConditionVerdict:
    """Per-condition-group evaluation result.

    Attributes:
        condition_type: Which condition group produced the verdict
        outcome: matched, not_matched, or deferred
        reason: Human-readable explanation, surfaced to the reasoning service
    """

    condition_type: ConditionType
    outcome: ConditionOutcome
    reason: str

    def to_prompt_dict(self) -> dict[str, str]:
        return {
            "condition": self.condition_type.value,
            "outcome": self.outcome.value,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class StaticConditions:
    """Header/body matchers. Every populated field must match."""

    condition_type: ClassVar[ConditionType] = ConditionType.STATIC

    from_address: str | None = None
    to_address: str | None = None
    subject: str | None = None
    body: str | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and not value.strip():
                raise InvalidRuleStateError(
                    f"Static condition '{f.name}' cannot be an empty string; "
                    "use None to remove the matcher"
                )

    @property
    def is_populated(self) -> bool:
        return any(getattr(self, f.name) is not None for f in fields(self))

    def evaluate(self, email: EmailMessage, context: EvaluationContext) -> ConditionVerdict:
        checks: list[tuple[str, bool]] = []
        if self.from_address is not None:
            checks.append(("from", address_matches(email.sender_address, self.from_address)))
        if self.to_address is not None:
            checks.append(
                (
                    "to",
                    any(address_matches(a, self.to_address) for a in email.recipient_addresses),
                )
            )
        if self.subject is not None:
            checks.append(("subject", substring_matches(email.headers.subject, self.subject)))
        if self.body is not None:
            checks.append(("body", substring_matches(email.text_plain, self.body)))

        failed = [name for name, ok in checks if not ok]
        if failed:
            return ConditionVerdict(
                ConditionType.STATIC,
                ConditionOutcome.NOT_MATCHED,
                f"static field(s) did not match: {', '.join(failed)}",
            )
        return ConditionVerdict(
            ConditionType.STATIC,
            ConditionOutcome.MATCHED,
            f"static field(s) matched: {', '.join(name for name, _ in checks)}",
        )

    def to_prompt_dict(self) -> dict[str, str | None]:
        return {
            "from": self.from_address,
            "to": self.to_address,
            "subject": self.subject,
            "body": self.body,
        }


@dataclass(frozen=True, slots=True)
class GroupCondition:
    """Matches when the sender (or subject) hits an item of the referenced group."""

    condition_type: ClassVar[ConditionType] = ConditionType.GROUP

    group_id: str

    @property
    def is_populated(self) -> bool:
        return True

    def evaluate(self, email: EmailMessage, context: EvaluationContext) -> ConditionVerdict:
        group = context.groups.get(self.group_id)
        if group is None:
            raise NotFoundError("group", self.group_id)

        item = group.find_matching_item(email.sender_address, email.headers.subject)
        if item is None:
            return ConditionVerdict(
                ConditionType.GROUP,
                ConditionOutcome.NOT_MATCHED,
                f"no item of group '{group.name}' matches the sender or subject",
            )
        return ConditionVerdict(
            ConditionType.GROUP,
            ConditionOutcome.MATCHED,
            f"group '{group.name}' item {item.type.value}:{item.value} matches",
        )


@dataclass(frozen=True, slots=True)
class CategoryCondition:
    """INCLUDE/EXCLUDE filter on the sender's assigned category."""

    condition_type: ClassVar[ConditionType] = ConditionType.CATEGORY

    filter_type: CategoryFilterType
    categories: tuple[Category, ...]

    def __post_init__(self) -> None:
        if not self.categories:
            raise InvalidRuleStateError("Category filter needs at least one category")

    @property
    def is_populated(self) -> bool:
        return True

    @property
    def category_ids(self) -> frozenset[str]:
        return frozenset(c.id for c in self.categories)

    def evaluate(self, email: EmailMessage, context: EvaluationContext) -> ConditionVerdict:
        sender_category = context.sender_category
        in_set = sender_category is not None and sender_category.id in self.category_ids
        names = ", ".join(c.name for c in self.categories)
        current = sender_category.name if sender_category else "no category assigned"

        if self.filter_type == CategoryFilterType.INCLUDE:
            matched = in_set
        else:
            matched = not in_set

        return ConditionVerdict(
            ConditionType.CATEGORY,
            ConditionOutcome.MATCHED if matched else ConditionOutcome.NOT_MATCHED,
            f"sender category is '{current}'; filter {self.filter_type.value} [{names}]",
        )

    def to_prompt_dict(self) -> dict[str, Any]:
        return {
            "filter_type": self.filter_type.value,
            "categories": [c.name for c in self.categories],
        }


@dataclass(frozen=True, slots=True)
class AIConditions:
    """Free-text instructions. Never judged locally."""

    condition_type: ClassVar[ConditionType] = ConditionType.AI

    instructions: str

    def __post_init__(self) -> None:
        if not self.instructions or not self.instructions.strip():
            raise InvalidRuleStateError(
                "AI instructions cannot be empty; use None to remove the condition"
            )

    @property
    def is_populated(self) -> bool:
        return True

    def evaluate(self, email: EmailMessage, context: EvaluationContext) -> ConditionVerdict:
        if context.ai_verdict is None:
            return ConditionVerdict(
                ConditionType.AI,
                ConditionOutcome.DEFERRED,
                "AI instructions require external judgment",
            )
        return ConditionVerdict(
            ConditionType.AI,
            ConditionOutcome.MATCHED if context.ai_verdict else ConditionOutcome.NOT_MATCHED,
            "AI instructions resolved externally",
        )


Condition = StaticConditions | GroupCondition | CategoryCondition | AIConditions


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Rule:
    """A composite matching rule.

    Attributes:
        id: Rule identity
        owner_id: Owning account
        name: Display name, unique within the owner's rules
        conditional_operator: How populated condition groups combine
        static, group, category, ai: Optional condition groups
        enabled, automate, run_on_threads: Passthrough settings, not used
            by evaluation
    """

    id: str
    owner_id: str
    name: str
    conditional_operator: LogicalOperator = LogicalOperator.AND
    static: StaticConditions | None = None
    group: GroupCondition | None = None
    category: CategoryCondition | None = None
    ai: AIConditions | None = None
    enabled: bool = True
    automate: bool = True
    run_on_threads: bool = False

    _ORDER: ClassVar[tuple[str, ...]] = ("static", "group", "category", "ai")

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidRuleStateError("Rule name cannot be empty")
        if self.conditional_operator == LogicalOperator.AND and not self.conditions:
            raise InvalidRuleStateError(
                f"Rule '{self.name}' uses AND but has no condition groups; "
                "keep at least one of static, group, category or AI conditions"
            )

    @property
    def conditions(self) -> tuple[Condition, ...]:
        """Populated condition groups in evaluation order."""
        present = (getattr(self, name) for name in self._ORDER)
        return tuple(c for c in present if c is not None and c.is_populated)

    def to_prompt_dict(self, groups: dict[str, Group] | None = None) -> dict[str, Any]:
        """Render a JSON-safe snapshot for the reasoning context.

        Args:
            groups: Known groups by id, used to inline the group name and items
        """
        snapshot: dict[str, Any] = {
            "name": self.name,
            "conditional_operator": self.conditional_operator.value,
            "ai_instructions": self.ai.instructions if self.ai else None,
            "static": self.static.to_prompt_dict() if self.static else None,
            "group": None,
            "category_filter": self.category.to_prompt_dict() if self.category else None,
        }
        if self.group:
            group = (groups or {}).get(self.group.group_id)
            if group:
                snapshot["group"] = {
                    "name": group.name,
                    "items": [{"type": i.type.value, "value": i.value} for i in group.items],
                }
            else:
                snapshot["group"] = {"id": self.group.group_id}
        return snapshot
