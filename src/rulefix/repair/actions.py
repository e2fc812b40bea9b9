"""Repair action vocabulary.

Four closed action types, each a frozen Pydantic model discriminated by
`kind`:

- EditRule: partial replacement of a rule's name, operator, AI instructions
  and/or static matchers. Only fields that were actually supplied change;
  supplying None for ai_instructions or a static field removes it.
- AddToGroup / RemoveFromGroup: one group item, by type and value.
- ChangeSenderCategory: one sender -> category assignment.

Usage:
    from rulefix.repair.actions import parse_repair_action

    action = parse_repair_action(
        {"kind": "add_to_group", "group_id": "g1", "item_type": "from", "value": "@x.com"}
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from rulefix.core.errors import ActionValidationError
from rulefix.rules.matching import normalize_address
from rulefix.rules.models import GroupItemType, LogicalOperator


class StaticConditionPatch(BaseModel):
    """Partial static-matcher update. Accepts 'from'/'to' as aliases."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    from_address: str | None = Field(default=None, alias="from")
    to_address: str | None = Field(default=None, alias="to")
    subject: str | None = None
    body: str | None = None

    def supplied(self) -> dict[str, str | None]:
        """Fields that were explicitly present in the payload."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class _RepairActionBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    explanation: str | None = Field(
        default=None,
        description="Why the action fixes the reported problem (not part of identity)",
    )

    def identity_key(self) -> str:
        """Stable key for de-duplicating identical proposals within a session."""
        body = self.model_dump_json(exclude_unset=True, exclude={"explanation", "kind"})
        return f"{self.kind}:{body}"


class EditRule(_RepairActionBase):
    """Replace selected condition fields of one rule."""

    kind: Literal["edit_rule"] = "edit_rule"
    rule_id: str = Field(min_length=1)
    name: str | None = None
    conditional_operator: LogicalOperator | None = None
    ai_instructions: str | None = None
    static: StaticConditionPatch | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("Rule name cannot be empty")
        return v.strip() if v is not None else None

    @property
    def touches_ai(self) -> bool:
        return "ai_instructions" in self.model_fields_set

    @property
    def touches_static(self) -> bool:
        return "static" in self.model_fields_set


class _GroupItemAction(_RepairActionBase):
    group_id: str = Field(min_length=1)
    item_type: GroupItemType
    value: str

    @field_validator("item_type", mode="before")
    @classmethod
    def normalize_item_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Group item value cannot be empty")
        return v


class AddToGroup(_GroupItemAction):
    """Insert a group item if absent."""

    kind: Literal["add_to_group"] = "add_to_group"


class RemoveFromGroup(_GroupItemAction):
    """Delete a group item if present."""

    kind: Literal["remove_from_group"] = "remove_from_group"


class ChangeSenderCategory(_RepairActionBase):
    """Overwrite a sender's category assignment."""

    kind: Literal["change_sender_category"] = "change_sender_category"
    sender: str
    category_name: str

    @field_validator("sender")
    @classmethod
    def validate_sender(cls, v: str) -> str:
        address = normalize_address(v)
        if "@" not in address:
            raise ValueError(f"Sender must be an email address, got '{v}'")
        return address

    @field_validator("category_name")
    @classmethod
    def validate_category_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Category name cannot be empty")
        return v


RepairAction = Annotated[
    EditRule | AddToGroup | RemoveFromGroup | ChangeSenderCategory,
    Field(discriminator="kind"),
]

_repair_action_adapter: TypeAdapter[RepairAction] = TypeAdapter(RepairAction)


def parse_repair_action(data: dict[str, Any]) -> RepairAction:
    """Validate a raw payload into a typed repair action.

    Raises:
        ActionValidationError: If the payload shape is invalid
    """
    try:
        return _repair_action_adapter.validate_python(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ActionValidationError(f"Invalid {data.get('kind', 'repair')} action: {problems}") from e


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of applying one repair action.

    Attributes:
        action: The applied action
        changed: False when the action was a no-op (already in the target state)
        summary: Human-readable description, returned to the reasoning service
    """

    action: RepairAction
    changed: bool
    summary: str
