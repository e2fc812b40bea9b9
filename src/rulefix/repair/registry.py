"""Validation and application of repair actions.

Each action touches exactly one rule, one group, or one sender-category
mapping. Applies are serialized per owner with an asyncio.Lock that is held
only for the validate + write of a single action, never across a reasoning
round. Rejected actions leave state untouched.

Usage:
    from rulefix.repair.registry import RepairActionRegistry

    actions = RepairActionRegistry(store)
    outcome = await actions.apply("user1", RemoveFromGroup(
        group_id="g1", item_type="from", value="david@hello.com",
    ))
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING

from rulefix.core.errors import InvalidRuleStateError, NotFoundError
from rulefix.core.logging import get_logger
from rulefix.repair.actions import (
    ActionOutcome,
    AddToGroup,
    ChangeSenderCategory,
    EditRule,
    RemoveFromGroup,
    RepairAction,
)
from rulefix.rules.models import AIConditions, Rule, StaticConditions
from rulefix.rules.registry import GroupCategoryRegistry

if TYPE_CHECKING:
    from rulefix.db.store import DatabaseStore

logger = get_logger(__name__)


def build_edited_rule(rule: Rule, action: EditRule) -> Rule:
    """Return the rule with the supplied fields of an EditRule replaced.

    Construction re-runs the rule's own validation.

    Raises:
        InvalidRuleStateError: If the result violates a rule invariant
    """
    changes: dict[str, object] = {}

    if action.name is not None:
        changes["name"] = action.name
    if action.conditional_operator is not None:
        changes["conditional_operator"] = action.conditional_operator

    if action.touches_ai:
        changes["ai"] = (
            AIConditions(action.ai_instructions) if action.ai_instructions is not None else None
        )

    if action.touches_static:
        if action.static is None:
            changes["static"] = None
        else:
            merged = replace(rule.static or StaticConditions(), **action.static.supplied())
            changes["static"] = merged if merged.is_populated else None

    return replace(rule, **changes)


class RepairActionRegistry:
    """Applies the closed repair-action vocabulary with per-owner locking."""

    def __init__(
        self,
        store: DatabaseStore,
        registry: GroupCategoryRegistry | None = None,
    ) -> None:
        self._store = store
        self._registry = registry or GroupCategoryRegistry(store)

    def lock_for(self, owner_id: str) -> asyncio.Lock:
        """Per-owner write lock, owned by the store and shared across registries."""
        return self._store.owner_lock(owner_id)

    async def validate(self, owner_id: str, action: RepairAction) -> None:
        """Check referential integrity and invariants without writing.

        Raises:
            NotFoundError: Unknown rule, group or category
            InvalidRuleStateError: EditRule would break a rule invariant
        """
        if isinstance(action, EditRule):
            await self._prepare_edit(owner_id, action)
        elif isinstance(action, (AddToGroup, RemoveFromGroup)):
            await self._registry.get_group(owner_id, action.group_id)
        elif isinstance(action, ChangeSenderCategory):
            await self._registry.find_category_by_name(owner_id, action.category_name)

    async def apply(
        self,
        owner_id: str,
        action: RepairAction,
        triggered_by: str = "diagnosis",
    ) -> ActionOutcome:
        """Validate and apply one action atomically for its owner.

        Raises:
            NotFoundError: Unknown rule, group or category
            InvalidRuleStateError: EditRule would break a rule invariant
        """
        async with self.lock_for(owner_id):
            if isinstance(action, EditRule):
                outcome = await self._apply_edit(owner_id, action)
            elif isinstance(action, AddToGroup):
                changed = await self._registry.add_member(
                    owner_id, action.group_id, action.item_type, action.value
                )
                outcome = ActionOutcome(
                    action,
                    changed,
                    f"Added {action.item_type.value} '{action.value}' to group"
                    if changed
                    else f"{action.item_type.value} '{action.value}' was already in the group",
                )
            elif isinstance(action, RemoveFromGroup):
                changed = await self._registry.remove_member(
                    owner_id, action.group_id, action.item_type, action.value
                )
                outcome = ActionOutcome(
                    action,
                    changed,
                    f"Removed {action.item_type.value} '{action.value}' from group"
                    if changed
                    else f"{action.item_type.value} '{action.value}' was not in the group",
                )
            else:
                changed = await self._registry.set_sender_category(
                    owner_id, action.sender, action.category_name
                )
                outcome = ActionOutcome(
                    action,
                    changed,
                    f"Set category of {action.sender} to '{action.category_name}'"
                    if changed
                    else f"{action.sender} is already in category '{action.category_name}'",
                )

            if outcome.changed:
                await self._store.log_action(
                    action_type=action.kind,
                    owner_id=owner_id,
                    details=action.model_dump(mode="json", exclude_unset=True),
                    triggered_by=triggered_by,
                )

        logger.info(
            "repair_action_applied",
            kind=action.kind,
            owner_id=owner_id,
            changed=outcome.changed,
        )
        return outcome

    async def _prepare_edit(self, owner_id: str, action: EditRule) -> tuple[Rule, Rule]:
        """Load the rule and build its edited form.

        Returns:
            Tuple of (current rule, edited rule)
        """
        current = await self._store.get_rule(owner_id, action.rule_id)
        if current is None:
            raise NotFoundError("rule", action.rule_id)

        edited = build_edited_rule(current, action)

        if edited.name != current.name:
            clash = await self._store.get_rule_by_name(owner_id, edited.name)
            if clash is not None and clash.id != current.id:
                raise InvalidRuleStateError(
                    f"Cannot rename rule '{current.name}' to '{edited.name}': "
                    "another rule already uses that name"
                )

        return current, edited

    async def _apply_edit(self, owner_id: str, action: EditRule) -> ActionOutcome:
        current, edited = await self._prepare_edit(owner_id, action)
        if edited == current:
            return ActionOutcome(action, False, f"Rule '{current.name}' already matches the edit")

        await self._store.save_rule(edited)
        return ActionOutcome(action, True, f"Updated rule '{edited.name}'")
