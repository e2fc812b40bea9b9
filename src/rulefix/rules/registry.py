"""Group membership and sender-category registry.

Groups and the sender -> category mapping live outside rules; rules only
reference them. Every call takes the owner_id explicitly.

Membership and sender-category writes are idempotent: adding an existing
item, removing a missing one, or re-assigning the current category changes
nothing and reports False.

Usage:
    from rulefix.rules.registry import GroupCategoryRegistry

    registry = GroupCategoryRegistry(store)
    if await registry.is_member("user1", group_id, "david@hello.com"):
        ...
    await registry.set_sender_category("user1", "bob@acme.com", "Sales")
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from rulefix.core.errors import NotFoundError
from rulefix.core.logging import get_logger
from rulefix.rules.evaluator import EvaluationContext
from rulefix.rules.matching import normalize_address

if TYPE_CHECKING:
    from rulefix.db.store import DatabaseStore
    from rulefix.rules.models import Category, Group, GroupItemType, Rule

logger = get_logger(__name__)


class GroupCategoryRegistry:
    """Reads and mutates group membership and sender categories."""

    def __init__(self, store: DatabaseStore) -> None:
        self._store = store

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def get_group(self, owner_id: str, group_id: str) -> Group:
        """Get a group by id.

        Raises:
            NotFoundError: If the owner has no such group
        """
        group = await self._store.get_group(owner_id, group_id)
        if group is None:
            raise NotFoundError("group", group_id)
        return group

    async def find_group_by_name(self, owner_id: str, name: str) -> Group:
        """Get a group by name.

        Raises:
            NotFoundError: If the owner has no group with that name
        """
        group = await self._store.get_group_by_name(owner_id, name)
        if group is None:
            raise NotFoundError("group", name)
        return group

    async def is_member(
        self,
        owner_id: str,
        group_id: str,
        sender_address: str,
        subject: str | None = None,
    ) -> bool:
        """Check whether a sender (or subject) matches any item of a group."""
        group = await self.get_group(owner_id, group_id)
        return group.find_matching_item(sender_address, subject) is not None

    async def add_member(
        self,
        owner_id: str,
        group_id: str,
        item_type: GroupItemType,
        value: str,
    ) -> bool:
        """Add an item to a group. Returns False if it was already present."""
        await self.get_group(owner_id, group_id)
        added = await self._store.add_group_item(group_id, item_type, value)
        logger.info(
            "group_member_added" if added else "group_member_already_present",
            owner_id=owner_id,
            group_id=group_id,
            item_type=item_type.value,
        )
        return added

    async def remove_member(
        self,
        owner_id: str,
        group_id: str,
        item_type: GroupItemType,
        value: str,
    ) -> bool:
        """Remove an item from a group. Returns False if it was not present."""
        await self.get_group(owner_id, group_id)
        removed = await self._store.remove_group_item(group_id, item_type, value)
        logger.info(
            "group_member_removed" if removed else "group_member_not_present",
            owner_id=owner_id,
            group_id=group_id,
            item_type=item_type.value,
        )
        return removed

    # -------------------------------------------------------------------------
    # Categories
    # -------------------------------------------------------------------------

    async def list_categories(self, owner_id: str) -> list[Category]:
        return await self._store.list_categories(owner_id)

    async def get_category(self, owner_id: str, category_id: str) -> Category:
        """Get a category by id.

        Raises:
            NotFoundError: If the owner has no such category
        """
        category = await self._store.get_category(owner_id, category_id)
        if category is None:
            raise NotFoundError("category", category_id)
        return category

    async def find_category_by_name(self, owner_id: str, name: str) -> Category:
        """Get a category by name (case-insensitive).

        Raises:
            NotFoundError: If the owner has no category with that name
        """
        category = await self._store.get_category_by_name(owner_id, name)
        if category is None:
            available = [c.name for c in await self._store.list_categories(owner_id)]
            raise NotFoundError(
                "category",
                name,
                f"Category '{name}' not found. Available: {', '.join(available) or 'none'}",
            )
        return category

    async def get_sender_category(self, owner_id: str, sender: str) -> Category | None:
        return await self._store.get_sender_category(owner_id, normalize_address(sender))

    async def set_sender_category(self, owner_id: str, sender: str, category_name: str) -> bool:
        """Assign a category (by name) to a sender, overwriting any prior one.

        Returns:
            True if the assignment changed

        Raises:
            NotFoundError: If the category name is unknown
        """
        category = await self.find_category_by_name(owner_id, category_name)
        changed = await self._store.set_sender_category(
            owner_id, normalize_address(sender), category.id
        )
        logger.info(
            "sender_category_set" if changed else "sender_category_unchanged",
            owner_id=owner_id,
            category=category.name,
        )
        return changed

    # -------------------------------------------------------------------------
    # Evaluation context
    # -------------------------------------------------------------------------

    async def build_evaluation_context(
        self,
        owner_id: str,
        sender: str,
        rules: Iterable[Rule],
    ) -> EvaluationContext:
        """Load the sender category and every group the given rules reference.

        Raises:
            NotFoundError: If a rule references a group that does not exist
        """
        group_ids = sorted({r.group.group_id for r in rules if r.group is not None})
        groups = await self._store.get_groups(owner_id, group_ids)
        missing = [gid for gid in group_ids if gid not in groups]
        if missing:
            raise NotFoundError("group", missing[0])

        return EvaluationContext(
            sender_category=await self.get_sender_category(owner_id, sender),
            groups=groups,
        )
