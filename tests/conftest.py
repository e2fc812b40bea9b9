"""Pytest fixtures and configuration for rulefix tests.

Provides common fixtures for configuration, database, and a seeded set of
rules, groups and categories shared by the repair and diagnosis tests.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from rulefix.config import reset_config
from rulefix.config_schema import AppConfig
from rulefix.core.logging import set_correlation_id
from rulefix.db.store import DatabaseStore
from rulefix.rules.models import (
    AIConditions,
    Category,
    CategoryCondition,
    CategoryFilterType,
    Group,
    GroupCondition,
    GroupItem,
    GroupItemType,
    LogicalOperator,
    Rule,
    StaticConditions,
)

OWNER = "user1"

MARKETING = Category(id="cat-marketing", owner_id=OWNER, name="Marketing")
SALES = Category(id="cat-sales", owner_id=OWNER, name="Sales", description="Sales related emails")
NEWSLETTER = Category(id="cat-newsletter", owner_id=OWNER, name="Newsletter")


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton and correlation id around each test."""
    reset_config()
    set_correlation_id(None)
    yield
    reset_config()
    set_correlation_id(None)


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

models:
  diagnosis: "claude-test-model"

diagnosis:
  max_rounds: 5
  max_tokens: 2048
  request_timeout_seconds: 30

database:
  path: "data/test.db"
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "models": {"diagnosis": "claude-test-model"},
        "diagnosis": {
            "max_rounds": 5,
            "max_tokens": 2048,
            "request_timeout_seconds": 30,
        },
        "database": {"path": "data/test.db"},
        "logging": {"level": "DEBUG", "json_output": False},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the RULEFIX_CONFIG_PATH environment variable."""
    old_value = os.environ.get("RULEFIX_CONFIG_PATH")
    os.environ["RULEFIX_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["RULEFIX_CONFIG_PATH"]
    else:
        os.environ["RULEFIX_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized, empty DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
async def seeded_store(store: DatabaseStore) -> DatabaseStore:
    """Store with three categories, two groups and four rules for OWNER.

    - Newsletters group: '@substack.com', 'david@hello.com' (a mistake)
    - Newsletter Rule: AND [group Newsletters]
    - Sales Rule: AND [category INCLUDE Sales]
    - Receipts: OR [static from @amazon.com + subject 'Order', AI instructions]
    - bob@acme.com is categorized as Marketing
    """
    for category in (MARKETING, SALES, NEWSLETTER):
        await store.save_category(category)

    await store.save_group(
        Group(
            id="group-newsletters",
            owner_id=OWNER,
            name="Newsletters",
            items=(
                GroupItem(GroupItemType.FROM, "@substack.com"),
                GroupItem(GroupItemType.FROM, "david@hello.com"),
            ),
        )
    )
    await store.save_group(
        Group(
            id="group-vip",
            owner_id=OWNER,
            name="VIP",
            items=(GroupItem(GroupItemType.FROM, "ceo@partner.com"),),
        )
    )

    await store.save_rule(
        Rule(
            id="rule-newsletter",
            owner_id=OWNER,
            name="Newsletter Rule",
            group=GroupCondition("group-newsletters"),
        )
    )
    await store.save_rule(
        Rule(
            id="rule-sales",
            owner_id=OWNER,
            name="Sales Rule",
            category=CategoryCondition(CategoryFilterType.INCLUDE, (SALES,)),
        )
    )
    await store.save_rule(
        Rule(
            id="rule-receipts",
            owner_id=OWNER,
            name="Receipts",
            conditional_operator=LogicalOperator.OR,
            static=StaticConditions(from_address="@amazon.com", subject="Order"),
            ai=AIConditions("Order confirmations and receipts"),
        )
    )
    await store.save_rule(
        Rule(
            id="rule-vip",
            owner_id=OWNER,
            name="VIP Rule",
            group=GroupCondition("group-vip"),
        )
    )

    await store.set_sender_category(OWNER, "bob@acme.com", MARKETING.id)
    return store
