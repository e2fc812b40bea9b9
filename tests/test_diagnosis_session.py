"""Tests for the DiagnosisOrchestrator.

Covers the three repair scenarios (wrong group member, missing group member,
wrong sender category), rejection of invalid, unknown and duplicate tool
calls, the round limit, reasoning failures and LLM request logging, all with
a mocked Anthropic client.
"""

from __future__ import annotations

import time
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from rulefix.config_schema import AppConfig
from rulefix.core.errors import (
    DatabaseError,
    NotFoundError,
    ReasoningServiceError,
    StepLimitExceeded,
)
from rulefix.core.logging import get_correlation_id
from rulefix.db.store import DatabaseStore
from rulefix.diagnosis.reasoning import _extract_text, _serialize_content_block
from rulefix.diagnosis.session import (
    DiagnosisOrchestrator,
    DiagnosisRequest,
    SessionState,
    TerminationReason,
)
from rulefix.rules.models import EmailHeaders, EmailMessage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(text: str) -> SimpleNamespace:
    return SimpleNamespace(type="text", text=text)


def _tool_use(tool_id: str, name: str, tool_input: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", id=tool_id, name=name, input=tool_input)


def _response(*blocks: SimpleNamespace) -> SimpleNamespace:
    has_tools = any(b.type == "tool_use" for b in blocks)
    return SimpleNamespace(
        content=list(blocks),
        model="claude-test-model",
        stop_reason="tool_use" if has_tools else "end_turn",
        usage=SimpleNamespace(input_tokens=120, output_tokens=40),
    )


def _client(*responses: Any) -> MagicMock:
    client = MagicMock()
    client.messages.create.side_effect = list(responses)
    return client


def _email(sender: str, subject: str, body: str = "") -> EmailMessage:
    return EmailMessage(
        id="msg-001",
        headers=EmailHeaders(from_address=sender, to="user@test.com", subject=subject),
        text_plain=body,
    )


def _config(sample_config_dict: dict[str, Any], **diagnosis: Any) -> AppConfig:
    data = dict(sample_config_dict)
    data["diagnosis"] = {**sample_config_dict["diagnosis"], **diagnosis}
    return AppConfig(**data)


@pytest.fixture
def config(sample_config_dict: dict[str, Any]) -> AppConfig:
    return _config(sample_config_dict)


@pytest.fixture
def personal_email() -> EmailMessage:
    return _email(
        "David Smith <david@hello.com>",
        "Question about your latest post",
        "Thanks for reaching out about my article on microservices.",
    )


def _request(email: EmailMessage, matched_rule_id: str | None, report: str) -> DiagnosisRequest:
    return DiagnosisRequest(
        owner_id="user1",
        user_report=report,
        email=email,
        matched_rule_id=matched_rule_id,
        user_about="I run a software consultancy.",
        user_email="user@test.com",
    )


# ---------------------------------------------------------------------------
# Repair scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    async def test_removes_wrong_group_member(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client(
            _response(
                _text("David is a real person, not a newsletter."),
                _tool_use(
                    "toolu_1",
                    "remove_from_group",
                    {"group_name": "Newsletters", "type": "from", "value": "david@hello.com"},
                ),
            ),
            _response(_text("Removed david@hello.com from the Newsletters group.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(
            _request(personal_email, "rule-newsletter", "This is a personal email, not a newsletter")
        )

        assert result.termination == TerminationReason.COMPLETED
        assert result.error is None
        assert result.reply == "Removed david@hello.com from the Newsletters group."
        assert len(result.applied_actions) == 1
        assert result.applied_actions[0].changed
        assert result.rejected_actions == []
        assert len(result.steps) == 2
        assert result.steps[0].tool_calls[0].name == "remove_from_group"
        assert result.transcript_length == 3

        group = await seeded_store.get_group("user1", "group-newsletters")
        assert [i.value for i in group.items] == ["@substack.com"]

    async def test_adds_missing_group_member(self, seeded_store: DatabaseStore, config: AppConfig):
        email = _email("Jane <jane@convertkit.com>", "This week in design", "Unsubscribe here")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "add_to_group",
                    {"group_name": "Newsletters", "type": "from", "value": "@convertkit.com"},
                ),
            ),
            _response(_text("Added convertkit.com to Newsletters.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(
            _request(email, None, "This newsletter should have been labelled as a newsletter")
        )

        assert result.termination == TerminationReason.COMPLETED
        assert result.applied_actions[0].action.value == "@convertkit.com"
        registry_group = await seeded_store.get_group("user1", "group-newsletters")
        assert "@convertkit.com" in [i.value for i in registry_group.items]

    async def test_changes_sender_category(self, seeded_store: DatabaseStore, config: AppConfig):
        email = _email("Bob <bob@acme.com>", "Quote for 50 licenses", "Can you send pricing?")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "change_sender_category",
                    {"sender": "bob@acme.com", "category": "Sales"},
                ),
            ),
            _response(_text("Bob is now in Sales.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(
            _request(email, None, "This is a sales enquiry and should hit the Sales Rule")
        )

        assert result.termination == TerminationReason.COMPLETED
        current = await seeded_store.get_sender_category("user1", "bob@acme.com")
        assert current.name == "Sales"

    async def test_edit_rule(self, seeded_store: DatabaseStore, config: AppConfig):
        email = _email("deals@amazon.com", "Order these deals now")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "edit_rule",
                    {
                        "rule_name": "Receipts",
                        "condition": {"static": {"subject": "Your order"}},
                    },
                ),
            ),
            _response(_text("Narrowed the subject matcher.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(
            _request(email, "rule-receipts", "This is a promotion, not a receipt")
        )

        assert result.termination == TerminationReason.COMPLETED
        rule = await seeded_store.get_rule("user1", "rule-receipts")
        assert rule.static.subject == "Your order"
        assert rule.static.from_address == "@amazon.com"


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------


class TestContext:
    async def test_prompt_contains_report_rule_and_evaluation(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client(_response(_text("Nothing to change.")))
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        await orchestrator.diagnose(
            _request(personal_email, "rule-newsletter", "This is a personal email")
        )

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test-model"
        assert kwargs["max_tokens"] == 2048
        assert {t["name"] for t in kwargs["tools"]} == {
            "edit_rule",
            "add_to_group",
            "remove_from_group",
            "change_sender_category",
        }
        assert "user@test.com" in kwargs["system"]
        assert "software consultancy" in kwargs["system"]

        first_message = kwargs["messages"][0]["content"]
        assert "This is a personal email" in first_message
        assert "<matched_rule>" in first_message
        assert "Newsletter Rule" in first_message
        assert "david@hello.com" in first_message
        assert '"verdict": "matched"' in first_message
        assert "Marketing" in first_message

    async def test_no_matched_rule_evaluates_every_rule(
        self, seeded_store: DatabaseStore, config: AppConfig
    ):
        client = _client(_response(_text("Done.")))
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        await orchestrator.diagnose(_request(_email("x@y.com", "Hello"), None, "Should be VIP"))

        first_message = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "No rule matched this email." in first_message
        for name in ("Newsletter Rule", "Sales Rule", "Receipts", "VIP Rule"):
            assert f'"rule": "{name}"' in first_message

    async def test_unknown_matched_rule_raises(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client()
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        with pytest.raises(NotFoundError):
            await orchestrator.diagnose(_request(personal_email, "rule-missing", "Wrong"))
        client.messages.create.assert_not_called()


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejections:
    async def test_unknown_tool_rejected_and_later_calls_run(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client(
            _response(
                _tool_use("toolu_1", "delete_rule", {"rule_name": "Newsletter Rule"}),
                _tool_use(
                    "toolu_2",
                    "remove_from_group",
                    {"group_name": "Newsletters", "type": "from", "value": "david@hello.com"},
                ),
            ),
            _response(_text("Done.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, "rule-newsletter", "Wrong"))

        assert len(result.rejected_actions) == 1
        rejected = result.rejected_actions[0]
        assert rejected.tool_name == "delete_rule"
        assert rejected.error_type == "ActionValidationError"
        assert len(result.applied_actions) == 1

        second_call_messages = client.messages.create.call_args_list[1].kwargs["messages"]
        tool_results = second_call_messages[-1]["content"]
        assert tool_results[0]["tool_use_id"] == "toolu_1"
        assert tool_results[0]["is_error"] is True
        assert tool_results[1]["tool_use_id"] == "toolu_2"
        assert "is_error" not in tool_results[1]

    async def test_invalid_edit_rejected_rule_unchanged(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        before = await seeded_store.get_rule("user1", "rule-newsletter")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "edit_rule",
                    {"rule_name": "Newsletter Rule", "condition": {"static": {"subject": ""}}},
                ),
            ),
            _response(_text("Could not apply the fix.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, "rule-newsletter", "Wrong"))

        assert result.termination == TerminationReason.COMPLETED
        assert result.applied_actions == []
        assert result.rejected_actions[0].error_type == "InvalidRuleStateError"
        assert await seeded_store.get_rule("user1", "rule-newsletter") == before

    async def test_unknown_category_rejected(
        self, seeded_store: DatabaseStore, config: AppConfig
    ):
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "change_sender_category",
                    {"sender": "bob@acme.com", "category": "Support"},
                ),
            ),
            _response(_text("That category does not exist.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(
            _request(_email("bob@acme.com", "Help"), None, "Should be support")
        )

        assert result.rejected_actions[0].error_type == "NotFoundError"
        assert "Available: Marketing, Newsletter, Sales" in result.rejected_actions[0].reason
        current = await seeded_store.get_sender_category("user1", "bob@acme.com")
        assert current.name == "Marketing"

    async def test_duplicate_action_applied_once(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        add = {"group_name": "VIP", "type": "from", "value": "david@hello.com"}
        client = _client(
            _response(
                _tool_use("toolu_1", "add_to_group", add),
                _tool_use("toolu_2", "add_to_group", {**add, "explanation": "again"}),
            ),
            _response(_tool_use("toolu_3", "add_to_group", add)),
            _response(_text("Done.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "David is a VIP"))

        assert len(result.applied_actions) == 1
        assert [r.error_type for r in result.rejected_actions] == [
            "ActionValidationError",
            "ActionValidationError",
        ]
        assert all("Duplicate" in r.reason for r in result.rejected_actions)

        logs = await seeded_store.get_action_logs(owner_id="user1", action_type="add_to_group")
        assert len(logs) == 1
        assert logs[0].session_id == result.session_id


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTermination:
    async def test_step_limit(
        self,
        seeded_store: DatabaseStore,
        sample_config_dict: dict[str, Any],
        personal_email: EmailMessage,
    ):
        config = _config(sample_config_dict, max_rounds=2)
        client = _client(
            _response(
                _text("Trying one fix."),
                _tool_use(
                    "toolu_1",
                    "add_to_group",
                    {"group_name": "VIP", "type": "from", "value": "@one.com"},
                ),
            ),
            _response(
                _text("Trying another fix."),
                _tool_use(
                    "toolu_2",
                    "add_to_group",
                    {"group_name": "VIP", "type": "from", "value": "@two.com"},
                ),
            ),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert result.termination == TerminationReason.STEP_LIMIT
        assert isinstance(result.error, StepLimitExceeded)
        assert result.error.rounds == 2
        assert len(result.applied_actions) == 2
        assert result.reply == "Trying another fix."
        assert client.messages.create.call_count == 2

        group = await seeded_store.get_group("user1", "group-vip")
        assert {"@one.com", "@two.com"} <= {i.value for i in group.items}

    async def test_reasoning_error_keeps_applied_actions(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "remove_from_group",
                    {"group_name": "Newsletters", "type": "from", "value": "david@hello.com"},
                ),
            ),
            anthropic.APIConnectionError(request=request),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, "rule-newsletter", "Wrong"))

        assert result.termination == TerminationReason.REASONING_ERROR
        assert isinstance(result.error, ReasoningServiceError)
        assert len(result.applied_actions) == 1
        assert result.reply == ""
        group = await seeded_store.get_group("user1", "group-newsletters")
        assert "david@hello.com" not in [i.value for i in group.items]

    async def test_invalid_api_response_keeps_applied_actions(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "remove_from_group",
                    {"group_name": "Newsletters", "type": "from", "value": "david@hello.com"},
                ),
            ),
            anthropic.APIResponseValidationError(
                response=httpx.Response(200, request=request), body=None
            ),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, "rule-newsletter", "Wrong"))

        assert result.termination == TerminationReason.REASONING_ERROR
        assert isinstance(result.error, ReasoningServiceError)
        assert isinstance(result.error.__cause__, anthropic.APIResponseValidationError)
        assert len(result.applied_actions) == 1
        assert result.states[-1] == SessionState.TERMINATED

    async def test_store_failure_while_applying_keeps_applied_actions(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        async def locked_database(*args: Any, **kwargs: Any) -> bool:
            raise DatabaseError("database is locked")

        seeded_store.set_sender_category = locked_database  # type: ignore[method-assign]
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "remove_from_group",
                    {"group_name": "Newsletters", "type": "from", "value": "david@hello.com"},
                ),
                _tool_use(
                    "toolu_2",
                    "change_sender_category",
                    {"sender": "david@hello.com", "category": "Sales"},
                ),
            ),
            _response(_text("unreachable")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, "rule-newsletter", "Wrong"))

        assert result.termination == TerminationReason.STORE_ERROR
        assert isinstance(result.error, DatabaseError)
        assert len(result.applied_actions) == 1
        assert result.applied_actions[0].action.kind == "remove_from_group"
        assert result.states[-1] == SessionState.TERMINATED
        assert client.messages.create.call_count == 1
        group = await seeded_store.get_group("user1", "group-newsletters")
        assert "david@hello.com" not in [i.value for i in group.items]

    async def test_reasoning_timeout(
        self,
        seeded_store: DatabaseStore,
        sample_config_dict: dict[str, Any],
        personal_email: EmailMessage,
    ):
        config = _config(sample_config_dict, request_timeout_seconds=0.05)
        client = MagicMock()
        client.messages.create.side_effect = lambda **kwargs: time.sleep(0.5)
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert result.termination == TerminationReason.REASONING_ERROR
        assert "timed out" in str(result.error)
        assert result.steps == []

    async def test_state_history(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "add_to_group",
                    {"group_name": "VIP", "type": "from", "value": "@one.com"},
                ),
            ),
            _response(_text("Done.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert result.states == [
            SessionState.INIT,
            SessionState.REASONING,
            SessionState.ACTIONS_PROPOSED,
            SessionState.VALIDATING,
            SessionState.APPLIED,
            SessionState.REASONING,
            SessionState.TERMINATED,
        ]
        assert result.changed


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestLLMLogging:
    async def test_each_round_logged_under_session_id(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        client = _client(
            _response(
                _tool_use(
                    "toolu_1",
                    "add_to_group",
                    {"group_name": "VIP", "type": "from", "value": "@one.com"},
                ),
            ),
            _response(_text("Done.")),
        )
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert await seeded_store.count_llm_requests(result.session_id) == 2
        assert get_correlation_id() is None

    async def test_logging_disabled(
        self,
        seeded_store: DatabaseStore,
        sample_config_dict: dict[str, Any],
        personal_email: EmailMessage,
    ):
        config = AppConfig(**{**sample_config_dict, "llm_logging": {"enabled": False}})
        client = _client(_response(_text("Done.")))
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert await seeded_store.count_llm_requests() == 0

    async def test_logging_failure_does_not_abort(
        self, seeded_store: DatabaseStore, config: AppConfig, personal_email: EmailMessage
    ):
        async def failing_log(**kwargs: Any) -> int:
            raise DatabaseError("disk full")

        seeded_store.log_llm_request = failing_log  # type: ignore[method-assign]
        client = _client(_response(_text("Done.")))
        orchestrator = DiagnosisOrchestrator(client, seeded_store, config)

        result = await orchestrator.diagnose(_request(personal_email, None, "Wrong"))

        assert result.termination == TerminationReason.COMPLETED
        assert result.reply == "Done."


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


class TestResponseHelpers:
    def test_extract_text_joins_text_blocks(self):
        response = _response(_text("one"), _tool_use("t", "edit_rule", {}), _text("two"))
        assert _extract_text(response) == "one\ntwo"

    def test_serialize_content_blocks(self):
        assert _serialize_content_block(_text("hi")) == {"type": "text", "text": "hi"}
        assert _serialize_content_block(_tool_use("t1", "add_to_group", {"a": 1})) == {
            "type": "tool_use",
            "id": "t1",
            "name": "add_to_group",
            "input": {"a": 1},
        }
        assert _serialize_content_block(SimpleNamespace(type="thinking")) == {"type": "thinking"}
