"""Test script for webhook parsing and tracker card updates."""

import asyncio

from localpipeline.orchestrator.card_transitions import post_comment, transition_card
from localpipeline.providers.base import CardStatus, ProviderCapability, WorkItemProvider
from localpipeline.webhooks.handlers import (
    parse_github_pr_merge,
    parse_github_webhook,
    parse_linear_webhook,
)

from conftest import RecordingProvider


def _linear_label_update(**data_overrides):
    data = {
        "identifier": "LIN-42",
        "title": "Fix login redirect",
        "description": "Blank page after sign in",
        "priority": 2,
        "state": {"name": "Todo"},
        "labels": [{"name": "agent"}, {"name": "bug"}],
        "team": {"name": "Web"},
        "url": "https://linear.app/acme/issue/LIN-42",
    }
    data.update(data_overrides)
    return {
        "type": "Issue",
        "action": "update",
        "updatedFrom": {"labelIds": ["lbl-1"]},
        "data": data,
    }


def test_parse_linear_label_update():
    item = parse_linear_webhook(_linear_label_update())

    assert item.id == "LIN-42"
    assert item.title == "Fix login redirect"
    assert item.priority == "High"
    assert item.status == "Todo"
    assert item.labels == ["agent", "bug"]
    assert item.source == "Linear"
    assert item.team == "Web"


def test_parse_linear_ignores_other_events():
    assert parse_linear_webhook({"type": "Comment", "action": "create", "data": {}}) is None

    no_label_change = _linear_label_update()
    no_label_change["updatedFrom"] = {"stateId": "s-1"}
    assert parse_linear_webhook(no_label_change) is None

    assert parse_linear_webhook(_linear_label_update(identifier=None)) is None
    assert parse_linear_webhook(_linear_label_update(priority=0)).priority is None


def test_parse_github_assignment():
    body = {
        "action": "assigned",
        "issue": {
            "number": 12,
            "title": "Add dark mode",
            "body": "Please",
            "state": "open",
            "labels": [{"name": "enhancement"}],
            "html_url": "https://github.com/acme/web/issues/12",
        },
        "repository": {"full_name": "acme/web"},
    }

    item = parse_github_webhook(body)
    assert item.id == "#12"
    assert item.source == "GitHub"
    assert item.team == "acme/web"
    assert item.labels == ["enhancement"]
    assert item.url == "https://github.com/acme/web/issues/12"

    body["action"] = "opened"
    assert parse_github_webhook(body) is None


def test_parse_github_pr_merge():
    body = {
        "action": "closed",
        "pull_request": {"merged": True, "head": {"ref": "agent/ember/LIN-42-fix-login-redirect"}},
    }
    event = parse_github_pr_merge(body)
    assert event.work_item_id == "LIN-42"
    assert event.branch == "agent/ember/LIN-42-fix-login-redirect"

    body["pull_request"]["merged"] = False
    assert parse_github_pr_merge(body) is None

    body["pull_request"] = {"merged": True, "head": {"ref": "feature/dark-mode"}}
    assert parse_github_pr_merge(body) is None


class ReadOnlyProvider(WorkItemProvider):
    name = "read-only"

    async def fetch_assigned_items(self):
        return []


class BrokenProvider(RecordingProvider):
    name = "broken"

    async def move_item(self, item_id, status):
        raise ConnectionError("tracker unavailable")

    async def add_comment(self, item_id, text):
        raise ConnectionError("tracker unavailable")


def test_transition_uses_first_capable_provider():
    async def scenario():
        working = RecordingProvider()
        moved = await transition_card(
            "LIN-42", CardStatus.IN_REVIEW, [ReadOnlyProvider(), BrokenProvider(), working]
        )
        assert moved
        assert working.moves == [("LIN-42", CardStatus.IN_REVIEW)]

        assert not await transition_card("LIN-42", CardStatus.DONE, [ReadOnlyProvider()])
        assert not await transition_card("LIN-42", CardStatus.DONE, [])

    asyncio.run(scenario())


def test_comment_failures_are_not_raised():
    async def scenario():
        assert not await post_comment("LIN-1", "failed", [BrokenProvider()])

        working = RecordingProvider()
        assert await post_comment("LIN-1", "failed", [working])
        assert working.comments == [("LIN-1", "failed")]

    asyncio.run(scenario())


def test_read_only_provider_capabilities():
    provider = ReadOnlyProvider()
    assert not provider.supports(ProviderCapability.MOVE_ITEM)
    assert RecordingProvider().supports(ProviderCapability.ADD_COMMENT)
