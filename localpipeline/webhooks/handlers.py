"""Parsers for tracker webhook payloads."""

from typing import Any, Optional

from pydantic import BaseModel

from localpipeline.app.models.work_item import WorkItem
from localpipeline.git.branch_utils import work_item_id_from_branch

LINEAR_PRIORITIES: dict[int, str] = {
    1: "Urgent",
    2: "High",
    3: "Medium",
    4: "Low",
}


class PrMergeEvent(BaseModel):
    """A merged pull request opened by an agent."""
    work_item_id: str
    branch: str


def _label_names(labels: Any) -> list[str]:
    if not isinstance(labels, list):
        return []
    return [l["name"] for l in labels if isinstance(l, dict) and l.get("name")]


def parse_linear_webhook(body: dict[str, Any]) -> Optional[WorkItem]:
    """
    Work item for a Linear issue whose labels changed.

    Linear has no usable assignment webhook, so label changes are the trigger.
    """
    if body.get("type") != "Issue" or body.get("action") != "update":
        return None
    if not (body.get("updatedFrom") or {}).get("labelIds"):
        return None

    data = body.get("data") or {}
    if not data.get("identifier") or not data.get("title"):
        return None

    return WorkItem(
        id=data["identifier"],
        title=data["title"],
        description=data.get("description"),
        status=(data.get("state") or {}).get("name"),
        priority=LINEAR_PRIORITIES.get(data.get("priority") or 0),
        labels=_label_names(data.get("labels")),
        source="Linear",
        team=(data.get("team") or {}).get("name"),
        url=data.get("url"),
    )


def parse_github_webhook(body: dict[str, Any]) -> Optional[WorkItem]:
    """Work item for a GitHub issue that was assigned or labeled."""
    if body.get("action") not in ("assigned", "labeled"):
        return None

    issue = body.get("issue") or {}
    if not issue.get("number") or not issue.get("title"):
        return None

    return WorkItem(
        id=f"#{issue['number']}",
        title=issue["title"],
        description=issue.get("body"),
        status=issue.get("state"),
        labels=_label_names(issue.get("labels")),
        source="GitHub",
        team=(body.get("repository") or {}).get("full_name"),
        url=issue.get("html_url"),
    )


def parse_github_pr_merge(body: dict[str, Any]) -> Optional[PrMergeEvent]:
    """
    Detect a merged agent pull request.

    The work item id is recovered from the head branch
    (``agent/<name>/<id>-<slug>``); see ``work_item_id_from_branch``.
    """
    if body.get("action") != "closed":
        return None

    pull_request = body.get("pull_request") or {}
    if not pull_request.get("merged"):
        return None

    branch = (pull_request.get("head") or {}).get("ref")
    if not branch:
        return None

    work_item_id = work_item_id_from_branch(branch)
    if work_item_id is None:
        return None
    return PrMergeEvent(work_item_id=work_item_id, branch=branch)
