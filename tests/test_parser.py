"""Tests for turning instructions into workflow steps."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from openai import OpenAIError

from stepflow.service.errors import ValidationError
from stepflow.service.parser import (
    WorkflowParser,
    detect_workflow_patterns,
    duration_ms,
    extract_time,
)
from stepflow.service.templates import get_template, list_templates


class FakeCompletions:
    def __init__(self, content=None, exc=None):
        self.content = content
        self.exc = exc
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.exc:
            raise self.exc
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeLLM:
    def __init__(self, content=None, exc=None):
        self.chat = SimpleNamespace(completions=FakeCompletions(content, exc))
        self.closed = False

    async def close(self):
        self.closed = True


def test_email_then_slack_are_chained():
    parsed = detect_workflow_patterns(
        "Send an email to ops@example.com subject: Outage, then post to slack channel #infra"
    )
    assert [step["id"] for step in parsed.steps] == ["step-0", "step-1"]
    email, slack = parsed.steps
    assert email["app"] == "gmail"
    assert email["parameters"]["to"] == "ops@example.com"
    assert email["parameters"]["subject"] == "Outage"
    assert "depends_on" not in email
    assert slack["depends_on"] == ["step-0"]
    assert slack["parameters"]["channel"] == "infra"
    assert parsed.required_apps == ["gmail", "slack"]


def test_wait_becomes_delay_step():
    parsed = detect_workflow_patterns("Create an issue in github title: Flaky CI and wait 3 hours")
    issue, wait = parsed.steps
    assert issue["parameters"]["title"] == "Flaky CI and wait 3 hours"
    assert wait["type"] == "delay"
    assert wait["name"] == "Wait 3 hours"
    assert wait["parameters"] == {"duration": 3 * 3_600_000}
    assert parsed.required_apps == ["github"]


def test_meeting_extracts_time_and_duration():
    parsed = detect_workflow_patterns("Book a meeting at 3pm for 30 minutes")
    [meeting] = parsed.steps
    assert meeting["app"] == "googlecalendar"
    assert meeting["parameters"]["startTime"] == "3:00 pm"
    assert meeting["parameters"]["duration"] == "30m"


def test_unmatched_instruction_has_no_steps():
    parsed = detect_workflow_patterns("Summarize the quarterly numbers")
    assert parsed.steps == []
    assert parsed.description == "Summarize the quarterly numbers"


def test_helpers():
    assert duration_ms("2", "seconds") == 2000
    assert duration_ms("1", "day") == 86_400_000
    assert extract_time("standup 09:15") == "09:15 am"


@pytest.mark.asyncio
async def test_patterns_skip_the_llm():
    llm = FakeLLM(content="{}")
    parsed = await WorkflowParser(llm).parse("post to slack")
    assert parsed.source == "patterns"
    assert llm.chat.completions.requests == []


@pytest.mark.asyncio
async def test_llm_fallback_normalizes_steps():
    content = json.dumps(
        {
            "name": "Quarterly report",
            "steps": [
                {"type": "action", "name": "Fetch", "app": "sheets", "action": "READ"},
                {"id": "mail", "name": "Mail", "app": "gmail", "action": "SEND", "dependsOn": ["step-0"]},
            ],
        }
    )
    llm = FakeLLM(content=content)
    parsed = await WorkflowParser(llm, model="gpt-test").parse(
        "Summarize the quarterly numbers", ["sheets", "gmail"]
    )

    assert parsed.source == "llm"
    assert parsed.name == "Quarterly report"
    assert parsed.description == "Summarize the quarterly numbers"
    assert [step["id"] for step in parsed.steps] == ["step-0", "mail"]
    assert parsed.steps[1]["depends_on"] == ["step-0"]
    assert parsed.required_apps == ["gmail", "sheets"]
    [request] = llm.chat.completions.requests
    assert request["model"] == "gpt-test"
    assert request["response_format"] == {"type": "json_object"}
    assert "sheets, gmail" in request["messages"][0]["content"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "llm",
    [
        FakeLLM(content="not json"),
        FakeLLM(content=json.dumps({"steps": [{"type": "condition"}]})),
        FakeLLM(exc=OpenAIError("quota exceeded")),
    ],
)
async def test_llm_problems_fall_back_to_patterns(llm):
    parsed = await WorkflowParser(llm).parse("Summarize the quarterly numbers")
    assert parsed.source == "patterns"
    assert parsed.steps == []


@pytest.mark.asyncio
async def test_blank_instruction_rejected():
    with pytest.raises(ValidationError, match="instruction is required"):
        await WorkflowParser().parse("   ")


@pytest.mark.asyncio
async def test_close_releases_llm():
    llm = FakeLLM()
    await WorkflowParser(llm).close()
    assert llm.closed is True


def test_templates_are_copied_on_read():
    template = get_template("gmail-triage")
    steps = template.to_dict()["steps"]
    steps[0]["parameters"]["query"] = "changed"
    assert get_template("gmail-triage").steps[0]["parameters"]["query"] == "is:unread"
    assert get_template("missing") is None
    assert len(list_templates()) == 3
