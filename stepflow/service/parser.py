"""Turn a plain-language instruction into workflow steps.

Known phrasings ("send an email to ...", "post to slack", "wait 10 minutes")
are detected with regular expressions. When nothing matches and an LLM client
is configured, the model is asked for the step list as a JSON object; any
failure there falls back to the (empty) pattern result.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from openai import OpenAIError

from stepflow.logging import get_logger
from stepflow.service.errors import ValidationError
from stepflow.service.workflows import check_steps
from stepflow.storage.models import STEP_KINDS, utcnow

logger = get_logger(__name__)

_SEND_EMAIL = re.compile(
    r"(?:send|write|compose)\s+(?:an\s+)?(?:email|mail|message)\s+(?:to\s+)?([^\s,]+)?",
    re.IGNORECASE,
)
_CREATE_ISSUE = re.compile(
    r"(?:create|add|open)\s+(?:an\s+)?(?:issue|ticket)\s+(?:in|on|for)\s+github",
    re.IGNORECASE,
)
_POST_SLACK = re.compile(r"(?:post|send|message)\s+(?:to\s+)?slack", re.IGNORECASE)
_SCHEDULE_MEETING = re.compile(
    r"(?:schedule|create|book)\s+(?:a\s+)?(?:meeting|event|appointment)", re.IGNORECASE
)
_WAIT = re.compile(
    r"(?:wait|delay|pause)\s+(?:for\s+)?(\d+)\s*(seconds?|minutes?|hours?|days?)",
    re.IGNORECASE,
)

_UNIT_MS = {"second": 1000, "minute": 60_000, "hour": 3_600_000, "day": 86_400_000}

SYSTEM_PROMPT = """You are a workflow parser that converts natural language instructions into structured multi-step workflows for a tool-based automation system.

Available Apps: {apps}

Return ONLY a valid JSON object with this exact structure:
{{
  "name": "Workflow name",
  "description": "Brief description",
  "steps": [
    {{
      "id": "step-0",
      "type": "action",
      "name": "Step name",
      "description": "What this step does",
      "app": "app_name",
      "action": "action_name",
      "parameters": {{}},
      "depends_on": []
    }}
  ],
  "required_apps": ["app1", "app2"]
}}

Rules:
- Each step must have a unique id (step-0, step-1, etc.)
- Step type is "action" or "delay"; a delay takes parameters.duration in milliseconds
- Use depends_on to chain steps
- Extract parameters from the instruction
- Return ONLY JSON, no markdown, no explanations"""


@dataclass
class ParsedWorkflow:
    name: str
    description: str
    steps: List[dict] = field(default_factory=list)
    required_apps: List[str] = field(default_factory=list)
    source: str = "patterns"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "steps": self.steps,
            "required_apps": self.required_apps,
            "source": self.source,
        }


def _search(pattern: str, text: str) -> Optional[re.Match]:
    return re.search(pattern, text, re.IGNORECASE)


def extract_subject(text: str) -> str:
    match = _search(r"subject[:\s]+([^\n,]+)", text)
    return match.group(1).strip() if match else "No Subject"


def extract_body(text: str) -> str:
    match = _search(r"body[:\s]+([^\n]+)", text) or _search(r"content[:\s]+([^\n]+)", text)
    return match.group(1).strip() if match else text


def extract_title(text: str) -> str:
    match = _search(r"title[:\s]+([^\n,]+)", text)
    return match.group(1).strip() if match else "Untitled"


def extract_channel(text: str) -> Optional[str]:
    match = _search(r"(?:channel|#)([^\s,]+)", text)
    return match.group(1).strip() if match else None


def extract_time(text: str) -> str:
    match = _search(r"(\d{1,2}):(\d{2})\s*(am|pm)?", text) or _search(
        r"at\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", text
    )
    if match:
        hour, minute, meridiem = match.groups()
        return f"{hour}:{minute or '00'} {meridiem or 'am'}"
    return utcnow().isoformat()


def extract_duration(text: str) -> Optional[str]:
    match = _search(r"(\d+)\s*(minutes?|hours?|days?)", text)
    return f"{match.group(1)}{match.group(2)[0].lower()}" if match else None


def duration_ms(value: str, unit: str) -> int:
    return int(value) * _UNIT_MS[unit.lower().rstrip("s")]


def workflow_name(instruction: str) -> str:
    words = instruction.split(" ")[:5]
    return " ".join(words) + ("..." if len(instruction) > 30 else "")


def detect_workflow_patterns(instruction: str) -> ParsedWorkflow:
    """Build steps for the phrasings we recognise; each step follows the previous one."""
    steps: List[dict] = []
    required_apps: List[str] = []

    def add(step: dict, app: Optional[str] = None) -> None:
        step = {"id": f"step-{len(steps)}", **step}
        if steps:
            step["depends_on"] = [steps[-1]["id"]]
        steps.append(step)
        if app and app not in required_apps:
            required_apps.append(app)

    email = _SEND_EMAIL.search(instruction)
    if email:
        recipient = email.group(1)
        add(
            {
                "type": "action",
                "name": "Send Email",
                "description": f"Send email to {recipient}" if recipient else "Send email",
                "app": "gmail",
                "action": "send_email",
                "parameters": {
                    "to": recipient or "{{user.email}}",
                    "subject": extract_subject(instruction),
                    "body": extract_body(instruction),
                },
            },
            "gmail",
        )

    if _CREATE_ISSUE.search(instruction):
        add(
            {
                "type": "action",
                "name": "Create GitHub Issue",
                "description": "Create issue in GitHub repository",
                "app": "github",
                "action": "create_issue",
                "parameters": {
                    "title": extract_title(instruction),
                    "body": extract_body(instruction),
                },
            },
            "github",
        )

    if _POST_SLACK.search(instruction):
        add(
            {
                "type": "action",
                "name": "Post to Slack",
                "description": "Send message to Slack channel",
                "app": "slack",
                "action": "send_message",
                "parameters": {
                    "channel": extract_channel(instruction) or "#general",
                    "text": extract_body(instruction),
                },
            },
            "slack",
        )

    if _SCHEDULE_MEETING.search(instruction):
        add(
            {
                "type": "action",
                "name": "Schedule Meeting",
                "description": "Create calendar event",
                "app": "googlecalendar",
                "action": "create_event",
                "parameters": {
                    "title": extract_title(instruction),
                    "startTime": extract_time(instruction),
                    "duration": extract_duration(instruction) or "1h",
                },
            },
            "googlecalendar",
        )

    wait = _WAIT.search(instruction)
    if wait:
        amount, unit = wait.group(1), wait.group(2).lower()
        add(
            {
                "type": "delay",
                "name": f"Wait {amount} {unit}",
                "description": f"Delay execution for {amount} {unit}",
                "parameters": {"duration": duration_ms(amount, unit)},
            }
        )

    return ParsedWorkflow(
        name=workflow_name(instruction),
        description=instruction,
        steps=steps,
        required_apps=required_apps,
    )


def normalize_steps(raw_steps: Any) -> List[dict]:
    """Coerce model-produced steps into the stored step shape."""
    if not isinstance(raw_steps, list):
        raise ValidationError("steps must be a list")
    steps: List[dict] = []
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise ValidationError("each step must be an object", detail={"index": index})
        step = dict(raw)
        if "dependsOn" in step:
            step.setdefault("depends_on", step.pop("dependsOn"))
        step["type"] = step.get("type") or "action"
        if step["type"] not in STEP_KINDS:
            raise ValidationError(
                "unsupported step type", detail={"index": index, "type": step["type"]}
            )
        step["id"] = str(step.get("id") or f"step-{index}")
        step["parameters"] = dict(step.get("parameters") or {})
        step["depends_on"] = [str(dep) for dep in (step.get("depends_on") or [])]
        steps.append(step)
    return check_steps(steps)


class WorkflowParser:
    def __init__(self, llm=None, *, model: str = "gpt-4o-mini") -> None:
        self.llm = llm
        self.model = model

    async def parse(
        self, instruction: str, available_apps: Optional[List[str]] = None
    ) -> ParsedWorkflow:
        instruction = instruction.strip()
        if not instruction:
            raise ValidationError("instruction is required")
        parsed = detect_workflow_patterns(instruction)
        if parsed.steps or self.llm is None:
            return parsed
        return await self._parse_with_llm(instruction, available_apps or [], parsed)

    async def _parse_with_llm(
        self, instruction: str, available_apps: List[str], fallback: ParsedWorkflow
    ) -> ParsedWorkflow:
        try:
            completion = await self.llm.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": SYSTEM_PROMPT.format(
                            apps=", ".join(available_apps) or "All connected apps"
                        ),
                    },
                    {"role": "user", "content": f"User Instruction: {instruction}"},
                ],
                temperature=0.3,
                response_format={"type": "json_object"},
            )
            choices = getattr(completion, "choices", None) or []
            content = choices[0].message.content if choices else None
            data = json.loads(content or "{}")
            if not isinstance(data, dict) or not data.get("steps"):
                logger.warning("workflow_parse_llm_empty", model=self.model)
                return fallback
            steps = normalize_steps(data["steps"])
        except (OpenAIError, ValueError, ValidationError) as exc:
            logger.warning(
                "workflow_parse_llm_error",
                model=self.model,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return fallback
        apps = data.get("required_apps") or data.get("requiredApps")
        if not isinstance(apps, list):
            apps = sorted({step["app"] for step in steps if step.get("app")})
        return ParsedWorkflow(
            name=str(data.get("name") or fallback.name),
            description=str(data.get("description") or fallback.description),
            steps=steps,
            required_apps=[str(app) for app in apps],
            source="llm",
        )

    async def close(self) -> None:
        if self.llm is not None:
            await self.llm.close()
