"""
Planner for Agentic Workspace.

Turns a goal plus assembled context into an ordered ``Plan`` of browser
steps, each tagged with a risk level.
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import CapabilityUnavailable
from .safety import SafetyClassifier, combine_risk
from .types import Plan, Step
from .utils import redact_secrets, truncate_text

logger = logging.getLogger("agentic_workspace.planner")


ALLOWED_ACTIONS = {
    "goto", "click", "type", "press", "scroll", "wait_for",
    "extract", "back", "forward", "submit",
}


class PlannedStep(BaseModel):
    """One step as the model proposes it."""
    action: str
    args: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    risk_level: int = Field(default=1, ge=1, le=5)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ALLOWED_ACTIONS:
            raise ValueError(f"Unknown action '{v}'. Must be one of: {sorted(ALLOWED_ACTIONS)}")
        return v


class PlanResponse(BaseModel):
    """Schema the LLM must answer with when planning."""
    steps: list[PlannedStep] = Field(min_length=1)
    rationale: str = ""


SYSTEM_PROMPT = """You are the PLANNER of a web automation agent. You turn a user goal into a short,
ordered list of concrete browser steps.

AVAILABLE ACTIONS:
- goto: {"url": "https://..."}
- click: {"selector": "css selector", "text": "optional visible label"}
- type: {"selector": "css selector", "text": "what to type"}
- press: {"key": "Enter"}
- scroll: {"direction": "down|up", "amount": 800}
- wait_for: {"selector": "css selector", "timeout_ms": 10000}
- extract: {"selector": "css selector"}
- back: {}
- forward: {}
- submit: {"selector": "form selector"}

RISK LEVELS (be honest, a human approves risky steps):
1 = navigation or reading
2 = typing into ordinary fields
3 = logging in, passwords, account settings
4 = submitting forms
5 = purchases, payments, deleting data, sending messages

RULES:
- Prefer workflows listed under WORKFLOWS THAT WORKED BEFORE when they match the goal.
- Respect facts under KNOWN FACTS and anything PINNED BY USER.
- If FEEDBACK is present, the previous plan failed or was rejected: change the approach.
- Keep plans focused (1-8 steps).

Respond with JSON only:
{"steps": [{"action": "...", "args": {...}, "description": "...", "risk_level": 1}], "rationale": "..."}"""


PLAN_PROMPT = """GOAL: {goal}

CURRENT PAGE:
{page}

CONTEXT:
{context}

FEEDBACK FROM PREVIOUS ATTEMPTS:
{feedback}

Create the plan."""


def default_description(action: str, args: dict[str, Any]) -> str:
    """Readable step description when the model gave none."""
    shown = redact_secrets({"type": action, "args": args})["args"]
    return f"{action} " + ", ".join(f"{k}={v}" for k, v in shown.items())


class Planner:
    """Produces plans with the LLM capability.

    Args:
        llm: LLM capability (``agenerate`` is used)
        classifier: Risk classifier; a step's risk is the higher of the
            model's and the classifier's opinion
        timeout: Seconds allowed for one planning call
    """

    def __init__(self, llm, classifier: Optional[SafetyClassifier] = None, timeout: float = 60.0):
        self.llm = llm
        self.classifier = classifier or SafetyClassifier()
        self.timeout = timeout

    def build_prompt(
        self,
        goal: str,
        context: str,
        feedback: list[str],
        page: Optional[dict[str, Any]] = None,
    ) -> str:
        page = page or {}
        if page.get("url"):
            page_text = f"URL: {page['url']}\nTitle: {page.get('title', '')}"
            if page.get("text"):
                page_text += f"\nText: {truncate_text(page['text'], 1500)}"
        else:
            page_text = "(blank page)"
        return PLAN_PROMPT.format(
            goal=goal,
            page=page_text,
            context=context or "(no stored context)",
            feedback="\n".join(f"- {f}" for f in feedback[-5:]) if feedback else "(none)",
        )

    async def plan(
        self,
        goal: str,
        context: str,
        feedback: Optional[list[str]] = None,
        page: Optional[dict[str, Any]] = None,
    ) -> Plan:
        """Ask the LLM for a plan.

        Raises:
            ValidationError: If the model output is invalid after repair
            CapabilityUnavailable: If no model answered in time
        """
        prompt = self.build_prompt(goal, context, feedback or [], page)
        try:
            generation = await asyncio.wait_for(
                self.llm.agenerate(prompt, response_schema=PlanResponse, options={"system": SYSTEM_PROMPT}),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CapabilityUnavailable(f"planning timed out after {self.timeout:g}s") from e

        response: PlanResponse = generation.parsed
        current_url = (page or {}).get("url", "")
        page_text = (page or {}).get("text", "")

        plan = Plan(goal=goal)
        for proposed in response.steps:
            classified = self.classifier.classify(proposed.action, proposed.args, current_url, page_text)
            risk = combine_risk(proposed.risk_level, classified)
            plan.steps.append(Step(
                action=proposed.action,
                args=dict(proposed.args),
                description=proposed.description or default_description(proposed.action, proposed.args),
                risk_level=int(risk),
            ))
            # Later steps run on pages the earlier ones navigate to
            if proposed.action == "goto":
                current_url = str(proposed.args.get("url", current_url))

        logger.info(
            "Planned %d steps for '%s' (max risk %d)",
            len(plan.steps), truncate_text(goal, 60), max(s.risk_level for s in plan.steps),
        )
        return plan
