"""
Tests for JSON parsing functionality.
"""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from agentic_workspace.llm_client import parse_structured
from agentic_workspace.planner import PlannedStep, PlanResponse
from agentic_workspace.promotion import FactList
from agentic_workspace.utils import extract_json_from_response, parse_json_with_recovery


class TestExtractJsonFromResponse:
    """Tests for JSON extraction from various response formats."""

    def test_raw_json(self):
        response = '{"steps": [{"action": "goto", "args": {"url": "https://example.com"}}]}'
        result = extract_json_from_response(response)
        assert result is not None
        parsed = json.loads(result)
        assert parsed["steps"][0]["action"] == "goto"

    def test_markdown_code_block(self):
        """Test extracting JSON from markdown code block."""
        response = '''Here's the plan:
```json
{"steps": [{"action": "click", "args": {"selector": "#submit"}, "risk_level": 4}]}
```
That should work.'''
        result = extract_json_from_response(response)
        assert result is not None
        parsed = json.loads(result)
        assert parsed["steps"][0]["action"] == "click"

    def test_markdown_without_json_tag(self):
        response = '''```
{"facts": [{"statement": "The search box is input[name=q]", "confidence": 0.7}]}
```'''
        result = extract_json_from_response(response)
        assert result is not None
        assert json.loads(result)["facts"][0]["confidence"] == 0.7

    def test_json_with_prose(self):
        response = '''I think we should navigate to the page.
{"steps": [{"action": "goto", "args": {"url": "https://test.com"}}], "rationale": "navigate"}
This will load the page.'''
        result = extract_json_from_response(response)
        assert result is not None
        parsed = json.loads(result)
        assert parsed["steps"][0]["args"]["url"] == "https://test.com"

    def test_no_json_returns_none(self):
        response = "This is just plain text with no JSON."
        assert extract_json_from_response(response) is None


class TestParseJsonWithRecovery:
    """Tests for JSON parsing with recovery strategies."""

    def test_valid_json(self):
        response = '{"action": "scroll", "args": {"amount": 500}}'
        result = parse_json_with_recovery(response)
        assert result["action"] == "scroll"
        assert result["args"]["amount"] == 500

    def test_trailing_comma_fix(self):
        response = '{"action": "back", "args": {},}'
        result = parse_json_with_recovery(response)
        assert result["action"] == "back"

    def test_markdown_wrapped(self):
        response = '''```json
{"facts": [], "note": "nothing durable"}
```'''
        result = parse_json_with_recovery(response)
        assert result["facts"] == []
        assert result["note"] == "nothing durable"

    def test_json_with_prefix(self):
        response = 'The plan is: {"steps": [{"action": "extract", "args": {"selector": "h1"}}]}'
        result = parse_json_with_recovery(response)
        assert result["steps"][0]["action"] == "extract"

    def test_invalid_json_raises(self):
        response = "This is not JSON at all, just random text without braces"
        with pytest.raises(json.JSONDecodeError):
            parse_json_with_recovery(response)


class TestPlanResponse:
    """Tests for plan schema validation."""

    def test_valid_plan(self):
        plan = parse_structured(
            '{"steps": [{"action": "goto", "args": {"url": "https://example.com"}, "risk_level": 1}],'
            ' "rationale": "open it"}',
            PlanResponse,
        )
        assert plan.steps[0].action == "goto"
        assert plan.rationale == "open it"

    def test_action_is_normalized(self):
        step = PlannedStep(action="  GoTo ", args={"url": "https://example.com"})
        assert step.action == "goto"

    def test_invalid_action_type(self):
        with pytest.raises(PydanticValidationError):
            PlannedStep(action="teleport", args={})

    @pytest.mark.parametrize("risk", [0, 6])
    def test_invalid_risk_level(self, risk):
        with pytest.raises(PydanticValidationError):
            PlannedStep(action="click", args={"selector": "#btn"}, risk_level=risk)

    def test_empty_plan_rejected(self):
        with pytest.raises(PydanticValidationError):
            parse_structured('{"steps": []}', PlanResponse)

    def test_defaults(self):
        step = PlannedStep(action="scroll", args={"amount": 100})
        assert step.risk_level == 1
        assert step.description == ""


class TestFactList:
    """Tests for the promotion summary schema."""

    def test_facts_parsed(self):
        summary = parse_structured(
            'Sure! {"facts": [{"statement": "Login lives at /signin", "confidence": 0.8}]}',
            FactList,
        )
        assert summary.facts[0].statement == "Login lives at /signin"

    def test_missing_facts_is_empty(self):
        assert parse_structured("{}", FactList).facts == []
