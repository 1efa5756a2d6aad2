"""
Safety classification for Agentic Workspace.

Assigns each planned browser action a risk level from 1 to 5. The
orchestrator compares it with the workspace autonomy level to decide
whether a human must approve the step.
"""

import re
from enum import IntEnum
from typing import Any

from .utils import (
    contains_high_risk_keywords,
    contains_medium_risk_keywords,
    is_password_field,
    is_payment_domain,
)


class RiskLevel(IntEnum):
    """Risk level of an action (higher is riskier)."""
    MINIMAL = 1   # navigation, reading
    LOW = 2       # typing into ordinary fields
    MEDIUM = 3    # login, passwords, account pages
    HIGH = 4      # form submission
    CRITICAL = 5  # purchase, payment, delete, send


# Baseline risk per action type
ACTION_BASE_RISK = {
    "goto": RiskLevel.MINIMAL,
    "click": RiskLevel.MINIMAL,
    "scroll": RiskLevel.MINIMAL,
    "wait_for": RiskLevel.MINIMAL,
    "extract": RiskLevel.MINIMAL,
    "back": RiskLevel.MINIMAL,
    "forward": RiskLevel.MINIMAL,
    "type": RiskLevel.LOW,
    "press": RiskLevel.LOW,
    "submit": RiskLevel.HIGH,
}


def _has_word(text: str, keywords) -> bool:
    return any(re.search(rf"\b{re.escape(kw)}\b", text) for kw in keywords)


class SafetyClassifier:
    """Classifies the risk level of browser actions."""

    # Button texts that commit money, data loss or outbound messages
    CRITICAL_BUTTON_TEXTS = {
        "buy", "purchase", "checkout", "pay", "order", "subscribe",
        "delete", "remove", "terminate", "deactivate",
        "send", "post", "submit order", "place order", "confirm purchase",
        "confirm payment", "complete order", "close account",
    }

    # Form submission patterns
    SUBMIT_SELECTORS = {
        'input[type="submit"]',
        'button[type="submit"]',
        ".submit",
        "#submit",
    }

    # Account/security page patterns
    SECURITY_PATHS = {
        "/account", "/settings", "/security", "/password", "/profile",
        "/preferences", "/billing", "/payment", "/subscription",
        "/delete", "/deactivate", "/close-account",
    }

    # Message sending patterns
    MESSAGE_SELECTORS = {
        "send", "compose", "reply", "message", "email", "tweet",
        "post", "comment", "publish",
    }

    # Actions that change page or server state
    MUTATING_ACTIONS = {"click", "type", "press", "submit"}

    def classify(
        self,
        action: str,
        args: dict[str, Any],
        current_url: str = "",
        page_content: str = "",
    ) -> RiskLevel:
        """Classify the risk level of an action.

        Args:
            action: The action type (goto, click, type, ...)
            args: Action arguments
            current_url: Current page URL
            page_content: Current page visible text (optional)

        Returns:
            Risk level classification
        """
        risk = ACTION_BASE_RISK.get(action, RiskLevel.LOW)

        if action in self.MUTATING_ACTIONS:
            if is_payment_domain(current_url):
                return RiskLevel.CRITICAL
            if self._is_security_page(current_url):
                risk = max(risk, RiskLevel.MEDIUM)

        if action == "goto":
            risk = max(risk, self._classify_goto(args))
        elif action == "click":
            risk = max(risk, self._classify_click(args, page_content))
        elif action == "type":
            risk = max(risk, self._classify_type(args))
        elif action == "press":
            risk = max(risk, self._classify_press(args, current_url))
        elif action == "submit":
            if contains_high_risk_keywords(page_content) or contains_high_risk_keywords(
                " ".join(str(v) for v in args.values())
            ):
                risk = RiskLevel.CRITICAL

        return RiskLevel(risk)

    def _classify_click(self, args: dict[str, Any], page_content: str) -> RiskLevel:
        selector = str(args.get("selector", "")).lower()
        label = str(args.get("text", "")).lower()
        target = f"{selector} {label}"

        if _has_word(target, self.CRITICAL_BUTTON_TEXTS):
            return RiskLevel.CRITICAL

        if any(pattern in selector for pattern in self.SUBMIT_SELECTORS):
            # Submitting a purchase form
            if contains_high_risk_keywords(page_content):
                return RiskLevel.CRITICAL
            return RiskLevel.HIGH

        if _has_word(target, self.MESSAGE_SELECTORS):
            return RiskLevel.CRITICAL

        if contains_medium_risk_keywords(target):
            return RiskLevel.MEDIUM

        return RiskLevel.MINIMAL

    def _classify_type(self, args: dict[str, Any]) -> RiskLevel:
        selector = str(args.get("selector", "")).lower()

        # Password field means a login
        if is_password_field(selector):
            return RiskLevel.MEDIUM

        if contains_medium_risk_keywords(selector):
            return RiskLevel.MEDIUM

        return RiskLevel.LOW

    def _classify_press(self, args: dict[str, Any], current_url: str) -> RiskLevel:
        key = str(args.get("key", "")).lower()

        # Enter submits forms
        if key == "enter":
            if is_payment_domain(current_url):
                return RiskLevel.CRITICAL
            return RiskLevel.HIGH

        return RiskLevel.LOW

    def _classify_goto(self, args: dict[str, Any]) -> RiskLevel:
        url = str(args.get("url", "")).lower()

        # Just navigating, not transacting
        if is_payment_domain(url) or self._is_security_page(url):
            return RiskLevel.MEDIUM

        return RiskLevel.MINIMAL

    def _is_security_page(self, url: str) -> bool:
        """Check if URL is a security/account settings page."""
        url_lower = url.lower()
        return any(path in url_lower for path in self.SECURITY_PATHS)


def combine_risk(model_risk: int, classified: int) -> RiskLevel:
    """The effective risk of a step: the higher of the two opinions."""
    value = max(int(model_risk), int(classified))
    return RiskLevel(min(max(value, RiskLevel.MINIMAL), RiskLevel.CRITICAL))


def classify_risk(
    action: str,
    args: dict[str, Any],
    current_url: str = "",
    page_content: str = "",
) -> RiskLevel:
    """Convenience function to classify action risk."""
    return SafetyClassifier().classify(action, args, current_url, page_content)
