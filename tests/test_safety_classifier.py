"""
Tests for safety classification functionality.
"""

import pytest

from agentic_workspace.safety import (
    SafetyClassifier,
    RiskLevel,
    classify_risk,
    combine_risk,
)
from agentic_workspace.utils import (
    contains_high_risk_keywords,
    contains_medium_risk_keywords,
    is_payment_domain,
    is_password_field,
)


class TestRiskKeywords:
    """Tests for risk keyword detection."""

    def test_high_risk_keywords(self):
        assert contains_high_risk_keywords("Buy Now")
        assert contains_high_risk_keywords("Complete Purchase")
        assert contains_high_risk_keywords("Delete Account")
        assert contains_high_risk_keywords("Send Message")
        assert not contains_high_risk_keywords("Learn More")
        assert not contains_high_risk_keywords("Read Article")

    def test_whole_words_only(self):
        """'pay' inside another word is not a payment."""
        assert not contains_high_risk_keywords("Display settings")
        assert not contains_high_risk_keywords("Recorder")

    def test_medium_risk_keywords(self):
        assert contains_medium_risk_keywords("Login")
        assert contains_medium_risk_keywords("Sign In")
        assert contains_medium_risk_keywords("Upload File")
        assert contains_medium_risk_keywords("Grant Access")
        assert not contains_medium_risk_keywords("Download")
        assert not contains_medium_risk_keywords("View Details")

    def test_case_insensitive(self):
        assert contains_high_risk_keywords("BUY NOW")
        assert contains_high_risk_keywords("buy now")
        assert contains_medium_risk_keywords("LOGIN")


class TestPaymentDomain:
    """Tests for payment domain detection."""

    def test_known_payment_domains(self):
        assert is_payment_domain("https://www.paypal.com/checkout")
        assert is_payment_domain("https://checkout.stripe.com/pay")
        assert is_payment_domain("https://pay.google.com/transaction")

    def test_payment_paths(self):
        assert is_payment_domain("https://example.com/checkout")
        assert is_payment_domain("https://store.com/payment/process")
        assert is_payment_domain("https://shop.com/cart/checkout")

    def test_non_payment_domains(self):
        assert not is_payment_domain("https://example.com")
        assert not is_payment_domain("https://github.com")
        assert not is_payment_domain("https://google.com/search")
        assert not is_payment_domain("https://docs.example.com/api-reference")
        assert not is_payment_domain("")


class TestPasswordField:
    """Tests for password field detection."""

    def test_password_selectors(self):
        assert is_password_field('input[type="password"]')
        assert is_password_field('#password-input')
        assert is_password_field('.password-field')
        assert is_password_field('input#passwd')

    def test_non_password_selectors(self):
        assert not is_password_field('input[type="text"]')
        assert not is_password_field('#username')
        assert not is_password_field('.email-input')


class TestSafetyClassifier:
    """Tests for the SafetyClassifier class."""

    @pytest.fixture
    def classifier(self):
        return SafetyClassifier()

    def test_purchase_and_delete_clicks_are_critical(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": 'button:text("Buy Now")'},
            current_url="https://store.com",
        )
        assert risk == RiskLevel.CRITICAL

        risk = classifier.classify(
            "click",
            {"selector": "button", "text": "Delete Account"},
            current_url="https://settings.example.com",
        )
        assert risk == RiskLevel.CRITICAL

    def test_message_click_is_critical(self, classifier):
        assert classifier.classify("click", {"selector": "#compose"}) == RiskLevel.CRITICAL

    def test_submit_button_click_is_high(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": 'input[type="submit"]'},
            current_url="https://example.com/contact",
            page_content="Contact us form. Name, Email, Message.",
        )
        assert risk == RiskLevel.HIGH

    def test_submit_button_on_order_page_is_critical(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": 'button[type="submit"]'},
            page_content="Review your order and pay",
        )
        assert risk == RiskLevel.CRITICAL

    def test_plain_link_click_is_minimal(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": 'a:text("Learn More")'},
            current_url="https://example.com",
        )
        assert risk == RiskLevel.MINIMAL

    def test_login_click_is_medium(self, classifier):
        assert classifier.classify("click", {"selector": "#login-button"}) == RiskLevel.MEDIUM

    def test_type_password_is_medium(self, classifier):
        risk = classifier.classify(
            "type",
            {"selector": 'input[type="password"]', "text": "secret123"},
            current_url="https://example.com/login",
        )
        assert risk == RiskLevel.MEDIUM

    def test_type_normal_is_low(self, classifier):
        risk = classifier.classify(
            "type",
            {"selector": 'input[name="search"]', "text": "playwright"},
            current_url="https://google.com",
        )
        assert risk == RiskLevel.LOW

    def test_any_mutation_on_payment_url_is_critical(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": "button"},
            current_url="https://checkout.stripe.com/pay/123",
        )
        assert risk == RiskLevel.CRITICAL

    def test_mutation_on_security_page_is_medium(self, classifier):
        risk = classifier.classify(
            "click",
            {"selector": "button"},
            current_url="https://example.com/account/security",
        )
        assert risk == RiskLevel.MEDIUM

    def test_reading_a_security_page_stays_minimal(self, classifier):
        risk = classifier.classify(
            "extract",
            {"selector": "main"},
            current_url="https://example.com/account/security",
        )
        assert risk == RiskLevel.MINIMAL

    def test_goto_payment_is_medium(self, classifier):
        assert classifier.classify("goto", {"url": "https://paypal.com/checkout"}) == RiskLevel.MEDIUM

    def test_goto_normal_is_minimal(self, classifier):
        assert classifier.classify("goto", {"url": "https://example.com"}) == RiskLevel.MINIMAL

    def test_enter_on_payment_page_is_critical(self, classifier):
        risk = classifier.classify(
            "press",
            {"key": "Enter"},
            current_url="https://checkout.example.com/pay",
        )
        assert risk == RiskLevel.CRITICAL

    def test_enter_normal_is_high(self, classifier):
        risk = classifier.classify(
            "press",
            {"key": "Enter"},
            current_url="https://google.com/search",
        )
        assert risk == RiskLevel.HIGH

    def test_other_keys_are_low(self, classifier):
        assert classifier.classify("press", {"key": "Tab"}) == RiskLevel.LOW

    def test_submit(self, classifier):
        assert classifier.classify("submit", {"selector": "form#search"}) == RiskLevel.HIGH
        risk = classifier.classify("submit", {"selector": "form"}, page_content="Place order now")
        assert risk == RiskLevel.CRITICAL

    def test_unknown_action_defaults_to_low(self, classifier):
        assert classifier.classify("hover", {"selector": "#menu"}) == RiskLevel.LOW


class TestCombineRisk:
    """The effective risk is the higher opinion, clamped to 1..5."""

    @pytest.mark.parametrize("model, classified, expected", [
        (1, RiskLevel.HIGH, RiskLevel.HIGH),
        (5, RiskLevel.MINIMAL, RiskLevel.CRITICAL),
        (3, RiskLevel.MEDIUM, RiskLevel.MEDIUM),
        (0, 0, RiskLevel.MINIMAL),
        (9, RiskLevel.LOW, RiskLevel.CRITICAL),
    ])
    def test_combine(self, model, classified, expected):
        assert combine_risk(model, classified) == expected


class TestConvenienceFunction:
    """Tests for the classify_risk convenience function."""

    def test_classify_risk_function(self):
        risk = classify_risk(
            "click",
            {"selector": 'button:text("Buy Now")'},
            current_url="https://store.com",
        )
        assert risk == RiskLevel.CRITICAL

        assert classify_risk("goto", {"url": "https://example.com"}) == RiskLevel.MINIMAL
