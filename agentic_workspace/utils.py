"""
Utility functions for Agentic Workspace.

Provides helpers for text processing, token estimation, similarity and
risk keyword detection.
"""

import json
import math
import re
from collections import Counter
from typing import Any, Optional

import numpy as np


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """Truncate text to a maximum number of characters.

    Args:
        text: Text to truncate
        max_chars: Maximum number of characters
        suffix: Suffix to add when truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(suffix)] + suffix


def clean_text(text: str) -> str:
    """Clean and normalize text content.

    Args:
        text: Raw text content

    Returns:
        Cleaned text with normalized whitespace
    """
    # Replace multiple whitespace with single space
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


# =============================================================================
# Token estimation
# =============================================================================

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of text (4 characters per token).

    Whitespace is normalized first; any non-empty text costs at least
    one token.
    """
    if not text:
        return 0
    normalized = clean_text(text)
    if not normalized:
        return 0
    return max(1, math.ceil(len(normalized) / CHARS_PER_TOKEN))


def truncate_to_tokens(text: str, limit: int, suffix: str = "...") -> str:
    """Truncate text so that ``estimate_tokens`` of the result is <= limit."""
    if not text or limit <= 0:
        return ""
    normalized = clean_text(text)
    if estimate_tokens(normalized) <= limit:
        return normalized
    max_chars = limit * CHARS_PER_TOKEN - len(suffix)
    if max_chars <= 0:
        return normalized[:limit * CHARS_PER_TOKEN]
    return normalized[:max_chars].rstrip() + suffix


# =============================================================================
# Similarity
# =============================================================================

STOPWORDS = {
    "a", "an", "the", "and", "or", "of", "to", "in", "on", "for", "with",
    "at", "by", "from", "is", "are", "was", "be", "it", "this", "that",
    "my", "me", "i", "please", "then", "into", "as",
}


def tokenize(text: str) -> list[str]:
    """Split text into lowercase word tokens without stopwords.

    Words are runs of Unicode letters and digits, so "café" and
    "билеты" stay whole.
    """
    words = re.findall(r"[^\W_]+", text.casefold())
    return [w for w in words if w not in STOPWORDS]


def normalize_goal(goal: str) -> str:
    """Normalize a goal into its signature.

    Lowercases, drops punctuation and stopwords, and removes repeated
    words while keeping order: "Search for X!" and "search   for x"
    share the signature "search x".
    """
    return " ".join(dict.fromkeys(tokenize(goal)))


def cosine_similarity(a: str, b: str) -> float:
    """Cosine similarity of the term-frequency vectors of two texts."""
    counts_a = Counter(tokenize(a))
    counts_b = Counter(tokenize(b))
    if not counts_a or not counts_b:
        return 0.0

    vocab = sorted(set(counts_a) | set(counts_b))
    vec_a = np.array([counts_a.get(w, 0) for w in vocab], dtype=np.float32)
    vec_b = np.array([counts_b.get(w, 0) for w in vocab], dtype=np.float32)

    denom = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / denom)


def recency_weight(age_seconds: float, half_life: float) -> float:
    """Exponential decay in (0, 1]; 1.0 for brand new items."""
    if half_life <= 0:
        return 1.0
    return 0.5 ** (max(age_seconds, 0.0) / half_life)


# =============================================================================
# JSON extraction
# =============================================================================

def extract_json_from_response(response: str) -> Optional[str]:
    """Extract JSON from a response that might contain markdown or extra text.

    Args:
        response: Raw response string

    Returns:
        Extracted JSON string, or None if not found
    """
    # Try to find JSON in code blocks first
    code_block_pattern = r'```(?:json)?\s*(\{[\s\S]*?\})\s*```'
    match = re.search(code_block_pattern, response)
    if match:
        return match.group(1)

    # Try to find a raw JSON object
    json_pattern = r'\{[\s\S]*\}'
    match = re.search(json_pattern, response)
    if match:
        return match.group(0)

    return None


def parse_json_with_recovery(raw_response: str) -> dict[str, Any]:
    """Parse JSON with multiple recovery strategies.

    Raises:
        json.JSONDecodeError: If all parsing attempts fail
    """
    # Strategy 1: Try to extract from markdown/prose
    json_str = extract_json_from_response(raw_response)
    if json_str:
        try:
            return json.loads(json_str)
        except json.JSONDecodeError:
            pass

    # Strategy 2: Remove trailing commas before } or ]
    cleaned = raw_response.strip()
    cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)

    # Strategy 3: Find first { to last }
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end != -1 and end > start:
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            pass

    raise json.JSONDecodeError("Could not parse JSON from response", raw_response, 0)


# =============================================================================
# Risk heuristics
# =============================================================================

def is_password_field(selector: str) -> bool:
    """Check if a selector likely refers to a password field.

    Args:
        selector: The selector to check

    Returns:
        True if likely a password field
    """
    password_patterns = [
        r'password',
        r'type=["\']?password',
        r'#pass',
        r'\.pass',
        r'passwd',
        r'pwd',
    ]
    selector_lower = selector.lower()
    return any(re.search(p, selector_lower) for p in password_patterns)


def parse_domain(url: str) -> str:
    """Extract the domain from a URL.

    Args:
        url: Full URL

    Returns:
        Domain name (e.g., "example.com")
    """
    domain = re.sub(r'^https?://', '', url)
    domain = domain.split('/')[0]
    domain = domain.split(':')[0]
    return domain.lower()


PAYMENT_DOMAINS = {
    "paypal.com",
    "stripe.com",
    "checkout.stripe.com",
    "pay.google.com",
    "apple.com/shop",
    "amazon.com/gp/buy",
    "checkout.shopify.com",
    "secure.checkout",
    "payment.",
    "pay.",
    "checkout.",
}


def is_payment_domain(url: str) -> bool:
    """Check if a URL is likely a payment domain."""
    if not url:
        return False
    domain = parse_domain(url)
    url_lower = url.lower()

    for payment_domain in PAYMENT_DOMAINS:
        if payment_domain in domain or payment_domain in url_lower:
            return True

    payment_paths = ['/checkout', '/payment', '/pay/', '/cart/checkout', '/order/']
    return any(p in url_lower for p in payment_paths)


HIGH_RISK_KEYWORDS = {
    "buy", "purchase", "checkout", "pay", "order", "subscribe",
    "delete", "remove", "cancel subscription", "close account",
    "send", "post", "confirm payment", "place order",
    "unsubscribe", "terminate", "deactivate",
}


def contains_high_risk_keywords(text: str) -> bool:
    """Check if text contains high-risk keywords."""
    words = set(re.findall(r"[a-z]+", text.lower()))
    text_lower = text.lower()
    return any(
        (kw in words) if " " not in kw else (kw in text_lower)
        for kw in HIGH_RISK_KEYWORDS
    )


MEDIUM_RISK_KEYWORDS = {
    "login", "sign in", "log in", "password",
    "upload", "attach", "permission",
    "allow", "grant access", "authorize",
}


def contains_medium_risk_keywords(text: str) -> bool:
    """Check if text contains medium-risk keywords."""
    text_lower = text.lower()
    return any(kw in text_lower for kw in MEDIUM_RISK_KEYWORDS)


def redact_secrets(action: dict[str, Any]) -> dict[str, Any]:
    """Remove typed passwords from an action before it is logged or stored."""
    if action.get("type") != "type":
        return action
    args = action.get("args", {})
    if is_password_field(str(args.get("selector", ""))):
        redacted = dict(action)
        redacted["args"] = {**args, "text": "[REDACTED]"}
        return redacted
    return action


def format_selector(selector: str) -> str:
    """Normalize a selector for Playwright.

    Args:
        selector: Raw selector string

    Returns:
        Normalized selector
    """
    selector = selector.strip()

    # Already a Playwright selector format
    if selector.startswith(('text=', 'css=', 'xpath=', 'id=', '//')):
        return selector

    # Looks like a text selector (contains spaces and no CSS-like chars)
    if ' ' in selector and not any(c in selector for c in '.#[]:>+~'):
        return f'text="{selector}"'

    # Assume CSS selector
    return selector
