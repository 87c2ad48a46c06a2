"""
Keyword Router — matches free text against configured keyword rules.

Rules are loaded from settings.yaml (`keyword_rules:`) or registered at
runtime. For a given tenant/channel the channel-specific rules are used,
highest priority first; tenant-wide rules (channel "") only apply when
the channel has none of its own.

The router only reports the match. Whether a `transfer` rule
short-circuits the rest of the dispatch is the orchestrator's call.
"""
from __future__ import annotations

import re
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from models.schemas import Button, KeywordResponse, KeywordRule, MatchType, ResponseType

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Matching
# ──────────────────────────────────────────────────────────────

def keyword_matches(keyword: str, text: str, match_type: str, case_sensitive: bool) -> bool:
    """Does one keyword match the text under the rule's match type?"""
    if not keyword:
        return False

    if match_type == MatchType.REGEX.value:
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(keyword, text, flags) is not None
        except re.error as e:
            logger.debug("keyword_regex_invalid", pattern=keyword, error=str(e))
            return False

    if not case_sensitive:
        keyword, text = keyword.lower(), text.lower()

    if match_type == MatchType.EXACT.value:
        return text == keyword
    if match_type == MatchType.STARTS_WITH.value:
        return text.startswith(keyword)
    if match_type == MatchType.CONTAINS.value:
        return keyword in text
    # Unknown match types fall back to case-insensitive contains
    return keyword.lower() in text.lower()


def rule_buttons(rule: KeywordRule) -> list[Button]:
    """Buttons of a rule's response. Entries that don't form a valid Button are dropped."""
    raw = (rule.response_content or {}).get("buttons") or []
    if not isinstance(raw, list):
        logger.warning("keyword_rule_buttons_invalid", rule_id=rule.id, error="buttons is not a list")
        return []

    buttons: list[Button] = []
    for i, item in enumerate(raw):
        if isinstance(item, Button):
            buttons.append(item)
            continue
        try:
            buttons.append(Button.model_validate(item))
        except ValidationError as e:
            logger.warning("keyword_rule_buttons_invalid", rule_id=rule.id, index=i,
                           error=str(e).splitlines()[0])
    return buttons


def rule_response(rule: KeywordRule) -> Optional[KeywordResponse]:
    """The usable response of a rule, or None when it has nothing to send."""
    content = rule.response_content or {}
    body = str(content.get("body") or "")
    buttons = rule_buttons(rule)

    if rule.response_type == ResponseType.TRANSFER:
        return KeywordResponse(
            body=body, buttons=buttons,
            response_type=ResponseType.TRANSFER, rule_id=rule.id,
        )
    if not body:
        return None
    return KeywordResponse(
        body=body, buttons=buttons,
        response_type=rule.response_type, rule_id=rule.id,
    )


def match_rules(rules: list[KeywordRule], text: str) -> tuple[Optional[KeywordResponse], bool]:
    """
    First rule (in the given order) with any matching keyword and a usable
    response wins. Transfer rules count even with an empty body.
    """
    for rule in rules:
        if not rule.is_enabled:
            continue
        if not any(
            keyword_matches(kw, text, rule.match_type, rule.case_sensitive)
            for kw in rule.keywords
        ):
            continue

        response = rule_response(rule)
        if response is None:
            logger.debug("keyword_rule_without_response", rule_id=rule.id)
            continue
        return response, True

    return None, False


# ──────────────────────────────────────────────────────────────
#  Router
# ──────────────────────────────────────────────────────────────

class KeywordRouter:
    """Holds keyword rules per tenant and matches inbound text against them."""

    def __init__(self):
        self._rules: dict[str, KeywordRule] = {}

    def load_rules(self, rules_config: list[dict[str, Any]]):
        """Load rules from YAML config."""
        for raw in rules_config:
            self.register(KeywordRule(**raw))
        logger.info("keyword_rules_loaded", count=len(self._rules))

    def register(self, rule: KeywordRule):
        self._rules[rule.id] = rule
        logger.debug("keyword_rule_registered", rule_id=rule.id, tenant_id=rule.tenant_id)

    def remove(self, rule_id: str):
        self._rules.pop(rule_id, None)

    def list_rules(self) -> list[KeywordRule]:
        return list(self._rules.values())

    def rules_for(self, tenant_id: str, channel: str) -> list[KeywordRule]:
        """Enabled rules for a channel by priority DESC; tenant-wide rules if the channel has none."""
        enabled = [r for r in self._rules.values() if r.tenant_id == tenant_id and r.is_enabled]

        specific = [r for r in enabled if channel and r.channel == channel]
        if not specific:
            specific = [r for r in enabled if not r.channel]

        return sorted(specific, key=lambda r: -r.priority)

    def match(self, tenant_id: str, channel: str, text: str) -> tuple[Optional[KeywordResponse], bool]:
        response, matched = match_rules(self.rules_for(tenant_id, channel), text)
        if matched:
            logger.info(
                "keyword_rule_matched",
                tenant_id=tenant_id, channel=channel,
                rule_id=response.rule_id, response_type=response.response_type.value,
            )
        return response, matched
