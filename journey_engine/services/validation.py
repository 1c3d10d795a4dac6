from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from journey_engine.models.deployments import Touchpoint
from journey_engine.models.validation import ValidationResult

ValidationRule = Callable[[Touchpoint], "ValidationResult | None"]

DEFAULT_SPAM_TRIGGER_WORDS = ("FREE!!!", "act now", "limited time", "click here")
PLACEHOLDER_LINK_MARKERS = ("example.com", "placeholder")

EMAIL_SUBJECT_WARN_LENGTH = 150
SMS_SEGMENT_WARN_LENGTH = 320
SMS_MAX_LENGTH = 1600

_HREF_PATTERN = re.compile(r"""href=["']([^"']+)["']""")


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def is_email_type(item_type: str | None) -> bool:
    return not item_type or item_type.lower() == "email"


def is_sms_type(item_type: str | None) -> bool:
    return bool(item_type) and item_type.lower() == "sms"


def sms_message(content: dict[str, Any]) -> str:
    message = content.get("body") or content.get("message") or ""
    return message if isinstance(message, str) else str(message)


def extract_links(html: str) -> list[str]:
    return _HREF_PATTERN.findall(html)


def duplicate_ids(touchpoints: list[Touchpoint]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for touchpoint in touchpoints:
        if touchpoint.id in seen and touchpoint.id not in duplicates:
            duplicates.append(touchpoint.id)
        seen.add(touchpoint.id)
    return duplicates


def _validate_email(
    result: ValidationResult,
    touchpoint: Touchpoint,
    spam_trigger_words: Iterable[str],
) -> None:
    content = touchpoint.content
    subject = content.get("subject")
    body = content.get("body")

    if _is_blank(subject):
        result.add_error("Email subject is required", touchpoint.id)
    if _is_blank(body):
        result.add_error("Email body is required", touchpoint.id)

    if isinstance(subject, str) and len(subject) > EMAIL_SUBJECT_WARN_LENGTH:
        result.add_warning(f"Subject is very long (>{EMAIL_SUBJECT_WARN_LENGTH} chars)", touchpoint.id)

    body_text = body if isinstance(body, str) else ""
    for url in extract_links(body_text):
        if any(marker in url for marker in PLACEHOLDER_LINK_MARKERS):
            result.add_warning(f"Possible placeholder link: {url}", touchpoint.id)

    body_lower = body_text.lower()
    for word in spam_trigger_words:
        if word.lower() in body_lower:
            result.add_warning(f'Possible spam trigger word: "{word}"', touchpoint.id)


def _validate_sms(result: ValidationResult, touchpoint: Touchpoint) -> None:
    message = sms_message(touchpoint.content)

    if not message.strip():
        result.add_error("SMS message is required", touchpoint.id)
    if len(message) > SMS_MAX_LENGTH:
        result.add_error(f"SMS exceeds maximum length ({SMS_MAX_LENGTH} chars)", touchpoint.id)
    elif len(message) > SMS_SEGMENT_WARN_LENGTH:
        result.add_warning(
            f"SMS will be split into multiple messages (>{SMS_SEGMENT_WARN_LENGTH} chars)",
            touchpoint.id,
        )

    message_lower = message.lower()
    if "stop" not in message_lower and "opt-out" not in message_lower:
        result.add_warning("SMS should include opt-out instructions", touchpoint.id)


class TouchpointValidator:
    """Built-in content checks followed by caller-registered rules.

    Validation never performs I/O and never mutates its input, so the same
    touchpoint always produces an equal result.
    """

    def __init__(self, spam_trigger_words: Iterable[str] | None = None) -> None:
        if spam_trigger_words is None:
            spam_trigger_words = DEFAULT_SPAM_TRIGGER_WORDS
        self.spam_trigger_words = tuple(spam_trigger_words)
        self._rules: list[ValidationRule] = []

    def add_rule(self, rule: ValidationRule) -> None:
        self._rules.append(rule)

    def validate_item(self, touchpoint: Touchpoint) -> ValidationResult:
        result = ValidationResult()

        if is_email_type(touchpoint.type):
            _validate_email(result, touchpoint, self.spam_trigger_words)
        elif is_sms_type(touchpoint.type):
            _validate_sms(result, touchpoint)

        for rule in self._rules:
            rule_result = rule(touchpoint)
            if rule_result is not None:
                result = result.merge(rule_result)

        return result

    def validate_batch(self, touchpoints: list[Touchpoint]) -> ValidationResult:
        combined = ValidationResult()
        for item_id in duplicate_ids(touchpoints):
            combined.add_error(f"Duplicate touchpoint id: {item_id}", item_id)
        for touchpoint in touchpoints:
            combined = combined.merge(self.validate_item(touchpoint))
        combined.add_info(f"Validated {len(touchpoints)} touchpoints")
        return combined
