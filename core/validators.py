"""
Form field validation.

Rules:
  - min_length: answer must have at least int(value) characters.
    A non-integer threshold disables the check.
  - email:      syntactic address check (case-insensitive)
  - regex:      pattern must match somewhere in the answer

A failing rule raises InputValidationError carrying the rule's
error_message (or the configured default).
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional

from models.schemas import FieldValidation, ValidationType
from utils.errors import InputValidationError

EMAIL_RE = re.compile(r"^[a-z0-9._%+\-]+@[a-z0-9.\-]+\.[a-z]{2,4}$", re.IGNORECASE)

DEFAULT_MESSAGE = "Invalid input, please try again."


@lru_cache(maxsize=256)
def _compiled(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def is_valid(rule: Optional[FieldValidation], text: str) -> bool:
    if rule is None or rule.type is None:
        return True

    if rule.type == ValidationType.MIN_LENGTH:
        try:
            threshold = int(rule.value)
        except ValueError:
            return True
        return len(text) >= threshold

    if rule.type == ValidationType.EMAIL:
        return bool(EMAIL_RE.match(text))

    if rule.type == ValidationType.REGEX:
        pattern = rule.pattern or rule.value
        if not pattern:
            return True
        return _compiled(pattern).search(text) is not None

    return True


def validate_answer(rule: Optional[FieldValidation], text: str, field: str = "",
                    default_message: str = DEFAULT_MESSAGE) -> None:
    if not is_valid(rule, text):
        message = (rule.error_message if rule else "") or default_message
        raise InputValidationError(message, field=field)
