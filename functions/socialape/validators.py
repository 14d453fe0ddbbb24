"""
Input checks for signup, login and profile details.
"""

from __future__ import annotations

import re
from typing import Optional

EMPTY_FIELD = "Field must not be empty"

EMAIL_PATTERN = re.compile(
    r"^(([^<>()\[\]\\.,;:\s@\"]+(\.[^<>()\[\]\\.,;:\s@\"]+)*)|(\".+\"))"
    r"@((\[[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\])"
    r"|(([a-zA-Z\-0-9]+\.)+[a-zA-Z]{2,}))$"
)


def is_empty(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def is_email(value: Optional[str]) -> bool:
    return bool(value) and EMAIL_PATTERN.match(value) is not None


def validate_signup_data(data: dict) -> tuple[bool, dict]:
    errors: dict[str, str] = {}

    email = data.get("email")
    if is_empty(email):
        errors["email"] = EMPTY_FIELD
    elif not is_email(email):
        errors["email"] = "Field must be a valid email address"

    if is_empty(data.get("password")):
        errors["password"] = EMPTY_FIELD

    if data.get("password") != data.get("confirmPassword"):
        errors["confirmPassword"] = "Both passwords must match"

    if is_empty(data.get("handle")):
        errors["handle"] = EMPTY_FIELD

    return not errors, errors


def validate_login_data(data: dict) -> tuple[bool, dict]:
    errors: dict[str, str] = {}

    if is_empty(data.get("email")):
        errors["email"] = EMPTY_FIELD

    if is_empty(data.get("password")):
        errors["password"] = EMPTY_FIELD

    return not errors, errors


def reduce_user_details(data: dict) -> dict:
    """
    Keep only the non-empty profile fields, trimmed.

    Websites without a scheme get an ``http://`` prefix.
    """
    details: dict[str, str] = {}

    if not is_empty(data.get("bio")):
        details["bio"] = data["bio"].strip()

    if not is_empty(data.get("website")):
        website = data["website"].strip()
        details["website"] = website if website[:4] == "http" else f"http://{website}"

    if not is_empty(data.get("location")):
        details["location"] = data["location"].strip()

    return details
