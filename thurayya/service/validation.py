"""Input rules shared by registration, login and email checks."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, List, Optional

MIN_NAME_LENGTH = 2
MIN_PASSWORD_LENGTH = 8
MAX_EMAIL_LENGTH = 254

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_SLUG_INVALID = re.compile(r"[^a-z0-9\-]")
_SLUG_DASHES = re.compile(r"-+")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def normalize_email(value: Optional[str]) -> str:
    """Trim, lower-case and NFKC-normalize an address for storage and lookup."""
    if not value:
        return ""
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned.strip().lower())


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    if len(normalized) < 3 or len(normalized) > MAX_EMAIL_LENGTH:
        return False
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        return False
    return all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in domain_parts
    )


def password_errors(password: Optional[str]) -> List[str]:
    """Every complexity rule the password breaks, in a stable order."""
    if not password:
        return ["Password is required"]
    errors: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        errors.append("Password must contain at least one uppercase letter")
    if not any(c.islower() for c in password):
        errors.append("Password must contain at least one lowercase letter")
    if not any(c.isdigit() for c in password):
        errors.append("Password must contain at least one number")
    return errors


@dataclass
class RegistrationInput:
    name: str
    email: str
    password: str
    tenant_name: str
    country: str
    currency: str


def validate_registration(data: RegistrationInput) -> List[str]:
    """Collect all violations at once; an empty list means the input is acceptable."""
    errors: List[str] = []

    name = (data.name or "").strip()
    if not name:
        errors.append("Name is required")
    elif len(name) < MIN_NAME_LENGTH:
        errors.append(f"Name must be at least {MIN_NAME_LENGTH} characters")

    if not (data.email or "").strip():
        errors.append("Email is required")
    elif not is_valid_email(data.email):
        errors.append("Invalid email format")

    errors.extend(password_errors(data.password))

    if not (data.tenant_name or "").strip():
        errors.append("Organization name is required")
    if not (data.country or "").strip():
        errors.append("Country is required")
    if not (data.currency or "").strip():
        errors.append("Currency is required")
    return errors


def slugify(name: str) -> str:
    slug = (name or "").lower().replace(" ", "-").replace("'", "").replace("\u2019", "")
    slug = _SLUG_INVALID.sub("", slug)
    slug = _SLUG_DASHES.sub("-", slug).strip("-")
    return slug or "org"


def unique_slug(name: str, exists: Callable[[str], bool]) -> str:
    """Slug for ``name``, suffixed -1, -2, ... until ``exists`` reports it free."""
    base = slugify(name)
    slug = base
    counter = 1
    while exists(slug):
        slug = f"{base}-{counter}"
        counter += 1
    return slug
