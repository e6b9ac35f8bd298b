"""Identity registration. Every identity gets exactly one profile, atomically."""
import logging
import re
from typing import Any, Optional

import db
from errors import ConstraintViolation

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_NAME = "User"
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    """Strip and lower-case. Raises ConstraintViolation if it doesn't look like an email."""
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ConstraintViolation("bad_email", "Email address is not valid.")
    return value


def profile_name(metadata: Optional[dict[str, Any]]) -> str:
    """Display name from signup metadata, "User" if missing or blank."""
    raw = (metadata or {}).get("name")
    name = str(raw).strip() if raw is not None else ""
    return name or DEFAULT_PROFILE_NAME


def register_identity(
    email: str,
    *,
    provider: str,
    subject: str,
    metadata: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Register an identity and provision its profile in one transaction.

    Duplicate email or (provider, subject) fails the whole registration with
    ConstraintViolation; nothing is left behind.
    """
    provider = (provider or "").strip()
    subject = (subject or "").strip()
    if not provider or not subject:
        raise ConstraintViolation("bad_identity", "Identity provider and subject are required.")
    email_norm = normalize_email(email)
    profile = db.create_identity_with_profile(
        provider=provider,
        subject=subject,
        email=email_norm,
        name=profile_name(metadata),
        metadata=metadata,
    )
    logger.info("Identity registered: provider=%s profile_id=%s", provider, profile["id"])
    return profile


def find_identity(provider: str, subject: str) -> Optional[str]:
    """Identity id for (provider, subject), or None if not registered."""
    return db.get_identity_id(provider, str(subject))


def find_subject(identity_id: str, provider: str) -> Optional[str]:
    """Provider-side subject for an identity id, None if it has no account there."""
    return db.get_identity_subject(identity_id, provider)
