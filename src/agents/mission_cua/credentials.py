"""Credential placeholder substitution for objectives.

Credentials arrive already decrypted as opaque key/value text; storing and
authorising them is the caller's concern.
"""

import logging
import re
from typing import Dict, Mapping

from .errors import MissingCredentialsError

logger = logging.getLogger(__name__)

KNOWN_PLACEHOLDERS = (
    "linkedin_email",
    "linkedin_password",
    "twitter_username",
    "twitter_password",
    "google_email",
    "google_password",
    "email",
    "password",
    "username",
)


def substitute_credentials(prompt: str, credentials: Mapping[str, str]) -> str:
    """Replace ``{placeholder}`` tokens (case-insensitive) with credential values.

    Known placeholders without a value raise MissingCredentialsError.
    Placeholders named after any other supplied key are substituted too.
    """
    lowered = {k.lower(): v for k, v in credentials.items()}
    names = list(KNOWN_PLACEHOLDERS) + [k for k in lowered if k not in KNOWN_PLACEHOLDERS]

    missing = []
    result = prompt
    for name in names:
        pattern = re.compile(r"\{" + re.escape(name) + r"\}", re.IGNORECASE)
        if not pattern.search(result):
            continue
        value = lowered.get(name)
        if not value:
            missing.append(name)
            continue
        result = pattern.sub(lambda _m, v=value: v, result)

    if missing:
        raise MissingCredentialsError(missing)
    return result


def format_credentials_text(credentials: Dict[str, str]) -> str:
    return "\n".join(f"{key}: {value}" for key, value in credentials.items())
