from __future__ import annotations

import re
from typing import Dict

from ring_profiles.models import ProfileForm

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_\-]{3,32}$")
EMAIL_RE = re.compile(r"\S+@\S+\.\S+")
WEBSITE_RE = re.compile(r"^https?://.+\..+")
LINKEDIN_RE = re.compile(r"^https?://(www\.)?linkedin\.com/.+")
TWITTER_RE = re.compile(r"^https?://(www\.)?(twitter\.com|x\.com)/.+")
GITHUB_RE = re.compile(r"^https?://(www\.)?github\.com/.+")

USERNAME_FORMAT_MESSAGE = (
    "Username must be 3-32 characters and contain only letters, numbers, underscores, or hyphens"
)


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match((username or "").strip()))


def validate_profile_form(form: ProfileForm) -> Dict[str, str]:
    """Return field -> message for every invalid field (empty dict when the form is fine)."""
    errors: Dict[str, str] = {}

    username = (form.username or "").strip()
    if username and not is_valid_username(username):
        errors["username"] = USERNAME_FORMAT_MESSAGE

    if not (form.name or "").strip():
        errors["name"] = "Name is required"

    email = (form.email or "").strip()
    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_RE.search(email):
        errors["email"] = "Please enter a valid email address"

    if form.website and not WEBSITE_RE.match(form.website):
        errors["website"] = "Please enter a valid website URL"
    if form.linkedin and not LINKEDIN_RE.match(form.linkedin):
        errors["linkedin"] = "Please enter a valid LinkedIn URL"
    if form.twitter and not TWITTER_RE.match(form.twitter):
        errors["twitter"] = "Please enter a valid Twitter/X URL"
    if form.github and not GITHUB_RE.match(form.github):
        errors["github"] = "Please enter a valid GitHub URL"

    return errors
