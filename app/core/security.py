from __future__ import annotations

import base64
import hashlib
import re
import secrets
from datetime import datetime, timezone
from pathlib import Path

_PASSWORD_BLACKLIST_PATH = Path(__file__).resolve().parent.parent.parent / "resources" / "password_blacklist.txt"

MIN_PASSWORD_LENGTH = 8
JWT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*$")


def _load_blacklist() -> set[str]:
    if not _PASSWORD_BLACKLIST_PATH.exists():
        return set()
    return {line.strip() for line in _PASSWORD_BLACKLIST_PATH.read_text(encoding="utf-8").splitlines() if line.strip()}


PASSWORD_BLACKLIST = _load_blacklist()


def password_classes(password: str) -> int:
    classes = 0
    for pattern in (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^A-Za-z0-9]"):
        if re.search(pattern, password):
            classes += 1
    return classes


def is_password_allowed(password: str) -> bool:
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    if password.lower() in PASSWORD_BLACKLIST:
        return False
    # long passphrases may skip the character-class mix
    if len(password) >= 16:
        return len(set(password)) >= 6
    return password_classes(password) >= 3


def looks_like_jwt(token: str) -> bool:
    return bool(JWT_PATTERN.match(token))


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(64)


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)
