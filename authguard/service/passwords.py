from __future__ import annotations

import unicodedata
from typing import Optional

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from pydantic import BaseModel, Field

from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.errors import WeakPasswordError

logger = get_logger(__name__)


class PasswordPolicy(BaseModel):
    min_length: int = Field(8, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_number: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_number=settings.password_require_number,
            require_special=settings.password_require_special,
        )


def _char_classes(password: str) -> set[str]:
    found: set[str] = set()
    for char in password:
        category = unicodedata.category(char)
        if char.isupper():
            found.add("upper")
        elif char.islower():
            found.add("lower")
        elif category == "Nd":
            found.add("number")
        elif category[0] in ("P", "S"):
            found.add("special")
    return found


def validate_password_strength(password: str, policy: Optional[PasswordPolicy] = None) -> None:
    """Raise ``WeakPasswordError`` naming the first rule the password breaks."""
    policy = policy or PasswordPolicy()
    if len(password) < policy.min_length:
        raise WeakPasswordError(
            f"password must be at least {policy.min_length} characters long",
            detail={"rule": "min_length"},
        )
    classes = _char_classes(password)
    checks = (
        (policy.require_uppercase, "upper", "password must contain at least one uppercase letter"),
        (policy.require_lowercase, "lower", "password must contain at least one lowercase letter"),
        (policy.require_number, "number", "password must contain at least one number"),
        (policy.require_special, "special", "password must contain at least one special character"),
    )
    for required, cls_name, message in checks:
        if required and cls_name not in classes:
            raise WeakPasswordError(message, detail={"rule": cls_name})


class PasswordHasher:
    """argon2id hashing for passwords handed to the user directory."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        return self._hasher.check_needs_rehash(password_hash)
