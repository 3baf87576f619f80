"""Classification of decoded code text into identifier or login-challenge payloads."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import IdentifierValidationError

NUMERIC_ID_RE = re.compile(r"[0-9]{13}")
ALPHA_ID_RE = re.compile(r"[A-Za-z0-9_-]+")
ORIN_PREFIX = "orin"

MANUAL_MIN_LENGTH = 3
MANUAL_MAX_LENGTH = 50


@dataclass(frozen=True)
class NumericId:
    """Device-derived identifier: 13 digits (a millisecond timestamp)."""

    value: str


@dataclass(frozen=True)
class AlphaId:
    value: str


@dataclass(frozen=True)
class Challenge:
    """One-time login challenge shown by a desktop session."""

    challenge_id: str
    nonce: str


@dataclass(frozen=True)
class Invalid:
    reason: str


DecodedPayload = Union[NumericId, AlphaId, Challenge, Invalid]


class _ChallengeBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    challengeId: str = Field(..., min_length=1)
    nonce: str = Field(..., min_length=1)


def classify_identifier(text: str) -> DecodedPayload:
    """Parse scanned text as an OrinId.

    The ``orin`` prefix (case-insensitive, optionally followed by ``-``) is
    stripped, so ``"orin-test1"`` and ``"ORINtest1"`` both yield
    ``AlphaId("test1")``. Numeric ids are returned unchanged.
    """
    clean = text.strip()
    if NUMERIC_ID_RE.fullmatch(clean):
        return NumericId(clean)

    if clean.lower().startswith(ORIN_PREFIX):
        remainder = clean[len(ORIN_PREFIX):]
        if remainder.startswith("-"):
            remainder = remainder[1:]
        if remainder and ALPHA_ID_RE.fullmatch(remainder):
            return AlphaId(remainder)
        return Invalid("orin prefix without a valid identifier")

    if ALPHA_ID_RE.fullmatch(clean):
        return AlphaId(clean)
    return Invalid("not an OrinId")


def classify_challenge(text: str) -> DecodedPayload:
    """Parse scanned text as a login challenge; malformed JSON counts as a missing field."""
    try:
        body = _ChallengeBody.model_validate_json(text)
    except ValidationError:
        return Invalid("not a login QR code")
    return Challenge(challenge_id=body.challengeId, nonce=body.nonce)


def is_recognized(payload: DecodedPayload) -> bool:
    return not isinstance(payload, Invalid)


def identifier_value(payload: DecodedPayload) -> str:
    if isinstance(payload, (NumericId, AlphaId)):
        return payload.value
    raise TypeError(f"{type(payload).__name__} is not an identifier payload")


def validate_identifier_format(orin_id: str) -> str:
    """Check a manually typed OrinId; returns it unchanged or raises ``IdentifierValidationError``."""
    if not orin_id or not orin_id.strip():
        raise IdentifierValidationError("Please enter an OrinId.")
    if len(orin_id) < MANUAL_MIN_LENGTH:
        raise IdentifierValidationError(f"OrinId must be at least {MANUAL_MIN_LENGTH} characters.")
    if len(orin_id) > MANUAL_MAX_LENGTH:
        raise IdentifierValidationError(f"OrinId cannot exceed {MANUAL_MAX_LENGTH} characters.")
    if not ALPHA_ID_RE.fullmatch(orin_id):
        raise IdentifierValidationError("OrinId may only contain letters, digits, hyphens (-) and underscores (_).")
    return orin_id


__all__ = [
    "NumericId",
    "AlphaId",
    "Challenge",
    "Invalid",
    "DecodedPayload",
    "classify_identifier",
    "classify_challenge",
    "is_recognized",
    "identifier_value",
    "validate_identifier_format",
]
