"""
Settings document codec (settings.json).

Keys are sorted and the layout is fixed, so identical settings encode to
identical bytes. Keys this version does not know about are carried
through untouched.
"""

import json
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from family_ledger.exceptions import DecodeError
from family_ledger.models.ledger import LedgerSettings


def encode_settings(settings: LedgerSettings) -> str:
    payload = settings.model_dump(mode="json")
    return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def decode_settings(text: Optional[str]) -> LedgerSettings:
    """
    Decode settings.json.

    A missing document (None or blank text) yields default settings.

    Raises:
        DecodeError: If the text is not a JSON object of valid settings
    """
    if text is None or not text.strip():
        return LedgerSettings()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"settings.json is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecodeError("settings.json root must be an object")
    try:
        return LedgerSettings.model_validate(payload)
    except PydanticValidationError as e:
        raise DecodeError(f"settings.json failed validation: {e}") from e
