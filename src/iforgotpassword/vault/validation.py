# Vault Module — Input Validation
#
# Each validate_* function returns a list of human-readable problems (empty
# when the input is fine).  ensure_valid() turns a non-empty list into a
# ValidationError carrying every message.

import re
from typing import Any, Dict, List, Mapping

from ..core.config import MIN_KDF_ITERATIONS
from ..core.errors import ValidationError
from .models import (
    CardPayload,
    IdentityPayload,
    ItemType,
    LoginPayload,
    NotePayload,
    Payload,
)

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_EMAIL_LENGTH = 255
MAX_USERNAME_LENGTH = 255
MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048
MAX_NOTES_LENGTH = 10000
MAX_CUSTOM_FIELD_LENGTH = 1000
MAX_DEVICE_NAME_LENGTH = 100


def ensure_valid(errors: List[str], message: str = "Validation failed") -> None:
    if errors:
        raise ValidationError(f"{message}: {'; '.join(errors)}", errors)


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def validate_email(email: Any) -> List[str]:
    if not _is_text(email):
        return ["Email is required"]
    errors = []
    if len(email) > MAX_EMAIL_LENGTH:
        errors.append(f"Email must not exceed {MAX_EMAIL_LENGTH} characters")
    if not EMAIL_REGEX.match(email):
        errors.append("Invalid email format")
    return errors


def validate_kdf_iterations(iterations: Any) -> List[str]:
    if isinstance(iterations, bool) or not isinstance(iterations, int):
        return ["KDF iterations must be an integer"]
    if iterations < MIN_KDF_ITERATIONS:
        return [f"KDF iterations must be at least {MIN_KDF_ITERATIONS}"]
    return []


def validate_item_type(item_type: Any) -> List[str]:
    if not _is_text(item_type):
        return ["Item type is required"]
    valid = [t.value for t in ItemType]
    if item_type not in valid:
        return [f"Item type must be one of: {', '.join(valid)}"]
    return []


def validate_encrypted_item(data: Mapping[str, Any]) -> List[str]:
    """Shape check for an encrypted item in wire form."""
    errors = []
    if not _is_text(data.get("encryptedData")):
        errors.append("Encrypted data is required")
    if data.get("encryptedKey") is not None and not isinstance(data.get("encryptedKey"), str):
        errors.append("Encrypted key must be a string")
    if not _is_text(data.get("iv")):
        errors.append("Initialization vector is required")
    if not _is_text(data.get("authTag")):
        errors.append("Authentication tag is required")
    errors.extend(validate_item_type(data.get("itemType")))

    url_domain = data.get("urlDomain")
    if url_domain is not None:
        if not isinstance(url_domain, str):
            errors.append("URL domain must be a string")
        elif len(url_domain) > MAX_URL_LENGTH:
            errors.append(f"URL domain must not exceed {MAX_URL_LENGTH} characters")
    return errors


def _check_title(title: Any, errors: List[str]) -> None:
    if not _is_text(title):
        errors.append("Title is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"Title must not exceed {MAX_TITLE_LENGTH} characters")


def _check_notes(notes: Any, errors: List[str]) -> None:
    if isinstance(notes, str) and len(notes) > MAX_NOTES_LENGTH:
        errors.append(f"Notes must not exceed {MAX_NOTES_LENGTH} characters")


def validate_login(payload: LoginPayload) -> List[str]:
    errors: List[str] = []
    _check_title(payload.title, errors)

    if not _is_text(payload.username):
        errors.append("Username is required")
    elif len(payload.username) > MAX_USERNAME_LENGTH:
        errors.append(f"Username must not exceed {MAX_USERNAME_LENGTH} characters")

    if not _is_text(payload.password):
        errors.append("Password is required")

    if isinstance(payload.url, str) and len(payload.url) > MAX_URL_LENGTH:
        errors.append(f"URL must not exceed {MAX_URL_LENGTH} characters")

    _check_notes(payload.notes, errors)

    for custom in payload.custom_fields:
        if not _is_text(custom.name):
            errors.append("Custom field name is required")
        if isinstance(custom.value, str) and len(custom.value) > MAX_CUSTOM_FIELD_LENGTH:
            errors.append(
                f"Custom field '{custom.name}' must not exceed {MAX_CUSTOM_FIELD_LENGTH} characters"
            )
    return errors


def validate_card(payload: CardPayload) -> List[str]:
    errors: List[str] = []
    _check_title(payload.title, errors)
    if not _is_text(payload.cardholder_name):
        errors.append("Cardholder name is required")
    digits = (payload.card_number or "").replace(" ", "").replace("-", "")
    if not digits.isdigit() or not 12 <= len(digits) <= 19:
        errors.append("Card number must be 12-19 digits")
    if not (str(payload.expiry_month).isdigit() and 1 <= int(payload.expiry_month) <= 12):
        errors.append("Expiry month must be 01-12")
    if not (str(payload.expiry_year).isdigit() and len(str(payload.expiry_year)) in (2, 4)):
        errors.append("Expiry year must be 2 or 4 digits")
    if not (str(payload.cvv).isdigit() and 3 <= len(str(payload.cvv)) <= 4):
        errors.append("CVV must be 3 or 4 digits")
    _check_notes(payload.notes, errors)
    return errors


def validate_note(payload: NotePayload) -> List[str]:
    errors: List[str] = []
    _check_title(payload.title, errors)
    if not isinstance(payload.content, str):
        errors.append("Content must be text")
    elif len(payload.content) > MAX_NOTES_LENGTH:
        errors.append(f"Content must not exceed {MAX_NOTES_LENGTH} characters")
    return errors


def validate_identity(payload: IdentityPayload) -> List[str]:
    errors: List[str] = []
    _check_title(payload.title, errors)
    if not _is_text(payload.first_name):
        errors.append("First name is required")
    if not _is_text(payload.last_name):
        errors.append("Last name is required")
    if payload.email:
        errors.extend(validate_email(payload.email))
    _check_notes(payload.notes, errors)
    return errors


_VALIDATORS = {
    LoginPayload: validate_login,
    CardPayload: validate_card,
    NotePayload: validate_note,
    IdentityPayload: validate_identity,
}


def validate_payload(payload: Payload) -> List[str]:
    validator = _VALIDATORS.get(type(payload))
    if validator is None:
        return [f"Unsupported payload type: {type(payload).__name__}"]
    return validator(payload)


def validate_registration(data: Dict[str, Any]) -> List[str]:
    errors = list(validate_email(data.get("email")))
    if not _is_text(data.get("authKey")):
        errors.append("Authentication key is required")
    if not _is_text(data.get("salt")):
        errors.append("Salt is required")
    errors.extend(validate_kdf_iterations(data.get("kdfIterations")))
    return errors
