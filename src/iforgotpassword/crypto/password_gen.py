# Crypto Module — Password Generation and Strength Checks
#
# Generated passwords draw from the OS CSPRNG (`secrets`) and always contain
# at least one character from every enabled class.

import secrets
import string
from dataclasses import dataclass, fields, replace
from typing import List, Tuple

from ..core.errors import ValidationError

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

SIMILAR_CHARS = "0Ol1I"
AMBIGUOUS_SYMBOLS = "{}[]()/\\'\"`~,;:.<>"

MIN_LENGTH = 4
MAX_LENGTH = 128

MIN_MASTER_PASSWORD_LENGTH = 8
RECOMMENDED_MASTER_PASSWORD_LENGTH = 12
MAX_MASTER_PASSWORD_LENGTH = 128


@dataclass
class PasswordOptions:
    length: int = 16
    lowercase: bool = True
    uppercase: bool = True
    digits: bool = True
    symbols: bool = True
    exclude_similar: bool = False
    exclude_ambiguous: bool = False


def _character_classes(options: PasswordOptions) -> List[str]:
    classes = []
    if options.lowercase:
        classes.append(LOWERCASE)
    if options.uppercase:
        classes.append(UPPERCASE)
    if options.digits:
        classes.append(DIGITS)
    if options.symbols:
        symbols = SYMBOLS
        if options.exclude_ambiguous:
            symbols = "".join(c for c in symbols if c not in AMBIGUOUS_SYMBOLS)
        classes.append(symbols)

    if options.exclude_similar:
        classes = ["".join(c for c in chars if c not in SIMILAR_CHARS) for chars in classes]

    return [chars for chars in classes if chars]


def generate_password(options: PasswordOptions = None, **overrides) -> str:
    """
    Generate a random password.

    Keyword overrides are applied on top of ``options`` (or the defaults),
    e.g. ``generate_password(length=24, symbols=False)``.

    Raises:
        ValidationError: length out of range or no character class enabled
    """
    known = {f.name for f in fields(PasswordOptions)}
    unknown = set(overrides) - known
    if unknown:
        raise ValidationError(f"Unknown password option: {sorted(unknown)[0]}")
    options = replace(options or PasswordOptions(), **overrides)

    if options.length < MIN_LENGTH:
        raise ValidationError(f"Password length must be at least {MIN_LENGTH} characters")
    if options.length > MAX_LENGTH:
        raise ValidationError(f"Password length cannot exceed {MAX_LENGTH} characters")

    classes = _character_classes(options)
    if not classes:
        raise ValidationError("At least one character type must be selected")

    pool = "".join(classes)
    chars = [secrets.choice(charset) for charset in classes]
    chars.extend(secrets.choice(pool) for _ in range(options.length - len(chars)))

    # Fisher-Yates so the required characters don't sit at the front
    for i in range(len(chars) - 1, 0, -1):
        j = secrets.randbelow(i + 1)
        chars[i], chars[j] = chars[j], chars[i]

    return "".join(chars)


def calculate_strength(password: str) -> Tuple[int, str]:
    """Score a password 0-100 and label it (Very Weak .. Very Strong)."""
    if not password:
        return 0, "Very Weak"

    length = len(password)
    if length >= 16:
        score = 40
    elif length >= 12:
        score = 30
    elif length >= 8:
        score = 20
    else:
        score = 10

    complexity = sum([
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(not c.isalnum() for c in password),
    ])
    score += complexity * 10
    score += int(len(set(password)) / length * 20)
    score = max(0, min(100, score))

    if score >= 80:
        label = "Very Strong"
    elif score >= 60:
        label = "Strong"
    elif score >= 40:
        label = "Medium"
    elif score >= 20:
        label = "Weak"
    else:
        label = "Very Weak"
    return score, label


def check_master_password(password: str) -> Tuple[bool, str]:
    """
    Verify a master password meets the minimum requirements.

    Requirements:
    - 8 to 128 characters
    - Mix of uppercase, lowercase, numbers
    - Not a well-known weak password

    Returns:
        (is_valid, error_message)
    """
    if len(password) < MIN_MASTER_PASSWORD_LENGTH:
        return False, f"Master password must be at least {MIN_MASTER_PASSWORD_LENGTH} characters long"

    if len(password) > MAX_MASTER_PASSWORD_LENGTH:
        return False, f"Master password cannot exceed {MAX_MASTER_PASSWORD_LENGTH} characters"

    if not any(c.isupper() for c in password):
        return False, "Master password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Master password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Master password must contain at least one number"

    weak_passwords = {
        "password123", "Password123", "Admin123456",
        "Welcome12345", "Passw0rd123", "123456789012", "Password1",
    }
    if password in weak_passwords:
        return False, "This password is too common. Please choose a stronger password."

    return True, ""
