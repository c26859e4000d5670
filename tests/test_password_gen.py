"""Tests for the password generator and master password checks."""

import pytest

from iforgotpassword.core.errors import ValidationError
from iforgotpassword.crypto.password_gen import (
    AMBIGUOUS_SYMBOLS,
    DIGITS,
    LOWERCASE,
    SIMILAR_CHARS,
    SYMBOLS,
    UPPERCASE,
    PasswordOptions,
    calculate_strength,
    check_master_password,
    generate_password,
)


class TestGeneratePassword:

    def test_default_length_and_classes(self):
        password = generate_password()
        assert len(password) == 16
        assert any(c in LOWERCASE for c in password)
        assert any(c in UPPERCASE for c in password)
        assert any(c in DIGITS for c in password)
        assert any(c in SYMBOLS for c in password)

    def test_every_enabled_class_present_at_minimum_length(self):
        for _ in range(50):
            password = generate_password(length=4)
            assert any(c in LOWERCASE for c in password)
            assert any(c in UPPERCASE for c in password)
            assert any(c in DIGITS for c in password)
            assert any(c in SYMBOLS for c in password)

    def test_digits_only(self):
        password = generate_password(length=32, lowercase=False, uppercase=False, symbols=False)
        assert password.isdigit()

    def test_exclude_similar(self):
        for _ in range(20):
            password = generate_password(length=64, exclude_similar=True)
            assert not set(password) & set(SIMILAR_CHARS)

    def test_exclude_ambiguous(self):
        for _ in range(20):
            password = generate_password(length=64, exclude_ambiguous=True)
            assert not set(password) & set(AMBIGUOUS_SYMBOLS)

    def test_options_object_not_mutated(self):
        options = PasswordOptions(length=20)
        generate_password(options, length=30)
        assert options.length == 20

    def test_passwords_differ(self):
        assert len({generate_password() for _ in range(20)}) == 20

    @pytest.mark.parametrize("length", [0, 3, 129])
    def test_length_bounds(self, length):
        with pytest.raises(ValidationError):
            generate_password(length=length)

    def test_no_class_selected(self):
        with pytest.raises(ValidationError):
            generate_password(lowercase=False, uppercase=False, digits=False, symbols=False)

    def test_unknown_option(self):
        with pytest.raises(ValidationError):
            generate_password(emoji=True)


class TestStrength:

    def test_empty_is_very_weak(self):
        assert calculate_strength("") == (0, "Very Weak")

    def test_long_mixed_is_very_strong(self):
        score, label = calculate_strength("Tr0ub4dor&3-Horse!Battery")
        assert score >= 80
        assert label == "Very Strong"

    def test_short_lowercase_is_weak(self):
        score, label = calculate_strength("abc")
        assert score < 40
        assert label in ("Weak", "Very Weak")


class TestMasterPassword:

    def test_accepts_good_password(self):
        assert check_master_password("Correct-Horse-9") == (True, "")

    @pytest.mark.parametrize("password", [
        "Short1A",
        "alllowercase1",
        "ALLUPPERCASE1",
        "NoDigitsHere",
        "Password123",
        "A1a" * 50,
    ])
    def test_rejects(self, password):
        ok, message = check_master_password(password)
        assert not ok
        assert message
