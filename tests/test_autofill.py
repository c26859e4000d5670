"""Tests for domain matching and the autofill credential matcher."""

import os

import pytest

from iforgotpassword.autofill import (
    AutofillMatcher,
    BrowserTab,
    domains_match,
    extract_domain,
    is_secure_page,
    require_safe_context,
)
from iforgotpassword.core.errors import AutofillBlockedError
from iforgotpassword.crypto.envelope import encrypt
from iforgotpassword.vault.models import ItemType, NotePayload

from conftest import audit_event_types, make_item


class TestDomains:

    @pytest.mark.parametrize("a,b", [
        ("example.com", "example.com"),
        ("Example.COM", "example.com"),
        ("login.example.com", "example.com"),
        ("example.com", "login.example.com"),
        ("www.example.com", "login.example.com"),
        ("a.b.example.com", "example.com"),
    ])
    def test_matches(self, a, b):
        assert domains_match(a, b)

    @pytest.mark.parametrize("a,b", [
        ("example.com", "example.org"),
        ("evil-example.com", "example.com"),
        ("example.com.evil.net", "example.com"),
        ("localhost", "example.com"),
    ])
    def test_does_not_match(self, a, b):
        assert not domains_match(a, b)

    def test_multi_label_suffix_over_matches(self):
        assert domains_match("foo.co.uk", "bar.co.uk")

    @pytest.mark.parametrize("url,expected", [
        ("https://Login.Example.com/path?q=1", "login.example.com"),
        ("http://localhost:8080/", "localhost"),
        ("https://user:pw@example.com:443/", "example.com"),
        ("not a url", None),
        ("", None),
        (None, None),
    ])
    def test_extract_domain(self, url, expected):
        assert extract_domain(url) == expected

    @pytest.mark.parametrize("url,expected", [
        ("https://example.com", True),
        ("http://example.com", False),
        ("http://localhost:3000/login", True),
        ("http://127.0.0.1/", True),
        ("ftp://example.com", False),
        ("javascript:alert(1)", False),
    ])
    def test_is_secure_page(self, url, expected):
        assert is_secure_page(url) is expected


class TestSafeContext:

    def test_https_page_without_tab(self):
        require_safe_context("https://example.com/login")

    def test_http_page_blocked(self):
        with pytest.raises(AutofillBlockedError):
            require_safe_context("http://example.com/login")

    def test_tab_must_have_url(self):
        with pytest.raises(AutofillBlockedError):
            require_safe_context("https://example.com/login", BrowserTab(url=None))

    def test_frame_from_other_host(self):
        with pytest.raises(AutofillBlockedError):
            require_safe_context("https://evil.net/frame", BrowserTab("https://example.com/login", 7))

    def test_insecure_tab(self):
        with pytest.raises(AutofillBlockedError):
            require_safe_context("https://example.com/", BrowserTab("http://example.com/"))

    def test_same_host_tab(self):
        require_safe_context("https://example.com/a", BrowserTab("https://example.com/b", 3))


class TestMatcher:

    @pytest.fixture
    def matcher(self, store):
        return AutofillMatcher(store)

    def test_returns_decrypted_matches(self, matcher, store, key, audit_dir):
        store.upsert(make_item(key, "a", title="Example", password="pw-a", url_domain="example.com"))
        store.upsert(make_item(key, "b", title="Other", url_domain="other.org"))

        results = matcher.get_matching_credentials("https://login.example.com/signin", key)

        assert [(c.id, c.title, c.username, c.password) for c in results] == [
            ("a", "Example", "alice", "pw-a"),
        ]
        assert results[0].url == "https://example.com/login"
        assert "autofill.matched" in audit_event_types(audit_dir)

    def test_repr_hides_password(self, matcher, store, key):
        store.upsert(make_item(key, "a", password="pw-secret"))
        [credential] = matcher.get_matching_credentials("https://example.com/", key)
        assert "pw-secret" not in repr(credential)

    def test_insecure_page_refused(self, matcher, store, key, audit_dir):
        store.upsert(make_item(key, "a"))
        assert matcher.get_matching_credentials("http://example.com/login", key) == []
        assert audit_event_types(audit_dir) == ["autofill.blocked"]

    def test_foreign_frame_refused(self, matcher, store, key):
        store.upsert(make_item(key, "a"))
        tab = BrowserTab("https://other.org/", tab_id=1)
        assert matcher.get_matching_credentials("https://example.com/login", key, tab) == []

    def test_matching_tab_allowed(self, matcher, store, key):
        store.upsert(make_item(key, "a"))
        tab = BrowserTab("https://example.com/login", tab_id=1)
        assert len(matcher.get_matching_credentials("https://example.com/login", key, tab)) == 1

    def test_no_page_domain(self, matcher, key):
        assert matcher.get_matching_credentials("about:blank", key) == []

    def test_skips_tombstones_and_non_logins(self, matcher, store, key):
        store.upsert(make_item(key, "gone"))
        store.soft_delete("gone")
        note = make_item(key, "note")
        blob = encrypt(NotePayload(title="n", content="c").to_dict(), key).to_wire()
        note.item_type = ItemType.NOTE
        note.encrypted_data, note.iv, note.auth_tag = blob["encryptedData"], blob["iv"], blob["authTag"]
        store.upsert(note)
        assert matcher.get_matching_credentials("https://example.com/", key) == []

    def test_undecryptable_match_is_skipped(self, matcher, store, key):
        store.upsert(make_item(key, "good", title="Good"))
        store.upsert(make_item(os.urandom(32), "foreign", title="Foreign"))
        results = matcher.get_matching_credentials("https://example.com/", key)
        assert [c.id for c in results] == ["good"]

    def test_sibling_subdomains_match_lookalikes_do_not(self, matcher, store, key):
        store.upsert(make_item(key, "sso", url_domain="login.example.com"))
        store.upsert(make_item(key, "root", url_domain="example.com"))
        store.upsert(make_item(key, "lookalike", url_domain="badexample.com"))
        store.upsert(make_item(key, "elsewhere", url_domain="example.org"))
        results = matcher.get_matching_credentials("https://www.example.com/", key)
        assert sorted(c.id for c in results) == ["root", "sso"]
