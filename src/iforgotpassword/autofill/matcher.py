# Autofill Module — Credential Matcher
#
# Given the URL of the page asking for credentials, return the decrypted
# login items whose stored urlDomain matches it.
#
# Autofill is refused outright on non-HTTPS pages (localhost excepted) and
# when the requesting frame's host differs from the tab's top-level host.

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.errors import AutofillBlockedError, DecryptionError, ValidationError
from ..crypto.envelope import decrypt
from ..vault.local_store import LocalStore
from ..vault.models import ItemType, payload_from_dict
from .domains import domains_match, extract_domain, is_secure_page, root_domain

logger = logging.getLogger(__name__)


@dataclass
class BrowserTab:
    """The top-level browsing context a fill request came from."""
    url: Optional[str]
    tab_id: Optional[int] = None


@dataclass
class MatchedCredential:
    id: str
    title: str
    username: str
    password: str
    url: Optional[str] = None

    def __repr__(self) -> str:
        return f"MatchedCredential(id={self.id!r}, title={self.title!r}, username={self.username!r})"


def require_safe_context(page_url: str, tab: Optional[BrowserTab] = None) -> None:
    """Raise AutofillBlockedError unless filling into page_url is allowed."""
    if tab is not None:
        if not tab.url:
            raise AutofillBlockedError("Autofill blocked: request did not come from a browser tab")
        if not is_secure_page(tab.url):
            raise AutofillBlockedError("Autofill blocked: page is not secure (HTTPS required)")
        tab_host = extract_domain(tab.url)
        page_host = extract_domain(page_url)
        if page_host is None or tab_host != page_host:
            raise AutofillBlockedError("Autofill blocked: frame origin differs from the tab")

    if not is_secure_page(page_url):
        raise AutofillBlockedError("Autofill blocked: page is not secure (HTTPS required)")


class AutofillMatcher:
    """Finds and decrypts login credentials for a page."""

    def __init__(self, store: LocalStore, audit: Optional[AuditLogger] = None):
        self.store = store
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    def get_matching_credentials(
        self,
        page_url: str,
        encryption_key: bytes,
        tab: Optional[BrowserTab] = None,
    ) -> List[MatchedCredential]:
        page_domain = extract_domain(page_url)
        if page_domain is None:
            return []

        try:
            require_safe_context(page_url, tab)
        except AutofillBlockedError as exc:
            logger.warning("%s (%s)", exc, page_domain)
            self.audit.log_event(
                EventType.AUTOFILL_BLOCKED,
                EventSeverity.INVESTIGATE,
                str(exc),
                details={"domain": page_domain},
            )
            return []

        # every match shares the page's root, so the store narrows by it
        candidates = [
            item for item in self.store.get_by_domain(root_domain(page_domain))
            if domains_match(page_domain, item.url_domain)
        ]

        credentials = []
        for item in candidates:
            try:
                login = payload_from_dict(ItemType.LOGIN, decrypt(item.blob, encryption_key))
            except (DecryptionError, ValidationError) as exc:
                logger.error("Failed to decrypt credential %s: %s", item.id, exc)
                continue
            credentials.append(MatchedCredential(
                id=item.id,
                title=login.title,
                username=login.username,
                password=login.password,
                url=login.url,
            ))

        if credentials:
            self.audit.log_event(
                EventType.AUTOFILL_MATCHED,
                EventSeverity.INFO,
                f"{len(credentials)} credential(s) matched",
                details={"domain": page_domain, "item_ids": [c.id for c in credentials]},
            )
        return credentials
