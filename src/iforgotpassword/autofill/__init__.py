# Autofill Module - domain matching and credential lookup for page fills

from .domains import domains_match, extract_domain, is_secure_page, root_domain
from .matcher import AutofillMatcher, BrowserTab, MatchedCredential, require_safe_context

__all__ = [
    "AutofillMatcher",
    "BrowserTab",
    "MatchedCredential",
    "domains_match",
    "extract_domain",
    "is_secure_page",
    "require_safe_context",
    "root_domain",
]
