# Autofill Module — Domain Helpers
#
# Matching rules (domains are compared case-insensitively):
#   - exact host match
#   - one host is a dot-suffixed subdomain of the other
#   - both share the same last-two-label root (www.example.com ~ example.com)
#
# The root rule over-matches multi-label public suffixes: a.co.uk and
# b.co.uk both have root "co.uk".  Accepted for now; a public suffix list
# would fix it.

from typing import Optional
from urllib.parse import urlparse

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


def extract_domain(url: str) -> Optional[str]:
    """Lower-cased hostname of an absolute URL, or None if there isn't one."""
    if not url:
        return None
    try:
        host = urlparse(url.strip()).hostname
    except ValueError:
        return None
    return host or None


def root_domain(domain: str) -> str:
    """Last two labels of a host (the match key for the root rule)."""
    parts = domain.split(".")
    if len(parts) >= 2:
        return ".".join(parts[-2:])
    return domain


def domains_match(domain1: str, domain2: str) -> bool:
    d1 = domain1.lower()
    d2 = domain2.lower()
    if d1 == d2:
        return True
    if d1.endswith("." + d2) or d2.endswith("." + d1):
        return True
    return root_domain(d1) == root_domain(d2)


def is_secure_page(url: str) -> bool:
    """HTTPS, or plain HTTP on localhost for development."""
    try:
        parsed = urlparse(url)
    except (TypeError, ValueError):
        return False
    if not parsed.hostname:
        return False
    if parsed.hostname in LOCAL_HOSTS:
        return True
    return parsed.scheme == "https"
