from __future__ import annotations

import logging
from urllib.parse import urlsplit

import tldextract

_LOGGER = logging.getLogger("addons_search.monitor.domains")


class PublicSuffixResolver:
    """Registrable domain ("eTLD+1") of a URL, from the bundled Public Suffix List snapshot.

    The suffix list is never fetched over the network: resolution happens on the redirect
    path and must not block on I/O.
    """

    def __init__(self, *, include_private: bool = False) -> None:
        self._extract = tldextract.TLDExtract(
            cache_dir=None,
            suffix_list_urls=(),
            include_psl_private_domains=include_private,
        )

    def registrable_domain(self, url: str) -> str | None:
        if not isinstance(url, str) or not url.strip():
            return None
        try:
            host = urlsplit(url.strip()).hostname
        except ValueError:
            return None
        if not host:
            return None
        try:
            ext = self._extract(host)
        except Exception:  # noqa: BLE001
            _LOGGER.warning("public suffix lookup failed host=%s", host, exc_info=True)
            return None
        if not ext.domain or not ext.suffix:
            # IP literals, bare hostnames and suffix-only hosts have no registrable domain.
            return None
        return f"{ext.domain}.{ext.suffix}".lower()
