"""
API URL allow-list.

Upstream keys may only point at hosts the operator has approved
(policy.allowed_api_hosts in config.yaml). An empty list allows any host.
Entries are host names, optionally with a leading "*." to cover subdomains.
"""

from __future__ import annotations

import logging
from urllib.parse import urlparse

from chatrelay.errors import ChatError, ErrorKind

logger = logging.getLogger(__name__)


class ApiUrlPolicy:
    def __init__(self, allowed_hosts: list[str] | None = None):
        self.allowed_hosts = [h.lower().strip() for h in allowed_hosts or [] if h.strip()]

    def _host_allowed(self, host: str) -> bool:
        for allowed in self.allowed_hosts:
            if allowed.startswith("*."):
                suffix = allowed[1:]
                if host.endswith(suffix) or host == allowed[2:]:
                    return True
            elif host == allowed:
                return True
        return False

    def check(self, url: str):
        """Raise ChatError(KeyNotPermitted) unless `url` may be used."""
        host = (urlparse(url).hostname or "").lower()
        if not host:
            raise ChatError(ErrorKind.KEY_NOT_PERMITTED, f"invalid API URL: {url!r}")
        if not self.allowed_hosts:
            return
        if not self._host_allowed(host):
            logger.warning("Rejected API URL %s (host not in allow-list)", url)
            raise ChatError(
                ErrorKind.KEY_NOT_PERMITTED,
                f"API URL {url} is not in the list of permitted endpoints",
            )
