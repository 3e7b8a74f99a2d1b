"""Collaborator interfaces consumed by the engine, plus block detection"""

from typing import Any, Optional, Protocol, Tuple, Union

from .models import BlockSignal, Credentials, LoginOutcome, RemoteResponse, RequestDescriptor
from .proxy_pool import ProxyConfig


class RemoteSessionDriver(Protocol):
    """
    Opens and holds a scraping-capable session against the remote site.

    Implementations report automated-traffic detection by returning a
    BlockSignal instead of a handle or a response; the engine never looks
    at the detection heuristic itself.
    """

    async def open(self, proxy: Optional[ProxyConfig] = None) -> Union[Any, BlockSignal]:
        ...

    async def request(
        self, handle: Any, descriptor: RequestDescriptor
    ) -> Union[RemoteResponse, BlockSignal]:
        ...

    async def close(self, handle: Any) -> None:
        ...


class CredentialFlowDriver(Protocol):
    """Drives the multi-step login UI on a handle opened by a session driver"""

    async def login(self, handle: Any, credentials: Credentials) -> LoginOutcome:
        ...

    async def submit_challenge(self, handle: Any, code: str) -> LoginOutcome:
        ...


# Page markers of a hard block (access denied / IP block pages)
ACCESS_DENIED_PATTERNS = [
    "<title>access denied</title>",
    "<h1>access denied</h1>",
    "you don't have permission to access",
    "errors.edgesuite.net",
]

TITLE_BLOCK_PATTERNS = {
    "access_denied_title": "<title>access denied</title>",
    "permission_denied_title": "<title>permission denied</title>",
    "forbidden_title": "<title>403 forbidden</title>",
    "blocked_title": "<title>blocked</title>",
}

# Bot challenges served in place of the page (DataDome on this site)
CHALLENGE_MARKERS = {
    "captcha_delivery": "captcha-delivery.com",
    "datadome_challenge": "var dd={",
}

URL_BLOCK_PATTERNS = {
    "captcha_url": "captcha",
    "blocked_path": "/blocked",
    "access_denied_path": "/access_denied",
}


def detect_block(url: str, page_content: str) -> Tuple[bool, str]:
    """
    Detect if a page or response body is a block or bot challenge.

    Returns:
        (is_blocked, block_type)
    """
    content_lower = (page_content or "").lower()
    url_lower = (url or "").lower()

    # Akamai-style access denied needs two markers for confidence
    matches = sum(1 for pattern in ACCESS_DENIED_PATTERNS if pattern in content_lower)
    if matches >= 2:
        return True, "access_denied"

    for block_type, pattern in TITLE_BLOCK_PATTERNS.items():
        if pattern in content_lower:
            return True, block_type

    for block_type, pattern in URL_BLOCK_PATTERNS.items():
        if pattern in url_lower:
            return True, block_type

    for block_type, marker in CHALLENGE_MARKERS.items():
        if marker in content_lower:
            return True, block_type

    return False, "none"
