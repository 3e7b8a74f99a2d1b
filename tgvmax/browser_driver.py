"""Camoufox + curl_cffi implementation of the remote session driver"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union

from curl_cffi.requests import AsyncSession
from loguru import logger

from .config import BASE_URL, DEFAULT_PAGE_TIMEOUT, DEFAULT_REQUEST_TIMEOUT, SEARCH_PAGE_URL
from .drivers import detect_block
from .models import BlockSignal, RemoteResponse, RequestDescriptor
from .proxy_pool import ProxyConfig

CONSENT_SELECTORS = [
    "#didomi-notice-agree-button",
    'button:has-text("Tout accepter")',
    'button:has-text("Accepter")',
    "#onetrust-accept-btn-handler",
]

BLOCK_STATUSES = {403, 451}


@dataclass
class BrowserSession:
    """Everything needed to replay the browser's session over plain HTTP"""

    cookies: Dict[str, str]
    user_agent: str
    referer: str
    proxy: Optional[ProxyConfig] = None
    created_at: datetime = field(default_factory=datetime.now)
    closed: bool = False


class CamoufoxSessionDriver:
    """
    Opens a session in a real browser, then replays it with curl_cffi.

    The browser only runs during open(): it loads the search page so the
    anti-bot layer issues its cookies, which are captured and the browser
    closed. Requests then go out with Firefox TLS impersonation so they
    match the browser that earned the cookies.

    Since the page is gone once open() returns, this driver only serves the
    anonymous search session; a per-user driver running a CredentialFlowDriver
    must keep its page alive for the login and code steps.
    """

    def __init__(
        self,
        headless: bool = True,
        page_timeout: float = DEFAULT_PAGE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        settle_time: float = 2.0,
    ):
        self.headless = headless
        self.page_timeout = page_timeout
        self.request_timeout = request_timeout
        self.settle_time = settle_time
        self.impersonate = "firefox135"

    async def open(self, proxy: Optional[ProxyConfig] = None) -> Union[BrowserSession, BlockSignal]:
        from camoufox.async_api import AsyncCamoufox

        launch_options: Dict[str, Any] = {"headless": self.headless}
        if proxy:
            launch_options["proxy"] = proxy.to_browser_dict()

        start_time = time.time()
        async with AsyncCamoufox(**launch_options) as browser:
            page = await browser.new_page()

            logger.info("Step 1/3: Loading search page...")
            await page.goto(
                SEARCH_PAGE_URL,
                wait_until="domcontentloaded",
                timeout=self.page_timeout * 1000,
            )
            await page.wait_for_timeout(self.settle_time * 1000)

            is_blocked, block_type = detect_block(page.url, await page.content())
            if is_blocked:
                logger.error(f"🚫 Block page on session open ({block_type})")
                return BlockSignal(reason=block_type)

            logger.info("Step 2/3: Accepting cookie consent...")
            if await self._accept_cookie_consent(page):
                await page.wait_for_timeout(1000)
            else:
                logger.debug("Consent banner not found (may already be accepted)")

            logger.info("Step 3/3: Capturing session...")
            user_agent = await page.evaluate("navigator.userAgent")
            cookies = {c["name"]: c["value"] for c in await page.context.cookies()}
            referer = page.url

        logger.debug(
            f"✓ Captured {len(cookies)} cookies in {time.time() - start_time:.1f}s"
        )
        return BrowserSession(
            cookies=cookies,
            user_agent=user_agent,
            referer=referer,
            proxy=proxy,
        )

    async def _accept_cookie_consent(self, page) -> bool:
        for selector in CONSENT_SELECTORS:
            try:
                button = await page.wait_for_selector(selector, timeout=3000, state="visible")
            except Exception:
                continue
            if button:
                await button.click()
                return True
        return False

    def _build_headers(self, session: BrowserSession, descriptor: RequestDescriptor) -> Dict[str, str]:
        headers = {
            "User-Agent": session.user_agent,
            "Referer": session.referer,
            "Origin": BASE_URL,
        }
        headers.update(descriptor.headers)
        if descriptor.body is not None:
            headers.setdefault("Content-Type", "application/json")
        return headers

    async def request(
        self, handle: BrowserSession, descriptor: RequestDescriptor
    ) -> Union[RemoteResponse, BlockSignal]:
        if handle.closed:
            return BlockSignal(reason="session_closed")

        label = descriptor.label or descriptor.url
        proxies = None
        if handle.proxy:
            proxy_url = handle.proxy.to_url()
            proxies = {"http": proxy_url, "https": proxy_url}

        async with AsyncSession(impersonate=self.impersonate) as session:
            start_time = time.time()
            response = await session.request(
                descriptor.method,
                descriptor.url,
                json=descriptor.body,
                headers=self._build_headers(handle, descriptor),
                cookies=handle.cookies,
                proxies=proxies,
                timeout=self.request_timeout,
            )
            logger.debug(
                f"   ← [{label}] {response.status_code} ({time.time() - start_time:.2f}s)"
            )

        for name, value in response.cookies.items():
            handle.cookies[name] = value

        content_type = response.headers.get("content-type", "").lower()
        if response.status_code in BLOCK_STATUSES:
            return BlockSignal(reason=f"http_{response.status_code}")
        if "text/html" in content_type:
            is_blocked, block_type = detect_block(descriptor.url, response.text)
            if is_blocked:
                return BlockSignal(reason=block_type)

        body: Any = None
        if response.status_code != 204 and response.content:
            if "json" in content_type:
                try:
                    body = response.json()
                except ValueError:
                    body = response.text
            else:
                body = response.text

        return RemoteResponse(
            status=response.status_code,
            body=body,
            headers=dict(response.headers),
        )

    async def close(self, handle: BrowserSession) -> None:
        if handle is None:
            return
        handle.cookies.clear()
        handle.closed = True
