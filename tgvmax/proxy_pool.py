"""Proxy pool used to rotate the outbound network identity after blocks"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from .config import DEFAULT_PROXY_COOLDOWN_MINUTES


@dataclass
class ProxyConfig:
    """Configuration and health of a single proxy"""

    host: str
    port: int
    id: int
    username: Optional[str] = None
    password: Optional[str] = None

    total_requests: int = 0
    successful_requests: int = 0
    blocked_count: int = 0
    cooldown_until: Optional[datetime] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_url(self) -> str:
        """Proxy URL for curl_cffi"""
        if self.username:
            return f"http://{self.username}:{self.password}@{self.host}:{self.port}"
        return f"http://{self.host}:{self.port}"

    def to_browser_dict(self) -> Dict[str, str]:
        """Proxy settings in the Playwright/Camoufox format"""
        proxy = {"server": f"http://{self.host}:{self.port}"}
        if self.username:
            proxy["username"] = self.username
            proxy["password"] = self.password or ""
        return proxy

    def is_available(self, now: datetime) -> bool:
        if self.cooldown_until and now >= self.cooldown_until:
            self.cooldown_until = None
            logger.info(f"✅ Proxy #{self.id} cooldown expired - back in rotation")
        return self.cooldown_until is None

    def get_success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.successful_requests / self.total_requests) * 100


class ProxyPool:
    """
    Round-robin proxy rotation with cooldown after IP blocks.

    The file format is one proxy per line, either host:port or
    host:port:username:password. Blank lines and # comments are skipped.
    """

    def __init__(
        self,
        proxy_file: Path,
        cooldown_minutes: int = DEFAULT_PROXY_COOLDOWN_MINUTES,
    ):
        self.proxy_file = proxy_file
        self.cooldown_minutes = cooldown_minutes
        self.proxies: List[ProxyConfig] = []
        self.current_index = 0
        self.lock = asyncio.Lock()

        self._load_proxies()

        logger.info(
            f"🌐 Proxy pool initialized: {len(self.proxies)} proxies, "
            f"cooldown {cooldown_minutes} min"
        )

    def _load_proxies(self) -> None:
        if not self.proxy_file.exists():
            raise FileNotFoundError(f"Proxy file not found: {self.proxy_file}")

        for line_no, line in enumerate(self.proxy_file.read_text().splitlines(), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split(":")
            if len(parts) not in (2, 4):
                logger.warning(f"Skipping invalid proxy line {line_no}: {line}")
                continue

            try:
                port = int(parts[1])
            except ValueError:
                logger.warning(f"Skipping proxy line {line_no} with invalid port: {parts[1]}")
                continue

            username, password = (parts[2], parts[3]) if len(parts) == 4 else (None, None)
            self.proxies.append(
                ProxyConfig(
                    host=parts[0],
                    port=port,
                    id=len(self.proxies),
                    username=username,
                    password=password,
                )
            )

        if not self.proxies:
            raise ValueError(f"No valid proxies in {self.proxy_file}")

    async def next_proxy(self, exclude: Optional[ProxyConfig] = None) -> Optional[ProxyConfig]:
        """
        Next proxy in rotation that is not cooling down.

        Args:
            exclude: Proxy to skip, normally the one that was just blocked

        Returns:
            A proxy, or None if every proxy is cooling down
        """
        async with self.lock:
            now = datetime.now()
            for _ in range(len(self.proxies)):
                proxy = self.proxies[self.current_index % len(self.proxies)]
                self.current_index += 1
                if proxy is exclude:
                    continue
                if proxy.is_available(now):
                    logger.debug(f"🌐 Using proxy #{proxy.id} ({proxy.address})")
                    return proxy

            logger.error("⚠️ No proxy available, all are cooling down")
            return None

    async def mark_blocked(self, proxy: ProxyConfig) -> None:
        async with self.lock:
            proxy.total_requests += 1
            proxy.blocked_count += 1
            proxy.cooldown_until = datetime.now() + timedelta(minutes=self.cooldown_minutes)
            logger.warning(
                f"🚫 Proxy #{proxy.id} ({proxy.address}) blocked, "
                f"cooling down until {proxy.cooldown_until.strftime('%H:%M:%S')}"
            )

    async def mark_success(self, proxy: ProxyConfig) -> None:
        async with self.lock:
            proxy.total_requests += 1
            proxy.successful_requests += 1

    def get_stats(self) -> Dict:
        now = datetime.now()
        active = [p for p in self.proxies if p.is_available(now)]
        return {
            "total_proxies": len(self.proxies),
            "active_proxies": len(active),
            "cooling_proxies": len(self.proxies) - len(active),
            "total_blocks": sum(p.blocked_count for p in self.proxies),
            "proxies": [
                {
                    "id": p.id,
                    "host": p.address,
                    "status": "active" if p in active else "cooling",
                    "requests": p.total_requests,
                    "success_rate": p.get_success_rate(),
                    "blocks": p.blocked_count,
                    "cooldown_until": p.cooldown_until.isoformat() if p.cooldown_until else None,
                }
                for p in self.proxies
            ],
        }
