"""Backend credentials.

NovelAI needs either a persistent API token (validated once) or an access
token obtained by logging in with email/password. Third-party backends use
the configured token as-is.
"""

import asyncio
import base64
import hashlib
import logging
from typing import Awaitable, Callable, Optional

import httpx
from argon2.low_level import Type, hash_secret_raw

logger = logging.getLogger(__name__)

CREDENTIAL_KEYS = ("TOKEN", "TYPE", "EMAIL", "PASSWORD", "API_ENDPOINT")


def calc_access_key(email: str, password: str) -> str:
    """Derive the NovelAI access key (Argon2id over a blake2b salt)."""
    pre_salt = f"{password[:6]}{email}novelai_data_access_key"
    salt = hashlib.blake2b(pre_salt.encode("utf-8"), digest_size=16).digest()
    raw = hash_secret_raw(
        password.encode("utf-8"),
        salt,
        time_cost=2,
        memory_cost=2000000 // 1024,
        parallelism=1,
        hash_len=64,
        type=Type.ID,
    )
    return base64.urlsafe_b64encode(raw).decode("utf-8")[:64]


async def login(config) -> Optional[str]:
    """Resolve the bearer token for the configured backend."""
    if config.TYPE == "token":
        if not config.TOKEN:
            raise ValueError("NAI_TOKEN not configured")
        async with httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT) as client:
            response = await client.get(
                f"{config.API_ENDPOINT.rstrip('/')}/user/subscription",
                headers={"authorization": f"Bearer {config.TOKEN}"},
            )
        response.raise_for_status()
        logger.info("[Auth] NovelAI token validated")
        return config.TOKEN

    if config.TYPE == "login":
        if not config.EMAIL or not config.PASSWORD:
            raise ValueError("NAI_EMAIL and NAI_PASSWORD are required for login")
        key = await asyncio.to_thread(calc_access_key, config.EMAIL, config.PASSWORD)
        async with httpx.AsyncClient(timeout=config.REQUEST_TIMEOUT) as client:
            response = await client.post(
                f"{config.API_ENDPOINT.rstrip('/')}/user/login",
                json={"key": key},
            )
        response.raise_for_status()
        logger.info("[Auth] Logged in to NovelAI")
        return response.json()["accessToken"]

    return config.TOKEN


class TokenCache:
    """Cached credential with in-flight de-duplication.

    Concurrent callers during an uncached fetch all await the same task. A
    failed fetch is not cached.
    """

    def __init__(self, fetch: Callable[[], Awaitable[Optional[str]]]):
        self._fetch = fetch
        self._task: Optional[asyncio.Future] = None

    async def get(self) -> Optional[str]:
        if self._task is None:
            self._task = asyncio.ensure_future(self._fetch())
        task = self._task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._task is task:
                self._task = None
            raise

    def invalidate(self) -> None:
        if self._task is not None:
            logger.info("[Auth] Credential cache invalidated")
        self._task = None
