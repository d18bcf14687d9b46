"""
Relic community leaderboard API client (Dawn of War: Definitive Edition).

API Endpoints (all GET, JSON):
- /community/leaderboard/getRecentMatchHistory?title=..&aliases=["alias"]&count=N
- /community/leaderboard/getRecentMatchHistoryByProfileId?title=..&profile_id=..&count=N
- /community/leaderboard/getPersonalStat?title=..&profile_names=["/steam/<id64>"]

Every request goes through the shared RateLimiter, so the request cap and the
inter-request delay apply across the whole process. A request is only counted
once it has returned a 2xx response.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from crawler.core.config import settings
from crawler.core.errors import ApiError
from crawler.core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

LEADERBOARD_PATH = "/community/leaderboard"

# Response bodies are kept on ApiError for diagnosis; very long bodies are cut
MAX_ERROR_BODY = 500


class RelicClient:
    """
    Thin async wrapper over the leaderboard endpoints.

    Usage:
        limiter = RateLimiter(request_cap=6000, delay_seconds=0.35)
        async with RelicClient(limiter) as client:
            payload = await client.fetch_match_history_by_profile_id("123", count=200)
    """

    def __init__(
        self,
        limiter: RateLimiter,
        base_url: str = settings.RELIC_BASE_URL,
        title: str = settings.RELIC_TITLE,
        timeout: float = settings.RELIC_TIMEOUT_SECONDS,
        user_agent: str = settings.RELIC_USER_AGENT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.limiter = limiter
        self.title = title
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
        )

    @property
    def request_count(self) -> int:
        return self.limiter.request_count

    async def fetch(self, endpoint: str, params: Dict[str, Any], context: str) -> Any:
        """
        GET one leaderboard endpoint and decode the JSON body.

        Raises:
            RateCapExceeded: cap reached, no request was sent
            ApiError: non-2xx response, network failure or undecodable body
        """
        url = f"{LEADERBOARD_PATH}/{endpoint}"
        query = {"title": self.title, **params}

        async with self.limiter.slot(context):
            try:
                response = await self._http.get(url, params=query)
            except httpx.HTTPError as e:
                raise ApiError(context, None, str(e)) from e

            if response.status_code < 200 or response.status_code >= 300:
                raise ApiError(context, response.status_code, response.text[:MAX_ERROR_BODY])

            try:
                data = response.json()
            except ValueError as e:
                raise ApiError(context, response.status_code, response.text[:MAX_ERROR_BODY]) from e

        logger.debug(f"[Relic] {endpoint} ok for {context} (requests={self.limiter.request_count})")
        return data

    async def fetch_match_history_by_alias(self, alias: str, count: int) -> Any:
        return await self.fetch(
            "getRecentMatchHistory",
            {"aliases": json.dumps([alias]), "count": count},
            context=f"alias:{alias}",
        )

    async def fetch_match_history_by_profile_id(self, profile_id: str, count: int) -> Any:
        return await self.fetch(
            "getRecentMatchHistoryByProfileId",
            {"profile_id": profile_id, "count": count},
            context=f"profile:{profile_id}",
        )

    async def fetch_personal_stats(self, steam_id64: str) -> Any:
        return await self.fetch(
            "getPersonalStat",
            {"profile_names": json.dumps([f"/steam/{steam_id64}"])},
            context=f"steam:{steam_id64}",
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "RelicClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = ["RelicClient", "LEADERBOARD_PATH"]
