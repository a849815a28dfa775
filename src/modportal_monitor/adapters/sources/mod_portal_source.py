"""Factorio mod portal source."""

import asyncio
import logging
import re
from typing import Any, Optional
from urllib.parse import quote

import httpx

from modportal_monitor.config import PortalConfig
from modportal_monitor.core import CatalogSource, Item, ItemDetail, Release, SourceError

logger = logging.getLogger(__name__)

PLACEHOLDER_THUMBNAIL = "/assets/.thumb.png"
BUILTIN_DEPENDENCIES = {"base"}

_DEPENDENCY = re.compile(
    r"^(?P<prefix>\(\?\)|[!?~])?\s*(?P<name>[A-Za-z0-9_\- ]+?)\s*(?:(?:<=|>=|<|>|=)\s*[\d.]+)?\s*$"
)


def parse_dependencies(specifiers: list[str]) -> tuple[str, ...]:
    """Extract dependency names, ignoring incompatibilities and the base game."""
    names: list[str] = []
    for specifier in specifiers or []:
        match = _DEPENDENCY.match(specifier.strip())
        if not match:
            logger.debug("Unparseable dependency specifier %r", specifier)
            continue
        if match.group("prefix") == "!":
            continue
        name = match.group("name")
        if name in BUILTIN_DEPENDENCIES or name in names:
            continue
        names.append(name)
    return tuple(names)


class ModPortalSource(CatalogSource):
    """Fetch the catalog and per-mod details from the mod portal API."""

    name = "Factorio Mod Portal"

    def __init__(self, config: Optional[PortalConfig] = None) -> None:
        self.config = config or PortalConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/mods"
        self._last_request_time = 0.0

    def mod_url(self, name: str) -> str:
        return f"{self.base_url}/mod/{quote(name)}"

    def author_url(self, owner: str) -> str:
        return f"{self.base_url}/user/{quote(owner)}"

    def thumbnail_url(self, thumbnail: Optional[str]) -> str:
        if not thumbnail or thumbnail == PLACEHOLDER_THUMBNAIL:
            return ""
        return self.config.assets_url.rstrip("/") + thumbnail

    async def fetch_catalog(self) -> list[Item]:
        """Fetch every mod in one request."""
        data = await self._get_json(self.api_url, params={"page_size": "max"})
        results = data.get("results")
        if not isinstance(results, list):
            raise SourceError("Catalog response has no results list")

        items: list[Item] = []
        for raw in results:
            try:
                items.append(self._parse_item(raw))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed catalog entry: %s", e)
        return items

    async def fetch_item_detail(self, name: str, full: bool = True) -> ItemDetail:
        url = f"{self.api_url}/{quote(name)}"
        if full:
            url += "/full"
        data = await self._get_json(url)
        try:
            return self._parse_detail(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SourceError(f"Malformed details for {name}: {e}") from e

    def _parse_release(self, raw: Optional[dict[str, Any]]) -> Optional[Release]:
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ValueError(f"Release must be an object, got {type(raw).__name__}")
        info = raw.get("info_json") or {}
        if not isinstance(info, dict):
            raise ValueError(f"info_json must be an object, got {type(info).__name__}")
        return Release(
            version=raw["version"],
            released_at=raw["released_at"],
            runtime_version=info.get("factorio_version") or "",
            dependencies=parse_dependencies(info.get("dependencies") or []),
        )

    def _parse_item(self, raw: dict[str, Any]) -> Item:
        return Item(
            name=raw["name"],
            title=raw.get("title") or raw["name"],
            owner=raw.get("owner") or "",
            downloads_count=int(raw.get("downloads_count") or 0),
            category=raw.get("category") or "",
            summary=raw.get("summary") or "",
            url=self.mod_url(raw["name"]),
            latest_release=self._parse_release(raw.get("latest_release")),
        )

    def _parse_detail(self, raw: dict[str, Any]) -> ItemDetail:
        releases = tuple(
            release
            for release in (self._parse_release(r) for r in raw.get("releases") or [])
            if release is not None
        )
        latest = releases[-1] if releases else self._parse_release(raw.get("latest_release"))
        return ItemDetail(
            name=raw["name"],
            title=raw.get("title") or raw["name"],
            owner=raw.get("owner") or "",
            downloads_count=int(raw.get("downloads_count") or 0),
            category=raw.get("category") or "",
            summary=raw.get("summary") or "",
            url=self.mod_url(raw["name"]),
            latest_release=latest,
            created_at=raw.get("created_at") or "",
            releases=releases,
            changelog=raw.get("changelog") or "",
            thumbnail=self.thumbnail_url(raw.get("thumbnail")),
            source_url=raw.get("source_url") or "",
            homepage=raw.get("homepage") or "",
        )

    async def _get_json(self, url: str, params: Optional[dict[str, str]] = None) -> dict[str, Any]:
        """GET a JSON document with retry on rate limits and server errors."""
        await self._rate_limit_delay()

        last_error: Optional[Exception] = None
        for attempt in range(self.config.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout, follow_redirects=True) as client:
                    response = await client.get(url, params=params)
                    self._last_request_time = asyncio.get_running_loop().time()

                    if response.status_code == 200:
                        data = response.json()
                        if not isinstance(data, dict):
                            raise SourceError(f"Unexpected payload from {url}")
                        return data

                    if response.status_code == 429 or response.status_code >= 500:
                        last_error = SourceError(f"HTTP {response.status_code} from {url}")
                        delay = self._get_retry_delay(response, attempt)
                        logger.warning(
                            "HTTP %d from %s, retrying after %.1fs (attempt %d/%d)",
                            response.status_code, url, delay, attempt + 1, self.config.max_retries,
                        )
                        if attempt < self.config.max_retries - 1:
                            await asyncio.sleep(delay)
                        continue

                    raise SourceError(f"HTTP {response.status_code} from {url}")
            except httpx.RequestError as e:
                last_error = e
                if attempt < self.config.max_retries - 1:
                    delay = self.config.initial_retry_delay * (2 ** attempt)
                    logger.warning("Network error for %s, retrying after %.1fs: %s", url, delay, e)
                    await asyncio.sleep(delay)
                    continue
            except ValueError as e:
                raise SourceError(f"Invalid JSON from {url}: {e}") from e

        raise SourceError(f"Request to {url} failed after {self.config.max_retries} attempts: {last_error}")

    def _get_retry_delay(self, response: httpx.Response, attempt: int) -> float:
        """Use Retry-After when present, exponential backoff otherwise."""
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return self.config.initial_retry_delay * (2 ** attempt)

    async def _rate_limit_delay(self) -> None:
        if not self.config.request_delay:
            return
        elapsed = asyncio.get_running_loop().time() - self._last_request_time
        if elapsed < self.config.request_delay:
            await asyncio.sleep(self.config.request_delay - elapsed)
