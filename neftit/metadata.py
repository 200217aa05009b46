# neftit/metadata.py
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Dict, Optional, Tuple

import requests

from .config import IPFS_GATEWAY, METADATA_CACHE_TTL, METADATA_TIMEOUT
from .models import Metadata, Resolved, Unresolved
from .rarity import DEFAULT_RARITY, Rarity, normalize_rarity, rarity_from_text

logger = logging.getLogger(__name__)

_CID_RE = re.compile(r"^(Qm[1-9A-HJ-NP-Za-km-z]{44}|b[a-z2-7]{58,})(/.*)?$")

_RARITY_TRAITS = ("rarity", "tier", "rank")


def effective_rarity(metadata: Optional[Metadata], known=None) -> Rarity:
    """Rarity from metadata, else the caller's known rarity, else the default."""
    if isinstance(metadata, Resolved) and metadata.rarity is not None:
        return metadata.rarity
    return normalize_rarity(known) or DEFAULT_RARITY


def parse_metadata(data: Dict[str, Any], gateway: str = IPFS_GATEWAY) -> Resolved:
    rarity = None
    for attr in data.get("attributes") or []:
        if not isinstance(attr, dict):
            continue
        trait = str(attr.get("trait_type", "")).strip().lower()
        if trait in _RARITY_TRAITS:
            rarity = normalize_rarity(attr.get("value"))
            if rarity:
                break

    if rarity is None:
        rarity = normalize_rarity(data.get("rarity"))
    if rarity is None:
        rarity = rarity_from_text(data.get("name")) or rarity_from_text(data.get("description"))

    image = data.get("image") or data.get("image_url") or ""
    return Resolved(
        name=str(data.get("name") or ""),
        image=gateway_url(image, gateway) or image,
        rarity=rarity,
        attributes=[a for a in data.get("attributes") or [] if isinstance(a, dict)],
        description=str(data.get("description") or ""),
    )


def gateway_url(uri: str, gateway: str = IPFS_GATEWAY) -> Optional[str]:
    """http(s) URLs pass through; ipfs:// and bare CIDs go through the gateway."""
    if not uri:
        return None
    uri = uri.strip()
    if uri.startswith(("http://", "https://")):
        return uri
    base = gateway if gateway.endswith("/") else gateway + "/"
    if uri.startswith("ipfs://"):
        path = uri[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return base + path
    if _CID_RE.match(uri):
        return base + uri
    return None


class MetadataResolver:
    def __init__(
        self,
        gateway: str = IPFS_GATEWAY,
        timeout: float = METADATA_TIMEOUT,
        ttl: int = METADATA_CACHE_TTL,
    ):
        self.gateway = gateway
        self.timeout = timeout
        self.ttl = ttl
        # uri -> (metadata, fetched_at); failures are never cached
        self._cache: Dict[str, Tuple[Resolved, float]] = {}

    def _fetch_json(self, url: str):
        r = requests.get(url, timeout=self.timeout, headers={"Accept": "application/json"})
        r.raise_for_status()
        return r.json()

    async def resolve(self, uri: str) -> Metadata:
        hit = self._cache.get(uri)
        if hit and time.time() - hit[1] < self.ttl:
            return hit[0]

        url = gateway_url(uri, self.gateway)
        if url is None:
            return Unresolved(f"unsupported metadata uri: {uri!r}")

        try:
            data = await asyncio.to_thread(self._fetch_json, url)
        except requests.exceptions.JSONDecodeError:
            return Unresolved("not json")
        except requests.RequestException as e:
            logger.warning("metadata fetch failed for %s: %s", url, e)
            return Unresolved(f"unreachable: {e}")

        if not isinstance(data, dict):
            return Unresolved("metadata is not a json object")

        meta = parse_metadata(data, self.gateway)
        self._cache[uri] = (meta, time.time())
        return meta
