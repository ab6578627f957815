"""Clients for the remote catalogues: Hugging Face models and llama.cpp releases."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Sequence
from urllib.parse import quote

import httpx

from app.constants import (
    GITHUB_LATEST_RELEASE_URL,
    HF_API_ROOT,
    HF_FILE_URL,
    HF_SEARCH_LIMIT,
    USER_AGENT,
)
from app.errors import NetworkError, describe_error

logger = logging.getLogger("mercury.downloads.hub")


@dataclass(frozen=True)
class HubFile:
    """A GGUF file listed for a hub repository."""

    rfilename: str
    size: int | None = None


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    browser_download_url: str


def model_file_url(repo: str, file_name: str) -> str:
    """Direct download URL for ``file_name`` inside hub repository ``repo``."""
    return HF_FILE_URL.format(repo=repo.strip(), file=file_name.strip())


def pick_asset_url(assets: Sequence[ReleaseAsset], patterns: Iterable[str]) -> str | None:
    """Return the first asset whose name contains a pattern, patterns tried in order."""
    for pattern in patterns:
        for asset in assets:
            if pattern in asset.name:
                return asset.browser_download_url
    return None


async def _get_json(client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
    try:
        response = await client.get(url, **kwargs)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPError as exc:
        raise NetworkError(describe_error(exc)) from exc
    except ValueError as exc:
        raise NetworkError(f"invalid JSON from {url}: {exc}") from exc


def _client(client: httpx.AsyncClient | None) -> tuple[httpx.AsyncClient, bool]:
    if client is not None:
        return client, False
    return httpx.AsyncClient(timeout=httpx.Timeout(15.0), follow_redirects=True), True


async def search_models(query: str, *, client: httpx.AsyncClient | None = None) -> list[str]:
    """Search text-generation repositories on the hub by free-text query."""
    if not query.strip():
        return []
    http, owned = _client(client)
    try:
        payload = await _get_json(
            http,
            f"{HF_API_ROOT}/models",
            params={"search": query, "limit": HF_SEARCH_LIMIT, "pipeline_tag": "text-generation"},
        )
    finally:
        if owned:
            await http.aclose()
    if not isinstance(payload, list):
        return []
    return [str(item["id"]) for item in payload if isinstance(item, dict) and item.get("id")]


async def list_gguf_files(repo: str, *, client: httpx.AsyncClient | None = None) -> list[HubFile]:
    """List the ``.gguf`` siblings of a hub repository."""
    http, owned = _client(client)
    try:
        payload = await _get_json(http, f"{HF_API_ROOT}/models/{quote(repo.strip(), safe='/')}?expand[]=siblings")
    finally:
        if owned:
            await http.aclose()
    siblings = payload.get("siblings") if isinstance(payload, dict) else None
    files: list[HubFile] = []
    for entry in siblings or []:
        name = entry.get("rfilename") if isinstance(entry, dict) else None
        if isinstance(name, str) and name.lower().endswith(".gguf"):
            size = entry.get("size")
            files.append(HubFile(rfilename=name, size=size if isinstance(size, int) else None))
    return files


async def fetch_latest_release_assets(*, client: httpx.AsyncClient | None = None) -> list[ReleaseAsset]:
    """Return the asset list of the latest llama.cpp release."""
    http, owned = _client(client)
    try:
        payload = await _get_json(http, GITHUB_LATEST_RELEASE_URL, headers={"User-Agent": USER_AGENT})
    finally:
        if owned:
            await http.aclose()
    assets = payload.get("assets") if isinstance(payload, dict) else None
    result = [
        ReleaseAsset(name=str(item["name"]), browser_download_url=str(item["browser_download_url"]))
        for item in assets or []
        if isinstance(item, dict) and item.get("name") and item.get("browser_download_url")
    ]
    logger.debug("Latest release lists %s assets", len(result))
    return result


__all__ = [
    "HubFile",
    "ReleaseAsset",
    "fetch_latest_release_assets",
    "list_gguf_files",
    "model_file_url",
    "pick_asset_url",
    "search_models",
]
