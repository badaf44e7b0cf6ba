import base64
from typing import Any, Dict, List, Optional, Union

import httpx

from .errors import ImageResolutionError


DEFAULT_IMAGE_MIME = "image/jpeg"

MessageContent = Union[str, List[Dict[str, Any]]]


def data_url_from_bytes(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('utf-8')}"


async def fetch_image_data_url(client: httpx.AsyncClient, url: str) -> str:
    try:
        resp = await client.get(url)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise ImageResolutionError(f"Failed to fetch image: {exc.response.status_code}") from exc
    except httpx.RequestError as exc:
        raise ImageResolutionError(f"Failed to fetch image: {exc}") from exc
    mime = (resp.headers.get("content-type") or DEFAULT_IMAGE_MIME).split(";")[0].strip() or DEFAULT_IMAGE_MIME
    return data_url_from_bytes(resp.content, mime)


async def build_content(
    text: str,
    images: Optional[List[str]],
    client: httpx.AsyncClient,
) -> MessageContent:
    """Turn message text plus image references into the gateway's content shape.

    Without images the text is returned unchanged. With images the result is a
    text part followed by one ``image_url`` part per image, in input order, each
    resolved to an inline data URL. Any image that cannot be fetched fails the
    whole build with :class:`ImageResolutionError`.
    """
    if not images:
        return text
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    for ref in images:
        data_url = ref if ref.startswith("data:") else await fetch_image_data_url(client, ref)
        parts.append({"type": "image_url", "image_url": {"url": data_url}})
    return parts
