from typing import Any, Dict, List, Optional

import httpx


class SemanticRecallClient:
    """Client for the external semantic-search service.

    The service embeds the query and ranks past messages and long-term memories
    by similarity, applying its own threshold. This client only forwards the
    query and returns the ranked ``[{content, score, source}]`` list.
    """

    def __init__(self, url: Optional[str], api_key: Optional[str] = None, timeout: float = 20.0):
        self.url = url
        self.api_key = api_key
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def search(
        self,
        text: str,
        user_id: str,
        workspace_id: str,
        top_k: int = 5,
    ) -> List[Dict[str, Any]]:
        if not self.enabled:
            return []
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        resp = await self.client.post(
            self.url,
            json={
                "action": "search",
                "text": text,
                "user_id": user_id,
                "workspace_id": workspace_id,
                "top_k": top_k,
            },
            headers=headers,
        )
        resp.raise_for_status()
        data = resp.json()
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []
        return [r for r in results if isinstance(r, dict) and r.get("content")][:top_k]

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
