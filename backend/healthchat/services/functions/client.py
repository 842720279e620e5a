"""HTTP client for the hosted remote functions (chat, analysis, migration)."""

import logging
from typing import Any

import httpx

from healthchat.core.config import settings
from healthchat.services.functions.base import (
    AnalysisOutcome,
    AnalysisRequest,
    BaseFunctionsClient,
    ChatReply,
    ChatRequest,
    RemoteFunctionError,
)

logger = logging.getLogger(__name__)

ANALYSIS_FUNCTIONS = {
    "diagnosis": "analyze-conversation-diagnosis",
    "solution": "analyze-conversation-solutions",
    "memory": "analyze-conversation-memory",
}
MIGRATION_FUNCTION = "migrate-conversations-to-episodes"


class FunctionsClient(BaseFunctionsClient):
    """Remote functions client using the project API key."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.functions_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.functions_api_key
        self._timeout = timeout or settings.request_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
            headers["apikey"] = self._api_key
        return headers

    async def invoke(self, name: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST to a remote function and return its JSON body."""
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self._base_url}/{name}",
                    headers=self._headers(),
                    json=body or {},
                )
        except httpx.HTTPError as e:
            raise RemoteFunctionError(f"{name} request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if resp.is_error:
            message = data.get("error") or data.get("message") or resp.reason_phrase or "Remote function failed"
            logger.debug(f"{name} returned {resp.status_code}: {message}")
            raise RemoteFunctionError(str(message), status=resp.status_code, payload=data)
        return data

    async def chat(self, request: ChatRequest) -> ChatReply:
        data = await self.invoke(settings.chat_function, request.to_payload())
        products = data.get("products")
        return ChatReply(
            text=data.get("message") or "",
            products=products if isinstance(products, list) and products else None,
        )

    async def analyze(self, kind: str, request: AnalysisRequest) -> AnalysisOutcome:
        if kind not in ANALYSIS_FUNCTIONS:
            raise ValueError(f"Unknown analysis kind: {kind}")
        data = await self.invoke(ANALYSIS_FUNCTIONS[kind], request.to_payload())
        if kind == "diagnosis":
            count = int(data.get("updated_count") or 0)
            return AnalysisOutcome(added=count, updated=count, items=list(data.get("diagnoses") or []))
        if kind == "solution":
            count = int(data.get("count") or 0)
            return AnalysisOutcome(added=count, updated=count, items=list(data.get("solutions") or []))
        return AnalysisOutcome(updated=1 if data.get("memoryUpdated") else 0)

    async def migrate_conversations(self) -> int:
        data = await self.invoke(MIGRATION_FUNCTION)
        return int(data.get("migrated") or 0)
