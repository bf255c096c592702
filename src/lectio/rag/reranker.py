"""Reranking clients for second-pass relevance scoring.

A reranker receives the query and candidate texts and returns one score
per candidate index. Implementations raise ``RerankError`` on any
transport or schema problem; callers decide how to fall back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from lectio.config import get_settings
from lectio.logging import get_logger
from lectio.models.rag import RerankScore
from lectio.rag.exceptions import RerankError

logger = get_logger("reranker")


class _RerankItem(BaseModel):
    index: int
    score: float


class _RerankResponse(BaseModel):
    results: list[_RerankItem]


class Reranker(ABC):
    """Second-pass scorer for retrieval candidates."""

    @abstractmethod
    async def rerank(self, query: str, documents: list[str]) -> list[RerankScore]:
        """Score documents against a query.

        Returns:
            Scores keyed by the index of the document in ``documents``
        """


class HttpReranker(Reranker):
    """Reranker backed by an HTTP scoring service.

    Request body: ``{"query", "documents", "model"}``.
    Response body: ``{"results": [{"index", "score"}]}``.
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the reranker.

        Args:
            url: Endpoint to POST rerank requests to
            api_key: Bearer token, if the service needs one
            model: Reranking model name sent with each request
            timeout: Request timeout in seconds
            client: Shared HTTP client (a new one is opened per request if None)
        """
        settings = get_settings()
        self.url = url or settings.reranker_url
        self.api_key = api_key if api_key is not None else settings.reranker_api_key
        self.model = model or settings.reranker_model
        self.timeout = timeout or settings.reranker_timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Check if an endpoint is configured."""
        return bool(self.url)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> Any:
        """POST a rerank request; transport errors are retried."""
        if self._client is not None:
            response = await self._client.post(
                self.url, headers=self._headers(), json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, headers=self._headers(), json=payload)
            response.raise_for_status()
            return response.json()

    async def rerank(self, query: str, documents: list[str]) -> list[RerankScore]:
        if not self.is_configured:
            raise RerankError("Reranker URL not configured. Set RERANKER_URL in your environment.")
        if not documents:
            return []

        payload = {"query": query, "documents": documents, "model": self.model}

        try:
            data = await self._post(payload)
        except httpx.TimeoutException as e:
            raise RerankError("Rerank request timed out") from e
        except httpx.HTTPStatusError as e:
            raise RerankError(
                f"Rerank API error: {e.response.status_code}",
                {"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise RerankError(f"Rerank request failed: {e}") from e
        except ValueError as e:
            raise RerankError(f"Rerank response is not valid JSON: {e}") from e

        try:
            parsed = _RerankResponse.model_validate(data)
        except ValidationError as e:
            raise RerankError(f"Malformed rerank response: {e}") from e

        scores = []
        for item in parsed.results:
            if not 0 <= item.index < len(documents):
                raise RerankError(
                    f"Rerank result index {item.index} out of range for {len(documents)} documents"
                )
            scores.append(RerankScore(index=item.index, score=item.score))

        logger.debug(f"Reranked {len(documents)} documents")
        return scores
