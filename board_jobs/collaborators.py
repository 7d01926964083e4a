"""
Interfaces for the systems the job handlers talk to.

The listing/match/embedding tables, the embedding API and the outbound email
provider belong to the wider application. Handlers only see these abstract
classes; ``HandlerServices`` bundles whichever implementations the process
was wired with.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from board_jobs.errors import RemoteHttpError


class ListingRepository(ABC):
    """Write side of the listings table plus the reads maintenance jobs need."""

    @abstractmethod
    async def upsert_listing(self, listing: Dict[str, Any]) -> bool:
        """
        Insert or update one listing keyed by its external id.

        Returns True when a new row was created, False when an existing row
        was updated.
        """

    @abstractmethod
    async def recent_listings(self, since: datetime, limit: int) -> List[Dict[str, Any]]:
        """Open listings posted after ``since``, newest first."""

    @abstractmethod
    async def delete_stale_matches(self, cutoff: datetime) -> int:
        """
        Delete match rows created before ``cutoff`` whose parent listing is
        closed or expired. Returns the number of rows deleted.
        """


class EmbeddingClient(ABC):
    """Produces a vector embedding for a piece of text."""

    model: str = ""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Return the embedding vector for ``text``."""


class EmbeddingRepository(ABC):
    """Stores the single current embedding of each user."""

    @abstractmethod
    async def upsert_embedding(
        self,
        user_id: str,
        embedding: Sequence[float],
        model: str,
        processed_text: str,
    ) -> None:
        """Create or overwrite the embedding row for ``user_id``."""


class EmailSender(ABC):
    """Outbound email provider."""

    @abstractmethod
    async def send(
        self,
        recipient_id: str,
        template: str,
        context: Dict[str, Any],
        idempotency_key: str,
    ) -> None:
        """Send one templated email; raise on failure."""


class DeliveryLog(ABC):
    """Records which idempotency keys have already been delivered."""

    @abstractmethod
    async def was_delivered(self, key: str) -> bool:
        """True if ``key`` has already been recorded."""

    @abstractmethod
    async def record_delivery(self, key: str) -> None:
        """Record ``key`` as delivered."""


class SubscriberDirectory(ABC):
    """Looks up who should receive digest emails."""

    @abstractmethod
    async def digest_subscribers(self) -> List[str]:
        """User ids opted in to the weekly digest and not unsubscribed."""


class HandlerServices:
    """Collaborators made available to handlers through ``ctx["services"]``."""

    def __init__(
        self,
        listings: Optional[ListingRepository] = None,
        fetcher: Optional[Any] = None,
        embedding_client: Optional[EmbeddingClient] = None,
        embeddings: Optional[EmbeddingRepository] = None,
        email_sender: Optional[EmailSender] = None,
        delivery_log: Optional[DeliveryLog] = None,
        subscribers: Optional[SubscriberDirectory] = None,
    ):
        self.listings = listings
        self.fetcher = fetcher
        self.embedding_client = embedding_client
        self.embeddings = embeddings
        self.email_sender = email_sender
        self.delivery_log = delivery_log
        self.subscribers = subscribers

    def require(self, name: str) -> Any:
        """Return the named collaborator or raise if it was not wired."""
        service = getattr(self, name, None)
        if service is None:
            raise RuntimeError(f"Handler service {name!r} is not configured")
        return service


class HttpEmbeddingClient(EmbeddingClient):
    """Embedding client for an OpenAI-compatible ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        model: str = "text-embedding-3-small",
        timeout: float = 30.0,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def embed(self, text: str) -> List[float]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        body = {"model": self.model, "input": text}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(self.api_url, json=body, headers=headers) as resp:
                    if resp.status >= 400:
                        response_body = await resp.text()
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Embedding request failed: {response_body}",
                            response_body=response_body,
                        )
                    data = await resp.json()
            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e

        return list(data["data"][0]["embedding"])


class HttpEmailSender(EmailSender):
    """Email sender for a JSON HTTP email API that honours idempotency keys."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        from_address: str,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger(__name__)

    async def send(
        self,
        recipient_id: str,
        template: str,
        context: Dict[str, Any],
        idempotency_key: str,
    ) -> None:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }
        body = {
            "from": self.from_address,
            "recipient_id": recipient_id,
            "template": template,
            "context": context,
        }

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(self.api_url, json=body, headers=headers) as resp:
                    if resp.status >= 400:
                        response_body = await resp.text()
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Email send failed: {response_body}",
                            response_body=response_body,
                        )
            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e

        self.logger.debug(f"Sent {template} email to {recipient_id}")
