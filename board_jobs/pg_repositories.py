"""PostgreSQL implementations of the handler collaborators."""

import json
from datetime import datetime
from typing import Any, Dict, List, Sequence

import asyncpg

from board_jobs.collaborators import (
    DeliveryLog,
    EmbeddingRepository,
    ListingRepository,
    SubscriberDirectory,
)


class PgListingRepository(ListingRepository):
    """Listings live in the application's ``jobs`` table, keyed by id."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def upsert_listing(self, listing: Dict[str, Any]) -> bool:
        async with self.db_pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO jobs (
                    id, title, company, description, location, salary_min,
                    salary_max, type, categories, skills, source, url,
                    posted_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, now())
                ON CONFLICT (id) DO UPDATE SET
                    title = EXCLUDED.title,
                    company = EXCLUDED.company,
                    description = EXCLUDED.description,
                    location = EXCLUDED.location,
                    salary_min = EXCLUDED.salary_min,
                    salary_max = EXCLUDED.salary_max,
                    type = EXCLUDED.type,
                    categories = EXCLUDED.categories,
                    skills = EXCLUDED.skills,
                    url = EXCLUDED.url,
                    posted_at = EXCLUDED.posted_at,
                    updated_at = now()
                RETURNING (xmax = 0)
                """,
                listing["id"],
                listing["title"],
                listing["company"],
                listing["description"],
                listing["location"],
                listing["salary_min"],
                listing["salary_max"],
                listing["job_type"],
                listing["categories"],
                listing["skills"],
                listing["source"],
                listing["url"],
                listing["posted_at"],
            )
        return bool(inserted)

    async def recent_listings(self, since: datetime, limit: int) -> List[Dict[str, Any]]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, title, company, location, salary_min, salary_max, url, posted_at
                FROM jobs
                WHERE status = 'active' AND posted_at >= $1
                ORDER BY posted_at DESC
                LIMIT $2
                """,
                since,
                limit,
            )
        return [
            {**dict(row), "posted_at": row["posted_at"].isoformat() if row["posted_at"] else None}
            for row in rows
        ]

    async def delete_stale_matches(self, cutoff: datetime) -> int:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM job_matches m
                USING jobs j
                WHERE m.job_id = j.id
                  AND m.created_at < $1
                  AND j.status IN ('expired', 'closed')
                """,
                cutoff,
            )
        return int(result.split()[-1])


class PgEmbeddingRepository(EmbeddingRepository):
    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def upsert_embedding(
        self,
        user_id: str,
        embedding: Sequence[float],
        model: str,
        processed_text: str,
    ) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO resume_embeddings (
                    user_id, embedding, model, processed_text, updated_at
                ) VALUES ($1, $2, $3, $4, now())
                ON CONFLICT (user_id) DO UPDATE SET
                    embedding = EXCLUDED.embedding,
                    model = EXCLUDED.model,
                    processed_text = EXCLUDED.processed_text,
                    updated_at = now()
                """,
                user_id,
                json.dumps(list(embedding)),
                model,
                processed_text,
            )


class PgDeliveryLog(DeliveryLog):
    """Idempotency keys of delivered emails (see ``DELIVERY_LOG_DDL``)."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def was_delivered(self, key: str) -> bool:
        async with self.db_pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM email_deliveries WHERE idempotency_key = $1", key
            )
        return found is not None

    async def record_delivery(self, key: str) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO email_deliveries (idempotency_key, delivered_at)
                VALUES ($1, now())
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                key,
            )


class PgSubscriberDirectory(SubscriberDirectory):
    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def digest_subscribers(self) -> List[str]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT u.id
                FROM users u
                WHERE u.weekly_digest_opt_in
                  AND NOT EXISTS (
                    SELECT 1 FROM email_unsubscribes e WHERE e.email = u.email
                  )
                ORDER BY u.id
                """
            )
        return [str(row["id"]) for row in rows]
