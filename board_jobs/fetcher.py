"""Rate-limited, concurrency-bounded harvest of the external listing API."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from board_jobs.config import FetcherConfig
from board_jobs.errors import RateLimitExceededError, RemoteHttpError
from board_jobs.models import ExternalListingRecord


@dataclass
class PageResult:
    """One page of upstream results."""

    records: List[ExternalListingRecord]
    result_count: int
    total_pages: Optional[int] = None
    malformed: int = 0


@dataclass
class PartitionReport:
    """What was fetched for one partition."""

    partition: str
    mode: str = "paged"
    pages_fetched: int = 0
    records: int = 0
    malformed: int = 0
    failed_pages: List[int] = field(default_factory=list)
    error: Optional[str] = None

    def add_page(self, page: PageResult) -> None:
        self.pages_fetched += 1
        self.malformed += page.malformed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition": self.partition,
            "mode": self.mode,
            "pages_fetched": self.pages_fetched,
            "records": self.records,
            "malformed": self.malformed,
            "failed_pages": list(self.failed_pages),
            "error": self.error,
        }


@dataclass
class HarvestResult:
    """Deduplicated records of a harvest plus per-partition reports."""

    records: List[ExternalListingRecord] = field(default_factory=list)
    partitions: List[PartitionReport] = field(default_factory=list)
    duplicates: int = 0

    @property
    def failed_partitions(self) -> List[str]:
        return [report.partition for report in self.partitions if report.error]

    @property
    def malformed(self) -> int:
        return sum(report.malformed for report in self.partitions)


class ListingFetcher:
    """
    Harvests paginated listings across many partitions.

    Every request, from every partition, goes through one semaphore so at most
    ``max_concurrent`` requests are in flight for the whole harvest. A 429
    response is retried with exponential backoff (1s, 2s, 4s, ...) up to
    ``max_retries`` times; a page that still fails only fails itself.

    Example:
        ```python
        fetcher = ListingFetcher(FetcherConfig.from_env())
        result = await fetcher.harvest(["Stockton, CA", "Lodi, CA"])
        for record in result.records:
            ...
        ```
    """

    def __init__(
        self,
        config: FetcherConfig,
        logger: Optional[logging.Logger] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self._session = session
        self._sleep = sleep

    async def harvest(
        self,
        partitions: Optional[Sequence[str]] = None,
        results_per_page: Optional[int] = None,
    ) -> HarvestResult:
        """
        Fetch every page of every partition and merge the records by id.

        Args:
            partitions: Locations to search (defaults to the configured list)
            results_per_page: Page size (defaults to the configured size)

        Returns:
            HarvestResult with the first occurrence of each record id
        """
        partitions = list(partitions or self.config.partitions)
        page_size = results_per_page or self.config.results_per_page
        semaphore = asyncio.Semaphore(self.config.max_concurrent)

        self.logger.info(
            f"Starting harvest of {len(partitions)} partitions "
            f"(page size {page_size}, max {self.config.max_concurrent} concurrent requests)"
        )

        async with self._session_scope() as session:
            outcomes = await asyncio.gather(
                *[
                    self._harvest_partition(session, semaphore, partition, page_size)
                    for partition in partitions
                ]
            )

        result = HarvestResult()
        seen: Dict[str, ExternalListingRecord] = {}
        for report, records in outcomes:
            result.partitions.append(report)
            for record in records:
                if record.id in seen:
                    result.duplicates += 1
                    continue
                seen[record.id] = record
        result.records = list(seen.values())

        self.logger.info(
            f"Harvest complete: {len(result.records)} unique records, "
            f"{result.duplicates} duplicates dropped, "
            f"{len(result.failed_partitions)} partitions with errors"
        )
        return result

    async def _harvest_partition(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        partition: str,
        page_size: int,
    ) -> tuple:
        report = PartitionReport(partition=partition)
        records: List[ExternalListingRecord] = []

        try:
            first = await self.fetch_page(session, semaphore, partition, 1, page_size)
        except Exception as e:
            report.failed_pages.append(1)
            report.error = str(e)
            self.logger.error(f"Partition {partition!r}: page 1 failed: {e}", exc_info=True)
            return report, records

        report.add_page(first)
        records.extend(first.records)

        if first.total_pages is not None:
            last_page = min(first.total_pages, self.config.max_pages)
            pages = list(range(2, last_page + 1))
            results = await asyncio.gather(
                *[
                    self.fetch_page(session, semaphore, partition, page, page_size)
                    for page in pages
                ],
                return_exceptions=True,
            )
            for page, page_result in zip(pages, results):
                if isinstance(page_result, Exception):
                    report.failed_pages.append(page)
                    report.error = str(page_result)
                    self.logger.error(
                        f"Partition {partition!r}: page {page} failed: {page_result}"
                    )
                    continue
                if isinstance(page_result, BaseException):
                    raise page_result
                report.add_page(page_result)
                records.extend(page_result.records)
        else:
            # Upstream did not report a page count: scroll until a short page
            report.mode = "scroll"
            page_result = first
            page = 1
            while page_result.result_count >= page_size and page < self.config.max_pages:
                page += 1
                try:
                    page_result = await self.fetch_page(
                        session, semaphore, partition, page, page_size
                    )
                except Exception as e:
                    report.failed_pages.append(page)
                    report.error = str(e)
                    self.logger.error(
                        f"Partition {partition!r}: page {page} failed: {e}"
                    )
                    break
                report.add_page(page_result)
                records.extend(page_result.records)

        report.records = len(records)
        self.logger.info(
            f"Partition {partition!r}: {report.pages_fetched} pages, "
            f"{report.records} records, {report.malformed} malformed ({report.mode})"
        )
        return report, records

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        partition: str,
        page: int,
        page_size: int,
    ) -> PageResult:
        """Fetch one page, retrying rate-limited responses with backoff."""
        url = f"{self.config.base_url}/{self.config.country}/search/{page}"
        params = {
            "app_id": self.config.app_id,
            "app_key": self.config.app_key,
            "results_per_page": str(page_size),
            "where": partition,
        }
        if self.config.what:
            params["what"] = self.config.what

        attempt = 0
        while True:
            async with semaphore:
                data, rate_limited_body = await self._get_json(session, url, params)

            if rate_limited_body is None:
                return self._parse_page(data, partition, page)

            if attempt >= self.config.max_retries:
                raise RateLimitExceededError(url, attempt + 1, rate_limited_body)

            delay = self.config.initial_backoff_seconds * (2 ** attempt)
            attempt += 1
            self.logger.warning(
                f"Rate limited on {partition!r} page {page}, "
                f"retry {attempt}/{self.config.max_retries} in {delay}s"
            )
            # Sleep outside the semaphore so other requests can use the slot
            await self._sleep(delay)

    async def _get_json(
        self, session: aiohttp.ClientSession, url: str, params: Dict[str, str]
    ) -> tuple:
        """Returns (data, None) on success or (None, body) when rate limited."""
        try:
            async with session.get(url, params=params) as resp:
                if resp.status == 429:
                    return None, await resp.text()
                if resp.status >= 400:
                    response_body = await resp.text()
                    raise RemoteHttpError(
                        status_code=resp.status,
                        message=f"Listing search failed: {response_body}",
                        response_body=response_body,
                    )
                return await resp.json(content_type=None), None
        except aiohttp.ClientError as e:
            raise RemoteHttpError(
                status_code=0,
                message=f"Network error: {str(e)}",
            ) from e

    def _parse_page(self, data: Dict[str, Any], partition: str, page: int) -> PageResult:
        results = data.get("results") or []
        pagination = data.get("pagination") or {}
        total_pages = pagination.get("total_pages", pagination.get("totalPages"))

        records = []
        malformed = 0
        for index, item in enumerate(results):
            try:
                if item.get("id") is None:
                    raise ValueError("missing id")
                records.append(ExternalListingRecord.from_api(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                malformed += 1
                self.logger.warning(
                    f"Partition {partition!r} page {page}: skipping malformed "
                    f"record {index}: {e}"
                )

        return PageResult(
            records=records,
            result_count=len(results),
            total_pages=int(total_pages) if total_pages is not None else None,
            malformed=malformed,
        )

    @asynccontextmanager
    async def _session_scope(self):
        if self._session is not None:
            yield self._session
            return

        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            yield session
