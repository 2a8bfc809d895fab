"""
Card Catalog Sync — TCGCSV Catalog Feed Client

Fetches categories, groups and products from the TCGCSV mirror of the
TCGplayer catalog. Every request goes through the shared RateGateway.

Each fetch tries the CSV URL variants in order (upstream file casing is not
stable); a variant succeeds on a 2xx with a non-HTML body. When every CSV
variant fails the JSON endpoint is tried, and when that fails too the fetch
raises UpstreamUnavailableError.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Callable

import httpx
import structlog

from cardsync.config import settings
from cardsync.errors import MalformedPayloadError, UpstreamUnavailableError
from cardsync.pipeline.parser import (
    ParseResult,
    StreamingCSVParser,
    normalize_category_row,
    normalize_group_row,
    normalize_product_row,
    normalize_rows,
    parse_json_body,
)
from cardsync.pipeline.rate import RateGateway, ThrottleContext

logger = structlog.get_logger(__name__)

# Characters per parser chunk. The gateway has already buffered the body;
# chunking keeps parsing incremental over one group at a time.
CSV_CHUNK_SIZE = 64 * 1024

RowNormalizer = Callable[[dict[str, Any]], dict[str, Any] | None]


# ---------------------------------------------------------------------------
# URL builders
# ---------------------------------------------------------------------------


def _base(base_url: str | None) -> str:
    return (base_url or settings.TCGCSV_BASE_URL).rstrip("/")


def category_url_variants(base_url: str | None = None) -> list[str]:
    base = _base(base_url)
    return [f"{base}/Categories.csv", f"{base}/categories.csv"]


def group_url_variants(category_id: int, base_url: str | None = None) -> list[str]:
    base = _base(base_url)
    return [f"{base}/{category_id}/Groups.csv", f"{base}/{category_id}/groups.csv"]


def product_url_variants(category_id: int, group_id: int, base_url: str | None = None) -> list[str]:
    base = f"{_base(base_url)}/{category_id}/{group_id}"
    return [
        f"{base}/ProductsAndPrices.csv",
        f"{base}/productsandprices.csv",
        f"{base}/ProductsAndPrices.CSV",
        f"{base}/Products.csv",
        f"{base}/products.csv",
    ]


def categories_json_url(base_url: str | None = None) -> str:
    return f"{_base(base_url)}/categories"


def groups_json_url(category_id: int, base_url: str | None = None) -> str:
    return f"{_base(base_url)}/{category_id}/groups"


def products_json_url(category_id: int, group_id: int, base_url: str | None = None) -> str:
    return f"{_base(base_url)}/{category_id}/{group_id}/products"


def _looks_like_html(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "").lower()
    if "text/html" in content_type:
        return True
    return response.content[:256].lstrip()[:1] == b"<"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TcgCsvClient:
    """
    Async client for the TCGCSV catalog feed.

    Usage:
        async with TcgCsvClient(throttle) as client:
            result = await client.fetch_group_products(3, 1938)
    """

    def __init__(
        self,
        throttle: ThrottleContext | None = None,
        base_url: str | None = None,
        gateway: RateGateway | None = None,
    ):
        self.throttle = throttle or (gateway.throttle if gateway else ThrottleContext.from_settings())
        self._base_url = _base(base_url)
        self._gateway = gateway
        self._owns_gateway = gateway is None

    async def __aenter__(self) -> TcgCsvClient:
        if self._gateway is None:
            self._gateway = RateGateway(self.throttle)
        await self._gateway.__aenter__()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._gateway and self._owns_gateway:
            await self._gateway.__aexit__(*args)

    async def _parse_csv(
        self, response: httpx.Response, normalize: RowNormalizer
    ) -> ParseResult:
        parser = StreamingCSVParser()
        records: list[dict[str, Any]] = []
        skipped = 0
        async for chunk in response.aiter_text(CSV_CHUNK_SIZE):
            kept, dropped = normalize_rows(parser.parse_chunk(chunk), normalize)
            records.extend(kept)
            skipped += dropped
        kept, dropped = normalize_rows(parser.finalize(), normalize)
        records.extend(kept)
        skipped += dropped
        return ParseResult(
            records=records,
            fetched=parser.row_count,
            skipped=skipped,
            source="csv",
            url=str(response.request.url),
        )

    async def _fetch(
        self,
        what: str,
        csv_urls: list[str],
        json_url: str,
        named_fields: tuple[str, ...],
        normalize: RowNormalizer,
    ) -> ParseResult:
        assert self._gateway is not None, "Client not initialized. Use 'async with'."

        last_status: int | None = None
        for url in csv_urls:
            result = await self._gateway.fetch(url)
            last_status = result.status_code
            if not result.ok:
                logger.debug("tcgcsv_variant_failed", what=what, url=url, status_code=last_status)
                continue
            if _looks_like_html(result.response):
                logger.warning("tcgcsv_variant_html", what=what, url=url)
                continue
            parsed = await self._parse_csv(result.response, normalize)
            logger.info(
                "tcgcsv_csv_parsed",
                what=what,
                url=url,
                fetched=parsed.fetched,
                records=len(parsed.records),
                skipped=parsed.skipped,
            )
            return parsed

        result = await self._gateway.fetch(json_url, headers={"Accept": "application/json"})
        if not result.ok:
            logger.error(
                "tcgcsv_unavailable",
                what=what,
                last_status=result.status_code,
                csv_status=last_status,
                reason=result.reason,
            )
            raise UpstreamUnavailableError(
                f"{what}: all URL variants failed (HTTP {result.status_code})",
                status_code=result.status_code,
            )

        body = result.response.text
        rows, envelope, diagnostic = parse_json_body(body, named_fields)
        if diagnostic is not None:
            logger.error("tcgcsv_malformed_payload", what=what, url=json_url, diagnostic=diagnostic)
            raise MalformedPayloadError(
                f"{what}: no records in JSON response ({diagnostic})",
                diagnostic=diagnostic,
                sample=body[:200],
            )

        records, skipped = normalize_rows(rows, normalize)
        logger.info(
            "tcgcsv_json_parsed",
            what=what,
            url=json_url,
            envelope=envelope,
            fetched=len(rows),
            records=len(records),
            skipped=skipped,
        )
        return ParseResult(
            records=records,
            fetched=len(rows),
            skipped=skipped,
            source="json",
            envelope=envelope,
            url=json_url,
        )

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def fetch_categories(self) -> ParseResult:
        return await self._fetch(
            "categories",
            category_url_variants(self._base_url),
            categories_json_url(self._base_url),
            ("categories",),
            normalize_category_row,
        )

    async def fetch_groups(self, category_id: int) -> ParseResult:
        return await self._fetch(
            f"groups[{category_id}]",
            group_url_variants(category_id, self._base_url),
            groups_json_url(category_id, self._base_url),
            ("groups",),
            partial(normalize_group_row, category_id=category_id),
        )

    async def fetch_group_products(
        self,
        category_id: int,
        group_id: int,
        include_sealed: bool = True,
        include_singles: bool = True,
    ) -> ParseResult:
        """
        Fetch and normalize every product of one group.

        Raises:
            UpstreamUnavailableError: Every CSV variant and the JSON endpoint failed.
            MalformedPayloadError: The JSON endpoint answered without records.
        """
        return await self._fetch(
            f"products[{category_id}/{group_id}]",
            product_url_variants(category_id, group_id, self._base_url),
            products_json_url(category_id, group_id, self._base_url),
            ("products",),
            partial(
                normalize_product_row,
                group_id=group_id,
                category_id=category_id,
                include_sealed=include_sealed,
                include_singles=include_singles,
            ),
        )
