"""
Tests for the TCGCSV catalog client (cardsync/pipeline/tcgcsv.py).

Covers:
- URL variant ordering
- CSV variant fallback on 404 and on HTML bodies
- JSON fallback with envelope detection
- UpstreamUnavailableError / MalformedPayloadError
"""

from __future__ import annotations

import httpx
import pytest
import respx

from cardsync.errors import MalformedPayloadError, UpstreamUnavailableError
from cardsync.pipeline.parser import HTML_BODY
from cardsync.pipeline.tcgcsv import (
    TcgCsvClient,
    group_url_variants,
    product_url_variants,
    products_json_url,
)

BASE = "https://tcgcsv.test/tcgplayer"

PRODUCTS_CSV = (
    "productId,name,number,rarity\n"
    "42346,Alakazam,1/102,Holo Rare\n"
    '42347,"Pikachu, Promo",25,Promo\n'
    "42348,,3/102,Holo Rare\n"
    "42349,Charizard,4/102,Holo Rare\n"
)


def _not_found_elsewhere() -> respx.Route:
    return respx.route().mock(return_value=httpx.Response(404))


# ---------------------------------------------------------------------------
# URL builders
# ---------------------------------------------------------------------------


def test_product_url_variants_order() -> None:
    urls = product_url_variants(3, 1938, BASE + "/")

    assert urls[0] == f"{BASE}/3/1938/ProductsAndPrices.csv"
    assert urls[1] == f"{BASE}/3/1938/productsandprices.csv"
    assert len(urls) == len(set(urls))


def test_group_url_variants() -> None:
    assert group_url_variants(3, BASE) == [f"{BASE}/3/Groups.csv", f"{BASE}/3/groups.csv"]


# ---------------------------------------------------------------------------
# CSV path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@respx.mock
async def test_fetch_group_products_from_first_csv_variant(throttle) -> None:
    respx.get(f"{BASE}/3/1938/ProductsAndPrices.csv").mock(
        return_value=httpx.Response(200, text=PRODUCTS_CSV)
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_group_products(3, 1938)

    assert result.source == "csv"
    assert result.fetched == 4
    assert result.skipped == 1
    assert [r["product_id"] for r in result.records] == [42346, 42347, 42349]
    assert result.records[1]["name"] == "Pikachu, Promo"


@pytest.mark.asyncio
@respx.mock
async def test_falls_through_404_and_html_variants(throttle) -> None:
    first = respx.get(f"{BASE}/3/1938/ProductsAndPrices.csv").mock(
        return_value=httpx.Response(404)
    )
    html = respx.get(f"{BASE}/3/1938/productsandprices.csv").mock(
        return_value=httpx.Response(
            200, text="<html>challenge</html>", headers={"content-type": "text/html"}
        )
    )
    good = respx.get(f"{BASE}/3/1938/ProductsAndPrices.CSV").mock(
        return_value=httpx.Response(200, text=PRODUCTS_CSV)
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_group_products(3, 1938)

    assert first.call_count == 1
    assert html.call_count == 1
    assert good.call_count == 1
    assert len(result.records) == 3
    assert result.url == f"{BASE}/3/1938/ProductsAndPrices.CSV"


@pytest.mark.asyncio
@respx.mock
async def test_sealed_filter_applied_while_streaming(throttle) -> None:
    body = (
        "productId,name,productType\n"
        "1,Base Set Booster Box,Sealed Products\n"
        "2,Alakazam,Cards\n"
    )
    respx.get(f"{BASE}/3/1938/ProductsAndPrices.csv").mock(
        return_value=httpx.Response(200, text=body)
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_group_products(3, 1938, include_sealed=False)

    assert [r["name"] for r in result.records] == ["Alakazam"]
    assert result.skipped == 1


# ---------------------------------------------------------------------------
# JSON fallback
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@respx.mock
async def test_json_fallback_when_every_csv_variant_fails(throttle) -> None:
    json_route = respx.get(products_json_url(3, 1938, BASE)).mock(
        return_value=httpx.Response(
            200,
            json={
                "success": True,
                "results": [
                    {"productId": 42346, "name": "Alakazam", "extNumber": "1/102"},
                    {"productId": 42347, "name": ""},
                ],
            },
        )
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_group_products(3, 1938)

    assert result.source == "json"
    assert result.envelope == "results"
    assert result.fetched == 2
    assert result.skipped == 1
    assert result.records[0]["number"] == "1/102"
    assert json_route.calls.last.request.headers["accept"] == "application/json"


@pytest.mark.asyncio
@respx.mock
async def test_groups_json_named_envelope(throttle) -> None:
    respx.get(f"{BASE}/3/groups").mock(
        return_value=httpx.Response(200, json={"groups": [{"groupId": 1938, "name": "Base Set"}]})
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_groups(3)

    assert result.envelope == "named"
    assert result.records[0]["group_id"] == 1938
    assert result.records[0]["category_id"] == 3


@pytest.mark.asyncio
@respx.mock
async def test_unavailable_when_everything_fails(throttle) -> None:
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        with pytest.raises(UpstreamUnavailableError) as excinfo:
            await client.fetch_group_products(3, 1938)

    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
@respx.mock
async def test_malformed_json_carries_diagnostic(throttle) -> None:
    respx.get(products_json_url(3, 1938, BASE)).mock(
        return_value=httpx.Response(200, text="<html>maintenance</html>")
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        with pytest.raises(MalformedPayloadError) as excinfo:
            await client.fetch_group_products(3, 1938)

    assert excinfo.value.diagnostic == HTML_BODY
    assert "maintenance" in excinfo.value.sample


@pytest.mark.asyncio
@respx.mock
async def test_fetch_categories_csv(throttle) -> None:
    respx.get(f"{BASE}/Categories.csv").mock(
        return_value=httpx.Response(
            200, text="categoryId,name,displayName\n3,Pokemon,Pokémon\n1,Magic,Magic: The Gathering\n"
        )
    )
    _not_found_elsewhere()

    async with TcgCsvClient(throttle, base_url=BASE) as client:
        result = await client.fetch_categories()

    assert [r["category_id"] for r in result.records] == [3, 1]
    assert result.records[0]["slug"] == "pokemon"
