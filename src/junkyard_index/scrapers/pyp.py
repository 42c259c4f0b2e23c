import json
import logging
import re
from typing import Iterable

from bs4 import BeautifulSoup
from bs4.element import Tag

from ..cancellation import CancelToken
from ..errors import FetchError, SearchCancelled, SourceError
from ..models.location import Location
from ..models.vehicle import Vehicle, YardLocation
from ..normalize import pyp as normalize
from ..normalize.common import (
    absolute_url,
    collapse_whitespace,
    parse_iso_datetime,
    parse_us_date,
    strip_resize_params,
    utcnow,
)
from .base import BaseScraper

logger = logging.getLogger(__name__)

LOCATION_LIST = re.compile(r"var _locationList\s*=\s*(\[.*?\]);", re.DOTALL)

# Split combined Set-Cookie values only where a comma starts a new
# ``name=`` pair, so "Expires=Wed, 21-Oct-25 ..." stays in one piece.
COOKIE_SPLIT = re.compile(r",(?=\s*[^;,=\s]+=)")

PAGE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,"
              "image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
}

AJAX_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "X-Requested-With": "XMLHttpRequest",
    "DNT": "1",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "Cache-Control": "no-cache",
}


def cookie_header(set_cookie_values: str | Iterable[str]) -> str:
    """Rebuild a Cookie request header from one or more Set-Cookie values."""
    if isinstance(set_cookie_values, str):
        set_cookie_values = [set_cookie_values]
    pairs = []
    for value in set_cookie_values:
        for part in COOKIE_SPLIT.split(value or ""):
            pair = part.strip().split(";", 1)[0].strip()
            if pair:
                pairs.append(pair)
    return "; ".join(pairs)


def extract_after_label(text: str, label: str) -> str:
    index = text.find(label)
    if index == -1:
        return ""
    return collapse_whitespace(text[index + len(label):])


def extract_word_after_label(text: str, label: str) -> str:
    """First token after the label; empty if that token is itself a label."""
    after = extract_after_label(text, label)
    first = after.split(" ")[0] if after else ""
    if first.endswith(":"):
        return ""
    return first


def _detail_text(row: Tag, label: str) -> str:
    item = row.select_one(f'.pypvi_detailItem:-soup-contains("{label}")')
    return item.get_text(" ") if item else ""


def _available_date(row: Tag):
    time_el = row.select_one("time[datetime]")
    if time_el is not None:
        return parse_iso_datetime(time_el.get("datetime")) or utcnow()
    raw = extract_after_label(_detail_text(row, "Available:"), "Available:")
    return parse_us_date(raw) or utcnow()


def _image_urls(row: Tag, base_url: str) -> list[str]:
    hrefs = []
    main = row.select_one("a.fancybox-thumb.pypvi_image")
    if main is not None and main.get("href"):
        hrefs.append(main["href"])
    hrefs.extend(a["href"] for a in row.select(".pypvi_images a[data-fancybox]") if a.get("href"))

    urls: list[str] = []
    for href in hrefs:
        url = strip_resize_params(absolute_url(href, base_url))
        if url not in urls:
            urls.append(url)
    return urls


def parse_vehicle_row(row: Tag, location: Location, base_url: str) -> Vehicle | None:
    vehicle_id = (row.get("id") or "").strip()
    if not vehicle_id:
        return None

    ymm_el = row.select_one(".pypvi_ymm")
    ymm = collapse_whitespace(ymm_el.get_text(" ")) if ymm_el else ""

    return normalize.to_vehicle(
        vehicle_id=vehicle_id,
        ymm=ymm,
        color=extract_after_label(_detail_text(row, "Color:"), "Color:"),
        vin=extract_after_label(_detail_text(row, "VIN:"), "VIN:"),
        stock_number=extract_after_label(_detail_text(row, "Stock #:"), "Stock #:"),
        available_date=_available_date(row),
        yard_location=YardLocation(
            section=extract_word_after_label(_detail_text(row, "Section:"), "Section:"),
            row=extract_word_after_label(_detail_text(row, "Row:"), "Row:"),
            space=extract_word_after_label(_detail_text(row, "Space:"), "Space:"),
        ),
        images=_image_urls(row, base_url),
        location=location,
        base_url=base_url,
    )


def parse_inventory_html(html: str, location: Location, base_url: str) -> list[Vehicle]:
    """Parse the AJAX inventory fragment. A bad row is dropped, not fatal."""
    soup = BeautifulSoup(html, "html.parser")
    vehicles = []
    for row in soup.select(".pypvi_resultRow[id]"):
        try:
            vehicle = parse_vehicle_row(row, location, base_url)
        except Exception as e:
            logger.warning(
                f"Dropping unparseable vehicle row {row.get('id')!r} "
                f"at {location.location_code}: {e}"
            )
            continue
        if vehicle:
            vehicles.append(vehicle)
    return vehicles


def parse_location_list(html: str) -> list[Location]:
    match = LOCATION_LIST.search(html)
    if not match:
        raise ValueError("Could not find _locationList in HTML")
    return [normalize.to_location(entry) for entry in json.loads(match.group(1))]


class PypScraper(BaseScraper):
    """Scrapes PYP inventory one yard at a time.

    The AJAX endpoint only answers requests that carry the session cookies
    issued by the yard's inventory page, so every location costs two GETs.
    """

    source = "pyp"
    per_location = True

    @property
    def base_url(self) -> str:
        return self.settings.pyp_base_url.rstrip("/")

    async def fetch_locations(self, cancel: CancelToken | None = None) -> list[Location]:
        url = f"{self.base_url}{self.settings.pyp_location_page}"
        try:
            resp = await self._get(url, cancel=cancel)
            locations = parse_location_list(resp.text)
        except SearchCancelled:
            return []
        except (FetchError, ValueError) as e:
            logger.error(f"Error fetching locations from PYP: {e}")
            raise SourceError(self.source, "all", e) from e

        logger.info(f"Loaded {len(locations)} PYP locations")
        return locations

    async def fetch_vehicles(
        self,
        query: str,
        location: Location | None = None,
        cancel: CancelToken | None = None,
    ) -> list[Vehicle]:
        if location is None:
            raise TypeError("PYP inventory is fetched one Location at a time")

        try:
            html = await self._fetch_inventory_html(query, location, cancel)
        except SearchCancelled:
            return []
        except FetchError as e:
            logger.error(f"Error fetching inventory for location {location.location_code}: {e}")
            try:
                await self._politeness_pause(cancel)
            except SearchCancelled:
                return []
            raise SourceError(self.source, location.location_code, e) from e

        vehicles = parse_inventory_html(html, location, self.base_url)
        logger.debug(f"PYP {location.location_code}: {len(vehicles)} vehicles for '{query}'")
        return vehicles

    async def _fetch_inventory_html(
        self, query: str, location: Location, cancel: CancelToken | None
    ) -> str:
        inventory_page = f"{self.base_url}{location.urls.inventory}"

        # Step 1: the inventory page hands out the session cookies
        session_resp = await self._get(inventory_page, headers=PAGE_HEADERS, cancel=cancel)
        cookies = cookie_header(session_resp.set_cookies)

        # Step 2: the AJAX fragment, sent as the page's own XHR would be
        headers = {
            **AJAX_HEADERS,
            "Referer": inventory_page,
            "Origin": self.base_url,
        }
        if cookies:
            headers["Cookie"] = cookies

        resp = await self._get(
            f"{self.base_url}{self.settings.pyp_inventory_endpoint}",
            params={"page": "1", "filter": query, "store": location.location_code},
            headers=headers,
            cancel=cancel,
        )
        return resp.text
