"""Listing page parsing: CSS selectors with a schema.org JSON-LD fallback."""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional
from urllib.parse import urljoin

from selectolax.parser import HTMLParser, Node

from ..config.models import EventSelectors
from ..records import RawEventData

_EVENT_TYPES = {
    "Event",
    "MusicEvent",
    "TheaterEvent",
    "ComedyEvent",
    "DanceEvent",
    "ExhibitionEvent",
    "Festival",
    "FoodEvent",
    "LiteraryEvent",
    "ScreeningEvent",
    "SocialEvent",
    "SportsEvent",
    "EducationEvent",
    "BusinessEvent",
    "ChildrensEvent",
}


class ListingParser:
    """Turn listing HTML into ``RawEventData`` rows.

    A selector may carry a mode suffix: ``time.start::attr:datetime`` reads
    an attribute, ``div.body::html`` keeps markup, anything else reads text.
    """

    def parse_listing(
        self,
        html: str,
        base_url: str,
        selectors: Optional[EventSelectors],
        source_id: str = "",
    ) -> list[RawEventData]:
        tree = HTMLParser(html)
        events: list[RawEventData] = []
        if selectors is not None:
            for card in self._cards(tree, selectors):
                event = self._parse_card(card, selectors, base_url, source_id)
                if event is not None:
                    events.append(event)
        if not events:
            events = self.parse_json_ld(tree, base_url, source_id)
        return events

    def next_page_url(self, html: str, base_url: str, selector: str) -> Optional[str]:
        node = HTMLParser(html).css_first(selector)
        if node is None:
            return None
        href = (node.attributes.get("href") or "").strip()
        if not href or href.startswith(("javascript:", "#")):
            return None
        return urljoin(base_url, href)

    # ------------------------------------------------------------------
    # CSS selectors
    # ------------------------------------------------------------------
    def _cards(self, tree: HTMLParser, selectors: EventSelectors) -> Iterable[Node]:
        if selectors.container:
            return tree.css(selectors.container)
        title_css, _ = self._split_selector(selectors.title)
        cards = []
        for node in tree.css(title_css):
            cards.append(node.parent if node.parent is not None else node)
        return cards

    def _parse_card(
        self, card: Node, selectors: EventSelectors, base_url: str, source_id: str
    ) -> Optional[RawEventData]:
        title = self._select(card, selectors.title)
        if not title:
            return None
        link = self._select(card, selectors.link, default_mode="attr:href")
        image = self._select(card, selectors.image, default_mode="attr:src")
        return RawEventData(
            title=title,
            description=self._select(card, selectors.description),
            start_time=self._select(card, selectors.start_time),
            end_time=self._select(card, selectors.end_time),
            location=self._select(card, selectors.location),
            price=self._select(card, selectors.price),
            image_url=urljoin(base_url, image) if image else None,
            source_url=urljoin(base_url, link) if link else base_url,
            source_id=source_id,
        )

    def _select(self, card: Node, selector: Optional[str], default_mode: str = "text") -> Optional[str]:
        if not selector:
            return None
        css, mode = self._split_selector(selector, default_mode)
        node = card.css_first(css) if css else None
        if node is None:
            return None
        if mode == "html":
            value = node.html
        elif mode.startswith("attr:"):
            value = node.attributes.get(mode.split(":", 1)[1])
        else:
            value = node.text(separator=" ", strip=True)
        return value.strip() if value and value.strip() else None

    @staticmethod
    def _split_selector(selector: str, default_mode: str = "text") -> tuple[str, str]:
        if "::" in selector:
            css, mode = selector.split("::", 1)
            return css.strip(), mode.strip().lower()
        return selector.strip(), default_mode

    # ------------------------------------------------------------------
    # JSON-LD
    # ------------------------------------------------------------------
    def parse_json_ld(self, tree: HTMLParser, base_url: str, source_id: str = "") -> list[RawEventData]:
        events: list[RawEventData] = []
        for script in tree.css('script[type="application/ld+json"]'):
            try:
                payload = json.loads(script.text() or "null")
            except json.JSONDecodeError:
                continue
            for item in self._iter_event_nodes(payload):
                event = self._from_json_ld(item, base_url, source_id)
                if event is not None:
                    events.append(event)
        return events

    def parse_json_document(self, payload: Any, base_url: str, source_id: str = "") -> list[RawEventData]:
        """Read schema.org event objects from an already decoded API response."""

        events = []
        for item in self._iter_event_nodes(payload):
            event = self._from_json_ld(item, base_url, source_id)
            if event is not None:
                events.append(event)
        return events

    def _iter_event_nodes(self, payload: Any) -> Iterable[dict]:
        if isinstance(payload, list):
            for item in payload:
                yield from self._iter_event_nodes(item)
        elif isinstance(payload, dict):
            if "@graph" in payload:
                yield from self._iter_event_nodes(payload["@graph"])
            kind = payload.get("@type")
            kinds = kind if isinstance(kind, list) else [kind]
            if any(k in _EVENT_TYPES for k in kinds):
                yield payload
            elif kind == "ItemList":
                for element in payload.get("itemListElement") or []:
                    if isinstance(element, dict):
                        yield from self._iter_event_nodes(element.get("item", element))

    def _from_json_ld(self, data: dict, base_url: str, source_id: str) -> Optional[RawEventData]:
        title = _text(data.get("name"))
        if not title:
            return None
        location = data.get("location")
        if isinstance(location, list):
            location = location[0] if location else None
        if isinstance(location, dict):
            place = _text(location.get("name"))
            address = location.get("address")
            if isinstance(address, dict):
                address = _text(address.get("streetAddress")) or _text(address.get("addressLocality"))
            location_text = ", ".join(part for part in (place, _text(address)) if part) or None
        else:
            location_text = _text(location)
        offers = data.get("offers")
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        price = None
        if isinstance(offers, dict) and offers.get("price") is not None:
            price = " ".join(part for part in (_text(offers.get("priceCurrency")), _text(offers.get("price"))) if part)
        image = data.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")
        url = _text(data.get("url"))
        return RawEventData(
            title=title,
            description=_text(data.get("description")),
            start_time=_text(data.get("startDate")),
            end_time=_text(data.get("endDate")),
            location=location_text,
            price=price,
            image_url=urljoin(base_url, image) if isinstance(image, str) and image else None,
            source_url=urljoin(base_url, url) if url else base_url,
            source_id=source_id,
        )


def _text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


__all__ = ["ListingParser"]
