from datetime import date

from eventvigil.listing import heuristic_fields, split_listing
from eventvigil.models import Source


def _source(kind="html", config=None):
    return Source(
        id="src",
        name="Gemeente Agenda",
        url="https://example.nl/agenda",
        kind=kind,
        enabled=True,
        auto_discovered=False,
        confidence_score=None,
        category_hint=None,
        municipality="Utrecht",
        default_lat=None,
        default_lng=None,
        config=config or {},
        default_frequency_minutes=360,
        disabled_reason=None,
        dynamic_rate_limit_ms=200,
        rate_limit_increased_at=None,
        rate_limit_increase_count=0,
        last_403_429_at=None,
        last_success_at=None,
    )


CARDS = """
<html><body>
<div class="event">
  <h3>Boekenmarkt</h3>
  <time datetime="2025-06-14T10:00">14 juni</time>
  <a href="/agenda/boekenmarkt#details">Meer info</a>
  <img src="/img/boeken.jpg">
</div>
<div class="event">
  <h3>Open podium</h3>
  <p>Zaterdag 21 juni, aanvang 20.00 uur</p>
</div>
<div class="event"><p></p></div>
</body></html>
"""

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Agenda</title>
<item>
  <title>Kerstmarkt</title>
  <link>https://example.nl/agenda/kerstmarkt</link>
  <description><![CDATA[<p>Kerstmarkt op 13 december 2025 vanaf 11.00 uur</p>]]></description>
</item>
<item>
  <title>Zonder link</title>
</item>
</channel></rss>
"""


def test_html_cards_become_items_with_stable_keys():
    first = split_listing(_source(), CARDS)
    second = split_listing(_source(), CARDS)

    assert [item["source_url"] for item in first] == [item["source_url"] for item in second]
    assert len(first) == 2
    market, podium = first
    assert market["source_url"] == "https://example.nl/agenda/boekenmarkt"
    assert market["payload"]["title"] == "Boekenmarkt"
    assert market["payload"]["datetime"] == "2025-06-14T10:00"
    assert market["payload"]["image_url"] == "https://example.nl/img/boeken.jpg"
    assert podium["source_url"].startswith("https://example.nl/agenda#item-")
    assert podium["payload"]["detail_url"] is None


def test_configured_item_selector_is_used():
    html = '<ul><li class="row"><h4>Yoga in het park</h4></li></ul><div class="event"><h3>Other</h3></div>'
    items = split_listing(_source(config={"selectors": {"item": "li.row"}}), html)
    assert [item["payload"]["title"] for item in items] == ["Yoga in het park"]


def test_jsonld_listing_items_carry_their_event():
    html = """
    <script type="application/ld+json">
    {"@context": "https://schema.org", "@type": "ItemList", "itemListElement": [
      {"@type": "ListItem", "item": {"@type": "Event", "name": "Kaasmarkt",
        "startDate": "2025-07-04T10:00", "url": "/agenda/kaasmarkt"}},
      {"@type": "ListItem", "item": {"@type": "Event", "name": "Braderie",
        "startDate": "2025-07-05", "url": "/agenda/braderie"}}
    ]}
    </script>
    """
    items = split_listing(_source(), html)

    assert [item["source_url"] for item in items] == [
        "https://example.nl/agenda/kaasmarkt",
        "https://example.nl/agenda/braderie",
    ]
    assert items[0]["payload"]["jsonld"][0]["event_time"] == "10:00"


def test_feed_entries_are_structured():
    items = split_listing(_source(kind="feed"), RSS)

    assert len(items) == 1
    payload = items[0]["payload"]
    assert items[0]["source_url"] == "https://example.nl/agenda/kerstmarkt"
    assert payload["structured"]["title"] == "Kerstmarkt"
    assert payload["structured"]["event_time"] == "11:00"
    assert payload["text"] == "Kerstmarkt op 13 december 2025 vanaf 11.00 uur"


def test_listing_is_truncated_to_max_items():
    cards = "".join(f'<div class="event"><h3>Item {n}</h3></div>' for n in range(5))
    items = split_listing(_source(config={"max_items": 3}), cards)
    assert len(items) == 3


def test_heuristic_fields_read_the_card():
    fields = heuristic_fields(
        {
            "title": "Open podium",
            "text": "Open podium zaterdag 21 juni, aanvang 20.00 uur",
            "detail_url": None,
        },
        today=date(2025, 6, 1),
    )
    assert fields["event_date"] == "2025-06-21"
    assert fields["event_time"] == "20:00"
