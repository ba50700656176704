from eventvigil.extraction.jsonld import extract_jsonld_events, load_jsonld, parse_event_object


def _page(block: str) -> str:
    return f'<html><head><script type="application/ld+json">{block}</script></head></html>'


def test_graph_events_are_found():
    html = _page(
        """
        {"@context": "https://schema.org", "@graph": [
          {"@type": "WebPage", "name": "Agenda"},
          {"@type": ["Event", "TheaterEvent"], "name": "Hamlet", "startDate": "2025-10-02T19:30",
           "endDate": "2025-10-02T22:00",
           "location": {"@type": "Place", "name": "Stadsschouwburg",
             "address": {"streetAddress": "Leidseplein 26", "postalCode": "1017 PT",
                         "addressLocality": "Amsterdam"},
             "geo": {"latitude": "52.364", "longitude": "4.883"}},
           "offers": [{"price": "25.00", "priceCurrency": "EUR", "url": "https://tickets.example/hamlet"},
                      {"price": "35.00", "priceCurrency": "EUR"}],
           "eventStatus": "https://schema.org/EventScheduled"}
        ]}
        """
    )

    events = extract_jsonld_events(html)

    assert len(events) == 1
    event = events[0]
    assert event["title"] == "Hamlet"
    assert (event["event_date"], event["event_time"]) == ("2025-10-02", "19:30")
    assert event["end_time"] == "22:00"
    assert event["venue_name"] == "Stadsschouwburg"
    assert event["venue_address"] == "Leidseplein 26, 1017 PT, Amsterdam"
    assert (event["lat"], event["lng"]) == (52.364, 4.883)
    assert event["price"] == "€25.00 - €35.00"
    assert event["ticket_url"] == "https://tickets.example/hamlet"
    assert event["schema_type"] == "TheaterEvent"
    assert event["event_status"] == "scheduled"


def test_trailing_commas_are_repaired():
    data = load_jsonld('{"@type": "Event", "name": "Markt", "startDate": "2025-06-01",}')
    assert data["name"] == "Markt"


def test_unparseable_block_is_skipped():
    assert extract_jsonld_events(_page("{not json at all")) == []


def test_free_events_and_non_events():
    free = parse_event_object(
        {"@type": "Event", "name": "Open dag", "startDate": "2025-09-13", "isAccessibleForFree": True}
    )
    assert free["price"] == "Gratis"
    assert free["event_time"] is None
    assert parse_event_object({"@type": "Organization", "name": "Gemeente"}) is None
    assert parse_event_object({"@type": "Event", "name": "Geen datum"}) is None
