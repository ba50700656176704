from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .utils import sha256_hex, to_iso

DEFAULT_TIMEZONE = "Europe/Amsterdam"
DEFAULT_CATEGORY = "community"
DEFAULT_EVENT_TIME = "12:00"

CATEGORY_IDS = (
    "active",
    "gaming",
    "entertainment",
    "social",
    "family",
    "outdoors",
    "music",
    "workshops",
    "foodie",
    "community",
)

# Checked before the keyword table: Dutch parenting terms always mean family.
FAMILY_KEYWORDS = (
    "basisschool",
    "speeltuin",
    "kinderopvang",
    "zwemles",
    "peutergroep",
    "kinderfeest",
    "jeugdclub",
    "schoolfeest",
    "kinderactiviteit",
    "gezinsdag",
    "voorlezen",
    "kinderboerderij",
    "kinderdisco",
    "sinterklaas",
    "kinderen",
    "ouder-kind",
)

SOCIAL_KEYWORDS = (
    "borrel",
    "vrijdagmiddag",
    "vrijmibo",
    "netwerken",
    "networking",
    "proeverij",
    "wijnproeverij",
    "bierproeverij",
    "happy hour",
    "afterwork",
    "stamppot",
    "vrijgezellenfeest",
    "singles",
    "speed date",
)

_FOODIE_HINTS = ("proeverij", "wijn", "bier", "eten")

CATEGORY_KEYWORDS: dict[str, tuple[str, ...]] = {
    "active": (
        "sport", "fitness", "hardlopen", "wielrennen", "fietsen", "zwemmen", "wandelen",
        "yoga", "bootcamp", "marathon", "trimloop", "atletiek", "gym", "crossfit", "voetbal",
        "running", "cycling", "swimming", "walking", "workout", "soccer", "football",
    ),
    "gaming": (
        "gaming", "esports", "spelletjes", "bordspellen", "videogames", "lan-party",
        "gamenight", "spellenavond", "dungeons", "roleplay", "video games", "board games",
        "tabletop", "lan party",
    ),
    "entertainment": (
        "theater", "film", "bioscoop", "comedy", "cabaret", "musical", "show", "voorstelling",
        "stand-up", "circus", "entertainment", "optreden", "cinema", "performance",
    ),
    "social": (
        "borrel", "vrijmibo", "vrijdagmiddag", "netwerken", "networking", "meetup",
        "ontmoeting", "drink", "happy hour", "afterwork", "bijeenkomst", "sociaal", "social",
        "drinks", "gathering",
    ),
    "family": (
        "kinderen", "kids", "familie", "gezin", "jeugd", "basisschool", "speeltuin",
        "kinderopvang", "zwemles", "voorlezen", "knutselen", "familiedag", "kinderfestival",
        "peutergroep", "children", "family", "youth", "playground", "daycare",
        "swimming lessons", "craft", "reading",
    ),
    "outdoors": (
        "natuur", "buiten", "outdoor", "wandeling", "excursie", "fietstocht", "vogelen",
        "kamperen", "picknick", "park", "bos", "strand", "duinen", "nature", "hiking",
        "excursion", "cycling tour", "birdwatching", "camping", "picnic", "forest", "beach",
    ),
    "music": (
        "concert", "muziek", "festival", "live", "optreden", "band", "dj", "jazz", "klassiek",
        "pop", "rock", "dance", "techno", "house", "openlucht", "music", "classical",
    ),
    "workshops": (
        "workshop", "cursus", "les", "training", "masterclass", "lezing", "college", "leren",
        "creatief", "koken", "schilderen", "fotograferen", "ambacht", "course", "lesson",
        "lecture", "learning", "creative", "cooking", "painting", "photography",
    ),
    "foodie": (
        "eten", "food", "proeverij", "wijn", "bier", "culinair", "restaurant", "markt",
        "foodtruck", "smaak", "diner", "lunch", "high tea", "borrelhapjes", "tasting", "wine",
        "beer", "culinary", "market", "food truck", "dinner",
    ),
    "community": (
        "buurt", "wijk", "gemeente", "vrijwilliger", "inspraak", "bewoners", "vereniging",
        "stichting", "lokaal", "samen", "participatie", "buurthuis", "wijkcentrum",
        "neighborhood", "community", "volunteer", "local", "together", "participation",
        "community center",
    ),
}

SCHEMA_TYPE_CATEGORIES = {
    "MusicEvent": "music",
    "SportsEvent": "active",
    "TheaterEvent": "entertainment",
    "DanceEvent": "entertainment",
    "ComedyEvent": "entertainment",
    "ExhibitionEvent": "entertainment",
    "ScreeningEvent": "entertainment",
    "FoodEvent": "foodie",
    "Festival": "community",
    "SocialEvent": "social",
    "EducationEvent": "workshops",
    "ChildrensEvent": "family",
}

MONTHS = {
    "januari": 1, "january": 1, "januar": 1, "jan": 1,
    "februari": 2, "february": 2, "februar": 2, "feb": 2,
    "maart": 3, "march": 3, "märz": 3, "maerz": 3, "mrt": 3, "mar": 3,
    "april": 4, "apr": 4,
    "mei": 5, "may": 5, "mai": 5,
    "juni": 6, "june": 6, "jun": 6,
    "juli": 7, "july": 7, "jul": 7,
    "augustus": 8, "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "oktober": 10, "october": 10, "okt": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dezember": 12, "dec": 12, "dez": 12,
}

_WEEKDAYS = (
    "maandag|dinsdag|woensdag|donderdag|vrijdag|zaterdag|zondag|"
    "monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    "montag|dienstag|mittwoch|donnerstag|freitag|samstag|sonntag|"
    "ma|di|wo|do|vr|za|zo|mon|tue|wed|thu|fri|sat|sun"
)
_MONTH_ALTERNATION = "|".join(sorted(MONTHS, key=len, reverse=True))

_RELATIVE_DAYS = {
    "vandaag": 0,
    "today": 0,
    "heute": 0,
    "morgen": 1,
    "tomorrow": 1,
    "overmorgen": 2,
    "day after tomorrow": 2,
    "übermorgen": 2,
}

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})(?:[tT ]\d{2}:\d{2})?")
_TEXTUAL_DATE = re.compile(
    rf"(?:\b(?:{_WEEKDAYS})\.?,?\s+)?\b(\d{{1,2}})(?:e|de|ste|th|st|nd|rd)?\.?\s+"
    rf"({_MONTH_ALTERNATION})\.?(?:\s+(\d{{4}}|'\d{{2}}))?\b",
    re.IGNORECASE,
)
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})[-/.](\d{1,2})[-/.](\d{4}|\d{2})\b")

_START_TIME = re.compile(
    r"\b(?:start|aanvang|begin|beginn|vanaf|from|om|at|ab|um)\s*:?\s*"
    r"(\d{1,2})[:.hu](\d{2})(?:\s*(am|pm)\b)?",
    re.IGNORECASE,
)
_CLOCK_TIME = re.compile(
    r"(?<![\d.])(\d{1,2})[:.](\d{2})(?![.\d]\d)(?:\s*(am|pm|uur|uhr|u)\b)?",
    re.IGNORECASE,
)
_H_TIME = re.compile(r"\b(\d{1,2})h(\d{2})\b", re.IGNORECASE)
_HOUR_ONLY = re.compile(r"\b(\d{1,2})\s*(am|pm|uur|uhr|u)\b", re.IGNORECASE)
_NO_TIME_PHRASES = ("tbd", "hele dag", "all day", "ganztägig", "nader te bepalen")

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

_COMPLETENESS_WEIGHTS = {
    "title": 0.15,
    "description": 0.10,
    "event_date": 0.10,
    "event_time": 0.05,
    "venue_name": 0.10,
    "venue_address": 0.05,
    "image_url": 0.10,
    "ends_at": 0.05,
    "price": 0.10,
    "ticket_url": 0.05,
    "organizer": 0.05,
    "performer": 0.05,
    "category": 0.05,
}


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    lowered = _PUNCTUATION.sub(" ", stripped.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def clean_whitespace(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = _WHITESPACE.sub(" ", str(value)).strip()
    return cleaned or None


def compute_fingerprint(title: str, venue: str | None, event_date: str | None) -> str:
    key = "|".join([normalize_text(title), normalize_text(venue), event_date or ""])
    return sha256_hex(key)


def parse_event_date(text: str | None, today: date | None = None) -> str | None:
    """Find the first event date in ``text`` and return it as YYYY-MM-DD.

    Years outside ``today.year - 1 .. today.year + 2`` are rejected, which
    keeps copyright lines and founding years out of event dates.
    """
    if not text:
        return None
    today = today or date.today()
    cleaned = _WHITESPACE.sub(" ", str(text).strip().lower())
    if not cleaned:
        return None
    if cleaned in _RELATIVE_DAYS:
        return (today + timedelta(days=_RELATIVE_DAYS[cleaned])).isoformat()

    match = _ISO_DATE.search(cleaned)
    if match:
        return _checked_date(int(match.group(1)), int(match.group(2)), int(match.group(3)), today)

    match = _TEXTUAL_DATE.search(cleaned)
    if match:
        day = int(match.group(1))
        month = MONTHS.get(match.group(2).lower().rstrip("."))
        year_raw = match.group(3)
        if month:
            if year_raw:
                year = _expand_year(year_raw.lstrip("'"), today)
                return _checked_date(year, month, day, today)
            return _upcoming_date(month, day, today)

    match = _NUMERIC_DATE.search(cleaned)
    if match:
        day = int(match.group(1))
        month = int(match.group(2))
        year = _expand_year(match.group(3), today)
        return _checked_date(year, month, day, today)

    for word, offset in _RELATIVE_DAYS.items():
        if re.search(rf"\b{re.escape(word)}\b", cleaned):
            return (today + timedelta(days=offset)).isoformat()
    return None


def _expand_year(raw: str, today: date) -> int:
    if len(raw) == 2:
        return int(str(today.year)[:2] + raw)
    return int(raw)


def _checked_date(year: int, month: int, day: int, today: date) -> str | None:
    if year < today.year - 1 or year > today.year + 2:
        return None
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _upcoming_date(month: int, day: int, today: date) -> str | None:
    try:
        candidate = date(today.year, month, day)
    except ValueError:
        return None
    if candidate < today:
        try:
            candidate = date(today.year + 1, month, day)
        except ValueError:
            return None
    return candidate.isoformat()


def extract_time(text: str | None) -> str | None:
    if not text:
        return None
    cleaned = str(text).lower().strip()
    if cleaned in _NO_TIME_PHRASES:
        return None

    match = _START_TIME.search(cleaned)
    if match:
        return _format_time(match.group(1), match.group(2), match.group(3))

    match = _CLOCK_TIME.search(cleaned)
    if match:
        return _format_time(match.group(1), match.group(2), match.group(3))

    match = _H_TIME.search(cleaned)
    if match:
        return _format_time(match.group(1), match.group(2))

    match = _HOUR_ONLY.search(cleaned)
    if match:
        return _format_time(match.group(1), "00", match.group(2))
    return None


def _format_time(hours: str, minutes: str, suffix: str | None = None) -> str | None:
    hour = int(hours)
    minute = int(minutes)
    suffix = (suffix or "").lower()
    if suffix == "pm" and hour < 12:
        hour += 12
    elif suffix == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def to_utc(
    event_date: str,
    event_time: str | None = None,
    tz_name: str = DEFAULT_TIMEZONE,
) -> str:
    """Resolve a local civil date/time to a UTC ISO timestamp.

    The offset comes from the zone rules for that date, so summer dates in
    Europe/Amsterdam resolve to UTC+2 and winter dates to UTC+1.
    """
    hours, minutes = (event_time or DEFAULT_EVENT_TIME).split(":")[:2]
    local_date = date.fromisoformat(event_date)
    local = datetime(
        local_date.year,
        local_date.month,
        local_date.day,
        int(hours),
        int(minutes),
        tzinfo=ZoneInfo(tz_name),
    )
    return to_iso(local.astimezone(timezone.utc))


def classify_category(
    text: str | None,
    hint: str | None = None,
    schema_type: str | None = None,
    default: str = DEFAULT_CATEGORY,
    min_confidence: float = 0.5,
) -> tuple[str, float]:
    category, confidence = _best_category(text or "", hint, schema_type)
    if category is None or confidence < min_confidence:
        return default, confidence
    return category, confidence


def _best_category(text: str, hint: str | None, schema_type: str | None) -> tuple[str | None, float]:
    if schema_type and schema_type in SCHEMA_TYPE_CATEGORIES and schema_type != "Festival":
        return SCHEMA_TYPE_CATEGORIES[schema_type], 0.9
    lowered = text.lower()
    if any(keyword in lowered for keyword in FAMILY_KEYWORDS):
        return "family", 0.85
    if any(keyword in lowered for keyword in SOCIAL_KEYWORDS):
        if any(word in lowered for word in _FOODIE_HINTS):
            return "foodie", 0.8
        return "social", 0.8

    best: str | None = None
    best_hits = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for keyword in keywords if _keyword_in(keyword, lowered))
        if hits > best_hits:
            best, best_hits = category, hits
    if best is not None:
        return best, min(0.5 + 0.1 * (best_hits - 1), 0.8)
    if hint and hint in CATEGORY_IDS:
        return hint, 0.55
    if schema_type in SCHEMA_TYPE_CATEGORIES:
        return SCHEMA_TYPE_CATEGORIES[schema_type], 0.5
    return None, 0.0


def _keyword_in(keyword: str, text: str) -> bool:
    # Short keywords ("les", "pop", "bos") only count as whole words.
    if len(keyword) <= 4:
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


def completeness(fields: dict[str, object]) -> float:
    score = 0.0
    for key, weight in _COMPLETENESS_WEIGHTS.items():
        value = fields.get(key)
        if not value:
            continue
        if key == "description" and len(str(value)) <= 50:
            continue
        score += weight
    return round(min(score, 1.0), 2)
