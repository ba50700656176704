from .ai_parser import AIParser, AIParserError, AIParserUnavailable
from .jsonld import extract_jsonld_events, parse_event_object

__all__ = [
    "AIParser",
    "AIParserError",
    "AIParserUnavailable",
    "extract_jsonld_events",
    "parse_event_object",
]
