import json
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from uuid import UUID

from eventvigil.models import ParsingMethod, StagingStatus
from eventvigil.storage import claim_next_job, complete_job, enqueue_job, get_job, init_db
from eventvigil.utils import json_dumps, json_loads_or


@dataclass
class Outcome:
    event_id: int
    inserted: bool


def test_json_dumps_handles_supported_types():
    payload = {
        "dataclass": Outcome(event_id=3, inserted=True),
        "enum": ParsingMethod.JSON_LD,
        "datetime": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "date": date(2025, 1, 2),
        "path": Path("/tmp/eventvigil"),
        "uuid": UUID("12345678-1234-5678-1234-567812345678"),
        "set": {"a", "b"},
        "tuple": ("x", "y"),
    }
    encoded = json_dumps(payload)
    decoded = json.loads(encoded)
    assert decoded["dataclass"] == {"event_id": 3, "inserted": True}
    assert decoded["enum"] == "json_ld"
    assert decoded["datetime"].startswith("2025-01-01T00:00:00")
    assert decoded["date"] == "2025-01-02"
    assert decoded["path"] == "/tmp/eventvigil"
    assert decoded["uuid"] == "12345678-1234-5678-1234-567812345678"
    assert sorted(decoded["set"]) == ["a", "b"]
    assert decoded["tuple"] == ["x", "y"]


def test_json_loads_or_falls_back():
    assert json_loads_or(None, {}) == {}
    assert json_loads_or("{broken", []) == []
    assert json_loads_or('{"a": 1}', None) == {"a": 1}


def test_job_result_serialization_handles_complex_types(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    job_id = enqueue_job(conn, "process_staging", None)
    job = claim_next_job(conn, "worker-1")
    assert job is not None
    result = {
        "outcome": Outcome(event_id=1, inserted=False),
        "status": StagingStatus.COMPLETED,
        "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "tuple": ("x", "y"),
    }
    assert complete_job(conn, job_id, result=result) is True
    stored = get_job(conn, job_id).result
    assert stored["status"] == "completed"
    assert stored["outcome"] == {"event_id": 1, "inserted": False}
