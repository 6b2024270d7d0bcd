from __future__ import annotations

import logging
from pathlib import Path

from event_harvester.logging_conf import source_log_path, source_logger, tail_log


def test_tail_log_returns_last_lines(tmp_path: Path) -> None:
    path = tmp_path / "sample.log"
    path.write_text("".join(f"line {index}\n" for index in range(10)), encoding="utf-8")
    assert tail_log(path, 3) == ["line 7", "line 8", "line 9"]
    assert tail_log(tmp_path / "missing.log") == []


def test_source_logger_writes_json_lines(harvester_home: Path) -> None:
    log = source_logger("city-events")
    log.info("scrape_started", url="https://events.example.com/listing")
    for handler in logging.getLogger("event_harvester.source.city-events").handlers:
        handler.flush()

    path = source_log_path("city-events")
    assert path == harvester_home.resolve() / "logs" / "sources" / "city-events.log"
    lines = tail_log(path)
    assert any('"scrape_started"' in line and '"source": "city-events"' in line for line in lines)
