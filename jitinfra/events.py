"""
Event logging utilities for NDJSON format.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from .state import get_run_dir


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Emit an event to the run's events.ndjson file.

    Args:
        run_id: Run ID
        event_type: Event type (e.g., "STEP_START", "POLL_ATTEMPT")
        data: Event data
    """
    run_dir = get_run_dir(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    events_file = run_dir / "events.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(events_file, "a") as f:
        f.write(json.dumps(event) + "\n")
        f.flush()


def read_events(run_id: str) -> List[Dict[str, Any]]:
    """
    Read all events from a run's events.ndjson file.

    Args:
        run_id: Run ID

    Returns:
        List of events
    """
    events_file = get_run_dir(run_id) / "events.ndjson"

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(run_id: str) -> Optional[Dict[str, Any]]:
    events = read_events(run_id)
    return events[-1] if events else None


def get_status_from_events(run_id: str) -> str:
    """
    Determine run status from events.

    Args:
        run_id: Run ID

    Returns:
        Status string
    """
    last_event = get_last_event(run_id)
    if not last_event:
        return "unknown"

    status_map = {
        EventTypes.RUN_START: "running",
        EventTypes.STEP_START: "running",
        EventTypes.STEP_OK: "running",
        EventTypes.STEP_FAILED: "running",
        EventTypes.POLL_ATTEMPT: "waiting",
        EventTypes.STEP_SKIPPED: "aborted",
        EventTypes.RUN_ABORTED: "aborted",
        EventTypes.RUN_DONE: "completed",
    }

    return status_map.get(last_event.get("type", ""), "unknown")


class EventTypes:
    RUN_START = "RUN_START"
    STEP_START = "STEP_START"
    STEP_OK = "STEP_OK"
    STEP_FAILED = "STEP_FAILED"
    STEP_SKIPPED = "STEP_SKIPPED"
    POLL_ATTEMPT = "POLL_ATTEMPT"
    RUN_DONE = "RUN_DONE"
    RUN_ABORTED = "RUN_ABORTED"
