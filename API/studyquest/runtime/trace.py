from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TraceEvent:
    turn: int
    kind: str  # model_turn | tool_call | outcome
    name: str | None = None
    params: dict | None = None
    result: Any = None
    summarized: bool = False
    timestamp: str = field(default_factory=_now)


class RunTrace:
    """Audit trail of one orchestration run. Tool results are stored unsummarized."""

    def __init__(self, *, run_id: str, child_id: str, task: str):
        self.run_id = run_id
        self.child_id = child_id
        self.task = task
        self.created_at = _now()
        self.updated_at = self.created_at
        self.status = "running"
        self.events: list[TraceEvent] = []
        self.metadata: dict[str, Any] = {}

    def record_model_turn(self, turn: int, text: str | None, tool_calls: list[dict]) -> None:
        self.events.append(TraceEvent(turn=turn, kind="model_turn", result={"text": text, "tool_calls": tool_calls}))
        self.updated_at = _now()

    def record_tool_call(self, turn: int, name: str, params: dict, result: Any, summarized: bool) -> None:
        self.events.append(
            TraceEvent(turn=turn, kind="tool_call", name=name, params=params, result=result, summarized=summarized)
        )
        self.updated_at = _now()

    def finish(self, status: str, turns: int, error: str | None = None) -> None:
        self.status = status
        self.metadata.update({"turns": turns, "error": error})
        self.events.append(TraceEvent(turn=turns, kind="outcome", name=status, result={"error": error}))
        self.updated_at = _now()

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "child_id": self.child_id,
            "task": self.task,
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "events": [asdict(event) for event in self.events],
            "metadata": self.metadata,
        }

    def save(self, base_dir: Path) -> Path:
        base_dir.mkdir(parents=True, exist_ok=True)
        target = base_dir / f"run_{self.run_id}.json"
        target.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        return target
