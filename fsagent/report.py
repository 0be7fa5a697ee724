"""Agent errors and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing credentials, duplicate tools, etc.)."""


class IterationLimitError(AgentError):
    """Raised when a run hits its iteration budget and is not allowed to continue."""

    def __init__(self, message: str, iterations: int):
        super().__init__(message)
        self.iterations = iterations


class MaxIterationsError(IterationLimitError):
    """Raised when the budget is exhausted and no on-limit hook is configured."""


class StoppedByUserError(IterationLimitError):
    """Raised when the on-limit hook declines to continue."""


class ReportCollector:
    """Accumulates events during agent runs for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(self, iteration: int, duration: float, finish_reason: str):
        self.llm_calls += 1
        self.total_llm_time += duration
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration
        self.events.append(
            {
                "iteration": iteration,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "finish_reason": finish_reason,
            }
        )

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments: dict | None,
        outcome: str,
        duration: float,
        error: str | None = None,
    ):
        """Record one tool invocation.

        outcome is one of "ok", "error", "denied" or "unknown".
        """
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(
            name, {"ok": 0, "error": 0, "denied": 0, "unknown": 0}
        )
        stats[outcome] += 1
        event: dict = {
            "iteration": iteration,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "outcome": outcome,
            "duration_s": round(duration, 3),
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_limit(self, iteration: int, decision: str):
        self.events.append(
            {"iteration": iteration, "type": "iteration_limit", "decision": decision}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        def _total(key: str) -> int:
            return sum(s[key] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "iterations": self.max_iteration_seen,
                "tool_calls_total": sum(
                    _total(k) for k in ("ok", "error", "denied", "unknown")
                ),
                "tool_calls_succeeded": _total("ok"),
                "tool_calls_failed": _total("error") + _total("unknown"),
                "tool_calls_denied": _total("denied"),
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
