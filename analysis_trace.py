"""
Request-scoped tracing for parcel analyses.

Provides a thread-local TraceContext that records:
  - Per-stage timing (parcel_lookup, reachability, pois, hazard, nearest_*)
  - Per-call timing for the routing service and spatial store queries
  - End-of-analysis summary (total elapsed, call count, outcome, fallback)

Usage:
    from analysis_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=f"{village}/{survey_number}")
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In clients:
    trace = get_trace()
    if trace:
        trace.record_call(...)
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)


@dataclass
class CallRecord:
    """One outbound call: an isochrone request or a spatial query."""
    service: str          # "isochrone" | "spatial"
    endpoint: str         # "walking", "pois_intersecting", ...
    elapsed_ms: int
    status_code: int      # HTTP status; 0 for network failures and SQL calls
    outcome: str = "ok"   # "ok" | "http_error" | "timeout" | "bad_geometry" | "error"
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage."""
    stage_name: str
    elapsed_ms: int = 0
    calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


@dataclass
class TraceContext:
    """Accumulates timing data for a single analysis."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    calls: List[CallRecord] = field(default_factory=list)
    model_version: str = ""
    used_fallback: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _stage_local: threading.local = field(default_factory=threading.local, repr=False)

    # Stages run on worker threads, so the "current stage" is per thread.

    def start_stage(self, name: str):
        self._stage_local.name = name

    def end_stage(self):
        self._stage_local.name = ""

    @property
    def current_stage(self) -> str:
        return getattr(self._stage_local, "name", "")

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        with self._lock:
            in_stage = sum(1 for c in self.calls if c.stage == stage_name)
            rec = StageRecord(
                stage_name=stage_name,
                elapsed_ms=int((end_ts - start_ts) * 1000),
                calls_made=in_stage,
                error_class=error_class,
                error_message=error_message,
            )
            self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            in_stage,
            err_info,
        )

    def record_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int = 0,
        outcome: str = "ok",
    ):
        rec = CallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            outcome=outcome,
            stage=self.current_stage,
        )
        with self._lock:
            self.calls.append(rec)
        logger.debug(
            "  [call] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d outcome=%s",
            self.trace_id,
            rec.stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            outcome,
        )

    def summary_dict(self) -> Dict[str, Any]:
        """Summary suitable for logging and for attaching to stored results."""
        total_elapsed = int((time.time() - self.request_start) * 1000)
        errored = [s for s in self.stages if s.error_class]
        if errored:
            outcome = "error"
        elif not self.stages:
            outcome = "empty"
        elif self.used_fallback:
            outcome = "fallback"
        else:
            outcome = "success"

        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_calls": len(self.calls),
            "stages_completed": len(self.stages) - len(errored),
            "stages_errored": len(errored),
            "final_outcome": outcome,
        }
        if self.model_version:
            result["model_version"] = self.model_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d calls=%d "
            "completed=%d errored=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["final_outcome"],
        )

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "calls": s.calls_made,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in self.stages
        ]


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current analysis's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
