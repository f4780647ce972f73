"""Structured logging for engine calls and run lifecycles"""
import structlog
from contextlib import asynccontextmanager
from time import perf_counter
from typing import Any, Dict, Optional


structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


logger = structlog.get_logger("gptscript")


def _elapsed_ms(start: float) -> float:
    return round((perf_counter() - start) * 1000, 2)


class RunTrace:
    """
    Lifecycle log for one Run.

    Every entry carries the run id and request path; state changes also
    record how long the Run has existed, and usage is logged at most once.
    """

    def __init__(self, run_id: str, request_path: str):
        self.log = logger.bind(run_id=run_id, request=request_path)
        self._created = perf_counter()
        self._usage_logged = False

    def state(self, previous: str, current: str, error: Optional[str] = None):
        context: Dict[str, Any] = {"previous": previous, "state": current, "age_ms": _elapsed_ms(self._created)}
        if error:
            context["error"] = error
        level = self.log.warning if current == "error" else self.log.info
        level("run.state", **context)

    def usage(self, counters: Dict[str, Any]):
        if self._usage_logged:
            return
        self._usage_logged = True
        self.log.info("run.usage", **counters)


class Telemetry:
    """Timing for engine requests and per-run lifecycle logs"""

    def __init__(self):
        self.logger = logger

    @asynccontextmanager
    async def trace_task(self, task: str, /, **context):
        """Time an engine request; context keys are logged as given"""
        start = perf_counter()
        self.logger.debug(f"{task}.start", **context)

        try:
            yield
            self.logger.info(f"{task}.complete", duration_ms=_elapsed_ms(start), **context)
        except Exception as e:
            self.logger.error(
                f"{task}.failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(start),
                **context
            )
            raise

    def run_trace(self, run_id: str, request_path: str) -> RunTrace:
        return RunTrace(run_id, request_path)


telemetry = Telemetry()
