import structlog
import logging
import sys
from typing import Dict, Any, Optional
from collections import defaultdict
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "convo-agent"
) -> None:
    """Setup structured logging configuration"""
    
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )
    
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]
    
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    
    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request correlation fields to all log entries"""
    
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()
    
    bound = structlog.contextvars.get_contextvars()
    for key in ("session_id", "conversation_id", "connection_id"):
        if key not in event_dict and bound.get(key):
            event_dict[key] = bound[key]
    
    return event_dict


class EngineLogger:
    """Specialized logger for orchestration events"""
    
    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)
        
    def log_session_event(
        self,
        action: str,
        session_id: str,
        agent_type: Optional[str] = None,
        **kwargs
    ):
        """Log session lifecycle events"""
        
        self.logger.info(
            "session_event",
            action=action,
            session_id=session_id,
            agent_type=agent_type,
            **kwargs
        )
        
    def log_tool_event(
        self,
        phase: str,
        call_id: str,
        tool_name: Optional[str],
        session_id: Optional[str] = None,
        **kwargs
    ):
        """Log tool start/complete events relayed to a client"""
        
        self.logger.info(
            "tool_event",
            phase=phase,
            call_id=call_id,
            tool_name=tool_name,
            session_id=session_id,
            **kwargs
        )
        
    def log_memory_event(
        self,
        action: str,
        conversation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log memory lifecycle events"""
        
        self.logger.info(
            "memory_event",
            action=action,
            conversation_id=conversation_id,
            details=details or {}
        )
        
    def log_stream_event(
        self,
        session_id: str,
        phase: str,
        chunks: int = 0,
        characters: int = 0,
        error: Optional[str] = None
    ):
        """Log streaming relay milestones"""
        
        self.logger.info(
            "stream_event",
            session_id=session_id,
            phase=phase,
            chunks=chunks,
            characters=characters,
            error=error
        )


engine_logger = EngineLogger("convo_agent")


class MetricsCollector:
    """In-process counters, gauges and latency series.

    Totals are kept per metric name; tagged calls additionally feed a
    per-tag series so ``/health`` can break counts down, e.g. discovery
    failures per server label.
    """
    
    def __init__(self):
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = {}
        self.latencies: Dict[str, Dict[str, float]] = {}
        self.tagged_counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        
    @staticmethod
    def _series(tags: Optional[Dict[str, str]]) -> Optional[str]:
        if not tags:
            return None
        return ",".join(f"{key}={value}" for key, value in sorted(tags.items()))
        
    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Fold one duration into the operation's running stats"""
        
        stats = self.latencies.setdefault(
            operation,
            {"count": 0, "total_ms": 0.0, "min_ms": duration_ms, "max_ms": duration_ms}
        )
        stats["count"] += 1
        stats["total_ms"] += duration_ms
        stats["min_ms"] = min(stats["min_ms"], duration_ms)
        stats["max_ms"] = max(stats["max_ms"], duration_ms)
        
        engine_logger.logger.debug("latency", operation=operation, duration_ms=round(duration_ms, 3), tags=tags or {})
        
    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] += value
        
        series = self._series(tags)
        if series:
            self.tagged_counters[name][series] += value
            
    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        
    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        """Total for a counter, or for one tagged series of it"""
        
        series = self._series(tags)
        if series is None:
            return self.counters.get(name, 0)
        return self.tagged_counters.get(name, {}).get(series, 0)
        
    def get_gauge(self, name: str) -> Optional[float]:
        return self.gauges.get(name)
        
    def get_metrics_summary(self) -> Dict[str, Any]:
        """Snapshot suitable for JSON output"""
        
        return {
            "counters": dict(self.counters),
            "tagged_counters": {name: dict(series) for name, series in self.tagged_counters.items()},
            "gauges": dict(self.gauges),
            "latencies": {
                operation: {
                    "count": stats["count"],
                    "avg_ms": stats["total_ms"] / stats["count"],
                    "min_ms": stats["min_ms"],
                    "max_ms": stats["max_ms"]
                }
                for operation, stats in self.latencies.items()
            }
        }
