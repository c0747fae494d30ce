"""
Structured logging for knowledge store operations.
Ingestion, query, snapshot, compaction and recovery events share one format.
"""

import logging
from typing import Any, Dict, List


class StructuredLogger:
    """Structured logger for ingestion, retrieval and persistence operations."""

    def __init__(self, name: str = "insight_store"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_ingest(self, identity: str, status: str, details: Dict[str, Any] = None):
        """Log a document ingestion outcome."""
        log_details = {"identity": identity}
        if details:
            log_details.update(details)

        level = logging.WARNING if status == "failed" else logging.INFO
        self.log_operation("store.ingest", status, log_details, level)

    def log_delete(self, identity: str, existed: bool):
        """Log a document removal."""
        self.log_operation("store.delete", "success" if existed else "absent", {"identity": identity})

    def log_query(self, k: int, returned: int, rounds: int, duration_ms: float, details: Dict[str, Any] = None):
        """Log a filtered similarity query."""
        log_details = {
            "k": k,
            "returned": returned,
            "rounds": rounds,
            "duration_ms": round(duration_ms, 2)
        }
        if details:
            log_details.update(details)

        self.log_operation("query.search", "degraded" if returned < k else "success", log_details)

    def log_provider_retry(self, attempt: int, max_attempts: int, delay: float, error: str):
        """Log a retried embedding provider call."""
        self.log_operation("provider.embed", "retry", {
            "attempt": attempt,
            "max_attempts": max_attempts,
            "delay_sec": round(delay, 3),
            "error": error[:100]
        }, logging.WARNING)

    def log_snapshot(self, snapshot_id: int, status: str, details: Dict[str, Any] = None):
        """Log a snapshot write."""
        log_details = {"snapshot_id": snapshot_id}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation("persistence.snapshot", status, log_details, level)

    def log_recovery(self, status: str, details: Dict[str, Any] = None):
        """Log store recovery from snapshot and change log."""
        level = logging.WARNING if status in ("fallback", "skipped", "discard") else logging.INFO
        self.log_operation("persistence.recovery", status, details, level)

    def log_compaction(self, start_time: float, end_time: float, reclaimed: int, live: int, status: str = "success"):
        """Log index compaction."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        self.log_operation("index.compaction", status, {
            "duration_ms": duration_ms,
            "reclaimed": reclaimed,
            "live": live
        })

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log heartbeat task execution."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        log_details = {"duration_ms": duration_ms}
        if details:
            log_details.update(details)
        elif status == "success":
            log_details["message"] = f"Heartbeat task '{task_name}' completed in {duration_ms}ms"
        elif status == "failed":
            log_details["message"] = f"Heartbeat task '{task_name}' failed after {duration_ms}ms"

        level = logging.ERROR if status == "failed" else logging.INFO
        self.log_operation(f"heartbeat.{task_name}", status, log_details, level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None, sensitive_fields: List[str] = None):
    """General audit event logging; document bodies are never logged in full."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'vector', 'password', 'secret']

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = ['content', 'vector', 'password', 'secret']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload
