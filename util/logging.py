"""
Structured logging for the semantic memory core.
Embedding store, cluster index and retrieval pipeline all report through here.
"""

import logging
from typing import Any, Dict, List, Optional


class StructuredLogger:
    """Structured logger for vector, cluster and retrieval operations."""

    def __init__(self, name: str = "engram"):
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

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.error(message)
        elif status in ("degraded", "skipped"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_cluster_operation(self, operation: str, owner_id: str, cluster_id: Optional[int] = None,
                              details: Dict[str, Any] = None, status: str = "success"):
        """Log a cluster index operation."""
        log_details = {"owner_id": owner_id}
        if cluster_id is not None:
            log_details["cluster_id"] = cluster_id
        if details:
            log_details.update(details)

        self.log_operation(f"cluster.{operation}", status, log_details)

    def log_retrieval(self, owner_id: str, query: str, core_count: int, linked_count: int,
                      status: str = "success", details: Dict[str, Any] = None):
        """Log a context retrieval, never the full query text."""
        log_details = {
            "owner_id": owner_id,
            "query": sanitize_payload(query, max_length=40),
            "core_count": core_count,
            "linked_count": linked_count,
        }
        if details:
            log_details.update(details)

        self.log_operation("retrieval.build_context", status, log_details)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None,
                     max_length: int = 100) -> Any:
    """Sanitize payloads for logging: redact sensitive keys, truncate long strings."""
    if sensitive_fields is None:
        sensitive_fields = ['text', 'content', 'notes', 'vector', 'secret', 'password']

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields, max_length)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return payload[:max_length] + "..." if len(payload) > max_length else payload
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields, max_length) for item in payload]
    else:
        return payload


# Global logger instance
logger = StructuredLogger()
