"""Structured logging configuration for Tribunal."""

import logging
from typing import Dict, Any, Optional

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog on top of stdlib logging."""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger bound to a component name.

    The logger stays lazy, so module-level loggers pick up the configuration
    applied later by ``configure_logging``.
    """
    return structlog.get_logger(component, component=component, audit=True)


def log_ingestion_event(
    logger: structlog.BoundLogger,
    document_id: str,
    status: str,
    method: Optional[str],
    total_pages: int,
    processed_pages: int,
    failed_pages: int,
    processing_time_ms: float,
    error: Optional[str] = None
) -> None:
    """Log the outcome of one document ingestion run."""
    logger.info(
        "document_processed",
        document_id=document_id,
        status=status,
        method=method,
        total_pages=total_pages,
        processed_pages=processed_pages,
        failed_pages=failed_pages,
        processing_time_ms=processing_time_ms,
        error=error,
        event_type="document_ingestion"
    )


def log_search_event(
    logger: structlog.BoundLogger,
    query: str,
    mode: str,
    result_count: int,
    execution_time_ms: float,
    weights: Dict[str, float] = None
) -> None:
    """Log a completed search call."""
    logger.info(
        "search_completed",
        query=query,
        mode=mode,
        result_count=result_count,
        execution_time_ms=execution_time_ms,
        weights=weights or {},
        event_type="search"
    )


def log_job_event(
    logger: structlog.BoundLogger,
    event: str,
    job_id: str,
    document_id: str,
    kind: str,
    **extra: Any
) -> None:
    """Log a job lifecycle transition (queued, started, completed, failed)."""
    logger.info(
        event,
        job_id=job_id,
        document_id=document_id,
        kind=kind,
        event_type="job",
        **extra
    )
