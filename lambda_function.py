"""AWS Lambda handler for event ingestion and reconciliation."""
import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from processor.normalizer import EventNormalizer
from processor.orchestrator import IngestionOrchestrator
from processor.reconciler import ReconciliationEngine
from processor.sweeper import StalenessSweeper
from scraper.page_fetcher import DEFAULT_USER_AGENT, HttpPageFetcher
from scraper.sources import DEFAULT_SOURCES, load_sources
from storage.event_store import DynamoDBEventStore

# Attributes every LogRecord has; anything else came in through `extra`
_RESERVED_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime'
}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class PipelineConfig:
    """Runtime configuration read from the environment."""
    table_name: str = 'events'
    log_level: str = 'INFO'
    timeout_seconds: int = 60
    default_city: str = 'Sydney'
    retention_days: int = 7
    max_workers: int = 1
    deadline_seconds: Optional[float] = None
    sources_file: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT


def load_config() -> PipelineConfig:
    """Read PipelineConfig from environment variables."""
    deadline = os.environ.get('DEADLINE_SECONDS')
    return PipelineConfig(
        table_name=os.environ.get('TABLE_NAME', 'events'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        timeout_seconds=int(os.environ.get('TIMEOUT_SECONDS', '60')),
        default_city=os.environ.get('DEFAULT_CITY', 'Sydney'),
        retention_days=int(os.environ.get('RETENTION_DAYS', '7')),
        max_workers=int(os.environ.get('MAX_WORKERS', '1')),
        deadline_seconds=float(deadline) if deadline else None,
        sources_file=os.environ.get('SOURCES_FILE') or None,
        user_agent=os.environ.get('USER_AGENT', DEFAULT_USER_AGENT)
    )


def build_orchestrator(config: PipelineConfig) -> IngestionOrchestrator:
    """Wire the pipeline components for one cycle."""
    sources = load_sources(config.sources_file) if config.sources_file else DEFAULT_SOURCES
    store = DynamoDBEventStore(table_name=config.table_name)

    return IngestionOrchestrator(
        sources=sources,
        fetcher=HttpPageFetcher(
            timeout=config.timeout_seconds,
            user_agent=config.user_agent
        ),
        normalizer=EventNormalizer(default_city=config.default_city),
        engine=ReconciliationEngine(store),
        sweeper=StalenessSweeper(store, retention=timedelta(days=config.retention_days)),
        max_workers=config.max_workers,
        deadline_seconds=config.deadline_seconds
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler running one ingestion cycle.

    Args:
        event: EventBridge event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and summary statistics
    """
    config = load_config()

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    logger.info(
        f"Lambda execution started",
        extra={
            'table_name': config.table_name,
            'default_city': config.default_city,
            'retention_days': config.retention_days,
            'timeout_seconds': config.timeout_seconds
        }
    )

    try:
        orchestrator = build_orchestrator(config)

        try:
            logger.info("Running ingestion cycle")
            result = orchestrator.run()
        except Exception as e:
            # Storage failures abort the cycle; stored events keep their last version
            logger.error(
                f"Ingestion cycle failed: {str(e)}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            duration = time.time() - start_time
            return {
                'statusCode': 500,
                'body': json.dumps({
                    'message': 'Failed to ingest events',
                    'error': str(e),
                    'error_type': type(e).__name__,
                    'note': 'Previously stored events are unchanged',
                    'duration_seconds': round(duration, 2)
                })
            }

        duration = time.time() - start_time

        logger.info(
            f"Lambda execution completed successfully",
            extra={
                'duration_seconds': round(duration, 2),
                'events_created': result.created,
                'events_updated': result.updated,
                'events_deactivated': result.deactivated,
                'sources_failed': result.sources_failed
            }
        )

        return {
            'statusCode': 200,
            'body': json.dumps({
                'message': 'Ingestion completed successfully',
                'statistics': {
                    'sources_attempted': result.sources_attempted,
                    'sources_failed': result.sources_failed,
                    'raw_events_found': result.raw_records,
                    'drafts_normalized': result.drafts,
                    'drafts_skipped': result.skipped,
                    'events_created': result.created,
                    'events_updated': result.updated,
                    'events_refreshed': result.refreshed,
                    'events_deactivated': result.deactivated,
                    'deadline_exceeded': result.deadline_exceeded,
                    'duration_seconds': round(duration, 2)
                },
                'errors': result.errors
            })
        }

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return {
            'statusCode': 500,
            'body': json.dumps({
                'message': 'Ingestion failed',
                'error': str(e),
                'error_type': type(e).__name__,
                'duration_seconds': round(duration, 2)
            })
        }
