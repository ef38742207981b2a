"""
Dramatiq Worker Entrypoint

This module serves as the entry point for Dramatiq workers.
It imports all actor modules to register them with the broker.

Usage:
    dramatiq app.worker --processes 2 --threads 1 --verbose

Procfile Configuration:
    worker: dramatiq app.worker --processes 2 --threads 1 --verbose

Sweeps are I/O-bound (Places and Claude calls, store writes), so threads
work well. Keep processes x threads at or below DISCOVERY_MAX_CONCURRENT_SWEEPS.
"""

import structlog

from app.actors import broker
from app.config import settings
from app.services.monitoring import configure_structlog, init_sentry, setup_logging

configure_structlog()
setup_logging(environment=settings.environment)
init_sentry()
logger = structlog.get_logger()

# Importing app.actors registered run_discovery_sweep with the broker

# Worker health check log
logger.info("worker_ready", broker=type(broker).__name__)
