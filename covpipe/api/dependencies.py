"""
API Dependencies
================
Process-wide RunService used by the routers. Built lazily from
PIPELINE_CONFIG on first use; tests replace it through
``app.dependency_overrides``.
"""
import logging
from typing import Optional

from covpipe.core import config
from covpipe.parser.pipeline_config import load_pipeline_config
from covpipe.services.run_service import RunService

logger = logging.getLogger(__name__)

_service: Optional[RunService] = None


def get_run_service() -> RunService:
    global _service
    if _service is None:
        pipeline = load_pipeline_config(config.PIPELINE_CONFIG)
        _service = RunService(pipeline)
        logger.info("Run service ready (pipeline=%s)", pipeline.source_path or "defaults")
    return _service


def get_webhook_secret() -> str:
    return config.WEBHOOK_SECRET


def shutdown_run_service() -> None:
    """Cancel the runs still in flight; a service never built is left alone."""
    global _service
    if _service is None:
        return
    _service.shutdown()
    _service = None
