"""
AWS Lambda handlers for Instance Guardian.

``api_handler`` serves the API Gateway routes. ``monitor_handler`` runs one
monitoring pass; it is invoked by an EventBridge schedule or asynchronously
by the API when a user asks for an immediate pass.
"""

import json
import logging
from typing import Optional

from .api import ApiRouter
from .config import Settings
from .scheduler import LambdaTrigger, MonitoringScheduler
from .service import GuardianService
from .store import Stores

logger = logging.getLogger()
logger.setLevel(logging.INFO)

_router: Optional[ApiRouter] = None


def _get_router() -> ApiRouter:
    # Reused across warm invocations
    global _router
    if _router is None:
        settings = Settings.from_env()
        dispatch = LambdaTrigger(settings.monitor_function_name) if settings.monitor_function_name else None
        _router = ApiRouter(GuardianService(settings, Stores.from_settings(settings), dispatch=dispatch))
    return _router


def api_handler(event, _context):
    """API Gateway proxy entry point."""
    logger.info("%s %s", event.get("httpMethod"), event.get("path"))
    return _get_router().handle(event)


def monitor_handler(event, _context):
    """Scheduled or dispatched monitoring pass."""
    event = event or {}
    logger.info("Monitoring triggered. Event: %s", json.dumps(event, default=str))

    settings = Settings.from_env()
    scheduler = MonitoringScheduler(settings, Stores.from_settings(settings))
    summary = scheduler.run_pass(user_id=event.get("user_id"))

    if summary.users_failed:
        logger.warning("Monitoring failed for %d user(s): %s", summary.users_failed, summary.errors)

    return {"statusCode": 200, "body": summary.to_dict()}
