"""
Azure Functions App - Follow-up Call Orchestrator
Outbound patient follow-up calls driven by Azure Communication Services webhooks
"""

import azure.functions as func
import logging

from bot_config import CallSettings, load_local_settings
from services.call_orchestrator import build_orchestrator
from endpoints.health_endpoints import register_health_endpoints
from endpoints.phone_endpoints import register_phone_endpoints

# Load settings at module level
load_local_settings()

# Missing required configuration aborts the worker here
settings = CallSettings.from_environment()
settings.validate()

orchestrator = build_orchestrator(settings)

# Initialize the Function App
app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)

register_health_endpoints(app, orchestrator)
register_phone_endpoints(app, orchestrator)

logging.info("Azure Functions App initialized with call orchestrator")
