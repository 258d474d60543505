"""
Health and Status Endpoints
Configuration health check and a summary of the calls currently in progress
"""

import azure.functions as func
import logging
import json
import time

from services.call_orchestrator import CallOrchestrator


def register_health_endpoints(app: func.FunctionApp, orchestrator: CallOrchestrator):
    """Register health and status endpoints with the Function App"""

    @app.route(route="health_check", methods=["GET"])
    async def health_check(req: func.HttpRequest) -> func.HttpResponse:
        """Health check endpoint to verify service is running"""
        logging.info('Health check endpoint called')

        config_status = orchestrator.settings.configuration_status()
        config_status["cosmos_db_connected"] = orchestrator.patients.is_connected()
        all_healthy = all(config_status.values())

        response_data = {
            "status": "healthy" if all_healthy else "partial",
            "timestamp": int(time.time()),
            "configuration": config_status,
            "activeCalls": len(orchestrator.store)
        }

        return func.HttpResponse(
            json.dumps(response_data, indent=2),
            status_code=200 if all_healthy else 206,
            mimetype="application/json"
        )

    @app.route(route="conversation_status", methods=["GET"])
    async def conversation_status(req: func.HttpRequest) -> func.HttpResponse:
        """Per-call status, milestones and conversation metrics for every active call"""
        logging.info('Conversation status endpoint called')
        summary = orchestrator.conversation_summary()
        summary["timestamp"] = int(time.time())

        return func.HttpResponse(
            json.dumps(summary, indent=2),
            status_code=200,
            mimetype="application/json",
            headers={'Access-Control-Allow-Origin': '*'}
        )
