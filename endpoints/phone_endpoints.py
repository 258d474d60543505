"""
Phone Calling Endpoints (PSTN)
Outbound call placement, the Call Automation webhook and per-call status views
"""

import azure.functions as func
import logging
import json
from azure.core.exceptions import AzureError

from bot_config import CallSettings
from services.call_orchestrator import CallOrchestrator
from services.cosmos_manager import PatientRecord, PatientStoreError, Prescription
from services.phone_calling import InvalidPhoneNumber, validate_phone_number

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type'
}


def _json_response(payload, status_code: int = 200) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(payload, indent=2),
        status_code=status_code,
        mimetype="application/json",
        headers=CORS_HEADERS
    )


def patient_from_request(body: dict, phone_number: str, settings: CallSettings) -> PatientRecord:
    """Build call context from the request body when no stored patient is referenced"""
    medications = body.get('medications') or []
    if isinstance(medications, str):
        medications = [medications]
    return PatientRecord(
        id=body.get('patientId') or f"adhoc-{phone_number}",
        patient_name=body.get('patientName') or settings.default_patient_name,
        phone_number=phone_number,
        doctor_name=body.get('doctorName') or settings.default_doctor_name,
        prescriptions=[Prescription(medication_name=name) for name in medications]
    )


def register_phone_endpoints(app: func.FunctionApp, orchestrator: CallOrchestrator):
    """Register PSTN phone calling endpoints with the Function App"""

    @app.route(route="make_phone_call", methods=["POST", "OPTIONS"])
    async def make_phone_call(req: func.HttpRequest) -> func.HttpResponse:
        """Place a follow-up call and seed its session with the patient context"""
        # Handle CORS preflight requests
        if req.method == "OPTIONS":
            return func.HttpResponse("", status_code=200, headers={**CORS_HEADERS, 'Access-Control-Max-Age': '86400'})

        logging.info('PSTN phone call endpoint called')

        try:
            body = req.get_json() or {}
        except ValueError:
            return _json_response({"success": False, "error": "Invalid JSON in request body"}, 400)

        phone_number = body.get('phoneNumber') or body.get('phone')
        is_valid, error_msg = validate_phone_number(phone_number)
        if not is_valid:
            return _json_response({"success": False, "error": f"Phone number validation error: {error_msg}"}, 400)

        try:
            patient = None
            if body.get('patientId'):
                patient = await orchestrator.patients.get_patient(body['patientId'])
            if patient is None:
                patient = patient_from_request(body, phone_number, orchestrator.settings)

            call_id = await orchestrator.place_call(phone_number, patient)
        except InvalidPhoneNumber as e:
            return _json_response({"success": False, "error": str(e)}, 400)
        except (AzureError, PatientStoreError) as e:
            logging.error(f"Failed to create PSTN call: {str(e)}")
            logging.error(f"Exception type: {type(e).__name__}")
            return _json_response({
                "success": False,
                "error": f"Failed to create PSTN call: {str(e)}",
                "call_type": "PSTN"
            }, 500)

        return _json_response({
            "success": True,
            "call_id": call_id,
            "phone_number": phone_number,
            "patient_name": patient.patient_name,
            "call_type": "PSTN"
        })

    @app.route(route="phone_call_webhook", methods=["POST"])
    async def phone_call_webhook(req: func.HttpRequest) -> func.HttpResponse:
        """Event Grid / Call Automation callback ingress"""
        logging.info('PSTN webhook endpoint called')
        body = req.get_body()
        logging.debug(f"Webhook body: {body[:2000]!r}")

        status_code, payload = await orchestrator.handle_webhook(body)
        return func.HttpResponse(
            json.dumps(payload),
            status_code=status_code,
            mimetype="application/json"
        )

    @app.route(route="get_call_status", methods=["GET"])
    async def get_call_status(req: func.HttpRequest) -> func.HttpResponse:
        call_id = req.params.get('callId') or req.params.get('call_id')
        if not call_id:
            return _json_response({"error": "callId parameter is required"}, 400)

        status = orchestrator.call_status(call_id)
        if status is None:
            return _json_response({"error": f"No active call found for {call_id}"}, 404)
        return _json_response(status)

    @app.route(route="get_conversation_history", methods=["GET"])
    async def get_conversation_history(req: func.HttpRequest) -> func.HttpResponse:
        call_id = req.params.get('callId') or req.params.get('call_id')
        if not call_id:
            return _json_response({"error": "callId parameter is required"}, 400)

        history = orchestrator.conversation_history(call_id)
        if history is None:
            return _json_response({"error": f"No active call found for {call_id}"}, 404)
        return _json_response({"callId": call_id, "turns": len(history), "conversationHistory": history})
