"""
Webhook Event Parsing
Helpers that read Event Grid and Call Automation callback payloads

Both formats are handled here so the orchestrator only ever sees plain dicts,
a bare event type name and a raw call identifier.
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional, Union

VALIDATION_EVENT = "Microsoft.EventGrid.SubscriptionValidationEvent"
EVENT_PREFIX = "Microsoft.Communication."

_SUBJECT_CALL_ID = re.compile(r"call/([^/]+)")
_SUBJECT_PARTICIPANT = re.compile(r"/participant/(\+?\d+)")


def parse_event_batch(body: Union[str, bytes, None]) -> List[Dict[str, Any]]:
    """Decode a webhook body into a list of event dicts; raises ValueError on bad JSON"""
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    if not body or not body.strip():
        return []

    payload = json.loads(body)
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return [event for event in payload if isinstance(event, dict)]
    raise ValueError(f"Unsupported webhook payload type: {type(payload).__name__}")


def is_validation_event(event: Dict[str, Any]) -> bool:
    return (event.get('eventType') or event.get('type')) == VALIDATION_EVENT


def validation_code(event: Dict[str, Any]) -> Optional[str]:
    data = event.get('data') or {}
    return data.get('validationCode')


def event_type_name(event: Dict[str, Any]) -> str:
    """Bare event type name; empty when the event carries no usable type"""
    event_type = event.get('type') or event.get('eventType')
    if not isinstance(event_type, str):
        return ""
    if event_type.startswith(EVENT_PREFIX):
        event_type = event_type[len(EVENT_PREFIX):]
    return event_type


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def extract_call_id(event: Dict[str, Any]) -> Optional[str]:
    data = event.get('data')
    if not isinstance(data, dict):
        data = {}
    call_id = _text(event.get('callConnectionId')) or _text(data.get('callConnectionId'))
    if call_id:
        return call_id

    subject = _text(event.get('subject')) or ""
    match = _SUBJECT_CALL_ID.search(subject)
    if match:
        return match.group(1)

    return _text(data.get('serverCallId'))


def original_call_id(data: Dict[str, Any]) -> Optional[str]:
    """Earlier connection id ACS reports for the same call on CallConnected"""
    return _text(data.get('originalCallConnectionId'))


def _dig(data: Dict[str, Any], *path: str) -> Any:
    value: Any = data
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


_UTTERANCE_PATHS = (
    ('speechResult', 'speech'),
    ('result', 'speech'),
    ('result', 'speechRecognitionResult', 'speech'),
    ('result', 'speechRecognitionResult', 'text'),
    ('recognitionResult', 'speech'),
    ('speechToTextResult', 'text'),
    ('text',),
)


def extract_utterance(data: Dict[str, Any]) -> str:
    """Recognized speech from a RecognizeCompleted payload, or '' when nothing was heard"""
    for path in _UTTERANCE_PATHS:
        value = _dig(data, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    logging.debug(f"No speech text found in recognition data keys: {list(data.keys())}")
    return ""


def failure_reason(data: Dict[str, Any]) -> str:
    parts = [
        _dig(data, 'result', 'reason'),
        _dig(data, 'resultInformation', 'message'),
    ]
    return " ".join(str(part) for part in parts if part)


def participant_address(data: Dict[str, Any], subject: str = "") -> Optional[str]:
    identifier = _dig(data, 'participant', 'identifier') or {}
    phone = _dig(identifier, 'phoneNumber', 'value')
    if phone:
        return phone
    if identifier.get('rawId'):
        return identifier['rawId']

    match = _SUBJECT_PARTICIPANT.search(subject or "")
    if match:
        return match.group(1)
    return None


def listed_participants(data: Dict[str, Any]) -> List[str]:
    """Phone addresses listed by a ParticipantsUpdated event"""
    addresses = []
    for participant in data.get('participants') or []:
        identifier = participant.get('identifier') or {}
        phone = _dig(identifier, 'phoneNumber', 'value')
        if phone:
            addresses.append(phone)
    return addresses
