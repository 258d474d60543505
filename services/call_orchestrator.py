"""
Call Session Orchestrator
Turns the unordered, duplicated webhook feed for each call into one coherent
sequence of provider commands

Flow per webhook delivery:
raw event -> call id normalization -> session lookup/creation -> milestone
update -> greeting gate -> turn-taking transition -> gateway commands

Lifecycle events (CallConnected, CallStarted, CallParticipantAdded,
ParticipantsUpdated) may create a session lazily. Media events for a call
with no session (already ended or reaped) are dropped silently.
"""

import re
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from bot_config import CallSettings
from .call_ids import CallIdNormalizer
from .call_sessions import CallSession, CallStatus, Milestone, SessionReaper, SessionStore
from .greeting_gate import GreetingGate
from .conversation_flow import (
    AgentReply, Command, HangUp, Listen, PlaybackLabel, RequestReply, Speak, TurnTaking
)
from .recognition import RecognitionStartError, start_recognition
from .bot_service import AgentError, ConversationAgent
from .cosmos_manager import CosmosDBManager, PatientRecord, PatientStoreError
from .phone_calling import AcsCallGateway, InvalidPhoneNumber, validate_phone_number
from . import webhook_events

_PHONE_NOISE = re.compile(r"[\s\-()]")

EventHandler = Callable[[str, Dict[str, Any], Dict[str, Any]], Awaitable[None]]


def phones_match(participant: str, patient_phone: Optional[str]) -> bool:
    """Loose phone comparison: exact, or either side ending with the other's last 10 digits"""
    if not patient_phone:
        return True
    a = _PHONE_NOISE.sub("", participant)
    b = _PHONE_NOISE.sub("", patient_phone)
    if a == b:
        return True
    # Suffix matching needs a full national number on both sides
    if _digit_count(a) < 10 or _digit_count(b) < 10:
        return False
    return a.endswith(b[-10:]) or b.endswith(a[-10:])


def _digit_count(value: str) -> int:
    return sum(1 for c in value if c.isdigit())


class CallOrchestrator:
    """Per-call state machine driver behind the webhook and call placement endpoints"""

    def __init__(self, settings: CallSettings, gateway, agent, patients,
                 store: Optional[SessionStore] = None):
        self.settings = settings
        self.gateway = gateway
        self.agent = agent
        self.patients = patients
        self.store = store or SessionStore(
            CallIdNormalizer(settings.long_id_threshold, settings.long_id_marker),
            SessionReaper(settings.session_ttl_seconds)
        )
        self.flow = TurnTaking(settings.script)
        self.gate = GreetingGate(self._start_greeting, settings.greeting_delay_seconds)

        self._lifecycle_handlers: Dict[str, EventHandler] = {
            'CallConnected': self._on_call_connected,
            'CallStarted': self._on_call_started,
            'CallParticipantAdded': self._on_participant_added,
            'ParticipantsUpdated': self._on_participants_updated,
        }
        self._media_handlers: Dict[str, Callable[[CallSession, Dict[str, Any]], Awaitable[None]]] = {
            'RecognizeCompleted': self._on_recognize_completed,
            'RecognizeFailed': self._on_recognize_failed,
            'PlayStarted': self._on_play_started,
            'PlayCompleted': self._on_play_completed,
            'PlayFailed': self._on_play_failed,
        }

    @property
    def normalizer(self) -> CallIdNormalizer:
        return self.store.normalizer

    # ------------------------------------------------------------------
    # Call placement
    # ------------------------------------------------------------------

    async def place_call(self, phone_number: str, patient: Optional[Any] = None) -> str:
        """Dial phone_number and seed its session with patient before any webhook arrives"""
        is_valid, error_msg = validate_phone_number(phone_number)
        if not is_valid:
            raise InvalidPhoneNumber(error_msg)

        call_id = await self.gateway.place_call(phone_number, self.settings.acs_phone_number)
        canonical_id = self.normalizer.normalize(call_id)
        session = self.store.get_or_create(canonical_id, patient=patient)
        logging.info(f"Call state initialized for patient: {getattr(patient, 'patient_name', 'unknown')} ({phone_number})")
        logging.debug(f"Seeded session {session.canonical_id} with milestones {[m.value for m in session.milestones]}")

        # Webhooks may have created the session while create_call was in flight
        if patient is not None and session.patient is not patient:
            if session.has(Milestone.GREETING_PLAYED):
                logging.warning(f"Greeting already started on call {canonical_id}, keeping its patient context")
            else:
                logging.info(f"Replacing lazily loaded patient on call {canonical_id} with the dialled patient")
                session.patient = patient
        self.gate.on_milestone_updated(session)
        return canonical_id

    # ------------------------------------------------------------------
    # Webhook ingress
    # ------------------------------------------------------------------

    async def handle_webhook(self, body) -> Tuple[int, Dict[str, Any]]:
        """Process one webhook delivery; returns (http_status, response_payload)"""
        try:
            events = webhook_events.parse_event_batch(body)
        except ValueError as e:
            logging.error(f"Invalid JSON in webhook body: {str(e)}")
            return 400, {"error": "Invalid JSON in request body"}

        if not events:
            logging.info("Webhook delivery contained no events")
            return 200, {"status": "ok", "eventsProcessed": 0}

        first = events[0]
        if webhook_events.is_validation_event(first):
            code = webhook_events.validation_code(first)
            if not code:
                logging.error("Subscription validation event without validation code")
                return 400, {"error": "Missing validationCode"}
            logging.info("Event Grid subscription validation handshake")
            return 200, {"validationResponse": code}

        processed = 0
        for event in events:
            event_type = webhook_events.event_type_name(event) or "unknown"
            try:
                if await self.dispatch(event):
                    processed += 1
            except Exception as e:
                logging.error(f"Error handling webhook event {event_type}: {str(e)}")
                logging.error(f"Exception type: {type(e).__name__}")

        return 200, {"status": "ok", "eventsReceived": len(events), "eventsProcessed": processed}

    async def dispatch(self, event: Dict[str, Any]) -> bool:
        """Route a single event to its handler; returns False when the event was skipped"""
        event_type = webhook_events.event_type_name(event)
        raw_id = webhook_events.extract_call_id(event)
        logging.info(f"Processing event: {event_type}, Call ID: {raw_id}")

        if not raw_id:
            logging.warning(f"No call connection id found in {event_type or 'unknown'} event, skipping")
            return False

        is_lifecycle = event_type in self._lifecycle_handlers
        is_media = event_type in self._media_handlers
        is_end = event_type in ('CallDisconnected', 'CallEnded')
        if not (is_lifecycle or is_media or is_end):
            logging.info(f"Unhandled event type: {event_type}")
            logging.debug(f"Unhandled event full data: {event}")
            return False

        data = event.get('data')
        if not isinstance(data, dict):
            data = {}
        canonical_id = self.normalizer.normalize(raw_id)

        if is_lifecycle:
            await self._lifecycle_handlers[event_type](canonical_id, data, event)
            return True

        if is_end:
            await self._on_call_ended(canonical_id, data)
            return True

        session = self.store.get(canonical_id)
        if session is None:
            logging.debug(f"No active session for {event_type} on call {canonical_id}, ignoring")
            self.normalizer.forget(canonical_id)
            return False
        await self._media_handlers[event_type](session, data)
        return True

    # ------------------------------------------------------------------
    # Lifecycle handlers (may create the session)
    # ------------------------------------------------------------------

    async def _on_call_connected(self, canonical_id: str, data: Dict[str, Any], event: Dict[str, Any]):
        original_id = webhook_events.original_call_id(data)
        if original_id and original_id != canonical_id:
            logging.info(f"Original call ID: {original_id}")
            self.store.link(original_id, canonical_id)

        session = self.store.get_or_create(canonical_id, event_name='CallConnected')
        session.mark(Milestone.CONNECTED)
        session.status = CallStatus.CONNECTED
        logging.info(f"Call connected: {canonical_id}")

        if session.patient is None:
            patient = await self._find_patient()
            # another handler may have supplied the patient while we were waiting
            if session.patient is None:
                session.patient = patient
                logging.info(f"Using patient for call {canonical_id}: {patient.patient_name}")

        self.gate.on_milestone_updated(session)

    async def _on_call_started(self, canonical_id: str, data: Dict[str, Any], event: Dict[str, Any]):
        session = self.store.get_or_create(canonical_id, event_name='CallStarted')
        session.mark(Milestone.STARTED)
        session.status = CallStatus.STARTED
        self.gate.on_milestone_updated(session)

    async def _on_participant_added(self, canonical_id: str, data: Dict[str, Any], event: Dict[str, Any]):
        session = self.store.get_or_create(canonical_id, event_name='CallParticipantAdded')
        address = webhook_events.participant_address(data, event.get('subject', ''))

        if address is None:
            logging.info("No participant data in CallParticipantAdded event, assuming patient joined")
            session.mark(Milestone.PARTICIPANT_ADDED)
        else:
            session.participants.add(address)
            patient_phone = getattr(session.patient, 'phone_number', None)
            if session.patient is None or phones_match(address, patient_phone):
                session.mark(Milestone.PARTICIPANT_ADDED)
                logging.info(f"Patient participant confirmed: {address}")
            else:
                logging.info(f"Non-patient participant: {address} (patient phone: {patient_phone})")

        self.gate.on_milestone_updated(session)

    async def _on_participants_updated(self, canonical_id: str, data: Dict[str, Any], event: Dict[str, Any]):
        session = self.store.get_or_create(canonical_id, event_name='ParticipantsUpdated')
        session.participants.update(webhook_events.listed_participants(data))
        if session.mark(Milestone.PARTICIPANT_ADDED):
            logging.info("Participant marked as added via ParticipantsUpdated event")
        self.gate.on_milestone_updated(session)

    async def _find_patient(self) -> PatientRecord:
        try:
            patient = await self.patients.get_patient_for_follow_up()
        except PatientStoreError as e:
            logging.error(f"Error loading patient for follow-up: {str(e)}")
            patient = None
        if patient is None:
            logging.info("No patient found for follow-up, using default patient context")
            patient = PatientRecord.placeholder(self.settings)
        return patient

    async def _start_greeting(self, session: CallSession):
        text = self.agent.greeting_for(session.patient)
        await self._execute(session, self.flow.greeting(session, text))

    # ------------------------------------------------------------------
    # Media handlers (existing sessions only)
    # ------------------------------------------------------------------

    async def _on_recognize_completed(self, session: CallSession, data: Dict[str, Any]):
        logging.debug(f"RecognizeCompleted event data keys: {list(data.keys())}")
        utterance = webhook_events.extract_utterance(data)
        logging.info(f"Recognized speech: '{utterance}'")
        await self._execute(session, self.flow.on_recognize_completed(session, utterance))

    async def _on_recognize_failed(self, session: CallSession, data: Dict[str, Any]):
        reason = webhook_events.failure_reason(data)
        await self._execute(session, self.flow.on_recognize_failed(session, reason))

    async def _on_play_started(self, session: CallSession, data: Dict[str, Any]):
        logging.info(f"Audio playback started for call: {session.canonical_id}")

    async def _on_play_completed(self, session: CallSession, data: Dict[str, Any]):
        label = PlaybackLabel.parse(data.get('operationContext'))
        await self._execute(session, self.flow.on_playback_completed(session, label))

    async def _on_play_failed(self, session: CallSession, data: Dict[str, Any]):
        label = PlaybackLabel.parse(data.get('operationContext'))
        reason = webhook_events.failure_reason(data)
        await self._execute(session, self.flow.on_playback_failed(session, label, reason))

    async def _on_call_ended(self, canonical_id: str, data: Dict[str, Any]):
        session = self.store.get(canonical_id)
        if session is None:
            logging.info(f"Call ended for unknown or already cleaned up call: {canonical_id}")
            self.normalizer.forget(canonical_id)
            return

        logging.info(f"Call ended: {canonical_id}, duration: {session.duration_seconds()}s")
        try:
            await self.patients.save_call_summary(session)
        except PatientStoreError as e:
            logging.error(f"Error saving call data: {str(e)}")
        finally:
            self.store.remove(canonical_id)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def _execute(self, session: CallSession, commands: List[Command]):
        queue = list(commands)
        while queue:
            if self.store.get(session.canonical_id) is not session:
                logging.info(f"Call {session.canonical_id} ended, dropping {len(queue)} pending command(s)")
                return

            command = queue.pop(0)
            if isinstance(command, Speak):
                await self.gateway.speak(session.canonical_id, command.text, command.label.value)
            elif isinstance(command, Listen):
                await self._listen(session)
            elif isinstance(command, HangUp):
                await self.gateway.hang_up(session.canonical_id)
            elif isinstance(command, RequestReply):
                reply = await self._reply(session, command.utterance)
                queue.extend(self.flow.on_reply(session, reply))

    async def _listen(self, session: CallSession):
        try:
            await start_recognition(session, self.gateway.listen, self.settings.recognition)
        except RecognitionStartError as e:
            logging.error(f"Recognition setup failed: {str(e)}")
            logging.error(f"Patient phone: {getattr(session.patient, 'phone_number', None) or 'None'}, "
                          f"call participants: {', '.join(sorted(session.participants)) or 'None'}")

    async def _reply(self, session: CallSession, utterance: str) -> AgentReply:
        if self.agent.is_configured:
            try:
                return await self.agent.generate_reply(session.conversation_history, utterance, session.patient)
            except AgentError as e:
                logging.warning(f"Agent failed ({type(e).__name__}), using fallback response: {str(e)}")
        else:
            logging.info("Conversational agent not configured, using fallback response")

        session.fallback_replies_used += 1
        return self.agent.fallback_reply(utterance, session.patient, session.conversation_history)

    # ------------------------------------------------------------------
    # Status views
    # ------------------------------------------------------------------

    def find_session(self, call_id: Optional[str]) -> Optional[CallSession]:
        """Session for any known alias of call_id"""
        return self.store.resolve(call_id) or self.store.get(call_id)

    def call_status(self, call_id: Optional[str]) -> Optional[Dict[str, Any]]:
        session = self.find_session(call_id)
        return session.snapshot() if session else None

    def conversation_history(self, call_id: Optional[str]) -> Optional[List[Dict[str, Any]]]:
        session = self.find_session(call_id)
        if session is None:
            return None
        return [turn.to_dict() for turn in session.conversation_history]

    def conversation_summary(self) -> Dict[str, Any]:
        sessions = self.store.sessions()
        return {
            'activeCalls': len(sessions),
            'totalTurns': sum(len(s.conversation_history) for s in sessions),
            'totalRecognitionAttempts': sum(s.recognition_attempts for s in sessions),
            'totalFallbackResponses': sum(s.fallback_replies_used for s in sessions),
            'calls': [s.snapshot() for s in sessions],
        }

    async def close(self):
        await self.gate.join()
        self.store.reaper.cancel_all()
        await self.gateway.close()
        await self.agent.close()
        await self.patients.close()


def build_orchestrator(settings: CallSettings) -> CallOrchestrator:
    """Wire the orchestrator to the real ACS, Azure OpenAI and Cosmos DB collaborators"""
    return CallOrchestrator(
        settings,
        gateway=AcsCallGateway(settings),
        agent=ConversationAgent(settings),
        patients=CosmosDBManager(settings)
    )
