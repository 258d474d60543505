from typing import Any, Dict, List, Optional

import pytest

from bot_config import CallSettings
from services.call_orchestrator import CallOrchestrator
from services.conversation_flow import AgentReply
from services.cosmos_manager import PatientRecord, Prescription

SHORT_ID = "411f0b00-8f5c-4a3e-9b6a-2f4f1c7a9e01"
LONG_ID = "aHR0cHM6Ly9hcGkuZmxpZ2h0cHJveHkuc2t5cGUuY29tL2FwaS92Mi9jcC9jb252LXVzZWEyLTAx" + "x" * 10
PATIENT_PHONE = "+15551234567"


class FakeGateway:
    """Records every provider command instead of calling ACS"""

    def __init__(self):
        self.commands: List[tuple] = []
        self.listen_failures = 0
        self.speak_failures = 0
        self.next_call_id = SHORT_ID
        self.while_dialling = None

    async def place_call(self, destination: str, caller: Optional[str] = None) -> str:
        self.commands.append(("place_call", destination))
        if self.while_dialling is not None:
            await self.while_dialling()
        return self.next_call_id

    async def speak(self, call_id: str, text: str, label: str):
        if self.speak_failures:
            self.speak_failures -= 1
            raise RuntimeError("playback rejected")
        self.commands.append(("speak", call_id, text, label))

    async def listen(self, call_id: str, target, options):
        self.commands.append(("listen", call_id, target, options))
        if self.listen_failures:
            self.listen_failures -= 1
            raise RuntimeError("Participant not found")

    async def hang_up(self, call_id: str):
        self.commands.append(("hang_up", call_id))

    async def close(self):
        pass

    def of_kind(self, kind: str) -> List[tuple]:
        return [c for c in self.commands if c[0] == kind]

    @property
    def spoken_labels(self) -> List[str]:
        return [c[3] for c in self.of_kind("speak")]


class FakeAgent:
    def __init__(self):
        self.is_configured = True
        self.replies: List[AgentReply] = []
        self.error: Optional[Exception] = None
        self.requests: List[str] = []

    def greeting_for(self, patient) -> str:
        return f"Hello {patient.patient_name}!"

    async def generate_reply(self, history, utterance, patient) -> AgentReply:
        self.requests.append(utterance)
        if self.error is not None:
            raise self.error
        if self.replies:
            return self.replies.pop(0)
        return AgentReply(text="How have you been feeling?")

    def fallback_reply(self, utterance, patient=None, history=()) -> AgentReply:
        return AgentReply(text="fallback reply")

    async def close(self):
        pass


class FakePatients:
    def __init__(self, follow_up: Optional[PatientRecord] = None):
        self.follow_up = follow_up
        self.saved: List[str] = []
        self.save_error: Optional[Exception] = None

    def is_connected(self) -> bool:
        return True

    async def get_patient(self, patient_id: str):
        return self.follow_up if self.follow_up and self.follow_up.id == patient_id else None

    async def get_patient_for_follow_up(self):
        return self.follow_up

    async def save_call_summary(self, session) -> bool:
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(session.canonical_id)
        return True

    async def close(self):
        pass


def make_event(event_type: str, call_id: Optional[str] = SHORT_ID, **data: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": f"Microsoft.Communication.{event_type}", "data": dict(data)}
    if call_id:
        event["data"]["callConnectionId"] = call_id
    return event


def participant_data(phone: str) -> Dict[str, Any]:
    return {"participant": {"identifier": {"rawId": f"4:{phone}", "phoneNumber": {"value": phone}}}}


@pytest.fixture
def patient() -> PatientRecord:
    return PatientRecord(
        id="patient-001",
        patient_name="Maria",
        phone_number=PATIENT_PHONE,
        doctor_name="Lee",
        prescriptions=[Prescription(medication_name="Lisinopril", dosage="10mg", frequency="daily")]
    )


@pytest.fixture
def settings() -> CallSettings:
    return CallSettings(
        acs_connection_string="endpoint=https://acs.example.com/;accesskey=abc",
        acs_phone_number="+15550000000",
        cognitive_services_endpoint="https://cog.example.com",
        greeting_delay_seconds=0,
        session_ttl_seconds=60
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def patients(patient) -> FakePatients:
    return FakePatients(follow_up=patient)


@pytest.fixture
def orchestrator(settings, gateway, agent, patients) -> CallOrchestrator:
    orch = CallOrchestrator(settings, gateway=gateway, agent=agent, patients=patients)
    yield orch
    orch.store.reaper.cancel_all()
