"""
Azure Cosmos DB Manager
Patient records for follow-up calls and the call summaries written back after each call
"""

import logging
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime

# Azure Cosmos DB imports
from azure.cosmos.aio import CosmosClient
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from bot_config import CallSettings


class PatientStoreError(Exception):
    """Raised when Cosmos DB rejects a patient read or write"""


@dataclass
class Prescription:
    """Medication entry on a patient record"""
    medication_name: str
    dosage: str = ""
    frequency: str = ""

    def to_dict(self) -> dict:
        return {'medicationName': self.medication_name, 'dosage': self.dosage, 'frequency': self.frequency}

    @classmethod
    def from_dict(cls, data: dict) -> 'Prescription':
        return cls(
            medication_name=data.get('medicationName', 'prescribed medication'),
            dosage=data.get('dosage', ''),
            frequency=data.get('frequency', '')
        )


@dataclass
class PatientRecord:
    """Patient context for a follow-up call"""
    id: str
    patient_name: str
    phone_number: str
    doctor_name: str
    document_id: str = ""
    prescriptions: List[Prescription] = field(default_factory=list)
    discharge_date: Optional[str] = None
    follow_up_call: Dict[str, Any] = field(default_factory=lambda: {'callCompleted': False})
    call_history: List[Dict[str, Any]] = field(default_factory=list)
    last_call_date: Optional[str] = None

    @property
    def primary_medication(self) -> str:
        if self.prescriptions:
            return self.prescriptions[0].medication_name
        return "prescribed medication"

    def to_dict(self) -> dict:
        """Convert patient record to dictionary for Cosmos DB storage"""
        return {
            'id': self.id,
            'DocumentID': self.document_id or self.id,
            'patientName': self.patient_name,
            'phoneNumber': self.phone_number,
            'doctorName': self.doctor_name,
            'prescriptions': [p.to_dict() for p in self.prescriptions],
            'dischargeDate': self.discharge_date,
            'followUpCall': self.follow_up_call,
            'callHistory': self.call_history,
            'lastCallDate': self.last_call_date,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PatientRecord':
        """Create patient record from dictionary (from Cosmos DB)"""
        record_id = data.get('id') or data.get('DocumentID', '')
        return cls(
            id=record_id,
            document_id=data.get('DocumentID', record_id),
            patient_name=data.get('patientName', ''),
            phone_number=data.get('phoneNumber', ''),
            doctor_name=data.get('doctorName', ''),
            prescriptions=[Prescription.from_dict(p) for p in data.get('prescriptions') or []],
            discharge_date=data.get('dischargeDate'),
            follow_up_call=data.get('followUpCall') or {'callCompleted': False},
            call_history=list(data.get('callHistory') or []),
            last_call_date=data.get('lastCallDate')
        )

    @classmethod
    def placeholder(cls, settings: CallSettings, phone_number: str = "") -> 'PatientRecord':
        """Stand-in patient used when a connected call has no stored record"""
        return cls(
            id=f"temp-{int(datetime.now().timestamp())}",
            patient_name=settings.default_patient_name,
            phone_number=phone_number,
            doctor_name=settings.default_doctor_name
        )


def build_call_summary(session) -> Dict[str, Any]:
    """Summary appended to a patient's callHistory when a call ends"""
    return {
        'callId': session.canonical_id,
        'callDate': session.started_at.isoformat(),
        'callDuration': session.duration_seconds(),
        'conversationHistory': [turn.to_dict() for turn in session.conversation_history],
        'recognitionAttempts': session.recognition_attempts,
        'fallbackResponsesUsed': session.fallback_replies_used,
        'callOutcome': 'completed' if session.user_turns() > 0 else 'no_response',
    }


class CosmosDBManager:
    """
    Azure Cosmos DB manager for patient records
    Lookups return None when the database is not configured or the patient does not exist
    """

    def __init__(self, settings: CallSettings):
        """Initialize Cosmos DB client with connection string"""
        self.settings = settings
        self.client: Optional[CosmosClient] = None
        self.patients_container = None

        if not settings.cosmos_connection_string:
            logging.warning("COSMOS_CONNECTION_STRING not configured")
            return

        self.client = CosmosClient.from_connection_string(settings.cosmos_connection_string)
        database = self.client.get_database_client(settings.cosmos_database_name)
        self.patients_container = database.get_container_client(settings.cosmos_patients_container)
        logging.info("CosmosDB client initialized successfully")

    def is_connected(self) -> bool:
        """Check if Cosmos DB is properly connected"""
        return self.client is not None

    async def _query_one(self, query: str, parameters: List[Dict[str, Any]]) -> Optional[PatientRecord]:
        try:
            async for item in self.patients_container.query_items(query=query, parameters=parameters):
                return PatientRecord.from_dict(item)
        except CosmosHttpResponseError as e:
            logging.error(f"Error querying patients: {str(e)}")
            raise PatientStoreError(f"Failed to query patients: {e.message}") from e
        return None

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        """Get a patient by record id"""
        if not self.is_connected() or not patient_id:
            return None
        record = await self._query_one("SELECT * FROM c WHERE c.id = @patientId",
                                       [{"name": "@patientId", "value": patient_id}])
        if record:
            logging.info(f"Patient retrieved successfully: {patient_id}")
        else:
            logging.warning(f"Patient with ID {patient_id} not found")
        return record

    async def get_patient_by_phone(self, phone_number: str) -> Optional[PatientRecord]:
        if not self.is_connected() or not phone_number:
            return None
        return await self._query_one("SELECT * FROM c WHERE c.phoneNumber = @phoneNumber",
                                     [{"name": "@phoneNumber", "value": phone_number}])

    async def get_patient_for_follow_up(self) -> Optional[PatientRecord]:
        """First patient whose follow-up call has not been completed"""
        if not self.is_connected():
            return None
        record = await self._query_one(
            "SELECT * FROM c WHERE NOT IS_DEFINED(c.followUpCall.callCompleted) "
            "OR c.followUpCall.callCompleted = false",
            []
        )
        if record:
            logging.info(f"Using patient from database for follow-up: {record.patient_name}")
        return record

    async def save_call_summary(self, session) -> bool:
        """Append the call summary to the session patient's callHistory.

        Returns False when there is nothing to persist (no database, no patient,
        or a placeholder patient that has no stored record).
        """
        patient = session.patient
        if not self.is_connected() or not isinstance(patient, PatientRecord):
            return False

        summary = build_call_summary(session)
        try:
            stored = await self.patients_container.read_item(
                item=patient.id, partition_key=patient.document_id or patient.id
            )
        except CosmosResourceNotFoundError:
            logging.info(f"No stored record for patient {patient.id}, skipping call summary")
            return False
        except CosmosHttpResponseError as e:
            logging.error(f"Error retrieving patient: {str(e)}")
            raise PatientStoreError(f"Failed to read patient {patient.id}: {e.message}") from e

        stored['callHistory'] = list(stored.get('callHistory') or []) + [summary]
        stored['lastCallDate'] = datetime.now().isoformat()
        try:
            await self.patients_container.replace_item(item=patient.id, body=stored)
        except CosmosHttpResponseError as e:
            logging.error(f"Error saving call summary: {str(e)}")
            raise PatientStoreError(f"Failed to save call summary for {patient.id}: {e.message}") from e

        logging.info(f"Call summary saved to patient record: {patient.patient_name}")
        return True

    async def close(self):
        if self.client is not None:
            await self.client.close()
