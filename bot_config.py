"""
Call Configuration Module
Environment-driven settings and the scripted lines spoken during follow-up calls
"""

import os
import json
import logging
from typing import Dict, List
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised at startup when required settings are missing"""

    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__(f"Missing required configuration: {', '.join(missing)}")


def load_local_settings(path: str = 'local.settings.json'):
    """Load environment variables from local.settings.json during development"""
    if os.environ.get('AZURE_FUNCTIONS_ENVIRONMENT'):
        return
    try:
        with open(path, 'r') as f:
            settings = json.load(f)
        for key, value in settings.get('Values', {}).items():
            if key not in os.environ:
                os.environ[key] = value
        logging.info("Loaded local.settings.json for development")
    except FileNotFoundError:
        logging.warning("local.settings.json not found")
    except (OSError, ValueError) as e:
        logging.error(f"Error loading local.settings.json: {e}")


@dataclass
class RecognitionOptions:
    """Speech capture options handed to the recognizer"""
    end_silence_timeout: int = 4
    initial_silence_timeout: int = 10
    speech_language: str = "en-US"

    def simplified(self) -> 'RecognitionOptions':
        """Reduced option set used by the last rung of the recognition ladder"""
        return RecognitionOptions(
            end_silence_timeout=5,
            initial_silence_timeout=self.initial_silence_timeout,
            speech_language=self.speech_language
        )


@dataclass
class ConversationScript:
    """Canned lines spoken by the orchestrator itself"""

    greeting_template: str = (
        "Hello {patient_name}! This is Jenny calling for Dr. {doctor_name} with your follow-up. "
        "Hope you're well! Have you picked up your medication yet for {medication_name}?"
    )
    goodbye: str = "Thank you for speaking with me today. Take care and have a great day!"

    # Recognition failure guidance
    no_speech_guidance: str = "I didn't hear anything. Please speak clearly after the beep and I'll listen."
    long_silence_guidance: str = "I'm having trouble hearing you clearly. Could you please speak a bit louder?"
    poor_audio_guidance: str = "The audio quality seems poor. Could you please speak more clearly?"
    generic_guidance: str = "I'm having trouble with the audio connection. Let me try to listen again."

    # Empty-utterance reprompts
    opening_reprompt: str = "I didn't catch that. Could you please tell me how you've been feeling since your discharge?"
    follow_up_reprompt: str = "I didn't catch that. Is there anything else I can help you with today?"

    # Keyword replies when the conversational agent is unavailable
    fallback_replies: Dict[str, str] = field(default_factory=lambda: {
        'pain': "I understand you're experiencing pain. Can you tell me more about where it hurts and how severe it is on a scale of 1 to 10?",
        'medication': "Let's talk about your medications. Are you taking them as prescribed? Have you missed any doses recently?",
        'appointment': "Would you like to schedule an appointment? I can help you find available times with your healthcare provider.",
        'yes': "Great! Can you tell me how you've been feeling lately? Any concerns about your health or medications?",
        'help': "I'm here to help with your healthcare questions. You can ask me about medications, symptoms, or scheduling appointments.",
    })
    fallback_keywords: Dict[str, List[str]] = field(default_factory=lambda: {
        'pain': ['pain', 'hurt'],
        'medication': ['medication', 'medicine', 'pill'],
        'appointment': ['appointment', 'schedule', 'doctor'],
        'yes': ['yes', 'ok', 'sure'],
        'help': ['help', 'question'],
    })
    generic_fallback: str = (
        "Thank you for sharing that with me. Can you tell me more about how you've been feeling lately, "
        "or if you have any questions about your medications?"
    )
    closing_fallback: str = (
        "Thank you for taking the time to speak with me today. "
        "Your healthcare team will review this information."
    )


@dataclass
class CallSettings:
    """Runtime settings for the call session orchestrator"""

    # Azure Communication Services
    acs_connection_string: str = ""
    acs_phone_number: str = ""
    cognitive_services_endpoint: str = ""
    callback_url: str = "http://localhost:7071/api/phone_call_webhook"

    # Cosmos DB patient records
    cosmos_connection_string: str = ""
    cosmos_database_name: str = "HealthcareDB"
    cosmos_patients_container: str = "Patients"

    # Azure OpenAI conversational agent
    openai_endpoint: str = ""
    openai_api_key: str = ""
    openai_deployment: str = "gpt-4o"
    openai_api_version: str = "2024-08-01-preview"
    agent_max_retries: int = 3
    agent_timeout_seconds: float = 30.0
    max_conversation_turns: int = 15

    # Voices
    tts_voice: str = "en-US-JennyNeural"
    tts_fallback_voice: str = "en-US-AriaNeural"
    tts_locale: str = "en-US"

    # Provider call retries (azure-core retry policy)
    provider_retry_total: int = 3
    provider_retry_backoff_factor: float = 0.8

    # Session orchestration
    session_ttl_seconds: float = 30 * 60
    greeting_delay_seconds: float = 0.5
    long_id_threshold: int = 50
    long_id_marker: str = "aHR0"
    recognition: RecognitionOptions = field(default_factory=RecognitionOptions)
    script: ConversationScript = field(default_factory=ConversationScript)

    # Used when CallConnected arrives for a call with no stored patient
    default_patient_name: str = "there"
    default_doctor_name: str = "your doctor"

    @classmethod
    def from_environment(cls) -> 'CallSettings':
        """Build settings from environment variables"""
        env = os.environ
        callback_url = env.get("ACS_CALLBACK_URL", "")
        if not callback_url and env.get("CALLBACK_URL_BASE"):
            callback_url = f"https://{env['CALLBACK_URL_BASE']}/api/phone_call_webhook"

        settings = cls(
            acs_connection_string=env.get("ACS_CONNECTION_STRING", ""),
            acs_phone_number=env.get("ACS_PHONE_NUMBER", "") or env.get("SOURCE_CALLER_ID", ""),
            cognitive_services_endpoint=env.get("COGNITIVE_SERVICES_ENDPOINT", "").rstrip('/'),
            cosmos_connection_string=env.get("COSMOS_CONNECTION_STRING", ""),
            openai_endpoint=env.get("AZURE_OPENAI_ENDPOINT", ""),
            openai_api_key=env.get("AZURE_OPENAI_API_KEY", "") or env.get("AZURE_OPENAI_KEY", ""),
        )
        if callback_url:
            settings.callback_url = callback_url

        optional = {
            "COSMOS_DATABASE_NAME": "cosmos_database_name",
            "COSMOS_PATIENTS_CONTAINER": "cosmos_patients_container",
            "AZURE_OPENAI_DEPLOYMENT_NAME": "openai_deployment",
            "AZURE_OPENAI_API_VERSION": "openai_api_version",
            "TTS_VOICE": "tts_voice",
            "TTS_FALLBACK_VOICE": "tts_fallback_voice",
        }
        for env_name, attr in optional.items():
            if env.get(env_name):
                setattr(settings, attr, env[env_name])

        logging.debug(f"Settings loaded - ACS configured: {bool(settings.acs_connection_string)}, "
                      f"Cosmos configured: {bool(settings.cosmos_connection_string)}, "
                      f"OpenAI configured: {settings.agent_configured}")
        return settings

    @property
    def agent_configured(self) -> bool:
        return bool(self.openai_endpoint and self.openai_api_key)

    def validate(self):
        """Raise ConfigurationError listing every missing required setting"""
        missing = []
        if not self.acs_connection_string:
            missing.append("ACS_CONNECTION_STRING")
        if not self.acs_phone_number:
            missing.append("ACS_PHONE_NUMBER")
        if not self.cognitive_services_endpoint:
            missing.append("COGNITIVE_SERVICES_ENDPOINT")
        if missing:
            logging.error(f"Configuration validation failed, missing: {missing}")
            raise ConfigurationError(missing)
        logging.info("Call configuration validation successful")

    def configuration_status(self) -> Dict[str, bool]:
        return {
            "acs_configured": bool(self.acs_connection_string),
            "cognitive_services_configured": bool(self.cognitive_services_endpoint),
            "source_caller_id_configured": bool(self.acs_phone_number),
            "cosmos_db_configured": bool(self.cosmos_connection_string),
            "openai_configured": self.agent_configured,
        }
