"""
PSTN Phone Calling Module
Outbound PSTN calls and in-call media commands over Azure Communication Services

This module is the only place that talks to the Call Automation service:
- place_call(): Initiates an outbound call to a target phone number
- speak(): Plays text-to-speech to everyone on the call, tagged with an operation context
- listen(): Starts speech recognition against one participant
- hang_up(): Ends the call for everyone

Webhook events produced by these commands are handled by the call orchestrator.
"""

import re
import logging
from typing import Optional

from azure.core.exceptions import AzureError
from azure.communication.callautomation import PhoneNumberIdentifier, RecognizeInputType, TextSource
from azure.communication.callautomation.aio import CallAutomationClient

from bot_config import CallSettings, RecognitionOptions

_MARKUP = re.compile(r"<[^>]*>")


class InvalidPhoneNumber(ValueError):
    """Raised when a destination phone number fails validation"""


class SpeechPlaybackError(Exception):
    """Raised when neither the primary nor the fallback voice could play a message"""


def validate_phone_number(phone_number: str) -> tuple[bool, str]:
    """
    Validate phone number format for PSTN calls
    Returns: (is_valid, error_message)
    """
    logging.debug(f"Validating phone number: {phone_number}")

    if not phone_number:
        logging.error("Phone number is empty or None")
        return False, "Phone number is required"

    if not phone_number.startswith('+'):
        logging.error(f"Phone number does not start with '+': {phone_number}")
        return False, "Phone number must be in international format starting with '+'"

    # Basic validation - should have country code + number
    if len(phone_number) < 8 or len(phone_number) > 16:
        logging.error(f"Phone number length invalid: {len(phone_number)} characters")
        return False, "Phone number length should be between 8-16 characters"

    logging.info(f"Phone number validation successful: {phone_number}")
    return True, ""


def sanitize_speech_text(text: str) -> str:
    """Strip SSML/HTML markup so the text can go into a plain TextSource"""
    cleaned = _MARKUP.sub("", text or "")
    return re.sub(r"\s+", " ", cleaned).strip()


class AcsCallGateway:
    """Call Automation client wrapper issuing the orchestrator's provider commands"""

    def __init__(self, settings: CallSettings, client: Optional[CallAutomationClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> CallAutomationClient:
        if self._client is None:
            logging.debug("Initializing CallAutomationClient with connection string")
            self._client = CallAutomationClient.from_connection_string(
                self.settings.acs_connection_string,
                retry_total=self.settings.provider_retry_total,
                retry_backoff_factor=self.settings.provider_retry_backoff_factor
            )
            logging.info("CallAutomationClient initialized successfully")
        return self._client

    async def place_call(self, destination: str, caller: Optional[str] = None) -> str:
        """Dial destination and return the provider-assigned call connection id"""
        is_valid, error_msg = validate_phone_number(destination)
        if not is_valid:
            raise InvalidPhoneNumber(error_msg)

        caller = caller or self.settings.acs_phone_number
        logging.info(f"Using callback URL: {self.settings.callback_url}")
        logging.info(f"Source caller ID: {caller}")
        logging.info(f"Target phone: {destination}")

        call_result = await self.client.create_call(
            target_participant=PhoneNumberIdentifier(destination),
            callback_url=self.settings.callback_url,
            cognitive_services_endpoint=self.settings.cognitive_services_endpoint,
            source_caller_id_number=PhoneNumberIdentifier(caller)
        )
        call_connection_id = call_result.call_connection_id
        logging.info(f"PSTN call created successfully. Call ID: {call_connection_id}")
        return call_connection_id

    async def speak(self, call_id: str, text: str, label: str):
        """Play text to all participants; tries the fallback voice once before giving up"""
        message = sanitize_speech_text(text)
        call_connection = self.client.get_call_connection(call_id)

        primary_error = None
        for voice in (self.settings.tts_voice, self.settings.tts_fallback_voice):
            try:
                logging.info(f"Playing message: '{message[:50]}...', Voice: {voice}, Context: {label}")
                await call_connection.play_media_to_all(
                    play_source=TextSource(text=message, voice_name=voice, source_locale=self.settings.tts_locale),
                    operation_context=label
                )
                return
            except AzureError as e:
                logging.warning(f"TTS playback with voice {voice} failed: {e.message}")
                if primary_error is None:
                    primary_error = e

        raise SpeechPlaybackError(f"Unable to play '{label}' message on call {call_id}") from primary_error

    async def listen(self, call_id: str, target: Optional[str], options: RecognitionOptions):
        """Start speech recognition for target; None addresses whichever phone participant is on the call"""
        call_connection = self.client.get_call_connection(call_id)
        if target is None:
            target = await self._first_phone_participant(call_connection)

        await call_connection.start_recognizing_media(
            RecognizeInputType.SPEECH,
            PhoneNumberIdentifier(target),
            end_silence_timeout=options.end_silence_timeout,
            initial_silence_timeout=options.initial_silence_timeout,
            speech_language=options.speech_language,
            operation_context=f"speech-{call_id}"
        )

    async def _first_phone_participant(self, call_connection) -> str:
        own_number = self.settings.acs_phone_number
        async for participant in call_connection.list_participants():
            identifier = participant.identifier
            if not isinstance(identifier, PhoneNumberIdentifier):
                continue
            phone = identifier.properties['value']
            if phone != own_number:
                logging.debug(f"Generic recognition resolved participant: {phone}")
                return phone
        raise LookupError("No phone participant is connected to the call")

    async def hang_up(self, call_id: str):
        logging.info(f"Hanging up call {call_id}")
        await self.client.get_call_connection(call_id).hang_up(is_for_everyone=True)

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None
