"""
Turn-Taking State Machine
Maps playback/recognition callbacks for a call onto the next provider commands

Greeting -> Listening -> Responding -> (Listening <-> Responding)* ->
FinalResponse -> Goodbye -> HungUp

Each transition updates the session in place (phase and conversation history)
and returns the commands the orchestrator must issue. Nothing here talks to
ACS or the agent directly.
"""

import logging
from enum import Enum
from typing import List, Optional, Union
from dataclasses import dataclass

from bot_config import ConversationScript
from .call_sessions import CallSession, ConversationPhase


class PlaybackLabel(Enum):
    """Operation context attached to a speak command and read back on its callback"""
    GREETING = "greeting"
    REPROMPT = "reprompt"
    RESPONSE = "response"
    FINAL_RESPONSE = "final-response"
    GOODBYE = "goodbye"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['PlaybackLabel']:
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# Labels whose completion hands the floor back to the callee
LISTEN_AFTER = frozenset({PlaybackLabel.GREETING, PlaybackLabel.REPROMPT, PlaybackLabel.RESPONSE})


@dataclass(frozen=True)
class Speak:
    text: str
    label: PlaybackLabel


@dataclass(frozen=True)
class Listen:
    pass


@dataclass(frozen=True)
class HangUp:
    pass


@dataclass(frozen=True)
class RequestReply:
    """Ask the conversational agent for a reply to utterance"""
    utterance: str


Command = Union[Speak, Listen, HangUp, RequestReply]


@dataclass(frozen=True)
class AgentReply:
    text: str
    is_final: bool = False


class RecognitionFailure(Enum):
    NO_SPEECH = "no_speech"
    LONG_SILENCE = "long_silence"
    POOR_AUDIO = "poor_audio"
    GENERIC = "generic"


def classify_recognition_failure(reason: Optional[str]) -> RecognitionFailure:
    """Map a provider failure reason onto one of the four guidance categories"""
    text = (reason or "").lower().replace(" ", "")
    if "nospeechdetected" in text or "initialsilencetimeout" in text:
        return RecognitionFailure.NO_SPEECH
    if "endsilencetimeout" in text:
        return RecognitionFailure.LONG_SILENCE
    if "audioquality" in text:
        return RecognitionFailure.POOR_AUDIO
    return RecognitionFailure.GENERIC


class TurnTaking:
    """Pure transition logic for the speak/listen loop of one call"""

    def __init__(self, script: Optional[ConversationScript] = None):
        self.script = script or ConversationScript()

    def greeting(self, session: CallSession, text: str) -> List[Command]:
        session.add_turn('assistant', text)
        session.phase = ConversationPhase.GREETING
        return [Speak(text, PlaybackLabel.GREETING)]

    def on_playback_completed(self, session: CallSession, label: Optional[PlaybackLabel]) -> List[Command]:
        if session.phase is ConversationPhase.HUNG_UP:
            logging.debug(f"Ignoring playback completion on ended call {session.canonical_id}")
            return []

        if label in LISTEN_AFTER:
            logging.info(f"Playback for '{label.value}' completed, starting speech recognition.")
            session.phase = ConversationPhase.LISTENING
            return [Listen()]
        if label is PlaybackLabel.FINAL_RESPONSE:
            logging.info("Final response played, now playing goodbye message.")
            session.add_turn('assistant', self.script.goodbye)
            session.phase = ConversationPhase.GOODBYE
            return [Speak(self.script.goodbye, PlaybackLabel.GOODBYE)]
        if label is PlaybackLabel.GOODBYE:
            logging.info("Goodbye message played, ending call.")
            session.phase = ConversationPhase.HUNG_UP
            return [HangUp()]

        logging.info(f"Playback completed with unrecognized context on call {session.canonical_id}")
        return []

    def on_playback_failed(self, session: CallSession, label: Optional[PlaybackLabel], reason: str = "") -> List[Command]:
        # No automatic retry: a stuck call is left for the reaper
        logging.error(f"Audio playback failed for call {session.canonical_id}: {reason} "
                      f"(Context: {label.value if label else 'None'})")
        return []

    def on_recognize_completed(self, session: CallSession, utterance: str) -> List[Command]:
        if session.phase is ConversationPhase.HUNG_UP:
            return []

        utterance = (utterance or "").strip()
        if not utterance:
            logging.info("No speech detected, providing continuation prompt")
            session.phase = ConversationPhase.LISTENING
            return [Speak(self.reprompt_text(session), PlaybackLabel.REPROMPT)]

        session.add_turn('user', utterance)
        session.phase = ConversationPhase.RESPONDING
        return [RequestReply(utterance)]

    def on_reply(self, session: CallSession, reply: AgentReply) -> List[Command]:
        session.add_turn('assistant', reply.text)
        if reply.is_final:
            logging.info("Agent indicates conversation is complete - preparing to end call")
            session.phase = ConversationPhase.FINAL_RESPONSE
            return [Speak(reply.text, PlaybackLabel.FINAL_RESPONSE)]
        session.phase = ConversationPhase.RESPONDING
        return [Speak(reply.text, PlaybackLabel.RESPONSE)]

    def on_recognize_failed(self, session: CallSession, reason: Optional[str]) -> List[Command]:
        if session.phase is ConversationPhase.HUNG_UP:
            return []
        failure = classify_recognition_failure(reason)
        logging.info(f"Speech recognition failed ({reason or 'Unknown'}) - providing {failure.value} guidance")
        session.phase = ConversationPhase.LISTENING
        return [Speak(self.guidance_text(failure), PlaybackLabel.REPROMPT)]

    def guidance_text(self, failure: RecognitionFailure) -> str:
        return {
            RecognitionFailure.NO_SPEECH: self.script.no_speech_guidance,
            RecognitionFailure.LONG_SILENCE: self.script.long_silence_guidance,
            RecognitionFailure.POOR_AUDIO: self.script.poor_audio_guidance,
            RecognitionFailure.GENERIC: self.script.generic_guidance,
        }[failure]

    def reprompt_text(self, session: CallSession) -> str:
        if session.user_turns() == 0:
            return self.script.opening_reprompt
        return self.script.follow_up_reprompt
