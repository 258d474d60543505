"""
Conversational Agent Module
Generates the spoken replies for a follow-up call using Azure OpenAI

The agent receives the call's conversation history plus the latest patient
utterance and returns the reply text together with a flag telling the
orchestrator whether the conversation is complete. Transient OpenAI failures
are retried by the client itself; once retries are exhausted the failure is
surfaced as one of the AgentError types below and the caller falls back to a
canned keyword reply.
"""

import logging
from typing import Any, Optional, Sequence

import openai
from openai import AsyncAzureOpenAI

from bot_config import CallSettings, ConversationScript
from .call_sessions import ConversationTurn
from .conversation_flow import AgentReply

END_CALL_MARKER = "[END_CALL]"


class AgentError(Exception):
    """Base class for conversational agent failures"""


class RateLimited(AgentError):
    pass


class AuthFailed(AgentError):
    pass


class Timeout(AgentError):
    pass


class ApiError(AgentError):
    pass


def _map_openai_error(error: openai.OpenAIError) -> AgentError:
    if isinstance(error, openai.RateLimitError):
        return RateLimited(str(error))
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthFailed(str(error))
    if isinstance(error, openai.APITimeoutError):
        return Timeout(str(error))
    return ApiError(str(error))


def build_system_prompt(patient: Any, max_turns: int) -> str:
    patient_name = getattr(patient, 'patient_name', '') or 'the patient'
    doctor_name = getattr(patient, 'doctor_name', '') or 'their doctor'
    medications = [p.medication_name for p in getattr(patient, 'prescriptions', [])] or ['their prescribed medication']

    return f"""You are Jenny, a professional healthcare voice assistant conducting a post-discharge follow-up call.

PATIENT CONTEXT:
- Patient: {patient_name}
- Doctor: Dr. {doctor_name}
- Medications: {', '.join(medications)}

CONVERSATION GUIDELINES:
- Keep responses under 30 seconds when spoken, plain text only
- Use the patient's name naturally
- Be professional, empathetic, and supportive
- Check medication pickup, adherence and side effects, then offer to schedule a follow-up appointment
- If the patient describes an emergency, tell them to call 911 immediately
- Wrap up within {max_turns} patient turns

When the conversation is complete, say a brief closing sentence and append {END_CALL_MARKER} to the end of your reply."""


class ConversationAgent:
    """Azure OpenAI chat agent for follow-up calls"""

    def __init__(self, settings: CallSettings, client: Optional[AsyncAzureOpenAI] = None):
        self.settings = settings
        self.script: ConversationScript = settings.script
        self._client = client

    @property
    def is_configured(self) -> bool:
        return self._client is not None or self.settings.agent_configured

    @property
    def client(self) -> AsyncAzureOpenAI:
        if self._client is None:
            self._client = AsyncAzureOpenAI(
                api_key=self.settings.openai_api_key,
                api_version=self.settings.openai_api_version,
                azure_endpoint=self.settings.openai_endpoint,
                max_retries=self.settings.agent_max_retries,
                timeout=self.settings.agent_timeout_seconds
            )
        return self._client

    def greeting_for(self, patient: Any) -> str:
        """Personalized opening line spoken once the call is ready"""
        return self.script.greeting_template.format(
            patient_name=getattr(patient, 'patient_name', None) or self.settings.default_patient_name,
            doctor_name=getattr(patient, 'doctor_name', None) or self.settings.default_doctor_name,
            medication_name=getattr(patient, 'primary_medication', None) or "your prescribed medication"
        )

    async def generate_reply(self, history: Sequence[ConversationTurn], utterance: str, patient: Any) -> AgentReply:
        """Reply to utterance given the prior conversation; raises AgentError on failure"""
        if not self.is_configured:
            raise ApiError("Azure OpenAI is not configured")

        # the utterance is normally already the last user turn in history
        messages = [{"role": "system", "content": build_system_prompt(patient, self.settings.max_conversation_turns)}]
        for turn in history:
            messages.append({"role": turn.role, "content": turn.text})
        if not history or history[-1].role != 'user' or history[-1].text != utterance:
            messages.append({"role": "user", "content": utterance})

        logging.debug(f"Requesting agent reply with {len(messages)} messages")
        try:
            response = await self.client.chat.completions.create(
                model=self.settings.openai_deployment,
                messages=messages,
                max_tokens=200,
                temperature=0.7
            )
        except openai.OpenAIError as e:
            logging.error(f"Agent request failed: {str(e)}")
            logging.error(f"Exception type: {type(e).__name__}")
            raise _map_openai_error(e) from e

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise ApiError("Agent returned an empty reply")

        is_final = END_CALL_MARKER in content
        text = content.replace(END_CALL_MARKER, "").strip()
        user_turns = sum(1 for turn in history if turn.role == 'user')
        if user_turns >= self.settings.max_conversation_turns:
            logging.info(f"Reached {user_turns} patient turns, marking reply as final")
            is_final = True

        logging.info(f"Generated agent reply: '{text[:100]}...' (final: {is_final})")
        return AgentReply(text=text or self.script.closing_fallback, is_final=is_final)

    def fallback_reply(self, utterance: str, patient: Any = None, history: Sequence[ConversationTurn] = ()) -> AgentReply:
        """Keyword-based canned reply used when the agent is unavailable"""
        user_turns = sum(1 for turn in history if turn.role == 'user')
        if user_turns >= self.settings.max_conversation_turns:
            return AgentReply(text=self.script.closing_fallback, is_final=True)

        text = (utterance or "").lower()
        for topic, keywords in self.script.fallback_keywords.items():
            if any(keyword in text for keyword in keywords):
                logging.debug(f"Fallback reply matched topic: {topic}")
                return AgentReply(text=self.script.fallback_replies[topic])
        return AgentReply(text=self.script.generic_fallback)

    async def close(self):
        if self._client is not None:
            await self._client.close()
