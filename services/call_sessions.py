"""
Call Session Store
One mutable CallSession per active call, keyed by canonical call id, with
per-session expiry timers

Handlers must always work on the object returned by get_or_create(); the store
never copies sessions, so milestone writes made by one handler are visible to
every other handler processing the same call.
"""

import time
import asyncio
import logging
from enum import Enum
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from dataclasses import dataclass, field

from .call_ids import CallIdNormalizer


class MissingIdentifier(Exception):
    """Raised when a session is requested without a call identifier"""


class Milestone(Enum):
    """Facts tracked per call that gate or record conversation progress"""
    CONNECTED = "connected"
    STARTED = "started"
    PARTICIPANT_ADDED = "participantAdded"
    GREETING_PLAYED = "greetingPlayed"


# Milestones that must all hold before the greeting may start
GREETING_PRECONDITIONS = frozenset({Milestone.CONNECTED, Milestone.STARTED, Milestone.PARTICIPANT_ADDED})


class CallStatus(Enum):
    """Advisory call status, never used for gating"""
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    STARTED = "started"
    ENDED = "ended"


class ConversationPhase(Enum):
    """Turn-taking position of the call"""
    IDLE = "idle"
    GREETING = "greeting"
    LISTENING = "listening"
    RESPONDING = "responding"
    FINAL_RESPONSE = "final_response"
    GOODBYE = "goodbye"
    HUNG_UP = "hung_up"


@dataclass
class ConversationTurn:
    """A single spoken turn"""
    role: str  # 'user' or 'assistant'
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {'role': self.role, 'text': self.text, 'timestamp': self.timestamp}


@dataclass
class CallSession:
    """State of one phone call for its whole lifetime"""
    canonical_id: str
    patient: Optional[Any] = None
    conversation_history: List[ConversationTurn] = field(default_factory=list)
    milestones: Set[Milestone] = field(default_factory=set)
    participants: Set[str] = field(default_factory=set)
    status: CallStatus = CallStatus.INITIALIZING
    phase: ConversationPhase = ConversationPhase.IDLE
    started_at: datetime = field(default_factory=datetime.now)
    recognition_attempts: int = 0
    fallback_replies_used: int = 0
    expiry: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    def has(self, milestone: Milestone) -> bool:
        return milestone in self.milestones

    def mark(self, milestone: Milestone) -> bool:
        """Set a monotonic milestone; returns False when it was already set"""
        if milestone is Milestone.GREETING_PLAYED:
            raise ValueError("greetingPlayed is only set through try_latch_greeting()")
        if milestone in self.milestones:
            return False
        self.milestones.add(milestone)
        return True

    def ready_for_greeting(self) -> bool:
        return GREETING_PRECONDITIONS.issubset(self.milestones) and self.patient is not None

    def try_latch_greeting(self) -> bool:
        """Single non-yielding check-and-set of the greeting latch.

        Returns True for exactly one caller once every precondition holds.
        Must not be split across an await.
        """
        if Milestone.GREETING_PLAYED in self.milestones or not self.ready_for_greeting():
            return False
        self.milestones.add(Milestone.GREETING_PLAYED)
        return True

    def release_greeting(self):
        """Roll back the greeting latch after a failed greeting start"""
        self.milestones.discard(Milestone.GREETING_PLAYED)

    def add_turn(self, role: str, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self.conversation_history.append(turn)
        return turn

    def user_turns(self) -> int:
        return sum(1 for turn in self.conversation_history if turn.role == 'user')

    def duration_seconds(self) -> int:
        return int((datetime.now() - self.started_at).total_seconds())

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly view used by the status endpoints"""
        patient = self.patient
        return {
            'callId': self.canonical_id,
            'status': self.status.value,
            'phase': self.phase.value,
            'milestones': {m.value: m in self.milestones for m in Milestone},
            'participants': sorted(self.participants),
            'patientName': getattr(patient, 'patient_name', None),
            'patientPhone': getattr(patient, 'phone_number', None),
            'startTime': self.started_at.isoformat(),
            'duration': self.duration_seconds(),
            'turns': len(self.conversation_history),
            'recognitionAttempts': self.recognition_attempts,
            'fallbackResponsesUsed': self.fallback_replies_used,
        }


class SessionReaper:
    """Scheduled-task registry keyed by canonical id; evicts sessions after a fixed TTL"""

    def __init__(self, ttl_seconds: float, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.ttl_seconds = ttl_seconds
        self._loop = loop
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, canonical_id: str, evict: Callable[[str], Any]) -> asyncio.TimerHandle:
        """Arm the one inactivity timer for canonical_id; an already armed timer is kept"""
        existing = self._timers.get(canonical_id)
        if existing is not None:
            return existing
        loop = self._loop or asyncio.get_running_loop()
        handle = loop.call_later(self.ttl_seconds, self._expire, canonical_id, evict)
        self._timers[canonical_id] = handle
        return handle

    def _expire(self, canonical_id: str, evict: Callable[[str], Any]):
        self._timers.pop(canonical_id, None)
        logging.info(f"Call timeout reached for: {canonical_id}")
        evict(canonical_id)

    def move(self, old_id: str, new_id: str, evict: Callable[[str], Any]) -> Optional[asyncio.TimerHandle]:
        """Re-key old_id's timer to new_id, keeping its original deadline"""
        handle = self._timers.pop(old_id, None)
        if handle is None:
            return None
        handle.cancel()
        if new_id in self._timers:
            return self._timers[new_id]
        loop = self._loop or asyncio.get_running_loop()
        remaining = max(handle.when() - loop.time(), 0)
        moved = loop.call_later(remaining, self._expire, new_id, evict)
        self._timers[new_id] = moved
        return moved

    def cancel(self, canonical_id: str) -> bool:
        handle = self._timers.pop(canonical_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self):
        for canonical_id in list(self._timers):
            self.cancel(canonical_id)

    def is_scheduled(self, canonical_id: str) -> bool:
        return canonical_id in self._timers


class SessionStore:
    """Canonical id -> CallSession map sharing one alias table with the normalizer"""

    def __init__(self, normalizer: CallIdNormalizer, reaper: SessionReaper):
        self.normalizer = normalizer
        self.reaper = reaper
        self._sessions: Dict[str, CallSession] = {}

    def get_or_create(self, canonical_id: Optional[str], patient: Optional[Any] = None,
                      event_name: str = "") -> CallSession:
        """Return the session for canonical_id, creating it (and its expiry timer) if absent"""
        if not canonical_id:
            logging.error(f"No call connection id provided for {event_name or 'session lookup'}")
            raise MissingIdentifier("A call connection id is required")

        session = self._sessions.get(canonical_id)
        if session is None:
            session = CallSession(canonical_id=canonical_id, patient=patient)
            self._sessions[canonical_id] = session
            session.expiry = self.reaper.schedule(canonical_id, self.remove)
            if event_name:
                logging.info(f"No call state found for {event_name}, created temporary state for: {canonical_id}")
            else:
                logging.info(f"Call state created for: {canonical_id}")
        elif patient is not None and session.patient is None:
            session.patient = patient
        return session

    def get(self, canonical_id: Optional[str]) -> Optional[CallSession]:
        if not canonical_id:
            return None
        return self._sessions.get(canonical_id)

    def resolve(self, raw_id: Optional[str]) -> Optional[CallSession]:
        """Find a session by any known alias without registering new ones"""
        canonical = self.normalizer.lookup(raw_id)
        if canonical is None:
            return None
        return self._sessions.get(canonical)

    def link(self, alias: str, canonical_id: str) -> Optional[CallSession]:
        """Unify alias with canonical_id, moving any session stored under alias's key"""
        old_key = self.normalizer.lookup(alias)
        target = self.normalizer.link(alias, canonical_id)
        if old_key is None or old_key == target:
            return self._sessions.get(target)

        moved = self._sessions.pop(old_key, None)
        if moved is None:
            return self._sessions.get(target)

        current = self._sessions.get(target)
        if current is None:
            moved.canonical_id = target
            moved.expiry = self.reaper.move(old_key, target, self.remove)
            self._sessions[target] = moved
            logging.info(f"Moved call state from {old_key} to {target}")
            return moved

        # Both keys already had state; fold the older one into the survivor
        self.reaper.cancel(old_key)
        moved.expiry = None
        current.milestones |= moved.milestones
        current.participants |= moved.participants
        if current.patient is None:
            current.patient = moved.patient
        if not current.conversation_history:
            current.conversation_history = moved.conversation_history
        logging.info(f"Merged call state from {old_key} into {target}")
        return current

    def remove(self, canonical_id: str) -> Optional[CallSession]:
        """Cancel the timer, delete the session and every alias pointing at it"""
        self.reaper.cancel(canonical_id)
        session = self._sessions.pop(canonical_id, None)
        self.normalizer.forget(canonical_id)
        if session is not None:
            session.expiry = None
            session.status = CallStatus.ENDED
            logging.info(f"Cleaned up state for call: {canonical_id}")
        return session

    def clear(self):
        for canonical_id in list(self._sessions):
            self.remove(canonical_id)

    def sessions(self) -> List[CallSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, canonical_id: str) -> bool:
        return canonical_id in self._sessions
