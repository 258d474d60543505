"""
Greeting Synchronization Gate
AND-barrier over the connected/started/participant milestones plus a one-shot
latch that starts the greeting exactly once per call
"""

import asyncio
import logging
from typing import Awaitable, Callable, Set

from .call_sessions import CallSession, Milestone


class GreetingGate:
    """Fires the greeting-start action once every precondition holds"""

    def __init__(self, start_greeting: Callable[[CallSession], Awaitable[None]], delay_seconds: float = 0.5):
        self.start_greeting = start_greeting
        self.delay_seconds = delay_seconds
        self._pending: Set[asyncio.Task] = set()

    def on_milestone_updated(self, session: CallSession) -> bool:
        """Check the barrier for session; returns True when this call fired the greeting"""
        if session.has(Milestone.GREETING_PLAYED):
            logging.debug(f"Greeting already played for call {session.canonical_id}")
            return False

        if not session.try_latch_greeting():
            logging.info(f"Waiting for more events on call {session.canonical_id}. "
                         f"Connected: {session.has(Milestone.CONNECTED)}, "
                         f"Started: {session.has(Milestone.STARTED)}, "
                         f"Participant: {session.has(Milestone.PARTICIPANT_ADDED)}, "
                         f"Patient: {session.patient is not None}")
            return False

        logging.info(f"All events ready for call {session.canonical_id}, starting greeting...")
        task = asyncio.get_running_loop().create_task(self._start_after_delay(session))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _start_after_delay(self, session: CallSession):
        # Let the media channel settle before speaking
        await asyncio.sleep(self.delay_seconds)
        try:
            await self.start_greeting(session)
        except Exception as e:
            logging.error(f"Error starting greeting for call {session.canonical_id}: {str(e)}")
            logging.error(f"Exception type: {type(e).__name__}")
            session.release_greeting()
            logging.info("Reset greetingPlayed flag due to error")

    async def join(self):
        """Wait for scheduled greeting starts to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
