"""
Recognition Target Resolver
Chooses which participant to listen to and walks the fixed fallback ladder
when starting speech recognition fails

Ladder (each rung at most once per request):
1. resolved target, full options
2. no specific target, full options (skipped when there was no target to drop)
3. resolved target, simplified options
"""

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from bot_config import RecognitionOptions
from .call_sessions import CallSession

MAX_RECOGNITION_ATTEMPTS = 3

ListenFn = Callable[[str, Optional[str], RecognitionOptions], Awaitable[None]]


class RecognitionStartError(Exception):
    """Raised when every rung of the recognition ladder failed"""

    def __init__(self, call_id: str, attempts: int):
        self.call_id = call_id
        self.attempts = attempts
        super().__init__(f"Speech recognition could not be started for call {call_id} after {attempts} attempt(s)")


def looks_like_phone_address(address: Optional[str]) -> bool:
    return bool(address) and address.startswith('+') and address[1:].isdigit()


def resolve_target(session: CallSession) -> Optional[str]:
    """Participant address to address for speech capture, or None for all participants"""
    for address in sorted(session.participants):
        if looks_like_phone_address(address):
            logging.debug(f"Using observed participant as recognition target: {address}")
            return address

    phone = getattr(session.patient, 'phone_number', None)
    if phone:
        logging.debug(f"Using patient phone as recognition target: {phone}")
        return phone

    logging.warning(f"No recognition target found for call {session.canonical_id}, addressing all participants")
    return None


def recognition_ladder(target: Optional[str], options: RecognitionOptions) -> List[Tuple[Optional[str], RecognitionOptions]]:
    rungs = [(target, options)]
    if target is not None:
        rungs.append((None, options))
    rungs.append((target, options.simplified()))
    return rungs[:MAX_RECOGNITION_ATTEMPTS]


async def start_recognition(session: CallSession, listen: ListenFn, options: RecognitionOptions) -> int:
    """Start listening on session's call; returns the 1-based rung that succeeded.

    Raises RecognitionStartError (chained to the first failure) when all rungs fail.
    """
    target = resolve_target(session)
    first_error: Optional[Exception] = None
    rungs = recognition_ladder(target, options)

    for attempt, (rung_target, rung_options) in enumerate(rungs, start=1):
        session.recognition_attempts += 1
        try:
            logging.info(f"Starting speech recognition for call {session.canonical_id} "
                         f"(attempt {attempt}, target: {rung_target or 'all participants'}, "
                         f"end silence: {rung_options.end_silence_timeout}s)")
            await listen(session.canonical_id, rung_target, rung_options)
            logging.info(f"Speech recognition started successfully on attempt {attempt}")
            return attempt
        except Exception as e:
            logging.warning(f"Speech recognition attempt {attempt} failed: {str(e)}")
            logging.debug(f"Exception type: {type(e).__name__}")
            if first_error is None:
                first_error = e

    logging.error(f"All speech recognition attempts failed for call {session.canonical_id}")
    raise RecognitionStartError(session.canonical_id, len(rungs)) from first_error
