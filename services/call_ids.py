"""
Call Identifier Normalization
Resolves every call identifier seen on the webhook feed to one canonical session key

ACS delivers the same call under two encodings: the short call connection id
returned by create_call, and a long base64-encoded variant carried by some
Event Grid deliveries. The alias table maps both to a single canonical key.

Known limitation: a long id is unified with a short id only when the short id
was seen first. If the long id arrives first it becomes its own canonical key
until a later event links the two.
"""

import logging
from typing import Dict, List, Optional


class CallIdNormalizer:
    """Alias table from any observed call identifier to its canonical key"""

    def __init__(self, long_id_threshold: int = 50, long_id_marker: str = "aHR0"):
        self.long_id_threshold = long_id_threshold
        self.long_id_marker = long_id_marker
        self._aliases: Dict[str, str] = {}

    def is_long_encoded(self, call_id: str) -> bool:
        """Heuristic: long ids carry a base64-encoded URL ('aHR0' is base64 for 'htt')"""
        return len(call_id) > self.long_id_threshold and self.long_id_marker in call_id

    def normalize(self, raw_id: Optional[str]) -> Optional[str]:
        """Resolve raw_id to its canonical key, registering new aliases on first sight"""
        if not raw_id:
            return None

        canonical = self._aliases.get(raw_id)
        if canonical is not None:
            if canonical != raw_id:
                logging.debug(f"Using mapped call ID: {raw_id[:30]}... -> {canonical}")
            return canonical

        if self.is_long_encoded(raw_id):
            for existing_id, existing_canonical in self._aliases.items():
                if len(existing_id) < self.long_id_threshold:
                    self._aliases[raw_id] = existing_canonical
                    logging.info(f"Created call ID mapping: {raw_id[:30]}... -> {existing_canonical}")
                    return existing_canonical

        # First sighting: the id becomes its own canonical key
        self._aliases[raw_id] = raw_id
        logging.debug(f"Registered canonical call ID: {raw_id}")
        return raw_id

    def link(self, alias: str, canonical: str) -> str:
        """Record that alias names the same call as canonical.

        Every id that resolved to alias's old key is re-pointed as well, so the
        two alias groups merge into one. Returns the surviving canonical key.
        """
        target = self._aliases.setdefault(canonical, canonical)
        previous = self._aliases.get(alias)
        if previous == target:
            return target

        for existing_id, existing_canonical in list(self._aliases.items()):
            if previous is not None and existing_canonical == previous:
                self._aliases[existing_id] = target
        self._aliases[alias] = target
        logging.info(f"Created call ID mapping: {alias[:30]}... -> {target}")
        return target

    def lookup(self, raw_id: Optional[str]) -> Optional[str]:
        """Resolve without registering anything"""
        if not raw_id:
            return None
        return self._aliases.get(raw_id)

    def aliases_of(self, canonical: str) -> List[str]:
        return [alias for alias, target in self._aliases.items() if target == canonical]

    def forget(self, canonical: str) -> int:
        """Drop every alias pointing at canonical; returns how many were removed"""
        doomed = [alias for alias, target in self._aliases.items()
                  if target == canonical or alias == canonical]
        for alias in doomed:
            del self._aliases[alias]
        if doomed:
            logging.debug(f"Removed {len(doomed)} alias(es) for call {canonical}")
        return len(doomed)

    def __len__(self) -> int:
        return len(self._aliases)

    def __contains__(self, raw_id: str) -> bool:
        return raw_id in self._aliases
