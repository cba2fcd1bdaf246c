"""
Topic router: maps each inbound (topic, payload) to at most one handler
"""
import threading
from typing import Callable, Dict, List, Optional

from log import setup_logger

logger = setup_logger(__name__)

Handler = Callable[[str, bytes], None]


def topic_matches(pattern: str, topic: str) -> bool:
    """
    MQTT-style match of a subscription pattern against a concrete topic.

    `+` matches exactly one level, `#` matches the remaining levels
    (including none).
    """
    if not pattern:
        return False
    if pattern == topic:
        return True

    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    for i, p in enumerate(pattern_levels):
        if p == "#":
            return True
        if i >= len(topic_levels):
            return False
        if p == "+":
            continue
        if p != topic_levels[i]:
            return False

    return len(topic_levels) == len(pattern_levels) or pattern_levels[-1] == "#"


def specificity(pattern: str):
    """
    Sort key for wildcard patterns: more literal levels first, `#` after
    `+`, fewer `+` first, then lexical order so ties are deterministic.
    """
    levels = pattern.split("/")
    literals = sum(1 for level in levels if level not in ("+", "#"))
    plus = levels.count("+")
    return ("#" in levels, -literals, plus, pattern)


def is_wildcard(pattern: str) -> bool:
    return "+" in pattern.split("/") or "#" in pattern.split("/")


class TopicRouter:
    """
    Registry of active subscriptions.

    Exact patterns are looked up first; wildcard patterns are then tried
    in specificity order and the first match wins. Only one handler runs
    per message.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._wildcards: List[str] = []
        self._lock = threading.Lock()

    def add(self, pattern: str, handler: Handler):
        """Record a confirmed subscription; re-adding a pattern replaces its handler"""
        with self._lock:
            self._handlers[pattern] = handler
            if is_wildcard(pattern) and pattern not in self._wildcards:
                self._wildcards.append(pattern)
                self._wildcards.sort(key=specificity)

    def remove(self, pattern: str):
        with self._lock:
            self._handlers.pop(pattern, None)
            if pattern in self._wildcards:
                self._wildcards.remove(pattern)

    def has(self, pattern: str) -> bool:
        return pattern in self._handlers

    def patterns(self) -> List[str]:
        with self._lock:
            return list(self._handlers)

    def handler_for(self, pattern: str) -> Optional[Handler]:
        return self._handlers.get(pattern)

    def match(self, topic: str) -> Optional[str]:
        """Return the pattern that would handle `topic`, or None"""
        with self._lock:
            if topic in self._handlers:
                return topic
            for pattern in self._wildcards:
                if topic_matches(pattern, topic):
                    return pattern
        return None

    def dispatch(self, topic: str, payload: bytes) -> bool:
        """
        Run the best-matching handler for an inbound message

        Returns:
            bool: True if a handler ran (even if it raised)
        """
        pattern = self.match(topic)
        if pattern is None:
            logger.debug(f"No handler for topic: {topic}")
            return False

        handler = self._handlers.get(pattern)
        if handler is None:
            return False

        try:
            handler(topic, payload)
        except Exception:
            logger.exception(f"Handler for {pattern} failed on message from {topic}")
        return True
