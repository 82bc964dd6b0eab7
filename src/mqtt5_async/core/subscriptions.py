"""
Subscription Table.

Maps topic filters to the callback that receives matching messages. Entries move
through two steps: a SUBSCRIBE stages the subscription under its packet id and the
SUBACK confirms it with the broker-granted QoS. Removal mirrors this, the filter
stays routable until the UNSUBACK arrives.

Matching runs on paho's MQTTMatcher trie. When several filters match a topic the
most specific one wins: more literal levels first, then filters without "#", then
fewer "+" levels, then the oldest subscription.
"""
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from paho.mqtt.matcher import MQTTMatcher

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes, int, bool], Any]

SHARED_PREFIX = "$share/"
_sequence = itertools.count()


def _check_common(value: str, kind: str) -> None:
    if not isinstance(value, str):
        raise ValueError(f"{kind} must be a string, got {type(value).__name__}")
    if not value:
        raise ValueError(f"{kind} must not be empty")
    if len(value.encode("utf-8")) > 65535:
        raise ValueError(f"{kind} is longer than 65535 bytes")
    if "\x00" in value:
        raise ValueError(f"{kind} must not contain NUL characters")


def validate_topic_name(topic: str) -> str:
    """Validate a topic name used for publishing. Wildcards are not allowed."""
    _check_common(topic, "Topic name")
    if "+" in topic or "#" in topic:
        raise ValueError(f"Topic name {topic!r} must not contain wildcards")
    return topic


def validate_topic_filter(topic_filter: str) -> str:
    """
    Validate a subscription topic filter.

    "+" must occupy a whole level and "#" must be the whole last level. Shared
    subscriptions ("$share/<group>/<filter>") need a group name without wildcards.
    """
    _check_common(topic_filter, "Topic filter")
    match_filter = topic_filter
    if topic_filter.startswith(SHARED_PREFIX):
        parts = topic_filter.split("/", 2)
        if len(parts) < 3 or not parts[1] or not parts[2]:
            raise ValueError(f"Shared subscription {topic_filter!r} needs a group and a filter")
        if "+" in parts[1] or "#" in parts[1]:
            raise ValueError(f"Share group name in {topic_filter!r} must not contain wildcards")
        match_filter = parts[2]

    levels = match_filter.split("/")
    for index, level in enumerate(levels):
        if len(level) > 1 and ("+" in level or "#" in level):
            raise ValueError(f"Wildcard must occupy a whole level in {topic_filter!r}")
        if level == "#" and index != len(levels) - 1:
            raise ValueError(f"'#' must be the last level in {topic_filter!r}")
    return topic_filter


def match_filter_of(topic_filter: str) -> str:
    """The filter used for routing, with any shared subscription prefix removed."""
    if topic_filter.startswith(SHARED_PREFIX):
        return topic_filter.split("/", 2)[2]
    return topic_filter


def specificity(topic_filter: str) -> tuple[int, bool, int]:
    levels = match_filter_of(topic_filter).split("/")
    literal = sum(1 for level in levels if level not in ("+", "#"))
    wildcards = sum(1 for level in levels if level == "+")
    return literal, levels[-1] != "#", -wildcards


@dataclass
class Subscription:
    topic_filter: str
    qos: int
    callback: MessageCallback | None = None
    granted_qos: int | None = None
    sequence: int = field(default_factory=lambda: next(_sequence))


class SubscriptionTable:
    """Thread-safe filter to subscription routing."""

    def __init__(self, logger: logging.Logger | logging.LoggerAdapter | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._active: dict[str, Subscription] = {}
        # Routing filter -> subscribed filters sharing it (plain and shared variants)
        self._routes: dict[str, list[str]] = {}
        self._matcher = MQTTMatcher()
        self._staged: dict[int, Subscription] = {}
        self._staged_removals: dict[int, str] = {}
        self._lock = threading.Lock()

    def stage_subscribe(self, packet_id: int, subscription: Subscription) -> None:
        with self._lock:
            self._staged[packet_id] = subscription

    def confirm_subscribe(self, packet_id: int, granted_qos: int) -> Subscription | None:
        """Activate the subscription staged under packet_id."""
        with self._lock:
            subscription = self._staged.pop(packet_id, None)
            if subscription is None:
                return None
            subscription.granted_qos = granted_qos
            previous = self._active.get(subscription.topic_filter)
            if previous is not None:
                # Re-subscribing replaces the callback but keeps routing precedence
                subscription.sequence = previous.sequence
            self._active[subscription.topic_filter] = subscription
            route = match_filter_of(subscription.topic_filter)
            filters = self._routes.setdefault(route, [])
            if subscription.topic_filter not in filters:
                filters.append(subscription.topic_filter)
            self._matcher[route] = route
        if granted_qos < subscription.qos:
            self.logger.info(
                f"Subscription to '{subscription.topic_filter}' granted QoS {granted_qos}, requested {subscription.qos}",
                extra={"packet_id": packet_id},
            )
        return subscription

    def abandon(self, packet_id: int) -> Subscription | None:
        """Drop a staged subscription the broker refused."""
        with self._lock:
            return self._staged.pop(packet_id, None)

    def stage_unsubscribe(self, packet_id: int, topic_filter: str) -> None:
        with self._lock:
            self._staged_removals[packet_id] = topic_filter

    def confirm_unsubscribe(self, packet_id: int) -> str | None:
        """Remove the filter staged for removal under packet_id."""
        with self._lock:
            topic_filter = self._staged_removals.pop(packet_id, None)
            if topic_filter is None:
                return None
            self._remove(topic_filter)
            return topic_filter

    def _remove(self, topic_filter: str) -> None:
        if self._active.pop(topic_filter, None) is None:
            return
        route = match_filter_of(topic_filter)
        filters = self._routes.get(route, [])
        if topic_filter in filters:
            filters.remove(topic_filter)
        if not filters:
            self._routes.pop(route, None)
            try:
                del self._matcher[route]
            except KeyError:
                pass

    def route(self, topic: str) -> Subscription | None:
        """
        Return the most specific subscription matching topic, or None.

        Example:
            >>> table.route("sensors/kitchen/temp")   # with "sensors/#" and "sensors/+/temp"
            Subscription(topic_filter='sensors/+/temp', ...)
        """
        with self._lock:
            candidates = [
                self._active[topic_filter]
                for route in self._matcher.iter_match(topic)
                for topic_filter in self._routes.get(route, ())
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (*specificity(s.topic_filter), -s.sequence))

    def discard_staged(self) -> None:
        with self._lock:
            self._staged.clear()
            self._staged_removals.clear()

    def clear(self) -> None:
        with self._lock:
            self._active.clear()
            self._routes.clear()
            self._matcher = MQTTMatcher()
            self._staged.clear()
            self._staged_removals.clear()

    def get(self, topic_filter: str) -> Subscription | None:
        with self._lock:
            return self._active.get(topic_filter)

    def active(self) -> list[Subscription]:
        with self._lock:
            return list(self._active.values())

    def __contains__(self, topic_filter: str) -> bool:
        with self._lock:
            return topic_filter in self._active

    def __len__(self):
        with self._lock:
            return len(self._active)
