"""Push topic layout for one device.

Every topic lives under a serial-scoped root::

    {product}-{serial}/{State}          → state topics (subscribed)
    {product}-{serial}/Set/Mode         → mode command (published)
    {product}-{serial}/Set/CurrentOverride
    {product}-{serial}/App/Status       → "online" / "offline" marker

Inbound topics are reduced to their suffix before decoding; topics
outside the device root, or nested deeper than one level, are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass

from evselink._codec import PUSH_STATE_TOPICS

SET_MODE = "Set/Mode"
SET_CURRENT_OVERRIDE = "Set/CurrentOverride"
APP_STATUS = "App/Status"

ONLINE = "online"
OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class DeviceTopics:
    """Topic names for one device on the push broker."""

    product: str
    serial: str

    @property
    def prefix(self) -> str:
        """Serial-scoped topic root, e.g. ``SmartEVSE-12345``."""
        return f"{self.product}-{self.serial}"

    def topic(self, suffix: str) -> str:
        """Full topic for *suffix*."""
        return f"{self.prefix}/{suffix}"

    @property
    def subscriptions(self) -> list[str]:
        """Full state topics to subscribe to."""
        return [self.topic(suffix) for suffix in PUSH_STATE_TOPICS]

    @property
    def app_status(self) -> str:
        return self.topic(APP_STATUS)

    def suffix(self, topic: str) -> str | None:
        """Extract the state suffix from *topic*.

        Returns:
            The suffix if *topic* is ``{prefix}/{suffix}`` with a
            single-level suffix, otherwise ``None``.
        """
        root = self.prefix + "/"
        if not topic.startswith(root):
            return None
        rest = topic[len(root) :]
        if not rest or "/" in rest:
            return None
        return rest
