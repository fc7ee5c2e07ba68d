"""Exception taxonomy and user-visible error messages.

Hierarchy::

    EvseLinkError
    ├── TransportError            ← drives failover, never shown raw
    │   ├── TransportOpenError    ← push session could not be established
    │   ├── TransportTimeoutError ← no response within bound
    │   ├── PollError             ← HTTP failure or unexpected status
    │   └── PublishError          ← push publish rejected / not connected
    ├── DecodeError               ← payload shape mismatch (per field)
    ├── PairError                 ← rejected PIN or malformed response
    ├── DiscoveryProbeError       ← candidate failed validation (internal)
    └── CommandError              ← command reached no transport
        └── NoDeviceSelectedError

Only ``CommandError`` and the engine's "no transport usable" status are
meant for end users.  :func:`user_message` turns any of the above into
display text, using a pluggable type map the same way the status stream
uses fixed strings.
"""

from __future__ import annotations

CONNECTION_UNAVAILABLE = "Connection unavailable - check network"
CONNECTION_LOST = "Connection lost - no data received"


class EvseLinkError(Exception):
    """Root of all evselink errors."""


class TransportError(EvseLinkError):
    """A single request on one transport failed."""


class TransportOpenError(TransportError):
    """The push session could not be established."""


class TransportTimeoutError(TransportError):
    """No response arrived within the configured bound."""


class PollError(TransportError):
    """A poll request failed or returned an unexpected status."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PublishError(TransportError):
    """A push publish could not be handed to the session."""


class DecodeError(EvseLinkError):
    """A payload did not match the expected shape."""


class PairError(EvseLinkError):
    """Pairing was rejected or the authority answered malformed data.

    Carries the HTTP status and raw body so callers can display them.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class DiscoveryProbeError(EvseLinkError):
    """A discovery candidate is not a genuine device."""


class CommandError(EvseLinkError):
    """A command could not be delivered over any transport."""


class NoDeviceSelectedError(CommandError):
    """A command was issued while no device is selected."""


_DEFAULT_MESSAGES: dict[type[Exception], str] = {
    TransportOpenError: "Remote connection failed",
    TransportTimeoutError: "Device did not respond in time",
    PollError: CONNECTION_UNAVAILABLE,
    PublishError: "Failed to send command remotely",
    DecodeError: "Device sent unexpected data",
    DiscoveryProbeError: "No devices found",
    NoDeviceSelectedError: "Select a device first!",
}


def user_message(
    error: Exception,
    *,
    message_map: dict[type[Exception], str] | None = None,
) -> str:
    """Return display text for *error*.

    Looks up the exact class first in *message_map*, then in the
    built-in map.  ``PairError`` and ``CommandError`` carry their own
    text; anything unmapped falls back to ``str(error)``.
    """
    resolved = {**_DEFAULT_MESSAGES, **(message_map or {})}
    if type(error) in resolved:
        return resolved[type(error)]
    if isinstance(error, PairError) and error.status is not None:
        return f"Pairing failed: {error.status} - {error.body}"
    return str(error) or type(error).__name__
