"""Public test-support utilities for evselink.

Re-exports test doubles and factories so that consumer test suites
can import everything from a single ``evselink.testing`` namespace
instead of reaching into private modules.

Provided symbols:

- :class:`MockPushTransport` — in-memory push port with injectable telemetry.
- :class:`MockPollTransport` — in-memory poll port backed by status documents.
- :class:`FakeAnnouncementSource` — canned service announcements.
- :class:`FakeClock` — deterministic clock for data-age tests.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
- :func:`status_document` — builder for realistic poll status documents.
"""

from evselink._poll import MockPollTransport
from evselink._push import MockPushSession, MockPushTransport
from evselink.testing._announcements import FakeAnnouncementSource
from evselink.testing._clock import FakeClock
from evselink.testing._documents import status_document
from evselink.testing._settings import make_settings

__all__ = [
    "FakeAnnouncementSource",
    "FakeClock",
    "MockPollTransport",
    "MockPushSession",
    "MockPushTransport",
    "make_settings",
    "status_document",
]
