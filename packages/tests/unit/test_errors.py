"""Unit tests for evselink._errors — taxonomy and display messages.

Test Techniques Used:
    - Specification-based Testing: class hierarchy, user_message mapping
    - Equivalence Partitioning: mapped, overridden and unmapped errors
"""

from __future__ import annotations

import pytest

from evselink._errors import (
    CONNECTION_UNAVAILABLE,
    CommandError,
    DecodeError,
    EvseLinkError,
    NoDeviceSelectedError,
    PairError,
    PollError,
    PublishError,
    TransportError,
    TransportOpenError,
    TransportTimeoutError,
    user_message,
)


class TestHierarchy:
    """Technique: Specification-based Testing."""

    @pytest.mark.parametrize(
        "cls",
        [TransportOpenError, TransportTimeoutError, PollError, PublishError],
    )
    def test_transport_errors(self, cls: type[Exception]) -> None:
        assert issubclass(cls, TransportError)

    def test_no_device_selected_is_command_error(self) -> None:
        assert issubclass(NoDeviceSelectedError, CommandError)

    @pytest.mark.parametrize("cls", [TransportError, DecodeError, PairError, CommandError])
    def test_all_share_root(self, cls: type[Exception]) -> None:
        assert issubclass(cls, EvseLinkError)

    def test_poll_error_carries_status(self) -> None:
        assert PollError("bad", status=503).status == 503

    def test_pair_error_carries_response(self) -> None:
        err = PairError("nope", status=401, body="invalid pin")
        assert (err.status, err.body) == (401, "invalid pin")


class TestUserMessage:
    """Technique: Equivalence Partitioning."""

    def test_poll_error_is_connection_unavailable(self) -> None:
        assert user_message(PollError("GET failed")) == CONNECTION_UNAVAILABLE

    def test_no_device_selected(self) -> None:
        assert user_message(NoDeviceSelectedError("x")) == "Select a device first!"

    def test_command_error_keeps_its_text(self) -> None:
        assert user_message(CommandError(CONNECTION_UNAVAILABLE)) == CONNECTION_UNAVAILABLE

    def test_pair_error_with_status(self) -> None:
        err = PairError("x", status=403, body="expired")
        assert user_message(err) == "Pairing failed: 403 - expired"

    def test_pair_error_without_status(self) -> None:
        assert user_message(PairError("Pairing request timed out")) == "Pairing request timed out"

    def test_custom_map_wins(self) -> None:
        message = user_message(PollError("x"), message_map={PollError: "Offline"})
        assert message == "Offline"

    def test_exact_type_lookup(self) -> None:
        class FlakyPoll(PollError):
            pass

        assert user_message(FlakyPoll("raw text")) == "raw text"

    def test_empty_message_falls_back_to_class_name(self) -> None:
        assert user_message(EvseLinkError()) == "EvseLinkError"
