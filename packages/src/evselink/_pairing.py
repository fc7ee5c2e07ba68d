"""Pairing client: exchange a short PIN for a long-lived push credential.

One POST to the pairing authority::

    POST https://mqtt.smartevse.nl/pair
    {"app_uuid": ..., "device_serial": "SmartEVSE-<serial>", "pairing_pin": ...}

    200 {"mqtt_token": "..."}

The credential is scoped to the identity, not to the device; spreading
it to other paired records is :meth:`DeviceRegistry.apply_credential`'s
job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Self

import aiohttp

from evselink._errors import PairError
from evselink._settings import PairingSettings

logger = logging.getLogger(__name__)


@dataclass
class PairingClient:
    """Stateless request/response client for the pairing authority."""

    settings: PairingSettings = field(default_factory=PairingSettings)
    product: str = "SmartEVSE"
    session: aiohttp.ClientSession | None = None
    _owns_session: bool = field(default=False, init=False, repr=False)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._owns_session = False

    def _client(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def pair(self, identity: str, serial: str, pin: str) -> str:
        """Return the credential issued for *identity*.

        Raises:
            PairError: Non-2xx status, missing ``mqtt_token``, unparsable
                body, timeout or connection failure.  ``status`` and
                ``body`` are set when a response was received.
        """
        body = {
            "app_uuid": identity,
            "device_serial": f"{self.product}-{serial}",
            "pairing_pin": pin,
        }
        try:
            async with self._client().post(
                self.settings.url,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.settings.timeout),
            ) as response:
                status = response.status
                text = await response.text()
        except TimeoutError as exc:
            msg = "Pairing request timed out"
            raise PairError(msg) from exc
        except aiohttp.ClientError as exc:
            msg = f"Pairing error: {exc}"
            raise PairError(msg) from exc

        if not 200 <= status < 300:
            logger.warning("Pairing for %s rejected with %d", serial, status)
            msg = f"Pairing failed: {status} - {text}"
            raise PairError(msg, status=status, body=text)

        try:
            data = json.loads(text)
        except ValueError as exc:
            msg = "Pairing response is not JSON"
            raise PairError(msg, status=status, body=text) from exc

        token = data.get("mqtt_token") if isinstance(data, dict) else None
        if token is None or token == "":
            msg = "No token received from server"
            raise PairError(msg, status=status, body=text)

        logger.info("Paired %s-%s", self.product, serial)
        return str(token)
