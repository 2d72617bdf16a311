"""Device ownership helpers shared by every scheduler call site."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from bingo.logic.exceptions import DeviceRestrictedError, PlaybackError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from bingo.playback.controller import PlaybackController

logger = logging.getLogger(__name__)


class DeviceGuard:
    """Keep one device in control without issuing redundant transfers.

    Restriction responses are retried exactly once after re-activating the
    device; a second restriction is reported as degraded (False) instead of
    being raised.
    """

    def __init__(self, controller: PlaybackController) -> None:
        self._controller = controller

    async def ensure_active(self, device_id: str) -> bool:
        """Transfer playback to device_id unless it already holds it."""
        try:
            state = await self._controller.get_state()
        except PlaybackError as e:
            logger.warning("could not query active device before transfer: %s", e)
            state = None
        if state is not None and state.device_id == device_id:
            return True
        return await self.call_with_reactivation(
            "transfer",
            device_id,
            lambda: self._controller.transfer(device_id, play=False),
        )

    async def call_with_reactivation(
        self,
        label: str,
        device_id: str,
        call: Callable[[], Awaitable[None]],
    ) -> bool:
        """Run a device call, recovering once from a restriction response.

        Returns False when the device is still restricted after re-activation.
        Other PlaybackError subclasses propagate.
        """
        try:
            await call()
        except DeviceRestrictedError as e:
            logger.warning("%s restricted on %s, re-activating device: %s", label, device_id, e)
        else:
            return True

        try:
            await self._controller.activate_device(device_id)
            await call()
        except DeviceRestrictedError as e:
            logger.warning("%s still restricted on %s, continuing degraded: %s", label, device_id, e)
            return False
        return True
