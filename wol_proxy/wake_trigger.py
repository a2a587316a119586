"""Cool-down throttling for Wake-on-LAN transmissions."""

import logging
import time
from typing import Any, Callable, Dict, Optional


logger = logging.getLogger(__name__)


class WakeTrigger:
    """Sends a wake packet for one target at most once per cool-down window.

    One instance is shared by every connection heading to the same hardware
    address, so a burst of clients retrying against a sleeping machine still
    produces a single packet per window. The window is measured on a
    monotonic clock so wall-clock adjustments cannot shorten or extend it.
    """

    def __init__(self, sender, cool_down: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.sender = sender
        self.cool_down = cool_down
        self._clock = clock

        self.last_sent: Optional[float] = None
        self._sending = False

        self.stats = {
            "wake_requests": 0,
            "packets_sent": 0,
            "send_failures": 0,
            "suppressed": 0
        }

    def is_active(self) -> bool:
        """True while a wake packet sent within the cool-down window is outstanding."""
        if self.last_sent is None:
            return False
        return self._clock() - self.last_sent < self.cool_down

    def seconds_until_ready(self) -> float:
        if not self.is_active():
            return 0.0
        return max(0.0, self.cool_down - (self._clock() - self.last_sent))

    async def send_if_needed(self, hardware_address: str) -> bool:
        """Transmit a wake packet unless one is active or already being sent.

        Returns whether a packet was actually transmitted. A failed
        transmission leaves the cool-down untouched so the next request
        tries again.
        """
        self.stats["wake_requests"] += 1

        if self.is_active() or self._sending:
            self.stats["suppressed"] += 1
            logger.debug(f"Wake for {hardware_address} suppressed "
                         f"({self.seconds_until_ready():.1f}s of cool-down left)")
            return False

        self._sending = True
        try:
            sent = await self.sender.send(hardware_address)
        except OSError as e:
            logger.warning(f"Wake-on-LAN transmission to {hardware_address} raised: {e}")
            sent = False
        finally:
            self._sending = False

        if not sent:
            self.stats["send_failures"] += 1
            logger.warning(f"Unable to send Wake-on-LAN packet to {hardware_address}")
            return False

        self.last_sent = self._clock()
        self.stats["packets_sent"] += 1
        logger.info(f"Wake-on-LAN packet sent to {hardware_address}, "
                    f"next one allowed in {self.cool_down:.0f}s")
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "active": self.is_active(),
            "cool_down": self.cool_down,
            "seconds_until_ready": self.seconds_until_ready()
        }
