"""
Idempotency guard over Redis markers.

A dedup key moves none -> in_flight (short TTL) -> done (long TTL) on success, or
back to none on release. Only the caller that got ADMITTED may run side effects;
everybody else treats the delivery as already handled.

The in_flight marker carries a per-admission token, and release only deletes the
marker while it still holds that token. A holder that outlived the in_flight TTL
cannot drop the marker of whoever was admitted after it.
"""
import enum
import logging
import uuid
from typing import Dict, Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

IN_FLIGHT = "in_flight"
DONE = "done"

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class Admission(str, enum.Enum):
    ADMITTED = "admitted"
    IN_FLIGHT = "in_flight"
    DONE = "done"

    @property
    def is_short_circuit(self) -> bool:
        return self is not Admission.ADMITTED


class IdempotencyGuard:
    def __init__(
        self,
        client: redis.Redis,
        in_flight_ttl: Optional[int] = None,
        done_ttl: Optional[int] = None,
        prefix: str = "idempotency:",
    ):
        self.client = client
        self.in_flight_ttl = in_flight_ttl or settings.IDEMPOTENCY_IN_FLIGHT_TTL_SECONDS
        self.done_ttl = done_ttl or settings.IDEMPOTENCY_DONE_TTL_SECONDS
        self.prefix = prefix
        self._tokens: Dict[str, str] = {}

    def _key(self, dedup_key: str) -> str:
        return f"{self.prefix}{dedup_key}"

    def admit(self, dedup_key: str) -> Admission:
        key = self._key(dedup_key)
        for _ in range(2):
            marker = f"{IN_FLIGHT}:{uuid.uuid4().hex}"
            if self.client.set(key, marker, nx=True, ex=self.in_flight_ttl):
                self._tokens[dedup_key] = marker
                return Admission.ADMITTED
            current = self.client.get(key)
            if isinstance(current, bytes):
                current = current.decode()
            if current == DONE:
                logger.info(f"Idempotency: {dedup_key} already processed")
                return Admission.DONE
            if current is not None and current.startswith(IN_FLIGHT):
                logger.info(f"Idempotency: {dedup_key} is being processed by another worker")
                return Admission.IN_FLIGHT
            # Marker expired between SET NX and GET; try once more
        return Admission.IN_FLIGHT

    def complete(self, dedup_key: str, ttl: Optional[int] = None) -> None:
        self._tokens.pop(dedup_key, None)
        self.client.set(self._key(dedup_key), DONE, ex=ttl or self.done_ttl)

    def release(self, dedup_key: str) -> bool:
        """Drop our in_flight marker so a redelivery can be admitted again."""
        marker = self._tokens.pop(dedup_key, None)
        if marker is None:
            logger.warning(f"Idempotency: release of {dedup_key} without admission ignored")
            return False
        released = bool(self.client.eval(RELEASE_SCRIPT, 1, self._key(dedup_key), marker))
        if released:
            logger.info(f"Idempotency: released {dedup_key}")
        else:
            logger.warning(f"Idempotency: {dedup_key} marker no longer ours; left in place")
        return released
