# Device registry: the single source of truth for which devices exist and where
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..models.device import (
    DeviceAddress,
    DeviceLimits,
    DeviceRecord,
    DeviceState,
    Health,
    Observation,
)
from ..utils.exceptions import DeviceNotFoundError
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class UpsertResult:
    record: DeviceRecord
    created: bool
    previous_address: Optional[DeviceAddress] = None
    previous_health: Optional[Health] = None

    @property
    def address_changed(self) -> bool:
        return self.previous_address is not None


class DeviceRegistry:
    """
    Owns the device records.

    Every mutation takes the registry lock, so each call is atomic with
    respect to the record it touches; readers get deep copies and never see
    a half-applied update. Records are keyed by id and an id is never
    reassigned, only removed by ``expire``.
    """

    def __init__(self, default_limits: Optional[DeviceLimits] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self._records: Dict[str, DeviceRecord] = {}
        self._lock = threading.Lock()
        self._default_limits = default_limits or DeviceLimits()
        self._clock = clock

    def upsert(self, observation: Observation) -> UpsertResult:
        now = self._clock()
        with self._lock:
            record = self._records.get(observation.id)
            if record is None:
                record = DeviceRecord(
                    id=observation.id,
                    name=observation.name,
                    address=observation.address,
                    state=observation.advertised_state,
                    limits=observation.limits or self._default_limits,
                    health=Health.UNKNOWN,
                    first_seen=now,
                    last_seen=now,
                )
                self._records[record.id] = record
                logger.info(f"New device {record.id} at {record.address}")
                return UpsertResult(record=record.model_copy(deep=True), created=True)

            previous_address = None
            if record.address != observation.address:
                previous_address = record.address
                # Commands already routed to the old address are left to fail on their own
                logger.info(
                    f"Device {record.id} moved from {record.address} to {observation.address}"
                )
                record.address = observation.address

            previous_health = record.health
            record.health = Health.REACHABLE
            record.last_seen = now
            if observation.name:
                record.name = observation.name
            if observation.limits:
                record.limits = observation.limits
            if observation.advertised_state:
                record.state = observation.advertised_state

            return UpsertResult(
                record=record.model_copy(deep=True),
                created=False,
                previous_address=previous_address,
                previous_health=previous_health,
            )

    def get(self, device_id: str) -> DeviceRecord:
        with self._lock:
            record = self._records.get(device_id)
            if record is None:
                raise DeviceNotFoundError(device_id)
            return record.model_copy(deep=True)

    def list(self) -> List[DeviceRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def __contains__(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def mark_reachable(self, device_id: str, state: Optional[DeviceState] = None) -> Health:
        """Record a successful round-trip. Returns the health before the update."""
        with self._lock:
            record = self._require(device_id)
            previous = record.health
            record.health = Health.REACHABLE
            record.last_seen = self._clock()
            if state is not None:
                record.state = state
            return previous

    def mark_unreachable(self, device_id: str) -> Health:
        """Returns the health before the update."""
        with self._lock:
            record = self._require(device_id)
            previous = record.health
            record.health = Health.UNREACHABLE
            return previous

    def expire(self, device_id: str, older_than: float = 0.0) -> bool:
        """
        Remove a record whose ``last_seen`` is at least ``older_than`` seconds old.

        Returns True when the record was removed, False when it is still fresh.
        Raises DeviceNotFoundError for an unknown id.
        """
        cutoff = self._clock() - timedelta(seconds=older_than)
        with self._lock:
            record = self._require(device_id)
            if record.last_seen > cutoff:
                return False
            del self._records[device_id]
        logger.info(f"Expired device {device_id} (last seen {record.last_seen.isoformat()})")
        return True

    def expire_stale(self, older_than: float) -> List[str]:
        """Remove every record not seen for ``older_than`` seconds"""
        cutoff = self._clock() - timedelta(seconds=older_than)
        with self._lock:
            stale = [device_id for device_id, record in self._records.items()
                     if record.last_seen <= cutoff]
            for device_id in stale:
                del self._records[device_id]
        for device_id in stale:
            logger.info(f"Expired stale device {device_id}")
        return stale

    def _require(self, device_id: str) -> DeviceRecord:
        record = self._records.get(device_id)
        if record is None:
            raise DeviceNotFoundError(device_id)
        return record
