"""Registry of participants currently connected to a relay server."""
from __future__ import annotations

import dataclasses
import datetime
import logging
import threading
import uuid
from typing import Callable
from typing import Generic
from typing import TypeVar

logger = logging.getLogger(__name__)

ConnectionT = TypeVar('ConnectionT')


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


def _uuid_identifier() -> str:
    return str(uuid.uuid4())


@dataclasses.dataclass(frozen=True, eq=False)
class ConnectionRecord(Generic[ConnectionT]):
    """A live participant connection.

    Attributes:
        id: Identifier assigned to the participant.
        connection: Transport used to deliver messages to the participant.
        connected_at: Time the participant connected at.
    """

    id: str
    connection: ConnectionT
    connected_at: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    def __repr__(self) -> str:
        connected_at = self.connected_at.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = getattr(self.connection, 'remote_address', None)
        return (
            f'{self.__class__.__name__}(id={self.id}, address={address}, '
            f'connected_at={connected_at})'
        )


class ConnectionRegistry(Generic[ConnectionT]):
    """Authoritative mapping of participant identifiers to connections.

    The registry is the only state shared between the handlers of all
    connections so every operation takes the same lock. Operations are O(1)
    and never block while holding it.

    Args:
        id_factory: Zero argument callable returning a candidate identifier.
            Candidates already in use by a live connection are discarded.
            Defaults to random UUID strings.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._id_factory = (
            _uuid_identifier if id_factory is None else id_factory
        )
        self._lock = threading.Lock()
        self._records: dict[str, ConnectionRecord[ConnectionT]] = {}

    def __contains__(self, participant_id: object) -> bool:
        return isinstance(participant_id, str) and self.is_live(
            participant_id,
        )

    def __len__(self) -> int:
        return self.count()

    def register(self, connection: ConnectionT) -> str:
        """Register a new connection.

        Args:
            connection: Transport of the newly connected participant.

        Returns:
            Fresh identifier not used by any other live connection.
        """
        with self._lock:
            participant_id = self._id_factory()
            while participant_id in self._records:
                participant_id = self._id_factory()
            self._records[participant_id] = ConnectionRecord(
                id=participant_id,
                connection=connection,
            )
        return participant_id

    def unregister(self, participant_id: str) -> bool:
        """Remove a connection.

        Unregistering an identifier that is not registered is a no-op so
        duplicate disconnect signals are harmless.

        Returns:
            If a record was removed.
        """
        with self._lock:
            return self._records.pop(participant_id, None) is not None

    def is_live(self, participant_id: str) -> bool:
        """Check if a participant is currently connected."""
        with self._lock:
            return participant_id in self._records

    def get(self, participant_id: str) -> ConnectionRecord[ConnectionT] | None:
        """Get the record of a live participant."""
        with self._lock:
            return self._records.get(participant_id, None)

    def records(self) -> list[ConnectionRecord[ConnectionT]]:
        """Get a snapshot of all live records."""
        with self._lock:
            return list(self._records.values())

    def count(self) -> int:
        """Number of live connections."""
        with self._lock:
            return len(self._records)
