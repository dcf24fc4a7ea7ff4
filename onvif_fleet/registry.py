# registry.py
# Cameras currently advertised through WS-Discovery. Owned by the
# orchestrator and handed to the discovery responder; façade lifecycles add
# and remove their own entries.

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class CameraRegistration:
    uuid: str
    name: str
    hostname: str
    port: int
    mac: str
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def xaddr(self):
        return f"http://{self.hostname}:{self.port}/onvif/device_service"


class CameraRegistry:
    """Thread-safe uuid -> CameraRegistration map.

    The lock is only held for the duration of a single insert, remove or
    snapshot copy, never across network I/O.
    """

    def __init__(self):
        self._cameras = {}
        self._lock = threading.Lock()

    def register(self, registration):
        with self._lock:
            self._cameras[registration.uuid] = registration

    def unregister(self, uuid):
        with self._lock:
            return self._cameras.pop(uuid, None) is not None

    def get(self, uuid):
        with self._lock:
            return self._cameras.get(uuid)

    def all(self):
        """Snapshot of every registration, in registration order."""
        with self._lock:
            return list(self._cameras.values())

    def clear(self):
        with self._lock:
            self._cameras.clear()

    def __len__(self):
        with self._lock:
            return len(self._cameras)

    def __contains__(self, uuid):
        with self._lock:
            return uuid in self._cameras
