# config.py
# Fleet configuration records. A fleet file is a YAML document with a single
# top-level list `onvif`; each entry describes one virtual camera and the
# recorder channel behind it.

import logging
from dataclasses import dataclass, replace
from typing import List, Optional

import netifaces
import yaml

logger = logging.getLogger(__name__)

CHANNEL_PLACEHOLDER = '{channel}'


class ConfigError(ValueError):
    """Raised when a fleet file or a camera record is unusable."""


@dataclass(frozen=True)
class QualityConfig:
    rtsp: str
    width: int
    height: int
    framerate: int
    bitrate: int
    quality: float
    snapshot: Optional[str] = None


@dataclass(frozen=True)
class TargetConfig:
    hostname: str
    rtsp_port: Optional[int] = None
    snapshot_port: Optional[int] = None


@dataclass(frozen=True)
class CameraConfig:
    name: str
    mac: str
    uuid: str
    channel: int
    server_port: int
    high_quality: QualityConfig
    target: TargetConfig
    rtsp_port: Optional[int] = None
    snapshot_port: Optional[int] = None
    low_quality: Optional[QualityConfig] = None
    hostname: Optional[str] = None

    def with_hostname(self, hostname):
        """Return a copy bound to a resolved IP address."""
        return replace(self, hostname=hostname)

    def path(self, template):
        return template.replace(CHANNEL_PLACEHOLDER, str(self.channel))


def _require(record, key, label):
    if key not in record or record[key] is None:
        raise ConfigError(f"{label}: missing required field '{key}'")
    return record[key]


def _port(value, label, field):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{label}: '{field}' must be an integer port, got {value!r}")
    if not 0 <= value <= 65535:
        raise ConfigError(f"{label}: '{field}' out of range: {value}")
    return value


def _quality(record, label):
    if not isinstance(record, dict):
        raise ConfigError(f"{label}: expected a mapping")
    try:
        return QualityConfig(
            rtsp=str(_require(record, 'rtsp', label)),
            width=int(_require(record, 'width', label)),
            height=int(_require(record, 'height', label)),
            framerate=int(_require(record, 'framerate', label)),
            bitrate=int(record.get('bitrate', 0)),
            quality=float(record.get('quality', 4)),
            snapshot=record.get('snapshot') or None,
        )
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"{label}: {e}")


def parse_camera(record, index=0):
    """Build a CameraConfig from one `onvif` list entry.

    `index` is the zero-based position in the fleet and supplies the channel
    number when the record does not carry an explicit `channel`.
    """
    if not isinstance(record, dict):
        raise ConfigError(f"camera #{index + 1}: expected a mapping")
    label = f"camera {record.get('name') or '#' + str(index + 1)}"

    ports = _require(record, 'ports', label)
    target = _require(record, 'target', label)
    if not isinstance(ports, dict) or not isinstance(target, dict):
        raise ConfigError(f"{label}: 'ports' and 'target' must be mappings")
    target_ports = target.get('ports') or {}

    channel = record.get('channel', index + 1)
    try:
        channel = int(channel)
    except (TypeError, ValueError):
        raise ConfigError(f"{label}: 'channel' must be an integer, got {channel!r}")

    low = record.get('lowQuality')
    return CameraConfig(
        name=str(_require(record, 'name', label)),
        mac=str(_require(record, 'mac', label)),
        uuid=str(_require(record, 'uuid', label)),
        channel=channel,
        server_port=_port(_require(ports, 'server', label), label, 'ports.server'),
        rtsp_port=_port(ports.get('rtsp'), label, 'ports.rtsp'),
        snapshot_port=_port(ports.get('snapshot'), label, 'ports.snapshot'),
        high_quality=_quality(_require(record, 'highQuality', label), f"{label} highQuality"),
        low_quality=_quality(low, f"{label} lowQuality") if low else None,
        target=TargetConfig(
            hostname=str(_require(target, 'hostname', f"{label} target")),
            rtsp_port=_port(target_ports.get('rtsp'), label, 'target.ports.rtsp'),
            snapshot_port=_port(target_ports.get('snapshot'), label, 'target.ports.snapshot'),
        ),
        hostname=record.get('hostname') or None,
    )


def parse_fleet(document) -> List[CameraConfig]:
    """Turn an in-memory fleet document into camera records."""
    if not isinstance(document, dict) or not isinstance(document.get('onvif'), list):
        raise ConfigError("fleet configuration must contain a top-level 'onvif' list")

    cameras = [parse_camera(record, index) for index, record in enumerate(document['onvif'])]

    seen = {}
    for camera in cameras:
        if camera.uuid in seen:
            raise ConfigError(f"duplicate uuid {camera.uuid} on cameras {seen[camera.uuid]} and {camera.name}")
        seen[camera.uuid] = camera.name
    return cameras


def load_fleet(path) -> List[CameraConfig]:
    """Read and validate a YAML fleet file."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"File not found: {path}")
    except OSError as e:
        raise ConfigError(f"Failed to read config {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to read config, invalid yaml syntax: {e}")

    cameras = parse_fleet(document)
    logger.info(f"Loaded {len(cameras)} camera(s) from {path}")
    return cameras


def get_ip_address_from_mac(mac_address):
    """Return the first IPv4 address of the interface owning `mac_address`."""
    wanted = mac_address.lower()
    for iface in netifaces.interfaces():
        addrs = netifaces.ifaddresses(iface)
        link = addrs.get(netifaces.AF_LINK)
        if not link or (link[0].get('addr') or '').lower() != wanted:
            continue
        inet = addrs.get(netifaces.AF_INET)
        if inet and inet[0].get('addr'):
            return inet[0]['addr']
    return None


def resolve_hostname(camera: CameraConfig) -> Optional[str]:
    if camera.hostname:
        return camera.hostname
    return get_ip_address_from_mac(camera.mac)
