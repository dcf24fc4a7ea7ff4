# discovery.py
# WS-Discovery (2005/04) Probe/ProbeMatch responder for a fleet of virtual
# cameras. One UDP socket joined to 239.255.255.250:3702 answers probes for
# the cameras in a CameraRegistry using one of three strategies:
#
#   single - answer with one ProbeMatch for a single camera
#   multi  - one envelope holding a ProbeMatch per registered camera, split
#            only when it would not fit in a single datagram
#   paced  - one envelope per camera, spaced `delay` seconds apart and sent
#            from the camera's own IP where it can be bound

import asyncio
import itertools
import logging
import socket
import struct
import time
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

from .soap import (ONVIF_NETWORK, SOAP_ENV, WS_ADDRESSING, WS_DISCOVERY,
                   find_child, local_name, onvif_scopes, xml_text)

logger = logging.getLogger(__name__)

# WS-Discovery multicast settings
MULTICAST_GROUP = '239.255.255.250'
MULTICAST_PORT = 3702

MODE_SINGLE = 'single'
MODE_MULTI = 'multi'
MODE_PACED = 'paced'
DISCOVERY_MODES = (MODE_SINGLE, MODE_MULTI, MODE_PACED)

DEFAULT_PACING_DELAY = 0.2
PROBE_TTL = 30.0
# largest IPv4 UDP payload
MAX_DATAGRAM_SIZE = 65507
NETWORK_VIDEO_TRANSMITTER = 'NetworkVideoTransmitter'
PROBE_MATCHES_ACTION = f"{WS_DISCOVERY}/ProbeMatches"
ANONYMOUS_ROLE = f"{WS_ADDRESSING}/role/anonymous"


@dataclass(frozen=True)
class Probe:
    message_id: str
    types: str

    @property
    def short_id(self):
        return self.message_id[-8:]

    def wants_video_transmitter(self):
        """True when Types is absent/empty or lists NetworkVideoTransmitter."""
        tokens = self.types.split()
        if not tokens:
            return True
        return any(token.rsplit(':', 1)[-1] == NETWORK_VIDEO_TRANSMITTER for token in tokens)


def parse_probe(data) -> Optional[Probe]:
    """Return the Probe carried by a datagram, or None for anything else."""
    try:
        root = ET.fromstring(data)
    except (ET.ParseError, ValueError, LookupError):
        return None
    if local_name(root.tag) != 'Envelope':
        return None

    probe = find_child(find_child(root, 'Body'), 'Probe')
    if probe is None:
        return None
    message_id = find_child(find_child(root, 'Header'), 'MessageID')
    if message_id is None or not (message_id.text or '').strip():
        return None
    types = find_child(probe, 'Types')
    return Probe(message_id.text.strip(), (types.text or '').strip() if types is not None else '')


class ProbeTracker:
    """MessageID -> probe bookkeeping for log output, evicted by age."""

    def __init__(self, ttl=PROBE_TTL, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._probes = {}

    def record(self, probe, sender):
        """Track a probe; returns True if the MessageID was already seen."""
        now = self.clock()
        self.evict(now)
        entry = self._probes.get(probe.message_id)
        if entry is not None:
            entry['count'] += 1
            return True
        self._probes[probe.message_id] = {'sender': sender, 'time': now, 'count': 1, 'responses': 0}
        return False

    def add_responses(self, message_id, count):
        entry = self._probes.get(message_id)
        if entry is not None:
            entry['responses'] += count

    def responses(self, message_id):
        entry = self._probes.get(message_id)
        return entry['responses'] if entry else 0

    def evict(self, now=None):
        now = self.clock() if now is None else now
        for message_id in [m for m, e in self._probes.items() if now - e['time'] > self.ttl]:
            del self._probes[message_id]

    def __len__(self):
        return len(self._probes)

    def __contains__(self, message_id):
        return message_id in self._probes


def create_probe_match(camera):
    """ProbeMatch element for one CameraRegistration"""
    scopes = ' '.join(xml_text(scope) for scope in onvif_scopes(camera.name, camera.port))
    return (f'<wsdd:ProbeMatch>'
            f'<wsa:EndpointReference><wsa:Address>urn:uuid:{xml_text(camera.uuid)}</wsa:Address></wsa:EndpointReference>'
            f'<wsdd:Types>tdn:{NETWORK_VIDEO_TRANSMITTER}</wsdd:Types>'
            f'<wsdd:Scopes>{scopes}</wsdd:Scopes>'
            f'<wsdd:XAddrs>{xml_text(camera.xaddr)}</wsdd:XAddrs>'
            f'<wsdd:MetadataVersion>1</wsdd:MetadataVersion>'
            f'</wsdd:ProbeMatch>')


def create_probe_matches(probe_matches, relates_to, message_number, instance_id):
    """Create a WS-Discovery ProbeMatches response"""
    return (f'<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<SOAP-ENV:Envelope xmlns:SOAP-ENV="{SOAP_ENV}" xmlns:wsa="{WS_ADDRESSING}" '
            f'xmlns:wsdd="{WS_DISCOVERY}" xmlns:tdn="{ONVIF_NETWORK}">'
            f'<SOAP-ENV:Header>'
            f'<wsa:MessageID>uuid:{uuid.uuid4()}</wsa:MessageID>'
            f'<wsa:RelatesTo>{xml_text(relates_to)}</wsa:RelatesTo>'
            f'<wsa:To SOAP-ENV:mustUnderstand="true">{ANONYMOUS_ROLE}</wsa:To>'
            f'<wsa:Action SOAP-ENV:mustUnderstand="true">{PROBE_MATCHES_ACTION}</wsa:Action>'
            f'<wsdd:AppSequence SOAP-ENV:mustUnderstand="true" MessageNumber="{message_number}" '
            f'InstanceId="{instance_id}"/>'
            f'</SOAP-ENV:Header>'
            f'<SOAP-ENV:Body><wsdd:ProbeMatches>{"".join(probe_matches)}</wsdd:ProbeMatches></SOAP-ENV:Body>'
            f'</SOAP-ENV:Envelope>')


class WSDiscoveryHandler:
    """Handles WS-Discovery multicast probe requests"""

    def __init__(self, registry, mode=MODE_PACED, delay=DEFAULT_PACING_DELAY,
                 interface=None, port=MULTICAST_PORT, camera_uuid=None):
        if mode not in DISCOVERY_MODES:
            raise ValueError(f"unknown discovery mode {mode!r}")
        self.registry = registry
        self.mode = mode
        self.delay = delay
        self.interface = interface
        self.port = port
        self.max_datagram = MAX_DATAGRAM_SIZE
        self.camera_uuid = camera_uuid
        self.listen_socket = None
        self.response_socket = None
        self.running = False
        self.membership = None
        self.tracker = ProbeTracker()
        self.instance_id = int(time.time())
        self._message_numbers = itertools.count()
        self._listen_task = None
        self._responses = set()

    @property
    def label(self):
        return f"discovery[{self.mode}{':' + self.camera_uuid if self.camera_uuid else ''}]"

    @property
    def bound_port(self):
        if self.listen_socket is None:
            return None
        return self.listen_socket.getsockname()[1]

    async def start(self):
        """Start the WS-Discovery multicast listener.

        A bind failure is raised to the caller; failing to join the multicast
        group only degrades the responder to unicast probes.
        """
        self.listen_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            self.listen_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, 'SO_REUSEPORT'):
                self.listen_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            logger.info(f"{self.label}: binding listen socket to 0.0.0.0:{self.port}")
            self.listen_socket.bind(('0.0.0.0', self.port))
        except OSError:
            self.listen_socket.close()
            self.listen_socket = None
            raise

        membership = struct.pack('4s4s', socket.inet_aton(MULTICAST_GROUP),
                                 socket.inet_aton(self.interface or '0.0.0.0'))
        try:
            self.listen_socket.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            self.membership = membership
            logger.info(f"{self.label}: joined multicast group {MULTICAST_GROUP} "
                        f"on {self.interface or 'all interfaces'}")
        except OSError as e:
            logger.warning(f"{self.label}: could not join multicast group {MULTICAST_GROUP}: {e}; "
                           f"only unicast probes will be answered")

        self.listen_socket.setblocking(False)

        self.response_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.response_socket.setblocking(False)
        if self.interface:
            try:
                self.response_socket.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF,
                                                socket.inet_aton(self.interface))
            except OSError as e:
                logger.warning(f"{self.label}: could not select interface {self.interface}: {e}")

        self.running = True
        self._listen_task = asyncio.create_task(self._listen_loop())
        logger.info(f"{self.label}: WS-Discovery listener started on port {self.bound_port}")

    async def _listen_loop(self):
        """Listen for multicast probe requests"""
        loop = asyncio.get_running_loop()
        while self.running:
            try:
                data, addr = await loop.sock_recvfrom(self.listen_socket, 65535)
            except asyncio.CancelledError:
                raise
            except OSError as e:
                if not self.running:
                    break
                logger.error(f"{self.label}: socket error in WS-Discovery listener: {e}")
                await asyncio.sleep(0.1)
                continue
            try:
                self.handle_datagram(data, addr)
            except Exception as e:
                logger.debug(f"{self.label}: error handling datagram from {addr[0]}:{addr[1]}: {e}")

    def handle_datagram(self, data, addr):
        """Answer one inbound datagram. Anything but a matching Probe is ignored."""
        probe = parse_probe(data)
        if probe is None:
            logger.debug(f"{self.label}: ignoring {len(data)} byte datagram from {addr[0]}:{addr[1]}")
            return None
        if not probe.wants_video_transmitter():
            logger.debug(f"{self.label}: ignoring probe for types {probe.types!r} from {addr[0]}")
            return None

        cameras = self._matching_cameras()
        if not cameras:
            logger.debug(f"{self.label}: no cameras registered, not answering probe ...{probe.short_id}")
            return None

        if self.tracker.record(probe, addr):
            logger.debug(f"{self.label}: retransmitted probe ...{probe.short_id} from {addr[0]}")
        logger.info(f"{self.label}: probe ...{probe.short_id} from {addr[0]}:{addr[1]}, "
                    f"answering for {len(cameras)} camera(s)")

        task = asyncio.get_running_loop().create_task(
            self._respond(probe, addr, cameras, asyncio.get_running_loop().time()))
        self._responses.add(task)
        task.add_done_callback(self._responses.discard)
        return task

    def _matching_cameras(self):
        cameras = self.registry.all()
        if self.mode != MODE_SINGLE:
            return cameras
        if self.camera_uuid is not None:
            return [camera for camera in cameras if camera.uuid == self.camera_uuid]
        return cameras[:1]

    async def _respond(self, probe, addr, cameras, received_at):
        if self.mode == MODE_MULTI:
            batches = self._batch_matches([create_probe_match(camera) for camera in cameras], probe)
            if len(batches) > 1:
                logger.warning(f"{self.label}: ProbeMatches for {len(cameras)} cameras exceeds "
                               f"{self.max_datagram} bytes, splitting into {len(batches)} envelopes")
            for batch in batches:
                self._send(self._envelope(batch, probe), addr)
                self.tracker.add_responses(probe.message_id, 1)
            return

        loop = asyncio.get_running_loop()
        for index, camera in enumerate(cameras):
            if self.mode == MODE_PACED and index:
                wait = received_at + index * self.delay - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)
            envelope = self._envelope([create_probe_match(camera)], probe)
            self._send(envelope, addr, source_host=camera.hostname, camera_name=camera.name)
            self.tracker.add_responses(probe.message_id, 1)

    def _batch_matches(self, probe_matches, probe):
        """Group ProbeMatch elements so each envelope fits in one UDP datagram."""
        # room for the envelope itself plus the widest MessageNumber
        overhead = len(create_probe_matches([], probe.message_id, 0, self.instance_id).encode('utf-8')) + 20
        batches, batch, size = [], [], overhead
        for match in probe_matches:
            length = len(match.encode('utf-8'))
            if batch and size + length > self.max_datagram:
                batches.append(batch)
                batch, size = [], overhead
            batch.append(match)
            size += length
        if batch:
            batches.append(batch)
        return batches

    def _envelope(self, probe_matches, probe):
        return create_probe_matches(probe_matches, probe.message_id,
                                    next(self._message_numbers), self.instance_id).encode('utf-8')

    def _open_camera_socket(self, host):
        """UDP socket bound to a camera's IP, or None if the host can't be bound."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, 0))
        except OSError as e:
            sock.close()
            logger.warning(f"{self.label}: cannot send from camera address {host}: {e}; "
                           f"using default interface")
            return None
        return sock

    def _send(self, data, addr, source_host=None, camera_name=None):
        sock = self._open_camera_socket(source_host) if source_host else None
        try:
            (sock or self.response_socket).sendto(data, addr)
            logger.debug(f"{self.label}: sent {len(data)} byte ProbeMatches"
                         f"{' for ' + camera_name if camera_name else ''} to {addr[0]}:{addr[1]}")
        except OSError as e:
            logger.error(f"{self.label}: failed to send discovery response to {addr[0]}:{addr[1]}: {e}")
        finally:
            if sock is not None:
                sock.close()

    async def stop(self):
        """Stop the WS-Discovery service"""
        self.running = False
        tasks = [t for t in (self._listen_task, *self._responses) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listen_task = None

        if self.listen_socket is not None:
            if self.membership is not None:
                try:
                    self.listen_socket.setsockopt(socket.IPPROTO_IP, socket.IP_DROP_MEMBERSHIP, self.membership)
                except OSError as e:
                    logger.debug(f"{self.label}: leaving multicast group failed: {e}")
                self.membership = None
            self.listen_socket.close()
            self.listen_socket = None
        if self.response_socket is not None:
            self.response_socket.close()
            self.response_socket = None
        logger.info(f"{self.label}: WS-Discovery listener stopped")
