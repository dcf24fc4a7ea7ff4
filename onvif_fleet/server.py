# server.py
# Brings up a fleet of virtual ONVIF cameras from a fleet file: one device
# façade and its stream proxies per camera, registered with a shared
# WS-Discovery responder.

import argparse
import asyncio
import logging
import os
import signal
import sys

from . import __version__
from .config import ConfigError, load_fleet, resolve_hostname
from .device import OnvifDevice
from .discovery import (DEFAULT_PACING_DELAY, DISCOVERY_MODES, MODE_PACED,
                        MODE_SINGLE, MULTICAST_PORT, WSDiscoveryHandler)
from .proxy import StreamProxy
from .registry import CameraRegistration, CameraRegistry
from .ws_security import WSSecurityAuth

logger = logging.getLogger(__name__)


class CameraStartError(RuntimeError):
    def __init__(self, name, reason):
        super().__init__(f"{name}: {reason}")
        self.name = name
        self.reason = reason


class DiscoveryError(RuntimeError):
    """The shared discovery listener could not be bound."""


class VirtualCamera:
    """One virtual camera: its ONVIF façade plus its RTSP/snapshot proxies.

    Registration with the discovery registry is tied to this object's
    lifetime: start() registers, stop() unregisters.
    """

    def __init__(self, config, auth=None, debug=False):
        self.config = config
        self.device = OnvifDevice(config, auth=auth, debug=debug)
        self.proxies = []
        self.registry = None

        target = config.target
        if config.rtsp_port is not None and target.rtsp_port:
            self.proxies.append(StreamProxy(f"{config.name} rtsp", config.hostname, config.rtsp_port,
                                            target.hostname, target.rtsp_port))
        if config.snapshot_port is not None and target.snapshot_port:
            self.proxies.append(StreamProxy(f"{config.name} snapshot", config.hostname, config.snapshot_port,
                                            target.hostname, target.snapshot_port))

    @property
    def name(self):
        return self.config.name

    def registration(self):
        config = self.config
        return CameraRegistration(uuid=config.uuid, name=config.name, hostname=config.hostname,
                                  port=config.server_port, mac=config.mac)

    async def start(self, registry=None):
        config = self.config
        logger.info(f"Starting virtual onvif server for {config.name} on {config.hostname}:{config.server_port} ...")
        try:
            await self.device.start()
        except OSError as e:
            raise CameraStartError(config.name, f"cannot listen on {config.hostname}:{config.server_port}: {e}")

        if registry is not None:
            registry.register(self.registration())
            self.registry = registry
            logger.debug(f"Registered camera {config.name} with discovery service")

        for proxy in self.proxies:
            try:
                await proxy.start()
            except OSError as e:
                await self.stop()
                raise CameraStartError(config.name, f"cannot listen on {proxy.listen_host}:{proxy.listen_port}: {e}")
        logger.info(f"[{config.name}] Started!")

    def unregister(self):
        if self.registry is not None:
            self.registry.unregister(self.config.uuid)
            self.registry = None
            logger.debug(f"Unregistered camera {self.config.name} from discovery service")

    async def stop(self):
        self.unregister()
        for proxy in self.proxies:
            await proxy.stop()
        await self.device.stop()


class FleetServer:
    """Starts and stops every camera of a fleet plus the discovery responder(s)."""

    def __init__(self, cameras, discovery=True, discovery_mode=MODE_PACED, discovery_delay=DEFAULT_PACING_DELAY,
                 discovery_interface=None, discovery_port=MULTICAST_PORT, auth=None, debug=False):
        self.configs = list(cameras)
        self.discovery = discovery
        self.discovery_mode = discovery_mode
        self.discovery_delay = discovery_delay
        self.discovery_interface = discovery_interface
        self.discovery_port = discovery_port
        self.auth = auth
        self.debug = debug
        self.registry = CameraRegistry()
        self.responders = []
        self.cameras = []
        self.failures = {}

    def _responder(self, camera_uuid=None):
        return WSDiscoveryHandler(self.registry, mode=self.discovery_mode, delay=self.discovery_delay,
                                  interface=self.discovery_interface, port=self.discovery_port,
                                  camera_uuid=camera_uuid)

    async def start(self):
        """Start discovery and every camera; returns (succeeded, failed) counts.

        Raises DiscoveryError if the shared discovery socket cannot be bound.
        """
        if self.discovery and self.discovery_mode != MODE_SINGLE:
            responder = self._responder()
            logger.info("Starting master discovery service...")
            try:
                await responder.start()
            except OSError as e:
                raise DiscoveryError(f"cannot bind discovery port {self.discovery_port}: {e}")
            self.responders.append(responder)
        elif not self.discovery:
            logger.info("Discovery service disabled")

        for config in self.configs:
            try:
                camera = await self._start_camera(config)
            except CameraStartError as e:
                logger.error(f"Failed to start {e.name}: {e.reason}")
                self.failures[config.name] = e.reason
                continue
            self.cameras.append(camera)

        self._log_summary()
        return len(self.cameras), len(self.failures)

    async def _start_camera(self, config):
        hostname = resolve_hostname(config)
        if not hostname:
            raise CameraStartError(config.name, f"failed to find IP address for MAC address {config.mac}")
        config = config.with_hostname(hostname)

        camera = VirtualCamera(config, auth=self.auth, debug=self.debug)
        await camera.start(self.registry if self.discovery else None)

        if self.discovery and self.discovery_mode == MODE_SINGLE:
            responder = self._responder(camera_uuid=config.uuid)
            try:
                await responder.start()
            except OSError as e:
                await camera.stop()
                raise CameraStartError(config.name, f"cannot start discovery: {e}")
            self.responders.append(responder)
        return camera

    def _log_summary(self):
        for index, camera in enumerate(self.cameras, 1):
            config = camera.config
            logger.info(f"{index:<4}{config.name:<30}{config.hostname + ':' + str(config.server_port):<22}"
                        f"{camera.device.device_xaddr}")
        logger.info(f"Successfully started {len(self.cameras)} cameras")
        if self.failures:
            logger.error(f"Failed to start {len(self.failures)} cameras")

    async def stop(self):
        logger.info("Shutting down...")
        for camera in self.cameras:
            camera.unregister()
        for camera in self.cameras:
            await camera.stop()
        self.cameras = []
        for responder in self.responders:
            await responder.stop()
        self.responders = []


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Virtual ONVIF camera fleet")
    parser.add_argument('-v', '--version', action='store_true', help='show the version information')
    parser.add_argument('-d', '--debug', action='store_true', default=bool(os.environ.get('ONVIF_DEBUG')),
                        help='show onvif requests')
    parser.add_argument('--no-discovery', action='store_true', help='start servers without discovery service')
    parser.add_argument('--discovery-mode', choices=DISCOVERY_MODES,
                        default=os.environ.get('DISCOVERY_MODE', MODE_PACED),
                        help='how probe responses are built and sent')
    parser.add_argument('--discovery-delay', type=float,
                        default=float(os.environ.get('DISCOVERY_DELAY', DEFAULT_PACING_DELAY)),
                        help='seconds between paced discovery responses')
    parser.add_argument('--discovery-interface', default=os.environ.get('DISCOVERY_INTERFACE'),
                        help='IPv4 address of the interface to join the multicast group on')
    parser.add_argument('--username', default=os.environ.get('ONVIF_USERNAME'),
                        help='enable WS-Security with this username')
    parser.add_argument('--password', default=os.environ.get('ONVIF_PASSWORD'),
                        help='WS-Security password')
    parser.add_argument('config', nargs='?', default=os.environ.get('ONVIF_CONFIG'),
                        help='config filename to use')
    return parser.parse_args(argv)


async def run(server):
    """Run a FleetServer until SIGINT/SIGTERM; returns the process exit code."""
    try:
        await server.start()
    except DiscoveryError as e:
        logger.error(str(e))
        await server.stop()
        return 1

    if not server.cameras:
        logger.error("No camera could be started")
        await server.stop()
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {signum.name}")

    try:
        await stop_event.wait()
    finally:
        await server.stop()
    return 0


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    if args.version:
        print(f"Version: {__version__}")
        return 0
    if not args.config:
        logger.error("Please specify a config filename!")
        return 1

    try:
        cameras = load_fleet(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    auth = None
    if args.username and args.password:
        auth = WSSecurityAuth(args.username, args.password)
        logger.info("WS-Security authentication enabled")

    server = FleetServer(cameras, discovery=not args.no_discovery, discovery_mode=args.discovery_mode,
                         discovery_delay=args.discovery_delay, discovery_interface=args.discovery_interface,
                         auth=auth, debug=args.debug)
    try:
        return asyncio.run(run(server))
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0


if __name__ == '__main__':
    sys.exit(main())
