# device.py
# Per-camera ONVIF device and media services. Every response is derived from
# the camera's own CameraConfig so that each virtual camera reports its own
# addresses and a distinct device identity.

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from aiohttp import web

from .config import CameraConfig, QualityConfig
from .soap import (ONVIF_DEVICE, ONVIF_MEDIA, SoapFault, create_onvif_response,
                   create_soap_fault, create_soap_response, onvif_scopes,
                   parse_soap_request, xml_text)

logger = logging.getLogger(__name__)

DEVICE_SERVICE_PATH = '/onvif/device_service'
MEDIA_SERVICE_PATH = '/onvif/media_service'
SNAPSHOT_PATH = '/snapshot.png'

MAIN_STREAM = 'main_stream'
SUB_STREAM = 'sub_stream'
VIDEO_SOURCE_TOKEN = 'video_src_token'

SNAPSHOT_FILE = os.path.join(os.path.dirname(__file__), 'resources', 'snapshot.png')

# Operations that clients issue before they have credentials (time sync)
UNAUTHENTICATED_OPERATIONS = frozenset({'GetSystemDateAndTime'})


@dataclass(frozen=True)
class Profile:
    token: str
    name: str
    encoder_token: str
    encoder_name: str
    source: QualityConfig
    encoder: QualityConfig


@dataclass(frozen=True)
class DeviceInformation:
    manufacturer: str
    model: str
    firmware_version: str
    serial_number: str
    hardware_id: str


def build_profiles(config: CameraConfig):
    """MainStream from highQuality plus SubStream from lowQuality if present."""
    profiles = [Profile(MAIN_STREAM, 'MainStream', 'encoder_hq_config_token',
                        'CardinalHqCameraConfiguration', config.high_quality, config.high_quality)]
    if config.low_quality:
        profiles.append(Profile(SUB_STREAM, 'SubStream', 'encoder_lq_config_token',
                                'CardinalLqCameraConfiguration', config.high_quality, config.low_quality))
    return tuple(profiles)


def build_device_information(config: CameraConfig):
    unique_id = hashlib.sha256(f"{config.uuid}-{config.mac}".encode('utf-8')).hexdigest()[:6]
    mac = config.mac.replace(':', '').upper()
    return DeviceInformation(
        manufacturer=f"CamVendor{config.channel}",
        model=f"ProCam-{unique_id}",
        firmware_version=f"{config.channel}.0.{unique_id[:2]}",
        serial_number=config.uuid or f"SN-{mac}",
        hardware_id=f"HW-{mac}-{unique_id}",
    )


def _profile_xml(profile, tag='Profiles'):
    source, encoder = profile.source, profile.encoder
    return (
        f'<trt:{tag} fixed="true" token="{profile.token}">'
        f'<tt:Name>{profile.name}</tt:Name>'
        f'<tt:VideoSourceConfiguration token="video_src_config_token">'
        f'<tt:Name>VideoSource</tt:Name><tt:UseCount>2</tt:UseCount>'
        f'<tt:SourceToken>{VIDEO_SOURCE_TOKEN}</tt:SourceToken>'
        f'<tt:Bounds x="0" y="0" width="{source.width}" height="{source.height}"/>'
        f'</tt:VideoSourceConfiguration>'
        f'<tt:VideoEncoderConfiguration token="{profile.encoder_token}">'
        f'<tt:Name>{profile.encoder_name}</tt:Name><tt:UseCount>1</tt:UseCount>'
        f'<tt:Encoding>H264</tt:Encoding>'
        f'<tt:Resolution><tt:Width>{encoder.width}</tt:Width><tt:Height>{encoder.height}</tt:Height></tt:Resolution>'
        f'<tt:Quality>{encoder.quality:g}</tt:Quality>'
        f'<tt:RateControl><tt:FrameRateLimit>{encoder.framerate}</tt:FrameRateLimit>'
        f'<tt:EncodingInterval>1</tt:EncodingInterval>'
        f'<tt:BitrateLimit>{encoder.bitrate}</tt:BitrateLimit></tt:RateControl>'
        f'<tt:H264><tt:GovLength>{encoder.framerate}</tt:GovLength><tt:H264Profile>Main</tt:H264Profile></tt:H264>'
        f'<tt:SessionTimeout>PT1000S</tt:SessionTimeout>'
        f'</tt:VideoEncoderConfiguration>'
        f'</trt:{tag}>'
    )


def _media_uri_xml(tag, uri):
    return (f'<trt:{tag}><trt:MediaUri><tt:Uri>{xml_text(uri)}</tt:Uri>'
            f'<tt:InvalidAfterConnect>false</tt:InvalidAfterConnect>'
            f'<tt:InvalidAfterReboot>false</tt:InvalidAfterReboot>'
            f'<tt:Timeout>PT30S</tt:Timeout></trt:MediaUri></trt:{tag}>')


def _date_time_xml(tag, now):
    return (f'<tt:{tag}><tt:Time><tt:Hour>{now.hour}</tt:Hour><tt:Minute>{now.minute}</tt:Minute>'
            f'<tt:Second>{now.second}</tt:Second></tt:Time>'
            f'<tt:Date><tt:Year>{now.year}</tt:Year><tt:Month>{now.month}</tt:Month>'
            f'<tt:Day>{now.day}</tt:Day></tt:Date></tt:{tag}>')


def load_snapshot_image(path=SNAPSHOT_FILE):
    with open(path, 'rb') as f:
        return f.read()


def posix_timezone(now_local):
    """Local offset as a POSIX-style TZ string, e.g. 'UTC-1' for UTC+01:00."""
    offset = -int(now_local.utcoffset().total_seconds() // 60)
    hours, minutes = divmod(abs(offset), 60)
    tz = f"UTC{'-' if offset < 0 else '+'}{hours}"
    if minutes:
        tz += f":{minutes}"
    return tz


class OnvifDevice:
    """ONVIF device/media façade for a single virtual camera.

    The profile list, device information and the operation dispatch table
    are built once here; requests never mutate them.
    """

    def __init__(self, config: CameraConfig, auth=None, debug=False):
        if not config.hostname:
            raise ValueError(f"camera {config.name} has no resolved hostname")
        self.config = config
        self.auth = auth
        self.debug = debug
        self.profiles = build_profiles(config)
        self.device_information = build_device_information(config)
        self.snapshot_image = load_snapshot_image()
        self.runner = None

        self.base_url = f"http://{config.hostname}:{config.server_port}"
        self.device_xaddr = self.base_url + DEVICE_SERVICE_PATH
        self.media_xaddr = self.base_url + MEDIA_SERVICE_PATH

        self.operations = {
            'GetSystemDateAndTime': (ONVIF_DEVICE, self.get_system_date_and_time),
            'GetCapabilities': (ONVIF_DEVICE, self.get_capabilities),
            'GetServices': (ONVIF_DEVICE, self.get_services),
            'GetDeviceInformation': (ONVIF_DEVICE, self.get_device_information),
            'GetHostname': (ONVIF_DEVICE, self.get_hostname),
            'GetScopes': (ONVIF_DEVICE, self.get_scopes),
            'GetProfiles': (ONVIF_MEDIA, self.get_profiles),
            'GetProfile': (ONVIF_MEDIA, self.get_profile),
            'GetVideoSources': (ONVIF_MEDIA, self.get_video_sources),
            'GetSnapshotUri': (ONVIF_MEDIA, self.get_snapshot_uri),
            'GetStreamUri': (ONVIF_MEDIA, self.get_stream_uri),
        }

    @property
    def name(self):
        return self.config.name

    # --- Device service ---

    def get_system_date_and_time(self, request=None):
        now_utc = datetime.now(timezone.utc)
        now_local = now_utc.astimezone()
        dst = time.localtime().tm_isdst > 0
        return (f'<tds:GetSystemDateAndTimeResponse><tds:SystemDateAndTime>'
                f'<tt:DateTimeType>NTP</tt:DateTimeType>'
                f'<tt:DaylightSavings>{str(dst).lower()}</tt:DaylightSavings>'
                f'<tt:TimeZone><tt:TZ>{posix_timezone(now_local)}</tt:TZ></tt:TimeZone>'
                f'{_date_time_xml("UTCDateTime", now_utc)}'
                f'{_date_time_xml("LocalDateTime", now_local)}'
                f'</tds:SystemDateAndTime></tds:GetSystemDateAndTimeResponse>')

    def get_capabilities(self, request=None):
        categories = set(request.find_all_text('Category')) if request is not None else set()
        categories.discard('')
        everything = not categories or 'All' in categories

        blocks = []
        if everything or 'Device' in categories:
            blocks.append(
                f'<tt:Device><tt:XAddr>{self.device_xaddr}</tt:XAddr>'
                f'<tt:Network><tt:IPFilter>false</tt:IPFilter><tt:ZeroConfiguration>false</tt:ZeroConfiguration>'
                f'<tt:IPVersion6>false</tt:IPVersion6><tt:DynDNS>false</tt:DynDNS></tt:Network>'
                f'<tt:System><tt:DiscoveryResolve>false</tt:DiscoveryResolve><tt:DiscoveryBye>false</tt:DiscoveryBye>'
                f'<tt:RemoteDiscovery>false</tt:RemoteDiscovery><tt:SystemBackup>false</tt:SystemBackup>'
                f'<tt:SystemLogging>false</tt:SystemLogging><tt:FirmwareUpgrade>false</tt:FirmwareUpgrade>'
                f'<tt:SupportedVersions><tt:Major>2</tt:Major><tt:Minor>{self.config.channel}</tt:Minor></tt:SupportedVersions>'
                f'</tt:System>'
                f'<tt:IO><tt:InputConnectors>0</tt:InputConnectors><tt:RelayOutputs>1</tt:RelayOutputs></tt:IO>'
                f'<tt:Security><tt:TLS1.1>false</tt:TLS1.1><tt:TLS1.2>false</tt:TLS1.2>'
                f'<tt:OnboardKeyGeneration>false</tt:OnboardKeyGeneration><tt:AccessPolicyConfig>false</tt:AccessPolicyConfig>'
                f'<tt:X.509Token>false</tt:X.509Token><tt:SAMLToken>false</tt:SAMLToken>'
                f'<tt:KerberosToken>false</tt:KerberosToken><tt:RELToken>false</tt:RELToken></tt:Security>'
                f'</tt:Device>')
        if everything or 'Media' in categories:
            blocks.append(
                f'<tt:Media><tt:XAddr>{self.media_xaddr}</tt:XAddr>'
                f'<tt:StreamingCapabilities><tt:RTPMulticast>false</tt:RTPMulticast>'
                f'<tt:RTP_TCP>true</tt:RTP_TCP><tt:RTP_RTSP_TCP>true</tt:RTP_RTSP_TCP></tt:StreamingCapabilities>'
                f'<tt:Extension><tt:ProfileCapabilities><tt:MaximumNumberOfProfiles>{len(self.profiles)}'
                f'</tt:MaximumNumberOfProfiles></tt:ProfileCapabilities></tt:Extension>'
                f'</tt:Media>')
        return f'<tds:GetCapabilitiesResponse><tds:Capabilities>{"".join(blocks)}</tds:Capabilities></tds:GetCapabilitiesResponse>'

    def get_services(self, request=None):
        services = ''.join(
            f'<tds:Service><tds:Namespace>{namespace}</tds:Namespace><tds:XAddr>{xaddr}</tds:XAddr>'
            f'<tds:Version><tt:Major>2</tt:Major><tt:Minor>5</tt:Minor></tds:Version></tds:Service>'
            for namespace, xaddr in ((ONVIF_DEVICE, self.device_xaddr), (ONVIF_MEDIA, self.media_xaddr)))
        return f'<tds:GetServicesResponse>{services}</tds:GetServicesResponse>'

    def get_device_information(self, request=None):
        info = self.device_information
        return (f'<tds:GetDeviceInformationResponse>'
                f'<tds:Manufacturer>{xml_text(info.manufacturer)}</tds:Manufacturer>'
                f'<tds:Model>{xml_text(info.model)}</tds:Model>'
                f'<tds:FirmwareVersion>{xml_text(info.firmware_version)}</tds:FirmwareVersion>'
                f'<tds:SerialNumber>{xml_text(info.serial_number)}</tds:SerialNumber>'
                f'<tds:HardwareId>{xml_text(info.hardware_id)}</tds:HardwareId>'
                f'</tds:GetDeviceInformationResponse>')

    def get_hostname(self, request=None):
        return (f'<tds:GetHostnameResponse><tds:HostnameInformation><tt:FromDHCP>false</tt:FromDHCP>'
                f'<tt:Name>{xml_text(self.config.name)}</tt:Name></tds:HostnameInformation></tds:GetHostnameResponse>')

    def get_scopes(self, request=None):
        scopes = ''.join(
            f'<tds:Scopes><tt:ScopeDef>Fixed</tt:ScopeDef><tt:ScopeItem>{xml_text(scope)}</tt:ScopeItem></tds:Scopes>'
            for scope in onvif_scopes(self.config.name, self.config.server_port))
        return f'<tds:GetScopesResponse>{scopes}</tds:GetScopesResponse>'

    # --- Media service ---

    def get_profiles(self, request=None):
        return f'<trt:GetProfilesResponse>{"".join(_profile_xml(p) for p in self.profiles)}</trt:GetProfilesResponse>'

    def get_profile(self, request=None):
        token = request.find_text('ProfileToken') if request is not None else None
        for profile in self.profiles:
            if profile.token == token:
                return f'<trt:GetProfileResponse>{_profile_xml(profile, "Profile")}</trt:GetProfileResponse>'
        raise SoapFault(f"Profile {token} does not exist", subcode='ter:NoProfile')

    def get_video_sources(self, request=None):
        hq = self.config.high_quality
        return (f'<trt:GetVideoSourcesResponse><trt:VideoSources token="{VIDEO_SOURCE_TOKEN}">'
                f'<tt:Framerate>{hq.framerate}</tt:Framerate>'
                f'<tt:Resolution><tt:Width>{hq.width}</tt:Width><tt:Height>{hq.height}</tt:Height></tt:Resolution>'
                f'</trt:VideoSources></trt:GetVideoSourcesResponse>')

    def snapshot_uri(self, profile_token):
        config = self.config
        low, high = config.low_quality, config.high_quality
        if config.snapshot_port is None:
            return self.base_url + SNAPSHOT_PATH
        if profile_token == SUB_STREAM and low and low.snapshot:
            path = low.snapshot
        elif high.snapshot:
            path = high.snapshot
        else:
            return self.base_url + SNAPSHOT_PATH
        return f"http://{config.hostname}:{config.snapshot_port}{config.path(path)}"

    def stream_uri(self, profile_token):
        config = self.config
        path = config.high_quality.rtsp
        if profile_token == SUB_STREAM and config.low_quality:
            path = config.low_quality.rtsp
        host = config.hostname if config.rtsp_port is None else f"{config.hostname}:{config.rtsp_port}"
        return f"rtsp://{host}{config.path(path)}"

    def get_snapshot_uri(self, request=None):
        token = request.find_text('ProfileToken') if request is not None else None
        return _media_uri_xml('GetSnapshotUriResponse', self.snapshot_uri(token))

    def get_stream_uri(self, request=None):
        token = request.find_text('ProfileToken') if request is not None else None
        return _media_uri_xml('GetStreamUriResponse', self.stream_uri(token))

    # --- HTTP ---

    def dispatch(self, request_body, service):
        """Run one SOAP call and return (status, soap action, response XML)."""
        soap_action = None
        try:
            request = parse_soap_request(request_body)
            soap_action = f"{request.namespace}/{request.name}" if request.namespace else None
            operation = self.operations.get(request.name)
            if operation is None:
                logger.warning(f"[{self.name}] {service}: unsupported operation {request.name}")
                raise SoapFault(f"Action {request.name} not supported", subcode='ter:ActionNotSupported')

            logger.info(f"[{self.name}] {service}: {request.name}")
            if self.auth is not None and request.name not in UNAUTHENTICATED_OPERATIONS:
                self.auth.check(request.header)

            namespace, handler = operation
            soap_action = f"{namespace}/{request.name}"
            return 200, soap_action, create_soap_response(handler(request))
        except SoapFault as fault:
            logger.debug(f"[{self.name}] {service}: fault {fault.subcode}: {fault.reason}")
            return fault.http_status, soap_action, create_soap_fault(fault)
        except Exception as e:
            logger.error(f"[{self.name}] Error handling {service} request: {e}")
            fault = SoapFault("Internal error", code='Receiver')
            return fault.http_status, soap_action, create_soap_fault(fault)

    async def handle_device_service(self, request):
        return await self._handle_soap(request, 'DeviceService')

    async def handle_media_service(self, request):
        return await self._handle_soap(request, 'MediaService')

    async def _handle_soap(self, request, service):
        request_body = await request.read()
        if self.debug:
            logger.debug(f"[{self.name}] Headers: {dict(request.headers)}")
            preview = request_body[:200].decode('utf-8', errors='replace')
            logger.debug(f"[{self.name}] Request content preview: {preview}...")
        status, soap_action, response_body = self.dispatch(request_body, service)
        return create_onvif_response(response_body, soap_action, status=status)

    async def handle_snapshot(self, request):
        return web.Response(body=self.snapshot_image, content_type='image/png')

    async def handle_unsupported_route(self, request):
        logger.warning(f"[{self.name}] Unknown path requested: {request.method} {request.path}")
        return web.Response(status=404, text="404 Not Found\n")

    @web.middleware
    async def log_requests(self, request, handler):
        logger.info(f"[{self.name}] HTTP {request.method} {request.path}")
        if 'Authorization' in request.headers:
            logger.info(f"[{self.name}] HTTP Auth header present")
        return await handler(request)

    def create_app(self):
        app = web.Application(middlewares=[self.log_requests])
        app.router.add_post(DEVICE_SERVICE_PATH, self.handle_device_service)
        app.router.add_post(MEDIA_SERVICE_PATH, self.handle_media_service)
        app.router.add_get(SNAPSHOT_PATH, self.handle_snapshot)
        app.router.add_route('*', '/{tail:.*}', self.handle_unsupported_route)
        return app

    async def start(self):
        """Bind the HTTP listener on the camera's own (hostname, server port)."""
        runner = web.AppRunner(self.create_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.config.hostname, self.config.server_port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self.runner = runner
        logger.info(f"[{self.name}] ONVIF server running at {self.base_url}")

    @property
    def bound_port(self):
        """Actual listening port (differs from the configured one only for port 0)."""
        if self.runner is None or not self.runner.addresses:
            return None
        return self.runner.addresses[0][1]

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            logger.info(f"[{self.name}] ONVIF server stopped")
