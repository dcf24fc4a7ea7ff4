# soap.py
# SOAP 1.2 plumbing shared by the device façade and the discovery responder:
# namespaces, envelope and fault rendering, request parsing and the HTTP
# response headers real cameras send.

import logging
import xml.etree.ElementTree as ET
from xml.sax.saxutils import escape

from aiohttp import web

logger = logging.getLogger(__name__)

# SOAP namespaces
SOAP_ENV = "http://www.w3.org/2003/05/soap-envelope"
ONVIF_DEVICE = "http://www.onvif.org/ver10/device/wsdl"
ONVIF_MEDIA = "http://www.onvif.org/ver10/media/wsdl"
ONVIF_SCHEMA = "http://www.onvif.org/ver10/schema"
ONVIF_ERROR = "http://www.onvif.org/ver10/error"
ONVIF_NETWORK = "http://www.onvif.org/ver10/network/wsdl"
WS_DISCOVERY = "http://schemas.xmlsoap.org/ws/2005/04/discovery"
WS_ADDRESSING = "http://schemas.xmlsoap.org/ws/2004/08/addressing"
WSSE = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"


class SoapFault(Exception):
    """An error that is reported to the client as a SOAP fault."""

    def __init__(self, reason, code='Sender', subcode=None):
        super().__init__(reason)
        self.reason = reason
        self.code = code
        self.subcode = subcode

    @property
    def http_status(self):
        return 400 if self.code == 'Sender' else 500


class SoapRequest:
    """A parsed SOAP request: the envelope header and the operation element."""

    def __init__(self, header, operation):
        self.header = header
        self.operation = operation

    @property
    def name(self):
        return local_name(self.operation.tag)

    @property
    def namespace(self):
        tag = self.operation.tag
        return tag[1:].split('}', 1)[0] if tag.startswith('{') else ''

    def find_text(self, name, default=None):
        """Text of the first descendant of the operation called `name`."""
        for elem in self.operation.iter():
            if elem is not self.operation and local_name(elem.tag) == name:
                return (elem.text or '').strip()
        return default

    def find_all_text(self, name):
        return [(elem.text or '').strip() for elem in self.operation.iter()
                if elem is not self.operation and local_name(elem.tag) == name]


def local_name(tag):
    return tag.rsplit('}', 1)[-1] if '}' in tag else tag.split(':')[-1]


def find_child(parent, name):
    if parent is None:
        return None
    for child in parent:
        if local_name(child.tag) == name:
            return child
    return None


def xml_text(value):
    return escape(str(value))


def onvif_scopes(name, port):
    """Scope URIs advertised for one camera; name and hardware are per camera."""
    return [
        "onvif://www.onvif.org/type/Network_Video_Transmitter",
        "onvif://www.onvif.org/type/video_encoder",
        "onvif://www.onvif.org/type/ptz",
        f"onvif://www.onvif.org/hardware/VirtualCamera{port}",
        f"onvif://www.onvif.org/name/{'_'.join(str(name).split())}",
        "onvif://www.onvif.org/location/",
        "onvif://www.onvif.org/Profile/Streaming",
    ]


def parse_soap_request(request_body):
    """Parse a SOAP envelope and return a SoapRequest.

    Raises SoapFault when the document is not a SOAP envelope with an
    operation inside its Body.
    """
    try:
        root = ET.fromstring(request_body)
    except (ET.ParseError, ValueError, LookupError) as e:
        raise SoapFault(f"Malformed SOAP request: {e}", subcode='ter:WellFormed')

    if local_name(root.tag) != 'Envelope':
        raise SoapFault("Request is not a SOAP envelope", subcode='ter:WellFormed')

    body = find_child(root, 'Body')
    if body is None or len(body) == 0:
        raise SoapFault("SOAP Body is empty", subcode='ter:WellFormed')
    return SoapRequest(find_child(root, 'Header'), body[0])


def create_soap_response(body_content):
    """Create a SOAP envelope response"""
    return (f'<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<SOAP-ENV:Envelope xmlns:SOAP-ENV="{SOAP_ENV}" xmlns:tds="{ONVIF_DEVICE}" '
            f'xmlns:trt="{ONVIF_MEDIA}" xmlns:tt="{ONVIF_SCHEMA}" xmlns:ter="{ONVIF_ERROR}">'
            f'<SOAP-ENV:Body>{body_content}</SOAP-ENV:Body></SOAP-ENV:Envelope>')


def create_soap_fault(fault):
    subcode = ''
    if fault.subcode:
        subcode = f'<SOAP-ENV:Subcode><SOAP-ENV:Value>{xml_text(fault.subcode)}</SOAP-ENV:Value></SOAP-ENV:Subcode>'
    return create_soap_response(
        f'<SOAP-ENV:Fault>'
        f'<SOAP-ENV:Code><SOAP-ENV:Value>SOAP-ENV:{fault.code}</SOAP-ENV:Value>{subcode}</SOAP-ENV:Code>'
        f'<SOAP-ENV:Reason><SOAP-ENV:Text xml:lang="en">{xml_text(fault.reason)}</SOAP-ENV:Text></SOAP-ENV:Reason>'
        f'</SOAP-ENV:Fault>')


def create_onvif_response(response_body, soap_action=None, status=200):
    """Create an ONVIF response with proper headers matching real cameras"""
    headers = {
        'Server': 'gSOAP/2.8',
        'Access-Control-Allow-Origin': '*',
        'Content-Type': 'application/soap+xml; charset=utf-8',
        'Connection': 'close'
    }

    # Add the action to Content-Type if provided
    if soap_action:
        headers['Content-Type'] += f'; action="{soap_action}"'

    return web.Response(text=response_body, status=status, headers=headers)
