"""Shared fixtures: fleet documents and camera records bound to loopback."""

import pytest

from onvif_fleet.config import parse_camera, parse_fleet


def camera_record(index, server_port=0, rtsp_port=None, snapshot_port=None, low_quality=True,
                  hostname='127.0.0.1', target_ports=None):
    """One `onvif` list entry in the fleet-file format."""
    record = {
        'name': f'Camera {index}',
        'mac': f'02:00:00:00:00:{index:02x}',
        'uuid': f'00000000-0000-4000-8000-{index:012d}',
        'hostname': hostname,
        'ports': {'server': server_port},
        'target': {
            'hostname': '10.0.0.5',
            'ports': target_ports if target_ports is not None else {'rtsp': 554, 'snapshot': 80},
        },
        'highQuality': {
            'rtsp': '/cam/realmonitor?channel={channel}&subtype=0',
            'snapshot': '/cgi-bin/snapshot.cgi?channel={channel}',
            'width': 1920,
            'height': 1080,
            'framerate': 25,
            'bitrate': 4096,
            'quality': 4,
        },
    }
    if rtsp_port is not None:
        record['ports']['rtsp'] = rtsp_port
    if snapshot_port is not None:
        record['ports']['snapshot'] = snapshot_port
    if low_quality:
        record['lowQuality'] = {
            'rtsp': '/cam/realmonitor?channel={channel}&subtype=1',
            'snapshot': '/cgi-bin/snapshot.cgi?channel={channel}&subtype=1',
            'width': 640,
            'height': 360,
            'framerate': 15,
            'bitrate': 512,
            'quality': 1,
        }
    return record


@pytest.fixture
def fleet_document():
    return {'onvif': [camera_record(i, server_port=8000 + i, rtsp_port=5540 + i, snapshot_port=8080 + i)
                      for i in range(1, 4)]}


@pytest.fixture
def cameras(fleet_document):
    return parse_fleet(fleet_document)


@pytest.fixture
def camera():
    return parse_camera(camera_record(1, server_port=8001, rtsp_port=5541, snapshot_port=8081))


@pytest.fixture
def bare_camera():
    """Camera with no proxy ports and no lowQuality profile."""
    return parse_camera(camera_record(2, server_port=8002, low_quality=False))


def soap_request(operation, namespace='http://www.onvif.org/ver10/device/wsdl', body='', header=''):
    return (f'<?xml version="1.0" encoding="UTF-8"?>'
            f'<s:Envelope xmlns:s="http://www.w3.org/2003/05/soap-envelope" xmlns:op="{namespace}"'
            f' xmlns:tt="http://www.onvif.org/ver10/schema">'
            f'<s:Header>{header}</s:Header>'
            f'<s:Body><op:{operation}>{body}</op:{operation}></s:Body></s:Envelope>')


def probe_message(message_id='uuid:11111111-2222-3333-4444-555555555555',
                  types='dn:NetworkVideoTransmitter'):
    types_xml = f'<d:Types>{types}</d:Types>' if types is not None else ''
    return (f'<?xml version="1.0" encoding="UTF-8"?>'
            f'<e:Envelope xmlns:e="http://www.w3.org/2003/05/soap-envelope"'
            f' xmlns:w="http://schemas.xmlsoap.org/ws/2004/08/addressing"'
            f' xmlns:d="http://schemas.xmlsoap.org/ws/2005/04/discovery"'
            f' xmlns:dn="http://www.onvif.org/ver10/network/wsdl">'
            f'<e:Header><w:MessageID>{message_id}</w:MessageID>'
            f'<w:To e:mustUnderstand="true">urn:schemas-xmlsoap-org:ws:2005:04:discovery</w:To>'
            f'<w:Action>http://schemas.xmlsoap.org/ws/2005/04/discovery/Probe</w:Action></e:Header>'
            f'<e:Body><d:Probe>{types_xml}</d:Probe></e:Body></e:Envelope>').encode('utf-8')
