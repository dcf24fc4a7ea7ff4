"""Tests for fleet-file parsing and camera address resolution."""

import pytest

from onvif_fleet import config
from onvif_fleet.config import (ConfigError, load_fleet, parse_camera, parse_fleet,
                                resolve_hostname)

from tests.conftest import camera_record


class TestParseCamera:

    def test_full_record(self, camera):
        assert camera.name == 'Camera 1'
        assert camera.uuid == '00000000-0000-4000-8000-000000000001'
        assert camera.server_port == 8001
        assert camera.rtsp_port == 5541
        assert camera.snapshot_port == 8081
        assert camera.target.hostname == '10.0.0.5'
        assert camera.target.rtsp_port == 554
        assert camera.high_quality.width == 1920
        assert camera.low_quality.framerate == 15
        assert camera.hostname == '127.0.0.1'

    def test_channel_defaults_to_position(self):
        assert parse_camera(camera_record(1), index=4).channel == 5

    def test_explicit_channel(self):
        record = camera_record(1)
        record['channel'] = 12
        assert parse_camera(record).channel == 12

    def test_channel_placeholder(self):
        record = camera_record(1)
        record['channel'] = 7
        camera = parse_camera(record)
        assert camera.path(camera.high_quality.rtsp) == '/cam/realmonitor?channel=7&subtype=0'

    def test_optional_sections(self, bare_camera):
        assert bare_camera.low_quality is None
        assert bare_camera.rtsp_port is None
        assert bare_camera.snapshot_port is None

    @pytest.mark.parametrize('field', ['name', 'mac', 'uuid', 'ports', 'target', 'highQuality'])
    def test_missing_required_field(self, field):
        record = camera_record(1)
        del record[field]
        with pytest.raises(ConfigError, match=field):
            parse_camera(record)

    def test_missing_server_port(self):
        record = camera_record(1)
        record['ports'] = {'rtsp': 5541}
        with pytest.raises(ConfigError, match='server'):
            parse_camera(record)

    def test_invalid_port(self):
        record = camera_record(1)
        record['ports']['server'] = 'eighty'
        with pytest.raises(ConfigError, match='ports.server'):
            parse_camera(record)

    def test_port_out_of_range(self):
        record = camera_record(1, server_port=70000)
        with pytest.raises(ConfigError, match='out of range'):
            parse_camera(record)

    def test_bad_quality_value(self):
        record = camera_record(1)
        record['highQuality']['width'] = 'wide'
        with pytest.raises(ConfigError, match='highQuality'):
            parse_camera(record)

    def test_with_hostname_returns_copy(self, camera):
        moved = camera.with_hostname('192.168.1.50')
        assert moved.hostname == '192.168.1.50'
        assert camera.hostname == '127.0.0.1'
        assert moved.uuid == camera.uuid


class TestParseFleet:

    def test_order_preserved(self, cameras):
        assert [c.name for c in cameras] == ['Camera 1', 'Camera 2', 'Camera 3']
        assert [c.channel for c in cameras] == [1, 2, 3]

    def test_requires_onvif_list(self):
        with pytest.raises(ConfigError):
            parse_fleet({'cameras': []})
        with pytest.raises(ConfigError):
            parse_fleet(None)

    def test_duplicate_uuid_rejected(self, fleet_document):
        fleet_document['onvif'][2]['uuid'] = fleet_document['onvif'][0]['uuid']
        with pytest.raises(ConfigError, match='duplicate uuid'):
            parse_fleet(fleet_document)

    def test_non_mapping_entry(self):
        with pytest.raises(ConfigError, match='#1'):
            parse_fleet({'onvif': ['camera']})


class TestLoadFleet:

    def test_load_yaml(self, tmp_path):
        path = tmp_path / 'fleet.yaml'
        path.write_text(
            "onvif:\n"
            "  - name: Front door\n"
            "    mac: '02:00:00:00:00:01'\n"
            "    uuid: 6f4f0bd6-4b1d-4c2a-9b3c-1a2b3c4d5e6f\n"
            "    ports:\n"
            "      server: 8001\n"
            "      rtsp: 8554\n"
            "    target:\n"
            "      hostname: 192.168.1.10\n"
            "      ports:\n"
            "        rtsp: 554\n"
            "    highQuality:\n"
            "      rtsp: /ch{channel}/main\n"
            "      width: 1920\n"
            "      height: 1080\n"
            "      framerate: 25\n"
            "      bitrate: 4096\n"
            "      quality: 4\n")
        cameras = load_fleet(str(path))
        assert len(cameras) == 1
        assert cameras[0].name == 'Front door'
        assert cameras[0].rtsp_port == 8554
        assert cameras[0].target.snapshot_port is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_fleet(str(tmp_path / 'absent.yaml'))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'broken.yaml'
        path.write_text("onvif: [unclosed\n")
        with pytest.raises(ConfigError, match='yaml'):
            load_fleet(str(path))


class TestResolveHostname:

    def test_explicit_hostname_wins(self, camera, monkeypatch):
        monkeypatch.setattr(config, 'get_ip_address_from_mac', lambda mac: pytest.fail('MAC lookup used'))
        assert resolve_hostname(camera) == '127.0.0.1'

    def test_mac_lookup(self, monkeypatch):
        interfaces = {
            'lo': {config.netifaces.AF_LINK: [{'addr': '00:00:00:00:00:00'}],
                   config.netifaces.AF_INET: [{'addr': '127.0.0.1'}]},
            'cam1': {config.netifaces.AF_LINK: [{'addr': '02:00:00:00:00:01'}],
                     config.netifaces.AF_INET: [{'addr': '192.168.1.101'}]},
        }
        monkeypatch.setattr(config.netifaces, 'interfaces', lambda: list(interfaces))
        monkeypatch.setattr(config.netifaces, 'ifaddresses', lambda name: interfaces[name])

        camera = parse_camera(camera_record(1, hostname=None))
        assert resolve_hostname(camera) == '192.168.1.101'

    def test_unknown_mac(self, monkeypatch):
        monkeypatch.setattr(config.netifaces, 'interfaces', lambda: ['lo'])
        monkeypatch.setattr(config.netifaces, 'ifaddresses',
                            lambda name: {config.netifaces.AF_LINK: [{'addr': '00:00:00:00:00:00'}]})
        camera = parse_camera(camera_record(1, hostname=None))
        assert resolve_hostname(camera) is None
