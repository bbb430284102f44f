import base64
import json
import unittest
from datetime import datetime, timezone
from unittest import mock

import requests

from runtime.errors import TransportError, ValidationError
from transport.alarm_sync_client import AlarmSyncClient
from transport.downlink_client import DownlinkClient
from transport.downlink_codec import decode_command_frame, encode_command_frame, encode_config_frame
from transport.uplink_parser import parse_uplink


class _FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Client Error")


def _session(response=None, side_effect=None):
    session = mock.Mock()
    if side_effect is not None:
        session.post.side_effect = side_effect
    else:
        session.post.return_value = response or _FakeResponse()
    return session


class DownlinkCodecTests(unittest.TestCase):
    def test_command_frame_layout(self):
        self.assertEqual(encode_command_frame(3, "ON"), b"\x03\x01")
        self.assertEqual(encode_command_frame(3, "OFF"), b"\x03\x00")
        self.assertEqual(encode_command_frame(255, "PULSE"), b"\xff\x02")

    def test_invalid_frames_are_rejected(self):
        with self.assertRaises(ValidationError):
            encode_command_frame(256, "ON")
        with self.assertRaises(ValidationError):
            encode_command_frame(1, "TOGGLE")
        with self.assertRaises(ValidationError):
            decode_command_frame(base64.b64encode(b"\x01").decode("ascii"))

    def test_decode_reads_channel_and_action(self):
        self.assertEqual(decode_command_frame("BAI="), (4, "PULSE"))

    def test_config_frame_is_compact_json(self):
        frame = encode_config_frame({"type": "MODE", "channel": 2, "mode": "AUTO"})
        self.assertEqual(frame, b'{"channel":2,"mode":"AUTO","type":"MODE"}')


class DownlinkClientTests(unittest.TestCase):
    def _client(self, session):
        return DownlinkClient(
            "https://ns.example.org/api/v3/",
            "irrigation",
            "NNSXS.KEY",
            f_port=10,
            config_f_port=11,
            timeout_s=2.5,
            session=session,
        )

    def test_send_posts_to_down_push(self):
        session = _session()
        client = self._client(session)

        correlation_id = client.send("dev-1", 2, "ON")

        self.assertTrue(correlation_id)
        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://ns.example.org/api/v3/as/applications/irrigation/devices/dev-1/down/push")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer NNSXS.KEY")
        self.assertEqual(kwargs["timeout"], 2.5)
        downlink = kwargs["json"]["downlinks"][0]
        self.assertEqual(downlink["f_port"], 10)
        self.assertEqual(base64.b64decode(downlink["frm_payload"]), b"\x02\x01")
        self.assertEqual(downlink["correlation_ids"], [correlation_id])

    def test_send_config_uses_config_port(self):
        session = _session()
        self._client(session).send_config("dev-1", {"type": "AUTO_OFF_TIMER", "channel": 1, "auto_off_s": 60.0})

        downlink = session.post.call_args[1]["json"]["downlinks"][0]
        self.assertEqual(downlink["f_port"], 11)
        self.assertEqual(json.loads(base64.b64decode(downlink["frm_payload"]))["type"], "AUTO_OFF_TIMER")

    def test_http_and_connection_errors_raise_transport_error(self):
        with self.assertRaises(TransportError):
            self._client(_session(_FakeResponse(403))).send("dev-1", 1, "OFF")
        with self.assertRaises(TransportError):
            self._client(_session(side_effect=requests.exceptions.ConnectionError("refused"))).send("dev-1", 1, "OFF")

    def test_unconfigured_client_refuses_to_send(self):
        session = _session()
        client = DownlinkClient.from_config({"TRANSPORT_BASE_URL": "https://ns.example.org"}, session=session)

        self.assertFalse(client.is_configured())
        with self.assertRaises(TransportError):
            client.send("dev-1", 1, "ON")
        session.post.assert_not_called()


class AlarmSyncClientTests(unittest.TestCase):
    def test_from_config_returns_none_when_unset(self):
        self.assertIsNone(AlarmSyncClient.from_config({"ALARM_SYNC_BASE_URL": None}))

    def test_resolve_posts_alarm_state(self):
        session = _session()
        client = AlarmSyncClient("https://sup.example.org/api", "secret", timeout_s=1.0, session=session)
        at = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)
        alarm = {
            "alarm_id": "alm-000001",
            "actuator_id": "v1",
            "acknowledged": True,
            "acknowledged_at": at,
            "acknowledged_by": "op",
            "resolved": True,
            "resolved_at": at,
        }

        self.assertTrue(client.resolve(alarm))

        args, kwargs = session.post.call_args
        self.assertEqual(args[0], "https://sup.example.org/api/actuators/v1/alarms/alm-000001/resolve")
        self.assertEqual(kwargs["json"]["resolved_at"], "2026-05-04T09:00:00+00:00")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")

    def test_failure_raises_transport_error(self):
        client = AlarmSyncClient("https://sup.example.org/api", session=_session(_FakeResponse(500)))
        with self.assertRaises(TransportError):
            client.acknowledge({"alarm_id": "alm-000001", "actuator_id": "v1"})


class UplinkParserTests(unittest.TestCase):
    def test_uplink_becomes_telemetry_and_status_events(self):
        events = parse_uplink(
            {
                "end_device_ids": {"device_id": "dev-1"},
                "uplink_message": {
                    "received_at": "2026-05-04T09:00:00Z",
                    "decoded_payload": {
                        "pt1": 4.2,
                        "battery": 3.7,
                        "valves": [{"channel": 1, "status": "ON"}, {"channel": 2, "status": "OFF"}],
                    },
                    "rx_metadata": [{"rssi": -98, "snr": 6.25}],
                },
            }
        )

        telemetry, status = events
        self.assertEqual(telemetry["telemetry"]["metrics"], {"pt1": 4.2, "battery": 3.7})
        self.assertEqual(telemetry["telemetry"]["rssi"], -98)
        self.assertEqual(status["observed_at"], "2026-05-04T09:00:00Z")
        self.assertEqual(status["status_updates"][1], {"channel": 2, "status": "OFF"})

    def test_malformed_uplink_is_rejected(self):
        with self.assertRaises(ValidationError):
            parse_uplink({"uplink_message": {}})

    def test_odd_radio_metadata_falls_back_to_empty_gateway(self):
        for rx_metadata in (["gw-1"], [None], "gw-1", []):
            events = parse_uplink(
                {
                    "end_device_ids": {"device_id": "dev-1"},
                    "uplink_message": {
                        "received_at": "2026-05-04T09:00:00Z",
                        "decoded_payload": {"pt1": 4.2},
                        "rx_metadata": rx_metadata,
                    },
                }
            )
            self.assertEqual(len(events), 1)
            self.assertEqual(events[0]["telemetry"]["metrics"], {"pt1": 4.2})
            self.assertIsNone(events[0]["telemetry"]["rssi"])
            self.assertIsNone(events[0]["telemetry"]["snr"])


if __name__ == "__main__":
    unittest.main()
