import threading
import unittest
from datetime import datetime, timedelta, timezone

from runtime.errors import UnknownEntityError, ValidationError
from store.entity_store import default_store_state, register_fleet
from telemetry.merge import apply_push_event, apply_status, apply_telemetry


T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


def _config():
    return {
        "TIMEZONE_NAME": "UTC",
        "DEVICES": [
            {
                "id": "dev-1",
                "actuators": [
                    {
                        "id": "v1",
                        "channel": 1,
                        "status": "OFF",
                        "alarm_rule": {
                            "enabled": True,
                            "rule_type": "STATUS",
                            "metric": "status",
                            "operator": "==",
                            "threshold": None,
                            "trigger_status": "FAULT",
                            "severity": "CRITICAL",
                            "notify": False,
                        },
                    },
                    {
                        "id": "v2",
                        "channel": 2,
                        "status": "OFF",
                        "alarm_rule": {
                            "enabled": True,
                            "rule_type": "THRESHOLD",
                            "metric": "pt1",
                            "operator": ">",
                            "threshold": 6.0,
                            "trigger_status": None,
                            "severity": "WARNING",
                            "notify": False,
                        },
                    },
                ],
            }
        ],
    }


def _shared_data(config):
    shared_data = {"lock": threading.Lock()}
    shared_data.update(default_store_state())
    register_fleet(config, shared_data)
    return shared_data


class ApplyStatusTests(unittest.TestCase):
    def test_newer_status_is_applied(self):
        config = _config()
        shared_data = _shared_data(config)

        outcome = apply_status(config, shared_data, "v1", "on", T0)

        self.assertTrue(outcome["accepted"])
        actuator = shared_data["actuators_by_id"]["v1"]
        self.assertEqual(actuator["current_status"], "ON")
        self.assertEqual(actuator["status_observed_at"], T0)

    def test_strictly_older_status_is_discarded(self):
        config = _config()
        shared_data = _shared_data(config)
        apply_status(config, shared_data, "v1", "ON", T0)

        outcome = apply_status(config, shared_data, "v1", "OFF", T0 - timedelta(seconds=1))

        self.assertFalse(outcome["accepted"])
        self.assertEqual(shared_data["actuators_by_id"]["v1"]["current_status"], "ON")
        self.assertEqual(shared_data["actuators_by_id"]["v1"]["status_observed_at"], T0)

    def test_equal_timestamp_is_accepted(self):
        config = _config()
        shared_data = _shared_data(config)
        apply_status(config, shared_data, "v1", "ON", T0)

        outcome = apply_status(config, shared_data, "v1", "OFF", T0)

        self.assertTrue(outcome["accepted"])
        self.assertEqual(shared_data["actuators_by_id"]["v1"]["current_status"], "OFF")

    def test_status_merge_leaves_mode_and_cycle_count(self):
        config = _config()
        shared_data = _shared_data(config)
        actuator = shared_data["actuators_by_id"]["v1"]
        actuator["cycle_count"] = 7
        actuator["mode"] = "AUTO"

        apply_status(config, shared_data, "v1", "ON", T0)

        self.assertEqual(actuator["cycle_count"], 7)
        self.assertEqual(actuator["mode"], "AUTO")

    def test_iso_string_timestamps_are_normalized(self):
        config = _config()
        shared_data = _shared_data(config)

        apply_status(config, shared_data, "v1", "ON", "2026-05-04T11:00:00+02:00")

        self.assertEqual(shared_data["actuators_by_id"]["v1"]["status_observed_at"], T0)

    def test_invalid_inputs_raise_validation_errors(self):
        config = _config()
        shared_data = _shared_data(config)

        with self.assertRaises(ValidationError):
            apply_status(config, shared_data, "v1", "OPEN", T0)
        with self.assertRaises(ValidationError):
            apply_status(config, shared_data, "v1", "ON", "not a time")
        with self.assertRaises(UnknownEntityError):
            apply_status(config, shared_data, "v9", "ON", T0)

    def test_off_or_fault_disarms_auto_off(self):
        config = _config()
        shared_data = _shared_data(config)
        shared_data["actuators_by_id"]["v1"]["auto_off_deadline"] = T0 + timedelta(minutes=5)

        apply_status(config, shared_data, "v1", "FAULT", T0)

        self.assertIsNone(shared_data["actuators_by_id"]["v1"]["auto_off_deadline"])

    def test_accepted_status_is_evaluated_by_alarm_rule(self):
        config = _config()
        shared_data = _shared_data(config)

        outcome = apply_status(config, shared_data, "v1", "FAULT", T0)

        self.assertIsNotNone(outcome["alarm"])
        self.assertEqual(len(shared_data["actuators_by_id"]["v1"]["alarms"]), 1)


class ApplyTelemetryTests(unittest.TestCase):
    def test_sample_is_fully_replaced(self):
        config = _config()
        shared_data = _shared_data(config)
        apply_telemetry(config, shared_data, "dev-1", {"received_at": T0, "metrics": {"pt1": 2.0, "battery": 3.9}})

        apply_telemetry(
            config,
            shared_data,
            "dev-1",
            {"received_at": T0 + timedelta(minutes=1), "metrics": {"pt2": 1.5}, "rssi": -101, "snr": 7.5},
        )

        sample = shared_data["telemetry_by_device"]["dev-1"]
        self.assertEqual(sample["metrics"], {"pt2": 1.5})
        self.assertEqual(sample["rssi"], -101.0)
        self.assertEqual(sample["snr"], 7.5)

    def test_older_sample_is_discarded(self):
        config = _config()
        shared_data = _shared_data(config)
        apply_telemetry(config, shared_data, "dev-1", {"received_at": T0, "metrics": {"pt1": 2.0}})

        outcome = apply_telemetry(
            config,
            shared_data,
            "dev-1",
            {"received_at": T0 - timedelta(seconds=30), "metrics": {"pt1": 9.0}},
        )

        self.assertFalse(outcome["accepted"])
        self.assertEqual(shared_data["telemetry_by_device"]["dev-1"]["metrics"], {"pt1": 2.0})
        self.assertEqual(shared_data["actuators_by_id"]["v2"]["alarms"], [])

    def test_flat_metrics_are_collected_when_metrics_key_is_absent(self):
        config = _config()
        shared_data = _shared_data(config)

        apply_telemetry(config, shared_data, "dev-1", {"received_at": T0, "pt1": 3.1, "tamper": False, "rssi": -90})

        sample = shared_data["telemetry_by_device"]["dev-1"]
        self.assertEqual(sample["metrics"], {"pt1": 3.1, "tamper": False})
        self.assertEqual(sample["rssi"], -90.0)

    def test_threshold_alarm_fires_from_sample(self):
        config = _config()
        shared_data = _shared_data(config)

        outcome = apply_telemetry(config, shared_data, "dev-1", {"received_at": T0, "metrics": {"pt1": 6.4}})

        self.assertEqual(len(outcome["alarms"]), 1)
        self.assertEqual(outcome["alarms"][0]["actuator_id"], "v2")
        self.assertEqual(outcome["alarms"][0]["observed_value"], 6.4)

    def test_unknown_device_is_rejected(self):
        config = _config()
        shared_data = _shared_data(config)
        with self.assertRaises(UnknownEntityError):
            apply_telemetry(config, shared_data, "dev-9", {"received_at": T0, "metrics": {}})


class ApplyPushEventTests(unittest.TestCase):
    def test_status_updates_by_channel_and_id(self):
        config = _config()
        shared_data = _shared_data(config)

        result = apply_push_event(
            config,
            shared_data,
            {
                "device_id": "dev-1",
                "observed_at": T0,
                "status_updates": [
                    {"channel": 1, "status": "ON"},
                    {"actuator_id": "v2", "status": "ON", "observed_at": T0 + timedelta(seconds=1)},
                    {"channel": 9, "status": "ON"},
                ],
            },
        )

        self.assertEqual(result["status"], {"applied": 2, "held": 0, "discarded": 0, "rejected": 1})
        self.assertEqual(shared_data["actuators_by_id"]["v1"]["current_status"], "ON")
        self.assertEqual(shared_data["actuators_by_id"]["v2"]["status_observed_at"], T0 + timedelta(seconds=1))

    def test_telemetry_event(self):
        config = _config()
        shared_data = _shared_data(config)

        result = apply_push_event(
            config,
            shared_data,
            {"device_id": "dev-1", "telemetry": {"received_at": T0, "metrics": {"pt1": 1.0}}},
        )

        self.assertTrue(result["telemetry"]["accepted"])

    def test_event_without_payload_is_rejected(self):
        config = _config()
        shared_data = _shared_data(config)
        with self.assertRaises(ValidationError):
            apply_push_event(config, shared_data, {"device_id": "dev-1"})
        with self.assertRaises(ValidationError):
            apply_push_event(config, shared_data, {"status_updates": []})


if __name__ == "__main__":
    unittest.main()
