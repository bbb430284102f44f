import threading
import unittest
from datetime import datetime, timedelta, timezone

from alarms.engine import (
    acknowledge_alarm,
    acknowledge_all_alarms,
    configure_alarm_rule,
    evaluate_actuator_locked,
    resolve_alarm,
)
from alarms.rules import evaluate_rule, normalize_alarm_rule
from runtime.errors import UnknownEntityError, ValidationError
from store.entity_store import default_store_state, register_fleet


T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)
THRESHOLD_RULE = {"rule_type": "THRESHOLD", "metric": "pt1", "operator": ">=", "threshold": 5, "severity": "warning"}
STATUS_RULE = {"rule_type": "STATUS", "trigger_status": "FAULT", "severity": "CRITICAL"}


def _shared_data():
    config = {
        "DEVICES": [
            {"id": "dev-1", "actuators": [{"id": "v1", "channel": 1}, {"id": "v2", "channel": 2}]},
            {"id": "dev-2", "actuators": [{"id": "w1", "channel": 1}]},
        ]
    }
    shared_data = {"lock": threading.Lock()}
    shared_data.update(default_store_state())
    register_fleet(config, shared_data)
    return shared_data


def _raise_alarm(shared_data, actuator_id="v1", now_value=T0):
    with shared_data["lock"]:
        actuator = shared_data["actuators_by_id"][actuator_id]
        actuator["alarm_rule"] = normalize_alarm_rule(STATUS_RULE)
        actuator["alarm_condition_active"] = False
        return evaluate_actuator_locked(shared_data, actuator, now_value=now_value, status="FAULT")


class AlarmRuleTests(unittest.TestCase):
    def test_threshold_rule_is_normalized(self):
        rule = normalize_alarm_rule(THRESHOLD_RULE)
        self.assertEqual(rule["severity"], "WARNING")
        self.assertEqual(rule["threshold"], 5.0)
        self.assertIsNone(rule["trigger_status"])
        self.assertTrue(rule["enabled"])

    def test_status_rule_fixes_metric_and_operator(self):
        rule = normalize_alarm_rule(STATUS_RULE)
        self.assertEqual(rule["metric"], "status")
        self.assertEqual(rule["operator"], "==")
        self.assertIsNone(rule["threshold"])

    def test_mixed_rule_shapes_are_rejected(self):
        with self.assertRaises(ValidationError):
            normalize_alarm_rule(dict(STATUS_RULE, threshold=3))
        with self.assertRaises(ValidationError):
            normalize_alarm_rule(dict(THRESHOLD_RULE, trigger_status="OFF"))
        with self.assertRaises(ValidationError):
            normalize_alarm_rule(dict(THRESHOLD_RULE, threshold="high"))
        with self.assertRaises(ValidationError):
            normalize_alarm_rule(dict(THRESHOLD_RULE, operator="=>"))
        with self.assertRaises(ValidationError):
            normalize_alarm_rule(dict(STATUS_RULE, trigger_status="ON"))

    def test_threshold_evaluation_skips_missing_or_non_numeric_metrics(self):
        rule = normalize_alarm_rule(THRESHOLD_RULE)
        self.assertEqual(evaluate_rule(rule, metrics={"pt1": 5}), (True, 5.0))
        self.assertEqual(evaluate_rule(rule, metrics={"pt1": 4.9})[0], False)
        self.assertIsNone(evaluate_rule(rule, metrics={})[0])
        self.assertIsNone(evaluate_rule(rule, metrics={"pt1": "n/a"})[0])


class AlarmEvaluationTests(unittest.TestCase):
    def test_only_rising_edges_create_alarms(self):
        shared_data = _shared_data()
        with shared_data["lock"]:
            actuator = shared_data["actuators_by_id"]["v1"]
            actuator["alarm_rule"] = normalize_alarm_rule(STATUS_RULE)
            first = evaluate_actuator_locked(shared_data, actuator, now_value=T0, status="FAULT")
            repeat = evaluate_actuator_locked(shared_data, actuator, now_value=T0, status="FAULT")
            cleared = evaluate_actuator_locked(shared_data, actuator, now_value=T0, status="OFF")
            second = evaluate_actuator_locked(shared_data, actuator, now_value=T0, status="FAULT")

        self.assertIsNotNone(first)
        self.assertIsNone(repeat)
        self.assertIsNone(cleared)
        self.assertIsNotNone(second)
        self.assertNotEqual(first["alarm_id"], second["alarm_id"])
        self.assertEqual(len(actuator["alarms"]), 2)
        self.assertFalse(any(alarm["resolved"] for alarm in actuator["alarms"]))

    def test_disabled_rule_does_not_evaluate(self):
        shared_data = _shared_data()
        with shared_data["lock"]:
            actuator = shared_data["actuators_by_id"]["v1"]
            actuator["alarm_rule"] = normalize_alarm_rule(dict(STATUS_RULE, enabled=False))
            self.assertIsNone(evaluate_actuator_locked(shared_data, actuator, now_value=T0, status="FAULT"))
        self.assertFalse(actuator["alarm_condition_active"])

    def test_missing_metric_keeps_edge_flag(self):
        shared_data = _shared_data()
        with shared_data["lock"]:
            actuator = shared_data["actuators_by_id"]["v1"]
            actuator["alarm_rule"] = normalize_alarm_rule(THRESHOLD_RULE)
            evaluate_actuator_locked(shared_data, actuator, now_value=T0, metrics={"pt1": 7})
            evaluate_actuator_locked(shared_data, actuator, now_value=T0, metrics={"pt2": 1})
            again = evaluate_actuator_locked(shared_data, actuator, now_value=T0, metrics={"pt1": 8})

        self.assertTrue(actuator["alarm_condition_active"])
        self.assertIsNone(again)
        self.assertEqual(len(actuator["alarms"]), 1)


class AlarmLifecycleTests(unittest.TestCase):
    def test_acknowledge_then_resolve(self):
        shared_data = _shared_data()
        alarm = _raise_alarm(shared_data)
        t1 = T0 + timedelta(minutes=1)
        t2 = T0 + timedelta(minutes=2)

        ack = acknowledge_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: t1, acknowledged_by="op")
        resolved = resolve_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: t2)

        self.assertTrue(ack["changed"])
        self.assertEqual(ack["alarm"]["acknowledged_at"], t1)
        self.assertTrue(resolved["changed"])
        self.assertEqual(resolved["alarm"]["acknowledged_at"], t1)
        self.assertEqual(resolved["alarm"]["acknowledged_by"], "op")
        self.assertEqual(resolved["alarm"]["resolved_at"], t2)

    def test_resolve_without_acknowledge_auto_acknowledges(self):
        shared_data = _shared_data()
        alarm = _raise_alarm(shared_data)

        resolved = resolve_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0, resolved_by="op")

        self.assertTrue(resolved["alarm"]["acknowledged"])
        self.assertEqual(resolved["alarm"]["acknowledged_at"], T0)
        self.assertTrue(resolved["alarm"]["resolved"])

    def test_repeat_and_unknown_alarm_operations_are_noops(self):
        shared_data = _shared_data()
        alarm = _raise_alarm(shared_data)
        acknowledge_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0)
        resolve_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0)

        self.assertFalse(acknowledge_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0)["changed"])
        self.assertFalse(resolve_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0)["changed"])
        self.assertFalse(acknowledge_alarm(shared_data, "v1", "alm-999999", now_fn=lambda: T0)["changed"])
        self.assertFalse(resolve_alarm(shared_data, "v1", "alm-999999", now_fn=lambda: T0)["changed"])

    def test_unknown_actuator_raises(self):
        shared_data = _shared_data()
        with self.assertRaises(UnknownEntityError):
            acknowledge_alarm(shared_data, "nope", "alm-000001", now_fn=lambda: T0)

    def test_sync_failure_is_absorbed_after_local_commit(self):
        shared_data = _shared_data()
        alarm = _raise_alarm(shared_data)

        def _sync(_alarm):
            raise RuntimeError("backend down")

        outcome = resolve_alarm(shared_data, "v1", alarm["alarm_id"], now_fn=lambda: T0, sync_fn=_sync)

        self.assertEqual(outcome["sync"], "failed")
        self.assertTrue(shared_data["actuators_by_id"]["v1"]["alarms"][0]["resolved"])

    def test_acknowledge_all_is_independent_per_alarm(self):
        shared_data = _shared_data()
        first = _raise_alarm(shared_data, "v1")
        second = _raise_alarm(shared_data, "v2")
        other_device = _raise_alarm(shared_data, "w1")
        resolve_alarm(shared_data, "v2", second["alarm_id"], now_fn=lambda: T0)
        synced = []

        def _sync(alarm):
            synced.append(alarm["alarm_id"])
            raise RuntimeError("flaky")

        outcome = acknowledge_all_alarms(shared_data, now_fn=lambda: T0, device_id="dev-1", sync_fn=_sync)

        self.assertEqual(outcome["acknowledged"], [first["alarm_id"]])
        self.assertEqual(outcome["sync_failed"], [first["alarm_id"]])
        self.assertEqual(outcome["failed"], [])
        self.assertEqual(synced, [first["alarm_id"]])
        self.assertFalse(shared_data["actuators_by_id"]["w1"]["alarms"][0]["acknowledged"])
        self.assertEqual(other_device["actuator_id"], "w1")


class ConfigureAlarmRuleTests(unittest.TestCase):
    def test_configure_resets_edge_flag_and_pushes_config(self):
        shared_data = _shared_data()
        shared_data["actuators_by_id"]["v1"]["alarm_condition_active"] = True
        sent = []

        outcome = configure_alarm_rule(
            shared_data,
            "v1",
            THRESHOLD_RULE,
            send_config_fn=lambda device_id, message: sent.append((device_id, message)),
        )

        self.assertEqual(outcome["config_sync"], "ok")
        self.assertFalse(shared_data["actuators_by_id"]["v1"]["alarm_condition_active"])
        self.assertEqual(sent[0][0], "dev-1")
        self.assertEqual(sent[0][1]["type"], "ALARM_CONFIG")
        self.assertEqual(sent[0][1]["channel"], 1)

    def test_invalid_rule_leaves_existing_rule(self):
        shared_data = _shared_data()
        configure_alarm_rule(shared_data, "v1", STATUS_RULE)

        with self.assertRaises(ValidationError):
            configure_alarm_rule(shared_data, "v1", {"rule_type": "THRESHOLD", "metric": "pt1"})

        self.assertEqual(shared_data["actuators_by_id"]["v1"]["alarm_rule"]["rule_type"], "STATUS")

    def test_none_clears_rule(self):
        shared_data = _shared_data()
        configure_alarm_rule(shared_data, "v1", STATUS_RULE)
        configure_alarm_rule(shared_data, "v1", None)
        self.assertIsNone(shared_data["actuators_by_id"]["v1"]["alarm_rule"])


if __name__ == "__main__":
    unittest.main()
