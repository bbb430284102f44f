"""Configuration loader for the manifold sync engine."""

import logging
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from alarms.rules import normalize_alarm_rule
from runtime.defaults import (
    ACTUATOR_MODES,
    ACTUATOR_STATUSES,
    DEFAULT_AUTO_OFF_PERIOD_S,
    DEFAULT_COMMAND_HISTORY_LIMIT,
    DEFAULT_DISPATCH_TIMEOUT_S,
    DEFAULT_PUSH_LOOP_PERIOD_S,
    DEFAULT_PUSH_QUEUE_MAXSIZE,
    DEFAULT_RECONCILIATION_LOG_LIMIT,
    DEFAULT_TIMEZONE_NAME,
)
from runtime.errors import ValidationError
from runtime.parsing import parse_bool

DEFAULT_TRANSPORT_BASE_URL = "https://eu1.cloud.thethings.network/api/v3"
DEFAULT_TRANSPORT_F_PORT = 10
DEFAULT_TRANSPORT_CONFIG_F_PORT = 11
DEFAULT_ALARM_SYNC_TIMEOUT_S = 5.0


def _parse_bool(value, default):
    return parse_bool(value, default)


def _parse_float(value, default, key_name, min_value=None):
    try:
        result = float(value)
        if min_value is not None and result < min_value:
            raise ValueError("below minimum")
        return result
    except (TypeError, ValueError):
        logging.warning("Invalid %s='%s'. Using default %s.", key_name, value, default)
        return default


def _parse_int(value, default, key_name, min_value=None, max_value=None):
    try:
        result = int(value)
        if min_value is not None and result < min_value:
            raise ValueError("below minimum")
        if max_value is not None and result > max_value:
            raise ValueError("above maximum")
        return result
    except (TypeError, ValueError):
        logging.warning("Invalid %s='%s'. Using default %s.", key_name, value, default)
        return default


def _parse_timezone(timezone_name):
    try:
        ZoneInfo(timezone_name)
        return timezone_name
    except (ZoneInfoNotFoundError, TypeError, ValueError):
        logging.warning(
            "Invalid time.timezone='%s'. Using default '%s'.",
            timezone_name,
            DEFAULT_TIMEZONE_NAME,
        )
        return DEFAULT_TIMEZONE_NAME


def _parse_choice(value, allowed_values, default, key_name):
    if value is None:
        return default
    normalized = str(value).strip().upper()
    if normalized not in allowed_values:
        allowed_text = ", ".join(sorted(allowed_values))
        logging.warning(
            "Invalid %s='%s'. Using default '%s'. Allowed values: %s.",
            key_name,
            value,
            default,
            allowed_text,
        )
        return default
    return normalized


def _parse_optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_actuator(raw_actuator, device_id, prefix, default_auto_off_s):
    if not isinstance(raw_actuator, dict):
        raise ValueError(f"Invalid {prefix}: expected mapping.")

    actuator_id = _parse_optional_text(raw_actuator.get("id"))
    if actuator_id is None:
        raise ValueError(f"Missing required config key '{prefix}.id'.")
    if "channel" not in raw_actuator:
        raise ValueError(f"Missing required config key '{prefix}.channel'.")
    try:
        channel = int(raw_actuator.get("channel"))
    except (TypeError, ValueError):
        raise ValueError(f"Invalid {prefix}.channel='{raw_actuator.get('channel')}'. Expected integer.")
    if channel < 0 or channel > 255:
        raise ValueError(f"Invalid {prefix}.channel='{channel}'. Must be within 0..255.")

    alarm_rule = None
    raw_rule = raw_actuator.get("alarm_rule")
    if raw_rule is not None:
        try:
            alarm_rule = normalize_alarm_rule(raw_rule)
        except ValidationError as exc:
            raise ValueError(f"Invalid {prefix}.alarm_rule: {exc}")

    return {
        "id": actuator_id,
        "device_id": device_id,
        "channel": channel,
        "name": _parse_optional_text(raw_actuator.get("name")) or actuator_id,
        "mode": _parse_choice(raw_actuator.get("mode"), ACTUATOR_MODES, "MANUAL", f"{prefix}.mode"),
        "status": _parse_choice(raw_actuator.get("status"), ACTUATOR_STATUSES, "OFF", f"{prefix}.status"),
        "auto_off_s": _parse_float(
            raw_actuator.get("auto_off_s", default_auto_off_s),
            default_auto_off_s,
            f"{prefix}.auto_off_s",
            min_value=0.0,
        ),
        "alarm_rule": alarm_rule,
    }


def _normalize_fleet(raw_fleet, default_auto_off_s):
    if not isinstance(raw_fleet, dict):
        raise ValueError("Missing required config section 'fleet'.")
    raw_devices = raw_fleet.get("devices")
    if not isinstance(raw_devices, list) or not raw_devices:
        raise ValueError("Invalid fleet.devices: expected a non-empty list.")

    devices = []
    seen_device_ids = set()
    seen_actuator_ids = set()
    for device_index, raw_device in enumerate(raw_devices):
        prefix = f"fleet.devices[{device_index}]"
        if not isinstance(raw_device, dict):
            raise ValueError(f"Invalid {prefix}: expected mapping.")
        device_id = _parse_optional_text(raw_device.get("id"))
        if device_id is None:
            raise ValueError(f"Missing required config key '{prefix}.id'.")
        if device_id in seen_device_ids:
            raise ValueError(f"Duplicate device id '{device_id}' at {prefix}.id.")
        seen_device_ids.add(device_id)

        raw_actuators = raw_device.get("actuators")
        if not isinstance(raw_actuators, list) or not raw_actuators:
            raise ValueError(f"Invalid {prefix}.actuators: expected a non-empty list.")

        actuators = []
        seen_channels = set()
        for actuator_index, raw_actuator in enumerate(raw_actuators):
            actuator = _normalize_actuator(
                raw_actuator,
                device_id,
                f"{prefix}.actuators[{actuator_index}]",
                default_auto_off_s,
            )
            if actuator["id"] in seen_actuator_ids:
                raise ValueError(f"Duplicate actuator id '{actuator['id']}' in fleet.")
            if actuator["channel"] in seen_channels:
                raise ValueError(f"Duplicate channel {actuator['channel']} on device '{device_id}'.")
            seen_actuator_ids.add(actuator["id"])
            seen_channels.add(actuator["channel"])
            actuators.append(actuator)

        devices.append(
            {
                "id": device_id,
                "name": _parse_optional_text(raw_device.get("name")) or device_id,
                "actuators": actuators,
            }
        )
    return devices


def load_config(config_path="config.yaml"):
    """Load configuration from YAML and return validated runtime dict."""
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as handle:
        yaml_config = yaml.safe_load(handle) or {}

    return build_config(yaml_config)


def build_config(yaml_config):
    """Normalize an already-parsed YAML mapping into the flat runtime config dict."""
    if not isinstance(yaml_config, dict):
        raise ValueError("Invalid configuration: expected a mapping at the top level.")

    config = {}

    general = yaml_config.get("general", {}) or {}
    log_level_str = str(general.get("log_level", "INFO")).upper()
    config["LOG_LEVEL"] = getattr(logging, log_level_str, logging.INFO)

    time_cfg = yaml_config.get("time", {}) or {}
    config["TIMEZONE_NAME"] = _parse_timezone(time_cfg.get("timezone", DEFAULT_TIMEZONE_NAME))

    dispatch_cfg = yaml_config.get("dispatch", {}) or {}
    config["DISPATCH_TIMEOUT_S"] = _parse_float(
        dispatch_cfg.get("timeout_s", DEFAULT_DISPATCH_TIMEOUT_S),
        DEFAULT_DISPATCH_TIMEOUT_S,
        "dispatch.timeout_s",
        min_value=0.01,
    )
    config["COMMAND_HISTORY_LIMIT"] = _parse_int(
        dispatch_cfg.get("command_history_limit", DEFAULT_COMMAND_HISTORY_LIMIT),
        DEFAULT_COMMAND_HISTORY_LIMIT,
        "dispatch.command_history_limit",
        min_value=1,
    )
    config["RECONCILIATION_LOG_LIMIT"] = _parse_int(
        dispatch_cfg.get("reconciliation_log_limit", DEFAULT_RECONCILIATION_LOG_LIMIT),
        DEFAULT_RECONCILIATION_LOG_LIMIT,
        "dispatch.reconciliation_log_limit",
        min_value=1,
    )
    config["DEFAULT_AUTO_OFF_S"] = _parse_float(
        dispatch_cfg.get("default_auto_off_s", 0.0),
        0.0,
        "dispatch.default_auto_off_s",
        min_value=0.0,
    )

    push_cfg = yaml_config.get("push", {}) or {}
    config["PUSH_QUEUE_MAXSIZE"] = _parse_int(
        push_cfg.get("queue_maxsize", DEFAULT_PUSH_QUEUE_MAXSIZE),
        DEFAULT_PUSH_QUEUE_MAXSIZE,
        "push.queue_maxsize",
        min_value=1,
    )
    config["PUSH_LOOP_PERIOD_S"] = _parse_float(
        push_cfg.get("loop_period_s", DEFAULT_PUSH_LOOP_PERIOD_S),
        DEFAULT_PUSH_LOOP_PERIOD_S,
        "push.loop_period_s",
        min_value=0.01,
    )

    auto_off_cfg = yaml_config.get("auto_off", {}) or {}
    config["AUTO_OFF_PERIOD_S"] = _parse_float(
        auto_off_cfg.get("period_s", DEFAULT_AUTO_OFF_PERIOD_S),
        DEFAULT_AUTO_OFF_PERIOD_S,
        "auto_off.period_s",
        min_value=0.1,
    )

    transport_cfg = yaml_config.get("transport", {}) or {}
    config["TRANSPORT_BASE_URL"] = (
        _parse_optional_text(transport_cfg.get("base_url")) or DEFAULT_TRANSPORT_BASE_URL
    ).rstrip("/")
    config["TRANSPORT_APPLICATION_ID"] = _parse_optional_text(transport_cfg.get("application_id"))
    config["TRANSPORT_API_KEY"] = _parse_optional_text(transport_cfg.get("api_key"))
    config["TRANSPORT_F_PORT"] = _parse_int(
        transport_cfg.get("f_port", DEFAULT_TRANSPORT_F_PORT),
        DEFAULT_TRANSPORT_F_PORT,
        "transport.f_port",
        min_value=1,
        max_value=223,
    )
    config["TRANSPORT_CONFIG_F_PORT"] = _parse_int(
        transport_cfg.get("config_f_port", DEFAULT_TRANSPORT_CONFIG_F_PORT),
        DEFAULT_TRANSPORT_CONFIG_F_PORT,
        "transport.config_f_port",
        min_value=1,
        max_value=223,
    )
    config["TRANSPORT_CONFIG_DOWNLINKS_ENABLED"] = _parse_bool(
        transport_cfg.get("config_downlinks_enabled", True),
        True,
    )

    alarm_sync_cfg = yaml_config.get("alarm_sync", {}) or {}
    alarm_sync_base_url = _parse_optional_text(alarm_sync_cfg.get("base_url"))
    config["ALARM_SYNC_BASE_URL"] = alarm_sync_base_url.rstrip("/") if alarm_sync_base_url else None
    config["ALARM_SYNC_API_KEY"] = _parse_optional_text(alarm_sync_cfg.get("api_key"))
    config["ALARM_SYNC_TIMEOUT_S"] = _parse_float(
        alarm_sync_cfg.get("timeout_s", DEFAULT_ALARM_SYNC_TIMEOUT_S),
        DEFAULT_ALARM_SYNC_TIMEOUT_S,
        "alarm_sync.timeout_s",
        min_value=0.1,
    )

    devices = _normalize_fleet(yaml_config.get("fleet"), config["DEFAULT_AUTO_OFF_S"])
    config["DEVICES"] = devices
    config["DEVICE_IDS"] = tuple(device["id"] for device in devices)

    return config
