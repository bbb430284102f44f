"""Frame encoding for valve downlinks."""

import base64
import json

from runtime.errors import ValidationError


ACTION_CODES = {"OFF": 0x00, "ON": 0x01, "PULSE": 0x02}


def encode_command_frame(channel, action):
    """Return the 2-byte command frame [channel, action_code]."""
    if action not in ACTION_CODES:
        raise ValidationError(f"Cannot encode action '{action}'.", code="invalid_action")
    channel = int(channel)
    if channel < 0 or channel > 255:
        raise ValidationError(f"Channel {channel} does not fit in one byte.", code="invalid_channel")
    return bytes([channel, ACTION_CODES[action]])


def encode_config_frame(message):
    """Config messages (MODE, ALARM_CONFIG, AUTO_OFF_TIMER) travel as compact JSON."""
    return json.dumps(message, separators=(",", ":"), sort_keys=True).encode("utf-8")


def to_frm_payload(frame):
    return base64.b64encode(frame).decode("ascii")


def decode_command_frame(frm_payload):
    frame = base64.b64decode(frm_payload)
    if len(frame) != 2:
        raise ValidationError(f"Command frame must be 2 bytes, got {len(frame)}.", code="invalid_frame")
    actions_by_code = {code: action for action, code in ACTION_CODES.items()}
    if frame[1] not in actions_by_code:
        raise ValidationError(f"Unknown action code {frame[1]}.", code="invalid_frame")
    return frame[0], actions_by_code[frame[1]]
