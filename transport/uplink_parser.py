"""Translate network-server uplink webhooks into push events."""

from runtime.errors import ValidationError


def parse_uplink(payload):
    """
    Build push events from a The Things Stack `uplink_message` webhook body.

    The decoded payload may carry a `valves` list of `{channel, status}`
    entries; everything else in it is treated as telemetry metrics. Radio
    metadata (rssi, snr) comes from the first gateway in `rx_metadata`.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Uplink payload must be a mapping.", code="invalid_uplink")
    device_id = (payload.get("end_device_ids") or {}).get("device_id")
    uplink = payload.get("uplink_message")
    if not device_id or not isinstance(uplink, dict):
        raise ValidationError("Uplink payload lacks end_device_ids.device_id or uplink_message.", code="invalid_uplink")

    received_at = uplink.get("received_at") or payload.get("received_at")
    decoded = uplink.get("decoded_payload")
    decoded = dict(decoded) if isinstance(decoded, dict) else {}
    rx_metadata = uplink.get("rx_metadata")
    first_gateway = {}
    if isinstance(rx_metadata, list) and rx_metadata and isinstance(rx_metadata[0], dict):
        first_gateway = rx_metadata[0]

    events = []
    valves = decoded.pop("valves", None)
    if not isinstance(valves, list):
        valves = []
    if decoded or first_gateway:
        events.append(
            {
                "device_id": device_id,
                "telemetry": {
                    "received_at": received_at,
                    "metrics": decoded,
                    "rssi": first_gateway.get("rssi"),
                    "snr": first_gateway.get("snr"),
                },
            }
        )
    if valves:
        events.append(
            {
                "device_id": device_id,
                "observed_at": received_at,
                "status_updates": [
                    {"channel": valve.get("channel"), "status": valve.get("status")}
                    for valve in valves
                    if isinstance(valve, dict)
                ],
            }
        )
    return events
