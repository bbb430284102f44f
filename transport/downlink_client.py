"""
Downlink client for a LoRaWAN network server (The Things Stack HTTP API).

Commands are queued with the network server's `down/push` endpoint. A 2xx
response means the network server accepted the downlink; it says nothing
about delivery to the device.
"""

import logging
import uuid

import requests

from runtime.defaults import DEFAULT_DISPATCH_TIMEOUT_S
from runtime.errors import TransportError
from transport.downlink_codec import encode_command_frame, encode_config_frame, to_frm_payload


class DownlinkClient:
    """Thin wrapper around the network server's application downlink queue."""

    def __init__(
        self,
        base_url,
        application_id,
        api_key,
        *,
        f_port=10,
        config_f_port=11,
        timeout_s=DEFAULT_DISPATCH_TIMEOUT_S,
        session=None,
    ):
        self.base_url = str(base_url).rstrip("/")
        self.application_id = application_id
        self.api_key = api_key
        self.f_port = int(f_port)
        self.config_f_port = int(config_f_port)
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config, session=None):
        return cls(
            config.get("TRANSPORT_BASE_URL"),
            config.get("TRANSPORT_APPLICATION_ID"),
            config.get("TRANSPORT_API_KEY"),
            f_port=config.get("TRANSPORT_F_PORT", 10),
            config_f_port=config.get("TRANSPORT_CONFIG_F_PORT", 11),
            timeout_s=config.get("DISPATCH_TIMEOUT_S", DEFAULT_DISPATCH_TIMEOUT_S),
            session=session,
        )

    def is_configured(self):
        return bool(self.base_url and self.application_id and self.api_key)

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _push_url(self, device_id):
        return f"{self.base_url}/as/applications/{self.application_id}/devices/{device_id}/down/push"

    def _push(self, device_id, f_port, frame):
        if not self.is_configured():
            raise TransportError("Downlink transport is not configured (base_url, application_id, api_key).")

        correlation_id = f"manifold-sync:{uuid.uuid4().hex[:12]}"
        payload = {
            "downlinks": [
                {
                    "f_port": int(f_port),
                    "frm_payload": to_frm_payload(frame),
                    "confirmed": False,
                    "priority": "NORMAL",
                    "correlation_ids": [correlation_id],
                }
            ]
        }
        try:
            response = self.session.post(
                self._push_url(device_id),
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logging.error(f"Downlink: network server rejected downlink for {device_id} - {e}")
            raise TransportError(f"Downlink rejected: {e}")
        except requests.exceptions.RequestException as e:
            logging.error(f"Downlink: request for {device_id} failed - {e}")
            raise TransportError(f"Downlink request failed: {e}")
        logging.debug(f"Downlink: queued {correlation_id} for {device_id} on f_port {f_port}")
        return correlation_id

    def send(self, device_id, channel, action):
        """Queue a valve command. Returns the correlation id (truthy) on acceptance."""
        return self._push(device_id, self.f_port, encode_command_frame(channel, action))

    def send_config(self, device_id, message):
        """Queue a device configuration message."""
        return self._push(device_id, self.config_f_port, encode_config_frame(message))
