"""Best-effort confirmation of alarm acknowledge/resolve to the supervisory backend."""

import logging

import requests

from runtime.errors import TransportError
from time_utils import serialize_iso_with_tz


class AlarmSyncClient:
    def __init__(self, base_url, api_key=None, *, timeout_s=5.0, session=None):
        self.base_url = str(base_url).rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config, session=None):
        """Return a client, or None when alarm sync is not configured."""
        base_url = config.get("ALARM_SYNC_BASE_URL")
        if not base_url:
            return None
        return cls(
            base_url,
            config.get("ALARM_SYNC_API_KEY"),
            timeout_s=config.get("ALARM_SYNC_TIMEOUT_S", 5.0),
            session=session,
        )

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, alarm, verb):
        url = f"{self.base_url}/actuators/{alarm['actuator_id']}/alarms/{alarm['alarm_id']}/{verb}"
        payload = {
            "acknowledged": bool(alarm.get("acknowledged")),
            "acknowledged_at": serialize_iso_with_tz(alarm.get("acknowledged_at")) or None,
            "acknowledged_by": alarm.get("acknowledged_by"),
            "resolved": bool(alarm.get("resolved")),
            "resolved_at": serialize_iso_with_tz(alarm.get("resolved_at")) or None,
        }
        try:
            response = self.session.post(url, json=payload, headers=self._headers(), timeout=self.timeout_s)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Alarm {verb} sync failed: {e}")
        logging.debug(f"AlarmSync: {verb} {alarm['alarm_id']} confirmed")
        return True

    def acknowledge(self, alarm):
        return self._post(alarm, "acknowledge")

    def resolve(self, alarm):
        return self._post(alarm, "resolve")
