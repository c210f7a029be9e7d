from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests

from growroom.core import config
from growroom.core.errors import DataUnavailable
from growroom.drivers.base import DeviceGateway, DispatchResult

logger = logging.getLogger(__name__)


def _normalize_status(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    # Some connectors wrap the reading: {"success": true, "status": {...}}
    inner = payload.get("status")
    if isinstance(inner, dict):
        merged = dict(payload)
        merged.update(inner)
        payload = merged
    state = payload.get("state")
    if state is None:
        state = payload.get("switch")
    out = dict(payload)
    if isinstance(state, str):
        out["state"] = state.lower()
    return out


class HttpDeviceGateway(DeviceGateway):
    """
    Talks to the per-connector device services over HTTP:

      GET  {base}/device/{external_id}/status
      POST {base}/device/{external_id}/power   {"state": "on"|"off"}
      POST {base}/snapshot                     {"quality": "high"}
    """

    def __init__(
        self,
        connector_urls: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.connector_urls = dict(connector_urls or config.CONNECTOR_URLS)
        self.timeout = float(timeout if timeout is not None else config.DEVICE_TIMEOUT_SECONDS)
        self.session = session or requests.Session()

    def _base_url(self, device: Any) -> str:
        connector = str(getattr(device, "connector", "") or "").upper()
        base = self.connector_urls.get(connector)
        if not base:
            raise DataUnavailable(f"no device service configured for connector {connector or '?'}")
        return base.rstrip("/")

    def _device_path(self, device: Any) -> str:
        ext = getattr(device, "external_id", None) or getattr(device, "id", None)
        return f"{self._base_url(device)}/device/{ext}"

    def get_status(self, device: Any) -> Dict[str, Any]:
        url = f"{self._device_path(device)}/status"
        try:
            res = self.session.get(url, timeout=self.timeout)
            res.raise_for_status()
            return _normalize_status(res.json())
        except requests.RequestException as e:
            raise DataUnavailable(f"status request failed for device {getattr(device, 'id', '?')}: {e}")
        except ValueError as e:
            raise DataUnavailable(f"invalid status payload for device {getattr(device, 'id', '?')}: {e}")

    def get_current_value(self, device: Any, prop: str) -> float:
        status = self.get_status(device)
        if status.get("online") is False:
            raise DataUnavailable(f"device {getattr(device, 'id', '?')} is offline")
        if prop == "state":
            state = status.get("state")
            if state not in ("on", "off"):
                raise DataUnavailable(f"device {getattr(device, 'id', '?')} reports no on/off state")
            return 1.0 if state == "on" else 0.0
        raw = status.get(prop)
        if raw is None and isinstance(status.get("sensors"), dict):
            raw = status["sensors"].get(prop)
        if raw is None:
            raise DataUnavailable(f"device {getattr(device, 'id', '?')} has no reading for {prop}")
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise DataUnavailable(f"device {getattr(device, 'id', '?')} reported non-numeric {prop}={raw!r}")

    def get_device_online_status(self, device: Any) -> bool:
        try:
            status = self.get_status(device)
        except DataUnavailable:
            return False
        return bool(status.get("online", True))

    def _power(self, device: Any, state: str) -> DispatchResult:
        url = f"{self._device_path(device)}/power"
        try:
            res = self.session.post(url, json={"state": state}, timeout=self.timeout)
            body = res.json() if res.content else {}
        except requests.RequestException as e:
            return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")
        except ValueError:
            body = {}
        if res.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False):
            msg = body.get("message") if isinstance(body, dict) else None
            return DispatchResult(success=False, error=msg or f"HTTP {res.status_code}", detail={"state": state})
        return DispatchResult(success=True, detail={"state": state})

    def dispatch(self, device: Any, action_type: str, params: Optional[Dict[str, Any]] = None) -> DispatchResult:
        action = str(action_type)
        if action in ("TURN_ON", "TRIGGER_IRRIGATION"):
            return self._power(device, "on")
        if action == "TURN_OFF":
            return self._power(device, "off")
        if action == "TOGGLE":
            try:
                current = self.get_current_value(device, "state")
            except DataUnavailable as e:
                return DispatchResult(success=False, error=str(e))
            return self._power(device, "off" if current >= 1.0 else "on")
        if action == "CAPTURE_PHOTO":
            try:
                res = self.session.post(
                    f"{self._base_url(device)}/snapshot",
                    json={"quality": (params or {}).get("quality", "high")},
                    timeout=self.timeout,
                )
                res.raise_for_status()
                body = res.json() if res.content else {}
            except (requests.RequestException, ValueError, DataUnavailable) as e:
                return DispatchResult(success=False, error=f"{type(e).__name__}: {e}")
            return DispatchResult(success=True, detail={"filename": body.get("filename") if isinstance(body, dict) else None})
        return DispatchResult(success=False, error=f"unsupported action type {action}")
