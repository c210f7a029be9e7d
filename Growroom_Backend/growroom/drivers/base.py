from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class DispatchResult:
    success: bool
    error: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class DeviceGateway(ABC):
    """
    Boundary to the physical device layer.

    Implementations talk to the per-vendor device services. The engine only
    relies on this interface; it never retries commands itself.
    Devices are passed as objects exposing `id`, `connector` and `external_id`.
    """

    @abstractmethod
    def get_current_value(self, device: Any, prop: str) -> float:
        """
        Return the current numeric reading of `prop` on the device.
        Raises DataUnavailable when there is no reading (offline, timeout,
        property not reported). `state` is reported as 1 (on) / 0 (off).
        """
        pass

    @abstractmethod
    def get_device_online_status(self, device: Any) -> bool:
        pass

    @abstractmethod
    def dispatch(self, device: Any, action_type: str, params: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Send one command. Failures are returned, not raised.
        action_type: TURN_ON, TURN_OFF, TOGGLE, CAPTURE_PHOTO, TRIGGER_IRRIGATION
        """
        pass
