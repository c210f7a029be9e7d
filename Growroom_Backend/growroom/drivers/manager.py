import logging
import threading
from typing import Optional

from growroom.drivers.base import DeviceGateway
from growroom.drivers.http_gateway import HttpDeviceGateway

logger = logging.getLogger(__name__)


class GatewayManager:
    """
    Holds the process-wide device gateway.
    Tests and embedders swap it with `set_gateway`.
    """

    _lock = threading.Lock()
    _gateway: Optional[DeviceGateway] = None

    @classmethod
    def get_gateway(cls) -> DeviceGateway:
        with cls._lock:
            if cls._gateway is None:
                cls._gateway = HttpDeviceGateway()
                logger.info("device gateway initialised: %s", type(cls._gateway).__name__)
            return cls._gateway

    @classmethod
    def set_gateway(cls, gateway: Optional[DeviceGateway]) -> None:
        with cls._lock:
            cls._gateway = gateway
