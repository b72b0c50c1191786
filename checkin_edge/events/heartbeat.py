"""
Status heartbeats over MQTT.

The device periodically publishes its observability snapshot (queue depth,
last sync, tracker guidance) to ``checkin/<device_id>/health`` so a
fleet dashboard can spot kiosks that stopped syncing. Heartbeats are
best effort: QoS 1, never queued, and a broker outage only produces a
warning.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from ..config import MqttConfig
from ..core.errors import log_exception
from ..models.event import StatusModel


class StatusHeartbeat:
    """
    Parameters
    ----------
    config: MqttConfig
        Broker location and heartbeat interval.
    device_id: str
        Used in the topic and the client id.
    status_provider: Callable[[], StatusModel]
        Returns the snapshot to publish.
    client: Optional[mqtt.Client]
        Pre-built client; one is created from ``config`` when omitted.
    """

    def __init__(
        self,
        config: MqttConfig,
        device_id: str,
        status_provider: Callable[[], StatusModel],
        *,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.config = config
        self.device_id = device_id
        self.status_provider = status_provider
        self.topic = f"checkin/{device_id}/health"
        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"checkin-{device_id}",
        )
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self._connected = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if not getattr(reason_code, "is_failure", False):
            self.logger.info("Connected to MQTT broker %s:%s", self.config.host, self.config.port)
            self._connected.set()
        else:
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self.logger.warning("MQTT disconnected: %s", reason_code)
        self._connected.clear()

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def publish_once(self) -> bool:
        status = self.status_provider()
        result = self.client.publish(self.topic, status.model_dump_json(), qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning(
                "Failed to publish heartbeat rc=%s topic=%s",
                mqtt.error_string(result.rc),
                self.topic,
            )
            return False
        return True

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        # connect_async lets the network loop keep retrying in the background.
        self.client.connect_async(self.config.host, int(self.config.port), keepalive=60)
        self.client.loop_start()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="StatusHeartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
        self.client.loop_stop()
        try:
            self.client.disconnect()
        except Exception as exc:
            log_exception(self.logger, "MQTT disconnect failed", exc)

    def _loop(self) -> None:
        interval = max(5, int(self.config.heartbeat_interval_sec))
        while not self._stop_event.is_set():
            if self.is_connected():
                try:
                    self.publish_once()
                except Exception as exc:
                    log_exception(self.logger, "Heartbeat publish failed", exc)
            self._stop_event.wait(timeout=interval)


__all__ = ['StatusHeartbeat']
