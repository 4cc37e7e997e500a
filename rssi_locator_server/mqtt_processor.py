from __future__ import annotations

import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .engine import LocationEngine
from .models import Estimate, Observation
from .publisher import Subscription


logger = logging.getLogger(__name__)


def station_id_from_topic(topic_filter: str, topic: str) -> Optional[str]:
    """
    Extract the station id from ``topic`` using the first ``+`` level of ``topic_filter``.

    station_id_from_topic("sniffer/+/device", "sniffer/kitchen/device") -> "kitchen"
    """
    filter_parts = topic_filter.split("/")
    topic_parts = topic.split("/")
    if len(filter_parts) != len(topic_parts):
        return None
    station_id = None
    for want, got in zip(filter_parts, topic_parts):
        if want == "+":
            if station_id is None:
                station_id = got
        elif want != got:
            return None
    return station_id or None


class MQTTDataProcessor:
    """Bridges the broker and the engine: sniffer topics in, position updates out."""

    def __init__(self, config_manager: ConfigManager, engine: LocationEngine):
        self.config_manager = config_manager
        self.engine = engine
        mqtt_config = self.config_manager.get_mqtt_config()
        self.downlink_topic = mqtt_config.get("downlink_topic", "sniffer/+/device")
        self.uplink_topic = mqtt_config.get("uplink_topic", "locator/device/{deviceId}/position")
        self.qos = int(mqtt_config.get("qos", 0))
        self.client: Optional[mqtt.Client] = None
        self._subscription: Optional[Subscription] = None
        self._forwarder: Optional[threading.Thread] = None

    # ---------- Core processing ----------
    def handle_payload(self, topic: str, payload: bytes) -> bool:
        """Turn one broker message into an observation and hand it to the engine."""
        station_id = station_id_from_topic(self.downlink_topic, topic)
        if station_id is None:
            logger.warning("Ignoring message on unexpected topic %s", topic)
            return False
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Ignoring non UTF-8 payload from station %s", station_id)
            return False
        observation = Observation.parse(text, station_id, received_at=self.engine.clock())
        if observation is None:
            logger.warning("Malformed payload from station %s: %s", station_id, text[:200])
            return False
        return self.engine.ingest(observation)

    def publish_estimate(self, estimate: Estimate) -> None:
        if self.client is None:
            return
        topic = self.uplink_topic.format(deviceId=estimate.device_id)
        info = self.client.publish(topic, estimate.to_json(), qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug("Publishing update for %s failed: rc=%s", estimate.device_id, info.rc)

    def _forward_updates(self, subscription: Subscription) -> None:
        for estimate in subscription:
            try:
                self.publish_estimate(estimate)
            except Exception as e:
                logger.exception("Forwarding update for %s failed: %s", estimate.device_id, e)

    # ---------- MQTT ----------
    def _create_client(self) -> mqtt.Client:
        mqtt_config = self.config_manager.get_mqtt_config()
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=mqtt_config.get("client_id", "rssi-locator-server"),
        )
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        return client

    def start_mqtt_client(self) -> None:
        """Connect and block in the network loop until ``stop_mqtt_client`` is called."""
        self.client = self._create_client()
        self._subscription = self.engine.publisher.subscribe(name="mqtt-uplink")
        self._forwarder = threading.Thread(
            target=self._forward_updates,
            args=(self._subscription,),
            name="mqtt-uplink",
            daemon=True,
        )
        self._forwarder.start()

        mqtt_config = self.config_manager.get_mqtt_config()
        try:
            self.client.connect_async(
                mqtt_config["ip"], int(mqtt_config["port"]), int(mqtt_config.get("keepalive", 60))
            )
            logger.info("Connecting to MQTT broker %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever(retry_first_connection=True)
        except (OSError, ValueError) as e:
            logger.error("MQTT connection error: %s", e)
            raise

    def stop_mqtt_client(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self.client is not None:
            self.client.disconnect()
            logger.info("MQTT connection closed")
        if self._forwarder is not None:
            self._forwarder.join(timeout=5)
            self._forwarder = None

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        client.subscribe(self.downlink_topic, qos=self.qos)
        logger.info("Connected to MQTT broker, subscribed to %s", self.downlink_topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("Disconnected from MQTT broker: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            self.handle_payload(msg.topic, msg.payload)
        except Exception as e:
            logger.exception("Error while processing message on %s: %s", msg.topic, e)
