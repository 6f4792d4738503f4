from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Optional, Union

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .config_manager import ConfigManager
from .models import PositionUpdate, RssiMessage
from .tracking_engine import TrackedEntity, TrackingEngine


logger = logging.getLogger(__name__)

LOOP_TIMEOUT_S = 0.1
RECONNECT_DELAY_S = 1.0


class MQTTDataProcessor:
    """
    订阅锚点RSSI主题并驱动定位引擎。

    网络循环由本类手动调用 client.loop()，消息回调和引擎的周期清理都在这一个线程里执行，
    引擎无需加锁；其他线程只能通过 stop_mqtt_client() 请求退出。
    """

    def __init__(self, config_manager: ConfigManager, engine: Optional[TrackingEngine] = None):
        self.config_manager = config_manager
        self.engine = engine or TrackingEngine.from_config(config_manager)
        self.engine.on_refresh(self._on_sweep)

        self.client: Optional[mqtt.Client] = None
        self.current_topic: Optional[str] = None
        self._stop = threading.Event()
        self.connect_error: Optional[OSError] = None
        self.fn_position: Optional[Callable[[PositionUpdate], None]] = None

    def on_position(self, fn_position: Callable[[PositionUpdate], None]) -> None:
        """注册位置更新回调"""
        assert callable(fn_position), "fn_position must be a callable function"
        self.fn_position = fn_position

    # ---------- Core processing ----------
    def handle_message(self, topic: str, payload: Union[bytes, str]) -> Optional[PositionUpdate]:
        message = RssiMessage.parse(topic, payload)
        if message is None:
            logger.warning("丢弃格式错误的消息: topic=%s payload=%r", topic, payload)
            return None

        entity = self.engine.ingest(message.anchor_id, message.device_id, message.rssi)
        if entity is None or entity.position is None:
            return None

        update = self._position_update(entity)
        self.publish_position(update)
        if self.fn_position:
            self.fn_position(update)
        return update

    @staticmethod
    def _position_update(entity: TrackedEntity) -> PositionUpdate:
        assert entity.position is not None
        return PositionUpdate(
            device_id=entity.id,
            x=entity.position.x,
            y=entity.position.y,
            floor=entity.floor,
            anchor_count=entity.anchor_count,
            timestamp=entity.last_seen_at,
        )

    def publish_position(self, update: PositionUpdate) -> None:
        if self.client is None:
            return
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("uplink_topic", "ble/device/{deviceId}/position")
        self.client.publish(topic.format(deviceId=update.device_id), update.to_json())

    def _on_sweep(self, engine: TrackingEngine) -> None:
        located = sum(1 for e in engine.list_entities() if e.is_located)
        logger.debug("活跃设备 %d 个，其中已定位 %d 个", len(engine), located)

    # ---------- MQTT ----------
    def build_client(self) -> mqtt.Client:
        mqtt_config = self.config_manager.get_mqtt_config()
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"ble_localizer_{uuid.uuid4().hex[:8]}",
            transport=mqtt_config.get("transport", "tcp"),
        )
        if mqtt_config.get("username"):
            client.username_pw_set(mqtt_config["username"], mqtt_config.get("password") or None)
        if mqtt_config.get("tls"):
            client.tls_set()
        client.on_connect = self.on_connect
        client.on_disconnect = self.on_disconnect
        client.on_message = self.on_message
        return client

    def start_mqtt_client(self) -> bool:
        """运行网络循环直到 stop_mqtt_client()；首次连接失败时返回 False"""
        self._stop.clear()
        self.connect_error = None
        self.client = self.build_client()
        mqtt_config = self.config_manager.get_mqtt_config()
        try:
            self.client.connect(mqtt_config["ip"], int(mqtt_config["port"]), 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)
            self.connect_error = e
            return False

        self.engine.enable()
        try:
            while not self._stop.is_set():
                rc = self.client.loop(timeout=LOOP_TIMEOUT_S)
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    self._reconnect(rc)
                self.engine.tick()
        finally:
            self.engine.disable()
            self.client.disconnect()
            logger.info("MQTT连接已断开")
        return True

    def _reconnect(self, rc) -> None:
        logger.warning("MQTT网络循环异常 (rc=%s)，%.0f 秒后重连", rc, RECONNECT_DELAY_S)
        # 重连等待期间清理仍按时执行
        self.engine.tick()
        if self._stop.wait(RECONNECT_DELAY_S):
            return
        try:
            self.client.reconnect()
        except OSError as e:
            logger.error("MQTT重连失败: %s", e)

    def stop_mqtt_client(self):
        self._stop.set()

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error("连接失败，返回码: %s", reason_code)
            return
        logger.info("成功连接到MQTT服务器")
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("downlink_topic", "esp/+/ble/+/rssi")
        client.subscribe(topic)
        self.current_topic = topic
        logger.info("已订阅主题: %s", topic)

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.info("MQTT连接关闭: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            self.handle_message(msg.topic, msg.payload)
        except Exception as e:
            logger.exception("处理消息时出错: %s", e)
