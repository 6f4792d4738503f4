from __future__ import annotations

import copy
import logging
import os
import yaml

from typing import Callable, Any


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except (TypeError, ValueError):
            return v
    return default


def _as_bool(v: str) -> bool:
    return v.lower() in ("1", "true", "yes")


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_LOCALIZER_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "transport": _env_or_default("BLE_MQTT_TRANSPORT", "tcp"),
                "tls": _env_or_default("BLE_MQTT_TLS", False, _as_bool),
                "username": _env_or_default("BLE_MQTT_USERNAME", ""),
                "password": _env_or_default("BLE_MQTT_PASSWORD", ""),
                "downlink_topic": _env_or_default("BLE_MQTT_DOWNLINK_TOPIC", "esp/+/ble/+/rssi"),
                "uplink_topic": _env_or_default(
                    "BLE_MQTT_UPLINK_TOPIC", "ble/device/{deviceId}/position"
                ),
            },
            "rssi_model": {
                "reference_rssi": _env_or_default("BLE_RSSI_AT_1M", -59.0, float),
                "path_loss_exponent": _env_or_default("BLE_RSSI_PATH_LOSS", 2.5, float),
            },
            "tracking": {
                "staleness_ms": _env_or_default("BLE_TRACK_STALENESS_MS", 5000, int),
                "inactivity_ms": _env_or_default("BLE_TRACK_INACTIVITY_MS", 30000, int),
                "sweep_interval_s": _env_or_default("BLE_TRACK_SWEEP_INTERVAL", 1.0, float),
                "solver": _env_or_default("BLE_TRACK_SOLVER", "linearized"),
            },
            "floors": ["ISIS 10A", "ISIS R+1"],
            "paths": {
                "anchor_db": _env_or_default(
                    "BLE_PATH_ANCHOR_DB", os.path.join(".", "anchors", "anchors.csv")
                ),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
                self.config = loaded if isinstance(loaded, dict) else {}
                self._merge_default_config()
            else:
                self.config = copy.deepcopy(self.default_config)
                self.save_config()
        except (OSError, yaml.YAMLError):
            # 发生异常时回退到默认配置
            logger.exception("加载配置文件失败: %s", self.config_file)
            self.config = copy.deepcopy(self.default_config)

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError:
            logger.exception("保存配置文件失败: %s", self.config_file)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_tracking_config(self):
        return self.config["tracking"]

    def get_floors(self) -> list[str]:
        return list(self.config.get("floors") or [])

    def floor_name(self, floor: int) -> str:
        floors = self.get_floors()
        if 0 <= floor < len(floors):
            return floors[floor]
        return f"#{floor}"

    def get_paths(self):
        return self.config.get("paths", {})

    def get_anchor_db_path(self):
        return self.get_paths()["anchor_db"]

    def set_mqtt_config(self, ip, port, uplink_topic=None, downlink_topic=None):
        self.config["mqtt"]["ip"] = ip
        self.config["mqtt"]["port"] = port
        if uplink_topic is not None:
            self.config["mqtt"]["uplink_topic"] = uplink_topic
        if downlink_topic is not None:
            self.config["mqtt"]["downlink_topic"] = downlink_topic
        self.save_config()

    def set_rssi_model_config(self, reference_rssi: float, path_loss_exponent: float):
        self.config["rssi_model"]["reference_rssi"] = float(reference_rssi)
        self.config["rssi_model"]["path_loss_exponent"] = float(path_loss_exponent)
        self.save_config()

    def set_tracking_config(self, **kwargs):
        self.config["tracking"].update(kwargs)
        self.save_config()
