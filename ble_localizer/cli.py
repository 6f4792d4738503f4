from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import yaml

from .config_manager import ConfigManager
from .distance import make_params
from .errors import InvalidAnchorIdError, LocatorError
from .models import is_mac_address
from .mqtt_processor import MQTTDataProcessor
from .tracking_engine import TrackingEngine


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _load_engine(config: ConfigManager) -> TrackingEngine:
    return TrackingEngine.from_config(config)


def _save_anchors(config: ConfigManager, engine: TrackingEngine) -> None:
    engine.registry.save(config.get_anchor_db_path())


def run_mqtt(args):
    config = ConfigManager(args.config)
    processor = MQTTDataProcessor(config)

    t = threading.Thread(target=processor.start_mqtt_client, name="mqtt-loop")
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        processor.stop_mqtt_client()

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()
    if processor.connect_error is not None:
        print(f"错误: MQTT连接失败: {processor.connect_error}", file=sys.stderr)
        return 1
    return 0


def list_anchors(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    anchors = engine.registry.all()
    if args.floor is not None:
        anchors = [a for a in anchors if a.floor == args.floor]
    if not anchors:
        print("没有锚点")
        return 0
    for anchor in anchors:
        if anchor.position is None:
            pos_text = "未放置"
        else:
            pos_text = f"({round(anchor.position.x)}, {round(anchor.position.y)}) - {config.floor_name(anchor.floor)}"
        print(f"{anchor.id}\t{pos_text}")
    return 0


def add_anchor(args):
    if not is_mac_address(args.mac):
        raise InvalidAnchorIdError(f"MAC地址格式非法 (例: AA:BB:CC:DD:EE:FF): {args.mac}")
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    anchor = engine.add_anchor(args.mac, args.floor)
    _save_anchors(config, engine)
    print(f"已添加锚点 {anchor.id}")
    return 0


def place_anchor(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    anchor = engine.set_anchor_position(args.mac, args.x, args.y, args.floor)
    _save_anchors(config, engine)
    print(f"锚点 {anchor.id} 已放置于 ({args.x}, {args.y}) - {config.floor_name(anchor.floor)}")
    return 0


def remove_anchor(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    if not engine.remove_anchor(args.mac):
        print(f"锚点不存在: {args.mac}")
        return 0
    _save_anchors(config, engine)
    print(f"已删除锚点 {args.mac.upper()}")
    return 0


def clear_anchors(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    engine.clear_anchors()
    _save_anchors(config, engine)
    print("已清空所有锚点")
    return 0


def set_params(args):
    config = ConfigManager(args.config)
    rssi_config = config.get_rssi_model_config()
    reference_rssi = args.reference_rssi if args.reference_rssi is not None else rssi_config["reference_rssi"]
    path_loss = args.path_loss if args.path_loss is not None else rssi_config["path_loss_exponent"]
    params = make_params(reference_rssi, path_loss)
    config.set_rssi_model_config(params.reference_rssi, params.path_loss_exponent)
    print(f"RSSI模型参数: reference_rssi={params.reference_rssi}, path_loss_exponent={params.path_loss_exponent}")
    return 0


def export_record(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    with open(args.path, "w", encoding="utf-8") as f:
        yaml.safe_dump(engine.to_record(), f, allow_unicode=True, sort_keys=False)
    print(f"已导出到 {args.path}")
    return 0


def import_record(args):
    config = ConfigManager(args.config)
    engine = _load_engine(config)
    with open(args.path, "r", encoding="utf-8") as f:
        record = yaml.safe_load(f) or {}
    engine.load_record(record)
    _save_anchors(config, engine)
    params = engine.distance_model.params
    config.set_rssi_model_config(params.reference_rssi, params.path_loss_exponent)
    print(f"已导入 {len(engine.registry)} 个锚点")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ble-localizer", description="BLE Localizer CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_LOCALIZER_CONFIG")
    parser.add_argument("--log-level", default="INFO", help="日志级别")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 定位服务")
    p_run.set_defaults(func=run_mqtt)

    p_list = sub.add_parser("anchors", help="列出锚点")
    p_list.add_argument("--floor", type=int, default=None)
    p_list.set_defaults(func=list_anchors)

    p_add = sub.add_parser("add-anchor", help="添加锚点")
    p_add.add_argument("mac")
    p_add.add_argument("--floor", type=int, default=0)
    p_add.set_defaults(func=add_anchor)

    p_place = sub.add_parser("place-anchor", help="设置锚点平面坐标")
    p_place.add_argument("mac")
    p_place.add_argument("x", type=float)
    p_place.add_argument("y", type=float)
    p_place.add_argument("--floor", type=int, default=0)
    p_place.set_defaults(func=place_anchor)

    p_remove = sub.add_parser("remove-anchor", help="删除锚点")
    p_remove.add_argument("mac")
    p_remove.set_defaults(func=remove_anchor)

    p_clear = sub.add_parser("clear-anchors", help="清空所有锚点")
    p_clear.set_defaults(func=clear_anchors)

    p_params = sub.add_parser("set-params", help="设置RSSI距离模型参数")
    p_params.add_argument("--reference-rssi", type=float, default=None, help="1米处RSSI (dBm)")
    p_params.add_argument("--path-loss", type=float, default=None, help="路径损耗指数")
    p_params.set_defaults(func=set_params)

    p_export = sub.add_parser("export", help="导出锚点与模型参数")
    p_export.add_argument("path")
    p_export.set_defaults(func=export_record)

    p_import = sub.add_parser("import", help="导入锚点与模型参数（全量覆盖）")
    p_import.add_argument("path")
    p_import.set_defaults(func=import_record)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    # 无子命令时默认启动服务
    func = getattr(args, "func", run_mqtt)
    try:
        return func(args)
    except LocatorError as e:
        print(f"错误: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
