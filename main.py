"""
入口转发

定位服务以包与 CLI 的形式提供：
  - 包名: ble_localizer
  - CLI: ble-localizer

此文件仅用于兼容 `python main.py` 的运行方式，会转发到 `ble_localizer.cli:main`。
"""

import sys

from ble_localizer.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
