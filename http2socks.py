#!/usr/bin/env python3
"""
HTTP 转 SOCKS5 适配代理

版本: 1.0.0

接受 HTTP 代理请求（CONNECT 隧道和绝对形式请求）或任意 TCP 连接，
通过上游 SOCKS5 服务器转发。适用于只能使用 HTTP 代理、但必须经由
SOCKS5 出口的工具。

运行模式:
- HTTP 模式（默认）: 解析 HTTP 代理请求，由适配器完成 SOCKS5 握手
- 转发模式（-f）: 原始 TCP 转发到 SOCKS5 服务器，客户端自己说 SOCKS5

用法:
    http2socks -l 127.0.0.1:8080 -s 127.0.0.1:1080
    http2socks -f -l 127.0.0.1:1081 -s 10.0.0.1:1080
    http2socks -c config.yaml -d
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict

from common import (
    DEFAULT_LISTEN_ADDR, DEFAULT_MAX_HEADER_SIZE, DEFAULT_SOCKS_ADDR,
    RuntimeConfig, load_config,
)
from logger import setup_logging
from tunnel.server import AdapterServer

__version__ = '1.0.0'

logger = logging.getLogger('http2socks')


def build_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器"""
    parser = argparse.ArgumentParser(
        prog='http2socks',
        description='HTTP 代理转 SOCKS5 适配器'
    )
    parser.add_argument('--listen', '-l', default=None,
                        help=f'本地监听地址 (默认: {DEFAULT_LISTEN_ADDR})')
    parser.add_argument('--socks', '-s', default=None,
                        help=f'上游 SOCKS5 服务器地址 (默认: {DEFAULT_SOCKS_ADDR})')
    parser.add_argument('--forward', '-f', action='store_true', default=None,
                        help='转发模式: 原始 TCP 直接转发到 SOCKS5，不处理 HTTP')
    parser.add_argument('--config', '-c', default=None, help='YAML 配置文件路径')
    parser.add_argument('--handshake-timeout', type=float, default=None,
                        help='SOCKS5 连接和握手超时 (秒，默认不限制)')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def build_config(args: argparse.Namespace, config_data: Dict[str, Any]) -> RuntimeConfig:
    """
    合并命令行参数和配置文件

    优先级: 命令行参数 > 配置文件 adapter 段 > 默认值

    Args:
        args: 命令行参数
        config_data: 配置文件内容

    Returns:
        RuntimeConfig: 运行时配置

    Raises:
        ValueError: 配置值无效
    """
    adapter_conf = config_data.get('adapter') or {}
    if not isinstance(adapter_conf, dict):
        raise ValueError("配置文件中的 adapter 段必须是映射")

    forward = args.forward if args.forward is not None else adapter_conf.get('forward', False)
    timeout = args.handshake_timeout
    if timeout is None:
        timeout = adapter_conf.get('handshake_timeout')

    return RuntimeConfig(
        listen_addr=str(args.listen or adapter_conf.get('listen', DEFAULT_LISTEN_ADDR)),
        upstream_socks_addr=str(args.socks or adapter_conf.get('socks', DEFAULT_SOCKS_ADDR)),
        forward_mode=bool(forward),
        handshake_timeout=float(timeout) if timeout is not None else None,
        max_header_size=int(adapter_conf.get('max_header_size', DEFAULT_MAX_HEADER_SIZE)),
    )


async def run_adapter(config: RuntimeConfig) -> int:
    """
    运行适配器，直到被中断

    Args:
        config: 运行时配置

    Returns:
        int: 退出码，绑定失败时为 1
    """
    server = AdapterServer(config)
    try:
        await server.start()
    except OSError as e:
        logger.error(f"无法绑定监听地址 {config.listen_addr}: {e}")
        return 1

    await server.serve_forever()
    return 0


def main(argv=None) -> int:
    """
    主函数 - 解析命令行参数并启动适配器

    命令行参数:
        --listen, -l: 本地监听地址 (默认: 127.0.0.1:8080)
        --socks, -s: 上游 SOCKS5 服务器 (默认: 127.0.0.1:1080)
        --forward, -f: 转发模式
        --config, -c: YAML 配置文件
        --handshake-timeout: SOCKS5 握手超时
        --debug, -d: 启用调试模式
    """
    args = build_parser().parse_args(argv)

    config_data: Dict[str, Any] = {}
    config_missing = False
    if args.config:
        try:
            config_data = load_config(args.config)
        except FileNotFoundError:
            config_missing = True

    log_conf = config_data.get('logging')
    setup_logging(log_conf if isinstance(log_conf, dict) else None, debug=args.debug)

    if config_missing:
        logger.warning(f"配置文件 {args.config} 未找到,使用默认配置")
    if args.debug:
        logger.info("启用调试模式")

    try:
        config = build_config(args, config_data)
    except (TypeError, ValueError) as e:
        logger.error(f"无效的配置: {e}")
        return 1

    try:
        return asyncio.run(run_adapter(config))
    except KeyboardInterrupt:
        logger.info("收到键盘中断信号,正在关闭")
        return 0


if __name__ == '__main__':
    sys.exit(main())
