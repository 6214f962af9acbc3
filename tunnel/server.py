"""
适配器服务器模块 - 监听与分发

此模块包含 AdapterServer 类，负责绑定监听地址、接受客户端连接，
并把每个连接交给 ConnectionHandler 在独立的协程中处理。

主要组件:
- AdapterServer: 管理监听套接字的生命周期

依赖:
- asyncio: 异步 I/O 操作
- common: RuntimeConfig 运行时配置
- tunnel.handler: ConnectionHandler 连接处理器

使用示例:
    >>> config = RuntimeConfig(listen_addr='127.0.0.1:8080', upstream_socks_addr='127.0.0.1:1080')
    >>> server = AdapterServer(config)
    >>> asyncio.run(server.serve_forever())
"""

import asyncio
import logging
from typing import Optional, Tuple

from common import RuntimeConfig
from tunnel.handler import ConnectionHandler

logger = logging.getLogger('http2socks-server')


class AdapterServer:
    """
    适配器服务器类 - 管理监听套接字和客户端连接

    工作流程:
    1. 安装事件循环异常处理器，accept 失败记录为警告后继续
    2. 绑定配置的监听地址
    3. 为每个客户端连接启动独立的 ConnectionHandler.handle 协程
    4. 进入 serve_forever 循环，直到被信号中断

    Attributes:
        config: RuntimeConfig，运行时配置
        handler: ConnectionHandler，所有连接共用的处理器（只读配置）
        server: asyncio.AbstractServer，start() 之后可用

    Note:
        - 各连接之间不共享可变状态，也不互相等待
        - 单个连接的错误不会影响监听循环
        - 绑定失败时 start() 抛出 OSError，由入口程序处理
    """

    def __init__(self, config: RuntimeConfig):
        """
        初始化适配器服务器

        Args:
            config: RuntimeConfig，运行时配置对象
        """
        self.config = config
        self.handler = ConnectionHandler(config)
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def address(self) -> Tuple[str, int]:
        """实际监听的地址（端口为 0 时可获得系统分配的端口）"""
        if self.server is None:
            raise RuntimeError("服务器尚未启动")
        sockname = self.server.sockets[0].getsockname()
        return sockname[0], sockname[1]

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        """
        事件循环异常处理器

        asyncio 在 accept 失败（例如文件描述符耗尽）时会调用异常处理器，
        随后自动恢复监听；这里把它记录为警告。其他情况交给默认处理器。
        """
        message = context.get('message', '')
        if 'accept' in message:
            logger.warning(f"接受连接失败: {message}: {context.get('exception')}")
            return
        loop.default_exception_handler(context)

    async def start(self) -> asyncio.AbstractServer:
        """
        绑定监听地址并开始接受连接

        Returns:
            asyncio.AbstractServer: 已开始监听的服务器

        Raises:
            OSError: 绑定失败（地址被占用、权限不足等）
        """
        host, port = self.config.listen_endpoint
        asyncio.get_running_loop().set_exception_handler(self._handle_loop_exception)

        self.server = await asyncio.start_server(
            self.handler.handle,
            host,
            port,
            reuse_address=True  # 允许重启后快速重新绑定端口
        )

        addr = self.address
        if self.config.forward_mode:
            logger.info(f"TCP 转发模式监听于 {addr[0]}:{addr[1]}")
            logger.info(f"所有流量转发到 SOCKS5: {self.config.upstream_socks_addr}")
        else:
            logger.info(f"HTTP 代理监听于 {addr[0]}:{addr[1]}")
            logger.info(f"上游 SOCKS5: {self.config.upstream_socks_addr}")
        return self.server

    async def serve_forever(self):
        """
        启动（如果尚未启动）并一直运行

        serve_forever 会阻塞直到被取消，例如收到 KeyboardInterrupt。
        """
        if self.server is None:
            await self.start()

        async with self.server:
            await self.server.serve_forever()

    async def close(self):
        """停止接受新连接"""
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            logger.info("服务器已停止")
