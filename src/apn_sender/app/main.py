"""
应用主入口

负责组装和启动发送端应用。
"""

import asyncio
import os
import signal
import sys

from loguru import logger

from apn_sender.app.wiring import Container, create_container
from apn_sender.config import SenderConfig
from apn_sender.queue.base import JobSource


class GracefulShutdown:
    """优雅关闭

    第一次 SIGINT/SIGTERM 停止取新任务；grace_period + 5 秒后仍未退出，
    或收到第二次信号，直接以 128+signum 退出。
    """

    def __init__(self, grace_period: float = 30.0):
        self._grace_period = grace_period
        self._signal_count = 0
        self._shutdown_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._force_exit_handle: asyncio.Handle | None = None

    def install_handlers(self) -> None:
        """在当前事件循环上安装信号处理器"""
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            if sys.platform == "win32":
                signal.signal(
                    sig, lambda s, _frame: self._loop.call_soon_threadsafe(self._handle_signal, s)
                )
            else:
                self._loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, signum: int | signal.Signals) -> None:
        self._signal_count += 1
        sig_name = signal.Signals(signum).name

        if self._signal_count == 1:
            logger.info(f"收到 {sig_name}，开始优雅关闭... (再次发送信号强制退出)")
            self.trigger()
            self._force_exit_handle = self._loop.call_later(
                self._grace_period + 5, self._force_exit, signum
            )
        else:
            logger.warning(f"收到第二次 {sig_name}，强制退出")
            os._exit(128 + int(signum))

    def _force_exit(self, signum: int | signal.Signals) -> None:
        logger.warning("优雅关闭超时，强制退出")
        os._exit(128 + int(signum))

    def cancel_force_exit(self) -> None:
        if self._force_exit_handle:
            self._force_exit_handle.cancel()
            self._force_exit_handle = None

    async def wait(self) -> None:
        """等待关闭请求"""
        await self._shutdown_event.wait()

    def trigger(self) -> None:
        """请求关闭"""
        self._shutdown_event.set()


class Application:
    """
    发送端应用

    启动顺序：任务源 -> 发送循环；关闭顺序相反。
    """

    def __init__(self, config: SenderConfig, job_source: JobSource | None = None):
        self.config = config
        self.container: Container | None = None
        self._job_source = job_source
        self._graceful = GracefulShutdown(grace_period=config.grace_period)
        self._worker_task: asyncio.Task | None = None

    def stop(self) -> None:
        """请求关闭（与收到 SIGTERM 相同，但不安排强制退出）"""
        self._graceful.trigger()

    async def setup(self) -> None:
        """初始化应用"""
        logger.info("初始化发送端应用...")
        self.container = create_container(self.config, job_source=self._job_source)

    async def run(self, install_signal_handlers: bool = True) -> None:
        """运行应用，直到收到关闭信号或发送循环退出"""
        if not self.container:
            await self.setup()

        if install_signal_handlers:
            self._graceful.install_handlers()

        container = self.container
        await container.job_source.start()
        self._worker_task = asyncio.create_task(
            container.worker.run_forever(container.job_source),
            name="apn-sender-worker",
        )
        logger.info(
            "发送端已启动: env={} gateway={}",
            self.config.env.value,
            container.connection_manager.endpoint,
        )

        shutdown_task = asyncio.create_task(self._graceful.wait())
        try:
            await asyncio.wait(
                {self._worker_task, shutdown_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            shutdown_task.cancel()
            await self._shutdown_with_timeout()

    async def _shutdown_with_timeout(self) -> None:
        """带超时的关闭流程"""
        grace_period = self.config.grace_period
        container = self.container

        try:
            container.worker.stop()
            if self._worker_task is not None:
                try:
                    async with asyncio.timeout(grace_period):
                        await asyncio.shield(self._worker_task)
                except TimeoutError:
                    logger.warning(f"发送循环未在 {grace_period}s 内退出，强制取消")
                    self._worker_task.cancel()
                    await asyncio.gather(self._worker_task, return_exceptions=True)
                    await container.connection_manager.close()
        finally:
            await container.job_source.stop()
            self._graceful.cancel_force_exit()
            logger.info("发送端已关闭: {}", container.connection_manager.get_stats().to_dict())


async def run_sender(config: SenderConfig) -> None:
    """运行发送端"""
    app = Application(config)
    await app.run()
