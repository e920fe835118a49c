"""命令行入口

支持 run, feedback, print-config 命令。
"""

import argparse
import asyncio
import json
import sys

import yaml
from loguru import logger

from apn_sender import __version__
from apn_sender.config import SenderConfig, load_config
from apn_sender.domain.errors import SenderError
from apn_sender.logging import setup_logging


def _log_block(message: str) -> None:
    logger.info("{}", message.rstrip())


def _load(args: argparse.Namespace) -> SenderConfig:
    return load_config(
        args.config,
        environment=getattr(args, "environment", None),
        cert_path=getattr(args, "cert", None),
        key_path=getattr(args, "key", None),
        redis_url=getattr(args, "redis_url", None),
        log_level=getattr(args, "log_level", None),
    )


def print_config(config: SenderConfig, config_format: str = "yaml") -> None:
    """打印当前有效配置（口令脱敏）"""
    _log_block(
        "  APN Sender - 当前配置\n"
        "  " + "=" * 40
    )
    config_dict = config.to_dict()
    if config_format == "json":
        logger.info("{}", json.dumps(config_dict, indent=2, ensure_ascii=False, default=str))
    else:
        logger.info("{}", yaml.dump(config_dict, allow_unicode=True, default_flow_style=False, sort_keys=False))


async def fetch_feedback(config: SenderConfig) -> list[dict[str, object]]:
    """拉取一次 Feedback，返回可序列化的记录列表"""
    from apn_sender.app.wiring import create_container

    client = create_container(config).feedback_client()
    items = await client.data()
    return [{"token": item.token, "timestamp": item.timestamp.isoformat()} for item in items]


def run_feedback(config: SenderConfig, as_json: bool = False) -> int:
    """拉取 Feedback 并输出到 stdout"""
    try:
        records = asyncio.run(fetch_feedback(config))
    except SenderError as e:
        logger.error("拉取 Feedback 失败: [{}] {}", e.code, e.message)
        return 1

    if as_json:
        sys.stdout.write(json.dumps(records, ensure_ascii=False) + "\n")
    else:
        for record in records:
            sys.stdout.write(f"{record['timestamp']}\t{record['token']}\n")
    logger.info("Feedback 记录数: {}", len(records))
    return 0


def start_sender(config: SenderConfig) -> int:
    """启动发送循环，直到收到 SIGINT/SIGTERM"""
    from apn_sender.app.main import run_sender

    try:
        config.validate()
    except SenderError as e:
        logger.error("配置错误: {}", e.message)
        return 2

    # 使用自定义事件循环运行，避免 asyncio.run() 覆盖信号处理
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_sender(config))
    except KeyboardInterrupt:
        logger.info("收到 KeyboardInterrupt，开始清理")
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apn-sender",
        description=f"APN Sender v{__version__}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用方式:
  启动发送:   apn-sender run --env production --cert apn.pem
  Feedback:   apn-sender feedback --env sandbox --json
  查看配置:   apn-sender print-config

优雅关闭:
  收到 SIGTERM 或 SIGINT 信号时，发送端会:
  1. 停止拉取新任务
  2. 完成正在发送的通知
  3. 关闭网关连接后退出（再次发送信号强制退出）
        """,
    )
    parser.add_argument("--config", default=None, help="配置文件路径 (默认 apn_sender.yaml)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="可用命令")

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--env", dest="environment", default=None, help="推送环境: production / sandbox")
        sub.add_argument("--cert", default=None, help="证书路径 (PEM)")
        sub.add_argument("--key", default=None, help="私钥路径 (证书不含私钥时)")
        sub.add_argument(
            "--log-level",
            default=None,
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="日志级别，默认 INFO",
        )

    run_parser = subparsers.add_parser("run", help="启动发送循环")
    add_common(run_parser)
    run_parser.add_argument("--redis-url", default=None, help="任务队列 Redis URL")

    feedback_parser = subparsers.add_parser("feedback", help="拉取失效设备 token")
    add_common(feedback_parser)
    feedback_parser.add_argument("--json", action="store_true", help="以 JSON 输出")

    config_parser = subparsers.add_parser("print-config", help="打印当前配置")
    config_parser.add_argument(
        "--format",
        default="yaml",
        choices=["yaml", "json"],
        help="输出格式 (yaml/json)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """主入口"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    config = _load(args)
    setup_logging(config.log_level, config.log_file or None)

    if args.command == "print-config":
        print_config(config, config_format=args.format)
        return 0
    if args.command == "feedback":
        return run_feedback(config, as_json=args.json)
    return start_sender(config)


if __name__ == "__main__":
    sys.exit(main())
