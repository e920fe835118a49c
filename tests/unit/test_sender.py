"""
发送循环测试

测试任务状态流转：
- 成功投递后确认任务
- 失败上报给任务源
- 单个坏任务不影响后续任务
- 停止后关闭连接
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ResponseError

from fakes import BlockingWriter, FakeOpener, FakeReader, FakeWriter, connection_refused

from apn_sender.domain.enums import JobState
from apn_sender.domain.models import Job
from apn_sender.engine.sender import SenderWorker
from apn_sender.queue.memory_queue import MemoryJobSource
from apn_sender.queue.redis_queue import RedisJobSource
from apn_sender.transport.codec import decode_notification
from apn_sender.transport.connection import ConnectionManager

TOKEN_HEX = "0f" * 32


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def manager(opener, credentials, ssl_context, no_backoff):
    return ConnectionManager(
        "sandbox",
        credentials,
        ssl_context=ssl_context,
        opener=opener,
        backoff=no_backoff,
    )


@pytest.fixture
def worker(manager, no_backoff):
    return SenderWorker(manager, poll_timeout=0.01, failure_backoff=no_backoff)


class FlakySource(MemoryJobSource):
    """前几次 fetch 抛出异常的任务源"""

    def __init__(self, fetch_errors: int = 1):
        super().__init__()
        self.fetch_errors = fetch_errors

    async def fetch(self, timeout: float = 5.0) -> Job | None:
        if self.fetch_errors:
            self.fetch_errors -= 1
            raise ValueError("invalid literal for int() with base 10: 'x'")
        return await super().fetch(timeout)


async def run_until_drained(worker: SenderWorker, source: MemoryJobSource, expected: int) -> None:
    task = asyncio.create_task(worker.run_forever(source))
    for _ in range(200):
        if len(source.acked) + len(source.failed) >= expected:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=1.0)


class TestProcess:
    """单个任务处理测试"""

    @pytest.mark.asyncio
    async def test_delivered(self, worker, opener):
        """测试投递成功后确认任务"""
        source = MemoryJobSource()
        job = Job(job_id="1", data={"token": TOKEN_HEX, "alert": "Hi", "badge": 3, "order_id": 7})

        state = await worker.process(job, source)

        assert state == JobState.DELIVERED
        assert source.acked == [job]
        _, payload = decode_notification(opener.writers[0].writes[0])
        assert payload == {"aps": {"alert": "Hi", "badge": 3}, "order_id": 7}
        assert worker.stats.delivered == 1

    @pytest.mark.asyncio
    async def test_encoding_error_reported(self, worker, opener):
        """测试编码失败上报给任务源且不写入"""
        source = MemoryJobSource()
        job = Job(job_id="1", data={"token": TOKEN_HEX, "alert": "x" * 300})

        state = await worker.process(job, source)

        assert state == JobState.FAILED
        assert source.acked == []
        assert source.failed[0][0] is job
        assert source.failed[0][1] == "ENCODING_ERROR"
        assert opener.calls == []

    @pytest.mark.asyncio
    async def test_missing_token_reported(self, worker):
        """测试缺少 token 的任务"""
        source = MemoryJobSource()

        state = await worker.process(Job(job_id="1", data={"alert": "Hi"}), source)

        assert state == JobState.FAILED
        assert source.failed[0][1] == "ENCODING_ERROR"

    @pytest.mark.asyncio
    async def test_send_error_reported(self, credentials, ssl_context, no_backoff):
        """测试重发失败后上报 SEND_ERROR"""
        opener = FakeOpener(
            (FakeReader(), FakeWriter(drain_error=BrokenPipeError())),
            (FakeReader(), FakeWriter(drain_error=BrokenPipeError())),
        )
        manager = ConnectionManager(
            "sandbox", credentials, ssl_context=ssl_context, opener=opener, backoff=no_backoff
        )
        worker = SenderWorker(manager, failure_backoff=no_backoff)
        source = MemoryJobSource()

        state = await worker.process(Job(job_id="1", data={"token": TOKEN_HEX}), source)

        assert state == JobState.FAILED
        assert source.failed[0][1] == "SEND_ERROR"
        assert worker.stats.last_error.startswith("SEND_ERROR")

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, worker):
        """测试未预期异常同样上报"""
        source = MemoryJobSource()
        worker._connection.send = AsyncMock(side_effect=RuntimeError("boom"))

        state = await worker.process(Job(job_id="1", data={"token": TOKEN_HEX}), source)

        assert state == JobState.FAILED
        assert source.failed[0][1:] == ("UNKNOWN_ERROR", "boom")


class TestRunForever:
    """主循环测试"""

    @pytest.mark.asyncio
    async def test_continues_after_bad_job(self, worker, opener):
        """测试坏任务之后继续处理后续任务，按到达顺序发送"""
        source = MemoryJobSource()
        await source.enqueue({"token": TOKEN_HEX, "alert": "first"})
        await source.enqueue({"token": "abcd", "alert": "bad token"})
        await source.enqueue({"token": TOKEN_HEX, "alert": "third"})

        await run_until_drained(worker, source, expected=3)

        assert len(source.acked) == 2
        assert len(source.failed) == 1
        alerts = [decode_notification(frame)[1]["aps"]["alert"] for frame in opener.writers[0].writes]
        assert alerts == ["first", "third"]

    @pytest.mark.asyncio
    async def test_stop_closes_connection(self, worker, manager, opener):
        """测试停止后关闭连接"""
        source = MemoryJobSource()
        await source.enqueue({"token": TOKEN_HEX, "alert": "Hi"})

        await run_until_drained(worker, source, expected=1)

        assert not worker.is_running
        assert not manager.is_connected
        assert opener.writers[0].closed

    @pytest.mark.asyncio
    async def test_stop_before_start(self, worker):
        """测试启动前已请求停止时立即退出"""
        source = MemoryJobSource()
        await source.enqueue({"token": TOKEN_HEX})
        worker.stop()

        await asyncio.wait_for(worker.run_forever(source), timeout=1.0)

        assert source.size == 1
        assert worker.stats.fetched == 0

    @pytest.mark.asyncio
    async def test_idle_loop_exits_on_stop(self, worker, opener):
        """测试空闲时收到停止请求后退出，且从未建立连接"""
        source = MemoryJobSource()
        task = asyncio.create_task(worker.run_forever(source))
        await asyncio.sleep(0.05)
        assert worker.is_running

        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert opener.calls == []

    @pytest.mark.asyncio
    async def test_stop_during_send_finishes_in_flight(self, credentials, ssl_context, no_backoff):
        """测试发送中收到停止请求：完成当前任务，不再取新任务，并关闭连接"""
        writer = BlockingWriter()
        opener = FakeOpener((FakeReader(), writer))
        manager = ConnectionManager(
            "sandbox", credentials, ssl_context=ssl_context, opener=opener, backoff=no_backoff
        )
        worker = SenderWorker(manager, poll_timeout=0.01, failure_backoff=no_backoff)
        source = MemoryJobSource()
        await source.enqueue({"token": TOKEN_HEX, "alert": "in flight"})
        await source.enqueue({"token": TOKEN_HEX, "alert": "queued"})

        task = asyncio.create_task(worker.run_forever(source))
        await asyncio.wait_for(writer.draining.wait(), timeout=1.0)
        worker.stop()
        writer.release.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(writer.writes) == 1
        assert decode_notification(writer.writes[0])[1]["aps"]["alert"] == "in flight"
        assert len(source.acked) == 1
        assert source.size == 1
        assert worker.stats.fetched == 1
        assert writer.closed

    @pytest.mark.asyncio
    async def test_fetch_error_does_not_stop_loop(self, worker, opener):
        """测试任务源抛出异常后循环继续运行"""
        source = FlakySource(fetch_errors=2)
        await source.enqueue({"token": TOKEN_HEX, "alert": "Hi"})

        await run_until_drained(worker, source, expected=1)

        assert source.fetch_errors == 0
        assert len(source.acked) == 1
        assert len(opener.writers[0].writes) == 1

    @pytest.mark.asyncio
    async def test_redis_response_error_does_not_stop_loop(self, worker, opener):
        """测试 Redis 消费者组丢失后重建并继续投递"""
        responses = [
            ResponseError("NOGROUP No such key 'test:apn:jobs' or consumer group 'test:apn:senders'"),
            [("test:apn:jobs", [("1-0", {"data": json.dumps({"token": TOKEN_HEX, "alert": "Hi"}), "attempts": "x"})])],
        ]

        async def xreadgroup(**kwargs):
            if responses:
                item = responses.pop(0)
                if isinstance(item, BaseException):
                    raise item
                return item
            await asyncio.sleep(kwargs["block"] / 1000)
            return []

        redis_client = AsyncMock()
        redis_client.xautoclaim.return_value = ["0-0", [], []]
        redis_client.xreadgroup.side_effect = xreadgroup
        source = RedisJobSource(namespace="test", redis_client=redis_client)
        await source.start()

        task = asyncio.create_task(worker.run_forever(source))
        for _ in range(300):
            if redis_client.xack.await_count:
                break
            await asyncio.sleep(0.01)
        assert worker.is_running
        worker.stop()
        await asyncio.wait_for(task, timeout=1.0)

        redis_client.xack.assert_awaited_once_with("test:apn:jobs", "test:apn:senders", "1-0")
        assert redis_client.xgroup_create.await_count == 2
        assert len(opener.writers[0].writes) == 1

    @pytest.mark.asyncio
    async def test_reconnect_failure_backs_off(self, credentials, ssl_context, no_backoff):
        """测试重连失败导致的 SendError 同样触发失败退避"""
        opener = FakeOpener(
            (FakeReader(), FakeWriter(drain_error=BrokenPipeError())),
            connection_refused(),
        )
        manager = ConnectionManager(
            "sandbox", credentials, ssl_context=ssl_context, opener=opener, backoff=no_backoff
        )
        worker = SenderWorker(manager, failure_backoff=no_backoff)
        source = MemoryJobSource()

        state = await worker.process(Job(job_id="1", data={"token": TOKEN_HEX}), source)

        assert state == JobState.FAILED
        assert source.failed[0][1] == "SEND_ERROR"
        assert worker._connection_failed
