import asyncio

import pytest

from async_msg_scheduler.dispatch import DispatchQueue, DispatchReport, DispatchTask, calculate_backoff
from async_msg_scheduler.models import Recipient
from conftest import DummyClient, RecordingSleep, make_job, settle

A = Recipient(address="62811", text="first")
B = Recipient(address="62822", text="second")


def make_queue(client=None, sleep=None, **kwargs) -> DispatchQueue:
    kwargs.setdefault("ready_timeout_seconds", 0.05)
    kwargs.setdefault("attempt_ready_timeout_seconds", 0.05)
    return DispatchQueue("t1", client or DummyClient(), sleep=sleep or RecordingSleep(), **kwargs)


def test_calculate_backoff():
    assert [calculate_backoff(n) for n in (1, 2, 3)] == [3.0, 6.0, 9.0]
    assert calculate_backoff(2, base=0.5) == 1.0


@pytest.mark.asyncio
async def test_exhausted_recipient_does_not_block_the_next():
    client = DummyClient()
    client.failures[A.address] = 3
    sleep = RecordingSleep()
    queue = make_queue(client, sleep)

    report = await queue.execute(DispatchTask(job_id=1, recipients=[A, B], gap_seconds=2))

    assert client.sent == [(B.address, B.text)]
    assert [(o.address, o.ok, o.attempts) for o in report.outcomes] == [(A.address, False, 3), (B.address, True, 1)]
    assert report.outcomes[0].error == "transport down"
    assert sleep.calls == [3.0, 6.0, 9.0, 2, 2]
    assert sleep.total >= calculate_backoff(1) + calculate_backoff(2) + calculate_backoff(3) + 2


@pytest.mark.asyncio
async def test_retry_then_success():
    client = DummyClient()
    client.failures[A.address] = 1
    sleep = RecordingSleep()

    report = await make_queue(client, sleep).execute(DispatchTask(job_id=1, recipients=[A], gap_seconds=0))

    assert report.outcomes[0].ok and report.outcomes[0].attempts == 2
    assert sleep.calls == [3.0]


@pytest.mark.asyncio
async def test_falsy_send_is_a_failed_attempt():
    class Refusing(DummyClient):
        async def send(self, address, text):
            return False

    report = await make_queue(Refusing(), max_attempts=2).execute(DispatchTask(job_id=1, recipients=[A], gap_seconds=0))
    assert report.failed == 1 and report.outcomes[0].attempts == 2


@pytest.mark.asyncio
async def test_not_ready_client_skips_task():
    client = DummyClient(ready=False)
    report = await make_queue(client).execute(DispatchTask(job_id=1, recipients=[A, B]))

    assert report.ready is False
    assert report.outcomes == []
    assert client.sent == []


@pytest.mark.asyncio
async def test_queue_waits_for_readiness():
    client = DummyClient(ready=False)
    queue = make_queue(client, ready_timeout_seconds=5)
    reports: list[DispatchReport] = []

    async def done(report):
        reports.append(report)

    queue.enqueue(DispatchTask(job_id=1, recipients=[A], gap_seconds=0, on_complete=done))
    await settle()
    assert client.sent == []

    await client.set_ready(True)
    await queue.join()
    assert client.sent == [(A.address, A.text)]
    assert reports[0].ready is True


@pytest.mark.asyncio
async def test_tasks_run_one_at_a_time_in_fifo_order():
    client = DummyClient()
    queue = make_queue(client)
    in_flight = 0
    peak = 0
    original_send = client.send

    async def tracking_send(address, text):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return await original_send(address, text)

    client.send = tracking_send
    queue.enqueue(DispatchTask(job_id=1, recipients=[A, B], gap_seconds=0))
    queue.enqueue(DispatchTask(job_id=2, recipients=[Recipient(address="62833", text="third")], gap_seconds=0))
    assert queue.queue_length == 2
    await queue.join()

    assert [address for address, _ in client.sent] == ["62811", "62822", "62833"]
    assert peak == 1
    assert queue.queue_length == 0 and not queue.busy


@pytest.mark.asyncio
async def test_worker_restarts_after_draining():
    client = DummyClient()
    queue = make_queue(client)
    queue.enqueue(DispatchTask(job_id=1, recipients=[A], gap_seconds=0))
    await queue.join()
    assert not queue.busy

    queue.enqueue(DispatchTask(job_id=2, recipients=[B], gap_seconds=0))
    await queue.join()
    assert len(client.sent) == 2


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_worker():
    client = DummyClient()
    queue = make_queue(client)
    seen = []

    async def broken(report):
        raise RuntimeError("callback bug")

    async def ok(report):
        seen.append(report.job_id)

    queue.enqueue(DispatchTask(job_id=1, recipients=[A], gap_seconds=0, on_complete=broken))
    queue.enqueue(DispatchTask(job_id=2, recipients=[B], gap_seconds=0, on_complete=ok))
    await queue.join()
    assert seen == [2]


@pytest.mark.asyncio
async def test_jitter_before_each_recipient():
    sleep = RecordingSleep()
    queue = make_queue(sleep=sleep, randint=lambda low, high: high)
    task = DispatchTask(job_id=1, recipients=[A, B], gap_seconds=1, jitter_min_seconds=2, jitter_max_seconds=5)

    await queue.execute(task)
    assert sleep.calls == [5, 1, 5, 1]


@pytest.mark.asyncio
async def test_jitter_max_below_min_uses_min():
    sleep = RecordingSleep()
    queue = make_queue(sleep=sleep, randint=lambda low, high: pytest.fail("randint not expected"))
    task = DispatchTask(job_id=1, recipients=[A], gap_seconds=0, jitter_min_seconds=4, jitter_max_seconds=1)

    await queue.execute(task)
    assert sleep.calls == [4]


@pytest.mark.asyncio
async def test_close_discards_pending_tasks():
    client = DummyClient(ready=False)
    queue = make_queue(client, ready_timeout_seconds=5)
    queue.enqueue(DispatchTask(job_id=1, recipients=[A]))
    queue.enqueue(DispatchTask(job_id=2, recipients=[B]))
    await settle()

    await queue.close()
    assert queue.queue_length == 0 and not queue.busy

    queue.enqueue(DispatchTask(job_id=3, recipients=[A]))
    assert queue.queue_length == 0
    assert client.sent == []


def test_task_from_job():
    job = make_job(9, dispatch_gap_seconds=4, random_delay_min_seconds=1, random_delay_max_seconds=3)
    task = DispatchTask.for_job(job)
    assert task.job_id == 9
    assert task.recipients == job.recipients
    assert (task.gap_seconds, task.jitter_min_seconds, task.jitter_max_seconds) == (4, 1, 3)
