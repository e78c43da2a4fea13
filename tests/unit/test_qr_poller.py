import asyncio

from seat_ledger.application.qr_poller import QRPaymentPoller


def _success(amount):
    return {"id": "qr1", "status": "success", "data": {"amount": amount}}


def test_poller_fires_once_on_matching_success():
    responses = iter([None, {"id": "qr1", "status": "pending", "data": {"amount": 500000}}])
    received = []

    async def fetch():
        return next(responses, _success(500000))

    async def scenario():
        poller = QRPaymentPoller(fetch, received.append, interval=0)
        task = poller.start(500000)
        await asyncio.wait_for(task, timeout=1)
        return poller

    poller = asyncio.run(scenario())

    assert received == [_success(500000)]
    assert not poller.running


def test_poller_ignores_success_for_another_amount():
    received = []

    async def fetch():
        return _success(450000)

    async def scenario():
        poller = QRPaymentPoller(fetch, received.append, interval=0)
        poller.start(500000)
        await asyncio.sleep(0.05)
        running = poller.running
        poller.stop()
        return running

    assert asyncio.run(scenario()) is True
    assert received == []


def test_amount_change_restarts_polling():
    received = []

    async def fetch():
        return _success(450000)

    async def scenario():
        poller = QRPaymentPoller(fetch, received.append, interval=0)
        poller.start(500000)
        await asyncio.sleep(0.02)
        poller.update_amount(450000)
        await asyncio.sleep(0.05)
        return poller

    poller = asyncio.run(scenario())

    assert poller.amount == 450000
    assert received == [_success(450000)]


def test_stop_cancels_the_task():
    async def fetch():
        return None

    async def scenario():
        poller = QRPaymentPoller(fetch, lambda record: None, interval=10)
        task = poller.start(100000)
        poller.stop()
        await asyncio.gather(task, return_exceptions=True)
        return poller, task

    poller, task = asyncio.run(scenario())

    assert task.cancelled()
    assert not poller.running


def test_fetch_errors_do_not_stop_polling():
    calls = []

    async def fetch():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("gateway down")
        return _success(100000)

    received = []

    async def scenario():
        poller = QRPaymentPoller(fetch, received.append, interval=0)
        await asyncio.wait_for(poller.start(100000), timeout=1)

    asyncio.run(scenario())

    assert len(calls) == 3
    assert received == [_success(100000)]
