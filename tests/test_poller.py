import asyncio

from aqualuminus.domain.models import Device
from aqualuminus.services.poller import DevicePoller
from aqualuminus.services.reconciler import DeviceStateReconciler


def test_poll_refreshes_and_logs_history_on_interval(sim_api, repo, clock, lamp_device):
    reconciler = DeviceStateReconciler(api=sim_api, store=repo, activity=repo, clock=clock)
    poller = DevicePoller(reconciler, repo, poll_seconds=900, history_seconds=3600, clock=clock)

    async def scenario():
        await reconciler.add_device(lamp_device)
        await reconciler.add_device(Device(id="UV002", name="Quarantine", host="10.0.0.6"))
        sim_api.lamp("10.0.0.6", 80).reachable = False

        await poller.poll_once()
        clock.advance(minutes=15)
        await poller.poll_once()
        clock.advance(hours=1)
        await poller.poll_once()
        return await repo.query_sensor_history("UV001"), await repo.query_sensor_history("UV002")

    history_1, history_2 = asyncio.run(scenario())

    assert poller.state.device_count == 2
    assert poller.state.online_count == 1
    assert poller.state.last_history_utc == clock.now
    assert len(history_1) == 2
    assert history_1[0].ph == sim_api.lamp("10.0.0.5", 80).ph
    # offline devices still get a row with their last known readings
    assert len(history_2) == 2


def test_loop_stops_cleanly(sim_api, repo, clock):
    reconciler = DeviceStateReconciler(api=sim_api, store=repo, activity=repo, clock=clock)
    poller = DevicePoller(reconciler, repo, poll_seconds=0.01, clock=clock)

    async def scenario():
        await poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()

    asyncio.run(scenario())
    assert poller.state.last_refresh_utc == clock.now
    assert poller.state.last_history_utc is not None
