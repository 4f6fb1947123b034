import pytest

from conftest import ALICE, BOB, CAROL, UNMAPPED, FakeClock
from obs_mock_server import FakeSession
from pov_config import DEFAULT_CONFIG, merge_config
from pov_notify import NotificationHub
from pov_router import FocusRouter, RouteState
from pov_switcher import SourceSwitcher
from pov_topology import TopologyCache


def visible(model):
    return sorted(i["sourceName"] for i in model.all_items() if i["sceneItemEnabled"] and not i["isGroup"])


def drain(subscription):
    out = []
    while not subscription.queue.empty():
        out.append(subscription.queue.get_nowait())
    return out


async def focus(router, player_id, name="player"):
    assert router.on_player_focus_event(player_id, name)
    await router.join()


@pytest.mark.asyncio
async def test_mapped_player_is_routed(router, model):
    await focus(router, BOB, "Bob")

    assert visible(model) == ["POV_Bob"]
    state = router.get_state()
    assert state["lastSteamId"] == BOB
    assert state["activeSource"] == "POV_Bob"
    assert state["routeState"] == RouteState.ROUTED.value
    assert state["obsConnected"] is True
    assert state["scene"] == "POV_ROUTER"


@pytest.mark.asyncio
async def test_same_player_inside_window_is_suppressed(router, model, clock):
    await focus(router, ALICE)
    toggles = len(model.toggle_requests())

    clock.advance(0.05)
    await focus(router, ALICE)
    assert len(model.toggle_requests()) == toggles
    assert router.duplicates_suppressed == 1

    clock.advance(0.2)
    await focus(router, ALICE)
    assert len(model.toggle_requests()) > toggles
    assert router.switches_attempted == 2


@pytest.mark.asyncio
async def test_different_player_is_never_debounced(router, model, clock):
    await focus(router, ALICE)
    clock.advance(0.01)
    await focus(router, CAROL)

    assert visible(model) == ["POV_Carol"]
    assert router.duplicates_suppressed == 0


@pytest.mark.asyncio
async def test_unmapped_player_hides_all_without_touching_route(router, model):
    await focus(router, ALICE)
    await focus(router, UNMAPPED, "Stranger")

    assert visible(model) == []
    state = router.get_state()
    assert state["routeState"] == RouteState.IDLE.value
    assert state["activeSource"] is None
    assert state["lastSteamId"] == ALICE
    assert router.switcher.metrics.hide_all_count == 1


@pytest.mark.asyncio
async def test_force_switch_resets_debounce(router, model):
    await focus(router, ALICE)

    assert await router.force_switch("POV_Bob")
    assert visible(model) == ["POV_Bob"]
    assert router.get_state()["lastSteamId"] is None
    assert router.get_state()["activeSource"] == "POV_Bob"

    # same clock reading: would be suppressed had force not cleared the last player
    await focus(router, ALICE)
    assert visible(model) == ["POV_Alice"]


@pytest.mark.asyncio
async def test_force_unknown_source_fails(router, model):
    assert not await router.force_switch("POV_Ghost")
    assert model.toggle_requests() == []


@pytest.mark.asyncio
async def test_mapping_change_applies_to_next_event(router, model, hub):
    subscription = hub.subscribe()
    await router.on_mapping_changed({UNMAPPED: "POV_Bob"})
    await focus(router, UNMAPPED)

    assert visible(model) == ["POV_Bob"]
    assert router.mapping == {UNMAPPED: "POV_Bob"}
    kinds = [n.kind for n in drain(subscription)]
    assert kinds[0] == "mapping"


@pytest.mark.asyncio
async def test_focus_publishes_players_then_state(router, hub):
    subscription = hub.subscribe()
    await focus(router, ALICE, "Alice")

    players, state = drain(subscription)
    assert players.kind == "players"
    assert players.payload["players"][0]["steamid"] == ALICE
    assert players.payload["players"][0]["name"] == "Alice"
    assert state.to_wire()["type"] == "state"
    assert state.to_wire()["activeSource"] == "POV_Alice"


@pytest.mark.asyncio
async def test_players_sorted_most_recent_first(router):
    await focus(router, ALICE, "Alice")
    await focus(router, BOB, "Bob")
    router.players[ALICE]["lastSeen"] += 10_000

    assert [p["steamid"] for p in router.get_players()] == [ALICE, BOB]


@pytest.mark.asyncio
async def test_not_ready_skips_without_updating_state(router, model, session):
    session.ready = False
    await focus(router, ALICE)

    assert model.requests == []
    assert router.get_state()["lastSteamId"] is None
    assert router.get_state()["obsConnected"] is False

    session.ready = True
    await focus(router, ALICE)
    assert visible(model) == ["POV_Alice"]


@pytest.mark.asyncio
async def test_worker_survives_handler_exception(router, model, monkeypatch):
    real_activate = router.switcher.activate
    calls = []

    async def flaky(target, allow_fallback=True):
        calls.append(target)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return await real_activate(target, allow_fallback)

    monkeypatch.setattr(router.switcher, "activate", flaky)

    assert not await router.force_switch("POV_Alice")
    assert router.worker_errors == 1
    assert await router.force_switch("POV_Bob")
    assert visible(model) == ["POV_Bob"]


@pytest.mark.asyncio
async def test_work_is_processed_in_submission_order(router, model):
    assert router.on_player_focus_event(ALICE)
    assert router.on_player_focus_event(BOB)
    assert router.on_player_focus_event(CAROL)
    await router.join()

    assert visible(model) == ["POV_Carol"]
    assert router.get_state()["lastSteamId"] == CAROL


@pytest.mark.asyncio
async def test_list_sources_returns_topology(router):
    items = await router.list_sources()
    assert [it.source_name for it in items] == ["POV_Alice", "POV_Bob", "Team", "POV_Carol"]


@pytest.mark.asyncio
async def test_full_queue_rejects_events(model, logger):
    config = merge_config(DEFAULT_CONFIG, {"routing": {"queue_size": 1}})
    session = FakeSession(model)
    switcher = SourceSwitcher(config, session, TopologyCache(session, logger), logger)
    router = FocusRouter(config, switcher, NotificationHub(logger), logger, mapping={ALICE: "POV_Alice"})

    assert router.on_player_focus_event(ALICE)
    assert not router.on_player_focus_event(ALICE)
    assert router.get_metrics()["events_dropped"] == 1

    router.start()
    await router.join()
    await router.stop()
    assert visible(model) == ["POV_Alice"]


@pytest.mark.asyncio
async def test_auto_source_template_for_unmapped_players(model, logger):
    model.add_item("POV_ROUTER", f"POV_{UNMAPPED}")
    config = merge_config(DEFAULT_CONFIG, {"routing": {"auto_source_template": "POV_{steamid}"}})
    session = FakeSession(model)
    switcher = SourceSwitcher(config, session, TopologyCache(session, logger), logger)
    router = FocusRouter(config, switcher, NotificationHub(logger), logger, clock=FakeClock())
    router.start()
    try:
        await focus(router, UNMAPPED)
    finally:
        await router.stop()

    assert visible(model) == [f"POV_{UNMAPPED}"]


@pytest.mark.asyncio
async def test_bind_next_binds_only_the_next_player(router, model, hub):
    bound = []
    router.on_bind(lambda player_id, source: bound.append((player_id, source)))
    subscription = hub.subscribe()

    assert await router.arm_bind("POV_Carol")
    await focus(router, UNMAPPED, "Stranger")
    await focus(router, ALICE)

    assert bound == [(UNMAPPED, "POV_Carol")]
    assert router.mapping[UNMAPPED] == "POV_Carol"
    assert router.mapping[ALICE] == "POV_Alice"
    assert router.pending_bind is None
    assert "mapping" in [n.kind for n in drain(subscription)]
    assert visible(model) == ["POV_Alice"]


@pytest.mark.asyncio
async def test_failing_bind_handler_still_binds(router, model):
    def broken(player_id, source):
        raise OSError("disk full")

    router.on_bind(broken)
    await router.arm_bind("POV_Bob")
    await focus(router, UNMAPPED)

    assert router.mapping[UNMAPPED] == "POV_Bob"
    assert visible(model) == ["POV_Bob"]
    assert router.worker_errors == 0
