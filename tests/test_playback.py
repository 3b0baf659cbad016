import asyncio

import pytest

from backend.cards import generate
from backend.errors import IndexOutOfRangeError, SessionNotStartedError
from backend.models import Card
from backend.playback import PlaybackController, fade_in_levels, fade_out_levels
from backend.session import GameSession

from conftest import FakePlayer, make_track


async def settle(rounds: int = 100):
    for _ in range(rounds):
        await asyncio.sleep(0)


def single_track_session() -> GameSession:
    track = make_track(0)
    card = Card(id="single", cells=(), tracks=(track,))
    game = GameSession(user_id="user-1")
    game.start(card)
    return game


@pytest.fixture
def game(pool):
    g = GameSession(user_id="user-1")
    g.start(generate(pool))
    return g


def test_fade_levels():
    assert fade_in_levels(5, 60, 20)[-1] == 60
    assert len(fade_in_levels(5, 60, 20)) == 20
    out = fade_out_levels(60, 15)
    assert len(out) == 15
    assert out[0] == 56 and out[-1] == 0
    assert out == sorted(out, reverse=True)


@pytest.mark.asyncio
async def test_start_requires_card(player, device, fast_settings):
    controller = PlaybackController(GameSession(user_id="u"), player, device, fast_settings)
    with pytest.raises(SessionNotStartedError):
        await controller.start()


@pytest.mark.asyncio
async def test_start_plays_current_item_and_fades_in(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    assert controller.running
    assert controller.remaining == 30
    assert player.calls[0] == ("transfer", "dev-1")
    assert player.calls[1] == ("play", "dev-1", "track-000", 0.3)
    volumes = player.volumes()
    assert volumes[0] == 5
    assert volumes[-1] == 60
    assert volumes[1:] == sorted(volumes[1:])
    await controller.stop()


@pytest.mark.asyncio
async def test_last_item_stops_without_completing(player, device, fast_settings):
    game = single_track_session()
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    for _ in range(30):
        await controller.tick()
    assert not controller.running
    assert controller.remaining == 0
    assert game.current_index == 0
    assert not game.completed
    await controller.tick()
    assert game.current_index == 0
    await controller.stop()


@pytest.mark.asyncio
async def test_timer_expiry_advances(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    for _ in range(30):
        await controller.tick()
    await settle()
    assert game.current_index == 1
    assert controller.remaining == 30
    assert controller.running
    assert ("play", "dev-1", "track-001", 0.3) in player.calls
    await controller.stop()


@pytest.mark.asyncio
async def test_fade_out_in_last_two_units(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    player.calls.clear()
    for _ in range(27):
        await controller.tick()
    await settle()
    assert player.volumes() == []
    await controller.tick()
    assert controller.remaining == 2
    await settle()
    volumes = player.volumes()
    assert len(volumes) == 15
    assert volumes[-1] == 0
    assert volumes == sorted(volumes, reverse=True)
    await controller.stop()


@pytest.mark.asyncio
async def test_failed_volume_steps_do_not_abort(game, device, fast_settings):
    player = FakePlayer(fail={"volume", "transfer"})
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    # start volume plus every fade-in step was still attempted
    assert len(player.volumes()) == 21
    assert ("play", "dev-1", "track-000", 0.3) in player.calls
    for _ in range(30):
        await controller.tick()
    assert game.current_index == 1
    await controller.stop()


@pytest.mark.asyncio
async def test_stop_cancels_fade_and_restores_volume(game, player, device, fast_settings):
    slow = fast_settings.model_copy(update={"fade_in_seconds": 2.0})
    controller = PlaybackController(game, player, device, slow)
    await controller.start()
    await settle()
    assert 0 < len(player.volumes()) < 21
    player.calls.clear()
    await controller.stop()
    assert player.calls == [("pause", "dev-1"), ("volume", "dev-1", 60)]
    await asyncio.sleep(0.3)
    assert player.calls == [("pause", "dev-1"), ("volume", "dev-1", 60)]
    assert not controller.running


@pytest.mark.asyncio
async def test_stop_is_idempotent(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.stop()
    assert player.calls == []
    await controller.start()
    await controller.stop()
    count = len(player.calls)
    await controller.stop()
    assert len(player.calls) == count


@pytest.mark.asyncio
async def test_manual_skip_resets_timer(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    for _ in range(10):
        await controller.tick()
    assert controller.remaining == 20
    assert await controller.next()
    assert game.current_index == 1
    assert controller.remaining == 30
    assert await controller.previous()
    assert game.current_index == 0
    assert not await controller.previous()
    assert game.current_index == 0
    await controller.stop()


@pytest.mark.asyncio
async def test_skip_while_stopped_only_moves_index(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    game.advance_to(23)
    assert not await controller.next()
    assert await controller.previous()
    assert game.current_index == 22
    assert player.calls == []


@pytest.mark.asyncio
async def test_events_reported(game, player, device, fast_settings):
    events = []

    async def on_event(event, data):
        events.append((event, data))

    controller = PlaybackController(game, player, device, fast_settings, on_event=on_event)
    await controller.start()
    await controller.tick()
    assert events[-1][0] == "timer:tick"
    assert events[-1][1]["remaining"] == 29
    await controller.stop()
    assert events[-1][0] == "playback:stopped"


@pytest.mark.asyncio
async def test_listener_errors_are_contained(game, player, device, fast_settings):
    async def broken(event, data):
        raise RuntimeError("socket gone")

    controller = PlaybackController(game, player, device, fast_settings, on_event=broken)
    await controller.start()
    await controller.tick()
    assert controller.remaining == 29
    await controller.stop()


class SlowPlayer(FakePlayer):
    """Pause and volume take ``delay`` seconds, like a sluggish speaker."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def pause(self, device_id=None):
        await super().pause(device_id)
        await asyncio.sleep(self.delay)

    async def set_volume(self, device_id, percent):
        await super().set_volume(device_id, percent)
        await asyncio.sleep(self.delay)


@pytest.mark.asyncio
async def test_halt_does_not_wait_for_the_device(game, device, fast_settings):
    player = SlowPlayer(delay=1.0)
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()

    loop = asyncio.get_running_loop()
    began = loop.time()
    restore = controller.halt()
    assert loop.time() - began < 0.1
    assert not controller.running
    assert controller.halt() is None

    player.calls.clear()
    await restore
    assert player.calls == [("pause", "dev-1"), ("volume", "dev-1", 60)]


@pytest.mark.asyncio
async def test_jump_while_running_plays_the_new_item(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    for _ in range(5):
        await controller.tick()
    player.calls.clear()

    await controller.jump_to(7)
    await settle()
    assert game.current_index == 7
    assert controller.remaining == 30
    assert ("play", "dev-1", "track-007", 0.3) in player.calls
    await controller.stop()


@pytest.mark.asyncio
async def test_jump_out_of_range_changes_nothing(game, player, device, fast_settings):
    controller = PlaybackController(game, player, device, fast_settings)
    await controller.start()
    await settle()
    await controller.tick()
    player.calls.clear()
    with pytest.raises(IndexOutOfRangeError):
        await controller.jump_to(24)
    await settle()
    assert game.current_index == 0
    assert controller.remaining == 29
    assert not [c for c in player.calls if c[0] == "play"]
    await controller.stop()
