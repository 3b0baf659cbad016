import pytest

from backend.config import Settings
from backend.errors import DeviceCommandError
from backend.models import Device, Track


def make_track(i: int, title: str = None, artist: str = None) -> Track:
    return Track(
        id=f"track-{i:03d}",
        title=title or f"Song {i}",
        artist=artist or f"Artist {i}",
        duration_ms=200000,
    )


def make_pool(n: int) -> list[Track]:
    return [make_track(i) for i in range(n)]


class FakePlayer:
    """Records every device command; commands named in ``fail`` raise."""

    def __init__(self, fail=()):
        self.calls = []
        self.fail = set(fail)

    async def _record(self, command, *args):
        self.calls.append((command,) + args)
        if command in self.fail:
            raise DeviceCommandError(command, 502)

    async def transfer(self, device_id, play=False):
        await self._record("transfer", device_id)

    async def play_at(self, device_id, track, position_fraction=0.0):
        await self._record("play", device_id, track.id, position_fraction)

    async def pause(self, device_id=None):
        await self._record("pause", device_id)

    async def set_volume(self, device_id, percent):
        await self._record("volume", device_id, percent)

    def volumes(self):
        return [c[2] for c in self.calls if c[0] == "volume"]


@pytest.fixture
def pool():
    return make_pool(30)


@pytest.fixture
def fast_settings():
    # Ticks are driven by hand; every other wait collapses to a bare yield
    return Settings(
        tick_seconds=3600,
        transfer_delay=0,
        fade_in_delay=0,
        fade_in_seconds=0,
        fade_out_seconds=0,
    )


@pytest.fixture
def device():
    return Device(id="dev-1", name="Kitchen", type="Speaker", is_active=True, volume_percent=60)


@pytest.fixture
def player():
    return FakePlayer()
