import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from .config import Settings
from .errors import DeviceCommandError, SessionNotStartedError
from .models import Device, Track
from .session import GameSession

logger = logging.getLogger("bingo.playback")

EventCallback = Callable[[str, dict], Awaitable[None]]


class Player(Protocol):
    async def transfer(self, device_id: str, play: bool = False) -> None: ...

    async def play_at(self, device_id: str, track: Track, position_fraction: float = 0.0) -> None: ...

    async def pause(self, device_id: Optional[str] = None) -> None: ...

    async def set_volume(self, device_id: str, percent: int) -> None: ...


def fade_in_levels(start: int, target: int, steps: int) -> list[int]:
    return [round(start + (target - start) * i / steps) for i in range(1, steps + 1)]


def fade_out_levels(start: int, steps: int) -> list[int]:
    return [round(start * i / steps) for i in range(steps - 1, -1, -1)]


class PlaybackController:
    """Countdown, auto-advance and volume fades for one game session.

    Everything runs on the event loop that calls ``start``: one countdown
    task, at most one fade task and at most one pending play task. Device
    commands are best-effort; a failure is logged and the game carries on.
    """

    def __init__(
        self,
        session: GameSession,
        player: Player,
        device: Device,
        settings: Settings,
        on_event: Optional[EventCallback] = None,
    ):
        self.session = session
        self.player = player
        self.device = device
        self.settings = settings
        self.on_event = on_event

        self.interval = settings.song_seconds
        self.remaining = 0
        self.running = False
        self.original_volume = device.volume_percent
        self.last_volume = device.volume_percent

        self._active = False
        self._loop_task: Optional[asyncio.Task] = None
        self._fade_task: Optional[asyncio.Task] = None
        self._play_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self.session.card is None:
            raise SessionNotStartedError()
        if self.running:
            return
        if not self._active:
            self.original_volume = self.device.volume_percent
            self.last_volume = self.original_volume
        self._active = True
        self.remaining = self.interval
        self.running = True
        logger.info(
            f"[timer] start session={self.session.id} device={self.device.id} "
            f"index={self.session.current_index} volume={self.original_volume}"
        )
        self._loop_task = asyncio.create_task(self._countdown())
        self._on_item_change()
        await self._emit("timer:tick", self.status())

    def halt(self) -> Optional[asyncio.Task]:
        """Cancel the countdown, fade and play tasks without waiting on the device.

        Pause and volume restore run in the returned task; None if nothing was active.
        """
        if not self._active:
            return None
        self._active = False
        self.running = False
        tasks = [t for t in (self._loop_task, self._fade_task, self._play_task) if t and not t.done()]
        for t in tasks:
            t.cancel()
        self._loop_task = self._fade_task = self._play_task = None
        return asyncio.create_task(self._restore(tasks, self.status()))

    async def stop(self) -> None:
        task = self.halt()
        if task is not None:
            await task

    async def _restore(self, cancelled: list[asyncio.Task], stopped: dict) -> None:
        await asyncio.gather(*cancelled, return_exceptions=True)
        logger.info(f"[timer] stop session={stopped['sessionId']} restoring volume={self.original_volume}")
        await self._send("pause", self.player.pause(self.device.id))
        await self._send("volume", self.player.set_volume(self.device.id, self.original_volume))
        self.last_volume = self.original_volume
        await self._emit("playback:stopped", stopped)

    async def jump_to(self, index: int) -> None:
        """Move to any item; while running it restarts the countdown and plays it."""
        await self._skip_to(index)

    async def next(self) -> bool:
        index = self.session.current_index + 1
        if index >= self.session.item_count:
            return False
        await self._skip_to(index)
        return True

    async def previous(self) -> bool:
        index = self.session.current_index - 1
        if index < 0:
            return False
        await self._skip_to(index)
        return True

    # ------------------------------------------------------------------
    async def _countdown(self) -> None:
        while self.running:
            await asyncio.sleep(self.settings.tick_seconds)
            await self.tick()

    async def tick(self) -> None:
        """Advance the countdown by one unit."""
        if not self.running:
            return
        self.remaining -= 1
        if self.remaining == self.settings.fade_out_at:
            self._start_fade(self._ramp("fade-out", fade_out_levels(self.last_volume, self.settings.fade_out_steps),
                                        self.settings.fade_out_seconds / self.settings.fade_out_steps))
        if self.remaining <= 0:
            index = self.session.current_index + 1
            if index < self.session.item_count:
                self.session.advance_to(index)
                self.remaining = self.interval
                logger.info(f"[timer] auto-advance session={self.session.id} index={index}")
                self._on_item_change()
                await self._emit("session:update", self.session.snapshot())
            else:
                self.running = False
                self.remaining = 0
                logger.info(f"[timer] end of tracks session={self.session.id} index={self.session.current_index}")
        await self._emit("timer:tick", self.status())

    async def _skip_to(self, index: int) -> None:
        self.session.advance_to(index)
        if self.running:
            self.remaining = self.interval
            self._on_item_change()
        logger.info(f"[timer] skip session={self.session.id} index={index} running={self.running}")
        await self._emit("session:update", self.session.snapshot())

    def _on_item_change(self) -> None:
        self._cancel_fade()
        if self._play_task and not self._play_task.done():
            self._play_task.cancel()
        self._play_task = asyncio.create_task(self._play_current())

    async def _play_current(self) -> None:
        track = self.session.card.tracks[self.session.current_index]
        device_id = self.device.id
        # The device needs a moment after a transfer before it accepts play
        await self._send("transfer", self.player.transfer(device_id))
        await asyncio.sleep(self.settings.transfer_delay)
        await self._send("play", self.player.play_at(device_id, track, self.settings.play_position_fraction))
        start = self.settings.fade_in_start_volume
        await self._send("volume", self.player.set_volume(device_id, start))
        self.last_volume = start
        await asyncio.sleep(self.settings.fade_in_delay)
        self._start_fade(self._ramp("fade-in", fade_in_levels(start, self.original_volume, self.settings.fade_in_steps),
                                    self.settings.fade_in_seconds / self.settings.fade_in_steps))

    # ------------------------------------------------------------------
    def _cancel_fade(self) -> None:
        if self._fade_task and not self._fade_task.done():
            self._fade_task.cancel()
        self._fade_task = None

    def _start_fade(self, ramp) -> None:
        self._cancel_fade()
        self._fade_task = asyncio.create_task(ramp)

    async def _ramp(self, name: str, levels: list[int], step_delay: float) -> None:
        logger.debug(f"[fade] {name} session={self.session.id} levels={levels}")
        for volume in levels:
            await self._send("volume", self.player.set_volume(self.device.id, volume))
            self.last_volume = volume
            await asyncio.sleep(step_delay)

    async def _send(self, command: str, call: Awaitable[None]) -> bool:
        try:
            await call
            return True
        except DeviceCommandError as exc:
            logger.warning(f"[device] {command} device={self.device.id} failed: {exc}")
            return False

    async def _emit(self, event: str, data: dict) -> None:
        if self.on_event is None:
            return
        try:
            await self.on_event(event, data)
        except Exception as exc:
            logger.warning(f"[timer] event={event} listener error: {exc}")

    def status(self) -> dict:
        return {
            "sessionId": self.session.id,
            "remaining": self.remaining,
            "running": self.running,
            "currentIndex": self.session.current_index,
        }
