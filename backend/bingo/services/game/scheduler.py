import itertools
import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from bingo import socketio
from bingo.models import Room, utcnow
from .broadcast import publish


@dataclass
class _CountdownJob:
    room_id: int
    remaining: int
    actor_id: str
    token: int


class RestartScheduler:
    """Cancellable restart countdowns keyed by room id.

    - One pending countdown per room; scheduling again is a no-op
    - Each tick decrements the countdown and emits ``restart-countdown``
    - The tick reaching zero runs the scheduled board reset
    - In ``background`` mode ticks run on a Socket.IO background task once a
      second; in ``manual`` mode the caller drives time via ``advance``
    """

    def __init__(self, app=None):
        self.app = None
        self.mode = 'background'
        self._jobs: Dict[int, _CountdownJob] = {}
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.app = app
        self.mode = app.config.get('RESTART_SCHEDULER', 'background')
        self._jobs.clear()
        app.extensions['restart_scheduler'] = self

    def is_pending(self, room_id: int) -> bool:
        return room_id in self._jobs

    def remaining(self, room_id: int) -> Optional[int]:
        job = self._jobs.get(room_id)
        return job.remaining if job else None

    def schedule(self, room_id: int, countdown: int, actor_id: str) -> bool:
        with self._lock:
            if room_id in self._jobs:
                self.app.logger.info(f"[restart-skip] room={room_id} already scheduled")
                return False
            job = _CountdownJob(room_id=room_id, remaining=int(countdown), actor_id=actor_id, token=next(self._tokens))
            self._jobs[room_id] = job

        self.app.logger.info(f"[restart-set] room={room_id} countdown={job.remaining}s by={actor_id}")
        if self.mode == 'background':
            socketio.start_background_task(self._worker, room_id, job.token)
        return True

    def cancel(self, room_id: int) -> bool:
        with self._lock:
            job = self._jobs.pop(room_id, None)
        if job:
            self.app.logger.info(f"[restart-cancel] room={room_id} remaining={job.remaining}s")
        return job is not None

    def tick(self, room_id: int) -> Optional[int]:
        """Advance one room's countdown by a second; returns the seconds left."""
        with self._lock:
            job = self._jobs.get(room_id)
            if not job:
                return None
            job.remaining -= 1
            remaining = job.remaining
            if remaining <= 0:
                self._jobs.pop(room_id, None)

        publish(room_id, 'restart-countdown', {'countdown': max(0, remaining)})
        if remaining <= 0:
            self.app.logger.info(f"[restart-fire] room={room_id}")
            from .rooms import run_scheduled_restart
            run_scheduled_restart(room_id, job.actor_id)
        return remaining

    def advance(self, seconds: int = 1) -> None:
        """Tick every pending countdown ``seconds`` times (manual mode)."""
        for _ in range(seconds):
            for room_id in list(self._jobs):
                self.tick(room_id)

    def recover_pending(self) -> int:
        """Re-arm countdowns persisted on rooms, e.g. after a process restart."""
        now = utcnow()
        count = 0
        for room in Room.query.filter(Room.restart_scheduled.isnot(None)).all():
            left = max(1, math.ceil((room.restart_scheduled - now).total_seconds()))
            if self.schedule(room.id, left, room.owner_id):
                count += 1
        return count

    def _worker(self, room_id: int, token: int) -> None:
        while True:
            socketio.sleep(1)
            with self.app.app_context():
                job = self._jobs.get(room_id)
                if not job or job.token != token:
                    self.app.logger.info(f"[restart-abort] room={room_id} job replaced or cancelled")
                    return
                remaining = self.tick(room_id)
                if remaining is None or remaining <= 0:
                    return


restart_scheduler = RestartScheduler()
