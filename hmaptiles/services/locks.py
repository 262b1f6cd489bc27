"""
Per-tenant import exclusion.

Only one import may run per tenant. Once an import finishes (successfully or
not), the tenant has to wait for a cooldown before starting another. The
service also remembers which maps and grids the running import created, and
which existing grids it moved to another map, so a failed import can be
undone.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from pydantic import BaseModel


class LockAttempt(BaseModel):
    success: bool
    reason: str | None = None
    wait_time: float | None = None
    "Seconds until the cooldown expires."


class ImportStatus(BaseModel):
    is_importing: bool = False
    started_at: float | None = None
    last_completed_at: float | None = None
    last_was_successful: bool | None = None
    cooldown_remaining: float | None = None
    can_import: bool = True


@dataclass
class _TenantImportState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    is_importing: bool = False
    started_at: float | None = None
    last_completed_at: float | None = None
    last_was_successful: bool | None = None
    created_map_ids: set[int] = field(default_factory=set)
    created_grid_ids: set[str] = field(default_factory=set)
    moved_grids: dict[str, int] = field(default_factory=dict)


def format_wait(seconds: float) -> str:
    minutes, seconds = divmod(int(seconds), 60)
    return f"{minutes}m {seconds}s"


class ImportLockService:
    def __init__(
        self,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.states: dict[str, _TenantImportState] = {}
        self.states_lock = threading.Lock()

    def _state(self, tenant_id: str) -> _TenantImportState:
        with self.states_lock:
            return self.states.setdefault(tenant_id, _TenantImportState())

    def _existing_state(self, tenant_id: str) -> _TenantImportState | None:
        with self.states_lock:
            return self.states.get(tenant_id)

    def _cooldown_remaining(self, state: _TenantImportState) -> float | None:
        if state.last_completed_at is None:
            return None

        remaining = self.cooldown_seconds - (self.clock() - state.last_completed_at)
        return remaining if remaining > 0 else None

    def try_acquire(self, tenant_id: str) -> LockAttempt:
        state = self._state(tenant_id)

        with state.lock:
            if state.is_importing:
                return LockAttempt(
                    success=False,
                    reason="An import is already in progress for this tenant.",
                )

            if (remaining := self._cooldown_remaining(state)) is not None:
                return LockAttempt(
                    success=False,
                    reason=f"Please wait {format_wait(remaining)} before starting another import.",
                    wait_time=remaining,
                )

            state.is_importing = True
            state.started_at = self.clock()
            state.created_map_ids.clear()
            state.created_grid_ids.clear()
            state.moved_grids.clear()

        return LockAttempt(success=True)

    def release(self, tenant_id: str, success: bool):
        if (state := self._existing_state(tenant_id)) is None:
            return

        with state.lock:
            state.is_importing = False
            state.last_completed_at = self.clock()
            state.last_was_successful = success

            if success:
                state.created_map_ids.clear()
                state.created_grid_ids.clear()
                state.moved_grids.clear()

    def track_created_map(self, tenant_id: str, map_id: int):
        if (state := self._existing_state(tenant_id)) is not None:
            with state.lock:
                state.created_map_ids.add(map_id)

    def track_created_grid(self, tenant_id: str, grid_id: str):
        if (state := self._existing_state(tenant_id)) is not None:
            with state.lock:
                state.created_grid_ids.add(grid_id)

    def track_moved_grid(self, tenant_id: str, grid_id: str, previous_map_id: int):
        """
        Remember the map an existing grid belonged to before the import
        moved it. Only the first move is kept.
        """
        if (state := self._existing_state(tenant_id)) is not None:
            with state.lock:
                state.moved_grids.setdefault(grid_id, previous_map_id)

    def items_to_cleanup(self, tenant_id: str) -> tuple[list[int], list[str]]:
        if (state := self._existing_state(tenant_id)) is None:
            return [], []

        with state.lock:
            return sorted(state.created_map_ids), sorted(state.created_grid_ids)

    def moved_grids(self, tenant_id: str) -> dict[str, int]:
        if (state := self._existing_state(tenant_id)) is None:
            return {}

        with state.lock:
            return dict(state.moved_grids)

    def clear_tracked(self, tenant_id: str):
        if (state := self._existing_state(tenant_id)) is not None:
            with state.lock:
                state.created_map_ids.clear()
                state.created_grid_ids.clear()
                state.moved_grids.clear()

    def status(self, tenant_id: str) -> ImportStatus:
        if (state := self._existing_state(tenant_id)) is None:
            return ImportStatus()

        with state.lock:
            remaining = None if state.is_importing else self._cooldown_remaining(state)

            return ImportStatus(
                is_importing=state.is_importing,
                started_at=state.started_at,
                last_completed_at=state.last_completed_at,
                last_was_successful=state.last_was_successful,
                cooldown_remaining=remaining,
                can_import=not state.is_importing and remaining is None,
            )
